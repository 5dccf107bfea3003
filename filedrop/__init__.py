"""
filedrop - browser-style peer-to-peer file transfer

A rendezvous server pairs two peers under a short room code and relays
their connection negotiation; files then travel over the direct channel.
"""

__version__ = "1.0.0"

from .channel import ConnectionState, DirectChannel, PeerBackend, SignalingTransport
from .errors import ChannelClosed, FiledropError, NegotiationError
from .models import FileMetadata, generate_room_code
from .negotiator import SessionNegotiator
from .reassembler import Reassembler, ReceivedFile
from .transfer import OutgoingFile, TransferEngine, TransferResult

__all__ = [
    "ConnectionState",
    "DirectChannel",
    "PeerBackend",
    "SignalingTransport",
    "FiledropError",
    "ChannelClosed",
    "NegotiationError",
    "FileMetadata",
    "generate_room_code",
    "SessionNegotiator",
    "Reassembler",
    "ReceivedFile",
    "OutgoingFile",
    "TransferEngine",
    "TransferResult",
]
