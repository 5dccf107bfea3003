"""
Capability interfaces the peer side is written against.

The negotiator, sender and receiver never touch a concrete peer-to-peer
library. They see three seams:

    SignalingTransport  the relay socket to the rendezvous server
    PeerBackend         the connectivity layer (offer/answer/candidates)
    DirectChannel       the ordered, reliable application channel

``filedrop.signaling`` and ``filedrop.rtc`` provide the aiohttp and aiortc
implementations.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

Frame = Union[str, bytes]
FrameHandler = Callable[[Frame], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    SIGNALING_CONNECTED = "signaling-connected"
    AWAITING_PEER = "awaiting-peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class DirectChannel(ABC):
    """An open (or opening) application channel between two peers."""

    def __init__(self):
        self._frame_handlers: List[FrameHandler] = []
        self._open_handlers: List[Callable[[], None]] = []
        self._close_handlers: List[Callable[[], None]] = []

    @property
    @abstractmethod
    def ready_state(self) -> str:
        """One of ``connecting``, ``open``, ``closing``, ``closed``."""

    @property
    def is_open(self) -> bool:
        return self.ready_state == "open"

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Hand one frame to the channel. Raises ChannelClosed when not open."""

    async def drain(self) -> None:
        """Wait until the channel's own buffer has room. No-op by default."""

    @abstractmethod
    async def close(self) -> None:
        ...

    def on_frame(self, handler: FrameHandler) -> None:
        self._frame_handlers.append(handler)

    def on_open(self, handler: Callable[[], None]) -> None:
        self._open_handlers.append(handler)

    def on_close(self, handler: Callable[[], None]) -> None:
        self._close_handlers.append(handler)

    # Called by implementations

    def _emit_frame(self, frame: Frame) -> None:
        for handler in list(self._frame_handlers):
            handler(frame)

    def _emit_open(self) -> None:
        for handler in list(self._open_handlers):
            handler()

    def _emit_close(self) -> None:
        for handler in list(self._close_handlers):
            handler()


CandidateHandler = Callable[[dict], Awaitable[None]]
StateHandler = Callable[[str], Awaitable[None]]
ChannelHandler = Callable[[DirectChannel], Awaitable[None]]


class PeerBackend(ABC):
    """Connectivity layer: session descriptions, candidates and the channel.

    Backends report connectivity as plain strings (``connecting``,
    ``connected``, ``disconnected``, ``failed``, ``closed``).
    """

    def __init__(self):
        self.on_local_candidate: Optional[CandidateHandler] = None
        self.on_state_change: Optional[StateHandler] = None
        self.on_remote_channel: Optional[ChannelHandler] = None

    @abstractmethod
    def create_channel(self, label: str = "fileTransfer") -> DirectChannel:
        """Open the application channel (initiating side)."""

    @abstractmethod
    async def create_offer(self) -> dict:
        ...

    @abstractmethod
    async def accept_offer(self, offer: dict) -> dict:
        """Apply a remote offer and return the local answer."""

    @abstractmethod
    async def accept_answer(self, answer: dict) -> None:
        ...

    @abstractmethod
    async def add_candidate(self, candidate: dict) -> None:
        ...

    @abstractmethod
    async def restart(self) -> None:
        """Drop the failed connectivity state so a fresh offer can be made."""

    @abstractmethod
    async def close(self) -> None:
        ...


class SignalingTransport(ABC):
    """JSON envelope socket to the rendezvous server."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, envelope: dict) -> None:
        ...

    @abstractmethod
    async def receive(self) -> Optional[dict]:
        """Next envelope, or None once the socket has closed."""

    @abstractmethod
    async def close(self) -> None:
        ...
