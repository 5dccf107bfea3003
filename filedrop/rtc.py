"""
aiortc implementation of the peer backend.

aiortc gathers every local candidate while setting the local description,
so candidates travel inside the SDP and ``on_local_candidate`` never fires.
Remote candidates from browsers (trickle ICE) are still applied.
"""

import asyncio
import logging
from typing import List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from .channel import DirectChannel, PeerBackend
from .config import DEFAULT_ICE_SERVERS, Settings
from .errors import ChannelClosed

logger = logging.getLogger(__name__)

# Pause sending while this much data is queued in the SCTP transport.
BUFFERED_HIGH_WATER = 1024 * 1024


class DataChannelAdapter(DirectChannel):
    def __init__(self, channel: RTCDataChannel):
        super().__init__()
        self._channel = channel

        channel.on("open", self._emit_open)
        channel.on("close", self._emit_close)
        channel.on("message", self._emit_frame)

        # The answering side receives the channel already open.
        if channel.readyState == "open":
            asyncio.get_event_loop().call_soon(self._emit_open)

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    async def send(self, frame) -> None:
        if self._channel.readyState != "open":
            raise ChannelClosed(f"data channel is {self._channel.readyState}")
        self._channel.send(frame)

    async def drain(self) -> None:
        while (self._channel.readyState == "open"
               and self._channel.bufferedAmount > BUFFERED_HIGH_WATER):
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        self._channel.close()


class AiortcBackend(PeerBackend):
    def __init__(self, ice_servers: Optional[List[str]] = None):
        super().__init__()
        self.ice_servers = ice_servers if ice_servers is not None else list(DEFAULT_ICE_SERVERS)
        self._pc: Optional[RTCPeerConnection] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> 'AiortcBackend':
        return cls(ice_servers=list(settings.ice_servers))

    def _configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])

    def _ensure_pc(self) -> RTCPeerConnection:
        if self._pc is not None:
            return self._pc

        pc = RTCPeerConnection(configuration=self._configuration())

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Peer connection state: {pc.connectionState}")
            if self.on_state_change is not None and pc is self._pc:
                await self.on_state_change(pc.connectionState)

        @pc.on("datachannel")
        async def on_datachannel(channel):
            logger.info(f"Remote data channel {channel.label!r} announced")
            if self.on_remote_channel is not None:
                await self.on_remote_channel(DataChannelAdapter(channel))

        self._pc = pc
        return pc

    def create_channel(self, label: str = "fileTransfer") -> DirectChannel:
        pc = self._ensure_pc()
        return DataChannelAdapter(pc.createDataChannel(label, ordered=True))

    async def create_offer(self) -> dict:
        pc = self._ensure_pc()
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        return {"sdp": pc.localDescription.sdp, "type": pc.localDescription.type}

    async def accept_offer(self, offer: dict) -> dict:
        # A second offer means the other side restarted; start from scratch.
        if self._pc is not None and self._pc.remoteDescription is not None:
            await self.restart()
        pc = self._ensure_pc()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        return {"sdp": pc.localDescription.sdp, "type": pc.localDescription.type}

    async def accept_answer(self, answer: dict) -> None:
        pc = self._ensure_pc()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

    async def add_candidate(self, candidate: dict) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            return  # end-of-candidates
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._ensure_pc().addIceCandidate(ice)

    async def restart(self) -> None:
        # aiortc cannot restart ICE in place, so the connection is rebuilt.
        pc, self._pc = self._pc, None
        if pc is not None:
            await pc.close()

    async def close(self) -> None:
        pc, self._pc = self._pc, None
        if pc is not None:
            await pc.close()
