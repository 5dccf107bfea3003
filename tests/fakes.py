"""
In-memory stand-ins for sockets, channels and the connectivity layer.
"""

import asyncio
import json
from typing import List, Optional

from starlette.websockets import WebSocketState

from filedrop.channel import DirectChannel, PeerBackend, SignalingTransport
from filedrop.errors import ChannelClosed


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Collects what the RoomManager sends to one peer."""

    def __init__(self):
        self.sent: List[dict] = []
        self.accepted = False
        self.client_state = WebSocketState.CONNECTED
        self.queue: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket closed")
        message = json.loads(text)
        self.sent.append(message)
        self.queue.put_nowait(message)


# ---------------------------------------------------------------------------
# Direct channel
# ---------------------------------------------------------------------------


class LoopbackChannel(DirectChannel):
    """One end of an in-memory ordered channel."""

    def __init__(self, log: Optional[list] = None, close_after: Optional[int] = None):
        super().__init__()
        self.peer: Optional["LoopbackChannel"] = None
        self.state = "connecting"
        self.sent: list = []
        self.log = log
        self.close_after = close_after

    @property
    def ready_state(self) -> str:
        return self.state

    def open(self):
        self.state = "open"
        self._emit_open()

    async def send(self, frame) -> None:
        if self.state != "open":
            raise ChannelClosed(self.state)
        if self.close_after is not None and len(self.sent) >= self.close_after:
            await self.close()
            raise ChannelClosed("closed mid-transfer")
        self.sent.append(frame)
        if self.peer is not None:
            self.peer._emit_frame(frame)

    async def close(self) -> None:
        if self.log is not None:
            self.log.append("channel.close")
        if self.state == "closed":
            return
        self.state = "closed"
        self._emit_close()
        if self.peer is not None and self.peer.state != "closed":
            self.peer.state = "closed"
            self.peer._emit_close()


def make_channel_pair(open_now: bool = True):
    a, b = LoopbackChannel(), LoopbackChannel()
    a.peer, b.peer = b, a
    if open_now:
        a.state = b.state = "open"
    return a, b


# ---------------------------------------------------------------------------
# Connectivity layer
# ---------------------------------------------------------------------------


CANDIDATE = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host",
             "sdpMid": "0", "sdpMLineIndex": 0}


class FakeBackend(PeerBackend):
    """Records every call; two linked backends connect on accept_answer."""

    def __init__(self, log: Optional[list] = None, trickle: bool = False):
        super().__init__()
        self.log = log if log is not None else []
        self.trickle = trickle
        self.peer: Optional["FakeBackend"] = None
        self.offers = 0
        self.candidates: List[dict] = []
        self.restarts = 0
        self.closed = False
        self._local_end: Optional[LoopbackChannel] = None
        self._remote_end: Optional[LoopbackChannel] = None

    def create_channel(self, label: str = "fileTransfer") -> DirectChannel:
        self._local_end, self._remote_end = make_channel_pair(open_now=False)
        self._local_end.log = self.log
        return self._local_end

    async def create_offer(self) -> dict:
        self.offers += 1
        if self.trickle and self.on_local_candidate is not None:
            await self.on_local_candidate(CANDIDATE)
        return {"type": "offer", "sdp": f"v=0 offer {self.offers}"}

    async def accept_offer(self, offer: dict) -> dict:
        self.log.append(("accept_offer", offer["sdp"]))
        return {"type": "answer", "sdp": "v=0 answer"}

    async def accept_answer(self, answer: dict) -> None:
        self.log.append(("accept_answer", answer["sdp"]))
        if self.peer is None:
            return
        self._remote_end.log = self.peer.log
        await self.peer.on_remote_channel(self._remote_end)
        self._local_end.open()
        self._remote_end.open()

    async def add_candidate(self, candidate: dict) -> None:
        self.candidates.append(candidate)

    async def restart(self) -> None:
        self.restarts += 1

    async def close(self) -> None:
        self.log.append("backend.close")
        self.closed = True


# ---------------------------------------------------------------------------
# Relay socket
# ---------------------------------------------------------------------------


class RecordingSignaling(SignalingTransport):
    """Signaling transport fed by the test; records what is sent."""

    def __init__(self, log: Optional[list] = None):
        self.log = log if log is not None else []
        self.sent: List[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def send(self, envelope: dict) -> None:
        if self.closed:
            raise ConnectionError("closed")
        self.log.append(("send", envelope["type"]))
        self.sent.append(envelope)

    async def receive(self) -> Optional[dict]:
        return await self.inbox.get()

    async def close(self) -> None:
        self.log.append("signaling.close")
        self.closed = True
        self.inbox.put_nowait(None)


class ManagerSignaling(SignalingTransport):
    """Talks to an in-process RoomManager as a WebSocket client would."""

    def __init__(self, manager, socket_id: str):
        self.manager = manager
        self.socket_id = socket_id
        self.websocket = FakeWebSocket()

    async def connect(self) -> None:
        await self.manager.connect(self.websocket, self.socket_id)

    async def send(self, envelope: dict) -> None:
        await self.manager.handle_message(self.socket_id, json.dumps(envelope))

    async def receive(self) -> Optional[dict]:
        return await self.websocket.queue.get()

    async def close(self) -> None:
        self.manager.disconnect(self.socket_id)
        self.websocket.client_state = WebSocketState.DISCONNECTED
        self.websocket.queue.put_nowait(None)
