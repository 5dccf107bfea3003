"""Peer connection negotiation over the rendezvous relay."""

import asyncio
import logging
from typing import Callable, List, Optional

from .channel import (
    ConnectionState,
    DirectChannel,
    Frame,
    PeerBackend,
    SignalingTransport,
)
from .errors import NegotiationError
from .models import EnvelopeType
from .reassembler import Reassembler

logger = logging.getLogger(__name__)

MAX_RESTARTS = 1


class SessionNegotiator:
    def __init__(
        self,
        room_code: str,
        peer_id: str,
        signaling: SignalingTransport,
        backend: PeerBackend,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_frame: Optional[Callable[[Frame], None]] = None,
        receiver: Optional[Reassembler] = None,
    ):
        self.room_code = room_code
        self.peer_id = peer_id
        self.signaling = signaling
        self.backend = backend
        self.on_state_change = on_state_change
        self.receiver = receiver
        if on_frame is None and receiver is not None:
            on_frame = receiver.feed
        self.on_frame = on_frame

        self.state = ConnectionState.IDLE
        self.initiator = False
        self.channel: Optional[DirectChannel] = None
        self.restarts = 0

        self._remote_description_set = False
        self._pending_candidates: List[dict] = []
        self._reader: Optional[asyncio.Task] = None
        self._expiry: Optional[asyncio.Task] = None
        self._closing = False
        self._settled = asyncio.Event()

        backend.on_local_candidate = self._send_candidate
        backend.on_state_change = self._on_backend_state
        backend.on_remote_channel = self._on_remote_channel

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self, initiator: bool = False) -> None:
        """Open the relay socket and create (initiator) or join the room."""
        if self.state != ConnectionState.IDLE:
            raise NegotiationError(f"cannot connect from state {self.state.value}")

        self.initiator = initiator
        await self.signaling.connect()
        self._set_state(ConnectionState.SIGNALING_CONNECTED)

        request = EnvelopeType.CREATE_ROOM if initiator else EnvelopeType.JOIN_ROOM
        await self.signaling.send({
            "type": request.value,
            "roomCode": self.room_code,
            "peerId": self.peer_id,
        })
        self._reader = asyncio.create_task(self._read_signaling())

    async def wait_connected(self, timeout: Optional[float] = None) -> DirectChannel:
        """Wait until the channel is open; raise NegotiationError otherwise."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            raise NegotiationError(f"not connected after {timeout}s") from None
        if self.state != ConnectionState.CONNECTED or self.channel is None:
            raise NegotiationError(f"connection ended in state {self.state.value}")
        return self.channel

    async def disconnect(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True

        if self.channel is not None:
            await self.channel.close()
        await self.backend.close()

        try:
            await self.signaling.send({
                "type": EnvelopeType.LEAVE_ROOM.value,
                "roomCode": self.room_code,
                "peerId": self.peer_id,
            })
        except (ConnectionError, RuntimeError) as e:
            logger.debug(f"Could not announce departure: {e}")
        await self.signaling.close()

        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

        expiry = self._stop_expiry()
        if expiry is not None:
            try:
                await expiry
            except asyncio.CancelledError:
                pass
        if self.receiver is not None:
            self.receiver.reset()

        if self.state != ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Signaling
    # ------------------------------------------------------------------

    async def _read_signaling(self) -> None:
        while True:
            envelope = await self.signaling.receive()
            if envelope is None:
                break
            await self.handle_envelope(envelope)

        if not self._closing and self.state not in (ConnectionState.FAILED,
                                                    ConnectionState.DISCONNECTED):
            logger.warning("Signaling socket closed unexpectedly")
            self._set_state(ConnectionState.DISCONNECTED)

    async def handle_envelope(self, envelope: dict) -> None:
        """Apply one envelope received from the relay."""
        kind = envelope.get("type")

        try:
            if kind in (EnvelopeType.ROOM_CREATED.value, EnvelopeType.ROOM_JOINED.value):
                self._set_state(ConnectionState.AWAITING_PEER)
            elif kind == EnvelopeType.ERROR.value:
                logger.error(f"Rendezvous error: {envelope.get('message')}")
                self._set_state(ConnectionState.FAILED)
            elif kind == EnvelopeType.PEER_JOINED.value:
                busy = self.state in (ConnectionState.NEGOTIATING, ConnectionState.CONNECTED)
                if self.initiator and busy:
                    logger.warning(f"Ignoring {envelope.get('peerId')} joining a busy room")
                elif self.initiator:
                    await self._start_negotiation()
            elif kind == EnvelopeType.OFFER.value:
                await self._handle_offer(envelope["offer"])
            elif kind == EnvelopeType.ANSWER.value:
                await self._handle_answer(envelope["answer"])
            elif kind == EnvelopeType.ICE_CANDIDATE.value:
                await self._handle_candidate(envelope["candidate"])
            else:
                logger.warning(f"Dropping unexpected envelope {kind!r}")
        except KeyError as e:
            logger.warning(f"Dropping {kind} envelope without {e}")
        except Exception as e:
            logger.error(f"Negotiation step {kind} failed: {e}")
            await self._on_failure()

    async def _relay(self, kind: EnvelopeType, **payload) -> None:
        payload["roomCode"] = self.room_code
        await self.signaling.send({"type": kind.value, "payload": payload})

    async def _start_negotiation(self) -> None:
        self._set_state(ConnectionState.NEGOTIATING)
        self._remote_description_set = False
        self._pending_candidates.clear()
        self._attach_channel(self.backend.create_channel())
        offer = await self.backend.create_offer()
        await self._relay(EnvelopeType.OFFER, offer=offer)

    async def _handle_offer(self, offer: dict) -> None:
        if self.initiator:
            logger.warning("Initiator ignoring inbound offer")
            return
        self._set_state(ConnectionState.NEGOTIATING)
        self._remote_description_set = False
        answer = await self.backend.accept_offer(offer)
        await self._remote_description_ready()
        await self._relay(EnvelopeType.ANSWER, answer=answer)

    async def _handle_answer(self, answer: dict) -> None:
        if not self.initiator:
            logger.warning("Responder ignoring inbound answer")
            return
        await self.backend.accept_answer(answer)
        await self._remote_description_ready()

    async def _handle_candidate(self, candidate: dict) -> None:
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        await self.backend.add_candidate(candidate)

    async def _remote_description_ready(self) -> None:
        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.backend.add_candidate(candidate)

    async def _send_candidate(self, candidate: dict) -> None:
        await self._relay(EnvelopeType.ICE_CANDIDATE, candidate=candidate)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def _on_backend_state(self, state: str) -> None:
        if self._closing:
            return
        if state == "failed":
            await self._on_failure()
        elif state in ("disconnected", "closed") and self.state == ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _on_failure(self) -> None:
        if self.state in (ConnectionState.FAILED, ConnectionState.DISCONNECTED):
            return
        if self.restarts >= MAX_RESTARTS:
            logger.error("Connectivity failed again, giving up")
            self._set_state(ConnectionState.FAILED)
            return

        self.restarts += 1
        logger.warning("Connectivity failed, restarting once")
        self._detach_channel()
        await self.backend.restart()
        if self.initiator:
            await self._start_negotiation()
        else:
            # Candidates from the fresh session wait for its offer.
            self._remote_description_set = False
            self._pending_candidates.clear()
            self._set_state(ConnectionState.NEGOTIATING)

    async def _on_remote_channel(self, channel: DirectChannel) -> None:
        self._attach_channel(channel)

    def _attach_channel(self, channel: DirectChannel) -> None:
        self.channel = channel
        channel.on_open(lambda: self._on_channel_open(channel))
        channel.on_close(lambda: self._on_channel_close(channel))
        channel.on_frame(lambda frame: self._on_channel_frame(channel, frame))
        if channel.is_open:
            self._on_channel_open(channel)

    def _detach_channel(self) -> None:
        self.channel = None

    def _on_channel_open(self, channel: DirectChannel) -> None:
        if channel is self.channel and not self._closing:
            logger.info("Data channel opened")
            self._set_state(ConnectionState.CONNECTED)

    def _on_channel_close(self, channel: DirectChannel) -> None:
        if channel is self.channel and not self._closing \
                and self.state == ConnectionState.CONNECTED:
            logger.info("Data channel closed")
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_channel_frame(self, channel: DirectChannel, frame: Frame) -> None:
        if channel is not self.channel or self.state != ConnectionState.CONNECTED:
            logger.debug("Dropping frame received outside a connected session")
            return
        if self.on_frame is not None:
            self.on_frame(frame)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.info(f"Connection state: {self.state.value} -> {state.value}")
        self.state = state
        if state in (ConnectionState.CONNECTED, ConnectionState.FAILED,
                     ConnectionState.DISCONNECTED):
            self._settled.set()
        if state == ConnectionState.CONNECTED and self.receiver is not None:
            self._expiry = asyncio.create_task(self.receiver.run_expiry())
        elif state != ConnectionState.CONNECTED:
            self._stop_expiry()
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _stop_expiry(self) -> Optional[asyncio.Task]:
        task, self._expiry = self._expiry, None
        if task is not None:
            task.cancel()
        return task
