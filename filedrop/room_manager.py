from fastapi import WebSocket
from starlette.websockets import WebSocketState
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import json
import logging
import time

from pydantic import ValidationError

from . import models
from .config import ROOM_TTL
from .models import EnvelopeType, RELAYED_TYPES, RelayEnvelope, RoomRequest
from .store import InMemoryRoomStore, RoomStore

logger = logging.getLogger(__name__)


class RoomManager:
    def __init__(self, store: Optional[RoomStore] = None, room_ttl: float = ROOM_TTL,
                 clock: Callable[[], float] = time.time):
        # Room storage - room_code -> Room
        self.store = store if store is not None else InMemoryRoomStore()
        self.room_ttl = room_ttl
        self.clock = clock
        # WebSocket connections - socket_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}
        # Peer registrations - socket_id -> (room_code, peer_id)
        self.socket_peers: Dict[str, Tuple[str, str]] = {}

    async def connect(self, websocket: WebSocket, socket_id: str):
        """Accept WebSocket connection"""
        await websocket.accept()
        self.active_connections[socket_id] = websocket
        logger.info(f"🔌 WebSocket connected: {socket_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    def disconnect(self, socket_id: str):
        """Forget a socket and deregister its peer"""
        self._deregister(socket_id)
        self.active_connections.pop(socket_id, None)
        logger.info(f"❌ WebSocket disconnected: {socket_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    async def handle_message(self, socket_id: str, raw: str):
        """Dispatch one inbound envelope. Malformed envelopes are logged and dropped."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Dropping unparseable message from {socket_id}")
            return

        if not isinstance(data, dict):
            logger.warning(f"⚠️ Dropping non-object envelope from {socket_id}")
            return

        try:
            message_type = EnvelopeType(data.get("type"))
        except ValueError:
            logger.warning(f"⚠️ Dropping unknown envelope type {data.get('type')!r} from {socket_id}")
            return

        logger.info(f"📨 Received {message_type.value} from {socket_id}")

        try:
            if message_type == EnvelopeType.CREATE_ROOM:
                request = RoomRequest.model_validate(data)
                await self.create_room(socket_id, request.room_code, request.peer_id)
            elif message_type == EnvelopeType.JOIN_ROOM:
                request = RoomRequest.model_validate(data)
                await self.join_room(socket_id, request.room_code, request.peer_id)
            elif message_type in RELAYED_TYPES:
                envelope = RelayEnvelope.model_validate(data)
                await self.relay(socket_id, envelope.type, envelope.payload)
            elif message_type == EnvelopeType.LEAVE_ROOM:
                self.leave_room(socket_id)
            else:
                logger.warning(f"⚠️ Peers may not send {message_type.value}, dropping")
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping malformed {message_type.value} from {socket_id}: {e.error_count()} error(s)")

    async def create_room(self, socket_id: str, room_code: str, peer_id: str):
        """Register peer under a (possibly new) room and confirm"""
        self._deregister(socket_id)
        room = self.store.create(room_code, now=self.clock())
        room.peers[peer_id] = socket_id
        self.socket_peers[socket_id] = (room_code, peer_id)

        logger.info(f"🏠 Peer {peer_id} ({socket_id}) created room {room_code}")
        await self.send_personal_message(socket_id, models.room_created(room_code))

    async def join_room(self, socket_id: str, room_code: str, peer_id: str) -> bool:
        """Add peer to an existing room, announce it to the occupants and confirm"""
        room = self.store.get(room_code)
        if room is None:
            logger.warning(f"🚫 Peer {peer_id} tried to join unknown room {room_code}")
            await self.send_personal_message(socket_id, models.error_message("Room not found"))
            return False

        self._deregister(socket_id, keep=room_code)
        room.peers[peer_id] = socket_id
        self.socket_peers[socket_id] = (room_code, peer_id)

        logger.info(f"🏠 Peer {peer_id} ({socket_id}) joined room {room_code}")
        logger.info(f"📋 Room {room_code} peers: {list(room.peers)}")

        await self.broadcast_to_room(room_code, models.peer_joined(peer_id, room_code),
                                     exclude_peer=peer_id)
        await self.send_personal_message(socket_id, models.room_joined(room_code))
        return True

    async def relay(self, socket_id: str, kind: EnvelopeType, payload: dict):
        """Forward a negotiation envelope to the other peers of the sender's room"""
        registration = self.socket_peers.get(socket_id)
        if registration is None:
            logger.warning(f"⚠️ {kind.value} from {socket_id} outside any room, dropping")
            return

        room_code, peer_id = registration
        if self.store.get(room_code) is None:
            logger.warning(f"⚠️ Room {room_code} is gone, dropping {kind.value} from {peer_id}")
            return

        logger.info(f"🔄 Relaying {kind.value} from {peer_id} in room {room_code}")
        await self.broadcast_to_room(room_code, {"type": kind.value, **payload},
                                     exclude_peer=peer_id)

    def leave_room(self, socket_id: str):
        """Deregister the socket's peer; the socket itself stays connected"""
        self._deregister(socket_id)

    def _deregister(self, socket_id: str, keep: Optional[str] = None):
        registration = self.socket_peers.pop(socket_id, None)
        if registration is None:
            return

        room_code, peer_id = registration
        room = self.store.get(room_code)
        if room is None or room.peers.get(peer_id) != socket_id:
            return

        del room.peers[peer_id]
        logger.info(f"🚪 Peer {peer_id} left room {room_code}")

        if not room.peers and room_code != keep:
            self.store.delete(room_code)
            logger.info(f"🗑️ Removed empty room {room_code}")

    def sweep_expired(self, now: Optional[float] = None) -> List[str]:
        """Delete every room older than the TTL, occupied or not"""
        now = self.clock() if now is None else now
        expired = [room.code for room in self.store.list_expired(self.room_ttl, now=now)]

        for room_code in expired:
            self.store.delete(room_code)
            stale = [sid for sid, (code, _) in self.socket_peers.items() if code == room_code]
            for socket_id in stale:
                del self.socket_peers[socket_id]
            logger.info(f"⏰ Expired room {room_code}")

        return expired

    async def run_sweeper(self, interval: float):
        """Sweep expired rooms forever at a fixed interval"""
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    async def send_personal_message(self, socket_id: str, message: dict) -> bool:
        """Send message to specific WebSocket"""
        websocket = self.active_connections.get(socket_id)
        if websocket is None:
            logger.warning(f"❌ Socket {socket_id} not found in active connections")
            return False

        try:
            await websocket.send_text(json.dumps(message))
            logger.debug(f"✅ Sent {message.get('type')} to {socket_id}")
            return True
        except Exception as e:
            logger.error(f"❌ Error sending {message.get('type')} to {socket_id}: {e}")
            self.disconnect(socket_id)
            return False

    async def broadcast_to_room(self, room_code: str, message: dict,
                                exclude_peer: Optional[str] = None) -> int:
        """Broadcast message to every other open connection in the room"""
        room = self.store.get(room_code)
        if room is None:
            logger.warning(f"❌ Room {room_code} not found for broadcast")
            return 0

        successful_sends = 0
        disconnected_sockets = []

        for peer_id, socket_id in list(room.peers.items()):
            if peer_id == exclude_peer:
                continue
            websocket = self.active_connections.get(socket_id)
            if websocket is None or websocket.client_state != WebSocketState.CONNECTED:
                logger.debug(f"Skipping closed connection of {peer_id}")
                continue
            try:
                await websocket.send_text(json.dumps(message))
                successful_sends += 1
            except Exception as e:
                logger.error(f"❌ Error broadcasting to {peer_id}: {e}")
                disconnected_sockets.append(socket_id)

        logger.info(f"📡 Broadcast {message.get('type')} to room {room_code}: {successful_sends} sent")

        for socket_id in disconnected_sockets:
            self.disconnect(socket_id)

        return successful_sends

    def get_room_info(self, room_code: str) -> Optional[dict]:
        """Describe a room, or None when it does not exist"""
        room = self.store.get(room_code)
        if room is None:
            return None
        now = self.clock()
        return {
            "roomCode": room.code,
            "peers": list(room.peers),
            "createdAt": room.created_at,
            "expiresIn": max(0.0, self.room_ttl - room.age(now)),
        }

    def get_debug_info(self) -> dict:
        """Get debug information"""
        return {
            "rooms": {room.code: self.get_room_info(room.code) for room in self.store.all()},
            "active_connections": list(self.active_connections.keys()),
            "socket_peers": {sid: list(reg) for sid, reg in self.socket_peers.items()},
            "total_connections": len(self.active_connections),
        }
