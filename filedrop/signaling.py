import json
import logging
from typing import Optional

import aiohttp

from .channel import SignalingTransport
from .config import Settings

logger = logging.getLogger(__name__)


class WebSocketSignaling(SignalingTransport):
    """aiohttp WebSocket client for the rendezvous server."""

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @classmethod
    def from_settings(cls, settings: Settings,
                      session: Optional[aiohttp.ClientSession] = None) -> 'WebSocketSignaling':
        return cls(settings.signaling_url, session=session)

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        logger.info(f"Connecting to signaling server {self.url}")
        self._ws = await self._session.ws_connect(self.url)

    async def send(self, envelope: dict) -> None:
        if self.closed:
            raise ConnectionError("signaling socket is closed")
        await self._ws.send_str(json.dumps(envelope))

    async def receive(self) -> Optional[dict]:
        while not self.closed:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    envelope = json.loads(msg.data)
                except ValueError:
                    logger.warning("Dropping unparseable signaling message")
                    continue
                if not isinstance(envelope, dict):
                    logger.warning("Dropping non-object signaling message")
                    continue
                return envelope
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                logger.info(f"Signaling socket closed ({msg.type.name})")
                return None
            logger.debug(f"Ignoring signaling message of type {msg.type.name}")
        return None

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
