from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import logging
import uuid

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from .config import Settings, load_settings
from .room_manager import RoomManager

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None,
               manager: Optional[RoomManager] = None) -> FastAPI:
    """Build the rendezvous server around a RoomManager"""
    settings = settings or load_settings()
    manager = manager or RoomManager(room_ttl=settings.room_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(manager.run_sweeper(settings.sweep_interval))
        logger.info(f"⏰ Sweeping rooms every {settings.sweep_interval}s (TTL {settings.room_ttl}s)")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="filedrop rendezvous server", version="1.0.0", lifespan=lifespan)
    app.state.manager = manager
    app.state.settings = settings

    @app.get("/health")
    async def health():
        return {"status": "ok", "rooms": len(manager.store)}

    @app.get("/api/rooms/{room_code}")
    async def get_room(room_code: str):
        """Describe a room, including how long until it expires"""
        info = manager.get_room_info(room_code)
        if info is None:
            raise HTTPException(status_code=404, detail="Room not found")
        return info

    @app.get("/api/debug")
    async def debug_info():
        """Get server debug information"""
        return manager.get_debug_info()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling endpoint: one socket per peer"""
        socket_id = str(uuid.uuid4())
        await manager.connect(websocket, socket_id)

        try:
            while True:
                data = await websocket.receive_text()
                await manager.handle_message(socket_id, data)
        except WebSocketDisconnect:
            logger.info(f"🔌 WebSocket disconnected: {socket_id}")
        except Exception as e:
            logger.error(f"❌ WebSocket error for {socket_id}: {e}")
        finally:
            manager.disconnect(socket_id)

    return app


settings = load_settings()
logging.basicConfig(level=settings.log_level.upper())
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("filedrop.main:app", host=settings.host, port=settings.port)
