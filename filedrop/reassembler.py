"""Reassembling received files from direct-channel frames."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .config import IDLE_CHECK_INTERVAL, IDLE_TIMEOUT, Settings
from .models import FileComplete, FileMetadata, parse_control_frame

logger = logging.getLogger(__name__)


@dataclass
class TransferSession:
    metadata: FileMetadata
    start_time: float
    last_activity: float
    chunks: List[bytes] = field(default_factory=list)
    received: int = 0
    progress: float = 0.0
    speed: float = 0.0  # bytes per second since start
    completed: bool = False

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class ReceivedFile:
    name: str
    data: bytes
    mime_type: str


def _percent(received: int, size: int) -> float:
    if size == 0:
        return 100.0
    return min(100.0, received / size * 100)


class Reassembler:
    def __init__(
        self,
        idle_timeout: float = IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        on_progress: Optional[Callable[[TransferSession], None]] = None,
        on_file_complete: Optional[Callable[[TransferSession], None]] = None,
        check_interval: float = IDLE_CHECK_INTERVAL,
    ):
        self.idle_timeout = idle_timeout
        self.check_interval = check_interval
        self.clock = clock
        self.on_progress = on_progress
        self.on_file_complete = on_file_complete
        self.sessions: Dict[str, TransferSession] = {}
        self.current: Optional[TransferSession] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> 'Reassembler':
        return cls(idle_timeout=settings.idle_timeout, **kwargs)

    def feed(self, frame: Union[str, bytes, bytearray, memoryview]) -> None:
        """Consume one frame from the direct channel."""
        if isinstance(frame, str):
            self._on_control(frame)
        else:
            self._on_data(bytes(frame))

    def _on_control(self, text: str) -> None:
        try:
            control = parse_control_frame(text)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid file metadata: {e.error_count()} error(s)")
            return
        except ValueError as e:
            logger.warning(f"Ignoring unreadable control frame: {e}")
            return

        if isinstance(control, FileMetadata):
            self._on_metadata(control)
        elif isinstance(control, FileComplete):
            self._on_complete()

    def _on_metadata(self, metadata: FileMetadata) -> None:
        previous = self.current
        if previous is not None and not previous.completed:
            logger.warning(
                f"Abandoning {previous.name} at {previous.received}/{previous.metadata.size} bytes"
            )
            if self.sessions.get(previous.name) is previous:
                del self.sessions[previous.name]

        now = self.clock()
        session = TransferSession(metadata=metadata, start_time=now, last_activity=now)
        session.progress = _percent(0, metadata.size)
        self.sessions[metadata.name] = session
        self.current = session
        logger.info(f"Receiving {metadata.name} ({metadata.size} bytes, {metadata.mime_type})")

    def _on_data(self, chunk: bytes) -> None:
        session = self.current
        if session is None:
            logger.warning(f"Ignoring {len(chunk)}-byte chunk with no file announced")
            return
        if session.received >= session.metadata.size:
            logger.warning(f"Ignoring extra {len(chunk)}-byte chunk for {session.name}")
            return

        now = self.clock()
        session.chunks.append(chunk)
        session.received += len(chunk)
        session.progress = _percent(session.received, session.metadata.size)
        elapsed = now - session.start_time
        if elapsed > 0:
            session.speed = session.received / elapsed
        session.last_activity = now

        if self.on_progress is not None:
            self.on_progress(session)

    def _on_complete(self) -> None:
        session = self.current
        if session is None:
            logger.debug("Ignoring completion marker with no file in progress")
            return
        if session.completed:
            return
        if session.received < session.metadata.size:
            logger.warning(
                f"Completion marker for {session.name} at "
                f"{session.received}/{session.metadata.size} bytes, waiting for more data"
            )
            session.last_activity = self.clock()
            return

        session.completed = True
        self.current = None
        logger.info(f"Received {session.name} ({session.received} bytes)")
        if self.on_file_complete is not None:
            self.on_file_complete(session)

    def expire_stalled(self, now: Optional[float] = None) -> Optional[str]:
        """Abandon the current session if it has been idle past the timeout."""
        session = self.current
        if session is None:
            return None
        now = self.clock() if now is None else now
        if now - session.last_activity < self.idle_timeout:
            return None

        logger.warning(f"Abandoning stalled transfer of {session.name}")
        self.current = None
        if self.sessions.get(session.name) is session:
            del self.sessions[session.name]
        return session.name

    async def run_expiry(self):
        """Expire stalled sessions forever at a fixed interval"""
        while True:
            await asyncio.sleep(self.check_interval)
            self.expire_stalled()

    def reset(self) -> None:
        """Discard every session, finished or not."""
        self.sessions.clear()
        self.current = None

    def progress(self, name: str) -> float:
        return self.sessions[name].progress

    def completed_files(self) -> List[str]:
        return [name for name, session in self.sessions.items() if session.completed]

    def materialize(self, name: str) -> ReceivedFile:
        """Assemble a completed file. Raises KeyError if it is unknown or unfinished."""
        session = self.sessions.get(name)
        if session is None or not session.completed:
            raise KeyError(name)
        return ReceivedFile(
            name=session.name,
            data=b"".join(session.chunks),
            mime_type=session.metadata.mime_type,
        )
