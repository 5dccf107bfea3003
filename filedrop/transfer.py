"""Sending files over the direct channel."""

import io
import logging
import mimetypes
import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, List, Optional, Union

from .channel import DirectChannel
from .config import CHUNK_SIZE, Settings
from .errors import ChannelClosed
from .models import DEFAULT_MIME_TYPE, FileComplete, FileMetadata

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
CompleteCallback = Callable[[bool], None]


@dataclass
class OutgoingFile:
    """A file to send: its metadata plus a way to open its content."""
    name: str
    size: int
    mime_type: str
    opener: Callable[[], BinaryIO]

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike],
                  mime_type: Optional[str] = None) -> 'OutgoingFile':
        path = os.fspath(path)
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(path)
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            opener=lambda: open(path, "rb"),
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes,
                   mime_type: Optional[str] = None) -> 'OutgoingFile':
        return cls(
            name=name,
            size=len(data),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            opener=lambda: io.BytesIO(data),
        )

    @property
    def metadata(self) -> FileMetadata:
        return FileMetadata(name=self.name, size=self.size, mime_type=self.mime_type)


FileSource = Union[OutgoingFile, str, os.PathLike]


def _display_name(file: FileSource) -> str:
    if isinstance(file, OutgoingFile):
        return file.name
    return os.path.basename(os.fspath(file))


@dataclass
class TransferResult:
    name: str
    ok: bool
    bytes_sent: int
    total: int


def _once(callback: Optional[CompleteCallback]) -> CompleteCallback:
    fired = False

    def notify(ok: bool) -> None:
        nonlocal fired
        if fired or callback is None:
            return
        fired = True
        callback(ok)

    return notify


class TransferEngine:
    def __init__(self, channel: DirectChannel, chunk_size: int = CHUNK_SIZE):
        if not 0 < chunk_size <= CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {CHUNK_SIZE}")
        self.channel = channel
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, channel: DirectChannel, settings: Settings) -> 'TransferEngine':
        return cls(channel, chunk_size=settings.chunk_size)

    async def send_file(
        self,
        file: FileSource,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> TransferResult:
        """Stream one file. ``on_complete`` fires exactly once with the outcome."""
        complete = _once(on_complete)
        try:
            outgoing = file if isinstance(file, OutgoingFile) else OutgoingFile.from_path(file)
        except OSError as e:
            logger.error(f"Cannot open {file}: {e}")
            complete(False)
            return TransferResult(name=_display_name(file), ok=False, bytes_sent=0, total=0)
        result = TransferResult(name=outgoing.name, ok=False, bytes_sent=0, total=outgoing.size)

        if not self.channel.is_open:
            logger.error(f"Data channel not ready, not sending {outgoing.name}")
            complete(False)
            return result

        try:
            await self.channel.send(outgoing.metadata.to_frame())

            with outgoing.opener() as reader:
                while result.bytes_sent < outgoing.size:
                    want = min(self.chunk_size, outgoing.size - result.bytes_sent)
                    chunk = reader.read(want)
                    if not chunk:
                        break
                    await self.channel.send(chunk)
                    result.bytes_sent += len(chunk)
                    if on_progress is not None:
                        on_progress(result.bytes_sent, outgoing.size)
                    await self.channel.drain()

            if result.bytes_sent < outgoing.size:
                logger.error(
                    f"{outgoing.name} ended after {result.bytes_sent} of {outgoing.size} bytes"
                )
                complete(False)
                return result

            await self.channel.send(FileComplete().to_frame())
        except ChannelClosed as e:
            logger.warning(f"Channel closed while sending {outgoing.name}: {e}")
            complete(False)
            return result
        except OSError as e:
            logger.error(f"Could not read {outgoing.name}: {e}")
            complete(False)
            return result

        logger.info(f"Sent {outgoing.name} ({result.bytes_sent} bytes)")
        result.ok = True
        complete(True)
        return result

    async def send_files(
        self,
        files: Iterable[FileSource],
        on_progress: Optional[Callable[[str, int, int], None]] = None,
        on_complete: Optional[Callable[[str, bool], None]] = None,
    ) -> List[TransferResult]:
        """Send files strictly one after another, stopping at the first failure."""
        results = []
        for file in files:
            name = _display_name(file)
            result = await self.send_file(
                file,
                on_progress=(lambda sent, total, name=name: on_progress(name, sent, total))
                if on_progress else None,
                on_complete=(lambda ok, name=name: on_complete(name, ok))
                if on_complete else None,
            )
            results.append(result)
            if not result.ok:
                break
        return results
