import asyncio
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from chunkdrop.errors import MissingParameters


def sanitize_file_name(file_name: str) -> str:
    """Reduce a client supplied name to its last path component."""
    name = PurePosixPath(file_name.replace("\\", "/")).name.strip()
    if name in ("", ".", "..") or "\x00" in name:
        raise MissingParameters("fileName has no usable base name")
    return name


def artifact_path(upload_dir: str | Path, file_name: str) -> Path:
    return Path(upload_dir) / sanitize_file_name(file_name)


class ArtifactWriter:
    """Sequential file writer with a bounded in-memory buffer.

    ``write`` queues bytes and returns False once the buffered amount reaches
    ``high_water_mark``; producers then ``await drain()`` until a background
    flush brings the buffer back under the mark. Disk writes happen on a
    worker thread. A flush failure is re-raised from ``drain`` and ``close``.
    """

    def __init__(self, path: Path, high_water_mark: int) -> None:
        self.path = path
        self.high_water_mark = max(1, high_water_mark)
        self.bytes_written = 0
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._buffered = 0
        self._below_mark = asyncio.Event()
        self._below_mark.set()
        self._error: BaseException | None = None
        self._closing = False
        self._handle: BinaryIO | None = None
        self._flusher: asyncio.Task | None = None

    @property
    def buffered(self) -> int:
        return self._buffered

    async def open(self) -> "ArtifactWriter":
        self._handle = await asyncio.to_thread(open, self.path, "wb")
        self._flusher = asyncio.create_task(self._flush_loop())
        return self

    def write(self, data: bytes) -> bool:
        self._raise_if_failed()
        if self._flusher is None or self._closing:
            raise RuntimeError("artifact writer is not open")
        self._queue.put_nowait(data)
        self._buffered += len(data)
        if self._buffered >= self.high_water_mark:
            self._below_mark.clear()
            return False
        return True

    async def drain(self) -> None:
        await self._below_mark.wait()
        self._raise_if_failed()

    async def close(self) -> None:
        if self._flusher is None:
            return
        if not self._closing:
            self._closing = True
            self._queue.put_nowait(None)
        await self._flusher
        self._raise_if_failed()

    async def _flush_loop(self) -> None:
        handle = self._handle
        assert handle is not None
        try:
            while True:
                data = await self._queue.get()
                if data is None:
                    break
                await asyncio.to_thread(handle.write, data)
                self.bytes_written += len(data)
                self._buffered -= len(data)
                if self._buffered < self.high_water_mark:
                    self._below_mark.set()
            await asyncio.to_thread(handle.flush)
        except Exception as exc:
            self._error = exc
        finally:
            try:
                handle.close()
            except OSError as exc:
                if self._error is None:
                    self._error = exc
            self._below_mark.set()

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise self._error
