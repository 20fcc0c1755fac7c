import re
import stat
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from chunkdrop.artifacts import sanitize_file_name
from chunkdrop.errors import MissingParameters, NotFound, RangeNotSatisfiable, ServeFailed
from chunkdrop.logs import log_event

_SINGLE_RANGE = re.compile(r"^bytes=(\d+)-(\d*)$", re.ASCII)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class ServedFile:
    status_code: int
    headers: dict[str, str]
    body: Iterator[bytes] = field(repr=False)


def parse_range(range_header: str, file_size: int) -> ByteRange:
    value = range_header.strip()
    if "," in value:
        raise RangeNotSatisfiable("multiple ranges are not supported", file_size)
    match = _SINGLE_RANGE.match(value)
    if not match:
        raise RangeNotSatisfiable("invalid range header", file_size)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else file_size - 1
    end = min(end, file_size - 1)
    if start >= file_size or end < start:
        raise RangeNotSatisfiable("range out of bounds", file_size)
    return ByteRange(start=start, end=end)


def _read_span(handle: BinaryIO, path: Path, start: int, length: int, block_size: int) -> Iterator[bytes]:
    try:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            block = handle.read(min(block_size, remaining))
            if not block:
                break
            remaining -= len(block)
            yield block
    except OSError as exc:
        log_event(
            {
                "event": "serve_stream_error",
                "path": str(path),
                "error_class": "serve_failed",
                "detail": str(exc),
            }
        )
        raise
    finally:
        handle.close()


class RangeReader:
    def __init__(self, root: str | Path, block_size: int = 64 * 1024) -> None:
        self.root = Path(root)
        self.block_size = max(1, block_size)

    def open(self, file_name: str, range_header: str | None = None) -> ServedFile:
        try:
            path = self.root / sanitize_file_name(file_name)
        except MissingParameters as exc:
            raise NotFound("File not found") from exc
        try:
            info = path.stat()
        except FileNotFoundError as exc:
            raise NotFound("File not found") from exc
        except OSError as exc:
            raise ServeFailed("Error serving file") from exc
        if not stat.S_ISREG(info.st_mode):
            raise NotFound("File not found")

        file_size = info.st_size
        headers = {"Accept-Ranges": "bytes", "Content-Type": "application/octet-stream"}
        if range_header:
            byte_range = parse_range(range_header, file_size)
            headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{file_size}"
            status_code = 206
        else:
            byte_range = ByteRange(start=0, end=file_size - 1)
            status_code = 200
        headers["Content-Length"] = str(byte_range.length)

        try:
            handle = open(path, "rb")
        except FileNotFoundError as exc:
            raise NotFound("File not found") from exc
        except OSError as exc:
            raise ServeFailed("Error serving file") from exc
        return ServedFile(
            status_code=status_code,
            headers=headers,
            body=_read_span(handle, path, byte_range.start, byte_range.length, self.block_size),
        )
