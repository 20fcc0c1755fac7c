import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from chunkdrop.errors import SessionNotFound

CHUNK_PREFIX = "chunk-"
_CHUNK_NAME = re.compile(r"^chunk-(\d+)$")


@dataclass(frozen=True)
class StoredChunk:
    offset: int
    path: Path
    size: int


def chunk_file_name(offset: int) -> str:
    return f"{CHUNK_PREFIX}{offset}"


class ChunkStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        if not session_id or Path(session_id).name != session_id or session_id in (".", ".."):
            raise SessionNotFound("upload not found")
        return self.root / session_id

    def put(self, session_id: str, offset: int, data: bytes) -> Path:
        if offset < 0:
            raise ValueError("chunk offset must be non-negative")
        chunk_dir = self.session_dir(session_id)
        chunk_dir.mkdir(parents=True, exist_ok=True)
        chunk_path = chunk_dir / chunk_file_name(offset)
        chunk_path.write_bytes(data)
        return chunk_path

    def has_session_dir(self, session_id: str) -> bool:
        return self.session_dir(session_id).is_dir()

    def list_chunks(self, session_id: str) -> list[StoredChunk]:
        chunk_dir = self.session_dir(session_id)
        chunks: list[StoredChunk] = []
        for path in chunk_dir.iterdir():
            match = _CHUNK_NAME.match(path.name)
            if not match or not path.is_file():
                continue
            chunks.append(StoredChunk(offset=int(match.group(1)), path=path, size=path.stat().st_size))
        chunks.sort(key=lambda chunk: chunk.offset)
        return chunks

    def discard_session(self, session_id: str) -> None:
        shutil.rmtree(self.session_dir(session_id), ignore_errors=True)

    def session_ids_on_disk(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())
