import asyncio
from pathlib import Path

import pytest

from chunkdrop.assembler import SessionAssembler
from chunkdrop.chunks import ChunkStore
from chunkdrop.db import SessionLocal
from chunkdrop.errors import (
    AssemblyFailed,
    Forbidden,
    IncompleteUpload,
    MissingParameters,
    NoChunksFound,
    SessionConflict,
    SessionNotFound,
)
from chunkdrop.handoff import StorageHandoff
from chunkdrop.models import HandoffStatus, SessionStatus
from chunkdrop.sessions import UploadSessionRegistry
from chunkdrop.storage import LocalBlobStore


def _build(tmp_path: Path, buffer_bytes: int = 1024) -> tuple[SessionAssembler, ChunkStore, UploadSessionRegistry]:
    registry = UploadSessionRegistry(SessionLocal)
    chunk_store = ChunkStore(tmp_path / "temp")
    handoff = StorageHandoff(LocalBlobStore(tmp_path / "blobs"), registry, enabled=False)
    assembler = SessionAssembler(
        chunk_store, registry, handoff, upload_dir=tmp_path / "public", buffer_bytes=buffer_bytes
    )
    return assembler, chunk_store, registry


def test_assembles_in_offset_order_regardless_of_arrival(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    source = b"the quick brown fox jumps over the lazy dog"
    pieces = [(0, source[:10]), (10, source[10:25]), (25, source[25:])]

    forward = registry.open_session()
    backward = registry.open_session()
    for offset, data in pieces:
        chunk_store.put(forward.id, offset, data)
    for offset, data in reversed(pieces):
        chunk_store.put(backward.id, offset, data)

    first = asyncio.run(assembler.complete(forward.id, "forward.txt", "owner-1"))
    second = asyncio.run(assembler.complete(backward.id, "backward.txt", "owner-1"))

    assert first.path.read_bytes() == source
    assert second.path.read_bytes() == source
    assert first.size == len(source)


def test_numeric_ordering_beyond_single_digits(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path, buffer_bytes=3)
    record = registry.open_session()
    data = bytes(range(24))
    for offset in range(0, 24, 2):
        chunk_store.put(record.id, offset, data[offset : offset + 2])

    artifact = asyncio.run(assembler.complete(record.id, "numbers.bin", "owner-1"))

    assert artifact.path.read_bytes() == data


def test_success_cleans_session_and_marks_done(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session()
    chunk_store.put(record.id, 0, b"AAAA")
    chunk_store.put(record.id, 4, b"BBBB")

    artifact = asyncio.run(assembler.complete(record.id, "../x.txt", "owner-1"))

    assert artifact.file_name == "x.txt"
    assert artifact.url == "/files/x.txt"
    assert artifact.path == tmp_path / "public" / "x.txt"
    assert artifact.path.read_bytes() == b"AAAABBBB"
    assert not chunk_store.has_session_dir(record.id)
    assert sorted(p.name for p in (tmp_path / "public").iterdir()) == ["x.txt"]
    stored = registry.get(record.id)
    assert stored is not None
    assert stored.status == SessionStatus.done.value
    assert stored.owner_id == "owner-1"
    assert stored.file_name == "x.txt"
    assert stored.handoff_status == HandoffStatus.skipped.value


def test_latest_write_at_offset_wins(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session()
    chunk_store.put(record.id, 0, b"old-")
    chunk_store.put(record.id, 4, b"tail")
    chunk_store.put(record.id, 0, b"new-")

    artifact = asyncio.run(assembler.complete(record.id, "retry.txt", "owner-1"))

    assert artifact.path.read_bytes() == b"new-tail"


def test_missing_parameters(tmp_path: Path) -> None:
    assembler, _, registry = _build(tmp_path)
    record = registry.open_session()
    for upload_id, file_name in ((None, "a.txt"), (record.id, None), (record.id, ""), ("", "a.txt")):
        with pytest.raises(MissingParameters):
            asyncio.run(assembler.complete(upload_id, file_name, "owner-1"))


def test_unknown_session_and_missing_directory(tmp_path: Path) -> None:
    assembler, _, registry = _build(tmp_path)
    with pytest.raises(SessionNotFound):
        asyncio.run(assembler.complete("does-not-exist", "a.txt", "owner-1"))

    record = registry.open_session()
    with pytest.raises(SessionNotFound):
        asyncio.run(assembler.complete(record.id, "a.txt", "owner-1"))
    assert registry.get(record.id).status == SessionStatus.open.value


def test_empty_session_dir_reports_no_chunks_without_mutation(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session()
    session_dir = chunk_store.session_dir(record.id)
    session_dir.mkdir(parents=True)
    (session_dir / "stray.tmp").write_bytes(b"?")

    with pytest.raises(NoChunksFound):
        asyncio.run(assembler.complete(record.id, "a.txt", "owner-1"))

    assert sorted(p.name for p in session_dir.iterdir()) == ["stray.tmp"]
    assert not (tmp_path / "public" / "a.txt").exists()
    assert registry.get(record.id).status == SessionStatus.open.value


def test_other_owner_cannot_complete(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session(owner_id="owner-1")
    chunk_store.put(record.id, 0, b"data")

    with pytest.raises(Forbidden):
        asyncio.run(assembler.complete(record.id, "a.txt", "owner-2"))


def test_declared_size_gap_is_rejected(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session(declared_size=12)
    chunk_store.put(record.id, 0, b"AAAA")
    chunk_store.put(record.id, 8, b"CCCC")

    with pytest.raises(IncompleteUpload):
        asyncio.run(assembler.complete(record.id, "gap.bin", "owner-1"))
    assert len(chunk_store.list_chunks(record.id)) == 2

    chunk_store.put(record.id, 4, b"BBBB")
    artifact = asyncio.run(assembler.complete(record.id, "gap.bin", "owner-1"))
    assert artifact.path.read_bytes() == b"AAAABBBBCCCC"


def test_declared_size_shortfall_is_rejected(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session(declared_size=10)
    chunk_store.put(record.id, 0, b"AAAA")

    with pytest.raises(IncompleteUpload):
        asyncio.run(assembler.complete(record.id, "short.bin", "owner-1"))


def test_session_already_assembling_is_rejected(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session()
    chunk_store.put(record.id, 0, b"data")
    assert registry.begin_assembly(record.id) is True
    assert registry.begin_assembly(record.id) is False

    with pytest.raises(SessionConflict):
        asyncio.run(assembler.complete(record.id, "a.txt", "owner-1"))
    assert chunk_store.list_chunks(record.id)


def test_concurrent_completions_only_one_assembles(tmp_path: Path) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    record = registry.open_session()
    chunk_store.put(record.id, 0, b"AAAA")
    chunk_store.put(record.id, 4, b"BBBB")

    async def race() -> list:
        return await asyncio.gather(
            assembler.complete(record.id, "race.txt", "owner-1"),
            assembler.complete(record.id, "race.txt", "owner-1"),
            return_exceptions=True,
        )

    results = asyncio.run(race())
    failures = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (SessionConflict, SessionNotFound))
    assert successes[0].path.read_bytes() == b"AAAABBBB"


def test_write_failure_marks_session_failed(tmp_path: Path, monkeypatch) -> None:
    assembler, chunk_store, registry = _build(tmp_path)
    existing = tmp_path / "public" / "broken.bin"
    existing.write_bytes(b"earlier good artifact")
    record = registry.open_session()
    chunk_store.put(record.id, 0, b"AAAA")
    chunk_store.put(record.id, 4, b"BBBB")

    async def _broken_close(self) -> None:
        raise OSError("device gone")

    monkeypatch.setattr("chunkdrop.artifacts.ArtifactWriter.close", _broken_close)

    with pytest.raises(AssemblyFailed):
        asyncio.run(assembler.complete(record.id, "broken.bin", "owner-1"))

    assert registry.get(record.id).status == SessionStatus.failed.value
    assert chunk_store.list_chunks(record.id) == []
    assert existing.read_bytes() == b"earlier good artifact"
    assert sorted(p.name for p in (tmp_path / "public").iterdir()) == ["broken.bin"]
