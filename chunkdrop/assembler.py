import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from opentelemetry import trace

from chunkdrop.artifacts import ArtifactWriter, artifact_path, sanitize_file_name
from chunkdrop.chunks import ChunkStore, StoredChunk
from chunkdrop.errors import (
    AssemblyFailed,
    IncompleteUpload,
    MissingParameters,
    NoChunksFound,
    SessionConflict,
    SessionNotFound,
)
from chunkdrop.handoff import StorageHandoff
from chunkdrop.logs import audit_event
from chunkdrop.metrics import assemblies_total, assembly_duration_seconds, assembly_failures_total
from chunkdrop.models import SessionStatus
from chunkdrop.sessions import UploadSessionRegistry

tracer = trace.get_tracer("chunkdrop.assembler")


@dataclass(frozen=True)
class AssembledArtifact:
    upload_id: str
    file_name: str
    path: Path
    size: int

    @property
    def url(self) -> str:
        return f"/files/{quote(self.file_name)}"


def verify_coverage(chunks: list[StoredChunk], declared_size: int) -> None:
    expected = 0
    for chunk in chunks:
        if chunk.offset != expected:
            raise IncompleteUpload(f"chunk at offset {chunk.offset} does not continue byte {expected}")
        expected += chunk.size
    if expected != declared_size:
        raise IncompleteUpload(f"received {expected} of {declared_size} declared bytes")


class SessionAssembler:
    def __init__(
        self,
        chunk_store: ChunkStore,
        registry: UploadSessionRegistry,
        handoff: StorageHandoff,
        upload_dir: str | Path,
        buffer_bytes: int,
    ) -> None:
        self.chunk_store = chunk_store
        self.registry = registry
        self.handoff = handoff
        self.upload_dir = Path(upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.buffer_bytes = buffer_bytes

    async def complete(self, session_id: str | None, file_name: str | None, owner_id: str) -> AssembledArtifact:
        if not session_id or not file_name or not file_name.strip():
            raise MissingParameters("Missing uploadId or fileName")
        safe_name = sanitize_file_name(file_name)

        record = self.registry.require_owned(session_id, owner_id)
        if record.status != SessionStatus.open.value:
            raise SessionConflict(f"upload is {record.status.lower()}")
        async with self.registry.guard(session_id):
            # Chunk writes take the same guard, so the listing below is final
            # once the session leaves OPEN.
            record = self.registry.get(session_id)
            if record is None:
                raise SessionNotFound("upload not found")
            if record.status != SessionStatus.open.value:
                raise SessionConflict(f"upload is {record.status.lower()}")
            if not await asyncio.to_thread(self.chunk_store.has_session_dir, session_id):
                raise SessionNotFound("upload not found")
            chunks = await asyncio.to_thread(self.chunk_store.list_chunks, session_id)
            if not chunks:
                raise NoChunksFound("No chunks found")
            if record.declared_size is not None:
                verify_coverage(chunks, record.declared_size)
            if not self.registry.begin_assembly(session_id):
                raise SessionConflict("upload is already being completed")

        final_path = artifact_path(self.upload_dir, safe_name)
        partial_path = self.upload_dir / f".{session_id}.partial"
        started = time.perf_counter()
        with tracer.start_as_current_span("assemble_upload") as span:
            span.set_attribute("chunkdrop.upload_id", session_id)
            span.set_attribute("chunkdrop.chunk_count", len(chunks))
            try:
                size = await self._write_artifact(chunks, partial_path)
                await asyncio.to_thread(partial_path.replace, final_path)
            except Exception as exc:
                await asyncio.to_thread(partial_path.unlink, missing_ok=True)
                self.registry.mark_failed(session_id)
                assembly_failures_total.inc()
                span.record_exception(exc)
                raise AssemblyFailed(f"failed to complete upload: {exc}") from exc
            span.set_attribute("chunkdrop.artifact_bytes", size)
        await asyncio.to_thread(self.chunk_store.discard_session, session_id)
        assembly_duration_seconds.observe(time.perf_counter() - started)
        assemblies_total.inc()

        artifact = AssembledArtifact(upload_id=session_id, file_name=safe_name, path=final_path, size=size)
        self.registry.mark_done(session_id, safe_name, self.handoff.initial_status())
        audit_event(
            {
                "action": "upload_complete",
                "upload_id": session_id,
                "user_id": owner_id,
                "file_name": safe_name,
                "chunk_count": len(chunks),
                "size_bytes": size,
            }
        )
        self.handoff.schedule(session_id, owner_id, safe_name, final_path)
        return artifact

    async def _write_artifact(self, chunks: list[StoredChunk], target: Path) -> int:
        writer = await ArtifactWriter(target, self.buffer_bytes).open()
        try:
            for chunk in chunks:
                data = await asyncio.to_thread(chunk.path.read_bytes)
                if not writer.write(data):
                    await writer.drain()
                await asyncio.to_thread(chunk.path.unlink)
        finally:
            await writer.close()
        return writer.bytes_written
