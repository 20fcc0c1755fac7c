import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

from opentelemetry import trace

from chunkdrop.artifacts import sanitize_file_name
from chunkdrop.errors import RemoteDeleteFailed, RemoteHandoffFailed, RemoteListFailed
from chunkdrop.logs import audit_event, log_event
from chunkdrop.metrics import handoff_failures_total, handoff_retries_total, handoffs_total
from chunkdrop.models import HandoffStatus
from chunkdrop.sessions import UploadSessionRegistry
from chunkdrop.storage import BlobStore

tracer = trace.get_tracer("chunkdrop.handoff")


@dataclass(frozen=True)
class RemoteFile:
    key: str
    file_name: str
    size: int
    last_modified: datetime | None
    url: str


def object_key(owner_id: str, file_name: str) -> str:
    return f"{owner_id}/{file_name}"


class StorageHandoff:
    """Moves finished artifacts into blob storage without blocking the caller.

    Each handoff runs as its own asyncio task, retried up to ``max_attempts``
    times. The local artifact is deleted only once the blob store accepted it;
    on failure it stays in the upload directory and keeps being served.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        registry: UploadSessionRegistry,
        enabled: bool = True,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.blob_store = blob_store
        self.registry = registry
        self.enabled = enabled
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def initial_status(self) -> HandoffStatus:
        return HandoffStatus.pending if self.enabled else HandoffStatus.skipped

    def schedule(self, upload_id: str, owner_id: str, file_name: str, path: Path) -> asyncio.Task | None:
        if not self.enabled:
            return None
        task = asyncio.create_task(self.run(upload_id, owner_id, file_name, path), name=f"handoff-{upload_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, upload_id: str, owner_id: str, file_name: str, path: Path) -> bool:
        key = object_key(owner_id, file_name)
        with tracer.start_as_current_span("storage_handoff") as span:
            span.set_attribute("chunkdrop.upload_id", upload_id)
            span.set_attribute("chunkdrop.object_key", key)
            try:
                attempts = await self._put_with_retry(key, path)
            except RemoteHandoffFailed as exc:
                handoff_failures_total.inc()
                span.record_exception(exc)
                log_event(
                    {
                        "event": "handoff_failed",
                        "upload_id": upload_id,
                        "object_key": key,
                        "attempts": self.max_attempts,
                        "error_class": exc.error_code,
                        "detail": exc.detail,
                    }
                )
                self._record(upload_id, HandoffStatus.failed, self.max_attempts, exc.detail)
                return False

        handoffs_total.inc()
        self._record(upload_id, HandoffStatus.stored, attempts)
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except OSError as exc:
            log_event(
                {
                    "event": "artifact_cleanup_error",
                    "upload_id": upload_id,
                    "path": str(path),
                    "error_class": "local_io_error",
                    "detail": str(exc),
                }
            )
        audit_event(
            {
                "action": "handoff_stored",
                "upload_id": upload_id,
                "user_id": owner_id,
                "object_key": key,
                "attempts": attempts,
            }
        )
        return True

    async def _put_with_retry(self, key: str, path: Path) -> int:
        attempts = 0
        while True:
            attempts += 1
            try:
                await asyncio.to_thread(self.blob_store.put_file, key, path)
                return attempts
            except Exception as exc:
                if attempts >= self.max_attempts:
                    raise RemoteHandoffFailed(f"upload of {key} failed: {exc}") from exc
                handoff_retries_total.inc()
                await asyncio.sleep(self.backoff_seconds * attempts)

    def _record(self, upload_id: str, status: HandoffStatus, attempts: int, error: str | None = None) -> None:
        try:
            self.registry.record_handoff(upload_id, status, attempts, error)
        except Exception as exc:
            log_event(
                {
                    "event": "handoff_status_error",
                    "upload_id": upload_id,
                    "handoff_status": status.value,
                    "error_class": "registry_error",
                    "detail": str(exc),
                }
            )

    async def list_files(self, owner_id: str) -> list[RemoteFile]:
        prefix = f"{owner_id}/"
        try:
            objects = await asyncio.to_thread(self.blob_store.list_objects, prefix)
        except Exception as exc:
            raise RemoteListFailed("Failed to list files") from exc
        files: list[RemoteFile] = []
        for obj in objects:
            display_name = obj.key.removeprefix(prefix)
            files.append(
                RemoteFile(
                    key=obj.key,
                    file_name=display_name,
                    size=obj.size,
                    last_modified=obj.last_modified,
                    url=f"/files/{quote(display_name)}",
                )
            )
        return files

    async def delete_file(self, owner_id: str, file_name: str) -> str:
        key = object_key(owner_id, sanitize_file_name(file_name))
        try:
            await asyncio.to_thread(self.blob_store.delete_key, key)
        except Exception as exc:
            raise RemoteDeleteFailed("Failed to delete file") from exc
        return key
