from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from chunkdrop.chunks import ChunkStore
from chunkdrop.config import settings
from chunkdrop.logs import log_event
from chunkdrop.models import SessionStatus, UploadSession


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _discard(chunk_store: ChunkStore, session_id: str) -> bool:
    try:
        chunk_store.discard_session(session_id)
        return True
    except Exception as exc:
        log_event(
            {
                "event": "cleanup_item_error",
                "upload_id": session_id,
                "error_class": "maintenance_error",
                "detail": str(exc),
            }
        )
        return False


def cleanup_once(db: Session, chunk_store: ChunkStore) -> dict[str, int]:
    stale_before = _utc_now() - timedelta(seconds=settings.stale_session_ttl_seconds)

    stale_session_ids = list(
        db.scalars(
            select(UploadSession.id).where(
                UploadSession.status.in_([SessionStatus.open.value, SessionStatus.failed.value]),
                UploadSession.created_at < stale_before,
            )
        ).all()
    )

    chunk_dirs_deleted = 0
    for session_id in stale_session_ids:
        if chunk_store.has_session_dir(session_id) and _discard(chunk_store, session_id):
            chunk_dirs_deleted += 1

    if stale_session_ids:
        db.execute(delete(UploadSession).where(UploadSession.id.in_(stale_session_ids)))

    # Only sessions that can still receive or consume chunks keep a directory.
    live_ids = set(
        db.scalars(
            select(UploadSession.id).where(
                UploadSession.status.in_([SessionStatus.open.value, SessionStatus.assembling.value])
            )
        ).all()
    )
    orphan_dirs_deleted = 0
    for session_id in chunk_store.session_ids_on_disk():
        if session_id not in live_ids and _discard(chunk_store, session_id):
            orphan_dirs_deleted += 1

    db.commit()
    return {
        "stale_sessions_deleted": len(stale_session_ids),
        "chunk_dirs_deleted": chunk_dirs_deleted + orphan_dirs_deleted,
    }
