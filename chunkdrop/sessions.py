import asyncio
import weakref

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from chunkdrop.errors import Forbidden, SessionNotFound
from chunkdrop.models import HandoffStatus, SessionStatus, UploadSession, utc_now


class UploadSessionRegistry:
    """Owns the lifecycle records of upload sessions.

    Records are returned detached from the database session, so callers can
    read them after the registry call has committed.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._guards: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def guard(self, session_id: str) -> asyncio.Lock:
        """Per-session lock serializing chunk writes against the start of assembly."""
        lock = self._guards.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._guards[session_id] = lock
        return lock

    def open_session(self, owner_id: str | None = None, declared_size: int | None = None) -> UploadSession:
        with self._session_factory() as db:
            record = UploadSession(
                owner_id=owner_id,
                declared_size=declared_size,
                status=SessionStatus.open.value,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            db.expunge(record)
            return record

    def get(self, session_id: str) -> UploadSession | None:
        with self._session_factory() as db:
            record = db.get(UploadSession, session_id)
            if record is not None:
                db.expunge(record)
            return record

    def require_owned(self, session_id: str, owner_id: str) -> UploadSession:
        """Return the session for ``owner_id``, claiming it if nobody owns it yet."""
        with self._session_factory() as db:
            record = db.get(UploadSession, session_id)
            if record is None:
                raise SessionNotFound("upload not found")
            if record.owner_id is None:
                db.execute(
                    update(UploadSession)
                    .where(UploadSession.id == session_id, UploadSession.owner_id.is_(None))
                    .values(owner_id=owner_id, updated_at=utc_now())
                )
                db.commit()
                db.refresh(record)
            if record.owner_id != owner_id:
                raise Forbidden("forbidden for this upload owner")
            db.expunge(record)
            return record

    def begin_assembly(self, session_id: str) -> bool:
        """Move OPEN -> ASSEMBLING. False means another caller got there first."""
        with self._session_factory() as db:
            result = db.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == SessionStatus.open.value)
                .values(status=SessionStatus.assembling.value, updated_at=utc_now())
            )
            db.commit()
            return (result.rowcount or 0) == 1

    def mark_done(self, session_id: str, file_name: str, handoff_status: HandoffStatus) -> None:
        self._update(
            session_id,
            status=SessionStatus.done.value,
            file_name=file_name,
            handoff_status=handoff_status.value,
        )

    def mark_failed(self, session_id: str) -> None:
        self._update(session_id, status=SessionStatus.failed.value)

    def record_handoff(
        self, session_id: str, status: HandoffStatus, attempts: int, error: str | None = None
    ) -> None:
        self._update(session_id, handoff_status=status.value, handoff_attempts=attempts, handoff_error=error)

    def _update(self, session_id: str, **values) -> None:
        with self._session_factory() as db:
            db.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id)
                .values(updated_at=utc_now(), **values)
            )
            db.commit()
