import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chunkdrop.db import Base


class SessionStatus(str, enum.Enum):
    open = "OPEN"
    assembling = "ASSEMBLING"
    done = "DONE"
    failed = "FAILED"


class HandoffStatus(str, enum.Enum):
    pending = "PENDING"
    stored = "STORED"
    failed = "FAILED"
    skipped = "SKIPPED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    # uuid4 draws from os.urandom.
    return str(uuid.uuid4())


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (Index("idx_upload_sessions_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_session_id)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SessionStatus.open.value)
    declared_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    handoff_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    handoff_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    handoff_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
