"""Operational models: persisted schedule cursor and job-run records."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.db import Base, JSONType


class JobType(str, enum.Enum):
    INDEX = "index"
    DETAIL = "detail"
    DUPLICATE_SCAN = "duplicate_scan"


class JobStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class ScheduleCursor(Base):
    """Next free slot for a throttled queue key, shared by every worker."""

    __tablename__ = "schedule_cursors"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    next_slot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ScheduleCursor key={self.key!r} next={self.next_slot_at}>"


class JobRun(Base):
    """Structured metadata of one index/detail/scan run."""

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    source_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("sources.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<JobRun id={self.id} {self.job_type} {self.status}>"
