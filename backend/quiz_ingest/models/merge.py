"""MergeLog and VenueFuzzyDuplicate models."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.db import Base, JSONType


class MergeAction(str, enum.Enum):
    MERGE = "merge"
    PREVIEW = "preview"
    ROLLBACK = "rollback"
    NOT_DUPLICATE = "not_duplicate"


class DuplicateStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    MERGED = "merged"
    REJECTED = "rejected"


class MergeLog(Base):
    """Append-only audit trail of venue merge actions."""

    __tablename__ = "venue_merge_logs"
    __table_args__ = (
        CheckConstraint(
            "primary_venue_id <> secondary_venue_id", name="ck_venue_merge_logs_distinct_venues"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    primary_venue_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=False, index=True
    )
    secondary_venue_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=False, index=True
    )
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    performed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MergeLog id={self.id} {self.action_type} "
            f"{self.secondary_venue_id} -> {self.primary_venue_id}>"
        )


class VenueFuzzyDuplicate(Base):
    """Candidate duplicate pair stored by the batch scan (venue1_id < venue2_id)."""

    __tablename__ = "venue_fuzzy_duplicates"
    __table_args__ = (
        UniqueConstraint("venue1_id", "venue2_id", name="uq_venue_fuzzy_duplicates_pair"),
        CheckConstraint("venue1_id < venue2_id", name="ck_venue_fuzzy_duplicates_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    venue1_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=False, index=True
    )
    venue2_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=False, index=True
    )
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    name_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    location_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    match_criteria: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=DuplicateStatus.PENDING.value, nullable=False, index=True
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<VenueFuzzyDuplicate {self.venue1_id}~{self.venue2_id} {self.confidence_score:.2f}>"
