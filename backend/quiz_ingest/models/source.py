"""Source model: static reference data, one row per quiz directory."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.db import Base, JSONType


class Source(Base):
    """External listing directory (Inquizition, Quizmeisters, …)."""

    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, comment="Stable key, also the extractor registry name"
    )
    base_url: Mapped[str] = mapped_column(String(512), nullable=False)
    website_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    extractor_json: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="Extractor settings: detail_url_template, default_country_code"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Source id={self.id} name={self.name!r}>"
