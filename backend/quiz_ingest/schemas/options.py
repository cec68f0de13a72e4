"""Option structs threaded explicitly through each unit of work."""
from __future__ import annotations

from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field

from quiz_ingest.config import settings


class ResolveOptions(BaseModel):
    match_radius_m: float = Field(default_factory=lambda: settings.VENUE_MATCH_RADIUS_M, gt=0)
    geocode: bool = True


class IngestOptions(BaseModel):
    """Per-run flags for an index run; copied verbatim into every detail job."""

    force: bool = False
    limit: Optional[int] = Field(default=None, ge=1)
    max_jobs_per_hour: int = Field(default_factory=lambda: settings.MAX_JOBS_PER_HOUR, ge=1)
    skip_if_updated_within_days: int = Field(
        default_factory=lambda: settings.SKIP_IF_UPDATED_WITHIN_DAYS, ge=0
    )


class DetectorOptions(BaseModel):
    name_threshold: float = Field(default_factory=lambda: settings.DUPLICATE_NAME_THRESHOLD, ge=0, le=1)
    location_threshold: float = Field(
        default_factory=lambda: settings.DUPLICATE_LOCATION_THRESHOLD, ge=0, le=1
    )
    limit: Optional[int] = Field(default=None, ge=1)


class BatchProgress(BaseModel):
    batch: int
    total_batches: int
    venues_processed: int
    total_venues: int
    duplicates_found: int
    duplicates_stored: int


class BatchOptions(DetectorOptions):
    batch_size: int = Field(default_factory=lambda: settings.DUPLICATE_BATCH_SIZE, ge=1)
    min_confidence: float = Field(default_factory=lambda: settings.DUPLICATE_MIN_CONFIDENCE, ge=0, le=1)
    clear_existing: bool = False
    progress_callback: Optional[Callable[[BatchProgress], None]] = None


MetadataStrategy = Literal["prefer_primary", "prefer_secondary", "combine"]


class MergeOptions(BaseModel):
    performed_by: Optional[str] = None
    notes: Optional[str] = None
    metadata_strategy: MetadataStrategy = "prefer_primary"
    dry_run: bool = False
    log_preview: bool = False


class RollbackOptions(BaseModel):
    performed_by: Optional[str] = None
    notes: Optional[str] = None
