"""Error taxonomy for the ingestion pipeline.

Only ``TransientFetchError`` is retried by the queue. Every other error is
terminal for the unit of work that raised it, never for the batch.
"""
from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """Base class. ``reason`` is a short machine-readable code for logs/JobRun."""

    reason: str = "ingest_error"

    def __init__(self, message: str = "", *, reason: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message or (reason or self.reason))
        if reason:
            self.reason = reason
        self.context = dict(context or {})


class TransientFetchError(IngestError):
    """Network/HTTP failure talking to a source, the geocoder or the asset store."""

    reason = "transient_fetch"


class ValidationError(IngestError):
    """Listing is missing required data or carries unparseable values."""

    reason = "invalid_listing"


class ConflictError(IngestError):
    """Unique-constraint race while creating a row another worker just created."""

    reason = "conflict"


class PartialEnrichmentError(IngestError):
    """An optional enrichment (image, performer) could not be attached."""

    reason = "partial_enrichment"

    def __init__(self, message: str = "", *, field: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field


class FatalDataError(IngestError):
    """Data problem that needs an operator (self-merge, missing city, …)."""

    reason = "fatal_data"
