"""Prometheus metrics for ingestion and venue-maintenance observability."""
from __future__ import annotations

from prometheus_client import Counter, Histogram


LISTINGS_SEEN_TOTAL = Counter(
    "quiz_listings_seen_total",
    "Listings returned by source index feeds",
    ["source"],
)

LISTINGS_SKIPPED_TOTAL = Counter(
    "quiz_listings_skipped_total",
    "Listings skipped because they were seen inside the freshness window",
    ["source"],
)

DETAIL_JOBS_ENQUEUED_TOTAL = Counter(
    "quiz_detail_jobs_enqueued_total",
    "Detail jobs enqueued by the scheduler",
    ["source"],
)

DETAIL_JOBS_TOTAL = Counter(
    "quiz_detail_jobs_total",
    "Detail job outcomes",
    ["source", "outcome", "error_class"],
)

DETAIL_LATENCY_SECONDS = Histogram(
    "quiz_detail_latency_seconds",
    "Detail processing latency (fetch + resolve + upsert)",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 40),
)

VENUE_RESOLUTIONS_TOTAL = Counter(
    "quiz_venue_resolutions_total",
    "Venue resolution outcomes by matching strategy",
    ["strategy", "status"],
)

EVENT_UPSERTS_TOTAL = Counter(
    "quiz_event_upserts_total",
    "Event upserts by action",
    ["action"],
)

VENUE_MERGE_ACTIONS_TOTAL = Counter(
    "quiz_venue_merge_actions_total",
    "Venue merge log actions",
    ["action_type"],
)

DUPLICATE_CANDIDATES_STORED_TOTAL = Counter(
    "quiz_duplicate_candidates_stored_total",
    "Fuzzy duplicate venue pairs stored by batch scans",
)
