"""Models package: re-exports every ORM class so Base.metadata sees all tables."""
from quiz_ingest.models.source import Source  # noqa: F401
from quiz_ingest.models.location import City, Country, Venue  # noqa: F401
from quiz_ingest.models.event import Event, EventSource, Performer  # noqa: F401
from quiz_ingest.models.merge import MergeLog, VenueFuzzyDuplicate  # noqa: F401
from quiz_ingest.models.ops import JobRun, ScheduleCursor  # noqa: F401
