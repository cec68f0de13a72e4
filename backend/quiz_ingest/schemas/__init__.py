from quiz_ingest.schemas.geocode import GeocodeResult  # noqa: F401
from quiz_ingest.schemas.listing import (  # noqa: F401
    EventInput,
    NormalizedListing,
    PerformerInput,
    RawDetail,
    RawListing,
    VenueInput,
)
from quiz_ingest.schemas.options import (  # noqa: F401
    BatchOptions,
    BatchProgress,
    DetectorOptions,
    IngestOptions,
    MergeOptions,
    ResolveOptions,
    RollbackOptions,
)
