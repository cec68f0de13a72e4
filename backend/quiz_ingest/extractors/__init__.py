"""Extractor registry, keyed by ``Source.name``."""
from __future__ import annotations

from typing import Callable

from quiz_ingest.extractors.base import Extractor, JsonFeedExtractor
from quiz_ingest.models.source import Source

ExtractorFactory = Callable[[Source], Extractor]

_REGISTRY: dict[str, ExtractorFactory] = {}


def register_extractor(name: str, factory: ExtractorFactory) -> None:
    _REGISTRY[name] = factory


def unregister_extractor(name: str) -> None:
    _REGISTRY.pop(name, None)


def _json_feed(source: Source) -> Extractor:
    cfg = dict(source.extractor_json or {})
    return JsonFeedExtractor(
        source.name,
        source.base_url,
        detail_url_template=cfg.get("detail_url_template"),
        default_country_code=cfg.get("default_country_code"),
        timeout=float(cfg.get("timeout_seconds", 30.0)),
    )


def get_extractor(source: Source) -> Extractor:
    """Registered adapter for the source, else the generic JSON feed reader."""
    factory = _REGISTRY.get(source.name, _json_feed)
    return factory(source)


__all__ = [
    "Extractor",
    "JsonFeedExtractor",
    "get_extractor",
    "register_extractor",
    "unregister_extractor",
]
