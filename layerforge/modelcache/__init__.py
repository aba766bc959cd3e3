"""Shared model cache and prefetcher.

Modules
-------
cache
    ``ModelCache`` - versioned on-disk cache keyed by
    ``(kind, identifier, precision)`` with write-once entries.
fetchers
    ``ModelFetcher`` protocol plus the Hub and tiktoken backends.
prefetcher
    ``ModelPrefetcher`` - ordered, retrying, idempotent prefetch.
"""

from layerforge.modelcache.cache import ModelCache
from layerforge.modelcache.fetchers import (
    FetchError,
    FetchIntegrityError,
    HubSnapshotFetcher,
    ModelFetcher,
    TiktokenFetcher,
    default_fetchers,
)
from layerforge.modelcache.prefetcher import ModelPrefetcher, requests_from_config

__all__ = [
    "ModelCache",
    "ModelFetcher",
    "FetchError",
    "FetchIntegrityError",
    "HubSnapshotFetcher",
    "TiktokenFetcher",
    "default_fetchers",
    "ModelPrefetcher",
    "requests_from_config",
]
