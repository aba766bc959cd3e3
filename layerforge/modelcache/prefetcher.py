"""Model prefetcher: materialize every model the runtime needs, once.

Requests are processed in a fixed order (embedding, tokenizer, speech,
reranking).  Requests whose identifier is the disabled sentinel are skipped
without any fetch.  A valid cached entry is reused without touching the
network.  Misses are fetched with bounded exponential-backoff retries; when
retries are exhausted the prefetch stops with ``ModelFetchError`` naming the
model, leaving every entry committed before it valid for the next attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from layerforge.errors import ModelFetchError
from layerforge.modelcache.cache import ModelCache
from layerforge.modelcache.fetchers import FetchIntegrityError, ModelFetcher
from layerforge.models.cache import PREFETCH_ORDER, ModelCacheEntry, ModelKind, ModelRequest
from layerforge.models.config import DISABLED, BuildConfiguration

logger = logging.getLogger(__name__)

# Build parameter holding each kind's identifier.
MODEL_PARAMS: dict[ModelKind, str] = {
    ModelKind.EMBEDDING: "embedding_model",
    ModelKind.TOKENIZER: "tiktoken_encoding",
    ModelKind.SPEECH: "whisper_model",
    ModelKind.RERANKING: "reranking_model",
}


def requests_from_config(config: BuildConfiguration) -> list[ModelRequest]:
    """One request per model kind, disabled ones included, CPU device."""
    return [
        ModelRequest(kind=kind, identifier=str(config.get(MODEL_PARAMS[kind], DISABLED)))
        for kind in PREFETCH_ORDER
    ]


class ModelPrefetcher:
    """Resolve model requests against a ``ModelCache``.

    Parameters
    ----------
    cache:
        The shared model cache.
    fetchers:
        Fetch backend per model kind.
    retries:
        Maximum fetch attempts per model (including the first).
    backoff:
        Base seconds for exponential backoff between attempts.
    backoff_max:
        Upper bound on a single backoff wait.
    checkpoint:
        Called before each model; raises to abort (stage cancellation).
    """

    def __init__(
        self,
        cache: ModelCache,
        fetchers: Mapping[ModelKind, ModelFetcher],
        *,
        retries: int = 3,
        backoff: float = 2.0,
        backoff_max: float = 30.0,
        checkpoint: Callable[[], None] | None = None,
    ) -> None:
        self.cache = cache
        self.fetchers = dict(fetchers)
        self.retries = max(1, retries)
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._checkpoint = checkpoint

    def prefetch(self, requests: Iterable[ModelRequest]) -> list[ModelCacheEntry]:
        """Ensure every enabled request is cached; return the entries in order."""
        rank = {kind: i for i, kind in enumerate(PREFETCH_ORDER)}
        ordered = sorted(requests, key=lambda r: rank[r.kind])
        entries: list[ModelCacheEntry] = []
        for request in ordered:
            if request.identifier == DISABLED:
                logger.info("Skipping %s model: disabled", request.kind.value)
                continue
            if self._checkpoint is not None:
                self._checkpoint()
            entries.append(self.ensure(request))
        return entries

    def ensure(self, request: ModelRequest) -> ModelCacheEntry:
        """Return a cached entry for *request*, fetching it if needed."""
        with self.cache.lock(request):
            existing = self.cache.lookup(request)
            if existing is not None:
                logger.info("Reusing cached %s", request.describe())
                return existing
            return self._fetch(request)

    def _fetch(self, request: ModelRequest) -> ModelCacheEntry:
        fetcher = self.fetchers.get(request.kind)
        if fetcher is None:
            raise ModelFetchError(
                f"No fetcher configured for {request.kind.value} models",
                kind=request.kind.value,
                identifier=request.identifier,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.backoff, max=self.backoff_max),
            retry=retry_if_exception_type(OSError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=False,
        )
        try:
            for attempt in retrying:
                with attempt:
                    staging = self.cache.staging(request)
                    try:
                        fetcher.fetch(request, staging.files)
                        problems = fetcher.verify(request, staging.files)
                        if problems:
                            raise FetchIntegrityError(
                                f"integrity check failed: {'; '.join(problems)}"
                            )
                    except BaseException:
                        self.cache.discard(staging)
                        raise
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            raise ModelFetchError(
                f"Failed to fetch {request.kind.value} model {request.identifier!r} "
                f"after {self.retries} attempt(s): {cause}",
                kind=request.kind.value,
                identifier=request.identifier,
                diagnostics=repr(cause),
            ) from cause
        except Exception as exc:
            raise ModelFetchError(
                f"Failed to fetch {request.kind.value} model {request.identifier!r}: {exc}",
                kind=request.kind.value,
                identifier=request.identifier,
                diagnostics=repr(exc),
            ) from exc

        return self.cache.commit(staging)
