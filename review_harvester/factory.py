from __future__ import annotations

from typing import Dict, Optional, Sequence, Type

from .backoff import BackoffStrategy
from .errors import ConfigurationError
from .fetchers import BaseFetcher, HttpFetcher, ImpersonatingFetcher
from .rate_limiter import DomainRateLimiter

FETCHER_KINDS: Dict[str, Type[BaseFetcher]] = {
    "http": HttpFetcher,
    "impersonate": ImpersonatingFetcher,
}


class FetcherFactory:
    """Builds the fetch transport selected in the run configuration.

    All fetchers created by one factory share the rate limiter, so the
    per-host delay holds across transports."""

    def __init__(
        self,
        rate_limiter: DomainRateLimiter,
        backoff: BackoffStrategy,
        max_retries: int = 3,
        timeout: float = 20,
        proxies: Optional[Sequence[str]] = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._backoff = backoff
        self._max_retries = max_retries
        self._timeout = timeout
        self._proxies = list(proxies) if proxies else None

    def create(self, kind: str) -> BaseFetcher:
        fetcher_cls = FETCHER_KINDS.get(kind)
        if fetcher_cls is None:
            raise ConfigurationError(f"Unknown fetcher: {kind}")
        return fetcher_cls(
            rate_limiter=self._rate_limiter,
            backoff=self._backoff,
            max_retries=self._max_retries,
            timeout=self._timeout,
            proxies=self._proxies,
        )
