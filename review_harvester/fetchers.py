from __future__ import annotations

import itertools
import logging
import threading
import time as _time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, Type

import requests
from curl_cffi import requests as curl_requests

from .backoff import BackoffStrategy
from .errors import FetchError
from .logging_utils import log_event
from .models import RenderedPage
from .rate_limiter import DomainRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "cs-CZ,cs;q=0.9,en;q=0.8",
}


class BaseFetcher(ABC):
    """Common fetch pipeline: rate limiting, retries, status handling.

    Transport errors and retryable statuses (429, 5xx) are retried with
    backoff up to ``max_retries`` attempts; anything else that is not 2xx
    fails immediately. Every failure surfaces as FetchError.
    """

    transport_errors: Tuple[Type[BaseException], ...] = ()

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
        self._max_retries = max(1, max_retries)
        self._timeout = timeout
        self._proxy_cycle = itertools.cycle(list(proxies)) if proxies else None
        self._proxy_lock = threading.Lock()

    def fetch(self, url: str) -> RenderedPage:
        if not url:
            raise FetchError(url, "url is required")

        attempt = 0
        while True:
            attempt += 1
            self._rate_limiter.acquire(url)
            start = _time.time()
            try:
                page = self._send(url, self._next_proxies())
            except self.transport_errors as exc:
                if attempt >= self._max_retries:
                    raise FetchError(url, f"{type(exc).__name__}: {exc}") from exc
                self._sleep_before_retry(url, attempt, None, type(exc).__name__)
                continue

            status = page.status_code
            if status is not None and 200 <= status < 300:
                log_event(
                    logger,
                    logging.DEBUG,
                    "page_fetched",
                    url=url,
                    status=status,
                    attempt=attempt,
                    latency_ms=int((_time.time() - start) * 1000),
                )
                return page
            if self._backoff.is_retryable_status(status) and attempt < self._max_retries:
                self._sleep_before_retry(url, attempt, status, f"HTTP_{status}")
                continue
            raise FetchError(url, f"HTTP_{status}", status_code=status)

    def _sleep_before_retry(self, url: str, attempt: int, status: Optional[int], error_type: str) -> None:
        sleep_s = self._backoff.get_sleep(attempt, status)
        log_event(
            logger,
            logging.INFO,
            "fetch_retry",
            url=url,
            attempt=attempt,
            error_type=error_type,
            sleep_s=round(sleep_s, 2),
        )
        _time.sleep(sleep_s)

    def _next_proxies(self) -> Optional[Dict[str, str]]:
        if self._proxy_cycle is None:
            return None
        with self._proxy_lock:
            proxy = next(self._proxy_cycle)
        return {"http": proxy, "https": proxy}

    @abstractmethod
    def _send(self, url: str, proxies: Optional[Dict[str, str]]) -> RenderedPage:
        ...

    def close(self) -> None:
        """Release pooled connections."""


class HttpFetcher(BaseFetcher):
    """Plain HTTP transport for statically rendered review pages."""

    transport_errors = (requests.RequestException,)

    def __init__(self, *args, session: Optional[requests.Session] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._local = threading.local()
        self._session = session
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def _get_session(self) -> requests.Session:
        # requests.Session is not guaranteed thread-safe; one per worker thread
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(DEFAULT_HEADERS)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _send(self, url: str, proxies: Optional[Dict[str, str]]) -> RenderedPage:
        resp = self._get_session().get(url, timeout=self._timeout, proxies=proxies)
        return RenderedPage(
            url=url,
            status_code=resp.status_code,
            html=resp.text,
            content_type=resp.headers.get("Content-Type", ""),
        )

    def close(self) -> None:
        """Close the injected session and every per-thread session created so far."""
        if self._session is not None:
            self._session.close()
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()


class ImpersonatingFetcher(BaseFetcher):
    """Browser-impersonating transport (TLS and header fingerprint of Chrome).

    For shops whose listing pages are only served to real browsers.
    """

    transport_errors = (curl_requests.RequestsError,)

    def __init__(self, *args, impersonate: str = "chrome120", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._impersonate = impersonate

    def _send(self, url: str, proxies: Optional[Dict[str, str]]) -> RenderedPage:
        session = curl_requests.Session()
        try:
            resp = session.get(
                url,
                impersonate=self._impersonate,
                timeout=self._timeout,
                proxies=proxies,
            )
            return RenderedPage(
                url=url,
                status_code=resp.status_code,
                html=resp.text,
                content_type=resp.headers.get("Content-Type", "") or "",
            )
        finally:
            session.close()
