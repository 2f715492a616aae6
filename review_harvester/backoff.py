from __future__ import annotations

import random
from typing import Optional

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class BackoffStrategy:
    """Exponential backoff with jitter for transport-level retries.

    Computes sleep duration as base * 2^(attempt-1) plus random jitter,
    capped at a configurable maximum. A 429 response doubles the delay."""

    def __init__(self, base_seconds: float = 0.5, max_seconds: float = 10.0) -> None:
        self._base = base_seconds
        self._max = max_seconds

    def get_sleep(self, attempt: int, status_code: Optional[int] = None) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt."""
        exp = self._base * (2 ** max(attempt - 1, 0))
        if status_code == 429:
            exp *= 2
        exp = min(self._max, exp)
        jitter = random.uniform(0, exp * 0.1)
        return exp + jitter

    @staticmethod
    def is_retryable_status(status_code: Optional[int]) -> bool:
        return status_code in RETRYABLE_STATUS_CODES
