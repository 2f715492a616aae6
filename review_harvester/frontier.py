from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Optional, Set

from .logging_utils import log_event
from .models import FrontierRequest

logger = logging.getLogger(__name__)


class EntityFrontier:
    """FIFO of pending page requests with at most one outstanding per shop.

    A shop is outstanding from ``push`` until ``complete``; its next page can
    only enter the queue through ``complete``, which keeps pagination of one
    shop strictly sequential while different shops interleave freely.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: Deque[FrontierRequest] = deque()
        self._outstanding: Set[str] = set()

    def push(self, request: FrontierRequest) -> bool:
        with self._lock:
            if request.entity in self._outstanding:
                log_event(
                    logger,
                    logging.WARNING,
                    "request_rejected",
                    entity=request.entity,
                    url=request.url,
                    reason="entity already has an outstanding request",
                )
                return False
            self._outstanding.add(request.entity)
            self._queue.append(request)
            return True

    def pop(self) -> Optional[FrontierRequest]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def complete(self, request: FrontierRequest, follow_up: Optional[FrontierRequest] = None) -> None:
        """Release ``request``'s shop, queueing ``follow_up`` in its place."""
        with self._lock:
            self._outstanding.discard(request.entity)
            if follow_up is not None:
                if follow_up.entity != request.entity:
                    raise ValueError("follow-up request must belong to the same entity")
                self._outstanding.add(follow_up.entity)
                self._queue.append(follow_up)

    def is_outstanding(self, entity: str) -> bool:
        with self._lock:
            return entity in self._outstanding

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
