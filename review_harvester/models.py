from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from .errors import ConfigurationError


def shop_key(url: str) -> str:
    """Return the entity identity of a shop: host plus first path segment.

    Every review page of one shop maps to the same key, e.g.
    ``https://obchody.heureka.cz/kaufland-cz/recenze/?f=3`` ->
    ``obchody.heureka.cz/kaufland-cz``.
    """
    parts = urlsplit(url.strip())
    segments = [s for s in parts.path.split("/") if s]
    if not parts.netloc or not segments:
        raise ConfigurationError(f"Cannot derive a shop identity from URL: {url!r}")
    return f"{parts.netloc.lower()}/{segments[0].lower()}"


@dataclass(frozen=True)
class ShopReply:
    title: str
    body: str


@dataclass(frozen=True)
class ReviewRecord:
    shop: str
    author: str
    recommendation: str
    review_at: Optional[str] = None
    rating: Optional[str] = None
    pros: List[str] = field(default_factory=list)
    cons: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    shop_reply: Optional[ShopReply] = None

    def to_dict(self) -> Dict[str, Any]:
        """Dataset row in the published review format."""
        return {
            "shop": self.shop,
            "author": self.author,
            "reviewAt": self.review_at,
            "recommendation": self.recommendation,
            "rating": self.rating,
            "pros": list(self.pros),
            "cons": list(self.cons),
            "summary": self.summary,
            "shopReply": (
                {"title": self.shop_reply.title, "body": self.shop_reply.body}
                if self.shop_reply
                else None
            ),
        }


@dataclass(frozen=True)
class RenderedPage:
    url: str
    status_code: Optional[int]
    html: str
    content_type: str = "text/html"


@dataclass(frozen=True)
class PageResult:
    entity: str
    drafts: List[ReviewRecord]
    next_page_url: Optional[str] = None

    @property
    def has_next_page_link(self) -> bool:
        return self.next_page_url is not None


@dataclass(frozen=True)
class FrontierRequest:
    url: str
    entity: str
    page_number: int = 1


class RequestState(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTED = "extracted"
    ACCOUNTED = "accounted"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class Decision:
    accepted: List[ReviewRecord]
    enqueue_next: bool
    requested: int
    granted: int


@dataclass(frozen=True)
class PageOutcome:
    """What happened to one frontier request.

    ``state`` is the last state reached. A request abandoned because of
    cancellation stays in ``EXTRACTED`` (or earlier) with ``abandoned`` set.
    """

    request: FrontierRequest
    state: RequestState
    accepted: int = 0
    follow_up: Optional[FrontierRequest] = None
    error_type: Optional[str] = None
    abandoned: bool = False


@dataclass
class RunSummary:
    committed: int = 0
    failed: int = 0
    skipped: int = 0
    abandoned: int = 0
    accepted_by_entity: Dict[str, int] = field(default_factory=dict)
    interrupted: bool = False

    @property
    def total_accepted(self) -> int:
        return sum(self.accepted_by_entity.values())
