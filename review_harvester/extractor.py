"""
BeautifulSoup extraction of review listing pages.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional
from urllib.parse import parse_qs, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .errors import ExtractionError
from .logging_utils import log_event
from .models import PageResult, RenderedPage, ReviewRecord, ShopReply, shop_key

logger = logging.getLogger(__name__)

REVIEW_LIST_SELECTOR = "ul.c-box-list.js-pagination__content"
REVIEW_ITEM_SELECTOR = "li.c-box-list__item.c-post"
ACTIVE_PAGE_SELECTOR = "li > span.c-pagination__link.is-active"
PAGINATION_LINK_SELECTOR = "a.c-pagination__link"
PAGE_PARAM = "f"

_WS_RE = re.compile(r"\s+")


def _text(node: Optional[Tag]) -> str:
    if node is None:
        return ""
    return _WS_RE.sub(" ", node.get_text(" ")).strip()


def page_number_from_url(url: str) -> Optional[int]:
    values = parse_qs(urlsplit(url).query).get(PAGE_PARAM)
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


class HeurekaReviewExtractor:
    """Turns one rendered shop review page into a PageResult.

    Review blocks are returned in document order. The next page locator is
    the pagination anchor pointing at the same shop's listing with the page
    number one past the active one.
    """

    def extract(self, page: RenderedPage) -> PageResult:
        if page.content_type and "html" not in page.content_type.lower():
            raise ExtractionError(page.url, f"unexpected content type {page.content_type!r}")
        if not page.html or not page.html.strip():
            raise ExtractionError(page.url, "empty document")

        soup = BeautifulSoup(page.html, "html.parser")
        if soup.find() is None:
            raise ExtractionError(page.url, "document has no markup")

        entity = shop_key(page.url)
        drafts = self.extract_reviews(soup, entity)
        current = self.current_page(soup, page.url)
        next_url = self.next_page_url(soup, page.url, current)

        if not drafts:
            log_event(logger, logging.INFO, "no_reviews_found", url=page.url, page=current)
        return PageResult(entity=entity, drafts=drafts, next_page_url=next_url)

    def extract_reviews(self, soup: BeautifulSoup, entity: str) -> List[ReviewRecord]:
        container = soup.select_one(REVIEW_LIST_SELECTOR)
        if container is None:
            return []
        return [self._parse_review(item, entity) for item in container.select(REVIEW_ITEM_SELECTOR)]

    @staticmethod
    def _parse_review(item: Tag, entity: str) -> ReviewRecord:
        author_node = item.select_one(".c-post__author")
        if author_node is not None:
            for icon in author_node.find_all("svg"):
                icon.decompose()

        time_node = item.select_one(".c-post__time-shop > time.c-post__publish-time")
        rating_node = item.select_one(".c-rating-widget")
        summary = _text(item.select_one("p.c-post__summary"))

        pros = [
            _text(li)
            for li in item.select("ul.c-attributes-list.c-attributes-list--pros li.c-attributes-list__item")
        ]
        cons = [
            _text(li)
            for li in item.select("ul.c-attributes-list.c-attributes-list--cons li.c-attributes-list__item")
        ]

        title = _text(item.select_one(".c-post-response > h3.c-post-response__heading > span"))
        body = _text(item.select_one(".c-post-response > p"))

        return ReviewRecord(
            shop=entity,
            author=_text(author_node),
            review_at=time_node.get("datetime") if time_node is not None else None,
            recommendation=_text(item.select_one(".c-post__recommendation")),
            rating=rating_node.get("data-rating") if rating_node is not None else None,
            pros=pros,
            cons=cons,
            summary=summary or None,
            shop_reply=ShopReply(title=title, body=body) if (title or body) else None,
        )

    @staticmethod
    def current_page(soup: BeautifulSoup, url: str) -> int:
        active = _text(soup.select_one(ACTIVE_PAGE_SELECTOR))
        if active.isdigit():
            return int(active)
        return page_number_from_url(url) or 1

    @staticmethod
    def next_page_url(soup: BeautifulSoup, url: str, current: int) -> Optional[str]:
        base = urlsplit(url)
        for anchor in soup.select(PAGINATION_LINK_SELECTOR):
            href = anchor.get("href")
            if not href:
                continue
            target = urljoin(url, href)
            parts = urlsplit(target)
            if parts.netloc.lower() != base.netloc.lower() or parts.path != base.path:
                continue
            if page_number_from_url(target) == current + 1:
                return target
        return None
