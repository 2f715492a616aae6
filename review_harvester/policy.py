from __future__ import annotations

from typing import Optional

from .ledger import QuotaLedger
from .models import Decision, PageResult


class FrontierPolicy:
    """Decides how much of a page to accept and whether to paginate further.

    Drafts are accepted in document order. A page accepted only partially
    ends pagination for its shop even when a next link exists; an empty page
    does not, as long as quota remains and the page links onward.
    """

    def __init__(self, ledger: QuotaLedger) -> None:
        self._ledger = ledger

    def decide(self, page: PageResult, quota: Optional[int]) -> Decision:
        requested = len(page.drafts)
        granted = self._ledger.reserve(page.entity, requested, quota)
        enqueue_next = (
            granted == requested
            and page.has_next_page_link
            and self._ledger.remaining(page.entity, quota) > 0
        )
        return Decision(
            accepted=list(page.drafts[:granted]),
            enqueue_next=enqueue_next,
            requested=requested,
            granted=granted,
        )
