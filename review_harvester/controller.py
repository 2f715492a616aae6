from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Optional, Set

from .config import CrawlConfig
from .errors import ExtractionError
from .extractor import HeurekaReviewExtractor, page_number_from_url
from .fetchers import BaseFetcher
from .frontier import EntityFrontier
from .ledger import QuotaLedger
from .lifecycle import CancellationToken
from .logging_utils import format_progress, log_event
from .models import FrontierRequest, PageOutcome, RequestState, RunSummary, shop_key
from .policy import FrontierPolicy
from .storage import DatasetSink

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECS = 0.5


class CrawlController:
    """Drives frontier requests through a bounded worker pool.

    The main thread owns dispatch: it checks the cancellation token and the
    request budget before every dequeue and skips shops whose quota is
    already used up without fetching. Workers run fetch, extraction,
    accounting and commit for one request each. Per request the ledger is
    flushed before the accepted records reach the sink, then the next page
    of the shop (if any) goes back into the frontier.
    """

    def __init__(
        self,
        config: CrawlConfig,
        fetcher: BaseFetcher,
        ledger: QuotaLedger,
        sink: DatasetSink,
        extractor: Optional[HeurekaReviewExtractor] = None,
        token: Optional[CancellationToken] = None,
        frontier: Optional[EntityFrontier] = None,
    ) -> None:
        self._config = config
        self._quota = config.max_reviews
        self._fetcher = fetcher
        self._ledger = ledger
        self._sink = sink
        self._extractor = extractor or HeurekaReviewExtractor()
        self._policy = FrontierPolicy(ledger)
        self._token = token or CancellationToken()
        self._frontier = frontier or EntityFrontier()
        self._dispatched = 0
        self._summary = RunSummary()

    @property
    def frontier(self) -> EntityFrontier:
        return self._frontier

    @property
    def dispatched(self) -> int:
        return self._dispatched

    def seed(self) -> int:
        """Queue one request per configured shop, resuming from the ledger cursor."""
        queued = 0
        for url in self._config.shop_urls:
            entity = shop_key(url)
            entry = self._ledger.entry(entity)
            if entry is not None and entry.finished:
                log_event(logger, logging.INFO, "seed_skipped", entity=entity, reason="finished")
                continue
            if self._ledger.remaining(entity, self._quota) <= 0:
                log_event(
                    logger,
                    logging.INFO,
                    "seed_skipped",
                    entity=entity,
                    reason="quota_exhausted",
                    progress=format_progress(self._ledger.accepted(entity), self._quota),
                )
                continue
            target = entry.cursor if entry is not None and entry.cursor else url
            request = FrontierRequest(
                url=target,
                entity=entity,
                page_number=page_number_from_url(target) or 1,
            )
            if self._frontier.push(request):
                queued += 1
                log_event(
                    logger,
                    logging.INFO,
                    "seeded",
                    entity=entity,
                    url=target,
                    resumed=target != url,
                )
        return queued

    def run(self) -> RunSummary:
        self.seed()
        parallelism = self._config.parallelism
        in_flight: Set[Future] = set()

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="crawl") as pool:
            while True:
                self._collect({f for f in in_flight if f.done()}, in_flight)

                stop_reason = self._stop_reason()
                if stop_reason is not None:
                    log_event(
                        logger,
                        logging.INFO,
                        "dispatch_stopped",
                        reason=stop_reason,
                        in_flight=len(in_flight),
                        queued=len(self._frontier),
                    )
                    break

                if len(in_flight) >= parallelism:
                    wait(in_flight, timeout=POLL_INTERVAL_SECS, return_when=FIRST_COMPLETED)
                    continue

                request = self._frontier.pop()
                if request is None:
                    if not in_flight:
                        break
                    wait(in_flight, timeout=POLL_INTERVAL_SECS, return_when=FIRST_COMPLETED)
                    continue

                if self._ledger.remaining(request.entity, self._quota) <= 0:
                    self._summary.skipped += 1
                    log_event(
                        logger,
                        logging.INFO,
                        "request_skipped",
                        entity=request.entity,
                        url=request.url,
                        reason="quota_exhausted",
                    )
                    self._frontier.complete(request)
                    continue

                self._dispatched += 1
                in_flight.add(pool.submit(self._process, request))

            # drain: in-flight requests reach COMMITTED, FAILED or are abandoned
            if in_flight:
                done, _ = wait(in_flight)
                self._collect(done, in_flight)

        self._ledger.flush()
        self._summary.accepted_by_entity = self._ledger.snapshot()
        self._summary.interrupted = self._token.cancelled
        log_event(
            logger,
            logging.INFO,
            "run_finished",
            committed=self._summary.committed,
            failed=self._summary.failed,
            skipped=self._summary.skipped,
            abandoned=self._summary.abandoned,
            accepted=self._summary.total_accepted,
            interrupted=self._summary.interrupted,
        )
        return self._summary

    def _stop_reason(self) -> Optional[str]:
        if self._token.cancelled:
            return f"cancelled:{self._token.reason}"
        max_requests = self._config.max_requests
        if max_requests is not None and self._dispatched >= max_requests:
            return "max_requests_reached"
        return None

    def _collect(self, done: Set[Future], in_flight: Set[Future]) -> None:
        for fut in done:
            in_flight.discard(fut)
            outcome: PageOutcome = fut.result()
            if outcome.state is RequestState.COMMITTED:
                self._summary.committed += 1
            elif outcome.state is RequestState.FAILED:
                self._summary.failed += 1
            elif outcome.abandoned:
                self._summary.abandoned += 1

    def _process(self, request: FrontierRequest) -> PageOutcome:
        outcome: Optional[PageOutcome] = None
        try:
            outcome = self.process_request(request)
            return outcome
        finally:
            self._frontier.complete(request, outcome.follow_up if outcome else None)

    def process_request(self, request: FrontierRequest) -> PageOutcome:
        """Run one request from FETCHING to COMMITTED (or FAILED)."""
        state = RequestState.FETCHING
        try:
            page = self._fetcher.fetch(request.url)
            result = self._extractor.extract(page)
        except Exception as exc:  # noqa: BLE001
            # FetchError, ExtractionError or a collaborator bug: fails this request only
            return self._failed(request, state, exc)
        state = RequestState.EXTRACTED

        if result.entity != request.entity:
            log_event(
                logger,
                logging.WARNING,
                "entity_mismatch",
                url=request.url,
                expected=request.entity,
                extracted=result.entity,
            )
            return self._failed(request, state, ExtractionError(request.url, "page belongs to another shop"))

        if self._token.cancelled:
            log_event(
                logger,
                logging.INFO,
                "request_abandoned",
                entity=request.entity,
                url=request.url,
                reason=self._token.reason,
            )
            return PageOutcome(request=request, state=state, abandoned=True)

        decision = self._policy.decide(result, self._quota)
        state = RequestState.ACCOUNTED

        follow_up = None
        if decision.enqueue_next and result.next_page_url:
            follow_up = FrontierRequest(
                url=result.next_page_url,
                entity=request.entity,
                page_number=request.page_number + 1,
            )

        try:
            self._ledger.checkpoint(
                request.entity,
                result.next_page_url,
                finished=not result.has_next_page_link,
            )
            self._ledger.flush()
            if decision.accepted:
                self._sink.append(decision.accepted)
        except Exception as exc:  # noqa: BLE001
            outcome = self._failed(request, state, exc)
            self._rollback(request, decision.granted)
            return outcome

        log_event(
            logger,
            logging.INFO,
            "page_committed",
            entity=request.entity,
            page=request.page_number,
            url=request.url,
            requested=decision.requested,
            granted=decision.granted,
            progress=format_progress(self._ledger.accepted(request.entity), self._quota),
            next_page=follow_up.url if follow_up else None,
        )
        return PageOutcome(
            request=request,
            state=RequestState.COMMITTED,
            accepted=decision.granted,
            follow_up=follow_up,
        )

    def _rollback(self, request: FrontierRequest, granted: int) -> None:
        """Undo the accounting of a page whose records never reached the sink.

        The grant is returned and the cursor points back at the page, so a
        restarted run fetches it again.
        """
        self._ledger.release(request.entity, granted)
        self._ledger.checkpoint(request.entity, request.url, finished=False)
        try:
            self._ledger.flush()
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "ledger_rollback_flush_failed",
                entity=request.entity,
                url=request.url,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @staticmethod
    def _failed(request: FrontierRequest, state: RequestState, exc: Exception) -> PageOutcome:
        log_event(
            logger,
            logging.ERROR,
            "page_failed",
            entity=request.entity,
            page=request.page_number,
            url=request.url,
            stage=state.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return PageOutcome(
            request=request,
            state=RequestState.FAILED,
            error_type=type(exc).__name__,
        )
