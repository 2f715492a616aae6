"""Tests for the CrawlController."""

import threading
import unittest

from review_harvester.config import CrawlConfig
from review_harvester.controller import CrawlController
from review_harvester.errors import ExtractionError
from review_harvester.ledger import QuotaLedger
from review_harvester.lifecycle import CancellationToken
from review_harvester.models import FrontierRequest, PageResult, RenderedPage, RequestState
from review_harvester.storage import InMemoryDatasetSink, InMemoryKeyValueStore

from page_fixtures import (
    ENTITY_A,
    ENTITY_B,
    SHOP_A,
    SHOP_B,
    ScriptedExtractor,
    ScriptedFetcher,
    blank_page,
    drafts,
    listing_page,
    page_url,
    review_item,
)


def _chain(base, entity, sizes, last_has_next=False):
    """Scripted pages for one shop: ``sizes[i]`` drafts on page i+1."""
    pages, results = {}, {}
    for i, size in enumerate(sizes, start=1):
        url = page_url(base, i)
        has_next = i < len(sizes) or last_has_next
        pages[url] = blank_page(url)
        results[url] = PageResult(
            entity,
            drafts(entity, size, f"p{i}-"),
            page_url(base, i + 1) if has_next else None,
        )
    return pages, results


class ControllerTestCase(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryKeyValueStore()
        self.ledger = QuotaLedger(self.store)
        self.ledger.load()
        self.sink = InMemoryDatasetSink()

    def make_controller(self, pages, results, token=None, **config):
        config.setdefault("shop_urls", (SHOP_A,))
        self.fetcher = ScriptedFetcher(pages)
        return CrawlController(
            config=CrawlConfig(**config),
            fetcher=self.fetcher,
            ledger=self.ledger,
            sink=self.sink,
            extractor=ScriptedExtractor(results),
            token=token,
        )


class TestQuotaScenarios(ControllerTestCase):

    def test_shop_a_quota_cuts_second_page(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3, 4, 4])
        controller = self.make_controller(pages, results, max_reviews=5)
        summary = controller.run()

        self.assertEqual(self.fetcher.calls, [page_url(SHOP_A, 1), page_url(SHOP_A, 2)])
        self.assertEqual([r.author for r in self.sink.records], ["p1-0", "p1-1", "p1-2", "p2-0", "p2-1"])
        self.assertEqual(self.ledger.accepted(ENTITY_A), 5)
        self.assertEqual(summary.committed, 2)
        self.assertEqual(summary.accepted_by_entity, {ENTITY_A: 5})

    def test_zero_quota_fetches_nothing(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3, 3])
        controller = self.make_controller(pages, results, max_reviews=0)
        controller.run()
        self.assertEqual(self.fetcher.calls, [])
        self.assertEqual(self.sink.records, [])

    def test_quota_filled_exactly_skips_next_page(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3, 3])
        controller = self.make_controller(pages, results, max_reviews=3)
        controller.run()
        self.assertEqual(self.fetcher.calls, [page_url(SHOP_A, 1)])

    def test_exhausted_quota_skips_queued_request_without_fetch(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3, 3])
        controller = self.make_controller(pages, results, max_reviews=3)
        self.ledger.reserve(ENTITY_A, 3, 3)
        controller.frontier.push(FrontierRequest(page_url(SHOP_A, 2), ENTITY_A, 2))
        summary = controller.run()
        self.assertEqual(self.fetcher.calls, [])
        self.assertEqual(summary.skipped, 1)

    def test_empty_page_with_next_link_keeps_paginating(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 0, 2])
        controller = self.make_controller(pages, results, max_reviews=10)
        controller.run()
        self.assertEqual(len(self.fetcher.calls), 3)
        self.assertEqual(self.ledger.accepted(ENTITY_A), 4)

    def test_unbounded_quota_follows_every_link(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [5, 5, 5, 5])
        controller = self.make_controller(pages, results)
        controller.run()
        self.assertEqual(len(self.fetcher.calls), 4)
        self.assertEqual(len(self.sink.records), 20)

    def test_entities_have_separate_quotas(self):
        pages_a, results_a = _chain(SHOP_A, ENTITY_A, [3, 3])
        pages_b, results_b = _chain(SHOP_B, ENTITY_B, [2, 2])
        pages_a.update(pages_b)
        results_a.update(results_b)
        controller = self.make_controller(
            pages_a, results_a, shop_urls=(SHOP_A, SHOP_B), max_reviews=4, parallelism=2
        )
        summary = controller.run()
        self.assertEqual(summary.accepted_by_entity, {ENTITY_A: 4, ENTITY_B: 4})


class TestFailures(ControllerTestCase):

    def test_fetch_failure_stops_only_that_shop(self):
        pages_a, results_a = _chain(SHOP_A, ENTITY_A, [2, 2])
        del pages_a[page_url(SHOP_A, 2)]
        pages_b, results_b = _chain(SHOP_B, ENTITY_B, [1, 1])
        pages_a.update(pages_b)
        results_a.update(results_b)
        controller = self.make_controller(pages_a, results_a, shop_urls=(SHOP_A, SHOP_B))
        with self.assertLogs("review_harvester.controller", level="ERROR") as logs:
            summary = controller.run()
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.committed, 3)
        self.assertIn("FetchError", "\n".join(logs.output))
        self.assertEqual(self.ledger.accepted(ENTITY_B), 2)

    def test_failed_page_keeps_resume_cursor(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 2])
        del pages[page_url(SHOP_A, 2)]
        controller = self.make_controller(pages, results)
        with self.assertLogs("review_harvester.controller", level="ERROR"):
            controller.run()
        self.assertEqual(self.ledger.entry(ENTITY_A).cursor, page_url(SHOP_A, 2))

    def test_extraction_error_marks_request_failed(self):
        url = page_url(SHOP_A, 1)

        class BrokenExtractor:
            def extract(self, page):
                raise ExtractionError(page.url, "bad markup")

        controller = CrawlController(
            config=CrawlConfig(shop_urls=(SHOP_A,)),
            fetcher=ScriptedFetcher({url: blank_page(url)}),
            ledger=self.ledger,
            sink=self.sink,
            extractor=BrokenExtractor(),
        )
        request = FrontierRequest(url, ENTITY_A)
        with self.assertLogs("review_harvester.controller", level="ERROR"):
            outcome = controller.process_request(request)
        self.assertIs(outcome.state, RequestState.FAILED)
        self.assertEqual(outcome.error_type, "ExtractionError")
        self.assertEqual(self.ledger.accepted(ENTITY_A), 0)

    def test_sink_failure_after_flush_fails_request(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 2])

        class FailingSink(InMemoryDatasetSink):
            def append(self, records):
                raise OSError("disk full")

        self.sink = FailingSink()
        controller = self.make_controller(pages, results, max_reviews=10)
        with self.assertLogs("review_harvester.controller", level="ERROR"):
            summary = controller.run()
        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.fetcher.calls, [page_url(SHOP_A, 1)])

        entry = self.ledger.entry(ENTITY_A)
        self.assertEqual(entry.cursor, page_url(SHOP_A, 1))
        self.assertEqual(entry.accepted, 0)
        self.assertFalse(entry.finished)

        ledger = QuotaLedger(self.store)
        ledger.load()
        self.ledger = ledger
        self.sink = InMemoryDatasetSink()
        self.make_controller(pages, results, max_reviews=10).run()
        self.assertEqual(self.fetcher.calls, [page_url(SHOP_A, 1), page_url(SHOP_A, 2)])
        self.assertEqual(ledger.accepted(ENTITY_A), 4)
        self.assertEqual(len(self.sink.records), 4)

    def test_ledger_write_failure_leaves_page_to_retry(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 2])

        class FlakyStore(InMemoryKeyValueStore):
            def __init__(self):
                super().__init__()
                self.failures = 1

            def put(self, key, value):
                if self.failures:
                    self.failures -= 1
                    raise OSError("read-only file system")
                super().put(key, value)

        self.store = FlakyStore()
        self.ledger = QuotaLedger(self.store)
        self.ledger.load()
        controller = self.make_controller(pages, results, max_reviews=10)
        with self.assertLogs("review_harvester.controller", level="ERROR"):
            summary = controller.run()
        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.sink.records, [])

        restored = QuotaLedger(self.store)
        restored.load()
        self.assertEqual(restored.entry(ENTITY_A).cursor, page_url(SHOP_A, 1))
        self.assertEqual(restored.accepted(ENTITY_A), 0)


class TestDurabilityAndRestart(ControllerTestCase):

    def test_ledger_is_flushed_before_sink_write(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3])
        store = self.store
        observed = []

        class CheckingSink(InMemoryDatasetSink):
            def append(self, records):
                restored = QuotaLedger(store)
                restored.load()
                observed.append(restored.accepted(ENTITY_A))
                super().append(records)

        self.sink = CheckingSink()
        self.make_controller(pages, results, max_reviews=10).run()
        self.assertEqual(observed, [3])

    def test_restart_resumes_from_cursor_without_refetching(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 2, 2, 2])
        self.make_controller(pages, results, max_reviews=10, max_requests=2).run()
        self.assertEqual(self.ledger.accepted(ENTITY_A), 4)

        ledger = QuotaLedger(self.store)
        ledger.load()
        self.ledger = ledger
        controller = self.make_controller(pages, results, max_reviews=10)
        controller.run()
        self.assertEqual(self.fetcher.calls, [page_url(SHOP_A, 3), page_url(SHOP_A, 4)])
        self.assertEqual(ledger.accepted(ENTITY_A), 8)

    def test_restart_of_finished_shop_fetches_nothing(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2, 2])
        self.make_controller(pages, results).run()

        ledger = QuotaLedger(self.store)
        ledger.load()
        self.ledger = ledger
        self.make_controller(pages, results).run()
        self.assertEqual(self.fetcher.calls, [])

    def test_restart_with_exhausted_quota_stays_bounded(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [3, 3, 3])
        self.make_controller(pages, results, max_reviews=4).run()
        for _ in range(2):
            ledger = QuotaLedger(self.store)
            ledger.load()
            self.ledger = ledger
            self.make_controller(pages, results, max_reviews=4).run()
            self.assertEqual(self.fetcher.calls, [])
            self.assertEqual(ledger.accepted(ENTITY_A), 4)


class TestCancellation(ControllerTestCase):

    def test_cancelled_token_prevents_dispatch(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [2])
        token = CancellationToken()
        token.cancel("SIGTERM")
        summary = self.make_controller(pages, results, token=token).run()
        self.assertEqual(self.fetcher.calls, [])
        self.assertTrue(summary.interrupted)
        self.assertIsNotNone(self.store.get("QUOTA_LEDGER"))

    def test_cancel_during_fetch_abandons_request(self):
        url = page_url(SHOP_A, 1)
        token = CancellationToken()
        results = {url: PageResult(ENTITY_A, drafts(ENTITY_A, 2), page_url(SHOP_A, 2))}

        class CancellingFetcher(ScriptedFetcher):
            def fetch(self, u):
                page = super().fetch(u)
                token.cancel("migrating")
                return page

        controller = CrawlController(
            config=CrawlConfig(shop_urls=(SHOP_A,)),
            fetcher=CancellingFetcher({url: blank_page(url)}),
            ledger=self.ledger,
            sink=self.sink,
            extractor=ScriptedExtractor(results),
            token=token,
        )
        summary = controller.run()
        self.assertEqual(summary.abandoned, 1)
        self.assertEqual(summary.committed, 0)
        self.assertEqual(self.sink.records, [])
        self.assertEqual(self.ledger.accepted(ENTITY_A), 0)

    def test_request_budget_stops_dispatch(self):
        pages, results = _chain(SHOP_A, ENTITY_A, [1, 1, 1, 1, 1])
        controller = self.make_controller(pages, results, max_requests=3)
        summary = controller.run()
        self.assertEqual(len(self.fetcher.calls), 3)
        self.assertEqual(controller.dispatched, 3)
        self.assertFalse(summary.interrupted)


class TestOrdering(ControllerTestCase):

    def test_pages_of_one_shop_never_overlap(self):
        pages_a, results_a = _chain(SHOP_A, ENTITY_A, [1, 1, 1])
        pages_b, results_b = _chain(SHOP_B, ENTITY_B, [1, 1, 1])
        pages_a.update(pages_b)
        results_a.update(results_b)
        active = {}
        lock = threading.Lock()
        overlaps = []
        order = []

        class TrackingFetcher(ScriptedFetcher):
            def fetch(self, url):
                entity = ENTITY_A if "shop-a" in url else ENTITY_B
                with lock:
                    if active.get(entity):
                        overlaps.append(url)
                    active[entity] = True
                    order.append(url)
                try:
                    return super().fetch(url)
                finally:
                    with lock:
                        active[entity] = False

        controller = CrawlController(
            config=CrawlConfig(shop_urls=(SHOP_A, SHOP_B), parallelism=4),
            fetcher=TrackingFetcher(pages_a),
            ledger=self.ledger,
            sink=self.sink,
            extractor=ScriptedExtractor(results_a),
        )
        controller.run()
        self.assertEqual(overlaps, [])
        a_order = [u for u in order if "shop-a" in u]
        self.assertEqual(a_order, [page_url(SHOP_A, n) for n in (1, 2, 3)])


class TestWithRealExtractor(ControllerTestCase):

    def test_html_pages_end_to_end(self):
        p1 = page_url(SHOP_A, 1)
        p2 = page_url(SHOP_A, 2)
        fetcher = ScriptedFetcher({
            p1: RenderedPage(p1, 200, listing_page([review_item("Jana"), review_item("Petr")], 1, 2)),
            p2: RenderedPage(p2, 200, listing_page([review_item("Eva"), review_item("Ivo")], 2, 2)),
        })
        controller = CrawlController(
            config=CrawlConfig(shop_urls=(SHOP_A,), max_reviews=3),
            fetcher=fetcher,
            ledger=self.ledger,
            sink=self.sink,
        )
        controller.run()
        self.assertEqual([r.author for r in self.sink.records], ["Jana", "Petr", "Eva"])
        self.assertEqual({r.shop for r in self.sink.records}, {ENTITY_A})


if __name__ == "__main__":
    unittest.main()
