from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from review_harvester.backoff import BackoffStrategy
from review_harvester.config import CrawlConfig, build_config
from review_harvester.controller import CrawlController
from review_harvester.errors import ConfigurationError
from review_harvester.factory import FetcherFactory
from review_harvester.ledger import QuotaLedger
from review_harvester.lifecycle import LifecycleGuard
from review_harvester.logging_utils import configure_logging, log_event
from review_harvester.models import RunSummary
from review_harvester.rate_limiter import DomainRateLimiter
from review_harvester.storage import FileKeyValueStore, JsonlDatasetSink

logger = logging.getLogger("review_harvester.main")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def run_crawl(config: CrawlConfig) -> RunSummary:
    store = FileKeyValueStore(config.state_dir)
    ledger = QuotaLedger(store)
    if config.reset_state:
        ledger.reset()
    ledger.load()

    factory = FetcherFactory(
        rate_limiter=DomainRateLimiter(config.domain_delay_secs),
        backoff=BackoffStrategy(),
        max_retries=config.max_retries,
        timeout=config.timeout_secs,
        proxies=config.proxies,
    )
    fetcher = factory.create(config.fetcher)
    sink = JsonlDatasetSink(config.dataset_path)

    try:
        with LifecycleGuard(ledger) as guard:
            controller = CrawlController(
                config=config,
                fetcher=fetcher,
                ledger=ledger,
                sink=sink,
                token=guard.token,
            )
            return controller.run()
    finally:
        sink.close()
        fetcher.close()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Harvest paginated shop reviews under a per-shop quota")
    parser.add_argument("--input", help="JSON input file (shopUrl/shopUrls, maxReviews, maxRequestsPerCrawl)")
    parser.add_argument("--shop-url", action="append", dest="shop_urls", help="Shop review listing URL (repeatable)")
    parser.add_argument("--max-reviews", type=int, help="Max reviews to collect per shop (default: unbounded)")
    parser.add_argument("--max-requests", type=int, help="Max page requests for the whole run (default: unbounded)")
    parser.add_argument("--parallelism", type=int, help="Worker pool size (default: 1)")
    parser.add_argument("--fetcher", choices=["http", "impersonate"], help="Fetch transport (default: http)")
    parser.add_argument("--domain-delay", type=float, dest="domain_delay_secs", help="Seconds between requests to one host")
    parser.add_argument("--timeout", type=float, dest="timeout_secs", help="Request timeout in seconds")
    parser.add_argument("--max-retries", type=int, help="Fetch attempts per page")
    parser.add_argument("--proxy", action="append", dest="proxies", help="Proxy URL, rotated round-robin (repeatable)")
    parser.add_argument("--state-dir", help="Directory of the key-value store holding the quota ledger")
    parser.add_argument("--dataset", dest="dataset_path", help="Output JSONL file path")
    parser.add_argument("--reset-state", action="store_true", default=None, help="Forget quota ledger from earlier runs")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    overrides = {k: v for k, v in vars(args).items() if k not in ("input", "log_level")}
    try:
        config = build_config(overrides, input_path=args.input)
    except ConfigurationError as exc:
        log_event(logger, logging.ERROR, "configuration_error", error=str(exc))
        return EXIT_CONFIG_ERROR

    summary = run_crawl(config)
    for entity, accepted in sorted(summary.accepted_by_entity.items()):
        print(f"{entity}: {accepted} reviews")
    print(
        f"\nDONE: committed={summary.committed} failed={summary.failed} "
        f"skipped={summary.skipped} abandoned={summary.abandoned} accepted={summary.total_accepted}"
    )
    return EXIT_INTERRUPTED if summary.interrupted else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
