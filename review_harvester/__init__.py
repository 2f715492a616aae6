"""Shop review harvester package.

Crawls paginated shop review listings, extracts review records and keeps a
durable per-shop quota so an interrupted run can resume without exceeding it.

Key modules:
    models          -- ReviewRecord, PageResult, FrontierRequest and friends
    errors          -- FetchError, ExtractionError, LedgerCorruption, ConfigurationError
    config          -- CrawlConfig and input/CLI merging
    fetchers        -- HttpFetcher (requests), ImpersonatingFetcher (curl_cffi)
    factory         -- FetcherFactory for choosing a transport
    extractor       -- HeurekaReviewExtractor (BeautifulSoup)
    storage         -- key-value stores and dataset sinks
    ledger          -- QuotaLedger with per-shop reservation and resume cursor
    policy          -- FrontierPolicy deciding acceptance and pagination
    frontier        -- EntityFrontier, one outstanding request per shop
    controller      -- CrawlController driving the worker pool
    lifecycle       -- CancellationToken and LifecycleGuard for termination signals
    rate_limiter    -- DomainRateLimiter for per-host request spacing
    backoff         -- BackoffStrategy for exponential retry delays
    logging_utils   -- structured JSON log lines
"""
