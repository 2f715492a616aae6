"""
Run configuration: defaults, optional JSON input file, CLI overrides.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ConfigurationError
from .factory import FETCHER_KINDS
from .models import shop_key

DEFAULT_SHOP_URL = "https://obchody.heureka.cz/kaufland-cz/recenze/"
DEFAULT_STATE_DIR = os.path.join("storage", "key_value_stores", "default")
DEFAULT_DATASET_PATH = os.path.join("storage", "datasets", "default.jsonl")


@dataclass(frozen=True)
class CrawlConfig:
    shop_urls: Tuple[str, ...] = (DEFAULT_SHOP_URL,)
    max_reviews: Optional[int] = None
    max_requests: Optional[int] = None
    parallelism: int = 1
    fetcher: str = "http"
    domain_delay_secs: float = 2.0
    timeout_secs: float = 20.0
    max_retries: int = 3
    proxies: Tuple[str, ...] = field(default_factory=tuple)
    state_dir: str = DEFAULT_STATE_DIR
    dataset_path: str = DEFAULT_DATASET_PATH
    reset_state: bool = False

    def validate(self) -> "CrawlConfig":
        if not self.shop_urls:
            raise ConfigurationError("At least one shop URL is required")
        for url in self.shop_urls:
            if urlsplit(url).scheme not in ("http", "https"):
                raise ConfigurationError(f"Shop URL must be http(s): {url!r}")
            shop_key(url)
        if self.max_reviews is not None and self.max_reviews < 0:
            raise ConfigurationError(f"max_reviews must be >= 0, got {self.max_reviews}")
        if self.max_requests is not None and self.max_requests < 1:
            raise ConfigurationError(f"max_requests must be >= 1, got {self.max_requests}")
        if self.parallelism < 1:
            raise ConfigurationError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.fetcher not in FETCHER_KINDS:
            raise ConfigurationError(
                f"Unknown fetcher {self.fetcher!r}; expected one of {sorted(FETCHER_KINDS)}"
            )
        if self.domain_delay_secs < 0:
            raise ConfigurationError("domain_delay_secs must be >= 0")
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be >= 1")
        return self


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"{name} must be a whole number, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def load_input_file(path: str) -> Dict[str, Any]:
    """Read a JSON input document (``shopUrl``/``shopUrls``, ``maxReviews``, ...)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Input file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Input file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(doc, dict):
        raise ConfigurationError(f"Input file must contain a JSON object: {path}")
    return doc


def config_from_input(doc: Mapping[str, Any], base: Optional[CrawlConfig] = None) -> CrawlConfig:
    cfg = base or CrawlConfig()
    urls: List[str] = []
    if doc.get("shopUrl"):
        urls.append(str(doc["shopUrl"]))
    if doc.get("shopUrls"):
        if not isinstance(doc["shopUrls"], list):
            raise ConfigurationError("shopUrls must be a list")
        urls.extend(str(u) for u in doc["shopUrls"])
    updates: Dict[str, Any] = {}
    if urls:
        updates["shop_urls"] = tuple(urls)
    if "maxReviews" in doc:
        updates["max_reviews"] = _optional_int(doc["maxReviews"], "maxReviews")
    if "maxRequestsPerCrawl" in doc:
        updates["max_requests"] = _optional_int(doc["maxRequestsPerCrawl"], "maxRequestsPerCrawl")
    if "maxConcurrency" in doc:
        parallelism = _optional_int(doc["maxConcurrency"], "maxConcurrency")
        if parallelism is not None:
            updates["parallelism"] = parallelism
    if doc.get("proxyUrls"):
        updates["proxies"] = tuple(str(p) for p in doc["proxyUrls"])
    return replace(cfg, **updates)


def build_config(overrides: Mapping[str, Any], input_path: Optional[str] = None) -> CrawlConfig:
    """Merge defaults, the optional input file and CLI overrides, then validate.

    ``overrides`` holds CrawlConfig field names; None values are ignored.
    """
    cfg = CrawlConfig()
    if input_path:
        cfg = config_from_input(load_input_file(input_path), cfg)
    updates = {k: v for k, v in overrides.items() if v is not None}
    for key in ("shop_urls", "proxies"):
        if key in updates:
            if not updates[key]:
                del updates[key]
            else:
                updates[key] = tuple(updates[key])
    try:
        cfg = replace(cfg, **updates)
    except TypeError as exc:
        raise ConfigurationError(str(exc)) from exc
    return cfg.validate()
