from __future__ import annotations

from typing import Optional


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class FetchError(HarvesterError):
    """A page could not be fetched. Fails the request, never the run."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{message} (url={url}, status={status_code})")
        self.url = url
        self.status_code = status_code


class ExtractionError(HarvesterError):
    """A fetched page did not have the structure of a review listing."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} (url={url})")
        self.url = url


class LedgerCorruption(HarvesterError):
    """The persisted ledger snapshot could not be decoded."""


class ConfigurationError(HarvesterError):
    """Invalid run configuration. Raised before any crawling starts."""
