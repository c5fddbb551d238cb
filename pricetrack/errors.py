"""Exception hierarchy shared by the scraping pipeline."""
from __future__ import annotations

from typing import Optional


class PricetrackError(Exception):
    """Base class for every pipeline error."""


class FetchError(PricetrackError):
    """Outbound request did not produce a usable body."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url


class TransportError(FetchError):
    """Connection, TLS or timeout failure before a response arrived."""


class UpstreamStatusError(FetchError):
    """Upstream answered with a non-success status."""

    def __init__(self, url: str, status: int) -> None:
        super().__init__(url, f"unexpected status code: {status}")
        self.status = status


class PermanentError(PricetrackError):
    """Failure that cannot succeed on redelivery of the same task."""


class ParseError(PermanentError):
    """Payload is malformed or lacks required fields."""


class PersistenceError(PricetrackError):
    """Repository operation failed."""


class CrawlError(PricetrackError):
    """A category crawl could not start (page 1 unavailable)."""

    def __init__(self, category_slug: str, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"category {category_slug}: {message}")
        self.category_slug = category_slug
        self.cause = cause


class QueueError(PricetrackError):
    """Broker connection or channel failure."""
