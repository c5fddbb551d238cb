"""Periodic selection of products due for a re-scrape."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from pricetrack.errors import PricetrackError
from pricetrack.models import ScrapeTask, utcnow
from pricetrack.upsert import Repository

from .queue import DEFAULT_QUEUE, TaskQueue

LOGGER = logging.getLogger(__name__)


class ProductSelector(Protocol):
    """Selection policy: bounded, deterministic and read-only."""

    def select_due(self, limit: int) -> List[ScrapeTask]:
        ...


class StalenessSelector:
    """Pick tracked products whose last scrape is too old.

    A product is due when it was never scraped, was scraped before
    ``now - staleness``, or is hot (``crawl_priority >= hot_priority``) and
    was scraped before ``now - hot_staleness``. Hot products come first,
    then the stalest.
    """

    def __init__(
        self,
        repository: Repository,
        staleness: float = 6 * 3600.0,
        hot_staleness: float = 3600.0,
        hot_priority: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.staleness = staleness
        self.hot_staleness = hot_staleness
        self.hot_priority = hot_priority
        self.clock = clock

    def select_due(self, limit: int) -> List[ScrapeTask]:
        now = self.clock()
        keys = self.repository.select_due_products(
            now - timedelta(seconds=self.staleness),
            self.hot_priority,
            now - timedelta(seconds=self.hot_staleness),
            limit,
        )
        return [ScrapeTask(product_key=key) for key in keys]


class HotProductScheduler:
    """Publish scrape tasks for due products on a fixed interval."""

    def __init__(
        self,
        selector: ProductSelector,
        queue: TaskQueue,
        interval: float = 3600.0,
        limit: int = 500,
        queue_name: str = DEFAULT_QUEUE,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize scheduler.

        Parameters
        ----------
        selector : ProductSelector
            Policy deciding which products are due
        queue : TaskQueue
            Broker the tasks are published to
        interval : float
            Seconds between cycle starts
        limit : int
            Maximum tasks published per cycle
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.selector = selector
        self.queue = queue
        self.interval = interval
        self.limit = limit
        self.queue_name = queue_name
        self._monotonic = monotonic
        self.cycles = 0

    def run_cycle(self) -> int:
        """Select due products and publish one task each; returns tasks published."""
        try:
            tasks = self.selector.select_due(self.limit)
        except PricetrackError as exc:
            LOGGER.error("Selecting due products failed, skipping cycle: %s", exc)
            return 0

        published = 0
        for task in tasks:
            try:
                self.queue.publish(task, self.queue_name)
            except PricetrackError as exc:
                LOGGER.warning("Failed to publish task for %s: %s", task.product_key, exc)
                continue
            published += 1

        LOGGER.info("Scheduled %d/%d due product(s) on %s", published, len(tasks), self.queue_name)
        return published

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> int:
        """Run cycles until ``stop_event`` is set.

        The first cycle starts immediately. Later cycles start on a fixed
        grid of ``interval`` seconds; a cycle that overruns skips the ticks
        it missed instead of running them back to back.

        Returns
        -------
        int
            Number of cycles completed
        """
        stop_event = stop_event or threading.Event()
        LOGGER.info(
            "Hot-product scheduler started: interval=%.0fs, limit=%d",
            self.interval,
            self.limit,
        )

        next_tick = self._monotonic()
        while not stop_event.is_set():
            self.run_cycle()
            self.cycles += 1
            if max_cycles is not None and self.cycles >= max_cycles:
                break

            next_tick += self.interval
            now = self._monotonic()
            if now >= next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                LOGGER.warning("Cycle overran, skipping %d tick(s)", missed)
                next_tick += missed * self.interval
            stop_event.wait(next_tick - now)

        LOGGER.info("Hot-product scheduler stopped after %d cycle(s)", self.cycles)
        return self.cycles
