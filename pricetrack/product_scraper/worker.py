"""Worker for processing product scraping tasks."""
from __future__ import annotations

import logging
import os
import signal
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from pricetrack.collector.crawler import PageSource
from pricetrack.collector.mapper import parse_product_detail, product_detail_url
from pricetrack.models import ScrapeTask
from pricetrack.upsert import Repository

from .queue import DEFAULT_QUEUE, TaskQueue

LOGGER = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{os.getenv('HOSTNAME', 'worker')}-{uuid.uuid4().hex[:8]}"


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    queue_name: str = DEFAULT_QUEUE
    graceful_shutdown: bool = True
    max_tasks: Optional[int] = None  # Max tasks before shutdown (for testing)


class ScrapeWorker:
    """Queue consumer that scrapes one product per task."""

    def __init__(
        self,
        config: WorkerConfig,
        session: PageSource,
        repository: Repository,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        session : PageSource
            Fetch client used for product detail requests
        repository : Repository
            Persistence target for products, variants and prices
        """
        self.config = config
        self.session = session
        self.repository = repository
        self.stop_event = threading.Event()
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        if self.config.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        """Handle shutdown signal."""
        LOGGER.info("Received shutdown signal %s, stopping gracefully...", signum)
        self.stop_event.set()

    def scrape(self, task: ScrapeTask) -> int:
        """Fetch, parse and persist one product; returns observations inserted.

        The product row is written before its variants and the variants
        before their price observations. When the task names a variant only
        that variant's observation is recorded. Errors propagate so the
        queue can decide between redelivery and drop.
        """
        start_time = time.time()
        url = product_detail_url(task.product_key, task.variant_key)
        detail = parse_product_detail(self.session.get(url), url=url)

        self.repository.upsert_product(detail.product)
        for variant in detail.variants:
            self.repository.upsert_variant(variant)

        inserted = 0
        for observation in detail.observations:
            if task.variant_key and observation.variant_key != task.variant_key:
                continue
            if self.repository.insert_price_observation(observation):
                inserted += 1

        LOGGER.info(
            "Scraped product %s: %d variant(s), %d price(s) (took %.2fs)",
            task.product_key,
            len(detail.variants),
            inserted,
            time.time() - start_time,
        )
        return inserted

    def handle(self, task: ScrapeTask) -> None:
        """Queue handler: scrape and keep counters."""
        self.tasks_processed += 1
        try:
            self.scrape(task)
        except Exception:
            self.tasks_failed += 1
            raise
        self.tasks_succeeded += 1

    def run(self, queue: TaskQueue) -> int:
        """Consume tasks until a shutdown signal or ``max_tasks``."""
        self._setup_signal_handlers()
        LOGGER.info(
            "Starting worker %s on queue %s",
            self.config.worker_id,
            self.config.queue_name,
        )
        try:
            return queue.consume(
                self.config.queue_name,
                self.handle,
                stop_event=self.stop_event,
                consumer_id=self.config.worker_id,
                max_messages=self.config.max_tasks,
            )
        finally:
            self._log_stats()

    def _log_stats(self) -> None:
        """Log worker statistics."""
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d",
            self.config.worker_id,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_failed,
        )
