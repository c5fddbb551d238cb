"""Queue-driven product scraping.

This package provides the on-demand half of the pipeline:
- A durable task queue with at-least-once delivery (Postgres)
- A worker that scrapes one product per task
- A scheduler that enqueues products due for a re-scrape
"""

from .queue import Delivery, DeliveryOutcome, PostgresQueue, TaskQueue, connect_queue
from .scheduler import HotProductScheduler, ProductSelector, StalenessSelector
from .worker import ScrapeWorker, WorkerConfig

__all__ = [
    "Delivery",
    "DeliveryOutcome",
    "PostgresQueue",
    "TaskQueue",
    "connect_queue",
    "HotProductScheduler",
    "ProductSelector",
    "StalenessSelector",
    "ScrapeWorker",
    "WorkerConfig",
]
