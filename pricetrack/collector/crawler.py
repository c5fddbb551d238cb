"""Paginated, thread-pooled category crawler."""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

import yaml

from pricetrack.collector.mapper import category_search_url, parse_category_page
from pricetrack.errors import CrawlError, PersistenceError, PricetrackError
from pricetrack.models import Category, Product, utcnow

LOGGER = logging.getLogger(__name__)

CATEGORIES_PATH = Path(__file__).with_name("categories.yaml")
CATEGORY_URL = "https://www.digikala.com/search/category-{slug}/"


class PageSource(Protocol):
    def get(self, url: str) -> str:
        ...


@dataclass
class CategoryResult:
    category_slug: str
    product_count: int = 0
    duration: float = 0.0
    error: Optional[Exception] = None


@dataclass
class CrawlStats:
    """Run-wide counters; safe to update from crawler threads."""

    total_products: int = 0
    saved_products: int = 0
    failed_products: int = 0
    total_pages: int = 0
    failed_pages: int = 0
    started_at: float = field(default_factory=time.time)
    category_results: Dict[str, CategoryResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, **counts: int) -> None:
        with self._lock:
            for name, value in counts.items():
                setattr(self, name, getattr(self, name) + value)

    def record(self, result: CategoryResult) -> None:
        with self._lock:
            self.category_results[result.category_slug] = result


def load_categories(path: Path | str = CATEGORIES_PATH) -> Dict[str, str]:
    """Read the slug -> display name map of crawlable categories."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("categories"), dict):
        raise ValueError("categories file must contain a 'categories' mapping")
    return {str(slug): str(name) for slug, name in data["categories"].items()}


def fetch_page(session: PageSource, category_slug: str, page: int) -> Tuple[List[Product], int]:
    url = category_search_url(category_slug, page)
    return parse_category_page(session.get(url), category_slug, url=url)


def crawl_category(
    session: PageSource,
    category_slug: str,
    max_products: int = 0,
    concurrency: int = 3,
    delay: float = 2.0,
    stats: Optional[CrawlStats] = None,
) -> List[Product]:
    """Crawl every page of a category and return the products found.

    Page 1 is fetched synchronously to learn the page count; its failure
    raises ``CrawlError``. Remaining pages are drained from a queue by
    ``concurrency`` threads. Each thread re-checks the product cap before a
    fetch and turns the remaining entries into no-ops once it is reached.
    A failed page is logged and skipped. ``max_products=0`` means no cap.
    Result order is not defined.
    """
    stats = stats if stats is not None else CrawlStats()

    try:
        first_page, total_pages = fetch_page(session, category_slug, 1)
    except PricetrackError as exc:
        raise CrawlError(category_slug, f"failed to fetch first page: {exc}", exc) from exc

    LOGGER.info("Category %s: %d page(s)", category_slug, total_pages)
    stats.add(total_pages=total_pages, total_products=len(first_page))

    collected: List[Product] = list(first_page)
    lock = threading.Lock()

    if total_pages > 1 and (max_products <= 0 or len(collected) < max_products):
        pages: queue.Queue[int] = queue.Queue(maxsize=total_pages - 1)
        for page in range(2, total_pages + 1):
            pages.put_nowait(page)

        def work(worker_id: int) -> None:
            while True:
                try:
                    page = pages.get_nowait()
                except queue.Empty:
                    return

                if max_products > 0:
                    with lock:
                        reached = len(collected) >= max_products
                    if reached:
                        continue

                LOGGER.debug(
                    "Worker %d: fetching %s page %d/%d",
                    worker_id,
                    category_slug,
                    page,
                    total_pages,
                )
                try:
                    products, _ = fetch_page(session, category_slug, page)
                except PricetrackError as exc:
                    LOGGER.warning("Worker %d: %s page %d failed: %s", worker_id, category_slug, page, exc)
                    stats.add(failed_pages=1)
                except Exception as exc:
                    LOGGER.error(
                        "Worker %d: %s page %d crashed: %s",
                        worker_id,
                        category_slug,
                        page,
                        exc,
                        exc_info=True,
                    )
                    stats.add(failed_pages=1)
                else:
                    with lock:
                        collected.extend(products)
                    stats.add(total_products=len(products))

                time.sleep(delay)

        workers = [
            threading.Thread(target=work, args=(i,), name=f"crawl-{category_slug}-{i}", daemon=True)
            for i in range(max(1, min(concurrency, total_pages - 1)))
        ]
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join()

    if max_products > 0 and len(collected) > max_products:
        del collected[max_products:]
    return collected


def save_products(repository, products: List[Product], batch_size: int = 50) -> Tuple[int, int]:
    """Persist products in batches.

    A failing batch is retried row by row so one bad row costs only itself.

    Returns
    -------
    tuple[int, int]
        (saved, failed)
    """
    saved = failed = 0
    batch_size = max(1, batch_size)
    for start in range(0, len(products), batch_size):
        batch = products[start:start + batch_size]
        LOGGER.info("Saving batch %d-%d of %d", start + 1, start + len(batch), len(products))
        try:
            saved += repository.upsert_products(batch)
            continue
        except PersistenceError as exc:
            LOGGER.warning("Batch save failed, retrying row by row: %s", exc)

        for product in batch:
            try:
                repository.upsert_product(product)
                saved += 1
            except PersistenceError as exc:
                LOGGER.warning("Failed to save product %s: %s", product.product_key, exc)
                failed += 1
    return saved, failed


def category_record(category_slug: str, category_name: str, product_count: int) -> Category:
    return Category(
        category_slug=category_slug,
        category_name=category_name,
        category_url=CATEGORY_URL.format(slug=category_slug),
        last_crawled=utcnow(),
        product_count=product_count,
        is_active=True,
    )
