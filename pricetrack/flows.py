"""Prefect flow wiring for the daily crawl and price run."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from prefect import flow, get_run_logger, task

from pricetrack.antibot import BrowserSession
from pricetrack.collector.crawler import category_record, crawl_category, load_categories, save_products
from pricetrack.collector.tracker import sync_variants, track_prices
from pricetrack.errors import CrawlError
from pricetrack.settings import Settings
from pricetrack.upsert import PostgresRepository


@task
def crawl_task(category_slug: str, category_name: str, max_products: int = 0) -> int:
    """Crawl one category and upsert its products."""
    logger = get_run_logger()
    settings = Settings.from_env()
    try:
        with BrowserSession.from_settings(settings) as session:
            products = crawl_category(session, category_slug, max_products=max_products)
    except CrawlError as exc:
        logger.warning("crawl_task category=%s failed: %s", category_slug, exc)
        return 0

    repository = PostgresRepository.connect(settings.database_url)
    try:
        saved, failed = save_products(repository, products)
        repository.upsert_category(category_record(category_slug, category_name, len(products)))
    finally:
        repository.close()
    logger.info("crawl_task category=%s saved=%s failed=%s", category_slug, saved, failed)
    return saved


@task
def sync_variants_task(delay: float = 2.0) -> int:
    """Refresh the variant list of every tracked product."""
    logger = get_run_logger()
    settings = Settings.from_env()
    repository = PostgresRepository.connect(settings.database_url)
    try:
        products = repository.get_tracked_products()
        with BrowserSession.from_settings(settings) as session:
            synced = sync_variants(session, repository, products, delay=delay)
    finally:
        repository.close()
    logger.info("sync_variants_task products=%s variants=%s", len(products), synced)
    return synced


@task
def track_prices_task(delay: float = 2.0) -> int:
    """Record today's price of every trackable variant."""
    logger = get_run_logger()
    settings = Settings.from_env()
    repository = PostgresRepository.connect(settings.database_url)
    try:
        variants = repository.get_active_trackable_variants()
        with BrowserSession.from_settings(settings) as session:
            inserted = track_prices(session, repository, variants, delay=delay)
    finally:
        repository.close()
    logger.info("track_prices_task variants=%s inserted_prices=%s", len(variants), inserted)
    return inserted


@flow(name="daily-flow")
def daily_flow(
    categories: Optional[List[str]] = None,
    max_products: int = 0,
    delay: float = 2.0,
) -> Dict[str, Any]:
    """Daily crawl → variant sync → price tracking routine."""
    known = load_categories()
    slugs = categories or list(known)

    saved = 0
    for slug in slugs:
        saved += crawl_task(slug, known.get(slug, slug), max_products)

    synced = sync_variants_task(delay)
    prices = track_prices_task(delay)

    summary = {
        "categories": len(slugs),
        "saved_products": saved,
        "synced_variants": synced,
        "inserted_prices": prices,
    }
    get_run_logger().info("daily_flow summary=%s", json.dumps(summary))
    return summary
