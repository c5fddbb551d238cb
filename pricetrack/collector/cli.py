"""CLI for bulk category crawling."""
from __future__ import annotations

import logging
import sys
import time
from typing import Optional

import click

from pricetrack.antibot import BrowserSession
from pricetrack.collector.crawler import (
    CategoryResult,
    CrawlStats,
    category_record,
    crawl_category,
    load_categories,
    save_products,
)
from pricetrack.errors import PersistenceError, PricetrackError
from pricetrack.settings import Settings
from pricetrack.upsert import PostgresRepository

LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def crawl_one(
    category_slug: str,
    category_name: str,
    settings: Settings,
    repository: Optional[PostgresRepository],
    stats: CrawlStats,
    *,
    max_products: int,
    concurrency: int,
    batch_size: int,
    delay: float,
) -> CategoryResult:
    """Crawl one category and persist the result unless ``repository`` is None."""
    started = time.time()
    result = CategoryResult(category_slug=category_slug)
    try:
        with BrowserSession.from_settings(settings) as session:
            products = crawl_category(
                session,
                category_slug,
                max_products=max_products,
                concurrency=concurrency,
                delay=delay,
                stats=stats,
            )
    except PricetrackError as exc:
        result.error = exc
        result.duration = time.time() - started
        return result

    LOGGER.info("Found %d products in category %s", len(products), category_slug)

    if repository is not None:
        saved, failed = save_products(repository, products, batch_size)
        stats.add(saved_products=saved, failed_products=failed)
        LOGGER.info("Saved %d/%d products to database", saved, len(products))
        try:
            repository.upsert_category(category_record(category_slug, category_name, len(products)))
        except PersistenceError as exc:
            LOGGER.warning("Failed to update category %s: %s", category_slug, exc)
    else:
        LOGGER.info("Dry run mode - skipped database save")

    result.product_count = len(products)
    result.duration = time.time() - started
    return result


def print_final_stats(stats: CrawlStats, categories: dict) -> None:
    duration = time.time() - stats.started_at
    click.echo("\n" + "=" * 60)
    click.echo("📊 FINAL STATISTICS")
    click.echo("=" * 60)
    click.echo(f"⏱️  Total duration: {duration:.1f}s")
    click.echo(f"📦 Total products: {stats.total_products}")
    click.echo(f"💾 Saved products: {stats.saved_products}")
    click.echo(f"❌ Failed products: {stats.failed_products}")
    click.echo(f"📄 Total pages: {stats.total_pages} ({stats.failed_pages} failed)")
    if stats.total_products and duration > 0:
        click.echo(f"⚡ Average: {stats.total_products / duration:.2f} products/second")

    click.echo("\n📂 Per-category results:")
    for slug, result in stats.category_results.items():
        if result.error is not None:
            click.echo(f"  ❌ {categories.get(slug, slug)} ({slug}): {result.error}")
        else:
            click.echo(
                f"  ✅ {categories.get(slug, slug)} ({slug}): "
                f"{result.product_count} products in {result.duration:.1f}s"
            )
    click.echo("=" * 60)


@click.command()
@click.option("--category", "category_slug", default="mobile-phone", help="Category slug to crawl")
@click.option("--max", "max_products", default=0, type=click.IntRange(min=0), help="Maximum products to fetch (0 = all)")
@click.option("--concurrency", default=3, type=click.IntRange(min=1), help="Number of parallel page fetchers")
@click.option("--batch", "batch_size", default=50, type=click.IntRange(min=1), help="Batch size for database inserts")
@click.option("--delay", "delay_ms", default=2000, type=click.IntRange(min=0), help="Delay after each page fetch (ms)")
@click.option("--dry-run", is_flag=True, help="Don't save to database")
@click.option("--all", "crawl_all", is_flag=True, help="Crawl all known categories")
@click.option("--list", "list_only", is_flag=True, help="List known categories and exit")
def crawl(
    category_slug: str,
    max_products: int,
    concurrency: int,
    batch_size: int,
    delay_ms: int,
    dry_run: bool,
    crawl_all: bool,
    list_only: bool,
) -> None:
    """Crawl category search pages and upsert the discovered products."""
    categories = load_categories()

    if list_only:
        click.echo("📋 Available categories:")
        for slug, name in categories.items():
            click.echo(f"  - {slug}: {name}")
        return

    _configure_logging()

    if crawl_all:
        to_crawl = list(categories)
    elif category_slug in categories:
        to_crawl = [category_slug]
    else:
        click.echo(f"❌ Unknown category: {category_slug} (use --list to see available categories)", err=True)
        sys.exit(1)

    LOGGER.info(
        "Configuration: max=%d, concurrency=%d, batch=%d, delay=%dms",
        max_products,
        concurrency,
        batch_size,
        delay_ms,
    )

    settings = Settings.from_env()
    repository: Optional[PostgresRepository] = None
    if not dry_run:
        try:
            repository = PostgresRepository.connect(settings.database_url)
            repository.ensure_schema()
        except PersistenceError as exc:
            click.echo(f"❌ Failed to connect to database: {exc}", err=True)
            sys.exit(1)
        LOGGER.info("Connected to database")

    stats = CrawlStats()
    try:
        for slug in to_crawl:
            LOGGER.info("Starting crawl for: %s (%s)", categories[slug], slug)
            result = crawl_one(
                slug,
                categories[slug],
                settings,
                repository,
                stats,
                max_products=max_products,
                concurrency=concurrency,
                batch_size=batch_size,
                delay=delay_ms / 1000.0,
            )
            stats.record(result)
            if result.error is not None:
                LOGGER.error("Category %s failed: %s", slug, result.error)
            else:
                LOGGER.info("Category %s completed: %d products", slug, result.product_count)
    finally:
        if repository is not None:
            repository.close()

    print_final_stats(stats, categories)


if __name__ == "__main__":
    crawl()
