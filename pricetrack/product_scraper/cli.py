"""CLI for queue-driven product scraping."""
from __future__ import annotations

import logging
import sys
from typing import Optional

import click
from pydantic import ValidationError

from pricetrack.antibot import BrowserSession
from pricetrack.collector.tracker import sync_variants, track_prices
from pricetrack.errors import PersistenceError, QueueError
from pricetrack.models import ScrapeTask
from pricetrack.settings import Settings
from pricetrack.upsert import PostgresRepository

from .queue import TaskQueue, connect_queue
from .scheduler import HotProductScheduler, StalenessSelector
from .worker import ScrapeWorker, WorkerConfig, default_worker_id

LOGGER = logging.getLogger(__name__)


def _open_queue(settings: Settings) -> TaskQueue:
    """Connect to the broker and declare the configured queue; exits on failure."""
    try:
        queue = connect_queue(
            settings.database_url,
            attempts=settings.queue_connect_attempts,
            poll_interval=settings.queue_poll_interval,
            visibility_timeout=settings.queue_visibility_timeout,
            max_deliveries=settings.queue_max_deliveries,
        )
        queue.declare(settings.queue_name)
    except QueueError as exc:
        click.echo(f"❌ Failed to connect to queue: {exc}", err=True)
        sys.exit(1)
    return queue


def _open_repository(settings: Settings) -> PostgresRepository:
    """Connect to the product database; exits on failure."""
    try:
        repository = PostgresRepository.connect(settings.database_url)
        repository.ensure_schema()
    except PersistenceError as exc:
        click.echo(f"❌ Failed to connect to database: {exc}", err=True)
        sys.exit(1)
    return repository


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Product scraping CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    ctx.obj = Settings.from_env()


@cli.command()
@click.option("--product-key", required=True, help="Upstream product id")
@click.option("--variant-key", help="Only record this variant's price")
@click.pass_obj
def enqueue(settings: Settings, product_key: str, variant_key: Optional[str]) -> None:
    """Enqueue a product scraping task."""
    try:
        task = ScrapeTask(product_key=product_key, variant_key=variant_key)
    except ValidationError as exc:
        click.echo(f"❌ Invalid task: {exc}", err=True)
        sys.exit(1)

    queue = _open_queue(settings)
    try:
        message_id = queue.publish(task, settings.queue_name)
    except QueueError as exc:
        click.echo(f"❌ Failed to enqueue {product_key}: {exc}", err=True)
        sys.exit(1)
    finally:
        queue.close()
    click.echo(f"✅ Enqueued message {message_id}: {product_key}")


@cli.command("enqueue-batch")
@click.option(
    "--input-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="File with product ids (one per line, optionally 'product_id,variant_id')",
)
@click.pass_obj
def enqueue_batch(settings: Settings, input_file: str) -> None:
    """Enqueue multiple products from file."""
    queue = _open_queue(settings)
    enqueued = skipped = 0

    try:
        with open(input_file, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                parts = [part.strip() for part in line.split(",")]
                try:
                    task = ScrapeTask(
                        product_key=parts[0],
                        variant_key=parts[1] if len(parts) > 1 and parts[1] else None,
                    )
                except ValidationError as exc:
                    LOGGER.error("Skipping invalid line %d: %s", line_num, exc)
                    skipped += 1
                    continue
                try:
                    queue.publish(task, settings.queue_name)
                    enqueued += 1
                except QueueError as exc:
                    LOGGER.error("Failed to enqueue line %d: %s", line_num, exc)
                    skipped += 1
    finally:
        queue.close()

    if skipped:
        click.echo(f"⚠️  Skipped {skipped} line(s)")

    click.echo(f"✅ Enqueued {enqueued} task(s)")


@cli.command()
@click.option("--worker-id", help="Worker ID (defaults to hostname-UUID)")
@click.option("--max-tasks", type=click.IntRange(min=1), help="Max tasks before shutdown (for testing)")
@click.pass_obj
def run(settings: Settings, worker_id: Optional[str], max_tasks: Optional[int]) -> None:
    """Run worker to process tasks from queue."""
    worker_id = worker_id or default_worker_id()
    click.echo(f"🚀 Starting worker: {worker_id}")

    queue = _open_queue(settings)
    repository = _open_repository(settings)
    config = WorkerConfig(worker_id=worker_id, queue_name=settings.queue_name, max_tasks=max_tasks)

    try:
        with BrowserSession.from_settings(settings) as session:
            ScrapeWorker(config, session, repository).run(queue)
    except QueueError as exc:
        click.echo(f"❌ Lost queue connection: {exc}", err=True)
        sys.exit(1)
    finally:
        repository.close()
        queue.close()


@cli.command()
@click.option("--interval", type=click.FloatRange(min=1), help="Seconds between cycles")
@click.option("--limit", type=click.IntRange(min=1), help="Max tasks per cycle")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.pass_obj
def schedule(settings: Settings, interval: Optional[float], limit: Optional[int], once: bool) -> None:
    """Periodically enqueue products that are due for a re-scrape."""
    queue = _open_queue(settings)
    repository = _open_repository(settings)
    selector = StalenessSelector(
        repository,
        staleness=settings.scheduler_staleness,
        hot_staleness=settings.scheduler_hot_staleness,
        hot_priority=settings.scheduler_hot_priority,
    )
    scheduler = HotProductScheduler(
        selector,
        queue,
        interval=interval or settings.scheduler_interval,
        limit=limit or settings.scheduler_batch_limit,
        queue_name=settings.queue_name,
    )
    try:
        if once:
            published = scheduler.run_cycle()
            click.echo(f"✅ Scheduled {published} product(s)")
        else:
            scheduler.run()
    except KeyboardInterrupt:
        LOGGER.info("Keyboard interrupt, stopping scheduler")
    finally:
        repository.close()
        queue.close()


@cli.command("track-prices")
@click.option("--sync", "sync_first", is_flag=True, help="Re-sync variants of tracked products first")
@click.option("--delay", "delay_ms", default=2000, type=click.IntRange(min=0), help="Delay between products (ms)")
@click.pass_obj
def track_prices_command(settings: Settings, sync_first: bool, delay_ms: int) -> None:
    """Record current prices of every trackable variant."""
    repository = _open_repository(settings)
    delay = delay_ms / 1000.0
    try:
        with BrowserSession.from_settings(settings) as session:
            if sync_first:
                products = repository.get_tracked_products()
                click.echo(f"🔄 Syncing variants for {len(products)} product(s)")
                sync_variants(session, repository, products, delay=delay)

            variants = repository.get_active_trackable_variants()
            click.echo(f"💰 Tracking prices for {len(variants)} variant(s)")
            inserted = track_prices(session, repository, variants, delay=delay)
    except PersistenceError as exc:
        click.echo(f"❌ Database error: {exc}", err=True)
        sys.exit(1)
    finally:
        repository.close()

    click.echo(f"✅ Recorded {inserted} price(s)")


@cli.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show queue statistics."""
    queue = _open_queue(settings)
    try:
        counts = queue.stats(settings.queue_name)
    finally:
        queue.close()

    click.echo(f"\n📊 Queue Statistics: {settings.queue_name}\n" + "=" * 40)
    click.echo(f"Total messages: {sum(counts.values())}")
    for status, count in sorted(counts.items()):
        click.echo(f"  {status:15s}: {count:6d}")
    click.echo()


@cli.command("purge-dead")
@click.confirmation_option(prompt="Are you sure you want to purge dead-lettered messages?")
@click.pass_obj
def purge_dead(settings: Settings) -> None:
    """Remove messages that exhausted their deliveries."""
    queue = _open_queue(settings)
    try:
        count = queue.purge_dead(settings.queue_name)
    finally:
        queue.close()
    click.echo(f"✅ Purged {count} dead message(s)")


if __name__ == "__main__":
    cli()
