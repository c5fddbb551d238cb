import os
from datetime import datetime, timedelta, timezone

import pytest

from pricetrack.errors import QueueError
from pricetrack.models import PriceObservation, Product, ProductVariant, ScrapeTask
from pricetrack.product_scraper.queue import PostgresQueue
from pricetrack.upsert import PostgresRepository

PG_DSN = os.getenv("PG_DSN")

pytestmark = pytest.mark.skipif(not PG_DSN, reason="PG_DSN not set")

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    repository = PostgresRepository.connect(PG_DSN)
    repository.ensure_schema()
    with repository.conn.cursor() as cur:
        cur.execute("TRUNCATE products, product_variants, price_history, categories")
    repository.conn.commit()
    try:
        yield repository
    finally:
        repository.close()


def _fetch_product(repo, key):
    with repo.conn.cursor() as cur:
        cur.execute(
            "SELECT title, category, crawl_priority, is_tracked, last_crawled FROM products WHERE product_key = %s",
            (key,),
        )
        return cur.fetchone()


def test_upsert_product_keeps_local_state(repo):
    repo.upsert_product(
        Product(product_key="1", title="Old", category="tablet", crawl_priority=9, is_tracked=True, last_crawled=NOW)
    )
    repo.upsert_product(Product(product_key="1", title="New", crawl_priority=1, is_tracked=False))

    title, category, priority, tracked, last_crawled = _fetch_product(repo, "1")
    assert title == "New"
    assert category == "tablet"
    assert priority == 9
    assert tracked is True
    assert last_crawled == NOW


def test_duplicate_observation_is_ignored(repo):
    repo.upsert_product(Product(product_key="1", title="P"))
    repo.upsert_variant(ProductVariant(variant_key="11", product_key="1", is_active=True))
    point = PriceObservation(time=NOW, product_key="1", variant_key="11", price=1000)

    assert repo.insert_price_observation(point) is True
    assert repo.insert_price_observation(point) is False
    assert [o.price for o in repo.get_product_history("1")] == [1000]


def test_select_due_products_orders_hot_first(repo):
    repo.upsert_products(
        [
            Product(product_key="fresh", is_active=True, is_tracked=True, last_scraped_at=NOW),
            Product(product_key="never", is_active=True, is_tracked=True),
            Product(
                product_key="hot",
                is_active=True,
                is_tracked=True,
                crawl_priority=9,
                last_scraped_at=NOW - timedelta(hours=2),
            ),
            Product(product_key="untracked", is_active=True),
        ]
    )

    keys = repo.select_due_products(NOW - timedelta(hours=6), 8, NOW - timedelta(hours=1), 10)

    assert keys == ["hot", "never"]


def test_trackable_variants_require_tracked_active_product(repo):
    repo.upsert_product(Product(product_key="1", is_active=True, is_tracked=True))
    repo.upsert_product(Product(product_key="2", is_active=False, is_tracked=True))
    repo.upsert_variant(ProductVariant(variant_key="11", product_key="1", is_active=True))
    repo.upsert_variant(ProductVariant(variant_key="12", product_key="1", is_active=False))
    repo.upsert_variant(ProductVariant(variant_key="21", product_key="2", is_active=True))

    assert [v.variant_key for v in repo.get_active_trackable_variants()] == ["11"]


@pytest.fixture
def pg_queue():
    queue = PostgresQueue(PG_DSN, visibility_timeout=60)
    queue.declare("test_tasks")
    queue._execute("reset", "DELETE FROM task_queue_messages WHERE queue_name = %s", ("test_tasks",))
    try:
        yield queue
    finally:
        queue.close()


def test_postgres_queue_reserve_and_ack(pg_queue):
    pg_queue.publish(ScrapeTask(product_key="1"), "test_tasks")

    delivery = pg_queue.reserve("test_tasks", "c1")
    assert delivery.delivery_count == 1
    assert pg_queue.reserve("test_tasks", "c2") is None
    assert pg_queue.depth("test_tasks") == 1

    pg_queue.ack(delivery)
    assert pg_queue.depth("test_tasks") == 0


def test_postgres_queue_requeue_increments_deliveries(pg_queue):
    pg_queue.publish(ScrapeTask(product_key="1"), "test_tasks")

    pg_queue.nack(pg_queue.reserve("test_tasks", "c1"), requeue=True, error="boom")
    delivery = pg_queue.reserve("test_tasks", "c1")

    assert delivery.delivery_count == 2
    pg_queue.dead_letter(delivery, "gave up")
    assert pg_queue.stats("test_tasks") == {"dead": 1}
    assert pg_queue.purge_dead("test_tasks") == 1


def test_postgres_queue_rejects_undeclared_queue(pg_queue):
    with pytest.raises(QueueError):
        pg_queue.publish(ScrapeTask(product_key="1"), "never_declared")
