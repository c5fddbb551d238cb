import json
import threading
from collections import Counter
from typing import Dict, List, Optional

import pytest

from pricetrack.errors import PersistenceError, QueueError, UpstreamStatusError
from pricetrack.product_scraper.queue import Delivery, TaskQueue


def category_page(product_ids, total_pages=1, status=200):
    """Category search response with one marketable product per id."""
    return json.dumps(
        {
            "status": status,
            "data": {
                "products": [
                    {"id": pid, "title_fa": f"Product {pid}", "status": "marketable"}
                    for pid in product_ids
                ],
                "pager": {"current_page": 1, "total_pages": total_pages},
            },
        }
    )


def product_detail(product_id, variants, default_id=None, status="marketable"):
    product = {
        "id": product_id,
        "title_fa": f"Product {product_id}",
        "status": status,
        "category": {"code": "mobile-phone"},
        "variants": variants,
    }
    if default_id is not None:
        product["default_variant"] = {"id": default_id}
    return json.dumps({"status": 200, "data": {"product": product}})


def variant(variant_id, selling=0, rrp=0, status="marketable", seller_id=None):
    item = {
        "id": variant_id,
        "title_fa": f"Variant {variant_id}",
        "status": status,
        "color": {"title": "Black"},
        "price": {"selling_price": selling, "rrp_price": rrp},
    }
    if seller_id is not None:
        item["seller"] = {"id": seller_id, "title": f"Seller {seller_id}"}
    return item


class FakeSession:
    """URL -> body (or exception) lookup; unknown URLs answer 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def get(self, url):
        with self._lock:
            self.calls.append(url)
        value = self.responses.get(url)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise UpstreamStatusError(url, 404)
        return value

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None


class FakeRepository:
    """In-memory stand-in for ``PostgresRepository``."""

    def __init__(self):
        self.products = {}
        self.variants = {}
        self.observations = {}
        self.categories = {}
        self.events = []
        self.fail_on = set()
        self.due_keys: List[str] = []
        self.due_calls = []
        self.tracked = []
        self.trackable_variants = []

    def _maybe_fail(self, stage):
        if stage in self.fail_on:
            raise PersistenceError(f"{stage} failed: simulated")

    def upsert_product(self, product):
        self._maybe_fail("upsert_product")
        self.products[product.product_key] = product
        self.events.append(("product", product.product_key))

    def upsert_products(self, products):
        self._maybe_fail("upsert_products")
        for product in products:
            self.products[product.product_key] = product
        return len(products)

    def upsert_variant(self, variant):
        self._maybe_fail("upsert_variant")
        assert variant.product_key in self.products, "product must be stored before its variants"
        self.variants[variant.variant_key] = variant
        self.events.append(("variant", variant.variant_key))

    def insert_price_observation(self, observation):
        self._maybe_fail("insert_price_observation")
        assert observation.variant_key in self.variants, "variant must be stored before its prices"
        key = (observation.time, observation.product_key, observation.variant_key)
        if key in self.observations:
            return False
        self.observations[key] = observation
        self.events.append(("price", observation.variant_key))
        return True

    def upsert_category(self, category):
        self._maybe_fail("upsert_category")
        self.categories[category.category_slug] = category

    def get_product_history(self, product_key):
        return [o for o in self.observations.values() if o.product_key == product_key]

    def get_active_trackable_variants(self):
        return list(self.trackable_variants)

    def get_tracked_products(self):
        return list(self.tracked)

    def select_due_products(self, stale_before, hot_priority, hot_stale_before, limit):
        self._maybe_fail("select_due_products")
        self.due_calls.append((stale_before, hot_priority, hot_stale_before, limit))
        return self.due_keys[:limit]


class InMemoryQueue(TaskQueue):
    """Broker primitives over a list; ``broken`` simulates a lost connection."""

    def __init__(self, **kwargs):
        kwargs.setdefault("poll_interval", 0.01)
        super().__init__(**kwargs)
        self.queues: Dict[str, List[dict]] = {}
        self.broken = False
        self.closed = False
        self._next_id = 1

    def _check(self):
        if self.broken:
            raise QueueError("connection lost")

    def declare(self, queue_name):
        self._check()
        self.queues.setdefault(queue_name, [])

    def _put(self, queue_name, body):
        self._check()
        if queue_name not in self.queues:
            raise QueueError(f"queue {queue_name} not declared")
        message_id = self._next_id
        self._next_id += 1
        self.queues[queue_name].append(
            {"id": message_id, "body": body, "status": "ready", "deliveries": 0}
        )
        return message_id

    def _find(self, delivery):
        for message in self.queues[delivery.queue_name]:
            if message["id"] == delivery.message_id:
                return message
        raise KeyError(delivery.message_id)

    def reserve(self, queue_name, consumer_id) -> Optional[Delivery]:
        self._check()
        for message in self.queues[queue_name]:
            if message["status"] == "ready":
                message["status"] = "unacked"
                message["deliveries"] += 1
                return Delivery(message["id"], queue_name, message["body"], message["deliveries"])
        return None

    def ack(self, delivery):
        self._check()
        self.queues[delivery.queue_name].remove(self._find(delivery))

    def nack(self, delivery, requeue=True, error=None):
        self._check()
        message = self._find(delivery)
        messages = self.queues[delivery.queue_name]
        messages.remove(message)
        if requeue:
            message["status"] = "ready"
            messages.append(message)

    def dead_letter(self, delivery, error):
        self._check()
        self._find(delivery)["status"] = "dead"

    def depth(self, queue_name):
        return sum(1 for m in self.queues[queue_name] if m["status"] in ("ready", "unacked"))

    def stats(self, queue_name):
        return dict(Counter(m["status"] for m in self.queues[queue_name]))

    def purge_dead(self, queue_name):
        dead = [m for m in self.queues[queue_name] if m["status"] == "dead"]
        for message in dead:
            self.queues[queue_name].remove(message)
        return len(dead)

    def close(self):
        self.closed = True


@pytest.fixture
def memory_queue():
    queue = InMemoryQueue()
    queue.declare("scrape_tasks")
    return queue


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def no_sleep(monkeypatch):
    """Record sleeps instead of blocking."""
    slept = []
    monkeypatch.setattr("time.sleep", lambda seconds: slept.append(seconds))
    return slept
