import threading

import psycopg2
import pytest
from tenacity import wait_none

from conftest import InMemoryQueue
from pricetrack.errors import ParseError, QueueError
from pricetrack.models import ScrapeTask
from pricetrack.product_scraper.queue import DeliveryOutcome, connect_queue

QUEUE = "scrape_tasks"


def test_scrape_task_wire_format():
    assert ScrapeTask(product_key="12").to_json() == '{"product_key":"12"}'
    task = ScrapeTask.from_json('{"product_key":"12","variant_key":"7"}')
    assert task == ScrapeTask(product_key="12", variant_key="7")


def test_published_task_is_delivered_and_acked(memory_queue):
    handled = []
    memory_queue.publish(ScrapeTask(product_key="1", variant_key="9"))

    settled = memory_queue.consume(QUEUE, handled.append, max_messages=1)

    assert settled == 1
    assert handled == [ScrapeTask(product_key="1", variant_key="9")]
    assert memory_queue.depth(QUEUE) == 0


@pytest.mark.parametrize("body", ["not json", '{"variant_key": "3"}', '{"product_key": ""}'])
def test_undecodable_payload_is_dropped(memory_queue, body):
    handled = []
    memory_queue._put(QUEUE, body)
    assert memory_queue.depth(QUEUE) == 1

    memory_queue.consume(QUEUE, handled.append, max_messages=1)

    assert handled == []
    assert memory_queue.depth(QUEUE) == 0


def test_failed_task_is_redelivered(memory_queue):
    attempts = []

    def handler(task):
        attempts.append(task.product_key)
        if len(attempts) == 1:
            raise RuntimeError("upstream timeout")

    memory_queue.publish(ScrapeTask(product_key="1"))
    memory_queue.consume(QUEUE, handler, max_messages=2)

    assert attempts == ["1", "1"]
    assert memory_queue.depth(QUEUE) == 0


def test_requeued_task_goes_behind_waiting_tasks(memory_queue):
    attempts = []

    def handler(task):
        attempts.append(task.product_key)
        if task.product_key == "1" and attempts.count("1") == 1:
            raise RuntimeError("boom")

    memory_queue.publish(ScrapeTask(product_key="1"))
    memory_queue.publish(ScrapeTask(product_key="2"))
    memory_queue.consume(QUEUE, handler, max_messages=3)

    assert attempts == ["1", "2", "1"]


def test_permanent_error_drops_task(memory_queue):
    calls = []

    def handler(task):
        calls.append(task)
        raise ParseError("no title")

    memory_queue.publish(ScrapeTask(product_key="1"))
    delivery = memory_queue.reserve(QUEUE, "test")

    assert memory_queue.process(delivery, handler) == DeliveryOutcome.DROPPED
    assert len(calls) == 1
    assert memory_queue.depth(QUEUE) == 0


def test_max_deliveries_moves_task_to_dead_letters():
    queue = InMemoryQueue(max_deliveries=2)
    queue.declare(QUEUE)
    queue.publish(ScrapeTask(product_key="1"))

    def handler(task):
        raise RuntimeError("always failing")

    queue.consume(QUEUE, handler, max_messages=2)

    assert queue.depth(QUEUE) == 0
    assert queue.stats(QUEUE) == {"dead": 1}
    assert queue.purge_dead(QUEUE) == 1


def test_stop_event_finishes_in_flight_task(memory_queue):
    stop = threading.Event()
    handled = []

    def handler(task):
        handled.append(task.product_key)
        stop.set()

    for key in ("1", "2"):
        memory_queue.publish(ScrapeTask(product_key=key))

    settled = memory_queue.consume(QUEUE, handler, stop_event=stop)

    assert settled == 1
    assert handled == ["1"]
    assert memory_queue.depth(QUEUE) == 1


def test_consume_waits_on_empty_queue_until_stopped(memory_queue):
    stop = threading.Event()
    timer = threading.Timer(0.05, stop.set)
    timer.start()
    try:
        assert memory_queue.consume(QUEUE, lambda task: None, stop_event=stop) == 0
    finally:
        timer.cancel()


def test_broker_failure_raises(memory_queue):
    memory_queue.publish(ScrapeTask(product_key="1"))
    memory_queue.broken = True
    with pytest.raises(QueueError):
        memory_queue.consume(QUEUE, lambda task: None, max_messages=1)


def test_publish_to_undeclared_queue_fails(memory_queue):
    with pytest.raises(QueueError):
        memory_queue.publish(ScrapeTask(product_key="1"), "missing")


def test_connect_queue_retries_until_broker_is_up():
    attempts = []
    sentinel = object()

    def factory(conn_string, **kwargs):
        attempts.append(conn_string)
        if len(attempts) < 3:
            raise psycopg2.OperationalError("connection refused")
        return sentinel

    assert connect_queue("postgresql://broker", attempts=5, wait=wait_none(), factory=factory) is sentinel
    assert len(attempts) == 3


def test_connect_queue_gives_up_after_attempts():
    attempts = []

    def factory(conn_string, **kwargs):
        attempts.append(conn_string)
        raise psycopg2.OperationalError("connection refused")

    with pytest.raises(QueueError):
        connect_queue("postgresql://broker", attempts=4, wait=wait_none(), factory=factory)
    assert len(attempts) == 4
