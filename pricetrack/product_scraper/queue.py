"""Durable task queue with at-least-once delivery.

``TaskQueue`` implements the delivery contract (decode, ack on success,
requeue on failure, drop undecodable payloads) on top of a handful of
broker primitives. ``PostgresQueue`` provides those primitives on a
Postgres table using row locks (``FOR UPDATE SKIP LOCKED``) and a
visibility lease, so a consumer that dies mid-task gets its message
redelivered once the lease expires.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import psycopg2
from pydantic import ValidationError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pricetrack.errors import PermanentError, QueueError
from pricetrack.models import ScrapeTask

LOGGER = logging.getLogger(__name__)

DEFAULT_QUEUE = "scrape_tasks"

Handler = Callable[[ScrapeTask], None]


class MessageStatus(str, Enum):
    """Broker-side message state."""

    READY = "ready"
    UNACKED = "unacked"
    DEAD = "dead"


class DeliveryOutcome(str, Enum):
    """What happened to one delivery."""

    ACKED = "acked"
    REQUEUED = "requeued"
    DROPPED = "dropped"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class Delivery:
    """A reserved message awaiting ack or nack."""

    message_id: int
    queue_name: str
    body: str
    delivery_count: int = 1


class TaskQueue:
    """Delivery semantics over abstract broker primitives.

    Subclasses implement ``declare``, ``_put``, ``reserve``, ``ack``,
    ``nack``, ``dead_letter`` and ``depth``. Primitives raise ``QueueError``
    when the broker is unreachable.
    """

    def __init__(self, *, poll_interval: float = 1.0, max_deliveries: int = 0) -> None:
        """Initialize queue.

        Parameters
        ----------
        poll_interval : float
            Seconds to wait when the queue is empty
        max_deliveries : int
            Dead-letter a failing message after this many deliveries
            (0 = redeliver indefinitely)
        """
        self.poll_interval = poll_interval
        self.max_deliveries = max_deliveries

    def declare(self, queue_name: str) -> None:
        raise NotImplementedError

    def _put(self, queue_name: str, body: str) -> int:
        raise NotImplementedError

    def reserve(self, queue_name: str, consumer_id: str) -> Optional[Delivery]:
        """Take the next visible message, or None if the queue is idle."""
        raise NotImplementedError

    def ack(self, delivery: Delivery) -> None:
        raise NotImplementedError

    def nack(self, delivery: Delivery, requeue: bool = True, error: Optional[str] = None) -> None:
        raise NotImplementedError

    def dead_letter(self, delivery: Delivery, error: str) -> None:
        raise NotImplementedError

    def depth(self, queue_name: str) -> int:
        """Messages not yet acknowledged (ready or reserved)."""
        raise NotImplementedError

    def stats(self, queue_name: str) -> Dict[str, int]:
        """Message counts per status."""
        raise NotImplementedError

    def purge_dead(self, queue_name: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        """Release the broker connection."""

    def publish(self, task: ScrapeTask, queue_name: str = DEFAULT_QUEUE) -> int:
        """Persist a task; returns the broker message id."""
        message_id = self._put(queue_name, task.to_json())
        LOGGER.debug("Published message %d to %s: %s", message_id, queue_name, task.product_key)
        return message_id

    def process(self, delivery: Delivery, handler: Handler) -> DeliveryOutcome:
        """Decode one delivery, run the handler and settle the message."""
        try:
            task = ScrapeTask.from_json(delivery.body)
        except (ValidationError, ValueError) as exc:
            LOGGER.warning("Dropping malformed message %d: %s", delivery.message_id, exc)
            self.nack(delivery, requeue=False, error=f"malformed payload: {exc}")
            return DeliveryOutcome.DROPPED

        LOGGER.info(
            "Processing task %s/%s (message %d, delivery %d)",
            task.product_key,
            task.variant_key or "-",
            delivery.message_id,
            delivery.delivery_count,
        )
        try:
            handler(task)
        except PermanentError as exc:
            LOGGER.error("Dropping task %s, it cannot succeed: %s", task.product_key, exc)
            self.nack(delivery, requeue=False, error=str(exc))
            return DeliveryOutcome.DROPPED
        except Exception as exc:
            LOGGER.warning("Failed to process task %s: %s", task.product_key, exc)
            if self.max_deliveries and delivery.delivery_count >= self.max_deliveries:
                LOGGER.error(
                    "Task %s failed %d time(s), moving to dead letters",
                    task.product_key,
                    delivery.delivery_count,
                )
                self.dead_letter(delivery, str(exc))
                return DeliveryOutcome.DEAD_LETTERED
            self.nack(delivery, requeue=True, error=str(exc))
            return DeliveryOutcome.REQUEUED

        self.ack(delivery)
        return DeliveryOutcome.ACKED

    def consume(
        self,
        queue_name: str,
        handler: Handler,
        stop_event: Optional[threading.Event] = None,
        consumer_id: Optional[str] = None,
        max_messages: Optional[int] = None,
    ) -> int:
        """Process messages one at a time until stopped.

        Returns when ``stop_event`` is set (the in-flight message is settled
        first) or after ``max_messages``. Raises ``QueueError`` if the broker
        connection fails.

        Returns
        -------
        int
            Number of deliveries settled
        """
        stop_event = stop_event or threading.Event()
        consumer_id = consumer_id or "consumer"
        LOGGER.info("Waiting for messages on queue: %s", queue_name)

        settled = 0
        while not stop_event.is_set():
            if max_messages is not None and settled >= max_messages:
                break
            delivery = self.reserve(queue_name, consumer_id)
            if delivery is None:
                stop_event.wait(self.poll_interval)
                continue
            self.process(delivery, handler)
            settled += 1

        LOGGER.info("Consumer %s stopped after %d message(s)", consumer_id, settled)
        return settled


class PostgresQueue(TaskQueue):
    """Postgres-backed broker using row locks and a visibility lease."""

    def __init__(
        self,
        conn_string: str,
        *,
        poll_interval: float = 1.0,
        visibility_timeout: float = 300.0,
        max_deliveries: int = 0,
    ) -> None:
        """Connect and make sure the queue tables exist.

        Parameters
        ----------
        conn_string : str
            PostgreSQL connection string
        visibility_timeout : float
            Seconds a reserved message stays invisible before redelivery
        """
        super().__init__(poll_interval=poll_interval, max_deliveries=max_deliveries)
        self.conn_string = conn_string
        self.visibility_timeout = visibility_timeout
        self._conn = psycopg2.connect(conn_string)
        self._ensure_table()

    def _ensure_table(self) -> None:
        """Create queue tables if not exists."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS task_queues (
            queue_name VARCHAR(100) PRIMARY KEY,
            declared_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS task_queue_messages (
            message_id BIGSERIAL PRIMARY KEY,
            queue_name VARCHAR(100) NOT NULL REFERENCES task_queues(queue_name),
            body TEXT NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'ready',
            delivery_count INTEGER NOT NULL DEFAULT 0,
            enqueued_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            visible_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            consumer_id VARCHAR(100),
            error_message TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_queue_messages_visible
            ON task_queue_messages(queue_name, status, visible_at, message_id);
        """
        self._execute("ensure_table", create_sql)
        LOGGER.info("Ensured task queue tables exist")

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except psycopg2.Error:
            LOGGER.debug("Rollback failed, connection is gone")

    def _execute(self, stage: str, sql: str, params=None, fetch: Optional[Callable] = None):
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql, params)
                result = fetch(cur) if fetch is not None else cur.rowcount
            self._conn.commit()
            return result
        except psycopg2.IntegrityError as exc:
            self._rollback()
            raise QueueError(f"{stage} rejected by broker: {exc}") from exc
        except psycopg2.Error as exc:
            self._rollback()
            raise QueueError(f"{stage} failed: {exc}") from exc

    def declare(self, queue_name: str) -> None:
        self._execute(
            "declare",
            "INSERT INTO task_queues (queue_name) VALUES (%s) ON CONFLICT (queue_name) DO NOTHING",
            (queue_name,),
        )
        LOGGER.info("Declared queue %s", queue_name)

    def _put(self, queue_name: str, body: str) -> int:
        return self._execute(
            "publish",
            """
            INSERT INTO task_queue_messages (queue_name, body)
            VALUES (%s, %s)
            RETURNING message_id
            """,
            (queue_name, body),
            fetch=lambda cur: cur.fetchone()[0],
        )

    def reserve(self, queue_name: str, consumer_id: str) -> Optional[Delivery]:
        row = self._execute(
            "reserve",
            """
            UPDATE task_queue_messages
            SET status = 'unacked',
                delivery_count = delivery_count + 1,
                visible_at = NOW() + make_interval(secs => %(lease)s),
                consumer_id = %(consumer_id)s
            WHERE message_id = (
                SELECT message_id
                FROM task_queue_messages
                WHERE queue_name = %(queue_name)s
                  AND status IN ('ready', 'unacked')
                  AND visible_at <= NOW()
                ORDER BY visible_at, message_id
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING message_id, queue_name, body, delivery_count
            """,
            {
                "lease": float(self.visibility_timeout),
                "consumer_id": consumer_id,
                "queue_name": queue_name,
            },
            fetch=lambda cur: cur.fetchone(),
        )
        if row is None:
            return None
        return Delivery(message_id=row[0], queue_name=row[1], body=row[2], delivery_count=row[3])

    def ack(self, delivery: Delivery) -> None:
        self._execute(
            "ack",
            "DELETE FROM task_queue_messages WHERE message_id = %s",
            (delivery.message_id,),
        )

    def nack(self, delivery: Delivery, requeue: bool = True, error: Optional[str] = None) -> None:
        if not requeue:
            self._execute(
                "nack",
                "DELETE FROM task_queue_messages WHERE message_id = %s",
                (delivery.message_id,),
            )
            return
        self._execute(
            "nack",
            """
            UPDATE task_queue_messages
            SET status = 'ready',
                visible_at = NOW(),
                consumer_id = NULL,
                error_message = %s
            WHERE message_id = %s
            """,
            (error, delivery.message_id),
        )

    def dead_letter(self, delivery: Delivery, error: str) -> None:
        self._execute(
            "dead_letter",
            """
            UPDATE task_queue_messages
            SET status = 'dead', consumer_id = NULL, error_message = %s
            WHERE message_id = %s
            """,
            (error, delivery.message_id),
        )

    def depth(self, queue_name: str) -> int:
        return self._execute(
            "depth",
            """
            SELECT COUNT(*) FROM task_queue_messages
            WHERE queue_name = %s AND status IN ('ready', 'unacked')
            """,
            (queue_name,),
            fetch=lambda cur: cur.fetchone()[0],
        )

    def stats(self, queue_name: str) -> Dict[str, int]:
        """Message counts per status."""
        rows = self._execute(
            "stats",
            """
            SELECT status, COUNT(*) FROM task_queue_messages
            WHERE queue_name = %s
            GROUP BY status
            """,
            (queue_name,),
            fetch=lambda cur: cur.fetchall(),
        )
        return {status: count for status, count in rows}

    def purge_dead(self, queue_name: str) -> int:
        """Remove dead-lettered messages; returns the number removed."""
        count = self._execute(
            "purge_dead",
            "DELETE FROM task_queue_messages WHERE queue_name = %s AND status = 'dead'",
            (queue_name,),
        )
        if count > 0:
            LOGGER.info("Purged %d dead message(s) from %s", count, queue_name)
        return count

    def close(self) -> None:
        self._conn.close()


def connect_queue(
    conn_string: str,
    attempts: int = 10,
    wait=wait_exponential(multiplier=2, min=2, max=60),
    factory: Callable[..., PostgresQueue] = PostgresQueue,
    **queue_kwargs,
) -> PostgresQueue:
    """Open the broker connection, backing off exponentially between attempts.

    Raises
    ------
    QueueError
        Every attempt failed
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait,
        retry=retry_if_exception_type(psycopg2.OperationalError),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    )
    try:
        return retrying(factory, conn_string, **queue_kwargs)
    except psycopg2.OperationalError as exc:
        raise QueueError(f"failed to connect to broker after {attempts} attempt(s): {exc}") from exc
