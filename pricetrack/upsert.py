"""Database helpers for idempotent product, variant and price persistence."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Tuple

import psycopg2
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import RealDictCursor, execute_batch

from pricetrack.errors import PersistenceError
from pricetrack.models import Category, PriceObservation, Product, ProductVariant
from pricetrack.settings import get_db_connection_string

LOGGER = logging.getLogger(__name__)

HISTORY_LIMIT = 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
    id SERIAL PRIMARY KEY,
    product_key VARCHAR(64) NOT NULL UNIQUE,
    title TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT FALSE,
    category VARCHAR(100) NOT NULL DEFAULT '',
    crawl_priority INTEGER NOT NULL DEFAULT 5,
    is_tracked BOOLEAN NOT NULL DEFAULT FALSE,
    last_crawled TIMESTAMPTZ,
    last_scraped_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS product_variants (
    variant_key VARCHAR(64) PRIMARY KEY,
    product_key VARCHAR(64) NOT NULL,
    variant_title TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '',
    storage TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS price_history (
    time TIMESTAMPTZ NOT NULL,
    product_key VARCHAR(64) NOT NULL,
    variant_key VARCHAR(64) NOT NULL DEFAULT '',
    price BIGINT NOT NULL,
    seller_key VARCHAR(100) NOT NULL DEFAULT '',
    is_buy_box BOOLEAN NOT NULL DEFAULT TRUE,
    CONSTRAINT uq_price_point UNIQUE (time, product_key, variant_key)
);

CREATE TABLE IF NOT EXISTS categories (
    id SERIAL PRIMARY KEY,
    category_slug VARCHAR(100) NOT NULL UNIQUE,
    category_name TEXT NOT NULL DEFAULT '',
    category_url TEXT NOT NULL DEFAULT '',
    last_crawled TIMESTAMPTZ,
    product_count INTEGER NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_products_due
    ON products(is_tracked, is_active, crawl_priority DESC, last_scraped_at);
CREATE INDEX IF NOT EXISTS idx_variants_product ON product_variants(product_key);
CREATE INDEX IF NOT EXISTS idx_price_history_product
    ON price_history(product_key, variant_key, time DESC);
"""

UPSERT_PRODUCT_SQL = """
INSERT INTO products (
    product_key, title, is_active, category, crawl_priority,
    is_tracked, last_crawled, last_scraped_at
)
VALUES (
    %(product_key)s, %(title)s, %(is_active)s, %(category)s, %(crawl_priority)s,
    %(is_tracked)s, %(last_crawled)s, %(last_scraped_at)s
)
ON CONFLICT (product_key) DO UPDATE
SET
    title = EXCLUDED.title,
    is_active = EXCLUDED.is_active,
    category = COALESCE(NULLIF(EXCLUDED.category, ''), products.category),
    last_crawled = COALESCE(EXCLUDED.last_crawled, products.last_crawled),
    last_scraped_at = COALESCE(EXCLUDED.last_scraped_at, products.last_scraped_at);
"""

PRODUCT_COLUMNS = (
    "product_key, title, is_active, category, crawl_priority, "
    "is_tracked, last_crawled, last_scraped_at"
)


def get_db_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a psycopg2 connection using the DSN from the environment."""
    return psycopg2.connect(dsn or get_db_connection_string())


def ensure_schema(conn: PGConnection) -> None:
    """Create pipeline tables if they do not exist."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()
    LOGGER.info("Ensured pipeline tables exist")


def upsert_product(conn: PGConnection, product: Product) -> None:
    """Insert or refresh a product row.

    ``crawl_priority`` and ``is_tracked`` are local state: they are written
    for new rows only. Known timestamps and categories are never blanked.
    """
    with conn.cursor() as cur:
        cur.execute(UPSERT_PRODUCT_SQL, product.model_dump())


def upsert_products(conn: PGConnection, products: Iterable[Product], page_size: int = 50) -> int:
    rows = [product.model_dump() for product in products]
    if not rows:
        return 0
    with conn.cursor() as cur:
        execute_batch(cur, UPSERT_PRODUCT_SQL, rows, page_size=page_size)
    return len(rows)


def upsert_variant(conn: PGConnection, variant: ProductVariant) -> None:
    """Insert or re-sync a variant; ``created_at`` is kept from the first insert."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO product_variants (
                variant_key, product_key, variant_title, color, storage,
                is_active, created_at, updated_at
            )
            VALUES (
                %(variant_key)s, %(product_key)s, %(variant_title)s, %(color)s, %(storage)s,
                %(is_active)s, %(created_at)s, %(updated_at)s
            )
            ON CONFLICT (variant_key) DO UPDATE
            SET
                variant_title = EXCLUDED.variant_title,
                color = EXCLUDED.color,
                storage = EXCLUDED.storage,
                is_active = EXCLUDED.is_active,
                updated_at = EXCLUDED.updated_at;
            """,
            variant.model_dump(),
        )


def insert_price_observation(conn: PGConnection, observation: PriceObservation) -> bool:
    """Append a price point.

    Returns False when the same (time, product, variant) point already exists.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO price_history (time, product_key, variant_key, price, seller_key, is_buy_box)
            VALUES (%(time)s, %(product_key)s, %(variant_key)s, %(price)s, %(seller_key)s, %(is_buy_box)s)
            ON CONFLICT (time, product_key, variant_key) DO NOTHING;
            """,
            observation.model_dump(),
        )
        return cur.rowcount == 1


def upsert_category(conn: PGConnection, category: Category) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO categories (
                category_slug, category_name, category_url, last_crawled, product_count, is_active
            )
            VALUES (
                %(category_slug)s, %(category_name)s, %(category_url)s,
                %(last_crawled)s, %(product_count)s, %(is_active)s
            )
            ON CONFLICT (category_slug) DO UPDATE
            SET
                category_name = COALESCE(NULLIF(EXCLUDED.category_name, ''), categories.category_name),
                category_url = COALESCE(NULLIF(EXCLUDED.category_url, ''), categories.category_url),
                last_crawled = EXCLUDED.last_crawled,
                product_count = EXCLUDED.product_count,
                is_active = EXCLUDED.is_active,
                updated_at = NOW();
            """,
            category.model_dump(),
        )


def get_product_history(
    conn: PGConnection,
    product_key: str,
    variant_key: Optional[str] = None,
    limit: int = HISTORY_LIMIT,
) -> List[PriceObservation]:
    """Newest-first price history of a product, optionally one variant only."""
    sql = """
        SELECT time, product_key, variant_key, price, seller_key, is_buy_box
        FROM price_history
        WHERE product_key = %s
    """
    params: Tuple = (product_key,)
    if variant_key is not None:
        sql += " AND variant_key = %s"
        params += (variant_key,)
    sql += " ORDER BY time DESC LIMIT %s"
    params += (limit,)

    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, params)
        return [PriceObservation(**row) for row in cur.fetchall()]


def get_active_trackable_variants(conn: PGConnection) -> List[ProductVariant]:
    """Variants that are active on tracked, active products."""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT v.variant_key, v.product_key, v.variant_title, v.color, v.storage,
                   v.is_active, v.created_at, v.updated_at
            FROM product_variants v
            INNER JOIN products p ON v.product_key = p.product_key
            WHERE v.is_active = TRUE AND p.is_tracked = TRUE AND p.is_active = TRUE
            ORDER BY p.crawl_priority DESC, v.variant_key;
            """
        )
        return [ProductVariant(**row) for row in cur.fetchall()]


def get_tracked_products(conn: PGConnection) -> List[Product]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {PRODUCT_COLUMNS}
            FROM products
            WHERE is_tracked = TRUE AND is_active = TRUE
            ORDER BY crawl_priority DESC, id;
            """
        )
        return [Product(**row) for row in cur.fetchall()]


def select_due_products(
    conn: PGConnection,
    stale_before: datetime,
    hot_priority: int,
    hot_stale_before: datetime,
    limit: int,
) -> List[str]:
    """Keys of tracked products due for a re-scrape. Read-only."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT product_key
            FROM products
            WHERE is_tracked = TRUE
              AND is_active = TRUE
              AND (
                    last_scraped_at IS NULL
                 OR last_scraped_at < %(stale_before)s
                 OR (crawl_priority >= %(hot_priority)s AND last_scraped_at < %(hot_stale_before)s)
              )
            ORDER BY crawl_priority DESC, last_scraped_at ASC NULLS FIRST, product_key
            LIMIT %(limit)s;
            """,
            {
                "stale_before": stale_before,
                "hot_priority": hot_priority,
                "hot_stale_before": hot_stale_before,
                "limit": limit,
            },
        )
        return [row[0] for row in cur.fetchall()]


class Repository(Protocol):
    """Persistence operations consumed by workers, crawlers and the scheduler."""

    def upsert_product(self, product: Product) -> None:
        ...

    def upsert_products(self, products: List[Product]) -> int:
        ...

    def upsert_variant(self, variant: ProductVariant) -> None:
        ...

    def insert_price_observation(self, observation: PriceObservation) -> bool:
        ...

    def upsert_category(self, category: Category) -> None:
        ...

    def get_product_history(self, product_key: str) -> List[PriceObservation]:
        ...

    def get_active_trackable_variants(self) -> List[ProductVariant]:
        ...

    def get_tracked_products(self) -> List[Product]:
        ...

    def select_due_products(
        self,
        stale_before: datetime,
        hot_priority: int,
        hot_stale_before: datetime,
        limit: int,
    ) -> List[str]:
        ...


class PostgresRepository:
    """Repository over one psycopg2 connection; one transaction per call.

    Every database error is rolled back and re-raised as ``PersistenceError``.
    """

    def __init__(self, conn: PGConnection) -> None:
        self.conn = conn

    @classmethod
    def connect(cls, dsn: Optional[str] = None) -> PostgresRepository:
        try:
            conn = get_db_connection(dsn)
        except psycopg2.Error as exc:
            raise PersistenceError(f"cannot connect to database: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    def _run(self, stage: str, func, *args):
        try:
            result = func(self.conn, *args)
            self.conn.commit()
            return result
        except psycopg2.Error as exc:
            try:
                self.conn.rollback()
            except psycopg2.Error:
                LOGGER.warning("Rollback failed after %s error", stage)
            raise PersistenceError(f"{stage} failed: {exc}") from exc

    def ensure_schema(self) -> None:
        self._run("ensure_schema", ensure_schema)

    def upsert_product(self, product: Product) -> None:
        self._run("upsert_product", upsert_product, product)

    def upsert_products(self, products: List[Product]) -> int:
        return self._run("upsert_products", upsert_products, products)

    def upsert_variant(self, variant: ProductVariant) -> None:
        self._run("upsert_variant", upsert_variant, variant)

    def insert_price_observation(self, observation: PriceObservation) -> bool:
        return self._run("insert_price_observation", insert_price_observation, observation)

    def upsert_category(self, category: Category) -> None:
        self._run("upsert_category", upsert_category, category)

    def get_product_history(self, product_key: str) -> List[PriceObservation]:
        return self._run("get_product_history", get_product_history, product_key)

    def get_active_trackable_variants(self) -> List[ProductVariant]:
        return self._run("get_active_trackable_variants", get_active_trackable_variants)

    def get_tracked_products(self) -> List[Product]:
        return self._run("get_tracked_products", get_tracked_products)

    def select_due_products(
        self,
        stale_before: datetime,
        hot_priority: int,
        hot_stale_before: datetime,
        limit: int,
    ) -> List[str]:
        return self._run(
            "select_due_products",
            select_due_products,
            stale_before,
            hot_priority,
            hot_stale_before,
            limit,
        )
