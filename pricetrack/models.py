"""Pydantic models shared across pipeline components."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CRAWL_PRIORITY = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScrapeTask(BaseModel):
    """Unit of work carried by the task queue."""

    model_config = ConfigDict(frozen=True)

    product_key: str = Field(min_length=1)
    variant_key: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, body: str | bytes) -> ScrapeTask:
        """Decode a queue payload; raises ``pydantic.ValidationError``."""
        return cls.model_validate_json(body)


class Product(BaseModel):
    product_key: str
    title: str = ""
    is_active: bool = False
    category: str = ""
    crawl_priority: int = DEFAULT_CRAWL_PRIORITY
    is_tracked: bool = False
    last_crawled: Optional[datetime] = None
    last_scraped_at: Optional[datetime] = None


class ProductVariant(BaseModel):
    variant_key: str
    product_key: str
    variant_title: str = ""
    color: str = ""
    storage: str = ""
    is_active: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PriceObservation(BaseModel):
    time: datetime = Field(default_factory=utcnow)
    product_key: str
    variant_key: str = ""
    price: int  # minor currency units
    seller_key: str = ""
    is_buy_box: bool = True


class Category(BaseModel):
    category_slug: str
    category_name: str = ""
    category_url: str = ""
    last_crawled: Optional[datetime] = None
    product_count: int = 0
    is_active: bool = True


def is_trackable(variant: ProductVariant, product: Product) -> bool:
    """A variant is price-tracked only while it and its product are live."""
    return variant.is_active and product.is_tracked and product.is_active
