"""Helpers that convert raw upstream JSON payloads into internal models."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pricetrack.errors import ParseError, UpstreamStatusError
from pricetrack.models import (
    DEFAULT_CRAWL_PRIORITY,
    PriceObservation,
    Product,
    ProductVariant,
    utcnow,
)

API_BASE = "https://api.digikala.com"
MARKETABLE = "marketable"

_TITLE_KEYS = ("title_fa", "title_en", "title")
_ATTRIBUTE_KEYS = ("title", "title_fa", "value", "fa")


@dataclass
class ProductDetail:
    """Everything one product-detail response yields."""

    product: Product
    variants: List[ProductVariant] = field(default_factory=list)
    observations: List[PriceObservation] = field(default_factory=list)


def category_search_url(category_slug: str, page: int) -> str:
    return f"{API_BASE}/v1/categories/{category_slug}/search/?page={page}&sort=22"


def product_detail_url(product_key: str, variant_key: Optional[str] = None) -> str:
    url = f"{API_BASE}/v2/product/{product_key}/"
    if variant_key:
        url += f"?variant_id={variant_key}"
    return url


def is_marketable(status: Any) -> bool:
    """Exact, case-sensitive match against the upstream marketability token."""
    return status == MARKETABLE


def _safe_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def select_price(price: Any) -> int:
    """Selling price, falling back to the list (rrp) price when zero or absent."""
    if not isinstance(price, dict):
        return 0
    selling = _safe_int(price.get("selling_price"))
    if selling:
        return selling
    return _safe_int(price.get("rrp_price"))


def _load(body: str | bytes, url: str) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ParseError("response root is not an object")

    status = payload.get("status")
    if status is not None and _safe_int(status) != 200:
        raise UpstreamStatusError(url or "response body", _safe_int(status))
    return payload


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _text(value: Any) -> str:
    """Flatten a localized/nested attribute to text; unknown shapes become ''."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, dict):
        for key in _ATTRIBUTE_KEYS:
            text = _text(value.get(key))
            if text:
                return text
    return ""


def _require_id(item: Dict[str, Any], what: str) -> str:
    value = item.get("id")
    if value is None or isinstance(value, bool) or value == "":
        raise ParseError(f"{what} id is missing in payload")
    return str(value)


def _require_title(item: Dict[str, Any], what: str, key: str) -> str:
    for name in _TITLE_KEYS:
        title = _text(item.get(name))
        if title:
            return title
    raise ParseError(f"{what} {key} has no title")


def _total_pages(payload: Dict[str, Any]) -> int:
    return max(_safe_int(_dig(payload, "data", "pager", "total_pages")), 1)


def parse_category_page(
    body: str | bytes,
    category_slug: str = "",
    now: Optional[datetime] = None,
    url: str = "",
) -> Tuple[List[Product], int]:
    """Parse one category search page.

    Returns
    -------
    tuple[list[Product], int]
        Products on the page and the total page count (at least 1)
    """
    payload = _load(body, url)
    items = _dig(payload, "data", "products") or []
    if not isinstance(items, list):
        raise ParseError("data.products is not a list")

    crawled_at = now or utcnow()
    products: List[Product] = []
    for item in items:
        if not isinstance(item, dict):
            raise ParseError("product entry is not an object")
        key = _require_id(item, "product")
        products.append(
            Product(
                product_key=key,
                title=_require_title(item, "product", key),
                is_active=is_marketable(item.get("status")),
                category=category_slug,
                crawl_priority=DEFAULT_CRAWL_PRIORITY,
                is_tracked=True,
                last_crawled=crawled_at,
            )
        )
    return products, _total_pages(payload)


def _iter_variant_items(product: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    variants = product.get("variants")
    if isinstance(variants, list) and variants:
        return [v for v in variants if isinstance(v, dict)]
    default = product.get("default_variant")
    if isinstance(default, dict) and default:
        return [default]
    return []


def _seller_key(variant: Dict[str, Any]) -> str:
    seller = variant.get("seller")
    if not isinstance(seller, dict):
        return ""
    seller_id = seller.get("id")
    if seller_id not in (None, "", 0):
        return str(seller_id)
    return _text(seller.get("title"))


def parse_product_detail(
    body: str | bytes,
    now: Optional[datetime] = None,
    url: str = "",
) -> ProductDetail:
    """Parse a product-detail response into product, variants and price points.

    One observation is produced per marketable variant; all of them share
    the same timestamp. Zero prices are kept as-is.
    """
    payload = _load(body, url)
    item = _dig(payload, "data", "product")
    if not isinstance(item, dict):
        raise ParseError("data.product is missing")

    key = _require_id(item, "product")

    observed_at = now or utcnow()
    product = Product(
        product_key=key,
        title=_require_title(item, "product", key),
        is_active=is_marketable(item.get("status")),
        category=_text(_dig(item, "category", "code")),
        is_tracked=True,
        last_scraped_at=observed_at,
    )

    default_variant = item.get("default_variant")
    default_key = None
    if isinstance(default_variant, dict) and default_variant.get("id") is not None:
        default_key = str(default_variant["id"])

    detail = ProductDetail(product=product)
    for raw in _iter_variant_items(item):
        variant_key = _require_id(raw, "variant")
        active = is_marketable(raw.get("status"))
        detail.variants.append(
            ProductVariant(
                variant_key=variant_key,
                product_key=key,
                variant_title=_text(raw.get("title_fa")) or _text(raw.get("title")),
                color=_text(raw.get("color")),
                storage=_text(raw.get("storage")),
                is_active=active,
                created_at=observed_at,
                updated_at=observed_at,
            )
        )
        if not active:
            continue
        detail.observations.append(
            PriceObservation(
                time=observed_at,
                product_key=key,
                variant_key=variant_key,
                price=select_price(raw.get("price")),
                seller_key=_seller_key(raw),
                is_buy_box=default_key is None or default_key == variant_key,
            )
        )
    return detail
