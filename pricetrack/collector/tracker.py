"""Sequential variant discovery and price tracking over tracked products."""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Dict, Iterable, List

from pricetrack.collector.crawler import PageSource
from pricetrack.collector.mapper import ProductDetail, parse_product_detail, product_detail_url
from pricetrack.errors import PricetrackError
from pricetrack.models import Product, ProductVariant

LOGGER = logging.getLogger(__name__)


def fetch_detail(session: PageSource, product_key: str) -> ProductDetail:
    url = product_detail_url(product_key)
    return parse_product_detail(session.get(url), url=url)


def sync_variants(
    session: PageSource,
    repository,
    products: Iterable[Product],
    delay: float = 2.0,
) -> int:
    """Re-sync the variant list of every given product. Returns variants saved."""
    products = list(products)
    total = 0
    for index, product in enumerate(products, 1):
        LOGGER.info(
            "[%d/%d] Crawling variants for product %s (%s)",
            index,
            len(products),
            product.product_key,
            product.title,
        )
        try:
            detail = fetch_detail(session, product.product_key)
            repository.upsert_product(detail.product)
            for variant in detail.variants:
                repository.upsert_variant(variant)
        except PricetrackError as exc:
            LOGGER.warning("Variant sync failed for %s: %s", product.product_key, exc)
        else:
            total += len(detail.variants)
            LOGGER.info("Saved %d variant(s) for %s", len(detail.variants), product.product_key)
        time.sleep(delay)

    LOGGER.info("Total variants synced: %d", total)
    return total


def track_prices(
    session: PageSource,
    repository,
    variants: Iterable[ProductVariant],
    delay: float = 2.0,
) -> int:
    """Record current prices of trackable variants, one request per product.

    Returns the number of observations inserted.
    """
    by_product: Dict[str, List[ProductVariant]] = OrderedDict()
    for variant in variants:
        by_product.setdefault(variant.product_key, []).append(variant)

    inserted = 0
    for index, (product_key, group) in enumerate(by_product.items(), 1):
        LOGGER.info(
            "[%d/%d] Tracking prices for product %s (%d variant(s))",
            index,
            len(by_product),
            product_key,
            len(group),
        )
        wanted = {variant.variant_key for variant in group}
        try:
            detail = fetch_detail(session, product_key)
            repository.upsert_product(detail.product)
            for observation in detail.observations:
                if observation.variant_key not in wanted:
                    continue
                if repository.insert_price_observation(observation):
                    inserted += 1
        except PricetrackError as exc:
            LOGGER.warning("Price tracking failed for %s: %s", product_key, exc)
        time.sleep(delay)

    LOGGER.info("Total prices tracked: %d for %d product(s)", inserted, len(by_product))
    return inserted
