"""Upstream collector: response parsing, category crawling, price tracking."""

from .crawler import CrawlStats, crawl_category, load_categories, save_products
from .mapper import ProductDetail, is_marketable, parse_category_page, parse_product_detail
from .tracker import sync_variants, track_prices

__all__ = [
    "CrawlStats",
    "ProductDetail",
    "crawl_category",
    "is_marketable",
    "load_categories",
    "parse_category_page",
    "parse_product_detail",
    "save_products",
    "sync_variants",
    "track_prices",
]
