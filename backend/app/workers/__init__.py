"""
Background workers for the Shopify connector.

Workers:
- shopify_sync_loop: optional loop that runs one bounded orders + products
  sync per linked store every SHOPIFY_SYNC_INTERVAL_SECONDS
"""

from app.workers.shopify_sync_loop import run_shopify_sync_loop, run_shopify_sync_once

__all__ = [
    "run_shopify_sync_loop",
    "run_shopify_sync_once",
]
