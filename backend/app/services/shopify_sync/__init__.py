"""Incremental pull sync of Shopify orders and products.

One call fetches one bounded page ordered oldest-updated-first, upserts it
and advances the per-(shop, resource) watermark. Full backfill is repeated
invocation. Cadence belongs to the caller: ``POST /shopify/sync``, the
optional loop in ``app.workers.shopify_sync_loop`` or
``scripts/run_shop_sync_once.py``.
"""

from .engine import (
    OUTCOME_CONFLICT,
    OUTCOME_NOT_INSTALLED,
    OUTCOME_OK,
    OUTCOME_UPSTREAM_ERROR,
    OUTCOME_VALIDATION_ERROR,
    SyncEngine,
    SyncOutcome,
    SyncResult,
    sync_engine,
)
from .resources import RESOURCES

__all__ = [
    "OUTCOME_CONFLICT",
    "OUTCOME_NOT_INSTALLED",
    "OUTCOME_OK",
    "OUTCOME_UPSTREAM_ERROR",
    "OUTCOME_VALIDATION_ERROR",
    "RESOURCES",
    "SyncEngine",
    "SyncOutcome",
    "SyncResult",
    "sync_engine",
]
