"""Optional in-process Shopify sync loop.

Every ``SHOPIFY_SYNC_INTERVAL_SECONDS`` it runs one bounded orders sync and
one products sync for every active, linked store. Disabled unless
``SHOPIFY_SYNC_LOOP_ENABLED`` is set; the usual cadence comes from an
external scheduler calling ``POST /shopify/sync``.

Can also be run standalone with ``python -m app.workers.shopify_sync_loop``.
"""

import asyncio
from typing import Dict, Optional

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.services.shopify_store_service import shopify_store_service
from app.services.shopify_sync import OUTCOME_OK, RESOURCES, SyncEngine, sync_engine
from app.utils.logger import logger


async def run_shopify_sync_once(engine: Optional[SyncEngine] = None) -> Dict[str, int]:
    """One pass over all syncable stores; returns counts by outcome kind."""

    engine = engine or sync_engine
    counts: Dict[str, int] = {}

    db = SessionLocal()
    try:
        shops = [(s.shop, s.operator_id) for s in shopify_store_service.list_syncable(db)]
        db.commit()

        for shop, operator_id in shops:
            for resource in RESOURCES:
                try:
                    outcome = await engine.sync(db, shop, resource, operator_id=operator_id)
                except Exception as exc:
                    db.rollback()
                    logger.error(
                        "[shopify-sync-loop] sync crashed shop=%s resource=%s: %s",
                        shop,
                        resource,
                        exc,
                        exc_info=True,
                    )
                    counts["error"] = counts.get("error", 0) + 1
                    continue

                counts[outcome.kind] = counts.get(outcome.kind, 0) + 1
                if outcome.kind != OUTCOME_OK:
                    logger.warning(
                        "[shopify-sync-loop] shop=%s resource=%s outcome=%s status=%s message=%s",
                        shop,
                        resource,
                        outcome.kind,
                        outcome.upstream_status,
                        outcome.message,
                    )
    finally:
        db.close()

    logger.info("[shopify-sync-loop] cycle finished stores=%s counts=%s", len(shops), counts)
    return counts


async def run_shopify_sync_loop(interval_seconds: Optional[int] = None) -> None:
    interval_seconds = interval_seconds or settings.SHOPIFY_SYNC_INTERVAL_SECONDS
    logger.info("Shopify sync loop started (interval=%s seconds)", interval_seconds)

    while True:
        try:
            await run_shopify_sync_once()
        except Exception as e:
            logger.error(f"Shopify sync loop error: {str(e)}", exc_info=True)

        await asyncio.sleep(interval_seconds)


if __name__ == "__main__":
    asyncio.run(run_shopify_sync_loop())
