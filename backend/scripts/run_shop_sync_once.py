#!/usr/bin/env python3
"""
One-shot script to run a single bounded sync page for one shop.

Same code path as POST /shopify/sync, scoped to the store's linked operator.
Repeat the call to page further through history.

Usage:
    cd backend
    python scripts/run_shop_sync_once.py <shop> [orders|products]
"""

import sys
import os
import asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import ShopifySyncState
from app.services.shop_domain import sanitize_shop
from app.services.shopify_sync import OUTCOME_OK, sync_engine
from app.config import settings


async def main() -> int:
    if len(sys.argv) < 2:
        print(__doc__)
        return 2

    shop = sys.argv[1]
    mode = sys.argv[2] if len(sys.argv) > 2 else "orders"

    print("=" * 80)
    print("SHOPIFY SYNC ONE-SHOT RUN")
    print("=" * 80)
    print(f"Timestamp: {datetime.now(timezone.utc).isoformat()}")
    print(f"Shop: {shop}  Mode: {mode}  API version: {settings.SHOPIFY_API_VERSION}")
    print()

    db = SessionLocal()
    try:
        outcome = await sync_engine.sync(db, shop, mode)

        print("-" * 40)
        print(f"Outcome: {outcome.kind}")
        print("-" * 40)
        if outcome.kind == OUTCOME_OK:
            for key, value in outcome.result.to_dict().items():
                print(f"  {key}: {value}")
        else:
            print(f"  message: {outcome.message}")
            if outcome.upstream_status is not None:
                print(f"  upstream status: {outcome.upstream_status}")
                print(f"  upstream body: {str(outcome.upstream_body)[:500]}")

        db.expire_all()
        clean_shop = sanitize_shop(shop) or shop
        state = (
            db.query(ShopifySyncState)
            .filter(ShopifySyncState.shop == clean_shop, ShopifySyncState.resource == mode)
            .first()
        )
        if state:
            print()
            print("Sync State:")
            print(f"  cursor_value: {state.cursor_value}")
            print(f"  version: {state.version}")
            print(f"  last_run_at: {state.last_run_at}")
            print(f"  last_error: {state.last_error[:200] if state.last_error else '<none>'}")

        print()
        print("=" * 80)
        print("ONE-SHOT RUN COMPLETE")
        print("=" * 80)
        return 0 if outcome.kind == OUTCOME_OK else 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
