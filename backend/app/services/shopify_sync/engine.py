from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.services.shop_domain import sanitize_shop
from app.services.shopify_api_client import ShopifyAdminClient, shopify_client
from app.services.shopify_errors import ShopifyApiError
from app.services.shopify_records import _parse_datetime
from app.services.shopify_store_service import ShopifyStoreService, shopify_store_service
from app.services.shopify_sync.resources import RESOURCES
from app.services.shopify_sync.state import (
    _now_utc,
    _to_utc,
    advance_watermark,
    compute_lower_bound,
    get_or_create_sync_state,
    mark_sync_run_result,
    next_watermark,
)
from app.utils.logger import logger


OUTCOME_OK = "ok"
OUTCOME_UPSTREAM_ERROR = "upstream_error"
OUTCOME_NOT_INSTALLED = "not_installed"
OUTCOME_VALIDATION_ERROR = "validation_error"
OUTCOME_CONFLICT = "conflict"


@dataclass
class SyncResult:
    shop: str
    mode: str
    fetched: int
    upserted: int
    updated_at_min: datetime
    new_watermark: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shop": self.shop,
            "mode": self.mode,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "updatedAtMin": self.updated_at_min.isoformat(),
            "newLastSync": self.new_watermark.isoformat(),
        }


@dataclass
class SyncOutcome:
    """Tagged result of one sync call; ``kind`` is one of the OUTCOME_* values."""

    kind: str
    result: Optional[SyncResult] = None
    message: Optional[str] = None
    upstream_status: Optional[int] = None
    upstream_body: Any = None

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_OK

    @classmethod
    def from_upstream(cls, exc: ShopifyApiError) -> "SyncOutcome":
        return cls(
            kind=OUTCOME_UPSTREAM_ERROR,
            message=str(exc),
            upstream_status=exc.status,
            upstream_body=exc.body,
        )


class SyncEngine:
    """Pull one bounded page of a resource and advance its watermark.

    Same-key calls are serialized in-process by an asyncio lock; across
    processes the watermark is written with a compare-and-set on
    ``ShopifySyncState.version`` and the losing call reports a conflict
    without committing anything.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[ShopifyAdminClient] = None,
        stores: Optional[ShopifyStoreService] = None,
    ):
        self.settings = settings or default_settings
        self.client = client or shopify_client
        self.stores = stores or shopify_store_service
        # Entries disappear once no call holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, shop: str, resource: str) -> asyncio.Lock:
        key = (shop, resource)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def sync(
        self,
        db: Session,
        shop: str,
        resource: str,
        operator_id: Optional[str] = None,
    ) -> SyncOutcome:
        spec = RESOURCES.get((resource or "").lower())
        if spec is None:
            return SyncOutcome(
                kind=OUTCOME_VALIDATION_ERROR,
                message=f"Unsupported sync mode '{resource}'. Use one of: {', '.join(RESOURCES)}",
            )
        clean_shop = sanitize_shop(shop, self.settings.SHOPIFY_PLATFORM_DOMAIN)
        if not clean_shop:
            return SyncOutcome(kind=OUTCOME_VALIDATION_ERROR, message="Invalid or missing shop parameter")

        async with self._lock_for(clean_shop, spec.name):
            return await self._sync_locked(db, clean_shop, spec, operator_id)

    async def _sync_locked(self, db: Session, shop: str, spec, operator_id: Optional[str]) -> SyncOutcome:
        store = self.stores.get_active_store(db, shop, operator_id)
        if store is None:
            return SyncOutcome(
                kind=OUTCOME_NOT_INSTALLED,
                message=f"Store {shop} not found or inactive for this merchant",
            )
        effective_operator = operator_id or store.operator_id
        if not effective_operator:
            return SyncOutcome(kind=OUTCOME_NOT_INSTALLED, message=f"Store {shop} is not linked to a merchant")

        state = get_or_create_sync_state(db, store, spec.name)
        state_id = state.id
        expected_version = state.version
        previous = _to_utc(state.cursor_value)
        lower_bound = compute_lower_bound(state, lookback_days=spec.lookback_days(self.settings))
        access_token = store.access_token
        # Nothing is held open across the upstream call.
        db.commit()

        logger.info(
            "[shopify-sync] mode=%s shop=%s operator=%s since=%s",
            spec.name,
            shop,
            effective_operator,
            lower_bound.isoformat(),
        )

        fetch = getattr(self.client, spec.client_method)
        try:
            records = await fetch(
                shop,
                access_token,
                updated_at_min=lower_bound,
                limit=spec.page_limit(self.settings),
            )
        except ShopifyApiError as exc:
            logger.warning(
                "[shopify-sync] upstream error mode=%s shop=%s status=%s; watermark unchanged",
                spec.name,
                shop,
                exc.status,
            )
            mark_sync_run_result(db, state_id, error=f"{exc.status} {exc.context}: {str(exc.body)[:500]}")
            return SyncOutcome.from_upstream(exc)

        upserted = 0
        page_max: Optional[datetime] = None
        try:
            for record in records:
                if not isinstance(record, dict) or record.get("id") is None:
                    logger.warning("[shopify-sync] skipping %s record without id for shop=%s", spec.name, shop)
                    continue
                spec.upsert(db, effective_operator, shop, record)
                upserted += 1
                updated_at = _parse_datetime(record.get("updated_at"))
                if updated_at is not None and (page_max is None or updated_at > page_max):
                    page_max = updated_at

            new_watermark = next_watermark(previous, page_max, len(records), now=_now_utc())
            if not advance_watermark(db, state_id, expected_version=expected_version, cursor_value=new_watermark):
                db.rollback()
                logger.warning("[shopify-sync] watermark conflict mode=%s shop=%s; page discarded", spec.name, shop)
                return SyncOutcome(
                    kind=OUTCOME_CONFLICT,
                    message=f"Concurrent sync detected for {shop}/{spec.name}",
                )
            db.commit()
        except Exception as exc:
            db.rollback()
            mark_sync_run_result(db, state_id, error=f"{type(exc).__name__}: {exc}")
            raise

        result = SyncResult(
            shop=shop,
            mode=spec.name,
            fetched=len(records),
            upserted=upserted,
            updated_at_min=lower_bound,
            new_watermark=new_watermark,
        )
        logger.info(
            "[shopify-sync] result mode=%s shop=%s fetched=%s upserted=%s new_watermark=%s",
            spec.name,
            shop,
            result.fetched,
            result.upserted,
            new_watermark.isoformat(),
        )
        return SyncOutcome(kind=OUTCOME_OK, result=result)


sync_engine = SyncEngine()
