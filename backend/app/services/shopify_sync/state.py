from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import ShopifyStore, ShopifySyncState
from app.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_lower_bound(
    state: ShopifySyncState,
    *,
    lookback_days: int,
    now: Optional[datetime] = None,
) -> datetime:
    """Fetch lower bound for the next page.

    The stored watermark when there is one, otherwise ``now - lookback_days``.
    """

    cursor = _to_utc(state.cursor_value)
    if cursor is not None:
        return cursor
    return (now or _now_utc()) - timedelta(days=lookback_days)


def next_watermark(
    previous: Optional[datetime],
    page_max: Optional[datetime],
    fetched: int,
    *,
    now: Optional[datetime] = None,
) -> datetime:
    """Watermark after a page.

    Max updated-at of the page when records came back, "now" for an empty
    page. Never lower than ``previous``.
    """

    previous = _to_utc(previous)
    if fetched:
        candidate = _to_utc(page_max) or previous or (now or _now_utc())
    else:
        candidate = now or _now_utc()
    if previous is not None and previous > candidate:
        return previous
    return candidate


def get_or_create_sync_state(db: Session, store: ShopifyStore, resource: str) -> ShopifySyncState:
    state = (
        db.query(ShopifySyncState)
        .filter(ShopifySyncState.shop == store.shop, ShopifySyncState.resource == resource)
        .first()
    )
    if state:
        return state

    state = ShopifySyncState(
        store_id=store.id,
        shop=store.shop,
        resource=resource,
        cursor_value=None,
        version=0,
    )
    db.add(state)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another sync; use theirs.
        db.rollback()
        return (
            db.query(ShopifySyncState)
            .filter(ShopifySyncState.shop == store.shop, ShopifySyncState.resource == resource)
            .one()
        )
    db.refresh(state)
    return state


def advance_watermark(
    db: Session,
    state_id: str,
    *,
    expected_version: int,
    cursor_value: datetime,
) -> bool:
    """Compare-and-set the watermark; ``False`` when another writer got there first.

    Does not commit, so the caller can persist its page of records and the
    watermark in one transaction.
    """

    now = _now_utc()
    updated = (
        db.query(ShopifySyncState)
        .filter(
            ShopifySyncState.id == state_id,
            ShopifySyncState.version == expected_version,
        )
        .update(
            {
                ShopifySyncState.cursor_value: cursor_value,
                ShopifySyncState.version: ShopifySyncState.version + 1,
                ShopifySyncState.last_run_at: now,
                ShopifySyncState.last_error: None,
                ShopifySyncState.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def mark_sync_run_result(db: Session, state_id: str, *, error: Optional[str]) -> None:
    """Record a run that did not move the watermark (last_run_at/last_error only)."""

    state = db.query(ShopifySyncState).filter(ShopifySyncState.id == state_id).first()
    if state is None:
        logger.warning("[shopify-sync] sync state %s vanished before recording result", state_id)
        return
    state.last_run_at = _now_utc()
    state.last_error = error[:2000] if error else None
    state.updated_at = _now_utc()
    db.commit()
