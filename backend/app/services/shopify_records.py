"""Materialization of upstream order/product payloads into local records.

Records are keyed by (operator_id, shop, upstream id). Each upsert is a
single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent writers cannot
race between a read and an insert. Nothing here commits; the caller owns the
transaction so a sync page and its watermark land together.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import ShopifyOrder, ShopifyProduct
from app.utils.logger import logger


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a Shopify ISO-8601 timestamp into an aware UTC datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("[shopify-records] unparseable timestamp %r", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _order_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    customer = payload.get("customer") or {}
    total_price = payload.get("total_price")
    return {
        "order_name": payload.get("name"),
        "order_number": _as_int(payload.get("order_number")),
        "financial_status": payload.get("financial_status"),
        "fulfillment_status": payload.get("fulfillment_status"),
        "currency": payload.get("currency"),
        "total_price": str(total_price) if total_price is not None else None,
        "customer_email": payload.get("email") or customer.get("email"),
        "created_at_shopify": _parse_datetime(payload.get("created_at")),
        "updated_at_shopify": _parse_datetime(payload.get("updated_at")),
        "raw": payload,
    }


def _product_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": payload.get("title"),
        "status": payload.get("status"),
        "vendor": payload.get("vendor"),
        "product_type": payload.get("product_type"),
        "handle": payload.get("handle"),
        "created_at_shopify": _parse_datetime(payload.get("created_at")),
        "updated_at_shopify": _parse_datetime(payload.get("updated_at")),
        "raw": payload,
    }


def _upsert(db: Session, model, id_column: str, operator_id: str, shop: str, upstream_id: str, fields: Dict[str, Any]) -> None:
    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    now_utc = datetime.now(timezone.utc)
    stmt = insert(model).values(
        operator_id=operator_id,
        shop=shop,
        updated_at=now_utc,
        **{id_column: upstream_id},
        **fields,
    )
    update_cols = list(fields.keys()) + ["updated_at"]
    stmt = stmt.on_conflict_do_update(
        index_elements=["operator_id", "shop", id_column],
        set_={name: getattr(stmt.excluded, name) for name in update_cols},
    )
    db.execute(stmt)


def upsert_order(db: Session, operator_id: str, shop: str, payload: Dict[str, Any]) -> None:
    order_id = payload.get("id")
    if order_id is None:
        raise ValueError("order payload has no id")
    _upsert(db, ShopifyOrder, "shopify_order_id", operator_id, shop, str(order_id), _order_fields(payload))


def upsert_product(db: Session, operator_id: str, shop: str, payload: Dict[str, Any]) -> None:
    product_id = payload.get("id")
    if product_id is None:
        raise ValueError("product payload has no id")
    _upsert(db, ShopifyProduct, "shopify_product_id", operator_id, shop, str(product_id), _product_fields(payload))
