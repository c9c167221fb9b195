"""Inbound Shopify webhook handling.

Each delivery is verified against the raw body, recorded once in
``shopify_webhook_events`` and dispatched by topic. The unique
(shop, dedupe_key) constraint is the only duplicate check: the insert either
wins or collides, so two concurrent copies of a delivery can never both
dispatch.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models_sqlalchemy.models import ShopifyWebhookEvent, WebhookDeliveryStatus
from app.services.shop_domain import sanitize_shop
from app.services.shopify_errors import ShopifySignatureError, ShopifyValidationError
from app.services.shopify_records import upsert_order
from app.services.shopify_signature import verify_webhook
from app.services.shopify_store_service import ShopifyStoreService, shopify_store_service
from app.utils.logger import logger


UNINSTALL_TOPIC = "app/uninstalled"
ORDER_TOPICS = frozenset({"orders/create", "orders/paid", "orders/updated"})

# Route slug -> upstream topic, used when the topic header is missing.
TOPIC_SLUGS: Dict[str, str] = {
    "app-uninstalled": UNINSTALL_TOPIC,
    "orders-create": "orders/create",
    "orders-paid": "orders/paid",
    "orders-updated": "orders/updated",
}


@dataclass
class WebhookResult:
    status: str
    duplicate: bool = False
    event_id: Optional[str] = None
    detail: Optional[str] = None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value.strip() if isinstance(value, str) and value.strip() else None


def dedupe_key_for(headers: Mapping[str, str], topic: str, body: bytes) -> str:
    """Provider delivery id, falling back to a digest of topic + body."""
    delivery_id = _header(headers, "X-Shopify-Webhook-Id") or _header(headers, "X-Shopify-Event-Id")
    if delivery_id:
        return delivery_id
    return f"{topic}:{hashlib.sha256(body).hexdigest()}"


class ShopifyWebhookInbox:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        stores: Optional[ShopifyStoreService] = None,
    ):
        self.settings = settings or default_settings
        self.stores = stores or shopify_store_service

    def receive(self, db: Session, slug: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Verify, record and dispatch one delivery.

        Raises ``ShopifySignatureError`` (401) before touching storage when the
        signature does not match and ``ShopifyValidationError`` (400) for an
        unparseable body. Anything else that is legitimate but inert returns
        a result so the sender gets a 200 and stops retrying.
        """

        if not verify_webhook(body, _header(headers, "X-Shopify-Hmac-Sha256"), self.settings.shopify_webhook_secret):
            logger.warning("[shopify-webhook] signature verification failed slug=%s", slug)
            raise ShopifySignatureError("Invalid signature", status_code=401)

        raw_shop = _header(headers, "X-Shopify-Shop-Domain")
        shop = sanitize_shop(raw_shop, self.settings.SHOPIFY_PLATFORM_DOMAIN)
        if not shop:
            logger.info("[shopify-webhook] invalid shop domain header %r slug=%s; acknowledging", raw_shop, slug)
            return WebhookResult(status=WebhookDeliveryStatus.ignored.value, detail="invalid_shop")

        try:
            payload = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ShopifyValidationError(f"Invalid JSON body: {type(exc).__name__}") from exc
        if not isinstance(payload, dict):
            raise ShopifyValidationError("Webhook body must be a JSON object")

        topic = (_header(headers, "X-Shopify-Topic") or TOPIC_SLUGS.get(slug) or slug).lower()
        dedupe_key = dedupe_key_for(headers, topic, body)
        order_id = str(payload["id"]) if topic in ORDER_TOPICS and payload.get("id") is not None else None

        event = self._claim_delivery(
            db,
            shop=shop,
            topic=topic,
            dedupe_key=dedupe_key,
            webhook_id=_header(headers, "X-Shopify-Webhook-Id"),
            order_id=order_id,
        )
        if event is None:
            logger.info("[shopify-webhook] duplicate delivery shop=%s topic=%s key=%s", shop, topic, dedupe_key)
            return WebhookResult(status="duplicate", duplicate=True)

        try:
            status, detail = self._dispatch(db, shop, topic, payload)
        except Exception as exc:
            db.rollback()
            self._finish(db, event, WebhookDeliveryStatus.failed, f"{type(exc).__name__}: {exc}")
            logger.exception("[shopify-webhook] processing failed shop=%s topic=%s", shop, topic)
            raise

        self._finish(db, event, status, detail)
        logger.info("[shopify-webhook] shop=%s topic=%s status=%s", shop, topic, status.value)
        return WebhookResult(status=status.value, event_id=event.id, detail=detail)

    def _claim_delivery(
        self,
        db: Session,
        *,
        shop: str,
        topic: str,
        dedupe_key: str,
        webhook_id: Optional[str],
        order_id: Optional[str],
    ) -> Optional[ShopifyWebhookEvent]:
        """Insert the ledger row; ``None`` means another copy already owns it.

        A previously failed delivery, or one left in ``received`` longer than
        the claim lease, is reclaimed with a conditional update so sender
        retries can still succeed, and only one retry wins.
        """

        event = ShopifyWebhookEvent(
            shop=shop,
            topic=topic,
            dedupe_key=dedupe_key,
            webhook_id=webhook_id,
            order_id=order_id,
            status=WebhookDeliveryStatus.received.value,
            attempts=1,
        )
        db.add(event)
        try:
            db.commit()
            return event
        except IntegrityError as exc:
            db.rollback()
            collision = exc

        existing = (
            db.query(ShopifyWebhookEvent)
            .filter(ShopifyWebhookEvent.shop == shop, ShopifyWebhookEvent.dedupe_key == dedupe_key)
            .first()
        )
        if existing is None:
            # The collision was not on (shop, dedupe_key); surface it as a 500.
            logger.error("[shopify-webhook] ledger insert failed without a matching row shop=%s key=%s", shop, dedupe_key)
            raise collision

        now = datetime.now(timezone.utc)
        lease_expired_before = now - timedelta(seconds=self.settings.SHOPIFY_WEBHOOK_CLAIM_LEASE_SECONDS)
        reclaimable = or_(
            ShopifyWebhookEvent.status == WebhookDeliveryStatus.failed.value,
            and_(
                ShopifyWebhookEvent.status == WebhookDeliveryStatus.received.value,
                ShopifyWebhookEvent.updated_at < lease_expired_before,
            ),
        )
        reclaimed = (
            db.query(ShopifyWebhookEvent)
            .filter(ShopifyWebhookEvent.id == existing.id, reclaimable)
            .update(
                {
                    ShopifyWebhookEvent.status: WebhookDeliveryStatus.received.value,
                    ShopifyWebhookEvent.attempts: ShopifyWebhookEvent.attempts + 1,
                    ShopifyWebhookEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if reclaimed != 1:
            return None
        db.refresh(existing)
        logger.info("[shopify-webhook] retrying delivery shop=%s key=%s attempt=%s", shop, dedupe_key, existing.attempts)
        return existing

    def _dispatch(self, db: Session, shop: str, topic: str, payload: Dict[str, Any]):
        store = self.stores.get_by_shop(db, shop)
        if store is None or not store.is_active:
            return WebhookDeliveryStatus.ignored, "store_not_active"

        if topic == UNINSTALL_TOPIC:
            self.stores.mark_uninstalled(db, shop)
            return WebhookDeliveryStatus.processed, None

        if topic in ORDER_TOPICS:
            if not store.operator_id:
                return WebhookDeliveryStatus.ignored, "store_not_linked"
            if payload.get("id") is None:
                return WebhookDeliveryStatus.ignored, "missing_order_id"
            upsert_order(db, store.operator_id, shop, payload)
            db.commit()
            return WebhookDeliveryStatus.processed, None

        return WebhookDeliveryStatus.ignored, "unhandled_topic"

    @staticmethod
    def _finish(db: Session, event: ShopifyWebhookEvent, status: WebhookDeliveryStatus, detail: Optional[str]) -> None:
        event.status = status.value
        event.last_error = detail[:2000] if detail else None
        event.updated_at = datetime.now(timezone.utc)
        db.commit()


shopify_webhook_inbox = ShopifyWebhookInbox()
