from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Boolean, Index, UniqueConstraint, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from typing import Optional
import enum
import uuid

from . import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncResource(str, enum.Enum):
    orders = "orders"
    products = "products"


class WebhookDeliveryStatus(str, enum.Enum):
    received = "received"
    processed = "processed"
    failed = "failed"
    ignored = "ignored"


class ShopifyStore(Base):
    """One row per installed (or previously installed) Shopify shop.

    ``shop`` is the canonical ``<handle>.myshopify.com`` domain and is the only
    identity: a shop maps to exactly one row whoever installed it.
    ``operator_id`` is the platform operator that claimed the shop; it stays
    NULL between install and link.
    """

    __tablename__ = "shopify_stores"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop = Column(String(255), nullable=False)

    # Physical column holding the encrypted credential when written via the
    # ``access_token`` property.
    _access_token = Column("access_token", Text, nullable=True)
    scope = Column(Text, nullable=True)
    scopes = Column(JSONType, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    installed_at = Column(DateTime(timezone=True), nullable=True)
    uninstalled_at = Column(DateTime(timezone=True), nullable=True)

    operator_id = Column(String(64), nullable=True)

    # Topic key (e.g. "app_uninstalled") -> upstream webhook subscription id.
    webhook_ids = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    sync_states = relationship("ShopifySyncState", back_populates="store", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("shop", name="uq_shopify_stores_shop"),
        Index("idx_shopify_stores_operator_id", "operator_id"),
        Index("idx_shopify_stores_is_active", "is_active"),
    )

    @property
    def access_token(self) -> Optional[str]:
        from app.utils import crypto

        return crypto.decrypt(self._access_token)

    @access_token.setter
    def access_token(self, value: Optional[str]) -> None:
        from app.utils import crypto

        if value is None or value == "":
            self._access_token = None
        else:
            self._access_token = crypto.encrypt(value)

    @property
    def is_installed(self) -> bool:
        return bool(self.is_active and self._access_token)

    @property
    def is_linked(self) -> bool:
        return self.is_installed and bool(self.operator_id)


class ShopifySyncState(Base):
    """Incremental sync watermark for one (shop, resource).

    ``cursor_value`` only moves forward and only through a compare-and-set on
    ``version`` (see app.services.shopify_sync.state).
    """

    __tablename__ = "shopify_sync_state"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), ForeignKey("shopify_stores.id", ondelete="CASCADE"), nullable=False)
    shop = Column(String(255), nullable=False)
    resource = Column(String(32), nullable=False)  # orders, products

    cursor_value = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0, server_default="0")

    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    store = relationship("ShopifyStore", back_populates="sync_states")

    __table_args__ = (
        UniqueConstraint("shop", "resource", name="uq_shopify_sync_state_shop_resource"),
    )


class ShopifyWebhookEvent(Base):
    """Idempotency ledger and audit trail of webhook deliveries.

    The unique (shop, dedupe_key) constraint is what serializes concurrent
    duplicate deliveries. Rows are never deleted.
    """

    __tablename__ = "shopify_webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop = Column(String(255), nullable=False)
    topic = Column(String(128), nullable=False)
    webhook_id = Column(String(128), nullable=True)
    dedupe_key = Column(String(255), nullable=False)
    order_id = Column(String(64), nullable=True)

    status = Column(String(16), nullable=False, default=WebhookDeliveryStatus.received.value)
    attempts = Column(Integer, nullable=False, default=1, server_default="1")
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("shop", "dedupe_key", name="uq_shopify_webhook_events_shop_dedupe"),
        Index("idx_shopify_webhook_events_order", "shop", "topic", "order_id"),
    )


class ShopifyOrder(Base):
    __tablename__ = "shopify_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    operator_id = Column(String(64), nullable=False)
    shop = Column(String(255), nullable=False)
    shopify_order_id = Column(String(64), nullable=False)

    order_name = Column(Text, nullable=True)
    order_number = Column(Integer, nullable=True)
    financial_status = Column(Text, nullable=True)
    fulfillment_status = Column(Text, nullable=True)
    currency = Column(String(8), nullable=True)
    total_price = Column(Text, nullable=True)
    customer_email = Column(Text, nullable=True)
    created_at_shopify = Column(DateTime(timezone=True), nullable=True)
    updated_at_shopify = Column(DateTime(timezone=True), nullable=True)

    raw = Column(JSONType, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("operator_id", "shop", "shopify_order_id", name="uq_shopify_orders_operator_shop_order"),
        Index("idx_shopify_orders_shop_order", "shop", "shopify_order_id"),
    )


class ShopifyProduct(Base):
    __tablename__ = "shopify_products"

    id = Column(String(36), primary_key=True, default=_uuid)
    operator_id = Column(String(64), nullable=False)
    shop = Column(String(255), nullable=False)
    shopify_product_id = Column(String(64), nullable=False)

    title = Column(Text, nullable=True)
    status = Column(Text, nullable=True)
    vendor = Column(Text, nullable=True)
    product_type = Column(Text, nullable=True)
    handle = Column(Text, nullable=True)
    created_at_shopify = Column(DateTime(timezone=True), nullable=True)
    updated_at_shopify = Column(DateTime(timezone=True), nullable=True)

    raw = Column(JSONType, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("operator_id", "shop", "shopify_product_id", name="uq_shopify_products_operator_shop_product"),
        Index("idx_shopify_products_shop_product", "shop", "shopify_product_id"),
    )
