from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict

from app.config import Settings
from app.models_sqlalchemy.models import SyncResource
from app.services.shopify_records import upsert_order, upsert_product


@dataclass(frozen=True)
class ResourceSpec:
    """How one resource kind is fetched, paged and materialized."""

    name: str
    client_method: str  # ShopifyAdminClient coroutine name
    upsert: Callable[..., Any]
    lookback_setting: str
    page_limit_setting: str

    def lookback_days(self, settings: Settings) -> int:
        return int(getattr(settings, self.lookback_setting))

    def page_limit(self, settings: Settings) -> int:
        return int(getattr(settings, self.page_limit_setting))


RESOURCES: Dict[str, ResourceSpec] = {
    SyncResource.orders.value: ResourceSpec(
        name=SyncResource.orders.value,
        client_method="list_orders",
        upsert=upsert_order,
        lookback_setting="SHOPIFY_ORDERS_LOOKBACK_DAYS",
        page_limit_setting="SHOPIFY_ORDERS_PAGE_LIMIT",
    ),
    SyncResource.products.value: ResourceSpec(
        name=SyncResource.products.value,
        client_method="list_products",
        upsert=upsert_product,
        lookback_setting="SHOPIFY_PRODUCTS_LOOKBACK_DAYS",
        page_limit_setting="SHOPIFY_PRODUCTS_PAGE_LIMIT",
    ),
}
