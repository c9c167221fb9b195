from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.models.shopify import (
    Operator,
    ShopifyOrderResponse,
    ShopifyProductResponse,
    ShopifyStoreListResponse,
    ShopifyStoreResponse,
)
from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import ShopifyOrder, ShopifyProduct
from app.services.auth import get_current_operator
from app.services.shop_domain import sanitize_shop
from app.services.shopify_store_service import shopify_store_service
from app.services.shopify_sync import (
    OUTCOME_CONFLICT,
    OUTCOME_OK,
    OUTCOME_UPSTREAM_ERROR,
    SyncEngine,
    sync_engine,
)
from app.utils.logger import logger


router = APIRouter(prefix="/shopify", tags=["shopify_stores"])

RECORD_LIST_LIMIT = 100


def get_sync_engine() -> SyncEngine:
    return sync_engine


async def require_store_ownership(
    shop: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
) -> str:
    """Canonical shop from ``?shop=`` when it is linked to the caller."""

    if not shop:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Shop parameter is required")

    clean_shop = sanitize_shop(shop, settings.SHOPIFY_PLATFORM_DOMAIN)
    store = shopify_store_service.get_by_shop(db, clean_shop) if clean_shop else None
    if store is None or store.operator_id != current_operator.id:
        logger.warning("[shopify-stores] operator=%s denied access to shop=%s", current_operator.id, shop)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Store not linked to this merchant")
    return clean_shop


@router.get("/stores", response_model=ShopifyStoreListResponse)
async def list_stores(
    response: Response,
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
):
    stores = [s for s in shopify_store_service.list_for_operator(db, current_operator.id) if s.is_installed]
    response.headers["Cache-Control"] = "no-store"
    return ShopifyStoreListResponse(
        stores=[ShopifyStoreResponse(**shopify_store_service.to_public_dict(s)) for s in stores]
    )


@router.post("/sync")
async def sync_shop(
    mode: str = Query("orders", description="orders | products"),
    shop: str = Depends(require_store_ownership),
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Fetch one bounded page for ``mode`` and advance its watermark."""

    logger.info("[shopify-stores] sync requested shop=%s mode=%s operator=%s", shop, mode, current_operator.id)
    outcome = await engine.sync(db, shop, mode, operator_id=current_operator.id)

    if outcome.kind == OUTCOME_OK:
        return {"success": True, **outcome.result.to_dict()}
    if outcome.kind == OUTCOME_UPSTREAM_ERROR:
        upstream_status = outcome.upstream_status or 0
        return JSONResponse(
            {
                "success": False,
                "source": "shopify",
                "status": outcome.upstream_status,
                "data": outcome.upstream_body,
            },
            # A failed call never answers 2xx/3xx.
            status_code=upstream_status if upstream_status >= 400 else status.HTTP_502_BAD_GATEWAY,
        )
    if outcome.kind == OUTCOME_CONFLICT:
        return JSONResponse({"success": False, "message": outcome.message}, status_code=status.HTTP_409_CONFLICT)
    # OUTCOME_NOT_INSTALLED, OUTCOME_VALIDATION_ERROR
    return JSONResponse({"success": False, "message": outcome.message}, status_code=status.HTTP_400_BAD_REQUEST)


@router.get("/orders", response_model=List[ShopifyOrderResponse])
async def list_orders(
    shop: str = Depends(require_store_ownership),
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
):
    rows = (
        db.query(ShopifyOrder)
        .filter(ShopifyOrder.operator_id == current_operator.id, ShopifyOrder.shop == shop)
        .order_by(ShopifyOrder.updated_at_shopify.desc())
        .limit(RECORD_LIST_LIMIT)
        .all()
    )
    return [
        ShopifyOrderResponse(
            id=r.id,
            shop=r.shop,
            shopifyOrderId=r.shopify_order_id,
            orderName=r.order_name,
            orderNumber=r.order_number,
            financialStatus=r.financial_status,
            fulfillmentStatus=r.fulfillment_status,
            currency=r.currency,
            totalPrice=r.total_price,
            customerEmail=r.customer_email,
            createdAtShopify=shopify_store_service._to_utc(r.created_at_shopify),
            updatedAtShopify=shopify_store_service._to_utc(r.updated_at_shopify),
        )
        for r in rows
    ]


@router.get("/products", response_model=List[ShopifyProductResponse])
async def list_products(
    shop: str = Depends(require_store_ownership),
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
):
    rows = (
        db.query(ShopifyProduct)
        .filter(ShopifyProduct.operator_id == current_operator.id, ShopifyProduct.shop == shop)
        .order_by(ShopifyProduct.updated_at_shopify.desc())
        .limit(RECORD_LIST_LIMIT)
        .all()
    )
    return [
        ShopifyProductResponse(
            id=r.id,
            shop=r.shop,
            shopifyProductId=r.shopify_product_id,
            title=r.title,
            status=r.status,
            vendor=r.vendor,
            productType=r.product_type,
            handle=r.handle,
            createdAtShopify=shopify_store_service._to_utc(r.created_at_shopify),
            updatedAtShopify=shopify_store_service._to_utc(r.updated_at_shopify),
        )
        for r in rows
    ]
