from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class Operator(BaseModel):
    """Authenticated platform user, as carried by the bearer token."""
    id: str
    email: Optional[str] = None


class LinkAccountRequest(BaseModel):
    shop: Optional[str] = None


class LinkAccountResponse(BaseModel):
    success: bool = True
    shop: str
    linked: bool = True


class InstallStatusResponse(BaseModel):
    installed: bool
    linked: bool
    authUrl: Optional[str] = None


class ShopifyStoreResponse(BaseModel):
    id: str
    shop: str
    scopes: List[str] = Field(default_factory=list)
    isActive: bool
    installed: bool
    linked: bool
    installedAt: Optional[datetime] = None
    uninstalledAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ShopifyStoreListResponse(BaseModel):
    stores: List[ShopifyStoreResponse]


class ShopifyOrderResponse(BaseModel):
    id: str
    shop: str
    shopifyOrderId: str
    orderName: Optional[str] = None
    orderNumber: Optional[int] = None
    financialStatus: Optional[str] = None
    fulfillmentStatus: Optional[str] = None
    currency: Optional[str] = None
    totalPrice: Optional[str] = None
    customerEmail: Optional[str] = None
    createdAtShopify: Optional[datetime] = None
    updatedAtShopify: Optional[datetime] = None


class ShopifyProductResponse(BaseModel):
    id: str
    shop: str
    shopifyProductId: str
    title: Optional[str] = None
    status: Optional[str] = None
    vendor: Optional[str] = None
    productType: Optional[str] = None
    handle: Optional[str] = None
    createdAtShopify: Optional[datetime] = None
    updatedAtShopify: Optional[datetime] = None

