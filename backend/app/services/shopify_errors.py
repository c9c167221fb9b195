"""Error types shared by the Shopify install, webhook and sync services."""

from __future__ import annotations

from typing import Any, Optional


class ShopifyValidationError(Exception):
    """Malformed or missing input. Maps to 400 and is never retried."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ShopifySignatureError(Exception):
    """HMAC or OAuth state mismatch; the flow has to be restarted."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ShopNotInstalledError(Exception):
    """No installed, active store matches the request."""

    def __init__(self, shop: Optional[str], message: Optional[str] = None, status_code: int = 400):
        self.shop = shop
        self.message = message or "Store not installed yet. Please install the app from Shopify first."
        self.status_code = status_code
        super().__init__(self.message)


class ShopifyApiError(Exception):
    """Non-2xx answer from the Shopify Admin API.

    Carries the upstream status and parsed (or raw text) body so HTTP callers
    can forward the real reason instead of a generic 500.
    """

    def __init__(self, status: int, body: Any, context: str, shop: Optional[str] = None):
        super().__init__(f"Shopify API {status} ({context})")
        self.status = status
        self.body = body
        self.context = context
        self.shop = shop

    def to_response_body(self) -> dict:
        return {
            "success": False,
            "source": "shopify",
            "status": self.status,
            "data": self.body,
        }


class ShopifyUnavailableError(ShopifyApiError):
    """Timeout or transport failure talking to Shopify."""

