"""Thin async client for the Shopify Admin REST API and OAuth endpoints.

Every call has a finite timeout. Non-2xx responses raise
:class:`ShopifyApiError` with the upstream status and body; timeouts and
transport failures raise :class:`ShopifyUnavailableError`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.config import Settings, settings as default_settings
from app.services.shopify_errors import ShopifyApiError, ShopifyUnavailableError
from app.utils.logger import logger


def format_shopify_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ShopifyAdminClient:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or default_settings
        # Injected in tests (httpx.MockTransport); None means real network.
        self._transport = transport

    def admin_url(self, shop: str, path: str) -> str:
        return f"https://{shop}/admin/api/{self.settings.SHOPIFY_API_VERSION}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        context: str,
        shop: Optional[str] = None,
        access_token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["X-Shopify-Access-Token"] = access_token

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.SHOPIFY_HTTP_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, url, headers=headers, json=json_body, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("[shopify-api] %s timed out for shop=%s: %s", context, shop, type(exc).__name__)
            raise ShopifyUnavailableError(
                504,
                {"errors": f"Shopify request timed out ({context})"},
                context,
                shop=shop,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("[shopify-api] %s transport error for shop=%s: %s", context, shop, type(exc).__name__)
            raise ShopifyUnavailableError(
                502,
                {"errors": f"Shopify request failed ({context}): {type(exc).__name__}"},
                context,
                shop=shop,
            ) from exc

        if 200 <= resp.status_code < 300:
            return resp

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        logger.error(
            "[shopify-api] %s %s for shop=%s status=%s body=%s",
            method,
            context,
            shop,
            resp.status_code,
            str(body)[:500],
        )
        raise ShopifyApiError(resp.status_code, body, context, shop=shop)

    @staticmethod
    def _json(resp: httpx.Response, context: str, shop: Optional[str]) -> Dict[str, Any]:
        # A 2xx without a JSON object (maintenance pages, proxies) is a bad gateway, not a success.
        try:
            data = resp.json()
        except ValueError as exc:
            logger.error(
                "[shopify-api] %s returned non-JSON body for shop=%s status=%s body=%s",
                context,
                shop,
                resp.status_code,
                resp.text[:500],
            )
            raise ShopifyUnavailableError(502, resp.text, f"{context}:invalid_json", shop=shop) from exc
        if not isinstance(data, dict):
            logger.error("[shopify-api] %s returned unexpected body for shop=%s: %s", context, shop, str(data)[:500])
            raise ShopifyUnavailableError(502, data, f"{context}:unexpected_body", shop=shop)
        return data

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorize_url(self, shop: str, state: str, redirect_uri: str) -> str:
        query = httpx.QueryParams(
            {
                "client_id": self.settings.SHOPIFY_API_KEY or "",
                "scope": ",".join(self.settings.shopify_scope_list),
                "redirect_uri": redirect_uri,
                "state": state,
                "shop": shop,
            }
        )
        return f"https://{shop}/admin/oauth/authorize?{query}"

    async def exchange_code(self, shop: str, code: str) -> Dict[str, Any]:
        """Trade the callback ``code`` for an offline access token."""

        resp = await self._request(
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            context="oauth_access_token",
            shop=shop,
            json_body={
                "client_id": self.settings.SHOPIFY_API_KEY,
                "client_secret": self.settings.SHOPIFY_API_SECRET,
                "code": code,
            },
        )
        data = self._json(resp, "oauth_access_token", shop)
        if not data.get("access_token"):
            raise ShopifyUnavailableError(502, {"errors": "access_token missing from response"}, "oauth_access_token", shop=shop)
        return data

    # ------------------------------------------------------------------
    # Admin REST API
    # ------------------------------------------------------------------

    async def get(
        self,
        shop: str,
        access_token: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        context: str,
    ) -> Dict[str, Any]:
        resp = await self._request(
            "GET",
            self.admin_url(shop, path),
            context=context,
            shop=shop,
            access_token=access_token,
            params=params,
        )
        return self._json(resp, context, shop)

    async def list_orders(
        self,
        shop: str,
        access_token: str,
        *,
        updated_at_min: datetime,
        limit: int,
    ) -> List[Dict[str, Any]]:
        data = await self.get(
            shop,
            access_token,
            "orders.json",
            params={
                "status": "any",
                "limit": limit,
                "order": "updated_at asc",
                "updated_at_min": format_shopify_datetime(updated_at_min),
            },
            context="orders_sync",
        )
        return list(data.get("orders") or [])

    async def list_products(
        self,
        shop: str,
        access_token: str,
        *,
        updated_at_min: datetime,
        limit: int,
    ) -> List[Dict[str, Any]]:
        data = await self.get(
            shop,
            access_token,
            "products.json",
            params={
                "limit": limit,
                "order": "updated_at asc",
                "updated_at_min": format_shopify_datetime(updated_at_min),
            },
            context="products_sync",
        )
        return list(data.get("products") or [])

    async def register_webhook(self, shop: str, access_token: str, topic: str, address: str) -> Optional[str]:
        """Subscribe ``address`` to ``topic``; returns the subscription id."""

        resp = await self._request(
            "POST",
            self.admin_url(shop, "webhooks.json"),
            context=f"register_webhook:{topic}",
            shop=shop,
            access_token=access_token,
            json_body={"webhook": {"topic": topic, "address": address, "format": "json"}},
        )
        data = self._json(resp, f"register_webhook:{topic}", shop)
        webhook = data.get("webhook") or {}
        webhook_id = webhook.get("id")
        return str(webhook_id) if webhook_id is not None else None


shopify_client = ShopifyAdminClient()
