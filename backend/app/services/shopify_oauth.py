"""OAuth install / link handshake for Shopify shops.

Flow::

    start     -> signed state cookie (+ operator cookie when a valid bearer
                 token was passed) and redirect to the shop's authorize page
    callback  -> state cookie == returned state, HMAC over the raw query,
                 then code exchange and Store upsert keyed by shop domain
    link      -> authenticated operator claims an installed, unlinked store

The controller is transport-agnostic: routers translate its results and
exceptions into redirects, cookies and plain-text pages.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
from urllib.parse import quote, urlencode

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models_sqlalchemy.models import ShopifyStore
from app.services.auth import (
    OPERATOR_COOKIE_PURPOSE,
    STATE_COOKIE_PURPOSE,
    decode_operator_token,
    read_cookie_token,
    sign_cookie_token,
)
from app.services.shop_domain import sanitize_shop
from app.services.shopify_api_client import ShopifyAdminClient, shopify_client
from app.services.shopify_errors import (
    ShopifyApiError,
    ShopifySignatureError,
    ShopifyValidationError,
)
from app.services.shopify_signature import verify_oauth_callback
from app.services.shopify_store_service import ShopifyStoreService, shopify_store_service
from app.utils.logger import logger, mask_secret, sanitize_credentials


STATE_COOKIE_NAME = "shopify_state"
OPERATOR_COOKIE_NAME = "shopify_operator"

# Upstream topic -> (webhook_ids key, route slug under /shopify/webhooks).
WEBHOOK_TOPICS: Dict[str, tuple] = {
    "app/uninstalled": ("app_uninstalled", "app-uninstalled"),
    "orders/create": ("orders_create", "orders-create"),
    "orders/paid": ("orders_paid", "orders-paid"),
    "orders/updated": ("orders_updated", "orders-updated"),
}


@dataclass
class InstallStart:
    shop: str
    redirect_url: str
    state_cookie: str
    operator_cookie: Optional[str] = None


@dataclass
class InstallComplete:
    store: ShopifyStore
    redirect_url: str
    webhook_ids: Dict[str, str] = field(default_factory=dict)


@dataclass
class InstallStatus:
    shop: str
    installed: bool
    linked: bool
    auth_url: Optional[str] = None


class ShopifyOAuthController:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[ShopifyAdminClient] = None,
        stores: Optional[ShopifyStoreService] = None,
    ):
        self.settings = settings or default_settings
        self.client = client or shopify_client
        self.stores = stores or shopify_store_service

    def _require_shop(self, raw_shop: Optional[str]) -> str:
        shop = sanitize_shop(raw_shop, self.settings.SHOPIFY_PLATFORM_DOMAIN)
        if not shop:
            raise ShopifyValidationError("Invalid or missing shop parameter")
        return shop

    def _signing_keys(self) -> Dict[str, str]:
        return {"secret_key": self.settings.secret_key, "algorithm": self.settings.ALGORITHM}

    def start_url(self, shop: str) -> str:
        return f"{self.settings.public_base_url}/shopify/install/start?shop={quote(shop)}"

    # ------------------------------------------------------------------
    # START
    # ------------------------------------------------------------------

    def begin_install(self, raw_shop: Optional[str], token: Optional[str] = None) -> InstallStart:
        """Prepare the authorize redirect. ``token`` is optional; install may precede login."""

        shop = self._require_shop(raw_shop)
        if not self.settings.SHOPIFY_API_KEY:
            raise RuntimeError("SHOPIFY_API_KEY is not configured")

        nonce = secrets.token_hex(32)
        state_cookie = sign_cookie_token(
            STATE_COOKIE_PURPOSE,
            {"nonce": nonce, "shop": shop},
            self.settings.SHOPIFY_STATE_COOKIE_TTL_SECONDS,
            **self._signing_keys(),
        )

        operator_cookie = None
        if token:
            operator = decode_operator_token(token, **self._signing_keys())
            if operator is not None:
                operator_cookie = sign_cookie_token(
                    OPERATOR_COOKIE_PURPOSE,
                    {"sub": operator.id},
                    self.settings.SHOPIFY_OPERATOR_COOKIE_TTL_SECONDS,
                    **self._signing_keys(),
                )
            else:
                logger.info("[shopify-oauth] start: invalid token for shop=%s, continuing without operator", shop)

        redirect_url = self.client.authorize_url(shop, nonce, self.settings.shopify_callback_url)
        logger.info("[shopify-oauth] start: redirecting shop=%s operator_cookie=%s", shop, bool(operator_cookie))
        return InstallStart(shop=shop, redirect_url=redirect_url, state_cookie=state_cookie, operator_cookie=operator_cookie)

    # ------------------------------------------------------------------
    # CALLBACK
    # ------------------------------------------------------------------

    def verify_callback(
        self,
        params: Mapping[str, str],
        raw_query: Optional[str],
        state_cookie: Optional[str],
    ) -> str:
        """Check the state cookie then the query HMAC; returns the canonical shop.

        State problems raise 403, signature problems 400. Both are terminal
        for this attempt.
        """

        state = params.get("state")
        claims = read_cookie_token(STATE_COOKIE_PURPOSE, state_cookie, **self._signing_keys())
        nonce = (claims or {}).get("nonce")
        if not state or not nonce or not hmac.compare_digest(str(nonce).encode("utf-8"), state.encode("utf-8")):
            logger.warning("[shopify-oauth] callback: state mismatch (cookie_present=%s)", bool(state_cookie))
            raise ShopifySignatureError("Request origin could not be verified. Please try again.", status_code=403)

        shop = sanitize_shop(params.get("shop"), self.settings.SHOPIFY_PLATFORM_DOMAIN)
        if not shop:
            raise ShopifySignatureError("Invalid shop parameter", status_code=400)
        if claims.get("shop") and claims["shop"] != shop:
            logger.warning("[shopify-oauth] callback: shop %s does not match started shop %s", shop, claims["shop"])
            raise ShopifySignatureError("Request origin could not be verified. Please try again.", status_code=403)

        if not verify_oauth_callback(
            params.get("hmac"),
            self.settings.SHOPIFY_API_SECRET,
            raw_query=raw_query,
            params=params,
        ):
            logger.warning("[shopify-oauth] callback: HMAC verification failed for shop=%s", shop)
            raise ShopifySignatureError("HMAC verification failed", status_code=400)

        if not params.get("code"):
            raise ShopifyValidationError("Missing code parameter")
        return shop

    async def complete_install(
        self,
        db: Session,
        params: Mapping[str, str],
        raw_query: Optional[str],
        state_cookie: Optional[str],
        operator_cookie: Optional[str] = None,
    ) -> InstallComplete:
        logger.info("[shopify-oauth] callback: params=%s", sanitize_credentials(dict(params)))
        shop = self.verify_callback(params, raw_query, state_cookie)

        token_data = await self.client.exchange_code(shop, params["code"])
        access_token = token_data["access_token"]
        scope = token_data.get("scope")

        operator_claims = read_cookie_token(OPERATOR_COOKIE_PURPOSE, operator_cookie, **self._signing_keys())
        operator_id = (operator_claims or {}).get("sub")

        store = self.stores.upsert_installed(db, shop, access_token, scope, operator_id=operator_id)
        logger.info(
            "[shopify-oauth] callback: installed shop=%s token=%s linked=%s",
            shop,
            mask_secret(access_token),
            bool(store.operator_id),
        )

        webhook_ids: Dict[str, str] = {}
        if self.settings.SHOPIFY_REGISTER_WEBHOOKS:
            webhook_ids = await self.register_webhooks(db, shop, access_token)

        query = {"shop": shop}
        if params.get("host"):
            query["host"] = params["host"]
        redirect_url = f"{self.settings.app_base_url}/shopify/app?{urlencode(query)}"
        return InstallComplete(store=store, redirect_url=redirect_url, webhook_ids=webhook_ids)

    async def register_webhooks(self, db: Session, shop: str, access_token: str) -> Dict[str, str]:
        """Subscribe the shop to every handled topic; failures are logged only."""

        base = self.settings.public_base_url
        registered: Dict[str, str] = {}
        for topic, (key, slug) in WEBHOOK_TOPICS.items():
            address = f"{base}/shopify/webhooks/{slug}"
            try:
                webhook_id = await self.client.register_webhook(shop, access_token, topic, address)
            except ShopifyApiError as exc:
                logger.error(
                    "[shopify-oauth] webhook registration failed shop=%s topic=%s status=%s",
                    shop,
                    topic,
                    exc.status,
                )
                continue
            if webhook_id:
                registered[key] = webhook_id
                logger.info("[shopify-oauth] registered %s for shop=%s id=%s", topic, shop, webhook_id)

        if registered:
            self.stores.record_webhook_ids(db, shop, registered)
        return registered

    # ------------------------------------------------------------------
    # LINK / STATUS
    # ------------------------------------------------------------------

    def link_account(self, db: Session, raw_shop: Optional[str], operator_id: str) -> ShopifyStore:
        suffix = "." + self.settings.SHOPIFY_PLATFORM_DOMAIN
        if not raw_shop or not isinstance(raw_shop, str) or not raw_shop.strip().lower().endswith(suffix):
            raise ShopifyValidationError(f"Invalid shop domain. Must be a valid {suffix} domain.")
        shop = self._require_shop(raw_shop)
        return self.stores.link_operator(db, shop, operator_id)

    def get_status(self, db: Session, raw_shop: Optional[str]) -> InstallStatus:
        shop = self._require_shop(raw_shop)
        store = self.stores.get_by_shop(db, shop)
        installed = bool(store and store.is_installed)
        linked = bool(installed and store.operator_id)
        return InstallStatus(
            shop=shop,
            installed=installed,
            linked=linked,
            auth_url=None if installed else self.start_url(shop),
        )


shopify_oauth_controller = ShopifyOAuthController()
