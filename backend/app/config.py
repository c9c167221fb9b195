from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # Shopify app credentials. SHOPIFY_API_SECRET signs the OAuth callback
    # query; webhook deliveries are signed with SHOPIFY_WEBHOOK_SECRET when it
    # is set and with the API secret otherwise.
    SHOPIFY_API_KEY: Optional[str] = None
    SHOPIFY_API_SECRET: Optional[str] = None
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_SCOPES: str = "read_orders,read_products"

    # Admin API version sent on every upstream call. Pinned on purpose; bump
    # together with the payload normalizers in shopify_records.
    SHOPIFY_API_VERSION: str = "2024-01"
    SHOPIFY_PLATFORM_DOMAIN: str = "myshopify.com"
    SHOPIFY_HTTP_TIMEOUT_SECONDS: float = 15.0

    # Incremental sync defaults (first run lookback and bounded page size).
    SHOPIFY_ORDERS_LOOKBACK_DAYS: int = 7
    SHOPIFY_PRODUCTS_LOOKBACK_DAYS: int = 30
    SHOPIFY_ORDERS_PAGE_LIMIT: int = 50
    SHOPIFY_PRODUCTS_PAGE_LIMIT: int = 250

    # OAuth handshake cookies.
    SHOPIFY_STATE_COOKIE_TTL_SECONDS: int = 15 * 60
    SHOPIFY_OPERATOR_COOKIE_TTL_SECONDS: int = 60 * 60
    SHOPIFY_COOKIE_SECURE: bool = True

    # After a successful install, subscribe the shop to the webhook topics
    # handled by /shopify/webhooks/*.
    SHOPIFY_REGISTER_WEBHOOKS: bool = True

    # A delivery still marked received after this long is treated as abandoned
    # (worker died mid-dispatch) and may be reclaimed by the next retry.
    SHOPIFY_WEBHOOK_CLAIM_LEASE_SECONDS: int = 5 * 60

    # Optional in-process scheduler. Disabled by default; cadence is normally
    # owned by an external scheduler calling POST /shopify/sync.
    SHOPIFY_SYNC_LOOP_ENABLED: bool = False
    SHOPIFY_SYNC_INTERVAL_SECONDS: int = 900

    # PUBLIC_BASE_URL is the externally reachable base for this API, e.g.
    #   https://api.yourdomain.com
    # It is used for the OAuth redirect_uri and for webhook addresses.
    PUBLIC_BASE_URL: str = ""
    # Embedded-app UI; the callback redirects to {APP_BASE_URL}/shopify/app.
    APP_BASE_URL: str = "http://localhost:8080"

    # DATABASE_URL must be provided via environment (Postgres in production)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def shopify_webhook_secret(self) -> Optional[str]:
        return self.SHOPIFY_WEBHOOK_SECRET or self.SHOPIFY_API_SECRET

    @property
    def shopify_scope_list(self) -> list[str]:
        return [s.strip() for s in self.SHOPIFY_SCOPES.split(",") if s.strip()]

    @property
    def public_base_url(self) -> str:
        return self.PUBLIC_BASE_URL.rstrip("/")

    @property
    def app_base_url(self) -> str:
        return self.APP_BASE_URL.rstrip("/")

    @property
    def shopify_callback_url(self) -> str:
        return f"{self.public_base_url}/shopify/install/callback"


if not os.getenv("DATABASE_URL"):
    raise RuntimeError("DATABASE_URL is required.")

settings = Settings()
