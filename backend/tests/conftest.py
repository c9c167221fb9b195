import os
import sys

# Settings are read once at import time, so the test environment has to be in
# place before anything under ``app`` is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ.pop("SHOPIFY_WEBHOOK_SECRET", None)
os.environ["SHOPIFY_COOKIE_SECURE"] = "false"
os.environ["SHOPIFY_REGISTER_WEBHOOKS"] = "false"
os.environ["SHOPIFY_SYNC_LOOP_ENABLED"] = "false"
os.environ["PUBLIC_BASE_URL"] = "https://api.example.com"
os.environ["APP_BASE_URL"] = "https://app.example.com"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from typing import Callable, Dict, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.models_sqlalchemy import Base, SessionLocal, engine  # noqa: E402
from app.models_sqlalchemy import models  # noqa: E402,F401
from app.services.auth import create_access_token  # noqa: E402
from app.services.shopify_api_client import ShopifyAdminClient  # noqa: E402
from app.services.shopify_store_service import shopify_store_service  # noqa: E402


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def app(db):
    from app.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # No context manager: startup (migrations, sync loop) is not needed here,
    # the ``db`` fixture owns the schema.
    return TestClient(app)


def auth_headers(operator_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': operator_id})}"}


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> ShopifyAdminClient:
    return ShopifyAdminClient(transport=httpx.MockTransport(handler))


def install_store(db, shop: str = "foo.myshopify.com", operator_id: Optional[str] = None, token: str = "shpat_test"):
    return shopify_store_service.upsert_installed(
        db,
        shop,
        token,
        "read_orders,read_products",
        operator_id=operator_id,
    )
