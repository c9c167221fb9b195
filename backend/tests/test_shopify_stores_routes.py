import httpx
import pytest

from app.models_sqlalchemy.models import ShopifySyncState
from app.routers.shopify_stores import get_sync_engine
from app.services.shopify_records import upsert_order, upsert_product
from app.services.shopify_store_service import shopify_store_service
from app.services.shopify_sync import SyncEngine

from conftest import auth_headers, install_store, mock_client

SHOP = "foo.myshopify.com"


@pytest.fixture
def upstream(app):
    """Swap in a sync engine whose Shopify calls hit ``responses`` instead of the network."""

    responses = {"status": 200, "json": {"orders": []}}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(responses["status"], json=responses["json"])

    engine = SyncEngine(client=mock_client(handler))
    app.dependency_overrides[get_sync_engine] = lambda: engine
    return responses


def test_stores_requires_bearer(client):
    assert client.get("/shopify/stores").status_code == 401


def test_stores_lists_only_callers_installed_stores(client, db):
    install_store(db, "a.myshopify.com", operator_id="op-1", token="shpat_aaa")
    install_store(db, "b.myshopify.com", operator_id="op-2")
    install_store(db, "c.myshopify.com")

    resp = client.get("/shopify/stores", headers=auth_headers("op-1"))

    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    stores = resp.json()["stores"]
    assert [s["shop"] for s in stores] == ["a.myshopify.com"]
    assert stores[0]["linked"] is True
    assert stores[0]["installed"] is True
    assert "shpat_aaa" not in resp.text
    assert "access_token" not in resp.text
    assert "accessToken" not in resp.text


def test_sync_requires_shop(client, upstream):
    resp = client.post("/shopify/sync", headers=auth_headers("op-1"))
    assert resp.status_code == 400


@pytest.mark.parametrize("shop", [SHOP, "bar.myshopify.com", "evil@foo"])
def test_sync_of_store_not_owned_is_403(client, db, upstream, shop):
    install_store(db, operator_id="op-2")

    resp = client.post("/shopify/sync", params={"shop": shop}, headers=auth_headers("op-1"))

    assert resp.status_code == 403
    assert resp.json()["detail"] == "Store not linked to this merchant"


def test_sync_returns_page_summary(client, db, upstream):
    install_store(db, operator_id="op-1")
    upstream["json"] = {"orders": [{"id": 5, "name": "#1005", "updated_at": "2024-05-01T00:00:00Z"}]}

    resp = client.post("/shopify/sync", params={"shop": "foo", "mode": "orders"}, headers=auth_headers("op-1"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["shop"] == SHOP
    assert body["mode"] == "orders"
    assert body["fetched"] == 1
    assert body["upserted"] == 1
    assert body["newLastSync"] == "2024-05-01T00:00:00+00:00"


@pytest.mark.parametrize("status,payload", [
    (429, {"errors": "Exceeded 2 calls per second for api client."}),
    (401, {"errors": "[API] Invalid API key or access token (unrecognized login or wrong password)"}),
    (403, {"errors": "This action requires merchant approval for read_orders scope."}),
])
def test_sync_forwards_upstream_error(client, db, upstream, status, payload):
    install_store(db, operator_id="op-1")
    upstream["status"] = status
    upstream["json"] = payload

    resp = client.post("/shopify/sync", params={"shop": SHOP}, headers=auth_headers("op-1"))

    assert resp.status_code == status
    assert resp.json() == {"success": False, "source": "shopify", "status": status, "data": payload}


def test_sync_with_html_success_page_is_bad_gateway(client, app, db):
    install_store(db, operator_id="op-1")
    engine = SyncEngine(client=mock_client(lambda request: httpx.Response(200, text="<html>maintenance</html>")))
    app.dependency_overrides[get_sync_engine] = lambda: engine

    resp = client.post("/shopify/sync", params={"shop": SHOP}, headers=auth_headers("op-1"))

    assert resp.status_code == 502
    assert resp.json()["success"] is False
    assert resp.json()["data"] == "<html>maintenance</html>"

    db.expire_all()
    state = db.query(ShopifySyncState).filter(ShopifySyncState.shop == SHOP).one()
    assert state.cursor_value is None
    assert state.version == 0
    assert "invalid_json" in state.last_error


def test_sync_unknown_mode_is_400(client, db, upstream):
    install_store(db, operator_id="op-1")

    resp = client.post("/shopify/sync", params={"shop": SHOP, "mode": "customers"}, headers=auth_headers("op-1"))

    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_sync_of_uninstalled_store_is_400(client, db, upstream):
    install_store(db, operator_id="op-1")
    shopify_store_service.mark_uninstalled(db, SHOP)

    resp = client.post("/shopify/sync", params={"shop": SHOP}, headers=auth_headers("op-1"))

    assert resp.status_code == 400


def test_orders_are_scoped_to_operator(client, db):
    install_store(db, operator_id="op-1")
    upsert_order(db, "op-1", SHOP, {"id": 1, "name": "#1001", "updated_at": "2024-05-01T00:00:00Z"})
    upsert_order(db, "op-1", SHOP, {"id": 2, "name": "#1002", "updated_at": "2024-05-02T00:00:00Z"})
    upsert_order(db, "op-9", SHOP, {"id": 3, "name": "#1003", "updated_at": "2024-05-03T00:00:00Z"})
    db.commit()

    resp = client.get("/shopify/orders", params={"shop": SHOP}, headers=auth_headers("op-1"))

    assert resp.status_code == 200
    assert [o["orderName"] for o in resp.json()] == ["#1002", "#1001"]

    assert client.get("/shopify/orders", params={"shop": SHOP}, headers=auth_headers("op-9")).status_code == 403


def test_products_listing(client, db):
    install_store(db, operator_id="op-1")
    upsert_product(db, "op-1", SHOP, {"id": 7, "title": "Mug", "updated_at": "2024-05-01T00:00:00Z"})
    db.commit()

    resp = client.get("/shopify/products", params={"shop": SHOP}, headers=auth_headers("op-1"))

    assert resp.status_code == 200
    assert resp.json()[0]["title"] == "Mug"
    assert resp.json()[0]["shopifyProductId"] == "7"


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/healthz/db").json() == {"status": "ok", "database": "connected"}
