import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import ShopifyOrder, ShopifyProduct, ShopifySyncState
from app.services.shopify_sync import (
    OUTCOME_CONFLICT,
    OUTCOME_NOT_INSTALLED,
    OUTCOME_OK,
    OUTCOME_UPSTREAM_ERROR,
    OUTCOME_VALIDATION_ERROR,
    SyncEngine,
)
from app.services.shopify_sync.state import next_watermark
from app.workers.shopify_sync_loop import run_shopify_sync_once

from conftest import install_store, mock_client

SHOP = "foo.myshopify.com"


def _parse_z(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class FakeShop:
    """Records requests and serves queued pages (or errors) per resource."""

    def __init__(self):
        self.requests = []
        self.pages = {"orders": [], "products": []}
        self.error = None
        self.before_response = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.before_response:
            self.before_response()
        if self.error is not None:
            status, body = self.error
            return httpx.Response(status, json=body)
        resource = request.url.path.rsplit("/", 1)[-1].replace(".json", "")
        queue = self.pages[resource]
        page = queue.pop(0) if queue else []
        return httpx.Response(200, json={resource: page})


@pytest.fixture
def fake_shop():
    return FakeShop()


@pytest.fixture
def engine(fake_shop):
    return SyncEngine(client=mock_client(fake_shop))


def _state(db, resource="orders"):
    db.expire_all()
    return (
        db.query(ShopifySyncState)
        .filter(ShopifySyncState.shop == SHOP, ShopifySyncState.resource == resource)
        .first()
    )


def _order(order_id, updated_at):
    return {"id": order_id, "name": f"#{order_id}", "total_price": "10.00", "updated_at": updated_at}


def test_next_watermark_rules():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    previous = datetime(2024, 5, 1, tzinfo=timezone.utc)
    page_max = datetime(2024, 5, 15, tzinfo=timezone.utc)

    assert next_watermark(None, page_max, 3, now=now) == page_max
    assert next_watermark(previous, page_max, 3, now=now) == page_max
    assert next_watermark(previous, None, 0, now=now) == now
    # Records without timestamps keep the previous watermark.
    assert next_watermark(previous, None, 2, now=now) == previous
    # Never moves backwards.
    assert next_watermark(page_max, previous, 1, now=now) == page_max
    assert next_watermark(now, None, 0, now=previous) == now


def test_first_sync_uses_lookback_and_advances_to_page_max(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([
        _order(1, "2024-05-01T10:00:00Z"),
        _order(2, "2024-05-03T12:30:00Z"),
    ])

    before = datetime.now(timezone.utc)
    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))

    assert outcome.kind == OUTCOME_OK
    result = outcome.result
    assert result.fetched == 2
    assert result.upserted == 2
    assert result.new_watermark == datetime(2024, 5, 3, 12, 30, tzinfo=timezone.utc)

    since = _parse_z(fake_shop.requests[0].url.params["updated_at_min"])
    assert before - timedelta(days=7, seconds=5) <= since <= before - timedelta(days=7) + timedelta(seconds=5)
    assert fake_shop.requests[0].url.params["limit"] == "50"
    assert fake_shop.requests[0].headers["X-Shopify-Access-Token"] == "shpat_test"

    state = _state(db)
    assert _as_utc(state.cursor_value) == datetime(2024, 5, 3, 12, 30, tzinfo=timezone.utc)
    assert state.version == 1
    assert state.last_error is None

    orders = db.query(ShopifyOrder).order_by(ShopifyOrder.shopify_order_id).all()
    assert [o.shopify_order_id for o in orders] == ["1", "2"]
    assert {o.operator_id for o in orders} == {"op-1"}


def test_next_call_starts_from_stored_watermark(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([_order(1, "2024-05-03T12:30:00Z")])

    asyncio.run(engine.sync(db, SHOP, "orders"))
    asyncio.run(engine.sync(db, SHOP, "orders"))

    assert fake_shop.requests[1].url.params["updated_at_min"] == "2024-05-03T12:30:00Z"


def test_empty_page_advances_watermark_to_now(db, engine, fake_shop):
    install_store(db, operator_id="op-1")

    before = datetime.now(timezone.utc)
    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))
    after = datetime.now(timezone.utc)

    assert outcome.kind == OUTCOME_OK
    assert outcome.result.fetched == 0
    assert before <= outcome.result.new_watermark <= after
    assert _state(db).version == 1


def test_watermark_never_decreases(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([_order(1, "2024-05-10T00:00:00Z")])
    asyncio.run(engine.sync(db, SHOP, "orders"))

    # Upstream returns something older than the stored watermark.
    fake_shop.pages["orders"].append([_order(2, "2024-05-01T00:00:00Z")])
    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))

    assert outcome.kind == OUTCOME_OK
    assert outcome.result.new_watermark == datetime(2024, 5, 10, tzinfo=timezone.utc)
    assert _as_utc(_state(db).cursor_value) == datetime(2024, 5, 10, tzinfo=timezone.utc)


def test_upstream_error_is_forwarded_and_watermark_unchanged(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([_order(1, "2024-05-10T00:00:00Z")])
    asyncio.run(engine.sync(db, SHOP, "orders"))

    fake_shop.error = (429, {"errors": "Exceeded 2 calls per second for api client."})
    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))

    assert outcome.kind == OUTCOME_UPSTREAM_ERROR
    assert outcome.upstream_status == 429
    assert outcome.upstream_body == {"errors": "Exceeded 2 calls per second for api client."}

    state = _state(db)
    assert _as_utc(state.cursor_value) == datetime(2024, 5, 10, tzinfo=timezone.utc)
    assert state.version == 1
    assert state.last_error.startswith("429")


def test_records_without_id_are_skipped(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([
        _order(1, "2024-05-01T00:00:00Z"),
        {"name": "#ghost", "updated_at": "2024-05-02T00:00:00Z"},
    ])

    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))

    assert outcome.result.fetched == 2
    assert outcome.result.upserted == 1
    assert db.query(ShopifyOrder).count() == 1


def test_products_sync_uses_products_settings(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["products"].append([
        {"id": 632910392, "title": "IPod Nano", "status": "active", "handle": "ipod-nano",
         "updated_at": "2024-04-01T00:00:00Z"},
    ])

    outcome = asyncio.run(engine.sync(db, SHOP, "products"))

    assert outcome.kind == OUTCOME_OK
    assert fake_shop.requests[0].url.path.endswith("/products.json")
    assert fake_shop.requests[0].url.params["limit"] == "250"
    product = db.query(ShopifyProduct).one()
    assert product.title == "IPod Nano"
    assert product.shopify_product_id == "632910392"
    # Independent watermark per resource.
    assert _state(db, "orders") is None
    assert _state(db, "products").version == 1


@pytest.mark.parametrize("shop,mode", [
    ("evil@foo", "orders"),
    (SHOP, "customers"),
    (SHOP, ""),
])
def test_invalid_input_is_validation_error(db, engine, fake_shop, shop, mode):
    install_store(db, operator_id="op-1")

    outcome = asyncio.run(engine.sync(db, shop, mode))

    assert outcome.kind == OUTCOME_VALIDATION_ERROR
    assert fake_shop.requests == []


def test_missing_or_foreign_store_is_not_installed(db, engine, fake_shop):
    assert asyncio.run(engine.sync(db, SHOP, "orders")).kind == OUTCOME_NOT_INSTALLED

    install_store(db)
    assert asyncio.run(engine.sync(db, SHOP, "orders")).kind == OUTCOME_NOT_INSTALLED

    db.expire_all()
    install_store(db, operator_id="op-1")
    assert asyncio.run(engine.sync(db, SHOP, "orders", operator_id="op-2")).kind == OUTCOME_NOT_INSTALLED
    assert fake_shop.requests == []


def test_concurrent_writer_causes_conflict_and_nothing_is_committed(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].append([_order(1, "2024-05-01T00:00:00Z")])

    def other_process_advances_watermark():
        other = SessionLocal()
        try:
            other.query(ShopifySyncState).update(
                {ShopifySyncState.version: ShopifySyncState.version + 1},
                synchronize_session=False,
            )
            other.commit()
        finally:
            other.close()

    fake_shop.before_response = other_process_advances_watermark
    outcome = asyncio.run(engine.sync(db, SHOP, "orders"))

    assert outcome.kind == OUTCOME_CONFLICT
    assert db.query(ShopifyOrder).count() == 0
    state = _state(db)
    assert state.cursor_value is None
    assert state.version == 1


def test_same_key_calls_are_serialized(db, engine, fake_shop):
    install_store(db, operator_id="op-1")
    fake_shop.pages["orders"].extend([
        [_order(1, "2024-05-01T00:00:00Z")],
        [_order(2, "2024-05-02T00:00:00Z")],
    ])

    async def both():
        return await asyncio.gather(
            engine.sync(db, SHOP, "orders"),
            engine.sync(db, SHOP, "orders"),
        )

    first, second = asyncio.run(both())

    assert first.kind == OUTCOME_OK
    assert second.kind == OUTCOME_OK
    assert fake_shop.requests[1].url.params["updated_at_min"] == "2024-05-01T00:00:00Z"
    assert _state(db).version == 2
    # Per-key locks are released once no call is using them.
    assert len(engine._locks) == 0


def test_sync_loop_covers_linked_stores_only(db, engine, fake_shop):
    install_store(db, "a.myshopify.com", operator_id="op-1")
    install_store(db, "b.myshopify.com")

    counts = asyncio.run(run_shopify_sync_once(engine))

    assert counts == {OUTCOME_OK: 2}
    assert {r.url.host for r in fake_shop.requests} == {"a.myshopify.com"}
