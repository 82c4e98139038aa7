from sqlalchemy import func, select

from backend.infra.database import session_scope
from backend.models import Order, StockItem


def _order_body(plan_id, quantity=1, method="PROVIDER_A"):
    return {"items": [{"planId": plan_id, "quantity": quantity}], "paymentMethod": method}


def test_create_order_redirects_to_provider(client, make_plan, fake_provider):
    plan_id = make_plan(stock=1, price="15.00")

    r = client.post("/api/v1/orders", json=_order_body(plan_id))

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "PENDING"
    assert data["total"] == 15.0
    assert data["redirectUrl"].startswith("https://pay.example/checkout/")
    assert len(fake_provider.sessions) == 1


def test_create_order_invalid_payload(client, make_plan):
    plan_id = make_plan(stock=1)

    r = client.post("/api/v1/orders", json=_order_body(plan_id, quantity=0))
    assert r.status_code == 400
    assert r.json()["code"] == "BAD_REQUEST"

    r = client.post("/api/v1/orders", json=_order_body(plan_id, method="CASH"))
    assert r.status_code == 400

    r = client.post("/api/v1/orders", json={"items": [], "paymentMethod": "PROVIDER_A"})
    assert r.status_code == 400


def test_create_order_stock_errors_listed(client, make_plan):
    a = make_plan(name="Streamly", stock=0)
    b = make_plan(name="Musicly", stock=3)

    r = client.post(
        "/api/v1/orders",
        json={"items": [{"planId": a, "quantity": 1}, {"planId": b, "quantity": 5}], "paymentMethod": "PROVIDER_A"},
    )

    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "BAD_REQUEST"
    assert len(body["stockErrors"]) == 2
    assert body["detail"].startswith("Stock validation failed:")


def test_admin_bypass_requires_admin(client, make_plan):
    plan_id = make_plan(stock=1)

    r = client.post("/api/v1/orders", json=_order_body(plan_id, method="ADMIN_BYPASS"))

    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"
    with session_scope() as session:
        assert session.scalar(select(func.count()).select_from(Order)) == 0


def test_admin_bypass_as_admin(authenticated_admin_client, make_plan):
    plan_id = make_plan(stock=1)

    r = authenticated_admin_client.post("/api/v1/orders", json=_order_body(plan_id, method="ADMIN_BYPASS"))

    assert r.status_code == 200
    assert r.json()["status"] == "COMPLETED"
    order_id = r.json()["orderId"]
    detail = authenticated_admin_client.get(f"/api/v1/orders/{order_id}").json()
    assert detail["items"][0]["delivery"]["status"] == "DELIVERED"
    assert detail["items"][0]["deliveredContent"] == ["streamly-account-0"]
    assert len(detail["subscriptions"]) == 1


def test_list_get_and_stats(client, make_plan, fake_provider):
    plan_id = make_plan(stock=5)
    order_id = client.post("/api/v1/orders", json=_order_body(plan_id, quantity=2)).json()["orderId"]

    listing = client.get("/api/v1/orders", params={"limit": 10}).json()
    assert [o["id"] for o in listing["orders"]] == [order_id]
    assert listing["orders"][0]["itemCount"] == 1

    detail = client.get(f"/api/v1/orders/{order_id}").json()
    assert detail["items"][0]["quantity"] == 2
    assert detail["items"][0]["delivery"]["status"] == "PENDING"
    assert "deliveredContent" not in detail["items"][0]
    assert len(detail["payments"]) == 1

    stats = client.get("/api/v1/orders/stats").json()
    assert stats == {"totalOrders": 1, "pendingOrders": 1, "completedOrders": 0, "totalSpent": 0.0}

    assert client.get("/api/v1/orders", params={"status": "bogus"}).status_code == 400
    assert client.get("/api/v1/orders/unknown-id").status_code == 404


def test_payment_validation_endpoint(client, make_plan):
    plan_id = make_plan(stock=1)
    order_id = client.post("/api/v1/orders", json=_order_body(plan_id)).json()["orderId"]

    ok = client.get(f"/api/v1/orders/{order_id}/payment-validation").json()
    assert ok["canProceedWithPayment"] is True

    with session_scope() as session:
        session.scalars(select(StockItem).where(StockItem.plan_id == plan_id)).one().is_used = True
    ko = client.get(f"/api/v1/orders/{order_id}/payment-validation").json()
    assert ko["canProceedWithPayment"] is False
    assert ko["items"][0]["error"] == "Out of stock"


def test_cancel_endpoints(client, make_plan):
    plan_id = make_plan(stock=2)
    first = client.post("/api/v1/orders", json=_order_body(plan_id)).json()["orderId"]
    second = client.post("/api/v1/orders", json=_order_body(plan_id)).json()["orderId"]

    r = client.post(f"/api/v1/orders/{first}/cancel")
    assert r.status_code == 200 and r.json()["status"] == "CANCELLED"
    assert client.post(f"/api/v1/orders/{first}/cancel").status_code == 404

    r = client.post(f"/api/v1/orders/{second}/cancel-stock-conflict", json={"reason": "Sold out meanwhile"})
    assert r.status_code == 200
    assert r.json()["reason"] == "Sold out meanwhile"

    r = client.post(f"/api/v1/orders/{second}/cancel-stock-conflict")
    assert r.status_code == 404


def test_conflict_sweep_endpoint(authenticated_admin_client, make_plan):
    plan_id = make_plan(stock=1)

    r = authenticated_admin_client.post(
        "/api/v1/orders/cancel-conflicting", json={"completedOrderId": "o-1", "planIds": [plan_id]}
    )

    assert r.status_code == 200
    assert r.json() == {"cancelledCount": 0, "cancelledOrders": []}


def test_conflict_sweep_requires_authentication(client):
    r = client.post("/api/v1/orders/cancel-conflicting", json={"completedOrderId": "o-1", "planIds": ["p"]})
    assert r.status_code == 401
