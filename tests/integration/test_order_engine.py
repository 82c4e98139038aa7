from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backend.infra.database import session_scope
from backend.models import (
    CartItem,
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    ProductPlan,
    StockItem,
    UserSubscription,
)
from backend.orders import service as orders_service
from backend.utils.errors import (
    BusinessRuleViolation,
    Forbidden,
    InternalError,
    NotFound,
    StockValidationError,
)


def _count(model) -> int:
    with session_scope() as session:
        return session.scalar(select(func.count()).select_from(model))


def _use_all_stock(plan_id: str) -> None:
    with session_scope() as session:
        for unit in session.scalars(select(StockItem).where(StockItem.plan_id == plan_id)).all():
            unit.is_used = True


def test_failure_between_order_and_items_leaves_nothing(monkeypatch, fake_user, make_plan):
    plan_id = make_plan(stock=5)

    def boom(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr("backend.orders.repository.insert_order_items", boom)

    with pytest.raises(InternalError) as exc:
        orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")

    assert exc.value.message == "Failed to create order. Please try again."
    assert _count(Order) == 0
    assert _count(OrderItem) == 0


def test_stock_violations_are_aggregated(fake_user, make_plan):
    empty = make_plan(name="Streamly", plan_type="PREMIUM", stock=0)
    short = make_plan(name="Musicly", plan_type="FAMILY", stock=3)

    with pytest.raises(StockValidationError) as exc:
        orders_service.create_order(
            fake_user,
            [{"planId": empty, "quantity": 1}, {"planId": short, "quantity": 5}],
            "PROVIDER_A",
        )

    errors = {e["planId"]: e for e in exc.value.stock_errors}
    assert errors[empty]["error"] == "Out of stock"
    assert errors[short]["error"] == "Only 3 available"
    assert errors[short]["available"] == 3 and errors[short]["requested"] == 5
    assert "Streamly (PREMIUM): Out of stock" in exc.value.message
    assert "Musicly (FAMILY): Only 3 available" in exc.value.message
    assert _count(Order) == 0


def test_manual_plans_are_not_stock_checked(fake_user, make_plan):
    plan_id = make_plan(delivery_type=DeliveryType.MANUAL, stock=0)

    result = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 2}], "PROVIDER_A")

    assert result["status"] == "PENDING"


def test_price_is_frozen_at_creation(fake_user, make_plan):
    plan_id = make_plan(price="10.00", stock=2)
    result = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")

    with session_scope() as session:
        session.get(ProductPlan, plan_id).price = Decimal("25.00")

    order = orders_service.get_order(fake_user, result["orderId"])
    assert order["items"][0]["price"] == 10.0
    assert order["total"] == 10.0


def test_unavailable_plan_rejected_without_writes(fake_user, make_plan):
    ok = make_plan(stock=2)
    hidden = make_plan(name="Hidden", available=False, stock=2)

    with pytest.raises(BusinessRuleViolation) as exc:
        orders_service.create_order(
            fake_user, [{"planId": ok, "quantity": 1}, {"planId": hidden, "quantity": 1}], "PROVIDER_A"
        )

    assert exc.value.message == "One or more plans are not available"
    assert _count(Order) == 0


def test_mixed_currencies_rejected(fake_user, make_plan):
    usd = make_plan(name="Streamly", currency="USD", stock=1)
    eur = make_plan(name="Musicly", currency="EUR", stock=1)

    with pytest.raises(BusinessRuleViolation):
        orders_service.create_order(fake_user, [{"planId": usd, "quantity": 1}, {"planId": eur, "quantity": 1}], "PROVIDER_A")


def test_duplicate_lines_merged_and_tax_applied(fake_user, make_plan):
    plan_id = make_plan(price="10.00", stock=5)

    result = orders_service.create_order(
        fake_user,
        [{"planId": plan_id, "quantity": 1}, {"planId": plan_id, "quantity": 2}],
        "PROVIDER_A",
        tax_rate=Decimal("0.20"),
    )

    with session_scope() as session:
        items = session.scalars(select(OrderItem).where(OrderItem.order_id == result["orderId"])).all()
        order = session.get(Order, result["orderId"])
        assert len(items) == 1 and items[0].quantity == 3
        assert order.subtotal == Decimal("30.00")
        assert order.tax == Decimal("6.00")
        assert order.total == Decimal("36.00")
    assert result["total"] == 36.0
    assert result["orderNumber"].startswith("ORD-")


def test_unconfigured_provider_keeps_order_pending(fake_user, make_plan):
    plan_id = make_plan(stock=1)

    result = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")

    assert result["status"] == "PENDING"
    assert result["redirectUrl"] == f"/dashboard/orders/{result['orderId']}"
    assert _count(Payment) == 0


def test_admin_bypass_completes_immediately(admin_user, make_plan):
    auto = make_plan(name="Streamly", stock=2, duration=30)
    manual = make_plan(name="Coachly", delivery_type=DeliveryType.MANUAL, duration=90)

    result = orders_service.create_order(
        admin_user, [{"planId": auto, "quantity": 2}, {"planId": manual, "quantity": 1}], "ADMIN_BYPASS"
    )

    assert result["status"] == "COMPLETED"
    assert result["redirectUrl"] == f"/dashboard/orders/{result['orderId']}"
    with session_scope() as session:
        subs = session.scalars(select(UserSubscription).where(UserSubscription.order_id == result["orderId"])).all()
        assert len(subs) == 2
        durations = {s.plan_id: s.end_date - s.start_date for s in subs}
        assert durations[auto] == timedelta(days=30)
        assert durations[manual] == timedelta(days=90)
        assert all(s.renewal_date == s.end_date for s in subs)
        used = session.scalars(select(StockItem).where(StockItem.plan_id == auto, StockItem.is_used.is_(True))).all()
        assert len(used) == 2
        assert session.get(Order, result["orderId"]).completed_at is not None
    assert _count(Payment) == 0


def test_admin_bypass_survives_delivery_failure(monkeypatch, admin_user, make_plan):
    plan_id = make_plan(stock=1)

    def broken_dispatch(order_id):
        raise RuntimeError("delivery backend down")

    monkeypatch.setattr("backend.delivery.service.dispatch_order_deliveries", broken_dispatch)

    result = orders_service.create_order(admin_user, [{"planId": plan_id, "quantity": 1}], "ADMIN_BYPASS")

    assert result["status"] == "COMPLETED"
    with session_scope() as session:
        assert session.get(Order, result["orderId"]).status == OrderStatus.COMPLETED
    assert _count(UserSubscription) == 1


def test_admin_bypass_forbidden_for_regular_user(fake_user, make_plan):
    plan_id = make_plan(stock=2)

    with pytest.raises(Forbidden):
        orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "ADMIN_BYPASS")

    assert _count(Order) == 0
    assert _count(UserSubscription) == 0


def test_validate_order_for_payment_reads_only(fake_user, make_plan):
    plan_id = make_plan(stock=2)
    order_id = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 2}], "PROVIDER_A")["orderId"]

    report = orders_service.validate_order_for_payment(fake_user, order_id)
    assert report["valid"] is True and report["canProceedWithPayment"] is True
    assert report["items"][0]["availableStock"] == 2

    _use_all_stock(plan_id)
    report = orders_service.validate_order_for_payment(fake_user, order_id)

    assert report["canProceedWithPayment"] is False
    assert report["items"][0]["error"] == "Out of stock"
    with session_scope() as session:
        assert session.get(Order, order_id).status == OrderStatus.PENDING


def test_validate_order_for_payment_unknown_or_foreign(fake_user, make_plan):
    plan_id = make_plan(stock=1)
    order_id = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")["orderId"]

    with pytest.raises(NotFound):
        orders_service.validate_order_for_payment({"id": "someone-else"}, order_id)
    with pytest.raises(NotFound):
        orders_service.validate_order_for_payment(fake_user, "missing")


def test_cancel_due_to_stock_conflict(fake_user, make_plan, add_to_cart, place_order):
    plan_id = make_plan(stock=1)
    other = make_plan(name="Other", stock=1)
    add_to_cart(fake_user["id"], plan_id)
    add_to_cart(fake_user["id"], other)
    order_id, payment_id, _ = place_order(fake_user, {plan_id: 1})

    result = orders_service.cancel_due_to_stock_conflict(fake_user, order_id)

    assert result["status"] == "CANCELLED"
    assert result["reason"] == "Stock no longer available"
    assert [i["planId"] for i in result["cancelledItems"]] == [plan_id]
    with session_scope() as session:
        assert session.get(Order, order_id).status == OrderStatus.CANCELLED
        payment = session.get(Payment, payment_id)
        assert payment.status == PaymentStatus.CANCELLED
        assert payment.failure_reason == "Stock no longer available"
        cart = session.scalars(select(CartItem.plan_id).where(CartItem.user_id == fake_user["id"])).all()
        assert cart == [other]

    with pytest.raises(NotFound):
        orders_service.cancel_due_to_stock_conflict(fake_user, order_id, "again")


def test_cancel_order_by_user(fake_user, make_plan, place_order):
    plan_id = make_plan(stock=1)
    order_id, payment_id, _ = place_order(fake_user, {plan_id: 1})

    assert orders_service.cancel_order(fake_user, order_id)["status"] == "CANCELLED"
    with session_scope() as session:
        assert session.get(Payment, payment_id).failure_reason == "Order cancelled by user"
    with pytest.raises(NotFound):
        orders_service.cancel_order(fake_user, order_id)


def test_list_orders_paginates_newest_first(fake_user, make_plan):
    plan_id = make_plan(stock=10)
    ids = [
        orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")["orderId"]
        for _ in range(3)
    ]

    first = orders_service.list_orders(fake_user, limit=2)
    second = orders_service.list_orders(fake_user, limit=2, cursor=first["nextCursor"])

    listed = [o["id"] for o in first["orders"] + second["orders"]]
    assert sorted(listed) == sorted(ids)
    assert len(first["orders"]) == 2 and first["nextCursor"]
    assert second["nextCursor"] is None
    assert orders_service.get_order_stats(fake_user)["pendingOrders"] == 3
