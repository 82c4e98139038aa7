import pytest
from sqlalchemy import select

from backend.delivery import service as delivery_service
from backend.infra.database import session_scope
from backend.models import DeliveryType, OrderItem, SupportTicket
from backend.orders import service as orders_service
from backend.utils.errors import BusinessRuleViolation, NotFound


def _items(order_id):
    with session_scope() as session:
        return session.scalars(select(OrderItem).where(OrderItem.order_id == order_id)).all()


def test_manual_delivery_creates_single_ticket(admin_user, make_plan):
    plan_id = make_plan(name="Coachly", plan_type="COACHING", delivery_type=DeliveryType.MANUAL)
    order_id = orders_service.create_order(admin_user, [{"planId": plan_id, "quantity": 1}], "ADMIN_BYPASS")["orderId"]
    item = _items(order_id)[0]

    again = delivery_service.process_delivery(order_id, item.id)

    assert item.ticket_id is not None
    assert again == {"success": True, "deliveryType": "MANUAL", "ticketId": item.ticket_id, "created": False}
    with session_scope() as session:
        tickets = session.scalars(select(SupportTicket)).all()
        assert len(tickets) == 1
        assert tickets[0].ticket_number.startswith("DELIVERY-")
        assert tickets[0].title == "Delivery Request - Coachly"
        assert tickets[0].is_auto_created is True
        assert tickets[0].user_id == admin_user["id"]


def test_automatic_delivery_is_idempotent(admin_user, make_plan):
    plan_id = make_plan(stock=3)
    order_id = orders_service.create_order(admin_user, [{"planId": plan_id, "quantity": 2}], "ADMIN_BYPASS")["orderId"]
    item = _items(order_id)[0]

    result = delivery_service.process_delivery(order_id, item.id)

    assert len(result["stockItemIds"]) == 2
    assert item.delivered_at is not None
    with session_scope() as session:
        assert len(delivery_service.delivered_content(session, item.id)) == 2


def test_delivery_requires_completed_order(fake_user, make_plan):
    plan_id = make_plan(stock=1)
    order_id = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")["orderId"]
    item = _items(order_id)[0]

    with pytest.raises(BusinessRuleViolation):
        delivery_service.process_delivery(order_id, item.id)
    with pytest.raises(NotFound):
        delivery_service.process_delivery("other-order", item.id)


def test_dispatch_counts_failures(fake_user, make_plan):
    plan_id = make_plan(stock=1)
    order_id = orders_service.create_order(fake_user, [{"planId": plan_id, "quantity": 1}], "PROVIDER_A")["orderId"]

    # commande encore PENDING: chaque ligne échoue, sans exception propagée
    assert delivery_service.dispatch_order_deliveries(order_id) == {"delivered": 0, "failed": 1}


def test_delivery_status_shape(make_plan, admin_user):
    plan_id = make_plan(stock=1)
    order_id = orders_service.create_order(admin_user, [{"planId": plan_id, "quantity": 1}], "ADMIN_BYPASS")["orderId"]

    status = delivery_service.get_delivery_status(_items(order_id)[0])

    assert status["status"] == "DELIVERED"
    assert status["deliveryType"] == "AUTOMATIC"
    assert delivery_service.get_delivery_status(None) == {"status": "NOT_FOUND"}
