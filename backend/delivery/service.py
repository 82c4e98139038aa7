"""
Livraison des lignes d'une commande COMPLETED.
- AUTOMATIC: garantit que `quantity` unités de stock sont rattachées à la ligne, puis date la livraison
- MANUAL: crée (une seule fois) un ticket support auto-généré et le rattache à la ligne
Appelée après commit par la création de commande (bypass admin) et par la réconciliation des paiements;
les échecs sont journalisés, jamais propagés à ces appelants.
"""
import logging
import secrets
import string
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from backend.infra.database import session_scope
from backend.models import (
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    StockItem,
    SupportTicket,
    utcnow,
)
from backend.orders import stock
from backend.utils.errors import BusinessRuleViolation, NotFound

logger = logging.getLogger(__name__)


def _ticket_number() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "DELIVERY-" + "".join(secrets.choice(alphabet) for _ in range(6))

def process_delivery(order_id: str, order_item_id: str) -> Dict[str, Any]:
    with session_scope() as session:
        item = session.get(OrderItem, order_item_id)
        if item is None or item.order_id != order_id:
            raise NotFound("Order item not found")
        order = session.get(Order, order_id)
        if order is None or order.status != OrderStatus.COMPLETED:
            raise BusinessRuleViolation("Order is not completed")
        now = utcnow()

        if item.delivery_type == DeliveryType.AUTOMATIC:
            claimed = stock.claimed_stock_ids(session, item.id)
            missing = item.quantity - len(claimed)
            if missing > 0:
                claimed += stock.claim_stock(
                    session, plan_id=item.plan_id, order_item_id=item.id, quantity=missing, now=now
                )
            if item.delivered_at is None:
                item.delivered_at = now
            return {"success": True, "deliveryType": DeliveryType.AUTOMATIC.value, "stockItemIds": claimed}

        if item.ticket_id:
            return {"success": True, "deliveryType": DeliveryType.MANUAL.value, "ticketId": item.ticket_id, "created": False}
        product_name = item.plan.product.name if item.plan and item.plan.product else item.plan_id
        ticket = SupportTicket(
            ticket_number=_ticket_number(),
            user_id=order.user_id,
            title=f"Delivery Request - {product_name}",
            description=(
                f"Manual delivery required for order {order.order_number}: "
                f"{product_name} ({item.plan.plan_type if item.plan else '-'}) x{item.quantity}"
            ),
            category="ORDER_ISSUES",
            priority="MEDIUM",
            status="OPEN",
            is_auto_created=True,
        )
        session.add(ticket)
        session.flush()
        item.ticket_id = ticket.id
        return {"success": True, "deliveryType": DeliveryType.MANUAL.value, "ticketId": ticket.id, "created": True}

def dispatch_order_deliveries(order_id: str) -> Dict[str, int]:
    """Livre chaque ligne; retourne {delivered, failed}."""
    with session_scope() as session:
        item_ids = list(session.scalars(select(OrderItem.id).where(OrderItem.order_id == order_id)).all())
    delivered = failed = 0
    for item_id in item_ids:
        try:
            process_delivery(order_id, item_id)
            delivered += 1
        except Exception:
            failed += 1
            logger.exception("delivery.service.dispatch_order_deliveries failed order_id=%s item_id=%s", order_id, item_id)
    logger.info("delivery.dispatch order_id=%s delivered=%s failed=%s", order_id, delivered, failed)
    return {"delivered": delivered, "failed": failed}

def get_delivery_status(item: Optional[OrderItem]) -> Dict[str, Any]:
    if item is None:
        return {"status": "NOT_FOUND"}
    return {
        "status": "DELIVERED" if item.delivered_at else "PENDING",
        "deliveryType": item.delivery_type.value,
        "deliveredAt": item.delivered_at.isoformat() if item.delivered_at else None,
        "ticketId": item.ticket_id,
    }

def delivered_content(session, order_item_id: str) -> List[str]:
    return list(
        session.scalars(
            select(StockItem.content).where(StockItem.order_item_id == order_item_id).order_by(StockItem.used_at)
        ).all()
    )
