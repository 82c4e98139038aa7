"""
Accès aux données pour la feature 'orders'.
Toutes les fonctions reçoivent la session de la transaction en cours (aucun commit ici).
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from backend.infra.database import supports_row_locks
from backend.models import (
    CartItem,
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProductPlan,
    UserSubscription,
)

logger = logging.getLogger(__name__)

# module backend.orders.repository
def get_available_plans(session: Session, plan_ids: Iterable[str]) -> List[ProductPlan]:
    """Plans demandés encore disponibles (is_available), en une seule requête."""
    ids = [str(p) for p in plan_ids]
    if not ids:
        return []
    return list(
        session.scalars(
            select(ProductPlan).where(ProductPlan.id.in_(ids), ProductPlan.is_available.is_(True))
        ).unique().all()
    )

def get_plan(session: Session, plan_id: str) -> Optional[ProductPlan]:
    return session.get(ProductPlan, plan_id)

def insert_order(
    session: Session,
    *,
    order_number: str,
    user_id: str,
    status: OrderStatus,
    payment_method: PaymentMethod,
    subtotal: Decimal,
    tax: Decimal,
    total: Decimal,
    currency: str,
    completed_at: Optional[datetime] = None,
) -> Order:
    order = Order(
        order_number=order_number,
        user_id=user_id,
        status=status,
        payment_method=payment_method,
        subtotal=subtotal,
        tax=tax,
        total=total,
        currency=currency,
        completed_at=completed_at,
    )
    session.add(order)
    session.flush()
    return order

def insert_order_items(session: Session, order_id: str, lines: Sequence[Tuple[ProductPlan, int]]) -> List[OrderItem]:
    """Fige prix, devise et type de livraison du plan dans chaque ligne."""
    items = [
        OrderItem(
            order_id=order_id,
            plan_id=plan.id,
            quantity=qty,
            price=plan.price,
            currency=plan.currency,
            delivery_type=plan.delivery_type,
        )
        for plan, qty in lines
    ]
    session.add_all(items)
    session.flush()
    return items

def get_order(session: Session, order_id: str, *, lock: bool = False) -> Optional[Order]:
    query = select(Order).where(Order.id == order_id)
    if lock and supports_row_locks(session):
        query = query.with_for_update()
    return session.scalars(query).first()

def get_user_order(
    session: Session,
    order_id: str,
    user_id: str,
    *,
    statuses: Optional[Sequence[OrderStatus]] = None,
    lock: bool = False,
) -> Optional[Order]:
    query = select(Order).where(Order.id == order_id, Order.user_id == user_id)
    if statuses:
        query = query.where(Order.status.in_(list(statuses)))
    if lock and supports_row_locks(session):
        query = query.with_for_update()
    return session.scalars(query).first()

def list_order_items(session: Session, order_id: str) -> List[OrderItem]:
    return list(
        session.scalars(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)).unique().all()
    )

def set_order_status(order: Order, status: OrderStatus, *, now: Optional[datetime] = None) -> None:
    order.status = status
    if status == OrderStatus.COMPLETED and now is not None:
        order.completed_at = now

def cancel_pending_payments(session: Session, order_id: str, reason: str) -> int:
    res = session.execute(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING)
        .values(status=PaymentStatus.CANCELLED, failure_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)

def delete_cart_items(session: Session, user_id: str, plan_ids: Iterable[str]) -> int:
    ids = [str(p) for p in plan_ids]
    if not ids:
        return 0
    res = session.execute(
        delete(CartItem)
        .where(CartItem.user_id == user_id, CartItem.plan_id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)

def create_subscriptions(session: Session, order: Order, items: Sequence[OrderItem], start: datetime) -> int:
    """
    Un abonnement par ligne: fin = début + durée du plan (jours), renouvellement = fin.
    Les lignes qui ont déjà un abonnement sont ignorées.
    """
    existing = set(
        session.scalars(
            select(UserSubscription.order_item_id).where(UserSubscription.order_id == order.id)
        ).all()
    )
    created = 0
    for item in items:
        if item.id in existing:
            continue
        plan = item.plan
        end = start + timedelta(days=int(plan.duration or 0))
        session.add(
            UserSubscription(
                user_id=order.user_id,
                plan_id=item.plan_id,
                order_id=order.id,
                order_item_id=item.id,
                status="ACTIVE",
                start_date=start,
                end_date=end,
                renewal_date=end,
                price=item.price,
                currency=item.currency,
                billing_period=plan.billing_period,
                auto_renew=True,
            )
        )
        created += 1
    session.flush()
    return created

def list_subscriptions(session: Session, order_id: str) -> List[UserSubscription]:
    return list(
        session.scalars(select(UserSubscription).where(UserSubscription.order_id == order_id)).all()
    )

def list_payments(session: Session, order_id: str) -> List[Payment]:
    return list(
        session.scalars(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc(), Payment.id.desc())
        ).all()
    )

def find_pending_order_ids_for_plans(
    session: Session, plan_ids: Iterable[str], *, exclude_order_id: Optional[str] = None
) -> List[str]:
    """Commandes PENDING (hors exclusion) contenant une ligne AUTOMATIC sur l'un des plans."""
    ids = [str(p) for p in plan_ids]
    if not ids:
        return []
    query = (
        select(Order.id)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .where(
            Order.status == OrderStatus.PENDING,
            OrderItem.plan_id.in_(ids),
            OrderItem.delivery_type == DeliveryType.AUTOMATIC,
        )
        .distinct()
    )
    if exclude_order_id:
        query = query.where(Order.id != exclude_order_id)
    return list(session.scalars(query).all())

def list_user_orders(
    session: Session,
    user_id: str,
    *,
    limit: int,
    cursor: Optional[str] = None,
    status: Optional[OrderStatus] = None,
) -> List[Order]:
    """Plus récentes d'abord; curseur = id de la dernière commande de la page précédente."""
    query = select(Order).where(Order.user_id == user_id)
    if status:
        query = query.where(Order.status == status)
    if cursor:
        anchor = session.get(Order, cursor)
        if anchor is not None and anchor.user_id == user_id:
            query = query.where(
                or_(
                    Order.created_at < anchor.created_at,
                    and_(Order.created_at == anchor.created_at, Order.id < anchor.id),
                )
            )
    query = query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
    return list(session.scalars(query).all())

def count_items_by_order(session: Session, order_ids: Sequence[str]) -> Dict[str, int]:
    if not order_ids:
        return {}
    rows = session.execute(
        select(OrderItem.order_id, func.count(OrderItem.id))
        .where(OrderItem.order_id.in_(list(order_ids)))
        .group_by(OrderItem.order_id)
    ).all()
    return {order_id: int(n) for order_id, n in rows}

def order_stats(session: Session, user_id: str) -> Dict[str, object]:
    rows = session.execute(
        select(Order.status, func.count(Order.id)).where(Order.user_id == user_id).group_by(Order.status)
    ).all()
    by_status = {status: int(n) for status, n in rows}
    spent = session.scalar(
        select(func.coalesce(func.sum(Order.total), 0)).where(
            Order.user_id == user_id, Order.status == OrderStatus.COMPLETED
        )
    )
    return {"by_status": by_status, "total_spent": Decimal(str(spent or 0))}
