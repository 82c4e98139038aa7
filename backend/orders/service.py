"""
Cas d'usage 'orders': création de commande, revalidation du stock avant paiement,
annulations (utilisateur, conflit de stock, balayage après complétion) et consultation.
"""
import logging
import secrets
import string
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from backend.config import ORDERS_PAGE_PATH, TAX_RATE
from backend.delivery import service as delivery_service
from backend.infra.database import session_scope
from backend.models import (
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    UserSubscription,
    utcnow,
)
from backend.utils.errors import (
    AppError,
    BusinessRuleViolation,
    ConflictError,
    Forbidden,
    InternalError,
    NotFound,
    StockValidationError,
    ValidationFailed,
)
from . import repository
from . import stock

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_CONFLICT_REASON = "Stock no longer available"


def _money(value: Optional[Decimal]) -> float:
    return float(Decimal(value or 0).quantize(CENT))

def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None

def generate_order_number() -> str:
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"

def parse_payment_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").upper())
    except ValueError:
        raise ValidationFailed("Invalid payment method")

def order_page_url(order_id: str) -> str:
    return f"{ORDERS_PAGE_PATH.rstrip('/')}/{order_id}"


# --- Création ---

def create_order(
    user: Dict[str, Any],
    items: List[Dict[str, Any]],
    payment_method: Any,
    *,
    tax_rate: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """
    Crée une commande à partir d'un panier figé.
    1) Plans résolus en un seul lot (indisponible => BAD_REQUEST, aucune écriture)
    2) Contrôle du stock des lignes AUTOMATIC, violations agrégées en une erreur
    3) Sous-total au prix courant du plan, figé dans les lignes; taxe = taux configuré
    4) Commande + lignes dans une seule transaction
    5) ADMIN_BYPASS: COMPLETED immédiat (stock consommé, abonnements), livraison best-effort
       sinon: ouverture d'une session chez le fournisseur de paiement
    Retour: {orderId, orderNumber, status, total, redirectUrl}
    """
    user_id = str(user.get("id") or "")
    method = parse_payment_method(payment_method)
    if method == PaymentMethod.ADMIN_BYPASS and user.get("role") != "admin":
        raise Forbidden("Admin bypass requires administrator privileges")
    quantities = stock.aggregate_quantities(items)
    rate = TAX_RATE if tax_rate is None else Decimal(tax_rate)
    is_bypass = method == PaymentMethod.ADMIN_BYPASS

    try:
        with session_scope() as session:
            plans = repository.get_available_plans(session, quantities.keys())
            if len(plans) != len(quantities):
                raise BusinessRuleViolation("One or more plans are not available")
            plans_by_id = {p.id: p for p in plans}
            if len({p.currency for p in plans}) > 1:
                raise BusinessRuleViolation("All items of an order must use the same currency")

            automatic_ids = [p.id for p in plans if p.delivery_type == DeliveryType.AUTOMATIC]
            available = stock.count_available_stock(session, automatic_ids)
            stock_errors = []
            for plan_id, qty in quantities.items():
                plan = plans_by_id[plan_id]
                if plan.delivery_type != DeliveryType.AUTOMATIC:
                    continue
                error = stock.stock_violation(available.get(plan_id, 0), qty)
                if error:
                    stock_errors.append(stock.violation_record(plan, qty, available.get(plan_id, 0), error))
            if stock_errors:
                raise StockValidationError(stock.format_stock_errors(stock_errors), stock_errors)

            subtotal = sum((plans_by_id[pid].price * qty for pid, qty in quantities.items()), Decimal("0"))
            subtotal = Decimal(subtotal).quantize(CENT)
            tax = (subtotal * rate).quantize(CENT)
            now = utcnow()
            order = repository.insert_order(
                session,
                order_number=generate_order_number(),
                user_id=user_id,
                status=OrderStatus.COMPLETED if is_bypass else OrderStatus.PENDING,
                payment_method=method,
                subtotal=subtotal,
                tax=tax,
                total=subtotal + tax,
                currency=plans[0].currency,
                completed_at=now if is_bypass else None,
            )
            order_items = repository.insert_order_items(
                session, order.id, [(plans_by_id[pid], qty) for pid, qty in quantities.items()]
            )
            if is_bypass:
                for item in order_items:
                    if item.delivery_type == DeliveryType.AUTOMATIC:
                        stock.claim_stock(
                            session, plan_id=item.plan_id, order_item_id=item.id, quantity=item.quantity, now=now
                        )
                repository.create_subscriptions(session, order, order_items, now)
            summary = {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "status": order.status.value,
                "total": _money(order.total),
            }
    except AppError:
        raise
    except stock.StockConflict:
        raise ConflictError("Stock changed while creating the order, please try again")
    except Exception:
        logger.exception("orders.service.create_order failed user_id=%s method=%s", user_id, method.value)
        raise InternalError("Failed to create order. Please try again.")

    order_id = summary["orderId"]
    logger.info("orders.create order_id=%s status=%s items=%s", order_id, summary["status"], len(quantities))
    if is_bypass:
        try:
            delivery_service.dispatch_order_deliveries(order_id)
        except Exception:
            logger.exception("orders.service.create_order delivery dispatch failed order_id=%s", order_id)
        if automatic_ids:
            try:
                cancel_conflicting_orders(order_id, automatic_ids)
            except Exception:
                logger.exception("orders.service.create_order sweep failed order_id=%s", order_id)
        summary["redirectUrl"] = order_page_url(order_id)
        return summary

    summary["redirectUrl"] = _open_initial_session(user, order_id, method)
    return summary

def _open_initial_session(user: Dict[str, Any], order_id: str, method: PaymentMethod) -> str:
    """La commande est déjà validée: un échec ici laisse la commande PENDING et renvoie vers son détail."""
    from backend.payments import service as payments_service
    try:
        result = payments_service.open_payment_session(user, order_id, method)
        if result.get("success") and result.get("paymentUrl"):
            return result["paymentUrl"]
    except AppError as e:
        logger.warning("orders.create payment session not opened order_id=%s code=%s", order_id, e.code)
    except Exception:
        logger.exception("orders.service._open_initial_session failed order_id=%s", order_id)
    return order_page_url(order_id)


# --- Revalidation avant paiement ---

def build_payment_validation(order: Order, items: List[OrderItem], available: Dict[str, int]) -> Dict[str, Any]:
    rows = []
    for item in items:
        plan = item.plan
        row = {
            "orderItemId": item.id,
            "planId": item.plan_id,
            "productName": plan.product.name if plan and plan.product else None,
            "planType": plan.plan_type if plan else None,
            "requestedQuantity": item.quantity,
            "availableStock": None,
            "valid": True,
            "error": None,
        }
        if item.delivery_type == DeliveryType.AUTOMATIC:
            count = available.get(item.plan_id, 0)
            error = stock.stock_violation(count, item.quantity)
            row.update({"availableStock": count, "valid": error is None, "error": error})
        rows.append(row)
    valid = all(r["valid"] for r in rows)
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "valid": valid,
        "items": rows,
        "canProceedWithPayment": valid,
    }

def validate_order_for_payment(user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    """Relecture du stock pour une commande PENDING, sans aucune écriture."""
    with session_scope() as session:
        order = repository.get_user_order(session, order_id, str(user.get("id") or ""), statuses=[OrderStatus.PENDING])
        if order is None:
            raise NotFound("Order not found or already processed")
        items = repository.list_order_items(session, order.id)
        available = stock.count_available_stock(
            session, [i.plan_id for i in items if i.delivery_type == DeliveryType.AUTOMATIC]
        )
        return build_payment_validation(order, items, available)


# --- Annulations ---

def cancel_due_to_stock_conflict(user: Dict[str, Any], order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    PENDING -> CANCELLED, paiements PENDING -> CANCELLED (raison), panier purgé des plans de la commande.
    Une commande déjà terminée (ou d'un autre utilisateur) => NOT_FOUND.
    """
    reason = (reason or "").strip() or DEFAULT_CONFLICT_REASON
    user_id = str(user.get("id") or "")
    with session_scope() as session:
        order = repository.get_user_order(session, order_id, user_id, statuses=[OrderStatus.PENDING], lock=True)
        if order is None:
            raise NotFound("Order not found or already processed")
        items = repository.list_order_items(session, order.id)
        repository.set_order_status(order, OrderStatus.CANCELLED)
        payments = repository.cancel_pending_payments(session, order.id, reason)
        purged = repository.delete_cart_items(session, user_id, [i.plan_id for i in items])
        result = {
            "success": True,
            "orderId": order.id,
            "orderNumber": order.order_number,
            "status": OrderStatus.CANCELLED.value,
            "reason": reason,
            "cancelledItems": [
                {
                    "planId": i.plan_id,
                    "productName": i.plan.product.name if i.plan and i.plan.product else None,
                    "planType": i.plan.plan_type if i.plan else None,
                    "quantity": i.quantity,
                }
                for i in items
            ],
        }
    logger.info(
        "orders.cancel_due_to_stock_conflict order_id=%s payments=%s cart_purged=%s", order_id, payments, purged
    )
    return result

def cancel_conflicting_orders(completed_order_id: str, plan_ids: Iterable[str]) -> Dict[str, Any]:
    """
    Balayage après complétion: annule les autres commandes PENDING dont une ligne AUTOMATIC
    sur ces plans dépasse désormais le stock restant.
    Chaque commande est annulée dans sa propre transaction; un échec n'interrompt pas le balayage.
    """
    plan_ids = sorted({str(p) for p in plan_ids if p})
    cancelled: List[Dict[str, Any]] = []
    if not plan_ids:
        return {"cancelledCount": 0, "cancelledOrders": cancelled}

    with session_scope() as session:
        candidate_ids = repository.find_pending_order_ids_for_plans(
            session, plan_ids, exclude_order_id=completed_order_id
        )

    for candidate_id in candidate_ids:
        try:
            entry = _cancel_if_conflicting(candidate_id)
        except Exception:
            logger.exception("orders.service.cancel_conflicting_orders failed order_id=%s", candidate_id)
            continue
        if entry:
            cancelled.append(entry)

    if cancelled:
        logger.info(
            "orders.sweep completed_order_id=%s cancelled=%s", completed_order_id, [c["orderId"] for c in cancelled]
        )
    return {"cancelledCount": len(cancelled), "cancelledOrders": cancelled}

def _cancel_if_conflicting(order_id: str) -> Optional[Dict[str, Any]]:
    with session_scope() as session:
        order = repository.get_order(session, order_id, lock=True)
        if order is None or order.status != OrderStatus.PENDING:
            return None
        items = [i for i in repository.list_order_items(session, order.id) if i.delivery_type == DeliveryType.AUTOMATIC]
        available = stock.count_available_stock(session, [i.plan_id for i in items])
        conflicts = [
            {
                "planId": i.plan_id,
                "productName": i.plan.product.name if i.plan and i.plan.product else i.plan_id,
                "planType": i.plan.plan_type if i.plan else None,
                "requested": i.quantity,
                "available": available.get(i.plan_id, 0),
            }
            for i in items
            if available.get(i.plan_id, 0) < i.quantity
        ]
        if not conflicts:
            return None
        details = ", ".join(f"{c['productName']} ({c['available']}/{c['requested']})" for c in conflicts)
        reason = f"Order cancelled due to stock conflict: {details}"
        repository.set_order_status(order, OrderStatus.CANCELLED)
        repository.cancel_pending_payments(session, order.id, reason)
        repository.delete_cart_items(session, order.user_id, [c["planId"] for c in conflicts])
        return {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "userId": order.user_id,
            "stockConflicts": conflicts,
            "cancelledAt": _iso(utcnow()),
        }

def cancel_order(user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    """Annulation par l'utilisateur d'une commande PENDING ou PROCESSING."""
    with session_scope() as session:
        order = repository.get_user_order(
            session,
            order_id,
            str(user.get("id") or ""),
            statuses=[OrderStatus.PENDING, OrderStatus.PROCESSING],
            lock=True,
        )
        if order is None:
            raise NotFound("Order not found or cannot be cancelled")
        repository.set_order_status(order, OrderStatus.CANCELLED)
        repository.cancel_pending_payments(session, order.id, "Order cancelled by user")
        return {"success": True, "orderId": order.id, "status": OrderStatus.CANCELLED.value}


# --- Consultation ---

def serialize_payment(payment: Payment) -> Dict[str, Any]:
    data = payment.provider_data or {}
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "method": payment.method.value,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "status": payment.status.value,
        "providerPaymentId": payment.provider_payment_id,
        "paymentUrl": data.get("paymentUrl"),
        "failureReason": payment.failure_reason,
        "createdAt": _iso(payment.created_at),
        "completedAt": _iso(payment.completed_at),
    }

def _serialize_subscription(sub: UserSubscription) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "planId": sub.plan_id,
        "orderItemId": sub.order_item_id,
        "status": sub.status,
        "startDate": _iso(sub.start_date),
        "endDate": _iso(sub.end_date),
        "renewalDate": _iso(sub.renewal_date),
        "autoRenew": sub.auto_renew,
    }

def _serialize_order_summary(order: Order, item_count: int = 0) -> Dict[str, Any]:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status.value,
        "paymentMethod": order.payment_method.value,
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "total": _money(order.total),
        "currency": order.currency,
        "itemCount": item_count,
        "createdAt": _iso(order.created_at),
        "completedAt": _iso(order.completed_at),
    }

def list_orders(
    user: Dict[str, Any], *, limit: int = 20, cursor: Optional[str] = None, status: Optional[str] = None
) -> Dict[str, Any]:
    limit = max(1, min(int(limit or 20), 100))
    status_filter = None
    if status:
        try:
            status_filter = OrderStatus(status.upper())
        except ValueError:
            raise ValidationFailed("Invalid order status")
    with session_scope() as session:
        rows = repository.list_user_orders(
            session, str(user.get("id") or ""), limit=limit + 1, cursor=cursor, status=status_filter
        )
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = rows[-1].id
        counts = repository.count_items_by_order(session, [o.id for o in rows])
        orders = [_serialize_order_summary(o, counts.get(o.id, 0)) for o in rows]
    return {"orders": orders, "nextCursor": next_cursor}

def get_order(user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    with session_scope() as session:
        order = repository.get_user_order(session, order_id, str(user.get("id") or ""))
        if order is None:
            raise NotFound("Order not found")
        items = repository.list_order_items(session, order.id)
        payload = _serialize_order_summary(order, len(items))
        payload["items"] = []
        for item in items:
            plan = item.plan
            entry = {
                "id": item.id,
                "planId": item.plan_id,
                "productName": plan.product.name if plan and plan.product else None,
                "planName": plan.name if plan else None,
                "planType": plan.plan_type if plan else None,
                "quantity": item.quantity,
                "price": _money(item.price),
                "currency": item.currency,
                "deliveryType": item.delivery_type.value,
                "delivery": delivery_service.get_delivery_status(item),
            }
            if order.status == OrderStatus.COMPLETED and item.delivery_type == DeliveryType.AUTOMATIC:
                entry["deliveredContent"] = delivery_service.delivered_content(session, item.id)
            payload["items"].append(entry)
        payload["payments"] = [serialize_payment(p) for p in repository.list_payments(session, order.id)]
        payload["subscriptions"] = [_serialize_subscription(s) for s in repository.list_subscriptions(session, order.id)]
    return payload

def get_order_stats(user: Dict[str, Any]) -> Dict[str, Any]:
    with session_scope() as session:
        stats = repository.order_stats(session, str(user.get("id") or ""))
    by_status = stats["by_status"]
    return {
        "totalOrders": sum(by_status.values()),
        "pendingOrders": by_status.get(OrderStatus.PENDING, 0) + by_status.get(OrderStatus.PROCESSING, 0),
        "completedOrders": by_status.get(OrderStatus.COMPLETED, 0),
        "totalSpent": _money(stats["total_spent"]),
    }
