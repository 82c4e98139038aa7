"""
Réconciliation des callbacks fournisseurs.

Le résultat est relu côté serveur auprès du fournisseur (retrieve_result), normalisé
(map_callback, inconnu => FAILED), puis appliqué une seule fois sous verrou du paiement:
- paiement déjà terminal: acquittement sans effet de bord, sauf capture sur un paiement
  FAILED/CANCELLED (paiement COMPLETED + note de remboursement, rien d'autre)
- COMPLETED: stock consommé, paiement + commande COMPLETED, abonnements créés, même transaction
- stock insuffisant à la complétion: paiement COMPLETED (fonds capturés), commande CANCELLED
- FAILED: paiement + commande FAILED
- PROCESSING: commande PROCESSING, paiement reste PENDING
Après commit: livraison, balayage des commandes concurrentes, relecture de contrôle (journalisée).
"""
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from backend.delivery import service as delivery_service
from backend.infra.database import session_scope
from backend.models import (
    DeliveryType,
    OPEN_ORDER_STATUSES,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    TERMINAL_PAYMENT_STATUSES,
    utcnow,
)
from backend.orders import repository as orders_repository
from backend.orders import service as orders_service
from backend.orders import stock
from backend.utils.errors import DatabaseUnavailable, NotFound
from . import providers
from . import repository

logger = logging.getLogger(__name__)


class ReconcileResult(BaseModel):
    # COMPLETED | PROCESSING | FAILED | CANCELLED
    status: str
    payment_id: str
    order_id: str
    payment_status: str
    order_status: str
    applied: bool = False
    already_processed: bool = False
    stock_conflict: bool = False


def _reported_status(payment: Payment, order: Order) -> str:
    if payment.status == PaymentStatus.PENDING:
        return "PROCESSING"
    if payment.status == PaymentStatus.COMPLETED:
        return "COMPLETED" if order.status == OrderStatus.COMPLETED else "CANCELLED"
    return payment.status.value

def _result(payment: Payment, order: Order, **flags) -> ReconcileResult:
    return ReconcileResult(
        status=_reported_status(payment, order),
        payment_id=payment.id,
        order_id=order.id,
        payment_status=payment.status.value,
        order_status=order.status.value,
        **flags,
    )

def reconcile_callback(
    method: PaymentMethod, token: str, *, provider: Optional[providers.PaymentProvider] = None
) -> ReconcileResult:
    """Point d'entrée: token de callback -> état final cohérent paiement/commande/stock."""
    provider = provider or providers.get_provider(method)
    provider.require_credentials()
    outcome = provider.map_callback(provider.retrieve_result(token))
    if not outcome.token:
        outcome.token = token
    try:
        return _reconcile(method, token, outcome)
    except SQLAlchemyError as e:
        logger.exception("payments.reconciler.reconcile_callback database error method=%s", method.value)
        raise DatabaseUnavailable("Database error while processing payment") from e

def _reconcile(method: PaymentMethod, token: str, outcome: providers.CallbackOutcome) -> ReconcileResult:
    with session_scope() as session:
        found = repository.find_payment_for_callback(
            session,
            method,
            conversation_id=outcome.conversation_id,
            provider_payment_id=outcome.provider_payment_id,
            token=token,
        )
        if found is None:
            raise NotFound("Payment not found", code="PAYMENT_NOT_FOUND")
        payment_id = found.id

    consumed: List[str] = []
    try:
        result, consumed = _apply_outcome(payment_id, outcome)
    except stock.StockConflict as conflict:
        result = _apply_stock_conflict(payment_id, outcome, conflict)

    logger.info(
        "payments.reconcile payment_id=%s order_id=%s outcome=%s result=%s applied=%s",
        result.payment_id, result.order_id, outcome.status, result.status, result.applied,
    )
    if result.applied and result.status == "COMPLETED":
        _after_completion(result.order_id, consumed)
    if result.applied:
        _verify_persisted(result.payment_id, result.payment_status)
    return result

def _apply_outcome(payment_id: str, outcome: providers.CallbackOutcome) -> Tuple[ReconcileResult, List[str]]:
    with session_scope() as session:
        payment = repository.get_payment(session, payment_id, lock=True)
        order = orders_repository.get_order(session, payment.order_id, lock=True)
        now = utcnow()
        if outcome.provider_payment_id and not payment.provider_payment_id:
            payment.provider_payment_id = outcome.provider_payment_id

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED) and outcome.status == "COMPLETED":
                # fonds capturés sur un paiement clos: trace + remboursement, aucun autre effet
                closed_as = payment.status.value
                payment.status = PaymentStatus.COMPLETED
                payment.completed_at = now
                payment.webhook_data = outcome.raw
                payment.failure_reason = f"Payment captured after being marked {closed_as}; refund required"
                logger.error(
                    "payments.reconciler capture on %s payment payment_id=%s order_id=%s refund required",
                    closed_as, payment.id, order.id,
                )
                return _result(payment, order, applied=True), []
            if outcome.status != payment.status.value:
                logger.warning(
                    "payments.reconciler late callback payment_id=%s stored=%s reported=%s",
                    payment.id, payment.status.value, outcome.status,
                )
            return _result(payment, order, already_processed=True), []

        payment.webhook_data = outcome.raw

        if order.status not in OPEN_ORDER_STATUSES:
            if outcome.status == "COMPLETED":
                payment.status = PaymentStatus.COMPLETED
                payment.completed_at = now
                payment.failure_reason = f"Payment received for {order.status.value} order; refund required"
                logger.error(
                    "payments.reconciler capture on closed order payment_id=%s order_id=%s order_status=%s",
                    payment.id, order.id, order.status.value,
                )
            elif outcome.status == "FAILED":
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = outcome.failure_reason or "Payment failed"
            return _result(payment, order, applied=outcome.status != "PROCESSING"), []

        if outcome.status == "PROCESSING":
            orders_repository.set_order_status(order, OrderStatus.PROCESSING)
            return _result(payment, order, applied=True), []

        if outcome.status == "FAILED":
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = outcome.failure_reason or "Payment failed"
            orders_repository.set_order_status(order, OrderStatus.FAILED)
            return _result(payment, order, applied=True), []

        items = orders_repository.list_order_items(session, order.id)
        consumed: List[str] = []
        for item in items:
            if item.delivery_type != DeliveryType.AUTOMATIC:
                continue
            missing = item.quantity - len(stock.claimed_stock_ids(session, item.id))
            if missing > 0:
                stock.claim_stock(session, plan_id=item.plan_id, order_item_id=item.id, quantity=missing, now=now)
            consumed.append(item.plan_id)
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = now
        payment.failure_reason = None
        orders_repository.set_order_status(order, OrderStatus.COMPLETED, now=now)
        orders_repository.create_subscriptions(session, order, items, now)
        return _result(payment, order, applied=True), consumed

def _apply_stock_conflict(
    payment_id: str, outcome: providers.CallbackOutcome, conflict: stock.StockConflict
) -> ReconcileResult:
    """Fonds capturés mais stock épuisé entre-temps: commande annulée, remboursement à traiter."""
    with session_scope() as session:
        payment = repository.get_payment(session, payment_id, lock=True)
        order = orders_repository.get_order(session, payment.order_id, lock=True)
        if payment.status in TERMINAL_PAYMENT_STATUSES or order.status not in OPEN_ORDER_STATUSES:
            return _result(payment, order, already_processed=True)
        items = orders_repository.list_order_items(session, order.id)
        automatic = [i for i in items if i.delivery_type == DeliveryType.AUTOMATIC]
        available = stock.count_available_stock(session, [i.plan_id for i in automatic])
        details = ", ".join(
            f"{i.plan.product.name if i.plan and i.plan.product else i.plan_id} ({available.get(i.plan_id, 0)}/{i.quantity})"
            for i in automatic
            if available.get(i.plan_id, 0) < i.quantity
        ) or conflict.plan_id
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = utcnow()
        payment.webhook_data = outcome.raw
        payment.failure_reason = f"Stock no longer available: {details}"
        if outcome.provider_payment_id and not payment.provider_payment_id:
            payment.provider_payment_id = outcome.provider_payment_id
        orders_repository.set_order_status(order, OrderStatus.CANCELLED)
        session.flush()
        orders_repository.cancel_pending_payments(session, order.id, "Order cancelled due to stock conflict")
        orders_repository.delete_cart_items(session, order.user_id, [i.plan_id for i in items])
        logger.error(
            "payments.reconciler stock conflict at completion payment_id=%s order_id=%s refund required",
            payment.id, order.id,
        )
        return _result(payment, order, applied=True, stock_conflict=True)

def _after_completion(order_id: str, consumed_plan_ids: List[str]) -> None:
    try:
        delivery_service.dispatch_order_deliveries(order_id)
    except Exception:
        logger.exception("payments.reconciler delivery dispatch failed order_id=%s", order_id)
    if consumed_plan_ids:
        try:
            orders_service.cancel_conflicting_orders(order_id, consumed_plan_ids)
        except Exception:
            logger.exception("payments.reconciler conflict sweep failed order_id=%s", order_id)

def _verify_persisted(payment_id: str, expected_status: str) -> None:
    try:
        with session_scope() as session:
            payment = repository.get_payment(session, payment_id)
            actual = payment.status.value if payment is not None else None
    except SQLAlchemyError:
        logger.exception("payments.reconciler read-back failed payment_id=%s", payment_id)
        return
    if actual != expected_status:
        logger.warning(
            "payments.reconciler read-back mismatch payment_id=%s expected=%s actual=%s",
            payment_id, expected_status, actual,
        )
