"""
Accès aux données pour la feature 'payments'.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.infra.database import supports_row_locks
from backend.models import Order, Payment, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

# module backend.payments.repository
def insert_payment(
    session: Session, *, order_id: str, method: PaymentMethod, amount: Decimal, currency: str
) -> Payment:
    payment = Payment(
        order_id=order_id,
        method=method,
        amount=amount,
        currency=currency,
        status=PaymentStatus.PENDING,
        provider_data={},
    )
    session.add(payment)
    session.flush()
    return payment

def get_payment(session: Session, payment_id: str, *, lock: bool = False) -> Optional[Payment]:
    query = select(Payment).where(Payment.id == payment_id)
    if lock and supports_row_locks(session):
        query = query.with_for_update()
    return session.scalars(query).first()

def get_user_payment(session: Session, payment_id: str, user_id: str) -> Optional[Payment]:
    return session.scalars(
        select(Payment).join(Order, Order.id == Payment.order_id).where(Payment.id == payment_id, Order.user_id == user_id)
    ).first()

def list_user_order_payments(session: Session, order_id: str, user_id: str) -> List[Payment]:
    return list(
        session.scalars(
            select(Payment)
            .join(Order, Order.id == Payment.order_id)
            .where(Payment.order_id == order_id, Order.user_id == user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        ).all()
    )

def record_session_opened(
    payment: Payment, *, provider_payment_id: Optional[str], token: Optional[str], payment_url: Optional[str], raw: Dict[str, Any]
) -> None:
    payment.provider_payment_id = provider_payment_id
    # réaffectation complète: la colonne JSON n'est pas suivie en mutation
    payment.provider_data = {
        **(payment.provider_data or {}),
        "paymentId": provider_payment_id,
        "token": token,
        "paymentUrl": payment_url,
        "session": raw,
    }

def record_session_failed(payment: Payment, reason: str) -> None:
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason

def find_payment_for_callback(
    session: Session,
    method: PaymentMethod,
    *,
    conversation_id: Optional[str] = None,
    provider_payment_id: Optional[str] = None,
    token: Optional[str] = None,
) -> Optional[Payment]:
    """
    Résout le paiement visé par un callback, dans l'ordre:
    (a) identifiant de conversation (= id du paiement)
    (b) id fournisseur (ou token, certains fournisseurs utilisent le token comme id)
    (c) token enregistré dans provider_data à la création de session
    Toujours filtré sur la méthode de paiement attendue.
    """
    base = select(Payment).where(Payment.method == method)
    if conversation_id:
        payment = session.scalars(base.where(Payment.id == str(conversation_id))).first()
        if payment is not None:
            return payment
    for ref in (provider_payment_id, token):
        if ref:
            payment = session.scalars(
                base.where(Payment.provider_payment_id == str(ref)).order_by(Payment.created_at.desc())
            ).first()
            if payment is not None:
                return payment
    if token:
        payment = session.scalars(
            base.where(Payment.provider_data["token"].as_string() == str(token)).order_by(Payment.created_at.desc())
        ).first()
        if payment is not None:
            return payment
    logger.warning(
        "payments.repository.find_payment_for_callback miss method=%s conversation_id=%s provider_payment_id=%s",
        method.value, conversation_id, provider_payment_id,
    )
    return None
