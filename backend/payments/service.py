"""
Cas d'usage 'payments' côté création de session (adaptateur de passerelle):
orchestre repository, fournisseurs et revalidation du stock de la commande.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from backend.config import BASE_URL
from backend.infra.database import session_scope
from backend.models import OrderStatus, PaymentMethod
from backend.orders import repository as orders_repository
from backend.orders import service as orders_service
from backend.utils.errors import (
    AppError,
    ConflictError,
    NotFound,
    ProviderUnavailable,
    ValidationFailed,
)
from . import providers
from . import repository

logger = logging.getLogger(__name__)

GENERIC_SESSION_ERROR = "Payment session could not be created"


def parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("Invalid amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("Invalid amount")
    return amount

def callback_url(provider: providers.PaymentProvider, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/v1/payments/{provider.slug}/callback"

def open_payment_session(
    user: Dict[str, Any],
    order_id: str,
    method: PaymentMethod,
    *,
    amount: Any = None,
    currency: Optional[str] = None,
    buyer: Optional[Dict[str, Any]] = None,
    billing_address: Optional[Dict[str, Any]] = None,
    base_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Ouvre une session chez le fournisseur pour une commande PENDING de l'utilisateur.
    1) Identifiants fournisseur requis (PaymentConfigurationError sinon, aucune écriture)
    2) Commande PENDING, montant/devise cohérents, méthode identique à celle de la commande
    3) Revalidation du stock (ConflictError avec le rapport si la commande ne peut plus être payée)
    4) Paiement PENDING créé et commité avant l'appel fournisseur; l'id du paiement sert d'identifiant de conversation
    5) Succès: provider_payment_id/token/paymentUrl enregistrés; échec: paiement FAILED avec la raison
    """
    if currency is not None and not isinstance(currency, str):
        raise ValidationFailed("Invalid currency")
    base_url = (base_url or BASE_URL).rstrip("/")
    user_id = str(user.get("id") or "")
    provider = providers.get_provider(method)
    provider.require_credentials()

    with session_scope() as session:
        order = orders_repository.get_user_order(session, order_id, user_id, statuses=[OrderStatus.PENDING])
        if order is None:
            raise NotFound("Order not found or not pending")
        if order.payment_method != method:
            raise ValidationFailed("Payment method does not match the order")
        if amount is not None and parse_amount(amount).quantize(Decimal("0.01")) != Decimal(order.total).quantize(Decimal("0.01")):
            raise ValidationFailed("Amount does not match order total")
        if currency and currency.strip().upper() != order.currency.upper():
            raise ValidationFailed("Currency does not match order currency")
        order_number = order.order_number
        order_total = Decimal(order.total)
        order_currency = order.currency
        items = [
            {
                "id": i.plan_id,
                "name": i.plan.product.name if i.plan and i.plan.product else i.plan_id,
                "price": f"{Decimal(i.price) * i.quantity:.2f}",
                "quantity": i.quantity,
            }
            for i in orders_repository.list_order_items(session, order.id)
        ]

    report = orders_service.validate_order_for_payment(user, order_id)
    if not report["canProceedWithPayment"]:
        raise ConflictError("Some items in this order are no longer available", extra={"validation": report})

    with session_scope() as session:
        payment = repository.insert_payment(
            session, order_id=order_id, method=method, amount=order_total, currency=order_currency
        )
        payment_id = payment.id

    request = providers.SessionRequest(
        payment_id=payment_id,
        order_id=order_id,
        order_number=order_number,
        amount=order_total,
        currency=order_currency,
        callback_url=callback_url(provider, base_url),
        cancel_url=f"{base_url}{orders_service.order_page_url(order_id)}",
        buyer={"id": user_id, "email": user.get("email"), **(buyer or {})},
        billing_address=billing_address or {},
        items=items,
    )
    try:
        result = provider.create_session(request)
    except AppError as e:
        _record_failure(payment_id, e.message)
        raise
    except Exception:
        logger.exception("payments.service.open_payment_session provider error payment_id=%s", payment_id)
        _record_failure(payment_id, "Payment provider error")
        raise ProviderUnavailable("Payment provider unavailable")

    if not result.success:
        _record_failure(payment_id, result.error or GENERIC_SESSION_ERROR)
        return {"success": False, "error": GENERIC_SESSION_ERROR, "paymentId": payment_id}

    with session_scope() as session:
        payment = repository.get_payment(session, payment_id)
        repository.record_session_opened(
            payment,
            provider_payment_id=result.provider_payment_id,
            token=result.token,
            payment_url=result.payment_url,
            raw=result.raw,
        )
    logger.info("payments.session opened payment_id=%s order_id=%s method=%s", payment_id, order_id, method.value)
    return {
        "success": True,
        "paymentId": payment_id,
        "paymentUrl": result.payment_url,
        "providerPaymentId": result.provider_payment_id,
        "token": result.token,
    }

def _record_failure(payment_id: str, reason: str) -> None:
    with session_scope() as session:
        payment = repository.get_payment(session, payment_id)
        if payment is not None:
            repository.record_session_failed(payment, reason)
    logger.warning("payments.session failed payment_id=%s", payment_id)

def get_payment(user: Dict[str, Any], payment_id: str) -> Dict[str, Any]:
    with session_scope() as session:
        payment = repository.get_user_payment(session, payment_id, str(user.get("id") or ""))
        if payment is None:
            raise NotFound("Payment not found")
        return orders_service.serialize_payment(payment)

def list_order_payments(user: Dict[str, Any], order_id: str) -> List[Dict[str, Any]]:
    with session_scope() as session:
        payments = repository.list_user_order_payments(session, order_id, str(user.get("id") or ""))
        return [orders_service.serialize_payment(p) for p in payments]
