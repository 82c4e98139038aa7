"""
Fournisseur A: Stripe Checkout (page hébergée).
- client_reference_id = id du paiement (identifiant de conversation)
- le token de callback est l'id de la session Checkout ({CHECKOUT_SESSION_ID} dans success_url)
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from backend.config import STRIPE_SECRET_KEY
from backend.models import PaymentMethod
from backend.utils.errors import NotFound, PaymentConfigurationError, ProviderUnavailable
from .base import CallbackOutcome, PaymentProvider, SessionRequest, SessionResult

logger = logging.getLogger(__name__)

# Devises sans décimales côté Stripe
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "UGX", "XAF", "XOF"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject: to_dict() selon la version du SDK, sinon dict-compatible
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)

def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1")))
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class StripeCheckoutProvider(PaymentProvider):
    method = PaymentMethod.PROVIDER_A
    slug = "provider-a"
    token_fields = ("token", "session_id", "checkout_session_id")

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = STRIPE_SECRET_KEY if secret_key is None else secret_key

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def require_stripe(self):
        """Configure stripe.api_key et retourne le module prêt à l'emploi."""
        self.require_credentials()
        stripe.api_key = self.secret_key
        return stripe

    def create_session(self, request: SessionRequest) -> SessionResult:
        client = self.require_stripe()
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "unit_amount": to_minor_units(request.amount, request.currency),
                        "product_data": {"name": f"Order {request.order_number}"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{request.callback_url}?token={{CHECKOUT_SESSION_ID}}",
            "cancel_url": request.cancel_url,
            "client_reference_id": request.payment_id,
            "metadata": {"payment_id": request.payment_id, "order_id": request.order_id},
            "payment_method_types": ["card"],
        }
        if request.buyer.get("email"):
            params["customer_email"] = request.buyer["email"]
        try:
            session = _as_dict(client.checkout.Session.create(**params))
        except stripe.APIConnectionError as e:
            logger.warning("payments.stripe create_session unreachable payment_id=%s", request.payment_id)
            raise ProviderUnavailable("Payment provider unavailable") from e
        except stripe.StripeError as e:
            logger.warning(
                "payments.stripe create_session rejected payment_id=%s code=%s", request.payment_id, getattr(e, "code", None)
            )
            return SessionResult(success=False, error=getattr(e, "user_message", None) or "Payment provider rejected the session")
        return SessionResult(
            success=True,
            provider_payment_id=session.get("id"),
            payment_url=session.get("url"),
            token=session.get("id"),
            raw={"id": session.get("id"), "status": session.get("status")},
        )

    def retrieve_result(self, token: str) -> Dict[str, Any]:
        """
        Relit la session Checkout côté Stripe; seule une session effectivement relue est renvoyée.
        - clé refusée (401/403) => PaymentConfigurationError
        - session inconnue (404) => NotFound (PAYMENT_NOT_FOUND)
        - toute autre erreur Stripe => ProviderUnavailable (le callback sera rejoué)
        """
        client = self.require_stripe()
        try:
            return _as_dict(client.checkout.Session.retrieve(token))
        except (stripe.AuthenticationError, stripe.PermissionError) as e:
            logger.error("payments.stripe retrieve rejected credentials http=%s", getattr(e, "http_status", None))
            raise PaymentConfigurationError() from e
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise NotFound("Payment not found", code="PAYMENT_NOT_FOUND") from e
            logger.warning("payments.stripe retrieve invalid request http=%s", getattr(e, "http_status", None))
            raise ProviderUnavailable("Payment provider unavailable") from e
        except stripe.StripeError as e:
            logger.warning("payments.stripe retrieve failed: %s", type(e).__name__)
            raise ProviderUnavailable("Payment provider unavailable") from e

    def map_callback(self, raw: Dict[str, Any]) -> CallbackOutcome:
        payment_status = str(raw.get("payment_status") or "").lower()
        session_status = str(raw.get("status") or "").lower()
        if payment_status in ("paid", "no_payment_required"):
            status = "COMPLETED"
        elif session_status == "complete" and payment_status == "unpaid":
            # moyens de paiement différés: encaissement confirmé plus tard
            status = "PROCESSING"
        else:
            status = "FAILED"
        metadata = raw.get("metadata") or {}
        return CallbackOutcome(
            status=status,
            provider_status=f"{session_status}/{payment_status}",
            conversation_id=raw.get("client_reference_id") or metadata.get("payment_id"),
            provider_payment_id=raw.get("id"),
            token=raw.get("id"),
            failure_reason=None if status != "FAILED" else f"Checkout session {session_status or 'unknown'}",
            raw={k: raw.get(k) for k in ("id", "status", "payment_status", "client_reference_id", "amount_total", "currency")},
        )
