"""
Registre des fournisseurs de paiement (méthode <-> slug d'URL <-> implémentation).
"""
from typing import Dict, Type

from backend.models import PaymentMethod
from backend.utils.errors import NotFound, ValidationFailed
from .base import CallbackOutcome, PaymentProvider, SessionRequest, SessionResult
from .hosted_gateway import HostedGatewayProvider
from .stripe_checkout import StripeCheckoutProvider

PROVIDERS: Dict[PaymentMethod, Type[PaymentProvider]] = {
    PaymentMethod.PROVIDER_A: StripeCheckoutProvider,
    PaymentMethod.PROVIDER_B: HostedGatewayProvider,
}
SLUGS: Dict[str, PaymentMethod] = {cls.slug: method for method, cls in PROVIDERS.items()}

def get_provider(method: PaymentMethod) -> PaymentProvider:
    cls = PROVIDERS.get(method)
    if cls is None:
        raise ValidationFailed(f"Payment method {method.value} has no payment provider")
    return cls()

def method_from_slug(slug: str) -> PaymentMethod:
    method = SLUGS.get((slug or "").strip().lower())
    if method is None:
        raise NotFound("Unknown payment provider")
    return method

__all__ = [
    "PROVIDERS",
    "SLUGS",
    "get_provider",
    "method_from_slug",
    "PaymentProvider",
    "SessionRequest",
    "SessionResult",
    "CallbackOutcome",
]
