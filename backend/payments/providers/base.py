"""
Interface commune des fournisseurs de paiement.
La réconciliation ne dépend que de ce contrat: création de session, relecture du résultat
côté serveur, normalisation du vocabulaire de statut, extraction du token de callback.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from backend.models import PaymentMethod
from backend.utils.errors import PaymentConfigurationError


class SessionRequest(BaseModel):
    payment_id: str
    order_id: str
    order_number: str
    amount: Decimal
    currency: str
    callback_url: str
    cancel_url: str
    buyer: Dict[str, Any] = Field(default_factory=dict)
    billing_address: Dict[str, Any] = Field(default_factory=dict)
    items: list = Field(default_factory=list)


class SessionResult(BaseModel):
    success: bool
    provider_payment_id: Optional[str] = None
    payment_url: Optional[str] = None
    token: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CallbackOutcome(BaseModel):
    # statut interne; tout statut fournisseur inconnu donne FAILED
    status: Literal["COMPLETED", "FAILED", "PROCESSING"]
    provider_status: str = ""
    conversation_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    token: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentProvider(ABC):
    method: PaymentMethod
    slug: str
    token_fields: Tuple[str, ...] = ("token",)

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    def require_credentials(self) -> None:
        if not self.is_configured():
            raise PaymentConfigurationError()

    @abstractmethod
    def create_session(self, request: SessionRequest) -> SessionResult:
        ...

    @abstractmethod
    def retrieve_result(self, token: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def map_callback(self, raw: Dict[str, Any]) -> CallbackOutcome:
        ...

    def extract_token(self, fields: Dict[str, Any]) -> Optional[str]:
        """Premier champ token connu, au premier niveau ou sous "data"."""
        scopes = [fields]
        nested = fields.get("data")
        if isinstance(nested, dict):
            scopes.append(nested)
        for scope in scopes:
            for key in self.token_fields:
                value = scope.get(key)
                if isinstance(value, (list, tuple)):
                    value = value[0] if value else None
                if value is not None and str(value).strip():
                    return str(value).strip()
        return None
