"""
Fournisseur B: passerelle hébergée (formulaire de paiement tokenisé + API JSON serveur à serveur).
- POST {base}/payment/checkout -> {status, token, paymentPageUrl, paymentId}
- POST {base}/payment/retrieve -> {paymentStatus, conversationId, paymentId, token, errorMessage}
Requêtes signées HMAC-SHA256 (clé secrète marchand).
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

import httpx

from backend.config import (
    GATEWAY_API_KEY,
    GATEWAY_BASE_URL,
    GATEWAY_MERCHANT_ID,
    GATEWAY_SECRET_KEY,
    PROVIDER_TIMEOUT_SECONDS,
)
from backend.models import PaymentMethod
from backend.utils.errors import PaymentConfigurationError, ProviderUnavailable
from .base import CallbackOutcome, PaymentProvider, SessionRequest, SessionResult

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = {"success", "completed", "paid", "approved"}
PROCESSING_STATUSES = {"pending", "processing", "in_progress", "init_threeds", "waiting"}


class HostedGatewayProvider(PaymentProvider):
    method = PaymentMethod.PROVIDER_B
    slug = "provider-b"
    token_fields = ("token", "paymentToken", "checkoutToken")

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.merchant_id = GATEWAY_MERCHANT_ID if merchant_id is None else merchant_id
        self.api_key = GATEWAY_API_KEY if api_key is None else api_key
        self.secret_key = GATEWAY_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (GATEWAY_BASE_URL if base_url is None else base_url).rstrip("/")
        self.timeout = PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout

    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.api_key and self.secret_key)

    def _signature(self, body: str) -> str:
        return hmac.new(self.secret_key.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Merchant-Id": self.merchant_id,
            "X-Signature": self._signature(body),
        }
        try:
            return httpx.post(f"{self.base_url}{path}", content=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("payments.gateway %s unreachable: %s", path, type(e).__name__)
            raise ProviderUnavailable("Payment provider unavailable") from e

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def create_session(self, request: SessionRequest) -> SessionResult:
        self.require_credentials()
        amount = f"{request.amount:.2f}"
        payload = {
            "merchantId": self.merchant_id,
            "conversationId": request.payment_id,
            "basketId": request.order_number,
            "price": amount,
            "paidPrice": amount,
            "currency": request.currency.upper(),
            "callbackUrl": request.callback_url,
            "cancelUrl": request.cancel_url,
            "buyer": request.buyer,
            "billingAddress": request.billing_address,
            "basketItems": request.items,
        }
        resp = self._post("/payment/checkout", payload)
        if resp.status_code >= 500:
            raise ProviderUnavailable("Payment provider unavailable")
        data = self._json(resp)
        if resp.status_code >= 400 or str(data.get("status") or "").lower() != "success" or not data.get("token"):
            logger.warning(
                "payments.gateway create_session rejected payment_id=%s http=%s code=%s",
                request.payment_id, resp.status_code, data.get("errorCode"),
            )
            return SessionResult(success=False, error=data.get("errorMessage") or "Payment session could not be created", raw=data)
        return SessionResult(
            success=True,
            provider_payment_id=str(data.get("paymentId") or data.get("token")),
            payment_url=data.get("paymentPageUrl"),
            token=data.get("token"),
            raw={"token": data.get("token"), "paymentPageUrl": data.get("paymentPageUrl")},
        )

    def retrieve_result(self, token: str) -> Dict[str, Any]:
        self.require_credentials()
        resp = self._post("/payment/retrieve", {"merchantId": self.merchant_id, "token": token})
        data = self._json(resp)
        if resp.status_code in (401, 403):
            logger.error("payments.gateway retrieve rejected credentials http=%s", resp.status_code)
            raise PaymentConfigurationError()
        if resp.status_code >= 300 or not data:
            # aucun résultat exploitable: pas de transition, le fournisseur rejouera le callback
            logger.warning(
                "payments.gateway retrieve unusable http=%s code=%s", resp.status_code, data.get("errorCode")
            )
            raise ProviderUnavailable("Payment provider unavailable")
        data.setdefault("token", token)
        return data

    def map_callback(self, raw: Dict[str, Any]) -> CallbackOutcome:
        provider_status = str(raw.get("paymentStatus") or raw.get("status") or "").strip().lower()
        if provider_status in COMPLETED_STATUSES:
            status = "COMPLETED"
        elif provider_status in PROCESSING_STATUSES:
            status = "PROCESSING"
        else:
            status = "FAILED"
        return CallbackOutcome(
            status=status,
            provider_status=provider_status,
            conversation_id=raw.get("conversationId"),
            provider_payment_id=str(raw["paymentId"]) if raw.get("paymentId") else None,
            token=raw.get("token"),
            failure_reason=(raw.get("errorMessage") or f"Payment {provider_status or 'status unknown'}") if status == "FAILED" else None,
            raw=raw,
        )
