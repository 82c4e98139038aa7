import logging
import urllib.parse
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.status import HTTP_303_SEE_OTHER

from backend.config import BASE_URL, CHECKOUT_PAGE_PATH, ORDERS_PAGE_PATH
from backend.utils.errors import (
    AppError,
    ConflictError,
    DatabaseUnavailable,
    NotFound,
    PaymentConfigurationError,
    ProviderUnavailable,
)
from backend.utils.rate_limit import optional_rate_limit
from backend.utils.security import require_user

from backend.payments import callback_input
from backend.payments import providers
from backend.payments import reconciler
from backend.payments import service as payments_service
from backend.payments.callback_input import CallerType

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])


def _redirect(path: str, error: Optional[str] = None) -> RedirectResponse:
    url = f"{BASE_URL}{path}"
    if error:
        url += "?" + urllib.parse.urlencode({"error": error})
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

def _failure(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})

# module backend.payments.views
@router.post("/{provider}/create", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_payment_session(provider: str, request: Request, user: dict = Depends(require_user)):
    """
    Ouvre une session de paiement hébergée pour une commande PENDING de l'utilisateur.
    - Entrée JSON: { "orderId", "amount", "currency"?, "buyer"?, "billingAddress"? }
    - Sécurité: require_user + rate limit (10 req / 60s)
    - Succès: {success: true, paymentId, paymentUrl, providerPaymentId, token}
    - Échecs: 400 validation / session refusée, 404 commande, 409 stock, 502 fournisseur,
      configuration manquante => 500 JSON ou redirection ?error=configuration (navigateur)
    """
    caller = callback_input.classify_caller(request.headers)
    try:
        body = await request.json()
    except Exception:
        body = None
    if not isinstance(body, dict):
        return _failure(400, "Invalid request body")
    order_id = str(body.get("orderId") or "").strip()
    amount = body.get("amount")
    if not order_id or amount in (None, ""):
        return _failure(400, "Missing required payment information")

    try:
        method = providers.method_from_slug(provider)
        payments_service.parse_amount(amount)
        result = await run_in_threadpool(
            payments_service.open_payment_session,
            user,
            order_id,
            method,
            amount=amount,
            currency=body.get("currency"),
            buyer=body.get("buyer") if isinstance(body.get("buyer"), dict) else None,
            billing_address=body.get("billingAddress") if isinstance(body.get("billingAddress"), dict) else None,
        )
    except PaymentConfigurationError:
        logger.error("payments.create missing credentials provider=%s", provider)
        if caller is CallerType.BROWSER:
            return _redirect(CHECKOUT_PAGE_PATH, "configuration")
        return _failure(500, "Payment configuration error")
    except ConflictError as e:
        return _failure(e.status_code, e.message, **e.extra)
    except AppError as e:
        return _failure(e.status_code, e.message)
    except Exception:
        logger.exception("payments.views.create_payment_session failed order_id=%s provider=%s", order_id, provider)
        return _failure(500, "Failed to create payment session")

    if not result.get("success"):
        return JSONResponse(status_code=400, content=result)
    return JSONResponse(result)


async def _read_callback_fields(request: Request) -> Dict[str, Any]:
    """Champs du callback; un corps illisible est journalisé et seuls les champs de query sont gardés."""
    ctype = request.headers.get("content-type") or ""
    try:
        if request.method == "POST" and ctype.lower().startswith("multipart/form-data"):
            form = await request.form()
            fields: Dict[str, Any] = dict(request.query_params)
            fields.update({k: v for k, v in form.items() if isinstance(v, str)})
            return fields
        body = await request.body() if request.method == "POST" else b""
        return callback_input.parse_callback_fields(request.query_params, ctype, body)
    except Exception as e:
        logger.warning(
            "payments.callback unreadable body content_type=%s error=%s", ctype.split(";")[0], type(e).__name__
        )
        return dict(request.query_params)

def _callback_error(caller: CallerType, code: str, status_code: int, error: str) -> Any:
    if caller is CallerType.BROWSER:
        return _redirect(ORDERS_PAGE_PATH, code)
    return _failure(status_code, error)

@router.api_route(
    "/{provider}/callback",
    methods=["GET", "POST"],
    include_in_schema=False,
    dependencies=[Depends(optional_rate_limit(times=60, seconds=60))],
)
async def payment_callback(provider: str, request: Request):
    """
    Callback fournisseur (redirection navigateur ou webhook serveur).
    - Token extrait de la query, d'un JSON, d'un formulaire ou d'un corps brut
    - Navigateur: redirection vers la liste des commandes (?error=... en cas d'échec)
    - Serveur: JSON {success, status, paymentId, orderId, orderStatus, alreadyProcessed}
    - Erreurs internes: statuts 5xx (le fournisseur réessaie), jamais de trace brute
    """
    caller = callback_input.classify_caller(request.headers)
    try:
        method = providers.method_from_slug(provider)
    except NotFound:
        return _callback_error(caller, "payment_not_found", 404, "Unknown payment provider")

    fields = await _read_callback_fields(request)
    payment_provider = providers.get_provider(method)
    token = payment_provider.extract_token(fields)
    if not token:
        logger.warning(
            "payments.callback missing token provider=%s caller=%s fields=%s", provider, caller.value, sorted(fields)[:10]
        )
        return _callback_error(caller, "missing_token", 400, "Missing payment token")

    try:
        result = await run_in_threadpool(reconciler.reconcile_callback, method, token, provider=payment_provider)
    except PaymentConfigurationError:
        logger.error("payments.callback missing credentials provider=%s", provider)
        return _callback_error(caller, "configuration", 500, "Payment configuration error")
    except NotFound:
        return _callback_error(caller, "payment_not_found", 404, "Payment not found")
    except DatabaseUnavailable:
        return _callback_error(caller, "database_error", 503, "Database error")
    except ProviderUnavailable:
        return _callback_error(caller, "server_error", 502, "Payment provider unavailable")
    except Exception:
        logger.exception("payments.views.payment_callback failed provider=%s", provider)
        return _callback_error(caller, "server_error", 500, "Internal server error")

    if caller is CallerType.BROWSER:
        if result.status in ("COMPLETED", "PROCESSING"):
            return _redirect(ORDERS_PAGE_PATH)
        if result.status == "FAILED":
            return _redirect(ORDERS_PAGE_PATH, "payment_failed")
        return _redirect(ORDERS_PAGE_PATH, "stock_unavailable" if result.stock_conflict else "order_cancelled")

    content: Dict[str, Any] = {
        "success": result.status in ("COMPLETED", "PROCESSING"),
        "status": result.status,
        "paymentId": result.payment_id,
        "orderId": result.order_id,
        "orderStatus": result.order_status,
        "alreadyProcessed": result.already_processed,
    }
    if result.stock_conflict:
        content["error"] = "Stock no longer available"
    return JSONResponse(content)


@router.get("/order/{order_id}")
def list_order_payments(order_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    """Historique des tentatives de paiement d'une commande (plus récentes d'abord)."""
    return {"payments": payments_service.list_order_payments(user, order_id)}

@router.get("/{payment_id}")
def get_payment(payment_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    return payments_service.get_payment(user, payment_id)
