import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from backend.models import PaymentMethod
from backend.utils.errors import AppError, InternalError
from backend.utils.rate_limit import optional_rate_limit
from backend.utils.security import require_admin, require_user

from backend.orders import service as orders_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])


class OrderLineRequest(BaseModel):
    planId: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    items: List[OrderLineRequest] = Field(min_length=1)
    paymentMethod: PaymentMethod


class StockConflictCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ConflictSweepRequest(BaseModel):
    completedOrderId: str = Field(min_length=1)
    planIds: List[str] = Field(min_length=1)

    @field_validator("planIds")
    @classmethod
    def _strip_ids(cls, v: List[str]) -> List[str]:
        return [p.strip() for p in v if p and p.strip()]


# module backend.orders.views
@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_order(payload: CreateOrderRequest, user: dict = Depends(require_user)) -> Dict[str, Any]:
    """
    Crée une commande depuis le panier figé de l'utilisateur.
    - Sécurité: require_user + rate limit (10 req / 60s); ADMIN_BYPASS réservé au rôle admin
    - Retour: {orderId, orderNumber, status, total, redirectUrl}
    - Erreurs: 403 FORBIDDEN, 400 BAD_REQUEST (plan indisponible, stock: toutes les lignes listées)
    """
    try:
        return orders_service.create_order(
            user,
            [line.model_dump() for line in payload.items],
            payload.paymentMethod,
        )
    except AppError:
        raise
    except Exception:
        logger.exception("orders.views.create_order failed user_id=%s", user.get("id"))
        raise InternalError("Failed to create order. Please try again.")

@router.get("")
def list_orders(
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = None,
    status: Optional[str] = None,
    user: dict = Depends(require_user),
) -> Dict[str, Any]:
    return orders_service.list_orders(user, limit=limit, cursor=cursor, status=status)

@router.get("/stats")
def order_stats(user: dict = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.get_order_stats(user)

@router.post("/cancel-conflicting")
def cancel_conflicting_orders(payload: ConflictSweepRequest, admin: dict = Depends(require_admin)) -> Dict[str, Any]:
    """Balayage manuel (admin) des commandes PENDING en conflit de stock avec une commande complétée."""
    return orders_service.cancel_conflicting_orders(payload.completedOrderId, payload.planIds)

@router.get("/{order_id}")
def get_order(order_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.get_order(user, order_id)

@router.get("/{order_id}/payment-validation")
def validate_order_for_payment(order_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    """Revalidation du stock juste avant la redirection vers le fournisseur (lecture seule)."""
    return orders_service.validate_order_for_payment(user, order_id)

@router.post("/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.cancel_order(user, order_id)

@router.post("/{order_id}/cancel-stock-conflict")
def cancel_due_to_stock_conflict(
    order_id: str,
    payload: Optional[StockConflictCancelRequest] = None,
    user: dict = Depends(require_user),
) -> Dict[str, Any]:
    return orders_service.cancel_due_to_stock_conflict(user, order_id, payload.reason if payload else None)
