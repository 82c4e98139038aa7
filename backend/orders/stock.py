"""
Helpers stock partagés (commandes, paiements, livraison).
- aggregate_quantities: panier brut -> {plan_id: quantité}
- count_available_stock: nombre d'unités non utilisées par plan
- stock_violation / violation_record / format_stock_errors: messages de rupture
- claim_stock: consommation FIFO des unités (verrou + mise à jour conditionnelle)
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.infra.database import supports_row_locks
from backend.models import ProductPlan, StockItem
from backend.utils.errors import ValidationFailed

logger = logging.getLogger(__name__)


class StockConflict(Exception):
    """Moins d'unités réclamables que demandé au moment de la consommation."""

    def __init__(self, plan_id: str, requested: int, claimed: int):
        super().__init__(f"plan_id={plan_id} requested={requested} claimed={claimed}")
        self.plan_id = plan_id
        self.requested = requested
        self.claimed = claimed


def aggregate_quantities(items: List[Dict[str, Any]]) -> Dict[str, int]:
    """
    Agrège un panier brut [{planId, quantity}, ...] en {plan_id: total_quantity}.
    Les lignes en double (même plan) sont fusionnées.
    Soulève ValidationFailed si aucune ligne valide n'est présente.
    """
    quantities: Dict[str, int] = {}
    for it in items or []:
        plan_id = str(it.get("planId") or it.get("plan_id") or "").strip()
        qty = int(it.get("quantity") or 0)
        if not plan_id or qty <= 0:
            raise ValidationFailed("Each item requires a planId and a positive quantity")
        quantities[plan_id] = quantities.get(plan_id, 0) + qty
    if not quantities:
        raise ValidationFailed("Order must contain at least one item")
    return quantities


def count_available_stock(session: Session, plan_ids: Iterable[str]) -> Dict[str, int]:
    ids = sorted({str(p) for p in plan_ids if p})
    if not ids:
        return {}
    rows = session.execute(
        select(StockItem.plan_id, func.count(StockItem.id))
        .where(StockItem.plan_id.in_(ids), StockItem.is_used.is_(False))
        .group_by(StockItem.plan_id)
    ).all()
    counts = {plan_id: 0 for plan_id in ids}
    counts.update({plan_id: int(n) for plan_id, n in rows})
    return counts


def stock_violation(available: int, requested: int) -> Optional[str]:
    if available <= 0:
        return "Out of stock"
    if available < requested:
        return f"Only {available} available"
    return None


def violation_record(plan: ProductPlan, requested: int, available: int, error: str) -> Dict[str, Any]:
    return {
        "planId": plan.id,
        "productName": plan.product.name if plan.product else plan.name,
        "planType": plan.plan_type,
        "requested": requested,
        "available": available,
        "error": error,
    }


def format_stock_errors(stock_errors: List[Dict[str, Any]]) -> str:
    lines = [f"{e['productName']} ({e['planType']}): {e['error']}" for e in stock_errors]
    return "Stock validation failed:\n" + "\n".join(lines)


def claim_stock(
    session: Session,
    *,
    plan_id: str,
    order_item_id: str,
    quantity: int,
    now: datetime,
    max_rounds: int = 3,
) -> List[str]:
    """
    Consomme `quantity` unités du plan pour la ligne de commande donnée (FIFO).
    - Candidats lus avec FOR UPDATE SKIP LOCKED (hors sqlite)
    - Chaque unité est prise par UPDATE ... WHERE is_used = false (rowcount vérifié)
    Soulève StockConflict si le nombre d'unités prises reste insuffisant;
    l'appelant annule alors sa transaction.
    """
    claimed: List[str] = []
    for _ in range(max_rounds):
        needed = quantity - len(claimed)
        if needed <= 0:
            break
        query = (
            select(StockItem.id)
            .where(StockItem.plan_id == plan_id, StockItem.is_used.is_(False))
            .order_by(StockItem.created_at, StockItem.id)
            .limit(needed)
        )
        if supports_row_locks(session):
            query = query.with_for_update(skip_locked=True)
        candidates = session.scalars(query).all()
        if not candidates:
            break
        for stock_id in candidates:
            res = session.execute(
                update(StockItem)
                .where(StockItem.id == stock_id, StockItem.is_used.is_(False))
                .values(is_used=True, used_at=now, order_item_id=order_item_id)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                claimed.append(stock_id)
    if len(claimed) < quantity:
        logger.warning(
            "orders.stock.claim_stock short plan_id=%s order_item_id=%s requested=%s claimed=%s",
            plan_id, order_item_id, quantity, len(claimed),
        )
        raise StockConflict(plan_id, quantity, len(claimed))
    return claimed


def claimed_stock_ids(session: Session, order_item_id: str) -> List[str]:
    return list(
        session.scalars(
            select(StockItem.id).where(StockItem.order_item_id == order_item_id).order_by(StockItem.used_at)
        ).all()
    )
