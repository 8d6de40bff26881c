"""
Machine d'états des commandes.

    pending    -> processing | cancelled | failed | expired
    processing -> delivered | cancelled

delivered, cancelled, failed et expired sont terminaux. Entrer dans un statut
"libérant" (cancelled, failed, expired) restitue le stock de chaque ligne, une seule
fois par commande puisqu'aucun statut terminal n'a de sortie, et clôt la session de
paiement encore ouverte: son QR ne peut plus confirmer la commande.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional
import logging

from sqlalchemy.orm import Session

from shopease.errors import InvalidTransition, OrderNotFound, OrderValidationError
from shopease.infra.database import is_lock_timeout, transaction, utcnow
from shopease.inventory import ledger
from shopease.orders import repository
from shopease.orders.models import Order, OrderStatus
from shopease.payments import repository as payments_repo
from shopease.payments.models import PaymentOutcome

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OrderStatus.PENDING.value: frozenset({
        OrderStatus.PROCESSING.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.FAILED.value,
        OrderStatus.EXPIRED.value,
    }),
    OrderStatus.PROCESSING.value: frozenset({
        OrderStatus.DELIVERED.value,
        OrderStatus.CANCELLED.value,
    }),
}

TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.FAILED.value,
    OrderStatus.EXPIRED.value,
})

RELEASING_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.CANCELLED.value,
    OrderStatus.FAILED.value,
    OrderStatus.EXPIRED.value,
})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class ReleaseReport:
    """Bilan de restitution: lignes restituées et échecs (journalisés, jamais bloquants)."""
    released: List[Dict[str, int]] = field(default_factory=list)
    failures: List[Dict[str, object]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> Dict[str, object]:
        return {"released": self.released, "failures": self.failures}


@dataclass
class TransitionResult:
    order: Order
    previous_status: str
    changed: bool
    release_report: Optional[ReleaseReport] = None


def restore_stock(db: Session, order: Order) -> ReleaseReport:
    """
    Restitue le stock de chaque ligne, chacune dans son propre savepoint:
    un échec sur une ligne n'empêche pas les suivantes.
    - Verrous produits pris d'abord, par id croissant, comme à la création de commande.
    - Attente de verrou dépassée ou deadlock: propagé (TransactionConflict), rien n'est écrit.
    """
    report = ReleaseReport()
    items = sorted(order.items, key=lambda i: (i.product_id is None, i.product_id or 0, i.id))
    ledger.lock_products(db, [i.product_id for i in items if i.product_id is not None])
    for item in items:
        if item.product_id is None:
            report.failures.append({"itemId": item.id, "productId": None, "error": "produit supprimé"})
            logger.warning("Stock release skipped order=%s item=%s: product deleted", order.order_number, item.id)
            continue
        try:
            with db.begin_nested():
                ledger.release(db, item.product_id, item.quantity)
            report.released.append({"productId": item.product_id, "quantity": item.quantity})
        except Exception as e:
            if is_lock_timeout(e):
                raise
            report.failures.append({"itemId": item.id, "productId": item.product_id, "error": str(e)})
            logger.exception("Stock release failed order=%s product=%s", order.order_number, item.product_id)
    return report


def _close_open_payment(db: Session, order: Order, new_status: str) -> None:
    outcome = PaymentOutcome.EXPIRED if new_status == OrderStatus.EXPIRED.value else PaymentOutcome.DECLINED
    if payments_repo.close_open_for_order(db, order.id, outcome=outcome.value, via="order", now=utcnow()):
        logger.info("Payment session of order %s closed (%s)", order.order_number, outcome.value)


def apply_transition(db: Session, order_id: int, new_status: str, note: Optional[str] = None) -> TransitionResult:
    """
    Applique une transition dans la transaction de l'appelant (utilisé par le résolveur de paiement).
    - Verrouille la ligne commande.
    - Même statut: no-op (un double cancel ne restitue pas deux fois).
    - Statut terminal ou arête interdite: InvalidTransition, commande inchangée.
    """
    try:
        new_status = OrderStatus(new_status).value
    except ValueError:
        raise OrderValidationError(f"Statut inconnu: {new_status}")
    order = repository.get_order_for_update(db, order_id)
    if order is None:
        raise OrderNotFound(order_id)

    current = order.status
    if current == new_status:
        return TransitionResult(order=order, previous_status=current, changed=False)
    if is_terminal(current) or not can_transition(current, new_status):
        raise InvalidTransition(current, new_status)

    report = None
    if new_status in RELEASING_STATUSES and current not in RELEASING_STATUSES:
        report = restore_stock(db, order)
        if not report.ok:
            logger.warning(
                "Partial stock release order=%s failures=%s", order.order_number, len(report.failures)
            )

    if new_status in RELEASING_STATUSES:
        _close_open_payment(db, order, new_status)

    repository.update_status(db, order, new_status, note)
    logger.info("Order %s: %s -> %s", order.order_number, current, new_status)
    return TransitionResult(order=order, previous_status=current, changed=True, release_report=report)


def transition_to(db: Session, order_id: int, new_status: str, note: Optional[str] = None) -> TransitionResult:
    """Transition autonome: ouvre et valide sa propre transaction."""
    with transaction(db):
        return apply_transition(db, order_id, new_status, note)
