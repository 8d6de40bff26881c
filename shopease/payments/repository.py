"""Accès aux données 'payment_sessions' (transaction de l'appelant, pas de commit ici)."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shopease.orders.models import Order, OrderStatus, PaymentMethod
from shopease.payments.models import PaymentSession


def get_by_order(db: Session, order_id: int) -> Optional[PaymentSession]:
    stmt = select(PaymentSession).where(PaymentSession.order_id == order_id).execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def get_by_correlation_id(db: Session, correlation_id: str) -> Optional[PaymentSession]:
    stmt = (
        select(PaymentSession)
        .where(PaymentSession.correlation_id == correlation_id)
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().first()


def get_by_id(db: Session, session_id: int) -> Optional[PaymentSession]:
    return db.get(PaymentSession, session_id, populate_existing=True)


def add(db: Session, session: PaymentSession) -> PaymentSession:
    db.add(session)
    db.flush()
    return session


def claim(
    db: Session,
    session_id: int,
    *,
    outcome: str,
    via: str,
    now: datetime,
    reference: Optional[str] = None,
) -> bool:
    """
    Compare-and-set sur resolved: seule la première requête voit rowcount == 1.
    Les appels suivants (webhook ou poll concurrent) voient 0 et ne font rien.
    """
    result = db.execute(
        update(PaymentSession)
        .where(PaymentSession.id == session_id, PaymentSession.resolved.is_(False))
        .values(resolved=True, outcome=outcome, resolved_via=via, resolved_at=now, gateway_reference=reference)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def close_open_for_order(db: Session, order_id: int, *, outcome: str, via: str, now: datetime) -> bool:
    """Même compare-and-set que claim, par commande: True si une session ouverte vient d'être close."""
    result = db.execute(
        update(PaymentSession)
        .where(PaymentSession.order_id == order_id, PaymentSession.resolved.is_(False))
        .values(resolved=True, outcome=outcome, resolved_via=via, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def list_expired_unresolved(db: Session, now: datetime) -> List[int]:
    stmt = (
        select(PaymentSession.id)
        .where(PaymentSession.resolved.is_(False), PaymentSession.expires_at < now)
        .order_by(PaymentSession.id)
    )
    return list(db.execute(stmt).scalars())


def list_orphan_pending_orders(db: Session, cutoff: datetime) -> List[int]:
    """Commandes Bakong en attente, créées avant cutoff, sans session de paiement (QR jamais demandé)."""
    stmt = (
        select(Order.id)
        .outerjoin(PaymentSession, PaymentSession.order_id == Order.id)
        .where(
            Order.status == OrderStatus.PENDING.value,
            Order.payment_method == PaymentMethod.BAKONG.value,
            Order.created_at < cutoff,
            PaymentSession.id.is_(None),
        )
        .order_by(Order.id)
    )
    return list(db.execute(stmt).scalars())
