"""Couche service des paiements Bakong (KHQR).
Rôles:
- create_session: session de paiement 1:1 avec la commande (payload KHQR + corrélation MD5 + échéance).
- resolve_session: résolveur unique et idempotent, partagé par le webhook, le polling et l'expiration.
- handle_webhook / get_payment_status: les deux sources de signal, qui ne transitionnent jamais elles-mêmes.
- expire_stale_sessions: balayage périodique (tâche de fond) et expiration paresseuse à la lecture.
Aucun appel réseau n'est fait à l'intérieur d'une transaction.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from shopease import config
from shopease.errors import (
    GatewayError,
    InvalidTransition,
    OrderNotFound,
    PaymentNotApplicable,
    SessionExpired,
    WebhookRejected,
)
from shopease.infra.database import get_sessionmaker, transaction, utcnow
from shopease.orders import lifecycle
from shopease.orders import repository as orders_repo
from shopease.orders.models import Order, OrderStatus, PaymentMethod
from shopease.payments import bakong_client, khqr
from shopease.payments import repository
from shopease.payments.bakong_client import WebhookEvent
from shopease.payments.models import PaymentOutcome, PaymentSession

logger = logging.getLogger(__name__)

VIA_WEBHOOK = "webhook"
VIA_POLL = "poll"
VIA_EXPIRY = "expiry"

OUTCOME_TO_STATUS = {
    PaymentOutcome.PAID: OrderStatus.PROCESSING.value,
    PaymentOutcome.DECLINED: OrderStatus.FAILED.value,
    PaymentOutcome.EXPIRED: OrderStatus.EXPIRED.value,
}

PAYMENT_STATUS = {
    PaymentOutcome.PAID.value: "completed",
    PaymentOutcome.DECLINED.value: "failed",
    PaymentOutcome.EXPIRED.value: "expired",
}

_MESSAGES = {
    "pending": "En attente du paiement",
    "completed": "Paiement confirmé",
    "failed": "Paiement refusé",
    "expired": "Session de paiement expirée",
}


def _seconds_remaining(session: PaymentSession, now: datetime) -> int:
    return max(0, int((session.expires_at - now).total_seconds()))


def serialize_session(session: PaymentSession, order: Order, now: datetime) -> Dict[str, Any]:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "qrPayload": session.qr_payload,
        "correlationId": session.correlation_id,
        "amount": session.amount,
        "currency": session.currency,
        "createdAt": session.created_at.isoformat(),
        "expiresAt": session.expires_at.isoformat(),
        "expiresIn": _seconds_remaining(session, now),
        "resolved": bool(session.resolved),
        "outcome": session.outcome,
    }


def resolve_session(
    db: Session,
    session: PaymentSession,
    outcome: PaymentOutcome,
    via: str,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Résolveur idempotent (transaction de l'appelant).
    - Verrouille la commande avant la session (même ordre que create_session et les transitions).
    - Réclame la session par compare-and-set sur resolved; le perdant ne fait rien et reçoit False.
    - Le gagnant transitionne la commande: paid -> processing, declined -> failed, expired -> expired.
    - Commande déjà terminale: avertissement, la session reste résolue.
    - Paiement signalé sur une session déjà close autrement (annulation, expiration): avertissement pour remboursement.
    """
    outcome = PaymentOutcome(outcome)
    now = now or utcnow()
    if orders_repo.get_order_for_update(db, session.order_id) is None:
        raise OrderNotFound(session.order_id)
    if not repository.claim(db, session.id, outcome=outcome.value, via=via, now=now, reference=reference):
        closed = repository.get_by_id(db, session.id)
        if outcome is PaymentOutcome.PAID and closed.outcome != PaymentOutcome.PAID.value:
            logger.warning(
                "Payment reported via %s for order %s whose session is already %s (%s): refund review needed",
                via, session.order_id, closed.outcome, closed.resolved_via,
            )
        else:
            logger.info("Payment session %s already resolved, %s signal ignored", session.correlation_id, via)
        return False

    target = OUTCOME_TO_STATUS[outcome]
    try:
        lifecycle.apply_transition(db, session.order_id, target, note=f"Paiement {outcome.value} ({via})")
    except InvalidTransition as e:
        logger.warning(
            "Payment outcome %s for order %s arrived while order is %s: no transition",
            outcome.value, session.order_id, e.current,
        )
    logger.info("Payment session %s resolved outcome=%s via=%s", session.correlation_id, outcome.value, via)
    return True


def create_session(db: Session, order_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Crée (ou retourne) la session de paiement KHQR d'une commande Bakong en attente.
    - Idempotent: une session non résolue et non expirée est retournée telle quelle.
    - Session échue: elle est expirée (commande -> expired, stock restitué) puis SessionExpired est levée.
    - Commande qui n'est plus en attente (annulée, payée...): PaymentNotApplicable, aucun QR servi.
    """
    now = now or utcnow()
    expired = False
    with transaction(db):
        order = orders_repo.get_order_for_update(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.payment_method != PaymentMethod.BAKONG.value:
            raise PaymentNotApplicable()

        session = repository.get_by_order(db, order_id)
        if session is not None and not session.resolved and session.is_expired(now):
            resolve_session(db, session, PaymentOutcome.EXPIRED, VIA_EXPIRY, now=now)
            expired = True
        elif session is not None and session.outcome == PaymentOutcome.EXPIRED.value:
            expired = True
        elif order.status != OrderStatus.PENDING.value:
            raise PaymentNotApplicable(f"La commande est au statut {order.status}, paiement impossible")
        elif session is not None:
            return serialize_session(session, order, now)
        elif order.created_at + timedelta(minutes=config.PAYMENT_SESSION_MINUTES) < now:
            # Même horizon que le balayage des commandes sans QR
            lifecycle.apply_transition(db, order.id, OrderStatus.EXPIRED.value, note="Paiement non initié avant l'échéance")
            expired = True
        else:
            amount = khqr.usd_to_khr(order.total)
            expires_at = now + timedelta(minutes=config.PAYMENT_SESSION_MINUTES)
            payload = khqr.build_payload(
                amount=amount,
                bill_number=order.order_number,
                created_at=now,
                expires_at=expires_at,
            )
            session = repository.add(db, PaymentSession(
                order_id=order.id,
                correlation_id=khqr.md5_hex(payload),
                qr_payload=payload,
                amount=amount,
                currency="KHR",
                created_at=now,
                expires_at=expires_at,
                resolved=False,
            ))
            order.payment_correlation_id = session.correlation_id
            logger.info("Payment session created order=%s md5=%s amount=%s KHR", order.order_number, session.correlation_id, amount)
            return serialize_session(session, order, now)

    if expired:
        raise SessionExpired(orderId=order_id)


def _find_session_for_event(db: Session, event: WebhookEvent) -> Optional[PaymentSession]:
    if event.correlation_id:
        session = repository.get_by_correlation_id(db, event.correlation_id)
        if session is not None:
            return session
    order_id = event.order_id
    if order_id is None and event.order_number:
        order = orders_repo.get_order_by_number(db, event.order_number)
        order_id = order.id if order else None
    if order_id is not None:
        return repository.get_by_order(db, order_id)
    return None


def handle_webhook(db: Session, event: WebhookEvent, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Chemin webhook: retrouve la session (corrélation MD5, sinon numéro/id de commande) et applique le résolveur.
    Réponse: {"status": "resolved"|"already_resolved"|"ignored", ...}.
    """
    if event.outcome is None:
        logger.info("Webhook ignored: status=%s", event.raw_status)
        return {"status": "ignored"}

    now = now or utcnow()
    with transaction(db):
        session = _find_session_for_event(db, event)
        if session is None:
            raise WebhookRejected("Session de paiement inconnue")
        claimed = resolve_session(db, session, event.outcome, VIA_WEBHOOK, reference=event.reference, now=now)
        session = repository.get_by_id(db, session.id)
        order = orders_repo.get_order(db, session.order_id)
        return {
            "status": "resolved" if claimed else "already_resolved",
            "orderId": order.id,
            "orderStatus": order.status,
            "outcome": session.outcome,
        }


def _status_payload(order: Order, session: Optional[PaymentSession], now: datetime) -> Dict[str, Any]:
    if session is None:
        payment_status = "expired" if order.status == OrderStatus.EXPIRED.value else (
            "failed" if order.status in (OrderStatus.FAILED.value, OrderStatus.CANCELLED.value) else "pending"
        )
    elif session.resolved:
        payment_status = PAYMENT_STATUS[session.outcome]
    else:
        payment_status = "pending"
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "paymentStatus": payment_status,
        "orderStatus": order.status,
        "resolved": bool(session.resolved) if session else False,
        "isExpired": session.is_expired(now) if session else order.status == OrderStatus.EXPIRED.value,
        "secondsRemaining": _seconds_remaining(session, now) if session else 0,
        "message": _MESSAGES[payment_status],
    }


def get_payment_status(
    db: Session,
    order_id: int,
    now: Optional[datetime] = None,
    check_transaction: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
) -> Dict[str, Any]:
    """
    Chemin polling:
    1) expiration paresseuse (session échue -> résolue "expired")
    2) hors transaction: interroge la passerelle (check_transaction_by_md5), seulement si la commande est en attente
    3) paiement confirmé -> même résolveur que le webhook
    Une erreur passerelle est journalisée et le paiement reste "pending".
    """
    now = now or utcnow()
    check_transaction = check_transaction or bakong_client.check_transaction_by_md5
    correlation_id = None

    with transaction(db):
        order = orders_repo.get_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.payment_method != PaymentMethod.BAKONG.value:
            raise PaymentNotApplicable()
        session = repository.get_by_order(db, order_id)
        if session is not None and not session.resolved:
            if session.is_expired(now):
                resolve_session(db, session, PaymentOutcome.EXPIRED, VIA_EXPIRY, now=now)
            elif order.status == OrderStatus.PENDING.value:
                correlation_id = session.correlation_id
                session_id = session.id

    if correlation_id:
        try:
            tx = check_transaction(correlation_id)
        except GatewayError as e:
            logger.warning("Bakong status check failed order=%s: %s", order_id, e)
            tx = None
        if tx:
            with transaction(db):
                session = repository.get_by_id(db, session_id)
                resolve_session(db, session, PaymentOutcome.PAID, VIA_POLL, reference=tx.get("hash"), now=now)

    with transaction(db):
        order = orders_repo.get_order(db, order_id)
        return _status_payload(order, repository.get_by_order(db, order_id), now)


def expire_stale_sessions(
    db_factory: Optional[Callable[[], Session]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Balayage d'expiration:
    - sessions non résolues dont l'échéance est passée -> résolues "expired" (une transaction par session)
    - commandes Bakong en attente sans session, plus vieilles que l'horizon -> expired
    Une erreur sur un élément est journalisée et n'interrompt pas le balayage.
    """
    now = now or utcnow()
    db_factory = db_factory or get_sessionmaker()
    counts = {"sessions": 0, "orders": 0}
    db = db_factory()
    try:
        with transaction(db):
            session_ids = repository.list_expired_unresolved(db, now)
        for session_id in session_ids:
            try:
                with transaction(db):
                    session = repository.get_by_id(db, session_id)
                    if session is not None and resolve_session(db, session, PaymentOutcome.EXPIRED, VIA_EXPIRY, now=now):
                        counts["sessions"] += 1
            except Exception:
                logger.exception("Expiry sweep failed for payment session %s", session_id)

        cutoff = now - timedelta(minutes=config.PAYMENT_SESSION_MINUTES)
        with transaction(db):
            order_ids = repository.list_orphan_pending_orders(db, cutoff)
        for order_id in order_ids:
            try:
                result = lifecycle.transition_to(
                    db, order_id, OrderStatus.EXPIRED.value, note="Paiement non initié avant l'échéance"
                )
                if result.changed:
                    counts["orders"] += 1
            except InvalidTransition as e:
                logger.info("Order %s no longer pending (%s), not expired", order_id, e.current)
            except Exception:
                logger.exception("Expiry sweep failed for order %s", order_id)
    finally:
        db.close()

    if counts["sessions"] or counts["orders"]:
        logger.info("Expiry sweep: %s sessions, %s orders expired", counts["sessions"], counts["orders"])
    return counts
