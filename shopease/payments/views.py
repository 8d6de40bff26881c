"""Endpoints Paiements (Bakong KHQR).
- GET /orders/{id}/payment-qr: crée ou retourne la session de paiement + image QR (base64).
- GET /orders/{id}/payment-status: polling client (classe de rate limit "polling").
- POST /payments/webhook: callback passerelle, signé (X-Bakong-Signature), non limité par client.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shopease.errors import ShopError, WebhookRejected
from shopease.infra.database import get_db
from shopease.payments import bakong_client
from shopease.payments import service as payments_service
from shopease.utils.qrcode_utils import generate_qr_code
from shopease.utils.rate_limit import rate_limit

logger = logging.getLogger(__name__)
orders_router = APIRouter(prefix="/orders", tags=["Payments API"])
router = APIRouter(prefix="/payments", tags=["Payments API"])


# module shopease.payments.views
@orders_router.get("/{order_id}/payment-qr")
def api_payment_qr(order_id: int, db: Session = Depends(get_db)):
    """
    Session KHQR de la commande (commandes invitées comprises, comme le paiement en magasin).
    - 400 si la commande n'est pas payée par Bakong, 410 si la session a expiré.
    """
    session = payments_service.create_session(db, order_id)
    try:
        session["qrImage"] = generate_qr_code(session["qrPayload"])
    except Exception:
        # Le payload texte suffit au client (rendu QR côté front)
        logger.exception("Erreur generate_qr_code order_id=%s", order_id)
        session["qrImage"] = None
    return session


@orders_router.get("/{order_id}/payment-status", dependencies=[Depends(rate_limit("polling"))])
def api_payment_status(order_id: int, db: Session = Depends(get_db)):
    """Statut du paiement; expire paresseusement la session échue et interroge la passerelle sinon."""
    return payments_service.get_payment_status(db, order_id)


@router.post("/webhook", include_in_schema=False)
async def api_payment_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Webhook Bakong:
    - Signature: HMAC-SHA512 du corps brut (BAKONG_WEBHOOK_SECRET), ignorée si le secret n'est pas configuré
    - Corps: {"correlationId", "outcome"} ou format natif {"hash", "status", "external_ref"}
    - Réponses: {"status": "resolved"|"already_resolved"|"ignored"}; 400 si invalide
    """
    body = await request.body()
    bakong_client.verify_signature(body, request.headers.get(bakong_client.SIGNATURE_HEADER))
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except ValueError:
        raise WebhookRejected("JSON invalide")
    event = bakong_client.parse_webhook(payload)
    try:
        result = await run_in_threadpool(payments_service.handle_webhook, db, event)
    except (HTTPException, ShopError):
        raise
    except Exception:
        logger.exception("Erreur api_payment_webhook")
        raise HTTPException(status_code=500, detail="Erreur de traitement du webhook")
    logger.info("payments.webhook status=%s order_id=%s", result.get("status"), result.get("orderId"))
    return result
