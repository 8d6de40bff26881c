"""
Adaptateur Bakong: centralise les appels HTTP (httpx) et la validation des webhooks.
- check_transaction_by_md5: interroge l'API Open Bakong pour un payload KHQR donné.
- verify_signature: HMAC-SHA512 (hex) du corps brut, en-tête X-Bakong-Signature.
- parse_webhook: normalise le format générique {correlationId, outcome} et le format Bakong natif.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import hashlib
import hmac
import logging

import httpx

from shopease import config
from shopease.errors import GatewayError, WebhookRejected
from shopease.payments.models import PaymentOutcome

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Bakong-Signature"

_PAID_STATUSES = {"SUCCESS", "COMPLETED", "PAID"}
_DECLINED_STATUSES = {"FAILED", "DECLINED", "REJECTED", "CANCELLED"}


# module shopease.payments.bakong_client
def make_client(transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Client HTTP préconfiguré (base URL, jeton Bearer, timeout)."""
    return httpx.Client(
        base_url=config.BAKONG_BASE_URL,
        headers={"Authorization": f"Bearer {config.BAKONG_ACCESS_TOKEN}"},
        timeout=config.BAKONG_TIMEOUT_SECONDS,
        transport=transport,
    )


def check_transaction_by_md5(md5: str, client: Optional[httpx.Client] = None) -> Optional[Dict[str, Any]]:
    """
    Vérifie si la transaction correspondant au MD5 du KHQR a été payée.
    Retour: données de transaction (dict, contient "hash") si payée, None si introuvable.
    Lève GatewayError si la passerelle est injoignable, mal configurée ou répond une erreur.
    """
    if not config.BAKONG_ACCESS_TOKEN and client is None:
        raise GatewayError("Jeton Bakong non configuré")
    owned = client is None
    client = client or make_client()
    try:
        resp = client.post("/check_transaction_by_md5", json={"md5": md5})
        resp.raise_for_status()
        body = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise GatewayError(f"Bakong check_transaction_by_md5: {e}") from e
    finally:
        if owned:
            client.close()

    data = body.get("data")
    if isinstance(data, list):
        data = data[0] if data else None
    if body.get("responseCode") == 0 and isinstance(data, dict) and data.get("hash"):
        logger.info("Bakong payment found md5=%s hash=%s", md5, data.get("hash"))
        return data
    return None


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_signature(body: bytes, signature: Optional[str]) -> None:
    """
    Vérifie la signature du webhook.
    - Secret absent: vérification ignorée avec un avertissement.
    - Signature absente ou différente: WebhookRejected.
    """
    secret = config.BAKONG_WEBHOOK_SECRET
    if not secret:
        logger.warning("Webhook signature verification skipped: BAKONG_WEBHOOK_SECRET not set")
        return
    if not signature:
        raise WebhookRejected("Signature manquante")
    expected = compute_signature(body, secret)
    if not hmac.compare_digest(signature.strip().lower(), expected):
        logger.warning("Invalid webhook signature")
        raise WebhookRejected("Signature invalide")


@dataclass
class WebhookEvent:
    outcome: Optional[PaymentOutcome]
    correlation_id: Optional[str] = None
    order_number: Optional[str] = None
    order_id: Optional[int] = None
    reference: Optional[str] = None
    raw_status: Optional[str] = None


def _parse_outcome(value: Optional[str]) -> Optional[PaymentOutcome]:
    if not value:
        return None
    upper = str(value).strip().upper()
    if upper in _PAID_STATUSES:
        return PaymentOutcome.PAID
    if upper in _DECLINED_STATUSES:
        return PaymentOutcome.DECLINED
    try:
        return PaymentOutcome(str(value).strip().lower())
    except ValueError:
        return None


def parse_webhook(payload: Dict[str, Any]) -> WebhookEvent:
    """
    Normalise le corps du webhook.
    - Générique: {"correlationId": "<md5>", "outcome": "paid"|"declined"}
    - Bakong natif: {"hash", "md5"?, "external_ref", "status": "SUCCESS"|..., "orderId"?}
    Un statut inconnu donne outcome=None (événement ignoré, pas d'erreur).
    """
    if not isinstance(payload, dict):
        raise WebhookRejected("Corps JSON attendu")

    if "correlationId" in payload or "outcome" in payload:
        correlation_id = payload.get("correlationId")
        if not correlation_id:
            raise WebhookRejected("correlationId manquant")
        outcome = _parse_outcome(payload.get("outcome"))
        if outcome is None or outcome == PaymentOutcome.EXPIRED:
            raise WebhookRejected("outcome invalide")
        return WebhookEvent(
            outcome=outcome,
            correlation_id=str(correlation_id),
            reference=payload.get("reference"),
            raw_status=payload.get("outcome"),
        )

    order_id = payload.get("orderId")
    try:
        order_id = int(order_id) if order_id not in (None, "") else None
    except (TypeError, ValueError):
        raise WebhookRejected("orderId invalide")
    event = WebhookEvent(
        outcome=_parse_outcome(payload.get("status")),
        correlation_id=payload.get("md5"),
        order_number=payload.get("external_ref"),
        order_id=order_id,
        reference=payload.get("hash"),
        raw_status=payload.get("status"),
    )
    if event.outcome == PaymentOutcome.EXPIRED:
        event.outcome = None
    if not (event.correlation_id or event.order_number or event.order_id):
        raise WebhookRejected("Aucune référence de commande dans le webhook")
    return event
