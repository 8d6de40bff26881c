"""
Taxonomie des erreurs métier.
- Chaque erreur porte son code HTTP et un détail exploitable côté client.
- Les gestionnaires (app_setup/exceptions.py) les transforment en réponses JSON.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class ShopError(Exception):
    status_code = 500
    detail = "Erreur interne"

    def __init__(self, detail: Optional[str] = None, **extra: Any):
        self.detail = detail or self.detail
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "error": type(self).__name__}
        body.update(self.extra)
        return body


class OrderValidationError(ShopError):
    status_code = 400
    detail = "Commande invalide"


class ProductUnavailable(ShopError):
    status_code = 400

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Produit {product_id} introuvable ou inactif", productId=product_id)


class InsufficientStock(ShopError):
    """Stock insuffisant pour un produit: le client doit ajuster la quantité (jamais réduite côté serveur)."""
    status_code = 400

    def __init__(self, product_id: int, available: int, requested: int, product_name: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = product_name or f"produit {product_id}"
        super().__init__(
            f"Stock insuffisant pour {label}. Disponible: {available}, demandé: {requested}",
            productId=product_id,
            productName=product_name,
            available=available,
            requested=requested,
        )


class PriceMismatch(ShopError):
    """Écart entre le total déclaré par le client et le total serveur. Journalisé, jamais levé."""
    status_code = 200

    def __init__(self, declared: Decimal, computed: Decimal):
        self.declared = declared
        self.computed = computed
        self.difference = abs(declared - computed)
        super().__init__(
            f"Total client {declared} différent du total serveur {computed}",
            declaredTotal=str(declared),
            serverTotal=str(computed),
        )


class OrderNotFound(ShopError):
    status_code = 404

    def __init__(self, order_id: Any):
        self.order_id = order_id
        super().__init__("Commande introuvable", orderId=order_id)


class InvalidTransition(ShopError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transition interdite: {current} -> {requested}",
            currentStatus=current,
            requestedStatus=requested,
        )


class PaymentNotApplicable(ShopError):
    status_code = 400
    detail = "La commande n'utilise pas le paiement Bakong"


class SessionExpired(ShopError):
    status_code = 410
    detail = "Session de paiement expirée"


class WebhookRejected(ShopError):
    status_code = 400
    detail = "Webhook invalide"


class GatewayError(ShopError):
    status_code = 502
    detail = "Passerelle de paiement indisponible"


class RateLimited(ShopError):
    status_code = 429
    detail = "Too Many Requests"

    def __init__(self, route_class: str, retry_after: int):
        self.route_class = route_class
        self.retry_after = max(1, int(retry_after))
        super().__init__("Trop de requêtes, réessayez plus tard", retryAfter=self.retry_after)


class TransactionConflict(ShopError):
    """Délai d'attente de verrou dépassé: aucune écriture partielle, le client peut rejouer la requête."""
    status_code = 503
    detail = "Service momentanément occupé, veuillez réessayer"
    retry_after = 1
