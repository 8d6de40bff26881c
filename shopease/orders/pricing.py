"""
Pricing Authority: recalcul des totaux à partir des prix en base (jamais ceux du client).
Logique pure (pas de DB): reçoit les produits déjà verrouillés par le ledger.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
import logging

from shopease import config
from shopease.errors import OrderValidationError, PriceMismatch

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Convertit str|int|float|Decimal en Decimal arrondi au centime (ROUND_HALF_UP)."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def aggregate_quantities(items: List[Dict[str, Any]]) -> Dict[int, int]:
    """
    Agrège les lignes [{productId, quantity}, ...] en {product_id: total_quantity}.
    - Refuse une liste vide, un productId manquant ou une quantité <= 0 (pas d'ignorance silencieuse).
    - L'ordre d'apparition est conservé (lignes de commande dans l'ordre du panier).
    """
    if not items:
        raise OrderValidationError("La commande doit contenir au moins un article")
    quantities: Dict[int, int] = {}
    for it in items:
        try:
            product_id = int(it.get("productId"))
            qty = int(it.get("quantity"))
        except (TypeError, ValueError):
            raise OrderValidationError("Article invalide")
        if qty <= 0:
            raise OrderValidationError(f"Quantité invalide pour le produit {product_id}")
        quantities[product_id] = quantities.get(product_id, 0) + qty
    return quantities


@dataclass
class PricedLine:
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Quote:
    lines: List[PricedLine]
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    mismatch: Optional[PriceMismatch] = None
    flagged: bool = field(default=False)


def price_order(products: Dict[int, Any], quantities: Dict[int, int], shipping: Optional[Decimal] = None) -> Quote:
    """
    Calcule sous-total, frais de port et total à partir des prix des produits verrouillés.
    - products: {id: Product} (lignes verrouillées)
    - quantities: {id: qty} (déjà validées)
    """
    lines: List[PricedLine] = []
    for product_id, qty in quantities.items():
        product = products[product_id]
        lines.append(PricedLine(product_id, product.name, to_money(product.price), qty))
    subtotal = sum((line.line_total for line in lines), Decimal("0.00")).quantize(CENT)
    shipping = to_money(config.SHIPPING_FEE if shipping is None else shipping)
    total = (subtotal + shipping).quantize(CENT, rounding=ROUND_HALF_UP)
    return Quote(lines=lines, subtotal=subtotal, shipping=shipping, total=total)


def check_declared_total(quote: Quote, declared_total: Any, order_ref: str = "") -> Quote:
    """
    Compare le total déclaré par le client au total serveur.
    - Écart > PRICE_MISMATCH_EPSILON: PriceMismatch journalisé (warning), jamais bloquant.
    - Politique "flag": la commande est en plus marquée pour revue manuelle.
    Le total persistant reste toujours celui du serveur.
    """
    if declared_total is None:
        return quote
    try:
        declared = to_money(declared_total)
    except ArithmeticError:
        logger.warning("Declared total unreadable order=%s value=%r", order_ref, declared_total)
        return quote
    if abs(declared - quote.total) > config.PRICE_MISMATCH_EPSILON:
        quote.mismatch = PriceMismatch(declared, quote.total)
        quote.flagged = config.PRICE_MISMATCH_POLICY == "flag"
        logger.warning(
            "Price mismatch order=%s client_total=%s server_total=%s diff=%s policy=%s",
            order_ref, declared, quote.total, quote.mismatch.difference, config.PRICE_MISMATCH_POLICY,
        )
    return quote
