"""Couche service de l'user story Commandes.
Rôles:
- create_order: coordinateur de la transaction de création (verrous, réservation, prix serveur, persistance).
- Lectures: détail, liste paginée, suivi (historique des statuts).
- update_status: délègue à la machine d'états (orders.lifecycle).
Aucun appel à la passerelle de paiement n'a lieu pendant la transaction de création.
"""
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from shopease.errors import OrderNotFound, ProductUnavailable
from shopease.infra.database import transaction
from shopease.inventory import ledger
from shopease.inventory.models import PRODUCT_ACTIVE
from shopease.orders import lifecycle, pricing, repository
from shopease.orders.models import Order, OrderStatus, OrderStatusHistory
from shopease.orders.schemas import CreateOrderRequest

logger = logging.getLogger(__name__)


def _money(value) -> float:
    return float(pricing.to_money(value))


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status,
        "subtotal": _money(order.subtotal),
        "shipping": _money(order.shipping),
        "total": _money(order.total),
        "customerName": order.customer_name,
        "customerPhone": order.customer_phone,
        "customerAddress": order.customer_address,
        "customerCity": order.customer_city,
        "customerDistrict": order.customer_district,
        "paymentMethod": order.payment_method,
        "paymentCorrelationId": order.payment_correlation_id,
        "userId": order.user_id,
        "priceFlagged": bool(order.price_flagged),
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "productName": item.product_name,
                "productImage": item.product_image,
                "price": _money(item.price),
                "quantity": item.quantity,
                "color": item.color,
                "offer": item.offer,
            }
            for item in order.items
        ],
    }


def serialize_history(entry: OrderStatusHistory) -> Dict[str, Any]:
    return {
        "status": entry.status,
        "note": entry.note,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def _line_extras(req: CreateOrderRequest) -> Dict[int, Dict[str, Optional[str]]]:
    # Première occurrence de chaque produit: couleur/offre/image affichées dans le panier
    extras: Dict[int, Dict[str, Optional[str]]] = {}
    for it in req.items:
        extras.setdefault(it.product_id, {"color": it.color, "offer": it.offer, "image": it.image_url})
    return extras


def create_order(db: Session, req: CreateOrderRequest, user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Transaction de création de commande (tout ou rien):
    1) Agrège et valide les lignes (quantités > 0, au moins un article)
    2) Verrouille les produits référencés (ordre croissant des ids)
    3) Réserve chaque ligne; le premier InsufficientStock annule tout
    4) Recalcule les totaux depuis les prix en base; un écart avec declaredTotal est journalisé
    5) Persiste la commande (pending), ses lignes et l'historique initial
    Toute exception avant le commit annule la transaction, stock compris.
    """
    quantities = pricing.aggregate_quantities(req.items_payload())
    extras = _line_extras(req)

    with transaction(db):
        products = ledger.lock_products(db, quantities.keys())
        for product_id in sorted(quantities):
            product = products.get(product_id)
            if product is None or product.status != PRODUCT_ACTIVE:
                raise ProductUnavailable(product_id)

        for product_id in sorted(quantities):
            ledger.reserve(db, product_id, quantities[product_id])

        quote = pricing.price_order(products, quantities)
        order_number = repository.generate_order_number()
        pricing.check_declared_total(quote, req.declared_total, order_ref=order_number)

        items: List[Dict[str, Any]] = []
        for line in quote.lines:
            extra = extras.get(line.product_id, {})
            items.append({
                "product_id": line.product_id,
                "product_name": line.name,
                "product_image": products[line.product_id].first_image or extra.get("image"),
                "price": line.unit_price,
                "quantity": line.quantity,
                "color": extra.get("color"),
                "offer": extra.get("offer"),
            })

        order = repository.create_with_items(
            db,
            {
                "order_number": order_number,
                "status": OrderStatus.PENDING.value,
                "subtotal": quote.subtotal,
                "shipping": quote.shipping,
                "total": quote.total,
                "customer_name": req.customer_name,
                "customer_phone": req.customer_phone,
                "customer_address": req.customer_address,
                "customer_city": req.customer_city,
                "customer_district": req.customer_district,
                "payment_method": req.payment_method.value,
                "user_id": user_id,
                "price_flagged": quote.flagged,
            },
            items,
        )
        data = serialize_order(order)

    logger.info(
        "Order created number=%s total=%s items=%s method=%s",
        data["orderNumber"], data["total"], len(items), data["paymentMethod"],
    )
    return data


def get_order(db: Session, order_id: int) -> Dict[str, Any]:
    with transaction(db):
        order = repository.get_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return serialize_order(order)


def list_orders(
    db: Session,
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """Liste paginée: {data, pagination{page, limit, total, totalPages}}. user_id=None: toutes les commandes (admin)."""
    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    with transaction(db):
        orders, total = repository.list_orders(
            db, statuses=statuses, user_id=user_id, search=search, page=page, limit=limit
        )
        data = [serialize_order(o) for o in orders]
    return {
        "data": data,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


def get_tracking(db: Session, order_id: int) -> Dict[str, Any]:
    with transaction(db):
        order = repository.get_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        history = [serialize_history(h) for h in repository.list_history(db, order_id)]
        return {"order": serialize_order(order), "history": history}


def update_status(db: Session, order_id: int, new_status: str, note: Optional[str] = None) -> Dict[str, Any]:
    """
    Changement de statut (admin). Retourne la commande et le bilan de restitution éventuel.
    - changed=False si le statut demandé est déjà le statut courant (aucun effet de bord).
    """
    with transaction(db):
        result = lifecycle.apply_transition(db, order_id, new_status, note)
        data = serialize_order(result.order)
    return {
        "order": data,
        "previousStatus": result.previous_status,
        "changed": result.changed,
        "stockRelease": result.release_report.as_dict() if result.release_report else None,
    }
