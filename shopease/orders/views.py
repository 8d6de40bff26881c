# module shopease.orders.views

"""Endpoints de l'user story Commandes.
- POST /orders: transaction de création (invités acceptés, classe de rate limit "orders").
- GET /orders: liste paginée (admin: toutes, utilisateur: les siennes).
- GET /orders/{id}, GET /orders/{id}/tracking: propriétaire ou admin.
- PATCH /orders/{id}/status: admin, machine d'états (404 inconnue, 409 transition interdite).
Les erreurs métier (ShopError) remontent aux gestionnaires de app_setup/exceptions.py.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shopease.errors import ShopError
from shopease.infra.database import get_db
from shopease.orders import service as orders_service
from shopease.orders.schemas import CreateOrderRequest, StatusUpdateRequest
from shopease.utils.rate_limit import rate_limit
from shopease.utils.security import get_optional_user, is_admin, require_admin, require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["Orders API"])


def _ensure_access(order: Dict[str, Any], user: Dict[str, Any]) -> None:
    if is_admin(user):
        return
    if not order.get("userId") or order.get("userId") != user.get("id"):
        raise HTTPException(status_code=403, detail="Accès interdit à cette commande")


@router.post("", status_code=201, dependencies=[Depends(rate_limit("orders"))])
def api_create_order(
    req: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
):
    """Crée une commande.
    - Le stock est vérifié et réservé sous verrou, les totaux sont recalculés côté serveur.
    - 400 stock insuffisant / produit inconnu / payload invalide, 429 rate limit, 503 conflit de verrou.
    """
    try:
        return orders_service.create_order(db, req, user_id=(user or {}).get("id"))
    except (HTTPException, ShopError):
        raise
    except Exception:
        logger.exception("Erreur api_create_order")
        raise HTTPException(status_code=500, detail="Erreur lors de la création de la commande")


@router.get("")
def api_list_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: Dict[str, Any] = Depends(require_user),
):
    """Liste paginée; un utilisateur non admin ne voit que ses propres commandes."""
    user_id = None if is_admin(user) else user.get("id")
    return orders_service.list_orders(db, user_id=user_id, status=status, search=search, page=page, limit=limit)


@router.get("/{order_id}")
def api_get_order(order_id: int, db: Session = Depends(get_db), user: Dict[str, Any] = Depends(require_user)):
    order = orders_service.get_order(db, order_id)
    _ensure_access(order, user)
    return order


@router.get("/{order_id}/tracking")
def api_order_tracking(order_id: int, db: Session = Depends(get_db), user: Dict[str, Any] = Depends(require_user)):
    """Commande + historique des statuts (ordre chronologique)."""
    tracking = orders_service.get_tracking(db, order_id)
    _ensure_access(tracking["order"], user)
    return tracking


@router.patch("/{order_id}/status")
def api_update_status(
    order_id: int,
    req: StatusUpdateRequest,
    db: Session = Depends(get_db),
    admin: Dict[str, Any] = Depends(require_admin),
):
    """Change le statut (admin). Une annulation restitue le stock une seule fois."""
    try:
        return orders_service.update_status(db, order_id, req.status.value, note=req.note)
    except (HTTPException, ShopError):
        raise
    except Exception:
        logger.exception("Erreur api_update_status order_id=%s", order_id)
        raise HTTPException(status_code=500, detail="Erreur lors de la mise à jour du statut")
