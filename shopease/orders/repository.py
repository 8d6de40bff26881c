"""
Order Store: accès aux données 'orders', 'order_items', 'order_status_history'.
- Les écritures s'exécutent dans la transaction de l'appelant (pas de commit ici).
- Les lectures de liste/rapports sont utilisées par l'admin.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import random

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from shopease.infra.database import utcnow
from shopease.orders.models import Order, OrderItem, OrderStatusHistory


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Numéro lisible: ORD-YYYYMMDD-NNNNNN (6 chiffres aléatoires)."""
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{random.randint(100000, 999999)}"


def create_with_items(db: Session, order_fields: Dict[str, Any], items: List[Dict[str, Any]]) -> Order:
    """
    Insère la commande et ses lignes dans la transaction courante.
    - order_fields: colonnes Order (totaux déjà calculés côté serveur)
    - items: [{product_id, product_name, product_image, price, quantity, color, offer}]
    - Ajoute l'entrée d'historique initiale ("Commande créée").
    """
    order_number = order_fields.pop("order_number", None) or generate_order_number()
    while db.execute(select(Order.id).where(Order.order_number == order_number)).first():
        order_number = generate_order_number()
    order = Order(order_number=order_number, **order_fields)
    order.items = [OrderItem(**item) for item in items]
    order.history = [OrderStatusHistory(status=order.status, note="Commande créée")]
    db.add(order)
    db.flush()
    return order


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.get(Order, order_id, populate_existing=True)


def get_order_for_update(db: Session, order_id: int) -> Optional[Order]:
    """Verrouille la ligne commande (sérialise les transitions concurrentes d'une même commande)."""
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().first()


def get_order_by_number(db: Session, order_number: str) -> Optional[Order]:
    return db.execute(select(Order).where(Order.order_number == order_number)).scalars().first()


def update_status(db: Session, order: Order, new_status: str, note: Optional[str] = None) -> None:
    order.status = new_status
    order.updated_at = utcnow()
    db.add(OrderStatusHistory(order_id=order.id, status=new_status, note=note))
    db.flush()


def list_history(db: Session, order_id: int) -> List[OrderStatusHistory]:
    stmt = select(OrderStatusHistory).where(OrderStatusHistory.order_id == order_id).order_by(OrderStatusHistory.id)
    return list(db.execute(stmt).scalars())


def last_history_note(db: Session, order_id: int) -> Optional[OrderStatusHistory]:
    stmt = (
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def list_orders(
    db: Session,
    *,
    statuses: Optional[List[str]] = None,
    user_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Order], int]:
    """
    Liste paginée des commandes (plus récentes d'abord) et total pour la pagination.
    - search: numéro de commande, nom ou téléphone client (LIKE)
    """
    conditions = []
    if statuses:
        conditions.append(Order.status.in_(statuses))
    if user_id:
        conditions.append(Order.user_id == user_id)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            Order.order_number.like(pattern),
            Order.customer_name.like(pattern),
            Order.customer_phone.like(pattern),
        ))
    total = db.execute(select(func.count(Order.id)).where(*conditions)).scalar_one()
    stmt = (
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return list(db.execute(stmt).scalars()), total


def count_by_status(db: Session) -> Dict[str, int]:
    rows = db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all()
    return {status: count for status, count in rows}


def delivered_revenue(db: Session):
    return db.execute(select(func.coalesce(func.sum(Order.total), 0)).where(Order.status == "delivered")).scalar_one()
