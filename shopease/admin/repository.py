# module shopease.admin.repository
"""Requêtes de reporting admin (lecture seule)."""
from datetime import datetime
from typing import Any, Dict, List, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shopease.inventory.models import Product
from shopease.orders.models import Order, OrderItem


def count_table_rows(db: Session, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def count_products(db: Session) -> int:
    return count_table_rows(db, Product)


def fetch_orders_with_item_counts(
    db: Session, statuses: List[str], limit: int, offset: int
) -> Tuple[List[Tuple[Order, int, int]], int]:
    """[(order, itemCount, totalItems)] triés par dernière mise à jour, et le total."""
    total = db.execute(select(func.count(Order.id)).where(Order.status.in_(statuses))).scalar_one()
    stmt = (
        select(Order, func.count(OrderItem.id), func.coalesce(func.sum(OrderItem.quantity), 0))
        .outerjoin(OrderItem, OrderItem.order_id == Order.id)
        .where(Order.status.in_(statuses))
        .group_by(Order.id)
        .order_by(Order.updated_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return [(row[0], row[1], row[2]) for row in db.execute(stmt).all()], total


def fetch_expired_orders(db: Session) -> List[Tuple[Order, int]]:
    """Commandes perdues par expiration du paiement, avec le nombre d'articles."""
    stmt = (
        select(Order, func.coalesce(func.sum(OrderItem.quantity), 0))
        .outerjoin(OrderItem, OrderItem.order_id == Order.id)
        .where(Order.status == "expired")
        .group_by(Order.id)
        .order_by(Order.created_at.desc())
    )
    return [(row[0], row[1]) for row in db.execute(stmt).all()]


def expired_trend_since(db: Session, since: datetime) -> List[Dict[str, Any]]:
    day = func.date(Order.created_at)
    stmt = (
        select(day, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .where(Order.status == "expired", Order.created_at >= since)
        .group_by(day)
        .order_by(day.desc())
    )
    return [
        {"date": str(d), "orderCount": count, "revenue": float(revenue or 0)}
        for d, count, revenue in db.execute(stmt).all()
    ]
