# module shopease.admin.service
"""Rapports admin: commandes annulées/échouées/expirées, impact des expirations de paiement, statistiques."""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict
import logging

from sqlalchemy.orm import Session

from shopease.admin import repository as admin_repository
from shopease.infra.database import transaction, utcnow
from shopease.orders import repository as orders_repo
from shopease.orders.models import OrderStatus

logger = logging.getLogger(__name__)

CLOSED_STATUSES = [OrderStatus.CANCELLED.value, OrderStatus.FAILED.value, OrderStatus.EXPIRED.value]


def list_cancelled_orders(db: Session, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Commandes cancelled/failed/expired avec la raison (note de la dernière transition)."""
    page = max(1, page)
    limit = min(100, max(1, limit))
    with transaction(db):
        rows, total = admin_repository.fetch_orders_with_item_counts(db, CLOSED_STATUSES, limit, (page - 1) * limit)
        data = []
        for order, item_count, total_items in rows:
            last = orders_repo.last_history_note(db, order.id)
            data.append({
                "id": order.id,
                "orderNumber": order.order_number,
                "status": order.status,
                "total": float(order.total),
                "customerName": order.customer_name,
                "customerPhone": order.customer_phone,
                "paymentMethod": order.payment_method,
                "itemCount": item_count,
                "totalItems": int(total_items),
                "reason": (last.note if last and last.note else "Raison inconnue"),
                "closedAt": (last.created_at if last else order.updated_at).isoformat(),
            })
    return {
        "data": data,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


def timeout_impact_report(db: Session, days: int = 30) -> Dict[str, Any]:
    """Commandes perdues par expiration du paiement: totaux, répartition par moyen de paiement, tendance."""
    with transaction(db):
        rows = admin_repository.fetch_expired_orders(db)
        trend = admin_repository.expired_trend_since(db, utcnow() - timedelta(days=days))

    lost_revenue = Decimal("0.00")
    lost_items = 0
    by_method: Dict[str, Dict[str, Any]] = {}
    for order, items in rows:
        lost_revenue += Decimal(order.total)
        lost_items += int(items)
        bucket = by_method.setdefault(order.payment_method or "Unknown", {"count": 0, "revenue": 0.0})
        bucket["count"] += 1
        bucket["revenue"] = round(bucket["revenue"] + float(order.total), 2)

    count = len(rows)
    return {
        "summary": {
            "totalTimeoutOrders": count,
            "totalLostRevenue": round(float(lost_revenue), 2),
            "totalLostItems": lost_items,
            "averageOrderValue": round(float(lost_revenue) / count, 2) if count else 0.0,
        },
        "byPaymentMethod": by_method,
        "trend": {"days": days, "data": trend},
    }


def get_stats(db: Session) -> Dict[str, Any]:
    with transaction(db):
        per_status = orders_repo.count_by_status(db)
        revenue = orders_repo.delivered_revenue(db)
        products = admin_repository.count_products(db)
    stats: Dict[str, Any] = {f"{s.value}Orders": per_status.get(s.value, 0) for s in OrderStatus}
    stats["totalOrders"] = sum(per_status.values())
    stats["totalProducts"] = products
    stats["totalRevenue"] = float(revenue or 0)
    return stats
