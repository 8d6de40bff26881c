from typing import Any, Dict
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shopease.admin import service as admin_service
from shopease.infra.database import get_db
from shopease.utils.security import require_admin

# module shopease.admin.views
router = APIRouter(prefix="/admin", tags=["Admin"])

@router.get("/orders/cancelled")
def admin_cancelled_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: Dict[str, Any] = Depends(require_admin),
):
    """Commandes annulées, refusées ou expirées, avec la raison de clôture."""
    return admin_service.list_cancelled_orders(db, page=page, limit=limit)

@router.get("/orders/report/timeout-impact")
def admin_timeout_impact(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: Dict[str, Any] = Depends(require_admin),
):
    """Impact des expirations de paiement (commandes et chiffre d'affaires perdus)."""
    return admin_service.timeout_impact_report(db, days=days)

@router.get("/stats")
def admin_stats(db: Session = Depends(get_db), user: Dict[str, Any] = Depends(require_admin)):
    return admin_service.get_stats(db)
