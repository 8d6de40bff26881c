import logging
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from shopease.infra.database import get_engine
from shopease.utils.rate_limit import rate_limit_health_info

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/database")
def health_database():
    engine = get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"ok": True, "dialect": engine.dialect.name}
    except Exception as e:
        logger.exception("Health check database failed")
        return JSONResponse(status_code=503, content={"ok": False, "dialect": engine.dialect.name, "error": type(e).__name__})

@router.get("/rate-limit")
def health_rate_limit(request: Request):
    return rate_limit_health_info(request)
