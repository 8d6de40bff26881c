"""
Tâche de fond d'expiration des paiements (démarrée par le lifespan).
Exécute payments.service.expire_stale_sessions toutes les CLEANUP_INTERVAL_MINUTES,
dans le threadpool (SQLAlchemy synchrone).
"""
import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from shopease import config
from shopease.payments import service as payments_service

logger = logging.getLogger(__name__)


async def run_expiry_sweeper(interval_seconds: float = None, stop_event: asyncio.Event = None) -> None:
    interval = interval_seconds or config.CLEANUP_INTERVAL_MINUTES * 60
    stop_event = stop_event or asyncio.Event()
    logger.info("Payment expiry sweeper started (every %ss)", interval)
    while not stop_event.is_set():
        try:
            await run_in_threadpool(payments_service.expire_stale_sessions)
        except Exception:
            logger.exception("Payment expiry sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Payment expiry sweeper stopped")


def start_sweeper(interval_seconds: float = None):
    """Retourne (task, stop_event); le lifespan positionne stop_event puis attend la tâche à l'arrêt."""
    stop_event = asyncio.Event()
    task = asyncio.create_task(run_expiry_sweeper(interval_seconds, stop_event))
    return task, stop_event
