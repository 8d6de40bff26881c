"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Base de données: configure l'engine et crée les tables manquantes.
- Rate limiting: construit le RateLimiter (Redis, fakeredis en tests, ou mémoire) dans app.state.
- Expiration des paiements: démarre la tâche de fond de balayage.
- Variables d'environnement supportées:
  - DISABLE_RATE_LIMIT_FOR_TESTS=1: limiteur présent mais désactivé
  - USE_FAKE_REDIS_FOR_TESTS=1: compteurs dans fakeredis (tests)
  - RATE_LIMIT_REDIS_URL: compteurs partagés dans Redis (sinon mémoire du processus)
  - DISABLE_EXPIRY_SWEEPER=1: pas de tâche de fond (l'expiration reste paresseuse)
"""
import os
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import redis

from shopease import config
from shopease.infra import database
from shopease.payments.sweeper import start_sweeper
from shopease.utils.rate_limit import MemoryBackend, RateLimiter, RedisBackend

try:
    from fakeredis import FakeRedis  # tests only
except ImportError:
    FakeRedis = None

def build_rate_limiter() -> RateLimiter:
    """
    Choisit le backend des compteurs.
    - En cas d'échec de Redis, repli sur la mémoire du processus (les limites restent appliquées).
    """
    logger = logging.getLogger("uvicorn.error")
    if os.getenv("DISABLE_RATE_LIMIT_FOR_TESTS") == "1":
        logger.info("Rate limiting disabled by DISABLE_RATE_LIMIT_FOR_TESTS")
        return RateLimiter(MemoryBackend(), enabled=False)

    if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
        if not FakeRedis:
            raise RuntimeError("USE_FAKE_REDIS_FOR_TESTS=1 mais fakeredis n'est pas installé.")
        logger.info("Rate limiting enabled (fakeredis)")
        return RateLimiter(RedisBackend(FakeRedis()))

    redis_url = config.RATE_LIMIT_REDIS_URL
    if redis_url:
        try:
            client = redis.from_url(redis_url)
            logger.info("Rate limiting enabled (redis)")
            return RateLimiter(RedisBackend(client, url=redis_url))
        except Exception as e:
            logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)

    logger.info("Rate limiting enabled (memory)")
    return RateLimiter(MemoryBackend())

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Prépare la base, le limiteur et le balayage d'expiration; les libère à l'arrêt.
    - Un limiteur déjà injecté dans app.state (tests) est conservé.
    """
    logger = logging.getLogger("uvicorn.error")
    if not getattr(app.state, "database_ready", False):
        database.configure()
        database.create_all()
        app.state.database_ready = True

    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = build_rate_limiter()

    sweeper = None
    if os.getenv("DISABLE_EXPIRY_SWEEPER") != "1":
        sweeper = start_sweeper()
        logger.info("Payment expiry sweeper scheduled every %s min", config.CLEANUP_INTERVAL_MINUTES)

    try:
        yield
    finally:
        if sweeper:
            task, stop_event = sweeper
            stop_event.set()
            await task
        close = getattr(app.state.rate_limiter.backend, "close", None)
        if close is not None:
            try:
                close()
            except Exception:
                logger.warning("Rate limit redis client close failed", exc_info=True)
