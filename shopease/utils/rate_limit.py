"""
Admission control: compteurs à fenêtre fixe par (classe de route, identité client).
- Le limiteur est un objet construit explicitement (lifespan) et rangé dans app.state.rate_limiter.
- Compteurs tenus par la librairie limits (FixedWindowRateLimiter):
  stockage mémoire du processus, ou Redis partagé (fakeredis en tests).
- Dépassement: RateLimited -> 429 + Retry-After, avant toute logique métier.
"""
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse
import logging
import math
import time

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import RedisStorage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from shopease import config
from shopease.errors import RateLimited

logger = logging.getLogger(__name__)


class MemoryBackend:
    """Compteurs dans la mémoire du processus; les fenêtres échues sont purgées par limits."""
    name = "memory"

    def __init__(self):
        self.storage = storage_from_string("memory://")
        self.strategy = FixedWindowRateLimiter(self.storage)

    def tracked_keys(self) -> int:
        return len(self.storage.storage)

    def reset(self) -> None:
        self.storage.reset()


class RedisBackend:
    """Compteurs partagés entre workers, sur le pool de connexions du client Redis fourni."""
    name = "redis"

    def __init__(self, client, url: Optional[str] = None):
        self.client = client
        self.url = url
        self.storage = RedisStorage(url or "redis://localhost:6379", connection_pool=client.connection_pool)
        self.strategy = FixedWindowRateLimiter(self.storage)

    def reset(self) -> None:
        self.storage.reset()

    def close(self) -> None:
        self.client.close()


class RateLimiter:
    """Limiteur injecté: budgets {classe: (times, seconds)} et backend de compteurs."""

    def __init__(self, backend=None, budgets: Optional[Dict[str, Tuple[int, int]]] = None, enabled: bool = True):
        self.backend = backend or MemoryBackend()
        self.budgets = dict(budgets or config.rate_limit_budgets())
        self.enabled = enabled
        self._items = {name: RateLimitItemPerSecond(times, seconds) for name, (times, seconds) in self.budgets.items()}

    def check(self, route_class: str, identity: str) -> int:
        """Compte une requête; lève RateLimited si le budget de la fenêtre est dépassé. Retourne le restant."""
        if not self.enabled:
            return -1
        if route_class not in self._items:
            raise KeyError(f"Classe de rate limit inconnue: {route_class}")
        item = self._items[route_class]
        strategy = self.backend.strategy
        allowed = strategy.hit(item, route_class, identity)
        stats = strategy.get_window_stats(item, route_class, identity)
        if not allowed:
            retry_after = max(1, math.ceil(stats.reset_time - time.time()))
            logger.warning("Rate limit exceeded class=%s client=%s retry_after=%s", route_class, identity, retry_after)
            raise RateLimited(route_class, retry_after)
        return stats.remaining

    def info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "enabled": self.enabled,
            "backend": self.backend.name,
            "budgets": {k: {"times": t, "seconds": s} for k, (t, s) in self.budgets.items()},
        }
        url = getattr(self.backend, "url", None)
        if url:
            p = urlparse(url)
            info["redis"] = {"scheme": p.scheme, "host": p.hostname, "port": p.port}
        return info


def client_identity(request: Request) -> str:
    # request.client est déjà réécrit par ProxyHeadersMiddleware (X-Forwarded-For de confiance)
    return f"ip:{request.client.host if request.client else 'local'}"


def rate_limit(route_class: str):
    """Dépendance FastAPI: Depends(rate_limit("orders")). Synchrone: exécutée dans le threadpool (appels Redis bloquants)."""
    def _dep(request: Request) -> None:
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return
        limiter.check(route_class, client_identity(request))
    return _dep


def rate_limit_health_info(request: Request) -> Dict[str, Any]:
    limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return {"enabled": False, "ready": False, "backend": None}
    info = limiter.info()
    info["ready"] = limiter.backend.storage.check()
    return info
