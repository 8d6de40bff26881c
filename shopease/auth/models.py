"""Résultat normalisé des appels Supabase Auth (GoTrue) et rôle applicatif."""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"

@dataclass
class AuthResponse:
    success: bool
    user: Optional[Dict[str, Any]] = None
    session: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def access_token(self) -> Optional[str]:
        return (self.session or {}).get("access_token")

def determine_role(metadata: Optional[Dict[str, Any]]) -> str:
    """Le rôle admin est posé dans user_metadata.role côté Supabase; tout le reste est client."""
    role = str((metadata or {}).get("role", "")).strip().lower()
    return ROLE_ADMIN if role == ROLE_ADMIN else ROLE_USER

def build_user_dict(user: Any) -> Dict[str, Any]:
    metadata = getattr(user, "user_metadata", None) or {}
    return {
        "id": getattr(user, "id", None),
        "email": getattr(user, "email", None),
        "metadata": metadata,
        "role": determine_role(metadata),
    }

def make_auth_response(res: Any, fallback_error: str = "Identifiants invalides") -> AuthResponse:
    """Succès uniquement si GoTrue a ouvert une session avec un access_token."""
    session = getattr(res, "session", None)
    token = getattr(session, "access_token", None)
    if not token:
        return AuthResponse(False, error=fallback_error)
    return AuthResponse(
        True,
        user=build_user_dict(getattr(res, "user", None)),
        session={"access_token": token, "refresh_token": getattr(session, "refresh_token", None)},
    )

def handle_exception(action: str, e: Exception) -> AuthResponse:
    # Le détail reste dans les logs, jamais dans la réponse
    logger.exception("Erreur %s", action)
    return AuthResponse(False, error=f"Erreur {action}")
