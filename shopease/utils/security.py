"""
Identité des appelants (jeton Supabase en Bearer ou cookie de session).
- get_current_user: 401 si absent ou invalide.
- get_optional_user: les commandes invitées passent sans jeton.
- require_admin / is_admin: rôle porté par les métadonnées utilisateur.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.responses import Response

from shopease import config

logger = logging.getLogger(__name__)

COOKIE_NAME = "sb_access"
SESSION_MAX_AGE = 60 * 60

def set_session_cookie(response: Response, access_token: str) -> None:
    response.set_cookie(
        key=COOKIE_NAME,
        value=access_token,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="Lax",
        max_age=SESSION_MAX_AGE,
        path="/",
    )

def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(COOKIE_NAME, path="/")

def _token_from_request(request: Request) -> Optional[str]:
    # Bearer prioritaire (front mobile), cookie pour le web
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:].strip():
        return auth_header[7:].strip()
    return request.cookies.get(COOKIE_NAME)

def get_current_user(request: Request) -> Dict[str, Any]:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Non authentifié")

    # Import tardif: auth.service dépend du client Supabase
    from shopease.auth.service import get_user_from_token
    try:
        user = get_user_from_token(token)
    except Exception as e:
        logger.info("Token rejected on %s: %s", request.url.path, type(e).__name__)
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")
    if not user.get("id"):
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")
    return user

def get_optional_user(request: Request) -> Optional[Dict[str, Any]]:
    """None sans jeton; un jeton fourni mais invalide reste une 401."""
    if not _token_from_request(request):
        return None
    return get_current_user(request)

def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == "admin"

def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user

def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Accès réservé aux administrateurs")
    return user
