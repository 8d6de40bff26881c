from fastapi import APIRouter, HTTPException, Depends, Response
from pydantic import BaseModel, EmailStr
from typing import Dict, Any

from shopease.utils.rate_limit import rate_limit
from shopease.utils.security import require_user, set_session_cookie, clear_session_cookie
from shopease.auth import service as auth_service

router = APIRouter(prefix="/auth", tags=["Auth API"])

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

@router.post("/login", dependencies=[Depends(rate_limit("auth"))])
def api_login(req: LoginRequest, response: Response):
    """Point d'entrée de connexion (API JSON).
    - Classe de rate limit "auth" (10 requêtes / 15 minutes par défaut).
    - Pose le cookie de session (sb_access) et retourne {access_token, token_type, user}.
    """
    result = auth_service.login(req.email, req.password)
    if not result.success:
        raise HTTPException(status_code=401, detail=result.error or "Identifiants invalides")
    if result.access_token:
        set_session_cookie(response, result.access_token)
    return {"access_token": result.access_token, "token_type": "bearer", "user": result.user}

@router.post("/logout")
def api_logout(response: Response):
    clear_session_cookie(response)
    return {"status": "ok"}

@router.get("/me")
def api_me(user: Dict[str, Any] = Depends(require_user)):
    """Retourne l'utilisateur courant (id, email, rôle, metadata)."""
    return {"id": user["id"], "email": user["email"], "role": user["role"], "metadata": user.get("metadata") or {}}
