from typing import Any, Dict
from shopease.auth.models import AuthResponse, determine_role, make_auth_response, handle_exception
from shopease.auth import repository

# --- Cas d'usage Auth exposés ---

def login(email: str, password: str) -> AuthResponse:
    """Connexion:
    - Délègue à supabase.auth.sign_in_with_password via repository
    - Normalise la réponse en AuthResponse
    """
    try:
        email = (email or "").strip()
        res = repository.auth_sign_in_password(email, password)
        return make_auth_response(res, fallback_error="Identifiants invalides ou email non confirmé")
    except Exception as e:
        return handle_exception("sign_in", e)

def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Normalise l'utilisateur GoTrue: {id, email, metadata, role, token}."""
    raw = repository.get_user_from_access_token(access_token)
    metadata = raw.get("user_metadata") or {}
    return {
        "id": raw.get("id"),
        "email": raw.get("email"),
        "metadata": metadata,
        "role": determine_role(metadata),
        "token": access_token,
    }
