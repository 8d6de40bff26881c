from typing import Optional
from supabase import create_client, Client
from shopease import config

_supabase: Optional[Client] = None

def get_supabase() -> Client:
    """Client Supabase 'anon' partagé: utilisé uniquement pour l'authentification (GoTrue)."""
    global _supabase
    if not config.SUPABASE_URL or not config.SUPABASE_ANON:
        raise RuntimeError("SUPABASE_URL / SUPABASE_ANON_KEY manquants pour get_supabase()")
    if _supabase is None:
        _supabase = create_client(config.SUPABASE_URL, config.SUPABASE_ANON)
    return _supabase
