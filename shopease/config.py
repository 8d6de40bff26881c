# shopease.config
from pathlib import Path
from decimal import Decimal
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend ShopEase.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (base de données, Supabase, Bakong)
- Paramètres métier: expiration des sessions de paiement, frais de port, politique d'écart de prix
- Budgets de rate limiting par classe de route
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _int_env(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name)) or default)
    except ValueError:
        return default

# Base de données relationnelle (verrous de lignes)
DATABASE_URL = _clean_env(os.getenv("DATABASE_URL") or "sqlite:///./shopease.db")
DB_LOCK_TIMEOUT_MS = _int_env("DB_LOCK_TIMEOUT_MS", 5000)

# Supabase: utilisé uniquement pour l'authentification (GoTrue)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Cookies / CORS / hôtes
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Passerelle Bakong (KHQR)
BAKONG_ACCESS_TOKEN = _clean_env(os.getenv("BAKONG_ACCESS_TOKEN") or os.getenv("BAKONG_TOKEN") or "")
BAKONG_MERCHANT_ID = _clean_env(os.getenv("BAKONG_MERCHANT_ID") or "shopease@aclb")
BAKONG_MERCHANT_NAME = _clean_env(os.getenv("BAKONG_MERCHANT_NAME") or "ShopEase")
BAKONG_MERCHANT_CITY = _clean_env(os.getenv("BAKONG_MERCHANT_CITY") or "Phnom Penh")
BAKONG_BASE_URL = _clean_env(os.getenv("BAKONG_BASE_URL") or "https://api-bakong.nbc.gov.kh/v1").rstrip("/")
BAKONG_WEBHOOK_SECRET = _clean_env(os.getenv("BAKONG_WEBHOOK_SECRET") or os.getenv("BAKONG_API_SECRET") or "")
BAKONG_TIMEOUT_SECONDS = float(_clean_env(os.getenv("BAKONG_TIMEOUT_SECONDS")) or 10)
USD_TO_KHR_RATE = _int_env("USD_TO_KHR_RATE", 4000)

# Cycle de vie des paiements
PAYMENT_SESSION_MINUTES = _int_env("PAYMENT_SESSION_MINUTES", 15)
CLEANUP_INTERVAL_MINUTES = _int_env("CLEANUP_INTERVAL_MINUTES", 5)

# Tarification
SHIPPING_FEE = Decimal(_clean_env(os.getenv("SHIPPING_FEE")) or "0.00")
PRICE_MISMATCH_EPSILON = Decimal(_clean_env(os.getenv("PRICE_MISMATCH_EPSILON")) or "0.01")
# "log": simple avertissement; "flag": avertissement + commande marquée pour revue manuelle
PRICE_MISMATCH_POLICY = (_clean_env(os.getenv("PRICE_MISMATCH_POLICY")) or "log").lower()

# Rate limiting: budgets "times/seconds" par classe de route
RATE_LIMIT_DEFAULTS = {
    "orders": "5/60",
    "polling": "20/60",
    "auth": "10/900",
    "general": "100/60",
}
RATE_LIMIT_REDIS_URL = _clean_env(os.getenv("RATE_LIMIT_REDIS_URL") or "")

def rate_limit_budgets() -> dict:
    """
    Retourne {classe: (times, seconds)} en lisant RATE_LIMIT_<CLASSE> (ex: RATE_LIMIT_ORDERS=5/60).
    Les valeurs mal formées retombent sur le défaut.
    """
    budgets = {}
    for name, default in RATE_LIMIT_DEFAULTS.items():
        raw = _clean_env(os.getenv(f"RATE_LIMIT_{name.upper()}") or default)
        try:
            times, seconds = (int(p) for p in raw.split("/", 1))
        except ValueError:
            times, seconds = (int(p) for p in default.split("/", 1))
        budgets[name] = (times, seconds)
    return budgets
