# backend.config
from decimal import Decimal, InvalidOperation
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale du backend.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (base de données, Supabase, Stripe, passerelle hébergée)
- Expose les pages de redirection du parcours de paiement (liste des commandes, checkout)
- Paramètres commerciaux: devise par défaut, taux de taxe
Les services reçoivent ces valeurs en paramètres (valeurs par défaut = ce module),
la logique de réconciliation ne lit jamais os.environ directement.
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _flag(name: str, default: str = "false") -> bool:
    return _clean_env(os.getenv(name, default)).lower() in ("1", "true", "yes")

def _decimal(name: str, default: str) -> Decimal:
    try:
        return Decimal(_clean_env(os.getenv(name) or default))
    except InvalidOperation:
        return Decimal(default)

# Base de données (SQLAlchemy)
# - postgres:// (Heroku/Render) est normalisé vers le driver psycopg 3
DATABASE_URL = _clean_env(os.getenv("DATABASE_URL") or "sqlite:///./storefront.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql+psycopg://" + DATABASE_URL[len("postgres://"):]
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = "postgresql+psycopg://" + DATABASE_URL[len("postgresql://"):]
DB_CREATE_ALL = _flag("DB_CREATE_ALL")
DB_ECHO = _flag("DB_ECHO")

# Supabase: résolution de l'identité (auth.get_user)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Fournisseur A: Stripe Checkout
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")

# Fournisseur B: passerelle de paiement hébergée (formulaire tokenisé + API JSON)
GATEWAY_MERCHANT_ID = _clean_env(os.getenv("GATEWAY_MERCHANT_ID") or "")
GATEWAY_API_KEY = _clean_env(os.getenv("GATEWAY_API_KEY") or "")
GATEWAY_SECRET_KEY = _clean_env(os.getenv("GATEWAY_SECRET_KEY") or "")
GATEWAY_BASE_URL = _clean_env(os.getenv("GATEWAY_BASE_URL") or "https://api.gateway.example/v1").rstrip("/")
PROVIDER_TIMEOUT_SECONDS = float(_clean_env(os.getenv("PROVIDER_TIMEOUT_SECONDS") or "10") or 10)

# URL publique et pages du parcours de paiement
BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000").rstrip("/")
ORDERS_PAGE_PATH = _clean_env(os.getenv("ORDERS_PAGE_PATH") or "/dashboard/orders")
CHECKOUT_PAGE_PATH = _clean_env(os.getenv("CHECKOUT_PAGE_PATH") or "/checkout")
LOGIN_PAGE_PATH = _clean_env(os.getenv("LOGIN_PAGE_PATH") or "/auth/signin")

# Commerce
DEFAULT_CURRENCY = _clean_env(os.getenv("DEFAULT_CURRENCY") or "USD").upper()
TAX_RATE = _decimal("TAX_RATE", "0")
