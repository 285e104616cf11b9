# booking_backend.config
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
- Normalise et expose les secrets/URLs (Supabase, Stripe, SMTP)
- Paramètres du moteur de paiement (timeouts passerelle, réutilisation des sessions, effets)
- Sécurité HTTP (cookies, CORS/hosts)
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
        return int(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

# Supabase: URL et clés (anon pour l'auth, service pour le ledger)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Cookies / CORS
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Stripe: clés, secret webhook et timeout des appels sortants
STRIPE_PUBLIC_KEY = _clean_env(os.getenv("STRIPE_PUBLIC_KEY") or os.getenv("STRIPE_PUBLISHABLE_KEY") or "")
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
STRIPE_WEBHOOK_TOLERANCE = _int_env("STRIPE_WEBHOOK_TOLERANCE", 300)
GATEWAY_TIMEOUT_SECONDS = _int_env("GATEWAY_TIMEOUT_SECONDS", 10)

# Redirections après paiement (page résultat côté frontend)
FRONTEND_URL = _clean_env(os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")
CHECKOUT_SUCCESS_PATH = os.getenv("CHECKOUT_SUCCESS_PATH", "/payment/success")
CHECKOUT_CANCEL_PATH = os.getenv("CHECKOUT_CANCEL_PATH", "/payment/failure")

# Une session 'pending' n'est réutilisée que si elle expire après now + marge
PENDING_SESSION_REUSE_MARGIN_SECONDS = _int_env("PENDING_SESSION_REUSE_MARGIN_SECONDS", 60)

# Effets post-paiement (email de confirmation, événement de commission)
SMTP_HOST = _clean_env(os.getenv("SMTP_HOST") or "")
SMTP_PORT = _int_env("SMTP_PORT", 587)
SMTP_USER = _clean_env(os.getenv("SMTP_USER") or "")
SMTP_PASSWORD = _clean_env(os.getenv("SMTP_PASSWORD") or "")
EMAIL_FROM = _clean_env(os.getenv("EMAIL_FROM") or SMTP_USER)
EFFECT_MAX_ATTEMPTS = _int_env("EFFECT_MAX_ATTEMPTS", 3)
# Reprise au démarrage des confirmations dont les effets n'ont pas été exécutés
EFFECT_RECOVERY_ON_STARTUP = (os.getenv("EFFECT_RECOVERY_ON_STARTUP", "true").lower() == "true")
EFFECT_RECOVERY_DELAY_SECONDS = _int_env("EFFECT_RECOVERY_DELAY_SECONDS", 300)
