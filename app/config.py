import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./field_booking.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Fernet key for stored processor tokens (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# Falls back to a key derived from SECRET_KEY
MP_ENCRYPTION_KEY = os.getenv("MP_ENCRYPTION_KEY")

# Frontend / public URLs used for redirects and processor callbacks
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:8000")

# Booking rules
HOLD_TTL_MINUTES = int(os.getenv("HOLD_TTL_MINUTES", "10"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SWEEPER_ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"
FIELD_CACHE_TTL_SECONDS = int(os.getenv("FIELD_CACHE_TTL_SECONDS", "30"))
BOOKING_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "America/Argentina/Buenos_Aires")
CURRENCY_ID = os.getenv("CURRENCY_ID", "ARS")

# Mercado Pago Configuration
MERCADOPAGO_API_URL = os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
MERCADOPAGO_CLIENT_ID = os.getenv("MERCADOPAGO_CLIENT_ID")
MERCADOPAGO_CLIENT_SECRET = os.getenv("MERCADOPAGO_CLIENT_SECRET")
# Installation-wide default credential, last resort after per-complex credentials
MP_ACCESS_TOKEN = os.getenv("MP_ACCESS_TOKEN")
MERCADOPAGO_WEBHOOK_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET")
MERCADOPAGO_TIMEOUT_SECONDS = float(os.getenv("MERCADOPAGO_TIMEOUT_SECONDS", "20"))
# Ordered credential sources: oauth (per-complex OAuth store), legacy (manual per-complex token), env (MP_ACCESS_TOKEN)
PAYMENT_CREDENTIAL_SOURCES = [
    s.strip()
    for s in os.getenv("PAYMENT_CREDENTIAL_SOURCES", "oauth,legacy,env").split(",")
    if s.strip()
]

# Outbound booking notifications (WhatsApp/email delivery lives behind this hook)
NOTIFICATIONS_WEBHOOK_URL = os.getenv("NOTIFICATIONS_WEBHOOK_URL")

# Redis: ARQ queue (booking event dispatch, expiry sweep) and the shared field cache
REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_SSL = os.getenv("REDIS_SSL", "false").lower() == "true"
