from dotenv import load_dotenv
load_dotenv()

import os

ENV = os.getenv("ENV", "development").lower()
IS_PRODUCTION = ENV == "production"

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/app.db")
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "12"))

APP_NAME = os.getenv("APP_NAME", "WorkflowDebugger")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_STARTER_PRICE_ID = os.getenv("STRIPE_STARTER_PRICE_ID") or "price_starter"
STRIPE_PRO_PRICE_ID = os.getenv("STRIPE_PRO_PRICE_ID") or "price_pro"
STRIPE_ENTERPRISE_PRICE_ID = os.getenv("STRIPE_ENTERPRISE_PRICE_ID") or "price_enterprise"
STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))
TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "14"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "noreply@example.com")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json" if IS_PRODUCTION else "console").lower()

REQUIRED_IN_PRODUCTION = ("DATABASE_URL", "JWT_SECRET", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def plan_price_ids() -> dict:
    """Plans offered at checkout, keyed by the id the client sends."""
    return {
        "starter": STRIPE_STARTER_PRICE_ID,
        "pro": STRIPE_PRO_PRICE_ID,
    }


def validate():
    """Fail fast on missing secrets when running in production."""
    if not IS_PRODUCTION:
        return
    missing = [key for key in REQUIRED_IN_PRODUCTION if not os.getenv(key)]
    if missing:
        raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")
