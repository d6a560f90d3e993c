import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./venueos.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DB_SCHEMA_CHECK_ON_STARTUP = _get_bool("DB_SCHEMA_CHECK_ON_STARTUP", True)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    DEFAULT_TENANT_SLUG = os.getenv("DEFAULT_TENANT_SLUG", "anchor").strip().lower()
    DEFAULT_TENANT_NAME = os.getenv("DEFAULT_TENANT_NAME", "The Anchor").strip()
    DEFAULT_ACTOR_ROLE = os.getenv("DEFAULT_ACTOR_ROLE", "reception").strip().lower()
    VENUE_NAME = os.getenv("VENUE_NAME", "The Anchor").strip()
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000").strip()

    CACHE_ENABLED = _get_bool("CACHE_ENABLED", True)
    CACHE_DIR = os.getenv("CACHE_DIR", "./.cache").strip()
    CACHE_DEFAULT_TTL_SECONDS = _get_int("CACHE_DEFAULT_TTL_SECONDS", 300)
    IDEMPOTENCY_TTL_HOURS = _get_int("IDEMPOTENCY_TTL_HOURS", 24)

    AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "change-this-in-prod").strip()
    AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256").strip()
    AUTH_ISSUER = os.getenv("AUTH_ISSUER", "venueos").strip()
    AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "venueos-api").strip()

    MAINTENANCE_MODE = _get_bool("MAINTENANCE_MODE", False)
    MAINTENANCE_READ_ONLY = _get_bool("MAINTENANCE_READ_ONLY", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    OPS_TIMEOUT_LIKE_MS = _get_int("OPS_TIMEOUT_LIKE_MS", 1500)

    RETRY_MAX_ATTEMPTS = _get_int("RETRY_MAX_ATTEMPTS", 3)
    RETRY_BASE_DELAY_SECONDS = _get_float("RETRY_BASE_DELAY_SECONDS", 0.2)
    RETRY_MAX_DELAY_SECONDS = _get_float("RETRY_MAX_DELAY_SECONDS", 2.0)

    SMS_ENABLED = _get_bool("SMS_ENABLED", True)
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
    TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER", "").strip()
    TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com").strip()
    TWILIO_VALIDATE_WEBHOOKS = _get_bool("TWILIO_VALIDATE_WEBHOOKS", True)
    CONTACT_PHONE_NUMBER = os.getenv("CONTACT_PHONE_NUMBER", "").strip()

    SMS_SAFETY_GUARDS_ENABLED = _get_bool("SMS_SAFETY_GUARDS_ENABLED", True)
    SMS_SAFETY_GLOBAL_HOURLY_LIMIT = _get_int("SMS_SAFETY_GLOBAL_HOURLY_LIMIT", 120)
    SMS_SAFETY_RECIPIENT_HOURLY_LIMIT = _get_int("SMS_SAFETY_RECIPIENT_HOURLY_LIMIT", 3)
    SMS_SAFETY_RECIPIENT_DAILY_LIMIT = _get_int("SMS_SAFETY_RECIPIENT_DAILY_LIMIT", 8)
    SMS_SAFETY_IDEMPOTENCY_TTL_HOURS = _get_int("SMS_SAFETY_IDEMPOTENCY_TTL_HOURS", 24 * 14)

    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "").strip()
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "").strip()
    PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com").strip()
    PAYPAL_CURRENCY = os.getenv("PAYPAL_CURRENCY", "GBP").strip().upper()

    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip()
    OPENAI_MENU_MODEL = os.getenv("OPENAI_MENU_MODEL", "gpt-4o-mini").strip()

    PARKING_DEFAULT_CAPACITY = _get_int("PARKING_DEFAULT_CAPACITY", 10)
    PARKING_PAYMENT_WINDOW_DAYS = _get_int("PARKING_PAYMENT_WINDOW_DAYS", 7)

    LOYALTY_PROGRAM_NAME = os.getenv("LOYALTY_PROGRAM_NAME", "The Anchor VIP Club").strip()
    LOYALTY_CHECKIN_POINTS = _get_int("LOYALTY_CHECKIN_POINTS", 50)
    LOYALTY_WELCOME_BONUS = _get_int("LOYALTY_WELCOME_BONUS", 50)
    LOYALTY_QR_TTL_HOURS = _get_int("LOYALTY_QR_TTL_HOURS", 24)
    LOYALTY_REDEMPTION_TTL_HOURS = _get_int("LOYALTY_REDEMPTION_TTL_HOURS", 24)

    INVOICE_NUMBER_OFFSET = _get_int("INVOICE_NUMBER_OFFSET", 5000)


settings = Settings()
