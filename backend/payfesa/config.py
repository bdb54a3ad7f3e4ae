import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


class Config:
    # Base directory of the backend (one level above this `payfesa` package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")

    ENV_NAME = (os.getenv("PAYFESA_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    ACCESS_TOKEN_TTL_SECONDS = _int_env("ACCESS_TOKEN_TTL_SECONDS", 7 * 24 * 3600)

    _default_sqlite_path = os.path.join(INSTANCE_DIR, "payfesa.db").replace("\\", "/")
    _db_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    STORE_STATEMENT_TIMEOUT_MS = _int_env("STORE_STATEMENT_TIMEOUT_MS", 15000)

    # CORS: comma-separated origins for web builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Payment gateway
    PAYCHANGU_SECRET_KEY = os.getenv("PAYCHANGU_SECRET_KEY", "").strip()
    PAYCHANGU_BASE_URL = os.getenv("PAYCHANGU_BASE_URL", "https://api.paychangu.com").rstrip("/")
    PAYCHANGU_WEBHOOK_SECRET = os.getenv("PAYCHANGU_WEBHOOK_SECRET", "").strip()
    GATEWAY_TIMEOUT_SECONDS = _int_env("GATEWAY_TIMEOUT_SECONDS", 20)
    PAYOUT_CURRENCY = os.getenv("PAYOUT_CURRENCY", "MWK")

    # Settlement
    PAYOUT_CUTOFF_TIME = os.getenv("PAYOUT_CUTOFF_TIME", "17:00:00")
    SETTLEMENT_MAX_WORKERS = _int_env("SETTLEMENT_MAX_WORKERS", 1)
    INSTANT_PAYOUT_FEE = _int_env("INSTANT_PAYOUT_FEE", 1500)
    PLATFORM_FEE_RATE = os.getenv("PLATFORM_FEE_RATE", "0.10")
    RESERVE_FEE_RATE = os.getenv("RESERVE_FEE_RATE", "0.01")
    SAFETY_FEE_RATE = os.getenv("SAFETY_FEE_RATE", "0")

    # Background jobs (APScheduler); off unless explicitly enabled
    SETTLEMENT_SCHEDULER_ENABLED = (os.getenv("SETTLEMENT_SCHEDULER_ENABLED", "0") or "0").strip() == "1"
    SETTLEMENT_TIMEZONE = os.getenv("SETTLEMENT_TIMEZONE", "Africa/Blantyre")
    VERIFY_INTERVAL_MINUTES = _int_env("VERIFY_INTERVAL_MINUTES", 15)
    VERIFY_OLDER_THAN_MINUTES = _int_env("VERIFY_OLDER_THAN_MINUTES", 15)

    # Notifications: in-app rows are always queued; push relay is optional
    PUSH_NOTIFY_URL = os.getenv("PUSH_NOTIFY_URL", "").strip()
    PUSH_NOTIFY_TIMEOUT_SECONDS = _int_env("PUSH_NOTIFY_TIMEOUT_SECONDS", 10)
