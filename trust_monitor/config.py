# trust_monitor/config.py
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


class BaseConfig:
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

    # --- DB ---
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "postgresql+psycopg2://app_user:app_pass@db:5432/app_db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # --- Chain ---
    WEB3_PROVIDER_URI = os.environ.get("WEB3_PROVIDER_URI")
    WEB3_USE_POA = _env_bool("WEB3_USE_POA")
    ESCROW_ADDRESS = os.environ.get("ESCROW_ADDRESS")

    # --- Monitor ---
    MARKETPLACE_API_URL = os.environ.get("MARKETPLACE_API_URL", "http://localhost:8080")
    AUDIT_ADMIN_KEY = os.environ.get("AUDIT_ADMIN_KEY")
    MONITOR_INTERVAL_SECONDS = _env_int("AUDIT_INTERVAL_SECONDS", 30)
    MONITOR_RECONCILE_EVERY_SECONDS = _env_int("MONITOR_RECONCILE_EVERY_SECONDS", 300)
    MONITOR_FRAUD_EVERY_SECONDS = _env_int("MONITOR_FRAUD_EVERY_SECONDS", 900)
    MONITOR_AUTOSTART = _env_bool("MONITOR_AUTOSTART")
    MONITOR_DRIVER = os.environ.get("MONITOR_DRIVER", "thread")
    MONITOR_LOCK_TIMEOUT_SECONDS = _env_int("MONITOR_LOCK_TIMEOUT_SECONDS", 600)
    AUDIT_LOG_RETENTION_DAYS = _env_int("AUDIT_LOG_RETENTION_DAYS", 30)

    # --- Deep scan (pago x402) ---
    PLATFORM_RECEIVER_WALLET = os.environ.get("PLATFORM_RECEIVER_WALLET")
    DEEP_SCAN_TOKEN = os.environ.get("DEEP_SCAN_TOKEN", "USDC")
    DEEP_SCAN_PRICE = os.environ.get("DEEP_SCAN_PRICE", "0.05")
    DEEP_SCAN_MIN_VALUE_WEI = _env_int("DEEP_SCAN_MIN_VALUE_WEI", 20_000_000_000_000_000)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"


class TestingConfig(BaseConfig):
    TESTING = True
    ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    AUDIT_ADMIN_KEY = "test-admin-key"
    MONITOR_AUTOSTART = False
    PLATFORM_RECEIVER_WALLET = "0x1111111111111111111111111111111111111111"
    ESCROW_ADDRESS = "0x2222222222222222222222222222222222222222"
