import os
from dotenv import dotenv_values

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Service identity: which side of the saga this process runs
    # subscriptions | payments | all (dev: both services in one process)
    SERVICE_ROLE = os.environ.get("SERVICE_ROLE", "all").lower()
    SERVICE_NAME = os.environ.get("SERVICE_NAME", "subflow")

    # Databases: each service owns its store exclusively
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///subscriptions.db"
    SQLALCHEMY_BINDS = {
        "payments": os.environ.get("PAYMENTS_DATABASE_URL") or _ENV_FALLBACK.get("PAYMENTS_DATABASE_URL") or "sqlite:///payments.db",
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Broker ---
    # memory:// keeps everything in-process; redis://host:6379/0 for real deployments
    BROKER_URL = os.getenv("BROKER_URL", "memory://")
    BROKER_REQUEST_TIMEOUT = float(os.getenv("BROKER_REQUEST_TIMEOUT", "5"))
    BROKER_WORKERS = int(os.getenv("BROKER_WORKERS", "8"))
    # Deliver in the publishing thread (tests, one-shot CLI runs)
    BROKER_SYNCHRONOUS = (os.getenv("BROKER_SYNCHRONOUS", "false").lower() == "true")

    # --- Billing ---
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
    TRIALS_ENABLED = (os.getenv("TRIALS_ENABLED", "false").lower() == "true")

    # Simulated gateway round-trip before the payment outcome is emitted
    PAYMENT_SIMULATION_DELAY = float(os.getenv("PAYMENT_SIMULATION_DELAY", "3"))

    # --- Webhook reconciliation ---
    WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
    WEBHOOK_RETRY_BACKOFF = float(os.getenv("WEBHOOK_RETRY_BACKOFF", "2"))
    WEBHOOK_DEDUPE_TTL = int(os.getenv("WEBHOOK_DEDUPE_TTL", "86400"))
    PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")

    # Plan replication intents older than this are swept/compensated
    PLAN_SYNC_STALE_SECONDS = int(os.getenv("PLAN_SYNC_STALE_SECONDS", "300"))

    # Cache backend for dedupe keys (memory:// or redis://)
    CACHE_URL = os.getenv("CACHE_URL", "memory://")

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_BINDS = {
        "payments": os.environ.get("TEST_PAYMENTS_DATABASE_URL", "sqlite:///:memory:"),
    }
    BROKER_URL = "memory://"
    BROKER_SYNCHRONOUS = True
    BROKER_REQUEST_TIMEOUT = 1.0
    PAYMENT_SIMULATION_DELAY = 0.0
    WEBHOOK_RETRY_BACKOFF = 0.0
    CACHE_URL = "memory://"
    PAYMENT_WEBHOOK_SECRET = "whsec_test"
    RATELIMIT_ENABLED = False

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
