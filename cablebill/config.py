import os

from dotenv import dotenv_values

# .env only backs up DATABASE_URL for local runs; real env vars always win
_DOTENV = dotenv_values(".env")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _DOTENV.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Recycle pooled connections so row locks never sit on a dead socket
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter: no global default, money routes opt in
    RATELIMIT_DEFAULT = None
    BILLING_WRITE_RATE_LIMIT = os.getenv("BILLING_WRITE_RATE_LIMIT", "60/minute")

    # Bearer tokens minted for operators/agents (see `flask tokens issue`)
    IDENTITY_TOKEN_SALT = os.getenv("IDENTITY_TOKEN_SALT", "identity-token-v1")
    IDENTITY_TOKEN_MAX_AGE = _env_int("IDENTITY_TOKEN_MAX_AGE", 60 * 60 * 12)

    DEFAULT_PAYMENT_METHOD = os.getenv("DEFAULT_PAYMENT_METHOD", "Cash")
    # Upper bound for ?limit= on ledger listings
    LEDGER_MAX_PAGE_SIZE = _env_int("LEDGER_MAX_PAGE_SIZE", 500)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # No fallbacks: create_app() refuses to boot without these
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": ProductionConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
