import os
import logging
from logging.config import dictConfig

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

JSON_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _app_env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def _json_logging(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": "pythonjsonlogger.json.JsonFormatter", "fmt": JSON_LOG_FORMAT},
        },
        "handlers": {"stdout": {"class": "logging.StreamHandler", "formatter": "json"}},
        "root": {"level": level, "handlers": ["stdout"]},
        # ledger failures are WARNING; keep them even if root is raised
        "loggers": {"cablebill": {"level": level}},
    }


def init_logging(app):
    """JSON lines in staging/prod. Dev and tests keep Flask's console handler."""
    level = (app.config.get("LOG_LEVEL") or "INFO").upper()
    if _app_env() in ("staging", "production"):
        dictConfig(_json_logging(level))
    else:
        logging.getLogger("cablebill").setLevel(level)


def _scrub_auth(event, hint):
    # Bearer tokens are credentials; never ship them to Sentry
    headers = (event.get("request") or {}).get("headers") or {}
    for name in list(headers):
        if name.lower() == "authorization":
            headers[name] = "[redacted]"
    return event


def init_sentry(app):
    """Wire Sentry if SENTRY_DSN is set; otherwise a no-op."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            environment=_app_env(),
            send_default_pii=False,
            before_send=_scrub_auth,
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)
