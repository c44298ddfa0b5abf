import os
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, login_manager, limiter
from .security import init_security
from .observability import init_logging, init_sentry


def create_app(config_object=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Never run money endpoints without shared limiter storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        _require("SECRET_KEY")
        _require("DATABASE_URL")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    login_manager.init_app(app)
    limiter.init_app(app)

    # Models must be imported before migrations / create_all see the metadata
    from . import models  # noqa: F401

    _init_identity_loader(app)

    # Blueprints
    from .blueprints.billing import bp as billing_bp
    app.register_blueprint(billing_bp, url_prefix="/api/billing")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # JSON everywhere: this is an API-only service
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Not Found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": "Method Not Allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "message": "Internal Server Error"}), 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "message": "Too Many Requests"}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app


def _init_identity_loader(app):
    """Bearer tokens -> Identity. No server-side sessions."""
    from .models import Agent, Operator
    from .services.identity import ActorKind
    from .services.tokens import load_identity_token

    @login_manager.request_loader
    def load_identity_from_request(req):
        header = req.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        identity = load_identity_token(token.strip())
        if identity is None:
            return None
        # Revoked actors lose access immediately
        if identity.kind is ActorKind.OPERATOR:
            op = db.session.get(Operator, identity.id)
            if op is None or not op.is_active:
                return None
        elif identity.kind is ActorKind.AGENT:
            agent = db.session.get(Agent, identity.id)
            if agent is None or not agent.is_active or agent.operator_id != identity.tenant_id:
                return None
        return identity

    @login_manager.unauthorized_handler
    def unauthorized():
        app.logger.info("unauthorized request to %s", request.path)
        return jsonify({"error": "unauthorized", "message": "A valid bearer token is required."}), 401
