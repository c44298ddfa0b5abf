from flask import has_request_context
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()

# Bearer tokens only: no login view, no remember-me cookie
login_manager = LoginManager()
login_manager.session_protection = None


def billing_actor_key() -> str:
    """Rate-limit bucket: one per operator/agent, falling back to the client IP."""
    if has_request_context() and current_user.is_authenticated:
        return f"{current_user.kind.value.lower()}:{current_user.tenant_id}:{current_user.id}"
    return get_remote_address()


# Storage URI comes from create_app() (memory:// locally, Redis in staging/prod)
limiter = Limiter(key_func=billing_actor_key)
