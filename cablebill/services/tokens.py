from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app

from .identity import Identity


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("IDENTITY_TOKEN_SALT", "identity-token-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


def issue_identity_token(identity: Identity) -> str:
    """Signed, timestamped bearer token carrying the caller's Identity claims."""
    return _serializer().dumps(identity.to_claims())


def load_identity_token(token: str, max_age_seconds: Optional[int] = None) -> Optional[Identity]:
    if not token:
        return None
    if max_age_seconds is None:
        max_age_seconds = int(current_app.config.get("IDENTITY_TOKEN_MAX_AGE", 43200))
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
        return Identity.from_claims(data)
    except (BadSignature, SignatureExpired):
        return None
    except (KeyError, TypeError, ValueError):
        # Signed by us but not an identity payload
        return None
