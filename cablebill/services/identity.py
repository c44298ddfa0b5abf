"""
Caller identity, resolved once at authentication time.

The core never re-derives a role by probing tables; it receives an
Identity and enforces tenant scoping itself.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from flask_login import UserMixin

from .errors import Forbidden


class ActorKind(str, enum.Enum):
    ADMIN = "Admin"
    OPERATOR = "Operator"
    AGENT = "Agent"


@dataclass(frozen=True)
class Identity(UserMixin):
    kind: ActorKind
    id: int
    tenant_id: Optional[int] = None

    @classmethod
    def operator(cls, operator_id: int) -> "Identity":
        return cls(ActorKind.OPERATOR, operator_id, operator_id)

    @classmethod
    def agent(cls, agent_id: int, operator_id: int) -> "Identity":
        return cls(ActorKind.AGENT, agent_id, operator_id)

    @classmethod
    def admin(cls, admin_id: int) -> "Identity":
        return cls(ActorKind.ADMIN, admin_id, None)

    @property
    def is_operator(self) -> bool:
        return self.kind is ActorKind.OPERATOR

    def get_id(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def to_claims(self) -> dict:
        return {"k": self.kind.value, "i": self.id, "t": self.tenant_id}

    @classmethod
    def from_claims(cls, claims: dict) -> "Identity":
        kind = ActorKind(claims["k"])
        tenant = claims.get("t")
        return cls(kind, int(claims["i"]), int(tenant) if tenant is not None else None)


def require_tenant(identity: Identity) -> int:
    """Billing is tenant work: operators and agents only."""
    if identity is None or identity.kind is ActorKind.ADMIN or identity.tenant_id is None:
        raise Forbidden("Billing operations require an operator or agent identity.")
    return identity.tenant_id


def require_operator(identity: Identity, operation: str) -> int:
    tenant_id = require_tenant(identity)
    if not identity.is_operator:
        raise Forbidden(f"Only the operator may {operation}.", operation=operation, actor_id=identity.id)
    return tenant_id
