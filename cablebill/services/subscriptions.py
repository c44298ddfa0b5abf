"""
Subscription lifecycle.

    ACTIVE  -> EXPIRED     (renewal, or the expiry sweep)
    ACTIVE  -> PAUSED -> ACTIVE
    ACTIVE | EXPIRED | PAUSED -> TERMINATED   (plan change, removal, customer delete)

Nothing leaves TERMINATED. Rows are only ever deleted when the invoice that
created them is reversed (see engine.reverse_invoice); the EXPIRED row that
invoice superseded goes back to ACTIVE if its period is still running.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy.orm import Session

from cablebill.models import Customer, Subscription
from cablebill.models.product import UNIT_MONTHS
from cablebill.models.subscription import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_PAUSED,
    STATUS_TERMINATED,
)
from cablebill.utils.dates import add_days, add_months, to_naive_utc, utcnow
from .errors import Forbidden, NotFound, ValidationError
from .identity import Identity, require_operator, require_tenant
from .ledger import lock_customer, refresh_subscription_projection, unit_of_work

log = logging.getLogger(__name__)

START_DEFAULT = "DEFAULT"
START_TODAY = "TODAY"
START_CUSTOM = "CUSTOM"
START_MODES = (START_DEFAULT, START_TODAY, START_CUSTOM)

_TRANSITIONS = {
    STATUS_ACTIVE: {STATUS_EXPIRED, STATUS_PAUSED, STATUS_TERMINATED},
    STATUS_PAUSED: {STATUS_ACTIVE, STATUS_TERMINATED},
    STATUS_EXPIRED: {STATUS_TERMINATED},
    STATUS_TERMINATED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, set())


def transition(sub: Subscription, target: str, at: Optional[datetime] = None) -> Subscription:
    if not can_transition(sub.status, target):
        raise ValidationError(
            f"Cannot move subscription from {sub.status} to {target}.",
            subscription_id=sub.id,
            customer_id=sub.customer_id,
            status=sub.status,
            target=target,
        )
    at = at or utcnow()
    if target == STATUS_PAUSED:
        sub.pause_date = at
        sub.resume_date = None
    elif sub.status == STATUS_PAUSED and target == STATUS_ACTIVE:
        sub.resume_date = at
    sub.status = target
    return sub


# ---------------------------------------------------------------------------
# Period resolution
# ---------------------------------------------------------------------------

def parse_date(value: Any, field: str = "start_date") -> Optional[datetime]:
    try:
        return to_naive_utc(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} is not a valid date.", field=field, value=str(value))


def normalize_start_mode(mode: Optional[str]) -> str:
    m = (mode or START_DEFAULT).strip().upper()
    if m not in START_MODES:
        raise ValidationError(f"Unknown start mode {mode!r}.", field="start_mode")
    return m


def resolve_start(
    mode: Optional[str],
    prior_expiry: Optional[datetime],
    requested: Optional[datetime],
    now: datetime,
) -> datetime:
    """
    DEFAULT: max(prior_expiry, requested or now), so periods never overlap.
    TODAY:   now, whatever the prior period says.
    CUSTOM:  the requested date, which is then required.
    """
    mode = normalize_start_mode(mode)
    if mode == START_TODAY:
        return now
    if mode == START_CUSTOM:
        if requested is None:
            raise ValidationError("start_date is required for a CUSTOM start.", field="start_date")
        return requested
    start = requested or now
    if prior_expiry is not None and prior_expiry > start:
        return prior_expiry
    return start


def validate_duration(duration_days: Any) -> Optional[int]:
    """Whole days only; 10.9 is refused rather than billed as 10."""
    if duration_days is None or duration_days == "":
        return None
    if isinstance(duration_days, bool):
        raise ValidationError("duration_days must be a whole number of days.", field="duration_days")
    try:
        value = float(duration_days)
    except (TypeError, ValueError):
        raise ValidationError("duration_days must be a whole number of days.", field="duration_days")
    if not value.is_integer():
        raise ValidationError(
            "duration_days must be a whole number of days.",
            field="duration_days",
            value=str(duration_days),
        )
    days = int(value)
    if days <= 0:
        raise ValidationError("duration_days must be positive.", field="duration_days", value=days)
    return days


def compute_expiry(start: datetime, plan: Any, duration_days: Optional[int] = None) -> datetime:
    """Native plan interval by default; an explicit duration is counted in days."""
    if duration_days:
        return add_days(start, duration_days)
    if plan.interval_unit == UNIT_MONTHS:
        return add_months(start, plan.interval_value)
    return add_days(start, plan.interval_value)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def load_subscription(session: Session, identity: Identity, subscription_id: int) -> Subscription:
    tenant_id = require_tenant(identity)
    sub = session.get(Subscription, subscription_id)
    if sub is None:
        raise NotFound(f"Subscription {subscription_id} not found.", subscription_id=subscription_id)
    if sub.operator_id != tenant_id:
        raise Forbidden(
            "Subscription belongs to another operator.",
            subscription_id=subscription_id,
            tenant_id=tenant_id,
        )
    return sub


def lock_subscription(session: Session, identity: Identity, subscription_id: int):
    """Lock the owning customer, then re-read the subscription under that lock."""
    sub = load_subscription(session, identity, subscription_id)
    customer = lock_customer(session, identity, sub.customer_id)
    session.refresh(sub)
    return customer, sub


def active_for_product(session: Session, customer_id: int, product_id: int) -> Optional[Subscription]:
    return (
        session.query(Subscription)
        .filter(
            Subscription.customer_id == customer_id,
            Subscription.product_id == product_id,
            Subscription.status == STATUS_ACTIVE,
        )
        .order_by(Subscription.expiry_date.desc(), Subscription.id.desc())
        .first()
    )


def reinstate_superseded(session: Session, previous_id: Optional[int], now: datetime) -> Optional[Subscription]:
    """
    Undo the EXPIRED a renewal put on its predecessor. Caller holds the
    customer lock and has already deleted the renewal row. The predecessor
    only comes back while its own period is still running and nothing else
    covers the product.
    """
    if previous_id is None:
        return None
    prev = session.get(Subscription, previous_id)
    if prev is None or prev.status != STATUS_EXPIRED or prev.expiry_date <= now:
        return None
    if active_for_product(session, prev.customer_id, prev.product_id) is not None:
        return None
    prev.status = STATUS_ACTIVE
    session.flush()
    return prev


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def pause_subscription(session: Session, identity: Identity, subscription_id: int) -> Subscription:
    tenant_id = require_tenant(identity)
    with unit_of_work(session, "pause_subscription", subscription_id=subscription_id, tenant_id=tenant_id):
        customer, sub = lock_subscription(session, identity, subscription_id)
        transition(sub, STATUS_PAUSED)
        refresh_subscription_projection(session, customer)
    return sub


def resume_subscription(session: Session, identity: Identity, subscription_id: int) -> Subscription:
    """Back to ACTIVE; the expiry moves out by however long the pause lasted."""
    tenant_id = require_tenant(identity)
    with unit_of_work(session, "resume_subscription", subscription_id=subscription_id, tenant_id=tenant_id):
        customer, sub = lock_subscription(session, identity, subscription_id)
        paused_at = sub.pause_date
        now = utcnow()
        transition(sub, STATUS_ACTIVE, at=now)
        if paused_at is not None and now > paused_at:
            sub.expiry_date = sub.expiry_date + (now - paused_at)
        refresh_subscription_projection(session, customer)
    return sub


def remove_subscription(session: Session, identity: Identity, subscription_id: int) -> Subscription:
    tenant_id = require_operator(identity, "remove subscriptions")
    with unit_of_work(session, "remove_subscription", subscription_id=subscription_id, tenant_id=tenant_id):
        customer, sub = lock_subscription(session, identity, subscription_id)
        transition(sub, STATUS_TERMINATED)
        refresh_subscription_projection(session, customer)
    return sub


def terminate_all(session: Session, customer: Customer) -> List[Subscription]:
    """Terminate every live subscription of a customer (caller holds the lock)."""
    subs = (
        session.query(Subscription)
        .filter(
            Subscription.customer_id == customer.id,
            Subscription.status.in_((STATUS_ACTIVE, STATUS_PAUSED)),
        )
        .all()
    )
    for sub in subs:
        transition(sub, STATUS_TERMINATED)
    refresh_subscription_projection(session, customer)
    return subs


def _due_customer_ids(session: Session, as_of: datetime, tenant_id: Optional[int]) -> Iterable[int]:
    q = session.query(Subscription.customer_id).filter(
        Subscription.status == STATUS_ACTIVE,
        Subscription.expiry_date < as_of,
    )
    if tenant_id is not None:
        q = q.filter(Subscription.operator_id == tenant_id)
    return sorted({cid for (cid,) in q.distinct().all()})


def expire_due_subscriptions(
    session: Session,
    as_of: Optional[datetime] = None,
    tenant_id: Optional[int] = None,
) -> List[Subscription]:
    """
    Sweep ACTIVE subscriptions whose expiry has passed into EXPIRED.

    A customer left with no ACTIVE subscription is marked inactive. One
    unit of work for the whole sweep; customers are locked in id order.
    """
    as_of = as_of or utcnow()
    expired: List[Subscription] = []
    with unit_of_work(session, "expire_due_subscriptions", tenant_id=tenant_id):
        for customer_id in _due_customer_ids(session, as_of, tenant_id):
            customer = (
                session.query(Customer)
                .filter(Customer.id == customer_id)
                .populate_existing()
                .with_for_update()
                .one()
            )
            due = (
                session.query(Subscription)
                .filter(
                    Subscription.customer_id == customer_id,
                    Subscription.status == STATUS_ACTIVE,
                    Subscription.expiry_date < as_of,
                )
                .all()
            )
            for sub in due:
                transition(sub, STATUS_EXPIRED, at=as_of)
                expired.append(sub)
            refresh_subscription_projection(session, customer)
            if not customer.active_subscription_ids:
                customer.active = False
    if expired:
        log.info(json.dumps({
            "event": "subscriptions_expired",
            "count": len(expired),
            "tenant_id": tenant_id,
            "as_of": as_of.isoformat(),
        }))
    return expired
