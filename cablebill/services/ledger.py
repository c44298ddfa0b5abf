"""
Ledger writes and the customer projection.

balance_amount, earliest_expiry and active_subscription_ids on Customer are
derived from the transactions and subscriptions tables. They are rewritten
in the same unit of work as every ledger write, and audit_balances /
repair_drift recompute them from scratch to catch drift.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, aliased
from sqlalchemy.orm.exc import StaleDataError

from cablebill.models import Customer, LedgerEntry, Subscription
from cablebill.models.subscription import STATUS_ACTIVE
from cablebill.models.transaction import TYPE_INVOICE, TYPE_PAYMENT
from cablebill.utils.dates import utcnow
from cablebill.utils.helpers import iso, money_equal, round_currency, safe_float
from .errors import BillingError, ConflictError, Forbidden, NotFound
from .identity import Identity, require_tenant

log = logging.getLogger(__name__)


def _failure_payload(operation: str, context: Dict[str, Any], code: str, reason: str) -> str:
    payload = {
        "event": "billing_operation_failed",
        "operation": operation,
        "customer_id": context.get("customer_id"),
        "tenant_id": context.get("tenant_id"),
        "code": code,
        "reason": reason,
    }
    for k, v in context.items():
        payload.setdefault(k, v)
    return json.dumps(payload, default=str)


@contextmanager
def unit_of_work(session: Session, operation: str, **context: Any) -> Iterator[None]:
    """
    One billing operation = one database transaction.

    Commits when the block finishes. Any error rolls everything back
    (ledger rows, subscription rows, counter increments, projection) and
    is logged with the operation and customer before it propagates.
    """
    try:
        yield
        session.commit()
    except BillingError as exc:
        session.rollback()
        ctx = {**context, **exc.context}
        log.warning(_failure_payload(operation, ctx, exc.code, exc.message))
        raise
    except StaleDataError as exc:
        session.rollback()
        log.warning(_failure_payload(operation, context, ConflictError.code, "concurrent update"))
        raise ConflictError(
            "The customer was modified by another request; reload and retry.", **context
        ) from exc
    except Exception as exc:
        session.rollback()
        log.exception(_failure_payload(operation, context, "internal_error", str(exc)))
        raise


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

def lock_customer(session: Session, identity: Identity, customer_id: int) -> Customer:
    """
    Load the customer FOR UPDATE and check it belongs to the caller's tenant.

    The row lock serialises writers on PostgreSQL; version_id catches the
    rest (SQLite ignores FOR UPDATE).
    """
    tenant_id = require_tenant(identity)
    customer = (
        session.query(Customer)
        .filter(Customer.id == customer_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if customer is None or customer.deleted:
        raise NotFound(f"Customer {customer_id} not found.", customer_id=customer_id, tenant_id=tenant_id)
    if customer.operator_id != tenant_id:
        raise Forbidden(
            "Customer belongs to another operator.",
            customer_id=customer_id,
            tenant_id=tenant_id,
        )
    return customer


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

def post_entry(
    session: Session,
    customer: Customer,
    identity: Identity,
    entry_type: str,
    amount: float,
    **fields: Any,
) -> LedgerEntry:
    """
    Append one signed entry and move the cached balance by exactly that amount.
    """
    before = safe_float(customer.balance_amount)
    after = before + amount
    entry = LedgerEntry(
        operator_id=customer.operator_id,
        customer_id=customer.id,
        collected_by=identity.id,
        collected_by_type=identity.kind.value,
        type=entry_type,
        amount=amount,
        balance_before=before,
        balance_after=after,
        created_at=utcnow(),
        **fields,
    )
    session.add(entry)
    customer.balance_amount = after
    session.flush()
    return entry


def refresh_subscription_projection(session: Session, customer: Customer) -> None:
    """Rebuild active_subscription_ids and earliest_expiry from ACTIVE rows."""
    active = (
        session.query(Subscription)
        .filter(Subscription.customer_id == customer.id, Subscription.status == STATUS_ACTIVE)
        .order_by(Subscription.id)
        .all()
    )
    # JSON column: assign a new list so the change is detected
    customer.active_subscription_ids = [s.id for s in active]
    customer.earliest_expiry = min((s.expiry_date for s in active), default=None)


def _newest_standing(session: Session, customer_id: int, entry_type: str) -> Optional[LedgerEntry]:
    reversal = aliased(LedgerEntry)
    reversed_ids = select(reversal.reversed_entry_id).where(
        reversal.customer_id == customer_id,
        reversal.reversed_entry_id.isnot(None),
    )
    return (
        session.query(LedgerEntry)
        .filter(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.type == entry_type,
            LedgerEntry.id.notin_(reversed_ids),
        )
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .first()
    )


def refresh_last_activity(session: Session, customer: Customer) -> None:
    """Point last_bill_* and last_payment_* at the newest entries nobody reversed."""
    bill = _newest_standing(session, customer.id, TYPE_INVOICE)
    customer.last_bill_date = bill.created_at if bill else None
    customer.last_bill_amount = safe_float(bill.net_amount, bill.amount) if bill else None

    payment = _newest_standing(session, customer.id, TYPE_PAYMENT)
    customer.last_payment_date = payment.created_at if payment else None
    customer.last_payment_amount = -payment.amount if payment else None
    customer.last_payment_method = payment.method if payment else None


def has_later_activity(session: Session, entry: LedgerEntry) -> bool:
    """True if any entry for the same customer was written after `entry`."""
    later = session.query(LedgerEntry.id).filter(
        LedgerEntry.customer_id == entry.customer_id,
        LedgerEntry.id != entry.id,
        or_(
            LedgerEntry.created_at > entry.created_at,
            and_(LedgerEntry.created_at == entry.created_at, LedgerEntry.id > entry.id),
        ),
    )
    return session.query(later.exists()).scalar()


def is_reversed(session: Session, entry: LedgerEntry) -> bool:
    q = session.query(LedgerEntry.id).filter(LedgerEntry.reversed_entry_id == entry.id)
    return session.query(q.exists()).scalar()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def recompute_balance(session: Session, customer_id: int) -> float:
    """Authoritative balance: the signed sum of the customer's ledger."""
    total = (
        session.query(func.coalesce(func.sum(LedgerEntry.amount), 0.0))
        .filter(LedgerEntry.customer_id == customer_id)
        .scalar()
    )
    return safe_float(total)


@dataclass
class Drift:
    customer_id: int
    operator_id: int
    stored_balance: float
    ledger_balance: float
    stored_subscription_ids: List[int] = field(default_factory=list)
    actual_subscription_ids: List[int] = field(default_factory=list)
    stored_earliest_expiry: Optional[datetime] = None
    actual_earliest_expiry: Optional[datetime] = None

    @property
    def balance_drift(self) -> float:
        return self.stored_balance - self.ledger_balance

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stored_earliest_expiry"] = iso(self.stored_earliest_expiry)
        data["actual_earliest_expiry"] = iso(self.actual_earliest_expiry)
        data["balance_drift"] = round_currency(self.balance_drift)
        return data


def audit_balances(session: Session, tenant_id: Optional[int] = None) -> List[Drift]:
    """
    Compare every customer's projection with the ledger and subscriptions.
    Read-only; returns one Drift per customer that disagrees.
    """
    sums_q = session.query(LedgerEntry.customer_id, func.sum(LedgerEntry.amount)).group_by(LedgerEntry.customer_id)
    subs_q = session.query(Subscription.customer_id, Subscription.id, Subscription.expiry_date).filter(
        Subscription.status == STATUS_ACTIVE
    )
    cust_q = session.query(Customer)
    if tenant_id is not None:
        sums_q = sums_q.filter(LedgerEntry.operator_id == tenant_id)
        subs_q = subs_q.filter(Subscription.operator_id == tenant_id)
        cust_q = cust_q.filter(Customer.operator_id == tenant_id)

    sums = {cid: safe_float(total) for cid, total in sums_q.all()}
    active: Dict[int, List] = {}
    for cid, sid, expiry in subs_q.order_by(Subscription.id).all():
        active.setdefault(cid, []).append((sid, expiry))

    drifts: List[Drift] = []
    for customer in cust_q.order_by(Customer.id).all():
        ledger_balance = sums.get(customer.id, 0.0)
        rows = active.get(customer.id, [])
        actual_ids = [sid for sid, _ in rows]
        actual_earliest = min((exp for _, exp in rows), default=None)
        stored_ids = sorted(customer.active_subscription_ids or [])

        if (
            money_equal(customer.balance_amount, ledger_balance)
            and stored_ids == sorted(actual_ids)
            and customer.earliest_expiry == actual_earliest
        ):
            continue
        drifts.append(
            Drift(
                customer_id=customer.id,
                operator_id=customer.operator_id,
                stored_balance=safe_float(customer.balance_amount),
                ledger_balance=ledger_balance,
                stored_subscription_ids=stored_ids,
                actual_subscription_ids=actual_ids,
                stored_earliest_expiry=customer.earliest_expiry,
                actual_earliest_expiry=actual_earliest,
            )
        )
    return drifts


def repair_drift(session: Session, drift: Drift) -> Customer:
    """Rewrite one customer's projection from the ledger. Commits."""
    with unit_of_work(session, "repair_drift", customer_id=drift.customer_id, tenant_id=drift.operator_id):
        customer = (
            session.query(Customer)
            .filter(Customer.id == drift.customer_id)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )
        if customer is None:
            raise NotFound(f"Customer {drift.customer_id} not found.", customer_id=drift.customer_id)
        customer.balance_amount = recompute_balance(session, customer.id)
        refresh_subscription_projection(session, customer)
        log.warning(json.dumps({"event": "projection_repaired", **drift.to_dict()}, default=str))
    return customer
