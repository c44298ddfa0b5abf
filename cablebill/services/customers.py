"""
Customer onboarding, soft delete, and the tenant-scoped read model.

Reads never write; calling them repeatedly without an intervening billing
operation returns the same data.
"""
from __future__ import annotations

from typing import Any, List, Optional

from sqlalchemy.orm import Session

from cablebill.models import Agent, Customer, LedgerEntry, Subscription
from cablebill.models.transaction import TYPE_ADJUSTMENT
from cablebill.utils.helpers import money_equal, safe_float
from cablebill.utils.validators import clean_str, normalize_mobile, parse_amount
from . import sequences
from .engine import ADJUSTMENT_METHOD, BillingResult
from .errors import Forbidden, NotFound, ValidationError
from .identity import Identity, require_operator, require_tenant
from .ledger import lock_customer, post_entry, refresh_subscription_projection, unit_of_work
from .subscriptions import parse_date, terminate_all

OPENING_BALANCE_NOTE = "Opening balance"


def _check_agent(session: Session, tenant_id: int, agent_id: Any) -> Optional[int]:
    if agent_id is None or agent_id == "":
        return None
    try:
        agent = session.get(Agent, int(agent_id))
    except (TypeError, ValueError):
        raise ValidationError("agent_id must be an integer.", field="agent_id")
    if agent is None:
        raise NotFound(f"Agent {agent_id} not found.", agent_id=agent_id)
    if agent.operator_id != tenant_id:
        raise Forbidden("Agent belongs to another operator.", agent_id=agent_id, tenant_id=tenant_id)
    return agent.id


def onboard_customer(
    session: Session,
    identity: Identity,
    *,
    name: str,
    mobile: Optional[str] = None,
    locality: Optional[str] = None,
    billing_address: Optional[str] = None,
    remark: Optional[str] = None,
    agent_id: Any = None,
    connection_start_date: Any = None,
    default_extra_charge: Any = 0,
    default_discount: Any = 0,
    opening_balance: Any = 0,
) -> BillingResult:
    """
    Create a customer with a fresh customer code. A non-zero opening balance
    is carried over as an ADJUSTMENT flagged is_opening_balance.
    """
    tenant_id = require_operator(identity, "onboard customers")
    with unit_of_work(session, "onboard_customer", tenant_id=tenant_id):
        clean_name = clean_str(name)
        if not clean_name:
            raise ValidationError("name is required.", field="name")
        clean_mobile = None
        if mobile:
            clean_mobile = normalize_mobile(mobile)
            if clean_mobile is None:
                raise ValidationError("mobile must be a 10-digit number.", field="mobile")
        extra = parse_amount(default_extra_charge or 0)
        discount = parse_amount(default_discount or 0)
        opening = parse_amount(opening_balance or 0)
        if extra is None or extra < 0 or discount is None or discount < 0:
            raise ValidationError("Default extra charge and discount must be non-negative numbers.")
        if opening is None:
            raise ValidationError("opening_balance must be a number.", field="opening_balance")

        customer = Customer(
            operator_id=tenant_id,
            agent_id=_check_agent(session, tenant_id, agent_id),
            customer_code=sequences.next_customer_code(session, tenant_id),
            name=clean_name,
            mobile=clean_mobile,
            locality=clean_str(locality),
            billing_address=clean_str(billing_address, 1000),
            remark=clean_str(remark, 1000),
            connection_start_date=parse_date(connection_start_date, "connection_start_date"),
            default_extra_charge=extra,
            default_discount=discount,
            balance_amount=0.0,
            active_subscription_ids=[],
            active=True,
            deleted=False,
        )
        session.add(customer)
        session.flush()

        entry = None
        if not money_equal(opening, 0):
            entry = post_entry(
                session,
                customer,
                identity,
                TYPE_ADJUSTMENT,
                opening,
                method=ADJUSTMENT_METHOD,
                is_opening_balance=True,
                note=OPENING_BALANCE_NOTE,
            )
    return BillingResult(transaction=entry, customer=customer)


def soft_delete_customer(session: Session, identity: Identity, customer_id: int) -> Customer:
    """Only a settled customer can be deleted; live subscriptions are terminated."""
    tenant_id = require_operator(identity, "delete customers")
    with unit_of_work(session, "soft_delete_customer", customer_id=customer_id, tenant_id=tenant_id):
        customer = lock_customer(session, identity, customer_id)
        if not money_equal(customer.balance_amount, 0):
            raise ValidationError(
                "Customer balance must be zero before deletion.",
                customer_id=customer.id,
                balance=safe_float(customer.balance_amount),
            )
        terminate_all(session, customer)
        customer.deleted = True
        customer.active = False
        refresh_subscription_projection(session, customer)
    return customer


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------

def get_customer(session: Session, identity: Identity, customer_id: int) -> Customer:
    tenant_id = require_tenant(identity)
    customer = session.get(Customer, customer_id)
    if customer is None or customer.deleted:
        raise NotFound(f"Customer {customer_id} not found.", customer_id=customer_id)
    if customer.operator_id != tenant_id:
        raise Forbidden("Customer belongs to another operator.", customer_id=customer_id, tenant_id=tenant_id)
    return customer


def list_ledger(
    session: Session,
    identity: Identity,
    customer_id: int,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[LedgerEntry]:
    """Entries oldest first, in the order they were written."""
    customer = get_customer(session, identity, customer_id)
    q = (
        session.query(LedgerEntry)
        .filter(LedgerEntry.customer_id == customer.id)
        .order_by(LedgerEntry.created_at, LedgerEntry.id)
    )
    if offset:
        q = q.offset(offset)
    if limit:
        q = q.limit(limit)
    return q.all()


def subscription_history(session: Session, identity: Identity, customer_id: int) -> List[Subscription]:
    customer = get_customer(session, identity, customer_id)
    return (
        session.query(Subscription)
        .filter(Subscription.customer_id == customer.id)
        .order_by(Subscription.start_date, Subscription.id)
        .all()
    )
