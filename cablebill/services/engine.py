"""
Billing engine: every money-moving operation.

Each public function is one unit of work. It locks the customer, mints
identifiers, posts ledger entries, touches subscriptions and rewrites the
customer projection, then commits. Any error rolls the whole unit back and
is logged by ledger.unit_of_work before it propagates as a BillingError.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from cablebill.models import Customer, LedgerEntry, Product, Subscription
from cablebill.models.subscription import STATUS_ACTIVE, STATUS_EXPIRED, STATUS_TERMINATED
from cablebill.models.transaction import (
    TYPE_ADDON,
    TYPE_ADJUSTMENT,
    TYPE_INVOICE,
    TYPE_PAYMENT,
    TYPE_REFUND,
    TYPE_REVERSAL,
)
from cablebill.utils.dates import utcnow
from cablebill.utils.helpers import safe_float
from cablebill.utils.validators import clean_str, parse_amount
from . import sequences
from .catalog import list_operator_items
from .calculator import (
    Charge,
    PlanChangeQuote,
    compute_charge,
    compute_plan_change,
    interval_days,
    plan_interval_days,
    remaining_days,
)
from .errors import ConflictError, Forbidden, NotFound, ValidationError, require_positive
from .identity import Identity, require_operator, require_tenant
from .ledger import (
    has_later_activity,
    is_reversed,
    lock_customer,
    post_entry,
    refresh_last_activity,
    refresh_subscription_projection,
    unit_of_work,
)
from .subscriptions import (
    active_for_product,
    compute_expiry,
    lock_subscription,
    load_subscription,
    parse_date,
    reinstate_superseded,
    resolve_start,
    transition,
    validate_duration,
)

PAYMENT_METHODS = ("Cash", "Online", "Cheque", "UPI")
ADJUSTMENT_METHOD = "Adjustment"
DIRECTION_CREDIT = "credit"
DIRECTION_DEBIT = "debit"


@dataclass
class BillingResult:
    transaction: Optional[LedgerEntry]
    customer: Customer
    subscription: Optional[Subscription] = None
    reversed: Optional[LedgerEntry] = None
    credit: Optional[LedgerEntry] = None

    def to_dict(self) -> dict:
        data = {
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "customer": self.customer.to_dict(),
        }
        if self.subscription is not None:
            data["subscription"] = self.subscription.to_dict()
        if self.reversed is not None:
            data["reversed"] = self.reversed.to_dict()
        if self.credit is not None:
            data["credit"] = self.credit.to_dict()
        return data


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_product(session: Session, tenant_id: int, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found.", product_id=product_id, tenant_id=tenant_id)
    if product.operator_id != tenant_id:
        raise Forbidden("Product belongs to another operator.", product_id=product_id, tenant_id=tenant_id)
    if not product.is_active:
        raise ValidationError("Product is not active.", product_id=product_id)
    return product


def _method(method: Optional[str], allowed=PAYMENT_METHODS) -> str:
    m = clean_str(method, 20) or allowed[0]
    for choice in allowed:
        if m.lower() == choice.lower():
            return choice
    raise ValidationError(f"Unknown payment method {method!r}.", field="method")


def _require_reason(reason: Optional[str]) -> str:
    r = clean_str(reason, 1000)
    if not r:
        raise ValidationError("A reason is required.", field="reason")
    return r


def _find_entry(session: Session, tenant_id: int, *criteria) -> LedgerEntry:
    """
    Tenant-scoped lookup of a ledger entry. NotFound when nothing matches
    anywhere, Forbidden when it only exists under another operator.
    """
    rows = session.query(LedgerEntry).filter(*criteria).order_by(LedgerEntry.id).all()
    if not rows:
        raise NotFound("Transaction not found.", tenant_id=tenant_id)
    own = [r for r in rows if r.operator_id == tenant_id]
    if not own:
        raise Forbidden("Transaction belongs to another operator.", tenant_id=tenant_id)
    return own[0]


def _bill_period(
    session: Session,
    identity: Identity,
    customer: Customer,
    product: Product,
    *,
    start: datetime,
    expiry: datetime,
    charge: Charge,
    renewal_number: int,
    note: Optional[str],
    now: datetime,
    previous: Optional[Subscription] = None,
) -> tuple:
    """INVOICE entry + ACTIVE subscription + projection. Caller holds the lock."""
    if charge.net_amount < 0:
        raise ValidationError(
            "Invoice amount cannot be negative.",
            customer_id=customer.id,
            net_amount=charge.net_amount,
        )
    invoice_id = sequences.next_invoice_number(session, customer.operator_id, now)
    entry = post_entry(
        session,
        customer,
        identity,
        TYPE_INVOICE,
        charge.net_amount,
        invoice_id=invoice_id,
        product_id=product.id,
        start_date=start,
        expiry_date=expiry,
        base_amount=charge.base_amount,
        extra_charge=charge.extra_charge,
        discount=charge.discount,
        net_amount=charge.net_amount,
        cost_of_goods_sold=charge.cost_of_goods_sold,
        profit=charge.profit,
        note=note,
    )
    sub = Subscription(
        customer_id=customer.id,
        operator_id=customer.operator_id,
        product_id=product.id,
        plan_type=product.plan_type,
        start_date=start,
        expiry_date=expiry,
        interval_value=product.interval_value,
        interval_unit=product.interval_unit,
        customer_price=product.customer_price,
        operator_cost=product.operator_cost,
        status=STATUS_ACTIVE,
        renewal_number=renewal_number,
        previous_subscription_id=previous.id if previous is not None else None,
        invoice_id=invoice_id,
        notes=note,
    )
    session.add(sub)
    session.flush()

    customer.last_bill_date = now
    customer.last_bill_amount = charge.net_amount
    customer.active = True
    refresh_subscription_projection(session, customer)
    return entry, sub


# ---------------------------------------------------------------------------
# Invoices & subscriptions
# ---------------------------------------------------------------------------

def create_invoice(
    session: Session,
    identity: Identity,
    customer_id: int,
    product_id: int,
    *,
    start_date: Any = None,
    duration_days: Any = None,
    note: Optional[str] = None,
    start_mode: Optional[str] = None,
    price_override: Any = None,
) -> BillingResult:
    """
    Bill one period of a product and open the subscription for it.

    An ACTIVE subscription to the same product is EXPIRED and the new one
    continues its lineage, starting no earlier than the old expiry.
    """
    tenant_id = require_tenant(identity)
    ctx = dict(customer_id=customer_id, tenant_id=tenant_id, product_id=product_id)
    with unit_of_work(session, "create_invoice", **ctx):
        customer = lock_customer(session, identity, customer_id)
        product = _load_product(session, tenant_id, product_id)
        duration = validate_duration(duration_days)
        requested = parse_date(start_date)
        override = None
        if price_override is not None and price_override != "":
            override = parse_amount(price_override)
            if override is None or override < 0:
                raise ValidationError("price_override must be a non-negative number.", field="price_override")

        now = utcnow()
        prior = active_for_product(session, customer.id, product.id)
        start = resolve_start(start_mode, prior.expiry_date if prior else None, requested, now)
        expiry = compute_expiry(start, product, duration)
        charge = compute_charge(
            product, duration, customer.default_extra_charge, customer.default_discount, override
        )

        renewal_number = 1
        if prior is not None:
            transition(prior, STATUS_EXPIRED, at=now)
            renewal_number = prior.renewal_number + 1

        entry, sub = _bill_period(
            session, identity, customer, product,
            start=start, expiry=expiry, charge=charge,
            renewal_number=renewal_number, note=clean_str(note, 1000), now=now,
            previous=prior,
        )
    return BillingResult(transaction=entry, customer=customer, subscription=sub)


def renew_subscription(
    session: Session,
    identity: Identity,
    subscription_id: int,
    *,
    start_mode: Optional[str] = None,
    start_date: Any = None,
    duration_days: Any = None,
    note: Optional[str] = None,
) -> BillingResult:
    """Next period of the same product; the old row becomes EXPIRED."""
    tenant_id = require_tenant(identity)
    with unit_of_work(session, "renew_subscription", subscription_id=subscription_id, tenant_id=tenant_id):
        customer, old = lock_subscription(session, identity, subscription_id)
        if old.status not in (STATUS_ACTIVE, STATUS_EXPIRED):
            raise ValidationError(
                f"A {old.status} subscription cannot be renewed.",
                subscription_id=old.id,
                customer_id=customer.id,
            )
        current = active_for_product(session, customer.id, old.product_id)
        if current is not None and current.id != old.id:
            raise ValidationError(
                "A newer subscription to this product is active; renew that one.",
                subscription_id=old.id,
                active_subscription_id=current.id,
            )
        product = _load_product(session, tenant_id, old.product_id)
        duration = validate_duration(duration_days)
        requested = parse_date(start_date)

        now = utcnow()
        start = resolve_start(start_mode, old.expiry_date, requested, now)
        expiry = compute_expiry(start, product, duration)
        charge = compute_charge(product, duration, customer.default_extra_charge, customer.default_discount)

        superseded = None
        if old.status == STATUS_ACTIVE:
            transition(old, STATUS_EXPIRED, at=now)
            superseded = old

        entry, sub = _bill_period(
            session, identity, customer, product,
            start=start, expiry=expiry, charge=charge,
            renewal_number=old.renewal_number + 1, note=clean_str(note, 1000), now=now,
            previous=superseded,
        )
    return BillingResult(transaction=entry, customer=customer, subscription=sub)


def quote_plan_change(
    session: Session,
    identity: Identity,
    subscription_id: int,
    new_product_id: int,
    as_of: Optional[datetime] = None,
) -> PlanChangeQuote:
    """Read-only preview of a prorated plan change."""
    tenant_id = require_tenant(identity)
    sub = load_subscription(session, identity, subscription_id)
    product = _load_product(session, tenant_id, new_product_id)
    days = remaining_days(sub.expiry_date, as_of or utcnow()) if sub.status == STATUS_ACTIVE else 0
    return compute_plan_change(
        sub.customer_price,
        interval_days(sub.interval_value, sub.interval_unit),
        product.customer_price,
        plan_interval_days(product),
        days,
    )


def change_plan(
    session: Session,
    identity: Identity,
    subscription_id: int,
    new_product_id: int,
    *,
    start_mode: Optional[str] = None,
    start_date: Any = None,
    duration_days: Any = None,
    prorate: bool = False,
    note: Optional[str] = None,
) -> BillingResult:
    """
    Move a customer to another product; the old row becomes TERMINATED and
    the new subscription starts a fresh lineage.

    With prorate=True the new plan only covers what is left of the old
    period: an INVOICE for new_daily * remaining and an ADJUSTMENT crediting
    old_daily * remaining, both in this unit of work.
    """
    tenant_id = require_tenant(identity)
    ctx = dict(subscription_id=subscription_id, tenant_id=tenant_id, product_id=new_product_id)
    with unit_of_work(session, "change_plan", **ctx):
        customer, old = lock_subscription(session, identity, subscription_id)
        if old.status not in (STATUS_ACTIVE, STATUS_EXPIRED):
            raise ValidationError(
                f"A {old.status} subscription cannot change plan.",
                subscription_id=old.id,
                customer_id=customer.id,
            )
        product = _load_product(session, tenant_id, new_product_id)
        if product.id == old.product_id:
            raise ValidationError("Subscription is already on this product; renew it instead.", product_id=product.id)
        if active_for_product(session, customer.id, product.id) is not None:
            raise ValidationError(
                "Customer already has an active subscription to this product.",
                customer_id=customer.id,
                product_id=product.id,
            )

        now = utcnow()
        credit_entry = None
        note = clean_str(note, 1000)

        if prorate:
            if old.status != STATUS_ACTIVE:
                raise ValidationError("Only an active subscription can be prorated.", subscription_id=old.id)
            days = remaining_days(old.expiry_date, now)
            if days <= 0:
                raise ValidationError("Nothing left of the current period to prorate.", subscription_id=old.id)
            quote = compute_plan_change(
                old.customer_price,
                interval_days(old.interval_value, old.interval_unit),
                product.customer_price,
                plan_interval_days(product),
                days,
            )
            start, expiry = now, old.expiry_date
            charge = compute_charge(product, days)
        else:
            duration = validate_duration(duration_days)
            requested = parse_date(start_date)
            start = resolve_start(start_mode, old.expiry_date, requested, now)
            expiry = compute_expiry(start, product, duration)
            charge = compute_charge(product, duration, customer.default_extra_charge, customer.default_discount)

        transition(old, STATUS_TERMINATED, at=now)
        entry, sub = _bill_period(
            session, identity, customer, product,
            start=start, expiry=expiry, charge=charge,
            renewal_number=1, note=note, now=now,
        )

        if prorate and quote.credit_amount > 0:
            credit_entry = post_entry(
                session,
                customer,
                identity,
                TYPE_ADJUSTMENT,
                -quote.credit_amount,
                invoice_id=entry.invoice_id,
                product_id=old.product_id,
                method=ADJUSTMENT_METHOD,
                note=f"Prorated credit: {quote.remaining_days} unused days of subscription {old.id}",
            )
    return BillingResult(transaction=entry, customer=customer, subscription=sub, credit=credit_entry)


# ---------------------------------------------------------------------------
# Payments, add-ons, adjustments
# ---------------------------------------------------------------------------

def record_payment(
    session: Session,
    identity: Identity,
    customer_id: int,
    amount: Any,
    method: Optional[str] = None,
    note: Optional[str] = None,
) -> BillingResult:
    tenant_id = require_tenant(identity)
    with unit_of_work(session, "record_payment", customer_id=customer_id, tenant_id=tenant_id):
        value = require_positive(parse_amount(amount))
        method = _method(method)
        customer = lock_customer(session, identity, customer_id)
        receipt = sequences.next_receipt_number(session, tenant_id)
        entry = post_entry(
            session,
            customer,
            identity,
            TYPE_PAYMENT,
            -value,
            receipt_number=receipt,
            method=method,
            note=clean_str(note, 1000),
        )
        customer.last_payment_amount = value
        customer.last_payment_date = entry.created_at
        customer.last_payment_method = method
    return BillingResult(transaction=entry, customer=customer)


def apply_addon_charge(
    session: Session,
    identity: Identity,
    customer_id: int,
    *,
    item_index: Any = None,
    amount: Any = None,
    note: Optional[str] = None,
) -> BillingResult:
    """Bill a one-off charge: a catalogue item by index, or a free amount at zero cost."""
    tenant_id = require_tenant(identity)
    with unit_of_work(session, "apply_addon_charge", customer_id=customer_id, tenant_id=tenant_id):
        if (item_index is None) == (amount is None):
            raise ValidationError("Provide exactly one of item_index or amount.")
        customer = lock_customer(session, identity, customer_id)

        if item_index is not None:
            items = list_operator_items(session, tenant_id)
            try:
                idx = int(item_index)
            except (TypeError, ValueError):
                raise ValidationError("item_index must be an integer.", field="item_index")
            if idx < 0 or idx >= len(items):
                raise ValidationError("Invalid item index.", field="item_index", value=idx)
            item = items[idx]
            value = safe_float(item.selling_price)
            cost = safe_float(item.cost_price)
            note = clean_str(note, 1000) or item.default_note or item.name
        else:
            value = require_positive(parse_amount(amount))
            cost = 0.0
            note = clean_str(note, 1000)

        invoice_id = sequences.next_invoice_number(session, tenant_id)
        entry = post_entry(
            session,
            customer,
            identity,
            TYPE_ADDON,
            value,
            invoice_id=invoice_id,
            base_amount=value,
            net_amount=value,
            cost_of_goods_sold=cost,
            profit=value - cost,
            note=note,
        )
        customer.active = True
    return BillingResult(transaction=entry, customer=customer)


def adjust_balance(
    session: Session,
    identity: Identity,
    customer_id: int,
    amount: Any,
    direction: str,
    note: Optional[str] = None,
) -> BillingResult:
    """Operator correction. credit lowers what the customer owes, debit raises it."""
    tenant_id = require_operator(identity, "adjust balances")
    with unit_of_work(session, "adjust_balance", customer_id=customer_id, tenant_id=tenant_id):
        value = require_positive(parse_amount(amount))
        d = (direction or "").strip().lower()
        if d not in (DIRECTION_CREDIT, DIRECTION_DEBIT):
            raise ValidationError("direction must be 'credit' or 'debit'.", field="direction")
        customer = lock_customer(session, identity, customer_id)
        signed = -value if d == DIRECTION_CREDIT else value
        entry = post_entry(
            session,
            customer,
            identity,
            TYPE_ADJUSTMENT,
            signed,
            method=ADJUSTMENT_METHOD,
            note=clean_str(note, 1000),
        )
    return BillingResult(transaction=entry, customer=customer)


# ---------------------------------------------------------------------------
# Reversals & refunds
# ---------------------------------------------------------------------------

def _guard_reversal(session: Session, original: LedgerEntry) -> None:
    ctx = dict(customer_id=original.customer_id, entry_id=original.id)
    if is_reversed(session, original):
        raise ConflictError("Transaction has already been reversed.", **ctx)
    if has_later_activity(session, original):
        raise ConflictError("Later transactions exist for this customer; reversal refused.", **ctx)


def reverse_invoice(
    session: Session,
    identity: Identity,
    invoice_id: str,
    reason: Optional[str] = None,
) -> BillingResult:
    """
    Undo an invoice that nothing has built on yet.

    Refused once any later entry exists for the customer, or once the
    subscription it opened is no longer ACTIVE. The subscription row is
    deleted and a predecessor it expired is reinstated while its period
    still runs; the REVERSAL entry negates amount, cost and profit.
    """
    tenant_id = require_operator(identity, "reverse invoices")
    with unit_of_work(session, "reverse_invoice", invoice_id=invoice_id, tenant_id=tenant_id):
        reason = _require_reason(reason)
        original = _find_entry(
            session,
            tenant_id,
            LedgerEntry.invoice_id == invoice_id,
            LedgerEntry.type.in_((TYPE_INVOICE, TYPE_ADDON)),
        )
        customer = lock_customer(session, identity, original.customer_id)
        _guard_reversal(session, original)

        sub = None
        if original.type == TYPE_INVOICE:
            sub = (
                session.query(Subscription)
                .filter(
                    Subscription.customer_id == customer.id,
                    Subscription.invoice_id == invoice_id,
                    Subscription.status == STATUS_ACTIVE,
                )
                .one_or_none()
            )
            if sub is None:
                raise ConflictError(
                    "The subscription created by this invoice is no longer active.",
                    customer_id=customer.id,
                    invoice_id=invoice_id,
                )

        reversal = post_entry(
            session,
            customer,
            identity,
            TYPE_REVERSAL,
            -original.amount,
            invoice_id=original.invoice_id,
            reversed_entry_id=original.id,
            product_id=original.product_id,
            start_date=original.start_date,
            expiry_date=original.expiry_date,
            base_amount=-safe_float(original.base_amount),
            extra_charge=-safe_float(original.extra_charge),
            discount=-safe_float(original.discount),
            net_amount=-safe_float(original.net_amount),
            cost_of_goods_sold=-safe_float(original.cost_of_goods_sold),
            profit=-safe_float(original.profit),
            note=reason,
        )
        if sub is not None:
            previous_id = sub.previous_subscription_id
            session.delete(sub)
            session.flush()
            reinstate_superseded(session, previous_id, utcnow())
            refresh_subscription_projection(session, customer)
        refresh_last_activity(session, customer)
    return BillingResult(transaction=reversal, customer=customer, reversed=original)


def reverse_payment(
    session: Session,
    identity: Identity,
    receipt_number: str,
    reason: Optional[str] = None,
) -> BillingResult:
    """
    Undo a payment, restoring the debt it settled. Refused when later entries
    exist, or when the customer would end up in credit (use a refund then).
    """
    tenant_id = require_operator(identity, "reverse payments")
    with unit_of_work(session, "reverse_payment", receipt_number=receipt_number, tenant_id=tenant_id):
        reason = _require_reason(reason)
        original = _find_entry(
            session,
            tenant_id,
            LedgerEntry.receipt_number == receipt_number,
            LedgerEntry.type == TYPE_PAYMENT,
        )
        customer = lock_customer(session, identity, original.customer_id)
        _guard_reversal(session, original)

        would_be = safe_float(customer.balance_amount) - original.amount
        if round(would_be, 2) < 0:
            raise ConflictError(
                "Reversing this payment would leave the customer in credit.",
                customer_id=customer.id,
                receipt_number=receipt_number,
                balance_after=would_be,
            )
        reversal = post_entry(
            session,
            customer,
            identity,
            TYPE_REVERSAL,
            -original.amount,
            receipt_number=original.receipt_number,
            reversed_entry_id=original.id,
            method=original.method,
            note=reason,
        )
        refresh_last_activity(session, customer)
    return BillingResult(transaction=reversal, customer=customer, reversed=original)


def refund_payment(
    session: Session,
    identity: Identity,
    customer_id: int,
    amount: Any,
    reason: Optional[str] = None,
    method: Optional[str] = None,
) -> BillingResult:
    """Pay money back. Never more than the customer currently owes."""
    tenant_id = require_operator(identity, "issue refunds")
    with unit_of_work(session, "refund_payment", customer_id=customer_id, tenant_id=tenant_id):
        value = require_positive(parse_amount(amount))
        method = _method(method)
        customer = lock_customer(session, identity, customer_id)
        balance = safe_float(customer.balance_amount)
        if round(balance - value, 2) < 0:
            raise ValidationError(
                "Refund exceeds the customer's outstanding balance.",
                customer_id=customer.id,
                balance=balance,
                amount=value,
            )
        refund_id = sequences.next_refund_id(session, tenant_id)
        entry = post_entry(
            session,
            customer,
            identity,
            TYPE_REFUND,
            -value,
            refund_id=refund_id,
            method=method,
            note=clean_str(reason, 1000),
        )
    return BillingResult(transaction=entry, customer=customer)
