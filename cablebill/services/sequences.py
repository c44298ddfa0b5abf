"""
Collision-free identifiers per tenant.

    invoice   key "<tenant>-<YYYYMM>"   -> YYYYMMDD + 4-digit serial (monthly reset)
    receipt   key "receipt-<tenant>"    -> 6-digit serial (never resets)
    refund    key "refund-<tenant>"     -> "RF" + 6-digit serial
    customer  key "customer-<tenant>"   -> "C" + 5-digit serial

Every value comes from a single INSERT .. ON CONFLICT DO UPDATE .. RETURNING
statement, so two callers can never read the same value. The statement runs
inside the caller's transaction: the counter row stays locked until the
billing unit commits or rolls back.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from cablebill.utils.dates import utcnow, year_month as _year_month
from .errors import ConflictError

log = logging.getLogger(__name__)

INVOICE_SERIAL_WIDTH = 4
RECEIPT_WIDTH = 6
REFUND_PREFIX = "RF"
REFUND_WIDTH = 6
CUSTOMER_PREFIX = "C"
CUSTOMER_WIDTH = 5

# Works on PostgreSQL and SQLite >= 3.35 (RETURNING)
_UPSERT_INCREMENT = sa.text(
    """
    INSERT INTO counters (name, operator_id, year_month, value, created_at, updated_at)
    VALUES (:name, :operator_id, :year_month, 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
    ON CONFLICT (name) DO UPDATE SET
        value      = counters.value + 1,
        updated_at = CURRENT_TIMESTAMP
    RETURNING value
    """
)


def invoice_key(tenant_id: int, as_of: datetime) -> str:
    return f"{tenant_id}-{_year_month(as_of)}"


def receipt_key(tenant_id: int) -> str:
    return f"receipt-{tenant_id}"


def refund_key(tenant_id: int) -> str:
    return f"refund-{tenant_id}"


def customer_key(tenant_id: int) -> str:
    return f"customer-{tenant_id}"


def increment(
    session: Session,
    key: str,
    *,
    operator_id: Optional[int] = None,
    year_month: Optional[str] = None,
) -> int:
    """Atomically find-or-create the counter and return its new value."""
    value = session.execute(
        _UPSERT_INCREMENT,
        {"name": key, "operator_id": operator_id, "year_month": year_month},
    ).scalar_one()
    log.debug("counter %s -> %s", key, value)
    return int(value)


def next_invoice_number(session: Session, tenant_id: int, as_of: Optional[datetime] = None) -> str:
    as_of = as_of or utcnow()
    ym = _year_month(as_of)
    serial = increment(session, invoice_key(tenant_id, as_of), operator_id=tenant_id, year_month=ym)
    if serial >= 10 ** INVOICE_SERIAL_WIDTH:
        raise ConflictError(
            "Invoice sequence exhausted for this month.",
            tenant_id=tenant_id,
            year_month=ym,
            serial=serial,
        )
    return f"{as_of:%Y%m%d}{serial:0{INVOICE_SERIAL_WIDTH}d}"


def next_receipt_number(session: Session, tenant_id: int) -> str:
    serial = increment(session, receipt_key(tenant_id), operator_id=tenant_id)
    return f"{serial:0{RECEIPT_WIDTH}d}"


def next_refund_id(session: Session, tenant_id: int) -> str:
    serial = increment(session, refund_key(tenant_id), operator_id=tenant_id)
    return f"{REFUND_PREFIX}{serial:0{REFUND_WIDTH}d}"


def next_customer_code(session: Session, tenant_id: int) -> str:
    serial = increment(session, customer_key(tenant_id), operator_id=tenant_id)
    return f"{CUSTOMER_PREFIX}{serial:0{CUSTOMER_WIDTH}d}"
