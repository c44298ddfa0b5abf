import re
import threading
from datetime import datetime

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session

from cablebill.extensions import db
from cablebill.models import Counter
from cablebill.services.errors import ConflictError, ValidationError
from cablebill.services.ledger import unit_of_work
from cablebill.services.sequences import (
    invoice_key,
    next_customer_code,
    next_invoice_number,
    next_receipt_number,
    next_refund_id,
)


def test_invoice_numbers_share_a_monthly_serial(app, seed):
    with app.app_context():
        a = next_invoice_number(db.session, seed.operator_id, datetime(2025, 6, 15))
        b = next_invoice_number(db.session, seed.operator_id, datetime(2025, 6, 28))
        c = next_invoice_number(db.session, seed.operator_id, datetime(2025, 7, 1))
        d = next_invoice_number(db.session, seed.other_operator_id, datetime(2025, 6, 15))
        db.session.commit()

    assert a == "202506150001"
    # day is informational; the serial is per month
    assert b == "202506280002"
    # new month, new namespace
    assert c == "202507010001"
    # tenants never share counters
    assert d == "202506150001"


def test_invoice_counter_keys(app, seed):
    with app.app_context():
        next_invoice_number(db.session, seed.operator_id, datetime(2025, 6, 15))
        db.session.commit()
        names = {c.name for c in db.session.query(Counter).all()}
    assert f"{seed.operator_id}-202506" in names
    assert invoice_key(seed.operator_id, datetime(2025, 6, 1)) == f"{seed.operator_id}-202506"


def test_receipts_and_refunds_are_continuous_per_tenant(app, seed):
    with app.app_context():
        r1 = next_receipt_number(db.session, seed.operator_id)
        r2 = next_receipt_number(db.session, seed.operator_id)
        r_other = next_receipt_number(db.session, seed.other_operator_id)
        f1 = next_refund_id(db.session, seed.operator_id)
        db.session.commit()
    assert (r1, r2, r_other) == ("000001", "000002", "000001")
    assert f1 == "RF000001"


def test_customer_codes_continue_after_onboarding(app, seed):
    with app.app_context():
        # seed already onboarded one customer per tenant
        code = next_customer_code(db.session, seed.operator_id)
        db.session.commit()
    assert code == "C00002"


def test_many_numbers_are_unique_and_gapless(app, seed):
    as_of = datetime(2025, 3, 9)
    with app.app_context():
        numbers = [next_invoice_number(db.session, seed.operator_id, as_of) for _ in range(50)]
        db.session.commit()
    assert len(set(numbers)) == 50
    assert all(re.fullmatch(r"20250309\d{4}", n) for n in numbers)
    assert sorted(int(n[-4:]) for n in numbers) == list(range(1, 51))


def test_invoice_serial_exhaustion_is_a_conflict(app, seed):
    as_of = datetime(2025, 6, 15)
    with app.app_context():
        db.session.add(Counter(
            name=invoice_key(seed.operator_id, as_of),
            operator_id=seed.operator_id,
            year_month="202506",
            value=9999,
        ))
        db.session.commit()
        with pytest.raises(ConflictError):
            next_invoice_number(db.session, seed.operator_id, as_of)
        db.session.rollback()


def test_failed_unit_does_not_consume_a_number(app, seed):
    with app.app_context():
        with pytest.raises(ValidationError):
            with unit_of_work(db.session, "test_abort", tenant_id=seed.operator_id):
                next_receipt_number(db.session, seed.operator_id)
                raise ValidationError("boom")
        assert next_receipt_number(db.session, seed.operator_id) == "000001"
        db.session.commit()


def test_concurrent_callers_never_share_a_serial(tmp_path):
    # file-backed so every thread gets its own connection and transaction
    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'sequences.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    db.metadata.create_all(engine)
    as_of = datetime(2025, 3, 9)
    workers = 12
    barrier = threading.Barrier(workers)
    numbers, errors = [], []
    lock = threading.Lock()

    def worker():
        session = Session(engine)
        try:
            barrier.wait()
            number = next_invoice_number(session, 7, as_of)
            session.commit()
            with lock:
                numbers.append(number)
        except Exception as exc:  # surfaced by the assertion below
            session.rollback()
            with lock:
                errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    engine.dispose()

    assert errors == []
    assert len(set(numbers)) == workers
    assert sorted(int(n[-4:]) for n in numbers) == list(range(1, workers + 1))
