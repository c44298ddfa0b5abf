import json
import logging

import pytest
from sqlalchemy import text

from cablebill.extensions import db
from cablebill.models import Customer, LedgerEntry
from cablebill.models.transaction import LedgerImmutableError
from cablebill.services import engine
from cablebill.services.errors import ConflictError, ValidationError
from cablebill.services.ledger import audit_balances, lock_customer, recompute_balance, repair_drift, unit_of_work


def test_ledger_rows_cannot_be_edited(app, seed):
    with app.app_context():
        res = engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        entry = db.session.get(LedgerEntry, res.transaction.id)
        entry.amount = 1
        with pytest.raises(LedgerImmutableError):
            db.session.flush()
        db.session.rollback()
        assert db.session.get(LedgerEntry, res.transaction.id).amount == 300


def test_ledger_rows_cannot_be_deleted(app, seed):
    with app.app_context():
        res = engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        db.session.delete(db.session.get(LedgerEntry, res.transaction.id))
        with pytest.raises(LedgerImmutableError):
            db.session.flush()
        db.session.rollback()
        assert db.session.query(LedgerEntry).count() == 1


def test_concurrent_modification_surfaces_as_conflict(app, seed):
    with app.app_context():
        with pytest.raises(ConflictError):
            with unit_of_work(db.session, "test_race", customer_id=seed.customer_id, tenant_id=seed.operator_id):
                customer = lock_customer(db.session, seed.operator, seed.customer_id)
                # another writer commits behind our back
                db.session.execute(
                    text("UPDATE customers SET version_id = version_id + 1 WHERE id = :id"),
                    {"id": seed.customer_id},
                )
                customer.balance_amount = 999
        customer = db.session.get(Customer, seed.customer_id)
        assert customer.balance_amount == 0


def test_failures_are_logged_with_operation_and_customer(app, seed, caplog):
    caplog.set_level(logging.WARNING, logger="cablebill")
    with app.app_context():
        with pytest.raises(ValidationError):
            engine.record_payment(db.session, seed.operator, seed.customer_id, -1)

    records = [r for r in caplog.records if "billing_operation_failed" in r.getMessage()]
    assert records
    payload = json.loads(records[-1].getMessage())
    assert payload["operation"] == "record_payment"
    assert payload["customer_id"] == seed.customer_id
    assert payload["tenant_id"] == seed.operator_id
    assert payload["code"] == "validation_error"


def test_audit_is_clean_after_normal_operations(app, seed):
    with app.app_context():
        engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        engine.record_payment(db.session, seed.agent, seed.customer_id, 120)
        engine.apply_addon_charge(db.session, seed.operator, seed.customer_id, item_index=0)
        assert audit_balances(db.session) == []
        assert recompute_balance(db.session, seed.customer_id) == 330


def test_audit_finds_and_repair_fixes_drift(app, seed):
    with app.app_context():
        res = engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        db.session.execute(
            text("UPDATE customers SET balance_amount = 5, active_subscription_ids = '[]' WHERE id = :id"),
            {"id": seed.customer_id},
        )
        db.session.commit()
        db.session.expire_all()

        drifts = audit_balances(db.session, tenant_id=seed.operator_id)
        assert len(drifts) == 1
        drift = drifts[0]
        assert drift.customer_id == seed.customer_id
        assert drift.stored_balance == 5
        assert drift.ledger_balance == 300
        assert drift.balance_drift == -295
        assert drift.actual_subscription_ids == [res.subscription.id]
        assert drift.to_dict()["balance_drift"] == -295

        # other tenants are not reported
        assert audit_balances(db.session, tenant_id=seed.other_operator_id) == []

        customer = repair_drift(db.session, drift)
        assert customer.balance_amount == 300
        assert customer.active_subscription_ids == [res.subscription.id]
        assert audit_balances(db.session) == []
