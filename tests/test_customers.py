import pytest

from cablebill.extensions import db
from cablebill.models import Customer, LedgerEntry, Subscription
from cablebill.services import customers, engine
from cablebill.services.errors import Forbidden, NotFound, ValidationError
from cablebill.services.identity import Identity


def test_onboarding_assigns_codes_and_normalises_mobile(app, seed):
    with app.app_context():
        asha = db.session.get(Customer, seed.customer_id)
        assert asha.customer_code == "C00001"
        assert asha.mobile == "9876543210"
        assert asha.balance_amount == 0
        assert asha.active_subscription_ids == []

        res = customers.onboard_customer(
            db.session, seed.operator, name="  Meera   Nair ", mobile="+91 99887 76655",
            locality="Ward 4", agent_id=seed.agent_id, connection_start_date="2024-02-01",
        )
        c = res.customer
        assert res.transaction is None
        assert c.customer_code == "C00002"
        assert c.name == "Meera Nair"
        assert c.mobile == "9988776655"
        assert c.agent_id == seed.agent_id
        assert c.connection_start_date.year == 2024


def test_opening_balance_is_an_adjustment(app, seed, assert_balanced):
    with app.app_context():
        res = customers.onboard_customer(db.session, seed.operator, name="Carry Over", opening_balance="450")
        entry = res.transaction
        assert entry.type == "ADJUSTMENT"
        assert entry.is_opening_balance is True
        assert entry.amount == 450
        assert entry.note == "Opening balance"
        assert res.customer.balance_amount == 450
        assert_balanced(res.customer.id)

        advance = customers.onboard_customer(db.session, seed.operator, name="Paid Ahead", opening_balance=-100)
        assert advance.customer.balance_amount == -100


@pytest.mark.parametrize("kwargs", [
    {"name": "  "},
    {"name": "X", "mobile": "12345"},
    {"name": "X", "default_discount": -1},
    {"name": "X", "default_extra_charge": "lots"},
    {"name": "X", "opening_balance": "n/a"},
    {"name": "X", "connection_start_date": "yesterday"},
])
def test_onboarding_validation(app, seed, kwargs):
    with app.app_context():
        with pytest.raises(ValidationError):
            customers.onboard_customer(db.session, seed.operator, **kwargs)
        assert db.session.query(Customer).count() == 2


def test_onboarding_rules(app, seed):
    with app.app_context():
        with pytest.raises(Forbidden):
            customers.onboard_customer(db.session, seed.agent, name="By Agent")
        with pytest.raises(Forbidden):
            customers.onboard_customer(db.session, seed.other, name="Wrong agent", agent_id=seed.agent_id)
        with pytest.raises(NotFound):
            customers.onboard_customer(db.session, seed.operator, name="Ghost agent", agent_id=99999)


def test_soft_delete_requires_zero_balance(app, seed):
    with app.app_context():
        engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        with pytest.raises(ValidationError):
            customers.soft_delete_customer(db.session, seed.operator, seed.customer_id)
        assert db.session.get(Customer, seed.customer_id).deleted is False


def test_soft_delete_terminates_live_subscriptions(app, seed):
    with app.app_context():
        res = engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        engine.record_payment(db.session, seed.operator, seed.customer_id, 300)

        with pytest.raises(Forbidden):
            customers.soft_delete_customer(db.session, seed.agent, seed.customer_id)

        customer = customers.soft_delete_customer(db.session, seed.operator, seed.customer_id)
        assert customer.deleted is True
        assert customer.active is False
        assert customer.active_subscription_ids == []
        assert db.session.get(Subscription, res.subscription.id).status == "TERMINATED"

        # deleted customers disappear from reads and writes; history stays
        with pytest.raises(NotFound):
            customers.get_customer(db.session, seed.operator, seed.customer_id)
        with pytest.raises(NotFound):
            engine.record_payment(db.session, seed.operator, seed.customer_id, 10)
        assert db.session.query(LedgerEntry).filter_by(customer_id=seed.customer_id).count() == 2


def test_reads_are_idempotent_and_ordered(app, seed):
    with app.app_context():
        engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        engine.record_payment(db.session, seed.operator, seed.customer_id, 100)
        engine.apply_addon_charge(db.session, seed.operator, seed.customer_id, amount=20)

        first = [e.to_dict() for e in customers.list_ledger(db.session, seed.agent, seed.customer_id)]
        second = [e.to_dict() for e in customers.list_ledger(db.session, seed.agent, seed.customer_id)]
        assert first == second
        assert [e["type"] for e in first] == ["INVOICE", "PAYMENT", "ADDON"]
        # each entry picks up where the previous one left off
        for prev, cur in zip(first, first[1:]):
            assert cur["balance_before"] == prev["balance_after"]

        page = customers.list_ledger(db.session, seed.agent, seed.customer_id, limit=1, offset=1)
        assert [e.type for e in page] == ["PAYMENT"]

        history = customers.subscription_history(db.session, seed.operator, seed.customer_id)
        assert len(history) == 1
        assert customers.get_customer(db.session, seed.agent, seed.customer_id).balance_amount == 220


def test_reads_are_tenant_scoped(app, seed):
    with app.app_context():
        with pytest.raises(Forbidden):
            customers.get_customer(db.session, seed.other, seed.customer_id)
        with pytest.raises(Forbidden):
            customers.list_ledger(db.session, seed.other, seed.customer_id)
        with pytest.raises(Forbidden):
            customers.get_customer(db.session, Identity.admin(1), seed.customer_id)
        with pytest.raises(NotFound):
            customers.subscription_history(db.session, seed.operator, 31337)
