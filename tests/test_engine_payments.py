import pytest

from cablebill.extensions import db
from cablebill.models import Customer, LedgerEntry
from cablebill.services import engine
from cablebill.services.errors import ConflictError, Forbidden, NotFound, ValidationError


def _owe(seed, amount=300):
    """Bill the seeded customer for `amount` worth of the basic plan."""
    return engine.create_invoice(
        db.session, seed.operator, seed.customer_id, seed.basic_id, duration_days=amount // 10
    )


@pytest.mark.parametrize("amount", [0, -5, "abc", None, ""])
def test_payment_amount_must_be_positive(app, seed, amount):
    with app.app_context():
        with pytest.raises(ValidationError):
            engine.record_payment(db.session, seed.operator, seed.customer_id, amount)
        assert db.session.query(LedgerEntry).count() == 0


def test_payment_method_is_normalised(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        res = engine.record_payment(db.session, seed.agent, seed.customer_id, "120.50", "upi")
        assert res.transaction.method == "UPI"
        assert res.transaction.amount == -120.5
        assert res.transaction.collected_by_type == "Agent"
        assert res.customer.balance_amount == pytest.approx(179.5)

        with pytest.raises(ValidationError):
            engine.record_payment(db.session, seed.operator, seed.customer_id, 10, "Barter")
        assert_balanced(seed.customer_id)


def test_overpayment_leaves_the_customer_in_credit(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        res = engine.record_payment(db.session, seed.operator, seed.customer_id, 500)
        assert res.customer.balance_amount == -200
        assert res.transaction.method == "Cash"
        assert_balanced(seed.customer_id)


def test_receipts_are_sequential(app, seed):
    with app.app_context():
        first = engine.record_payment(db.session, seed.operator, seed.customer_id, 10)
        second = engine.record_payment(db.session, seed.agent, seed.customer_id, 10)
        assert first.transaction.receipt_number == "000001"
        assert second.transaction.receipt_number == "000002"


def test_payment_on_foreign_or_missing_customer(app, seed):
    with app.app_context():
        with pytest.raises(Forbidden):
            engine.record_payment(db.session, seed.operator, seed.foreign_customer_id, 10)
        with pytest.raises(NotFound):
            engine.record_payment(db.session, seed.operator, 424242, 10)


def test_addon_from_catalogue_item(app, seed, assert_balanced):
    with app.app_context():
        res = engine.apply_addon_charge(db.session, seed.agent, seed.customer_id, item_index=0)
        txn = res.transaction
        assert txn.type == "ADDON"
        assert txn.amount == 150
        assert txn.cost_of_goods_sold == 50
        assert txn.profit == 100
        assert txn.note == "Extra point wiring"
        assert txn.invoice_id.endswith("0001")
        assert res.customer.balance_amount == 150
        assert res.customer.active is True
        # an add-on is not a billing period
        assert res.customer.last_bill_amount is None
        assert_balanced(seed.customer_id)


def test_addon_free_amount_has_no_cost(app, seed):
    with app.app_context():
        res = engine.apply_addon_charge(db.session, seed.operator, seed.customer_id, amount=75, note="Set-top box repair")
        assert res.transaction.amount == 75
        assert res.transaction.cost_of_goods_sold == 0
        assert res.transaction.profit == 75
        assert res.transaction.note == "Set-top box repair"


@pytest.mark.parametrize("kwargs", [
    {},
    {"item_index": 0, "amount": 10},
    {"item_index": 5},
    {"item_index": -1},
    {"item_index": "first"},
    {"amount": 0},
])
def test_invalid_addon_requests(app, seed, kwargs):
    with app.app_context():
        with pytest.raises(ValidationError):
            engine.apply_addon_charge(db.session, seed.operator, seed.customer_id, **kwargs)
        assert db.session.get(Customer, seed.customer_id).balance_amount == 0


def test_adjustments_move_balance_both_ways(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        credit = engine.adjust_balance(db.session, seed.operator, seed.customer_id, 50, "credit", "Outage")
        assert credit.transaction.amount == -50
        assert credit.transaction.method == "Adjustment"
        assert credit.customer.balance_amount == 250

        debit = engine.adjust_balance(db.session, seed.operator, seed.customer_id, 20, "DEBIT")
        assert debit.transaction.amount == 20
        assert debit.customer.balance_amount == 270
        assert_balanced(seed.customer_id)


def test_adjustment_rules(app, seed):
    with app.app_context():
        with pytest.raises(Forbidden):
            engine.adjust_balance(db.session, seed.agent, seed.customer_id, 50, "credit")
        with pytest.raises(ValidationError):
            engine.adjust_balance(db.session, seed.operator, seed.customer_id, 50, "sideways")
        with pytest.raises(ValidationError):
            engine.adjust_balance(db.session, seed.operator, seed.customer_id, -50, "credit")


def test_refund_is_capped_by_outstanding_balance(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        with pytest.raises(ValidationError):
            engine.refund_payment(db.session, seed.operator, seed.customer_id, 300.01)

        res = engine.refund_payment(db.session, seed.operator, seed.customer_id, 100, "Goodwill")
        assert res.transaction.type == "REFUND"
        assert res.transaction.refund_id == "RF000001"
        assert res.transaction.amount == -100
        assert res.customer.balance_amount == 200

        # refunding exactly to zero is allowed
        res = engine.refund_payment(db.session, seed.operator, seed.customer_id, 200)
        assert res.transaction.refund_id == "RF000002"
        assert res.customer.balance_amount == 0
        assert_balanced(seed.customer_id)


def test_refund_needs_an_operator(app, seed):
    with app.app_context():
        _owe(seed)
        with pytest.raises(Forbidden):
            engine.refund_payment(db.session, seed.agent, seed.customer_id, 10)


def test_scenario_refund_after_partial_payment(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed, 500)
        engine.record_payment(db.session, seed.operator, seed.customer_id, 300)
        with pytest.raises(ValidationError):
            engine.refund_payment(db.session, seed.operator, seed.customer_id, 250)
        res = engine.refund_payment(db.session, seed.operator, seed.customer_id, 200)
        assert res.customer.balance_amount == 0
        assert_balanced(seed.customer_id)


def test_scenario_refund_refused_for_customer_in_credit(app, seed, assert_balanced):
    with app.app_context():
        paid = engine.record_payment(db.session, seed.operator, seed.customer_id, 500)
        assert paid.customer.balance_amount == -500
        with pytest.raises(ValidationError):
            engine.refund_payment(db.session, seed.operator, seed.customer_id, 500)
        customer = assert_balanced(seed.customer_id)
        assert customer.balance_amount == -500
        assert db.session.query(LedgerEntry).filter_by(type="REFUND").count() == 0


def test_reverse_payment_falls_back_to_previous_payment(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        first = engine.record_payment(db.session, seed.operator, seed.customer_id, 100)
        second = engine.record_payment(db.session, seed.operator, seed.customer_id, 50, "UPI")
        assert second.customer.last_payment_method == "UPI"

        res = engine.reverse_payment(db.session, seed.operator, second.transaction.receipt_number, "Wrong account")
        assert res.customer.balance_amount == 200
        assert res.customer.last_payment_amount == 100
        assert res.customer.last_payment_method == "Cash"
        assert res.customer.last_payment_date == first.transaction.created_at
        assert_balanced(seed.customer_id)


def test_reverse_payment_restores_the_debt(app, seed, assert_balanced):
    with app.app_context():
        _owe(seed)
        paid = engine.record_payment(db.session, seed.operator, seed.customer_id, 200, "Cheque")
        receipt = paid.transaction.receipt_number

        res = engine.reverse_payment(db.session, seed.operator, receipt, "Cheque bounced")
        assert res.transaction.type == "REVERSAL"
        assert res.transaction.amount == 200
        assert res.transaction.reversed_entry_id == paid.transaction.id
        assert res.transaction.receipt_number == receipt
        assert res.transaction.method == "Cheque"
        assert res.customer.balance_amount == 300
        assert res.customer.last_payment_amount is None
        assert res.customer.last_payment_method is None

        with pytest.raises(ConflictError):
            engine.reverse_payment(db.session, seed.operator, receipt, "again")
        assert_balanced(seed.customer_id)


def test_reverse_payment_refuses_to_leave_customer_in_credit(app, seed):
    with app.app_context():
        # 100 owed, 300 credited, 50 paid: balance -250
        _owe(seed, 100)
        engine.adjust_balance(db.session, seed.operator, seed.customer_id, 300, "credit")
        paid = engine.record_payment(db.session, seed.operator, seed.customer_id, 50)
        with pytest.raises(ConflictError):
            engine.reverse_payment(db.session, seed.operator, paid.transaction.receipt_number, "mistake")


def test_reverse_payment_refused_after_later_activity(app, seed):
    with app.app_context():
        _owe(seed)
        paid = engine.record_payment(db.session, seed.operator, seed.customer_id, 100)
        engine.apply_addon_charge(db.session, seed.operator, seed.customer_id, amount=10)
        with pytest.raises(ConflictError):
            engine.reverse_payment(db.session, seed.operator, paid.transaction.receipt_number, "late")


def test_reverse_payment_scoping(app, seed):
    with app.app_context():
        _owe(seed)
        paid = engine.record_payment(db.session, seed.operator, seed.customer_id, 100)
        receipt = paid.transaction.receipt_number
        with pytest.raises(Forbidden):
            engine.reverse_payment(db.session, seed.agent, receipt, "agent")
        with pytest.raises(Forbidden):
            engine.reverse_payment(db.session, seed.other, receipt, "other tenant")
        with pytest.raises(NotFound):
            engine.reverse_payment(db.session, seed.operator, "999999", "unknown")
        with pytest.raises(ValidationError):
            engine.reverse_payment(db.session, seed.operator, receipt, "  ")
