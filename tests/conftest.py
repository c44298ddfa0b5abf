import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from types import SimpleNamespace

import pytest
from cablebill import create_app
from cablebill.extensions import db
from cablebill.models import Customer, LedgerEntry
from cablebill.services import catalog, customers
from cablebill.services.identity import Identity
from cablebill.services.ledger import recompute_balance
from cablebill.services.tokens import issue_identity_token


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        RATELIMIT_ENABLED=False,
        SECRET_KEY="test-secret",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def seed(app):
    """
    Two operators. Operator A has an agent, two 30-day plans (300 and 600),
    a 1-month plan (450), an add-on item and one customer with no defaults.
    Operator B has its own plan and customer.
    """
    with app.app_context():
        op_a = catalog.create_operator(db.session, "Star Cable", "9800000001")
        op_b = catalog.create_operator(db.session, "Other Cable", "9800000002")
        db.session.commit()

        agent = catalog.create_agent(db.session, op_a.id, "Ravi")
        operator = Identity.operator(op_a.id)
        other = Identity.operator(op_b.id)

        basic = catalog.create_product(
            db.session, operator, name="Basic", customer_price=300, operator_cost=100,
            interval_value=30, interval_unit="days",
        )
        premium = catalog.create_product(
            db.session, operator, name="Premium", customer_price=600, operator_cost=200,
            interval_value=30, interval_unit="days",
        )
        monthly = catalog.create_product(
            db.session, operator, name="Monthly", customer_price=450, operator_cost=150,
            interval_value=1, interval_unit="months",
        )
        foreign = catalog.create_product(
            db.session, other, name="Elsewhere", customer_price=250, interval_value=30,
        )
        item = catalog.add_operator_item(
            db.session, operator, name="Extra TV point", selling_price=150, cost_price=50,
            default_note="Extra point wiring",
        )
        db.session.commit()

        cust = customers.onboard_customer(db.session, operator, name="Asha", mobile="98765 43210").customer
        foreign_cust = customers.onboard_customer(db.session, other, name="Bilal").customer

        return SimpleNamespace(
            operator=operator,
            agent=Identity.agent(agent.id, op_a.id),
            other=other,
            operator_id=op_a.id,
            other_operator_id=op_b.id,
            agent_id=agent.id,
            basic_id=basic.id,
            premium_id=premium.id,
            monthly_id=monthly.id,
            foreign_product_id=foreign.id,
            item_id=item.id,
            customer_id=cust.id,
            foreign_customer_id=foreign_cust.id,
        )


@pytest.fixture()
def assert_balanced():
    """Balance projection must equal the signed ledger sum. Call inside an app context."""
    def _check(customer_id):
        db.session.expire_all()
        customer = db.session.get(Customer, customer_id)
        total = recompute_balance(db.session, customer_id)
        assert round(customer.balance_amount - total, 2) == 0
        last = (
            db.session.query(LedgerEntry)
            .filter(LedgerEntry.customer_id == customer_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .first()
        )
        if last is not None:
            assert round(last.balance_after - customer.balance_amount, 2) == 0
        return customer
    return _check


@pytest.fixture()
def auth_headers(app):
    def _headers(identity):
        with app.app_context():
            token = issue_identity_token(identity)
        return {"Authorization": f"Bearer {token}"}
    return _headers
