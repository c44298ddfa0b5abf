import json
from datetime import timedelta

from sqlalchemy import text

from cablebill.extensions import db
from cablebill.models import Agent, Customer, Operator, Subscription
from cablebill.services import engine
from cablebill.services.tokens import load_identity_token
from cablebill.utils.dates import utcnow


def test_operator_and_agent_creation(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["operators", "create", "--name", "Hill Cable", "--contact", "9000000000"])
    assert result.exit_code == 0, result.output
    assert "Operator created id=" in result.output

    with app.app_context():
        op = db.session.query(Operator).filter_by(name="Hill Cable").one()
        op_id = op.id

    result = runner.invoke(args=["operators", "add-agent", "--operator-id", str(op_id), "--name", "Sunil"])
    assert result.exit_code == 0, result.output
    with app.app_context():
        assert db.session.query(Agent).filter_by(operator_id=op_id, name="Sunil").count() == 1

    result = runner.invoke(args=["operators", "add-agent", "--operator-id", "98765", "--name", "Nobody"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_token_issue(app, seed):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["tokens", "issue", "--agent-id", str(seed.agent_id)])
    assert result.exit_code == 0, result.output
    with app.app_context():
        identity = load_identity_token(result.output.strip())
    assert identity == seed.agent

    result = runner.invoke(args=["tokens", "issue"])
    assert result.exit_code != 0
    result = runner.invoke(args=["tokens", "issue", "--operator-id", "5555"])
    assert result.exit_code != 0


def test_expire_command(app, seed):
    with app.app_context():
        engine.create_invoice(
            db.session, seed.operator, seed.customer_id, seed.basic_id,
            start_mode="CUSTOM", start_date=utcnow() - timedelta(days=45), duration_days=30,
        )
    runner = app.test_cli_runner()
    result = runner.invoke(args=["subscriptions", "expire", "--tenant-id", str(seed.operator_id)])
    assert result.exit_code == 0, result.output
    assert "Expired 1 subscription(s)" in result.output
    with app.app_context():
        assert db.session.query(Subscription).filter_by(status="EXPIRED").count() == 1

    result = runner.invoke(args=["subscriptions", "expire", "--as-of", "someday"])
    assert result.exit_code != 0


def test_ledger_audit_and_repair(app, seed):
    with app.app_context():
        engine.create_invoice(db.session, seed.operator, seed.customer_id, seed.basic_id)
        db.session.execute(
            text("UPDATE customers SET balance_amount = 0 WHERE id = :id"), {"id": seed.customer_id}
        )
        db.session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["ledger", "audit"])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert json.loads(lines[0])["customer_id"] == seed.customer_id
    assert lines[-1] == "1 customer(s) drifted"

    result = runner.invoke(args=["ledger", "audit", "--repair"])
    assert result.exit_code == 0, result.output
    assert "Repaired 1 customer(s)" in result.output
    with app.app_context():
        assert db.session.get(Customer, seed.customer_id).balance_amount == 300

    result = runner.invoke(args=["ledger", "audit"])
    assert result.output.strip() == "0 customer(s) drifted"
