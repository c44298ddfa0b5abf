import json

import click
from flask.cli import with_appcontext

from cablebill.extensions import db
from cablebill.models import Agent, Operator
from cablebill.services import catalog
from cablebill.services.errors import BillingError
from cablebill.services.identity import Identity
from cablebill.services.ledger import audit_balances, repair_drift
from cablebill.services.subscriptions import expire_due_subscriptions, parse_date
from cablebill.services.tokens import issue_identity_token


@click.group()
def operators():
    """Tenant (operator) management."""


@operators.command("create")
@click.option("--name", required=True)
@click.option("--contact", default=None)
@with_appcontext
def operators_create(name, contact):
    try:
        op = catalog.create_operator(db.session, name, contact)
        db.session.commit()
    except BillingError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"Operator created id={op.id} name={op.name}")


@operators.command("add-agent")
@click.option("--operator-id", type=int, required=True)
@click.option("--name", required=True)
@click.option("--contact", default=None)
@with_appcontext
def operators_add_agent(operator_id, name, contact):
    try:
        agent = catalog.create_agent(db.session, operator_id, name, contact)
        db.session.commit()
    except BillingError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"Agent created id={agent.id} operator_id={operator_id} name={agent.name}")


@click.group()
def tokens():
    """Bearer tokens for the billing API."""


@tokens.command("issue")
@click.option("--operator-id", type=int, default=None)
@click.option("--agent-id", type=int, default=None)
@with_appcontext
def tokens_issue(operator_id, agent_id):
    if (operator_id is None) == (agent_id is None):
        raise click.ClickException("Pass exactly one of --operator-id or --agent-id")
    if operator_id is not None:
        op = db.session.get(Operator, operator_id)
        if not op or not op.is_active:
            raise click.ClickException(f"Operator id {operator_id} not found or inactive")
        identity = Identity.operator(op.id)
    else:
        agent = db.session.get(Agent, agent_id)
        if not agent or not agent.is_active:
            raise click.ClickException(f"Agent id {agent_id} not found or inactive")
        identity = Identity.agent(agent.id, agent.operator_id)
    click.echo(issue_identity_token(identity))


@click.group()
def subscriptions():
    """Subscription maintenance."""


@subscriptions.command("expire")
@click.option("--tenant-id", type=int, default=None, help="Limit the sweep to one operator")
@click.option("--as-of", default=None, help="ISO timestamp; defaults to now (UTC)")
@with_appcontext
def subscriptions_expire(tenant_id, as_of):
    try:
        expired = expire_due_subscriptions(db.session, as_of=parse_date(as_of, "as_of"), tenant_id=tenant_id)
    except BillingError as e:
        raise click.ClickException(e.message)
    click.echo(f"Expired {len(expired)} subscription(s)")


@click.group()
def ledger():
    """Ledger reconciliation."""


@ledger.command("audit")
@click.option("--tenant-id", type=int, default=None)
@click.option("--repair", is_flag=True, default=False, help="Rewrite drifted projections from the ledger")
@with_appcontext
def ledger_audit(tenant_id, repair):
    drifts = audit_balances(db.session, tenant_id=tenant_id)
    for d in drifts:
        click.echo(json.dumps(d.to_dict(), default=str))
    if repair:
        for d in drifts:
            repair_drift(db.session, d)
        click.echo(f"Repaired {len(drifts)} customer(s)")
    else:
        click.echo(f"{len(drifts)} customer(s) drifted")


def register_cli(app):
    app.cli.add_command(operators)
    app.cli.add_command(tokens)
    app.cli.add_command(subscriptions)
    app.cli.add_command(ledger)
