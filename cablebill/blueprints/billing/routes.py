from flask import jsonify, request, current_app
from flask_login import login_required, current_user

from cablebill.extensions import db, limiter
from cablebill.models import Product
from cablebill.services import catalog, customers, engine, subscriptions
from cablebill.services.errors import BillingError, ValidationError
from cablebill.services.identity import require_operator, require_tenant
from cablebill.services.ledger import audit_balances
from . import bp


def _identity():
    """The Identity behind the current_user proxy."""
    return current_user._get_current_object()


def _write_limit():
    return current_app.config.get("BILLING_WRITE_RATE_LIMIT", "60/minute")


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int(data: dict, key: str, required: bool = True):
    val = data.get(key)
    if val is None or val == "":
        if required:
            raise ValidationError(f"{key} is required.", field=key)
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer.", field=key)


def _bool(val) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "on")
    return bool(val)


@bp.errorhandler(BillingError)
def handle_billing_error(err: BillingError):
    # The unit of work already rolled back; catalog writes may not have
    db.session.rollback()
    return jsonify(err.to_dict()), err.http_status


# ---------------------------------------------------------------------------
# Customers & read model
# ---------------------------------------------------------------------------

@bp.post("/customers")
@limiter.limit(_write_limit)
@login_required
def onboard_customer():
    data = _payload()
    result = customers.onboard_customer(
        db.session,
        _identity(),
        name=data.get("name"),
        mobile=data.get("mobile"),
        locality=data.get("locality"),
        billing_address=data.get("billing_address"),
        remark=data.get("remark"),
        agent_id=data.get("agent_id"),
        connection_start_date=data.get("connection_start_date"),
        default_extra_charge=data.get("default_extra_charge", 0),
        default_discount=data.get("default_discount", 0),
        opening_balance=data.get("opening_balance", 0),
    )
    return jsonify(result.to_dict()), 201


@bp.get("/customers/<int:customer_id>")
@login_required
def get_customer(customer_id: int):
    customer = customers.get_customer(db.session, _identity(), customer_id)
    return jsonify(customer.to_dict()), 200


@bp.delete("/customers/<int:customer_id>")
@login_required
def delete_customer(customer_id: int):
    customer = customers.soft_delete_customer(db.session, _identity(), customer_id)
    return jsonify(customer.to_dict()), 200


@bp.get("/customers/<int:customer_id>/ledger")
@login_required
def customer_ledger(customer_id: int):
    limit = request.args.get("limit", type=int)
    max_page = current_app.config.get("LEDGER_MAX_PAGE_SIZE", 500)
    limit = min(limit or max_page, max_page)
    offset = request.args.get("offset", default=0, type=int)
    entries = customers.list_ledger(db.session, _identity(), customer_id, limit=limit, offset=offset)
    return jsonify([e.to_dict() for e in entries]), 200


@bp.get("/customers/<int:customer_id>/subscriptions")
@login_required
def customer_subscriptions(customer_id: int):
    subs = customers.subscription_history(db.session, _identity(), customer_id)
    return jsonify([s.to_dict() for s in subs]), 200


# ---------------------------------------------------------------------------
# Money-moving operations
# ---------------------------------------------------------------------------

@bp.post("/customers/<int:customer_id>/invoices")
@limiter.limit(_write_limit)
@login_required
def create_invoice(customer_id: int):
    data = _payload()
    result = engine.create_invoice(
        db.session,
        _identity(),
        customer_id,
        _int(data, "product_id"),
        start_date=data.get("start_date"),
        duration_days=data.get("duration_days"),
        note=data.get("note"),
        start_mode=data.get("start_mode"),
        price_override=data.get("price_override"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/customers/<int:customer_id>/payments")
@limiter.limit(_write_limit)
@login_required
def record_payment(customer_id: int):
    data = _payload()
    result = engine.record_payment(
        db.session,
        _identity(),
        customer_id,
        data.get("amount"),
        method=data.get("method") or current_app.config.get("DEFAULT_PAYMENT_METHOD"),
        note=data.get("note"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/customers/<int:customer_id>/addons")
@limiter.limit(_write_limit)
@login_required
def apply_addon(customer_id: int):
    data = _payload()
    result = engine.apply_addon_charge(
        db.session,
        _identity(),
        customer_id,
        item_index=data.get("item_index"),
        amount=data.get("amount"),
        note=data.get("note"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/customers/<int:customer_id>/adjustments")
@limiter.limit(_write_limit)
@login_required
def adjust_balance(customer_id: int):
    data = _payload()
    result = engine.adjust_balance(
        db.session,
        _identity(),
        customer_id,
        data.get("amount"),
        data.get("direction"),
        note=data.get("note"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/customers/<int:customer_id>/refunds")
@limiter.limit(_write_limit)
@login_required
def refund(customer_id: int):
    data = _payload()
    result = engine.refund_payment(
        db.session,
        _identity(),
        customer_id,
        data.get("amount"),
        reason=data.get("reason"),
        method=data.get("method") or current_app.config.get("DEFAULT_PAYMENT_METHOD"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/invoices/<invoice_id>/reverse")
@limiter.limit(_write_limit)
@login_required
def reverse_invoice(invoice_id: str):
    data = _payload()
    result = engine.reverse_invoice(db.session, _identity(), invoice_id, data.get("reason"))
    return jsonify(result.to_dict()), 201


@bp.post("/payments/<receipt_number>/reverse")
@limiter.limit(_write_limit)
@login_required
def reverse_payment(receipt_number: str):
    data = _payload()
    result = engine.reverse_payment(db.session, _identity(), receipt_number, data.get("reason"))
    return jsonify(result.to_dict()), 201


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@bp.post("/subscriptions/<int:subscription_id>/renew")
@limiter.limit(_write_limit)
@login_required
def renew(subscription_id: int):
    data = _payload()
    result = engine.renew_subscription(
        db.session,
        _identity(),
        subscription_id,
        start_mode=data.get("start_mode"),
        start_date=data.get("start_date"),
        duration_days=data.get("duration_days"),
        note=data.get("note"),
    )
    return jsonify(result.to_dict()), 201


@bp.post("/subscriptions/<int:subscription_id>/change-plan")
@limiter.limit(_write_limit)
@login_required
def change_plan(subscription_id: int):
    data = _payload()
    result = engine.change_plan(
        db.session,
        _identity(),
        subscription_id,
        _int(data, "product_id"),
        start_mode=data.get("start_mode"),
        start_date=data.get("start_date"),
        duration_days=data.get("duration_days"),
        prorate=_bool(data.get("prorate", False)),
        note=data.get("note"),
    )
    return jsonify(result.to_dict()), 201


@bp.get("/subscriptions/<int:subscription_id>/change-plan/quote")
@login_required
def quote_change_plan(subscription_id: int):
    product_id = _int(request.args, "product_id")
    quote = engine.quote_plan_change(db.session, _identity(), subscription_id, product_id)
    return jsonify(quote.to_dict()), 200


@bp.post("/subscriptions/<int:subscription_id>/pause")
@login_required
def pause(subscription_id: int):
    sub = subscriptions.pause_subscription(db.session, _identity(), subscription_id)
    return jsonify(sub.to_dict()), 200


@bp.post("/subscriptions/<int:subscription_id>/resume")
@login_required
def resume(subscription_id: int):
    sub = subscriptions.resume_subscription(db.session, _identity(), subscription_id)
    return jsonify(sub.to_dict()), 200


@bp.delete("/subscriptions/<int:subscription_id>")
@login_required
def remove(subscription_id: int):
    sub = subscriptions.remove_subscription(db.session, _identity(), subscription_id)
    return jsonify(sub.to_dict()), 200


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@bp.get("/products")
@login_required
def list_products():
    tenant_id = require_tenant(_identity())
    rows = (
        db.session.query(Product)
        .filter(Product.operator_id == tenant_id)
        .order_by(Product.name, Product.id)
        .all()
    )
    return jsonify([p.to_dict() for p in rows]), 200


@bp.post("/products")
@login_required
def create_product():
    data = _payload()
    product = catalog.create_product(
        db.session,
        _identity(),
        name=data.get("name"),
        customer_price=data.get("customer_price"),
        operator_cost=data.get("operator_cost", 0),
        interval_value=data.get("interval_value", 30),
        interval_unit=data.get("interval_unit", "days"),
        plan_type=data.get("plan_type", "BASE"),
    )
    db.session.commit()
    return jsonify(product.to_dict()), 201


@bp.get("/items")
@login_required
def list_items():
    tenant_id = require_tenant(_identity())
    items = catalog.list_operator_items(db.session, tenant_id)
    return jsonify([dict(i.to_dict(), index=idx) for idx, i in enumerate(items)]), 200


@bp.post("/items")
@login_required
def create_item():
    data = _payload()
    item = catalog.add_operator_item(
        db.session,
        _identity(),
        name=data.get("name"),
        selling_price=data.get("selling_price"),
        cost_price=data.get("cost_price", 0),
        default_note=data.get("default_note"),
    )
    db.session.commit()
    return jsonify(item.to_dict()), 201


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@bp.get("/audit")
@login_required
def audit():
    tenant_id = require_operator(_identity(), "audit balances")
    drifts = audit_balances(db.session, tenant_id=tenant_id)
    return jsonify({"drift_count": len(drifts), "drifts": [d.to_dict() for d in drifts]}), 200
