from __future__ import annotations

from typing import Any, List, Optional

from sqlalchemy.orm import Session

from cablebill.models import Agent, Operator, OperatorItem, Product
from cablebill.models.product import INTERVAL_UNITS, PLAN_BASE, PLAN_TYPES
from cablebill.utils.validators import clean_str, parse_amount
from .errors import NotFound, ValidationError, require_positive
from .identity import Identity, require_operator


def create_operator(session: Session, name: str, contact: Optional[str] = None) -> Operator:
    clean_name = clean_str(name)
    if not clean_name:
        raise ValidationError("name is required.", field="name")
    op = Operator(name=clean_name, contact=clean_str(contact, 64), is_active=True)
    session.add(op)
    session.flush()
    return op


def get_operator(session: Session, operator_id: int) -> Operator:
    op = session.get(Operator, operator_id)
    if op is None:
        raise NotFound(f"Operator {operator_id} not found.", operator_id=operator_id)
    return op


def create_agent(session: Session, operator_id: int, name: str, contact: Optional[str] = None) -> Agent:
    get_operator(session, operator_id)
    clean_name = clean_str(name)
    if not clean_name:
        raise ValidationError("name is required.", field="name")
    agent = Agent(operator_id=operator_id, name=clean_name, contact=clean_str(contact, 64), is_active=True)
    session.add(agent)
    session.flush()
    return agent


def create_product(
    session: Session,
    identity: Identity,
    *,
    name: str,
    customer_price: Any,
    operator_cost: Any = 0,
    interval_value: Any = 30,
    interval_unit: str = "days",
    plan_type: str = PLAN_BASE,
) -> Product:
    tenant_id = require_operator(identity, "manage products")
    clean_name = clean_str(name)
    if not clean_name:
        raise ValidationError("name is required.", field="name")
    price = require_positive(parse_amount(customer_price), "customer_price")
    cost = parse_amount(operator_cost or 0)
    if cost is None or cost < 0:
        raise ValidationError("operator_cost must be a non-negative number.", field="operator_cost")
    unit = (interval_unit or "").strip().lower()
    if unit not in INTERVAL_UNITS:
        raise ValidationError("interval_unit must be 'days' or 'months'.", field="interval_unit")
    try:
        value = int(interval_value)
    except (TypeError, ValueError):
        raise ValidationError("interval_value must be a whole number.", field="interval_value")
    if value <= 0:
        raise ValidationError("interval_value must be positive.", field="interval_value")
    kind = (plan_type or PLAN_BASE).strip().upper()
    if kind not in PLAN_TYPES:
        raise ValidationError("plan_type must be BASE or ADDON.", field="plan_type")

    product = Product(
        operator_id=tenant_id,
        name=clean_name,
        plan_type=kind,
        customer_price=price,
        operator_cost=cost,
        interval_value=value,
        interval_unit=unit,
        is_active=True,
    )
    session.add(product)
    session.flush()
    return product


def add_operator_item(
    session: Session,
    identity: Identity,
    *,
    name: str,
    selling_price: Any,
    cost_price: Any = 0,
    default_note: Optional[str] = None,
) -> OperatorItem:
    """Append an add-on item; it is billed by its index in list_operator_items."""
    tenant_id = require_operator(identity, "manage add-on items")
    clean_name = clean_str(name)
    if not clean_name:
        raise ValidationError("name is required.", field="name")
    price = require_positive(parse_amount(selling_price), "selling_price")
    cost = parse_amount(cost_price or 0)
    if cost is None or cost < 0:
        raise ValidationError("cost_price must be a non-negative number.", field="cost_price")
    position = session.query(OperatorItem).filter(OperatorItem.operator_id == tenant_id).count()
    item = OperatorItem(
        operator_id=tenant_id,
        name=clean_name,
        selling_price=price,
        cost_price=cost,
        default_note=clean_str(default_note),
        position=position,
    )
    session.add(item)
    session.flush()
    return item


def list_operator_items(session: Session, tenant_id: int) -> List[OperatorItem]:
    return (
        session.query(OperatorItem)
        .filter(OperatorItem.operator_id == tenant_id)
        .order_by(OperatorItem.position, OperatorItem.id)
        .all()
    )
