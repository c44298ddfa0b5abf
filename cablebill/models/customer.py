from __future__ import annotations

from sqlalchemy import Index, text
from sqlalchemy.sql import func

from cablebill.extensions import db
from cablebill.utils.helpers import iso


class Customer(db.Model):
    __tablename__ = "customers"
    __allow_unmapped__ = True

    id = db.Column(db.Integer, primary_key=True)

    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="RESTRICT"), index=True, nullable=False)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id", ondelete="SET NULL"), index=True, nullable=True)

    # Profile
    customer_code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    mobile = db.Column(db.String(16), nullable=True)
    locality = db.Column(db.String(255), nullable=True)
    billing_address = db.Column(db.Text, nullable=True)
    remark = db.Column(db.Text, nullable=True)
    connection_start_date = db.Column(db.DateTime, nullable=True)

    # Flat adjustments applied to every invoice
    default_extra_charge = db.Column(db.Float, nullable=False, default=0.0)
    default_discount = db.Column(db.Float, nullable=False, default=0.0)

    # Ledger projection (derived; recomputable from transactions + subscriptions)
    balance_amount = db.Column(db.Float, nullable=False, default=0.0, server_default=text("0"))
    last_bill_date = db.Column(db.DateTime, nullable=True)
    last_bill_amount = db.Column(db.Float, nullable=True)
    last_payment_amount = db.Column(db.Float, nullable=True)
    last_payment_date = db.Column(db.DateTime, nullable=True)
    last_payment_method = db.Column(db.String(20), nullable=True)
    earliest_expiry = db.Column(db.DateTime, nullable=True, index=True)
    active_subscription_ids = db.Column(db.JSON, nullable=False, default=list)

    # Lifecycle
    active = db.Column(db.Boolean, nullable=False, default=True, server_default=text("true"))
    deleted = db.Column(db.Boolean, nullable=False, default=False, server_default=text("false"))

    # Optimistic lock: concurrent writers to one customer cannot both win
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        db.UniqueConstraint("operator_id", "customer_code", name="uq_customers_operator_code"),
        Index("ix_customers_operator_active", operator_id, active),
        Index("ix_customers_name", name),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "agent_id": self.agent_id,
            "customer_code": self.customer_code,
            "name": self.name,
            "mobile": self.mobile,
            "locality": self.locality,
            "balance_amount": self.balance_amount,
            "last_bill_date": iso(self.last_bill_date),
            "last_bill_amount": self.last_bill_amount,
            "last_payment_amount": self.last_payment_amount,
            "last_payment_date": iso(self.last_payment_date),
            "last_payment_method": self.last_payment_method,
            "earliest_expiry": iso(self.earliest_expiry),
            "active_subscriptions": list(self.active_subscription_ids or []),
            "default_extra_charge": self.default_extra_charge,
            "default_discount": self.default_discount,
            "active": self.active,
            "deleted": self.deleted,
        }

    def __repr__(self) -> str:
        return f"<Customer id={self.id} code={self.customer_code!r} balance={self.balance_amount}>"
