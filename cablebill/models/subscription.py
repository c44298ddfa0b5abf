from sqlalchemy import func, CheckConstraint, Index
from cablebill.extensions import db
from cablebill.utils.helpers import iso

STATUS_ACTIVE = "ACTIVE"
STATUS_EXPIRED = "EXPIRED"
STATUS_PAUSED = "PAUSED"
STATUS_TERMINATED = "TERMINATED"

class Subscription(db.Model):
    """One purchased plan-period for a customer."""
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="RESTRICT"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Copied from the product for filtering without a join
    plan_type = db.Column(db.String(10), nullable=False, index=True)

    start_date = db.Column(db.DateTime, nullable=False)
    expiry_date = db.Column(db.DateTime, nullable=False, index=True)

    # Snapshot at creation; later product edits never rewrite history
    interval_value = db.Column(db.Integer, nullable=False)
    interval_unit = db.Column(db.String(10), nullable=False)
    customer_price = db.Column(db.Float, nullable=False)
    operator_cost = db.Column(db.Float, nullable=False)

    status = db.Column(db.String(16), nullable=False, index=True, default=STATUS_ACTIVE, server_default=STATUS_ACTIVE)

    # 1 = first purchase, 2 = first renewal of the same product lineage, ...
    renewal_number = db.Column(db.Integer, nullable=False, default=1)
    # Row this one superseded on renewal; restored if this invoice is reversed
    previous_subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    pause_date = db.Column(db.DateTime, nullable=True)
    resume_date = db.Column(db.DateTime, nullable=True)

    # Invoice number of the ledger entry that created this row
    invoice_id = db.Column(db.String(16), nullable=True, index=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE','EXPIRED','PAUSED','TERMINATED')",
            name="ck_subscriptions_status_valid",
        ),
        Index("ix_subscriptions_operator_expiry", operator_id, expiry_date),
        Index("ix_subscriptions_operator_customer_status", operator_id, customer_id, status),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "operator_id": self.operator_id,
            "product_id": self.product_id,
            "plan_type": self.plan_type,
            "start_date": iso(self.start_date),
            "expiry_date": iso(self.expiry_date),
            "billing_interval": {"value": self.interval_value, "unit": self.interval_unit},
            "customer_price": self.customer_price,
            "operator_cost": self.operator_cost,
            "status": self.status,
            "renewal_number": self.renewal_number,
            "previous_subscription_id": self.previous_subscription_id,
            "pause_date": iso(self.pause_date),
            "resume_date": iso(self.resume_date),
            "invoice_id": self.invoice_id,
            "notes": self.notes,
        }

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} customer_id={self.customer_id} status={self.status!r} expiry={self.expiry_date}>"
