from sqlalchemy import func, CheckConstraint
from cablebill.extensions import db

PLAN_BASE = "BASE"
PLAN_ADDON = "ADDON"
PLAN_TYPES = (PLAN_BASE, PLAN_ADDON)

UNIT_DAYS = "days"
UNIT_MONTHS = "months"
INTERVAL_UNITS = (UNIT_DAYS, UNIT_MONTHS)

class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="RESTRICT"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    plan_type = db.Column(db.String(10), nullable=False, default=PLAN_BASE, server_default=PLAN_BASE)

    # The price charged to the customer / the cost incurred by the operator
    customer_price = db.Column(db.Float, nullable=False)
    operator_cost = db.Column(db.Float, nullable=False, default=0.0)

    interval_value = db.Column(db.Integer, nullable=False, default=30)
    interval_unit = db.Column(db.String(10), nullable=False, default=UNIT_DAYS, server_default=UNIT_DAYS)

    is_active = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("plan_type IN ('BASE','ADDON')", name="ck_products_plan_type_valid"),
        CheckConstraint("interval_unit IN ('days','months')", name="ck_products_interval_unit_valid"),
        CheckConstraint("interval_value > 0", name="ck_products_interval_value_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "name": self.name,
            "plan_type": self.plan_type,
            "customer_price": self.customer_price,
            "operator_cost": self.operator_cost,
            "billing_interval": {"value": self.interval_value, "unit": self.interval_unit},
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} price={self.customer_price}>"
