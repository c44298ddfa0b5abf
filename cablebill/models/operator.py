from sqlalchemy import func, CheckConstraint
from cablebill.extensions import db

class Operator(db.Model):
    __tablename__ = "operators"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)  # business / cable name
    contact = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "contact": self.contact, "is_active": self.is_active}

    def __repr__(self) -> str:
        return f"<Operator id={self.id} name={self.name!r}>"


class Agent(db.Model):
    __tablename__ = "agents"

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    contact = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "name": self.name,
            "contact": self.contact,
            "is_active": self.is_active,
        }


class OperatorItem(db.Model):
    """Pre-defined add-on charge (wiring, extra TV point, ...) billed by index."""
    __tablename__ = "operator_items"

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    selling_price = db.Column(db.Float, nullable=False)
    cost_price = db.Column(db.Float, nullable=False, default=0.0)
    default_note = db.Column(db.String(255), nullable=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("selling_price > 0", name="ck_operator_items_selling_price_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "selling_price": self.selling_price,
            "cost_price": self.cost_price,
            "default_note": self.default_note,
            "position": self.position,
        }
