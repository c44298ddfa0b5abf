from sqlalchemy import func
from cablebill.extensions import db

class Counter(db.Model):
    """Next value for a named sequence, e.g. '<operator>-202506' or 'receipt-<operator>'."""
    __tablename__ = "counters"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="CASCADE"), nullable=True, index=True)
    year_month = db.Column(db.String(6), nullable=True)
    value = db.Column(db.Integer, nullable=False, default=0, server_default=db.text("0"))

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Counter name={self.name!r} value={self.value}>"
