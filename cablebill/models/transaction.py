from sqlalchemy import event, CheckConstraint, Index
from cablebill.extensions import db
from cablebill.utils.dates import utcnow
from cablebill.utils.helpers import iso

TYPE_INVOICE = "INVOICE"
TYPE_PAYMENT = "PAYMENT"
TYPE_ADDON = "ADDON"
TYPE_ADJUSTMENT = "ADJUSTMENT"
TYPE_REVERSAL = "REVERSAL"
TYPE_REFUND = "REFUND"


class LedgerImmutableError(RuntimeError):
    """Raised when something tries to rewrite ledger history."""


class LedgerEntry(db.Model):
    """
    Append-only, signed-amount history per customer.

    INVOICE/ADDON are positive, PAYMENT/REFUND negative, ADJUSTMENT either way,
    REVERSAL is the negation of the entry it reverses. Rows are never updated
    or deleted; corrections are new entries.
    """
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id", ondelete="RESTRICT"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Who performed it
    collected_by = db.Column(db.Integer, nullable=False)
    collected_by_type = db.Column(db.String(10), nullable=False)

    type = db.Column(db.String(12), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    balance_before = db.Column(db.Float, nullable=False)
    balance_after = db.Column(db.Float, nullable=False)

    # Identifiers
    invoice_id = db.Column(db.String(16), nullable=True, index=True)
    receipt_number = db.Column(db.String(16), nullable=True, index=True)
    refund_id = db.Column(db.String(16), nullable=True, index=True)
    reversed_entry_id = db.Column(db.Integer, db.ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True, unique=True)

    # Period covered (INVOICE)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=True)
    start_date = db.Column(db.DateTime, nullable=True)
    expiry_date = db.Column(db.DateTime, nullable=True)

    # Billing breakdown
    base_amount = db.Column(db.Float, nullable=False, default=0.0)
    extra_charge = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)
    net_amount = db.Column(db.Float, nullable=False, default=0.0)
    cost_of_goods_sold = db.Column(db.Float, nullable=False, default=0.0)
    profit = db.Column(db.Float, nullable=False, default=0.0)

    method = db.Column(db.String(20), nullable=True)
    is_opening_balance = db.Column(db.Boolean, nullable=False, default=False)
    note = db.Column(db.Text, nullable=True)

    # Set in Python for microsecond ordering; ties break on id
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('INVOICE','PAYMENT','ADDON','ADJUSTMENT','REVERSAL','REFUND')",
            name="ck_transactions_type_valid",
        ),
        CheckConstraint("collected_by_type IN ('Operator','Agent')", name="ck_transactions_actor_valid"),
        Index("ix_transactions_operator_customer_created", operator_id, customer_id, created_at),
        Index("ix_transactions_operator_type_created", operator_id, type, created_at),
        Index("ix_transactions_operator_invoice", operator_id, invoice_id),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "customer_id": self.customer_id,
            "collected_by": self.collected_by,
            "collected_by_type": self.collected_by_type,
            "type": self.type,
            "amount": self.amount,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "invoice_id": self.invoice_id,
            "receipt_number": self.receipt_number,
            "refund_id": self.refund_id,
            "reversed_entry_id": self.reversed_entry_id,
            "product_id": self.product_id,
            "start_date": iso(self.start_date),
            "expiry_date": iso(self.expiry_date),
            "base_amount": self.base_amount,
            "extra_charge": self.extra_charge,
            "discount": self.discount,
            "net_amount": self.net_amount,
            "cost_of_goods_sold": self.cost_of_goods_sold,
            "profit": self.profit,
            "method": self.method,
            "is_opening_balance": self.is_opening_balance,
            "note": self.note,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry id={self.id} type={self.type} amount={self.amount} customer_id={self.customer_id}>"


@event.listens_for(LedgerEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is immutable; write a compensating entry instead.")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be deleted.")
