from .operator import Operator, Agent, OperatorItem
from .product import Product
from .customer import Customer
from .subscription import Subscription
from .transaction import LedgerEntry, LedgerImmutableError
from .counter import Counter

__all__ = [
    "Operator",
    "Agent",
    "OperatorItem",
    "Product",
    "Customer",
    "Subscription",
    "LedgerEntry",
    "LedgerImmutableError",
    "Counter",
]
