from .customers import Customer
from .ledger import Transaction, PaymentAudit

__all__ = [
    'Customer',
    'Transaction', 'PaymentAudit',
]
