from .orders import Order, Payment, OrderEvent
from .sequences import InvoiceSequence

__all__ = [
    'Order', 'Payment', 'OrderEvent',
    'InvoiceSequence',
]
