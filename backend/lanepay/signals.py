# Overview: Ledger signals consumed by the accounting sync forwarder.

from blinker import Namespace

_signals = Namespace()

# Sent after the PAID transition is committed.
# Sender is the Flask app; receivers get order_id and must not assume an open transaction.
order_paid = _signals.signal("order-paid")
