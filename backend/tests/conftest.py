"""
Pytest fixtures for LanePay backend tests.

Provides test database setup, scripted payment providers, a fake
accounting system, and test client.
"""

import json
import socket
import threading
from decimal import Decimal

import pytest

from lanepay import create_app
from lanepay.accounting import EXTENSION_KEY as ACCOUNTING_KEY, AccountingUnavailable
from lanepay.extensions import db
from lanepay.models.orders import PAYMENT_AUTHORIZED, PAYMENT_CAPTURED
from lanepay.providers import EXTENSION_KEY as PROVIDERS_KEY, PROCESSOR_KEY
from lanepay.providers.base import (
    LAN_TERMINAL,
    STATUS_APPROVED,
    STATUS_DECLINED,
    STATUS_PENDING,
    ConnectionReport,
    DeviceInfo,
    PaymentResult,
    PendingHandle,
    ReversalReceipt,
    StatusResult,
    require_action,
)
from lanepay.services import ledger_service as ledger


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PAYMENT_WORKER_INLINE': True,
    'PAYMENT_AUTO_POLL': False,
    'PAYMENT_POLL_INTERVAL_MS': 0,
    'PAYMENT_POLL_MAX_ATTEMPTS': 5,
    'SYNC_AUTO_FORWARD': False,
    'SYNC_SCHEDULER_ENABLED': False,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# SCRIPTED PROVIDERS
# =============================================================================

def approved(transaction_id, amount="25.00", status=PAYMENT_CAPTURED, auto_capture=False):
    """Synchronous approval as a terminal or processor would return it."""
    return PaymentResult(
        transaction_id=transaction_id,
        status=status,
        amount=Decimal(amount),
        auth_code="A1B2C3",
        auto_capture=auto_capture,
        message="Approved",
        raw={"transactionId": transaction_id, "status": "APPROVED"},
    )


def authorized(transaction_id, amount="25.00"):
    return approved(transaction_id, amount, status=PAYMENT_AUTHORIZED, auto_capture=True)


def pending(transaction_id):
    return PendingHandle(transaction_id=transaction_id, message="Complete payment on device",
                         raw={"transactionId": transaction_id, "status": "PENDING"})


def status(kind, transaction_id="TXN-1", settled=False, message=None):
    return StatusResult(status=kind, transaction_id=transaction_id, settled=settled,
                        message=message, raw={"status": kind})


def status_pending(transaction_id="TXN-1"):
    return status(STATUS_PENDING, transaction_id)


def status_approved(transaction_id="TXN-1", settled=False):
    return status(STATUS_APPROVED, transaction_id, settled=settled)


def status_declined(transaction_id="TXN-1", message="Insufficient funds"):
    return status(STATUS_DECLINED, transaction_id, message=message)


class ScriptedProvider:
    """
    Provider whose answers are queued by the test.

    initiate: results/exceptions returned by successive initiate_payment calls
    statuses: results/exceptions for successive check_status calls; the last repeats
    """

    def __init__(self, name=LAN_TERMINAL, *, initiate=(), statuses=(), reversal_error=None):
        self.name = name
        self.initiate_results = list(initiate)
        self.statuses = list(statuses)
        self.reversal_error = reversal_error
        self.requests = []
        self.status_checks = []
        self.reversals = []

    def discover(self):
        return [DeviceInfo(device_id="SN-1", name="Scripted terminal", provider=self.name)]

    def test_connection(self, target=None):
        return ConnectionReport(reachable=True, detail="Scripted provider reachable", latency_ms=1)

    def initiate_payment(self, request):
        self.requests.append(request)
        result = self.initiate_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def check_status(self, transaction_id, target=None):
        self.status_checks.append(transaction_id)
        result = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(result, Exception):
            raise result
        return result

    def void_or_refund(self, transaction_id, target, action, amount=None):
        action = require_action(action)
        self.reversals.append((action, transaction_id, amount))
        if self.reversal_error is not None:
            raise self.reversal_error
        return ReversalReceipt(transaction_id=transaction_id, action=action,
                               reference_id=f"REF-{len(self.reversals)}", message=f"{action} approved",
                               raw={"status": "SUCCESS"})


class FakeTerminal:
    """One-connection-at-a-time TCP server answering each request line with a queued reply."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.received = []
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen()
        self.port = self.server.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        for reply in self.replies:
            conn, _ = self.server.accept()
            with conn:
                buffer = b""
                while b"\n" not in buffer:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    buffer += chunk
                self.received.append(json.loads(buffer.split(b"\n", 1)[0]))
                conn.sendall(reply.encode("utf-8") + b"\n")

    def close(self):
        self.thread.join(timeout=5)
        self.server.close()


@pytest.fixture
def terminal_factory():
    """Local TCP terminals; each answers its queued replies in order."""
    terminals = []

    def _make(*replies):
        terminal = FakeTerminal(*replies)
        terminals.append(terminal)
        return terminal

    yield _make

    for terminal in terminals:
        terminal.close()


@pytest.fixture(scope='function')
def install_provider(app):
    """Swap scripted providers into the registry for one test."""
    original = dict(app.extensions[PROVIDERS_KEY])

    def _install(provider):
        app.extensions[PROVIDERS_KEY][provider.name] = provider
        return provider

    yield _install

    app.extensions[PROVIDERS_KEY] = original


class FakeProcessorReports:
    """Authorize.Net reporting stand-in: returns queued transaction lists."""

    def __init__(self):
        self.transactions = []
        self.error = None
        self.windows = []

    def get_recent_transactions(self, since, until=None):
        self.windows.append((since, until))
        if self.error is not None:
            raise self.error
        return list(self.transactions)


@pytest.fixture(scope='function')
def processor_reports(app):
    """Swap the shared card processor client for a fake reporting source."""
    original = app.extensions[PROCESSOR_KEY]
    fake = FakeProcessorReports()
    app.extensions[PROCESSOR_KEY] = fake

    yield fake

    app.extensions[PROCESSOR_KEY] = original


# =============================================================================
# ACCOUNTING
# =============================================================================

class FakeAccountingClient:
    """
    In-memory Zoho Books stand-in.

    lose_next_response: the next create stores the receipt and then fails,
    the way a response lost in transit looks to the caller.
    """

    def __init__(self):
        self.receipts = {}
        self.find_calls = 0
        self.create_calls = 0
        self.unavailable = False
        self.lose_next_response = False

    def find_sales_receipt(self, invoice_number):
        self.find_calls += 1
        if self.unavailable:
            raise AccountingUnavailable("Cannot reach Zoho Books: connection refused")
        return self.receipts.get(invoice_number)

    def create_sales_receipt(self, snapshot):
        self.create_calls += 1
        if self.unavailable:
            raise AccountingUnavailable("Cannot reach Zoho Books: connection refused")
        receipt_id = f"ZR-{len(self.receipts) + 1:04d}"
        self.receipts[snapshot.invoice_number] = receipt_id
        if self.lose_next_response:
            self.lose_next_response = False
            raise AccountingUnavailable("Cannot reach Zoho Books: connection reset by peer")
        return receipt_id


@pytest.fixture(scope='function')
def accounting(app):
    """Fake accounting client with automatic forwarding on PAID enabled."""
    original_client = app.extensions[ACCOUNTING_KEY]
    original_forward = app.config['SYNC_AUTO_FORWARD']

    fake = FakeAccountingClient()
    app.extensions[ACCOUNTING_KEY] = fake
    app.config['SYNC_AUTO_FORWARD'] = True

    yield fake

    app.extensions[ACCOUNTING_KEY] = original_client
    app.config['SYNC_AUTO_FORWARD'] = original_forward


# =============================================================================
# ORDERS
# =============================================================================

@pytest.fixture(scope='function')
def open_order(db_session):
    """OPEN order for 25.00 with invoice INV-1."""
    return ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number="INV-1")
