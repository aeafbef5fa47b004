# Overview: Pytest coverage for ledger transitions racing on real threads against a file-backed database.

import threading
import time
from contextlib import nullcontext

import pytest

from lanepay import create_app
from lanepay.extensions import db
from lanepay.models import Payment
from lanepay.models.orders import (
    ORDER_OPEN,
    ORDER_PAID,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
    PAYMENT_PENDING,
)
from lanepay.providers import EXTENSION_KEY as PROVIDERS_KEY
from lanepay.providers.base import CARD_READER, CLOUD_TERMINAL
from lanepay.services import ledger_service as ledger
from lanepay.services import payment_flow_service as flow
from lanepay.services.ledger_service import InvalidTransition, PaymentInProgress
from lanepay.services.worker import get_worker
from lanepay.validation import ConflictError

from conftest import TEST_CONFIG, ScriptedProvider, status_approved, status_pending


@pytest.fixture
def race_app(tmp_path):
    """App on its own SQLite file with a threaded worker; each thread gets its own session."""
    race_app = create_app({
        **TEST_CONFIG,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 15}},
        'PAYMENT_WORKER_INLINE': False,
        'PAYMENT_POLL_INTERVAL_MS': 10,
        'PAYMENT_POLL_MAX_ATTEMPTS': 1000,
    })

    with race_app.app_context():
        db.create_all()
        yield race_app
        get_worker().shutdown(wait=True)
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture(params=["order_lock", "compare_and_set_only"])
def serialization(request, monkeypatch):
    """Run with the in-process order lock, and with only the database version check."""
    if request.param == "compare_and_set_only":
        monkeypatch.setattr(ledger, "order_lock", lambda order_id: nullcontext())
    return request.param


def _race(app, *calls):
    """Start every call on its own thread at the same moment; return (kind, value) per call."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def run(index, call):
        with app.app_context():
            try:
                barrier.wait()
                results[index] = ("ok", call())
            except ConflictError as exc:
                results[index] = ("conflict", exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _pending_cloud_payment(invoice_number, transaction_id):
    order = ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number=invoice_number)
    payment = ledger.attach_payment(order.id, CLOUD_TERMINAL, "25.00")
    ledger.record_pending(payment.id, transaction_id)
    return order.id, payment.id


class TestConcurrentAttach:

    def test_exactly_one_attempt_is_admitted(self, race_app, serialization):
        order_id = ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number="RACE-1").id

        results = _race(
            race_app,
            lambda: ledger.attach_payment(order_id, CARD_READER, "25.00").id,
            lambda: ledger.attach_payment(order_id, CARD_READER, "25.00").id,
        )

        kinds = sorted(kind for kind, _ in results)
        assert kinds == ["conflict", "ok"]
        winner = next(value for kind, value in results if kind == "ok")
        loser = next(value for kind, value in results if kind == "conflict")
        assert isinstance(loser, PaymentInProgress)
        assert loser.payment_id == winner

        db.session.expire_all()
        payments = db.session.query(Payment).filter_by(order_id=order_id).all()
        assert [(p.id, p.status) for p in payments] == [(winner, PAYMENT_PENDING)]


class TestApprovalAgainstRelease:

    def test_exactly_one_resolution_wins(self, race_app, serialization):
        order_id, payment_id = _pending_cloud_payment("RACE-2", "CLD-R2")

        def approve():
            ledger.record_authorization(payment_id, transaction_id="CLD-R2", status=PAYMENT_AUTHORIZED,
                                        auto_capture=True)
            return ledger.mark_paid(order_id, payment_id).status

        def release():
            return ledger.release_payment(order_id, reason="Terminal shows no charge").status

        results = _race(race_app, approve, release)

        (approve_kind, approve_value), (release_kind, release_value) = results
        assert sorted([approve_kind, release_kind]) == ["conflict", "ok"]

        db.session.expire_all()
        order = ledger.get_order(order_id)
        payment = ledger.get_payment(payment_id)
        if approve_kind == "ok":
            assert approve_value == ORDER_PAID
            assert "no pending payment" in str(release_value)
            assert (order.status, payment.status) == (ORDER_PAID, PAYMENT_AUTHORIZED)
        else:
            assert release_value == PAYMENT_CANCELLED
            assert isinstance(approve_value, InvalidTransition)
            assert (order.status, payment.status) == (ORDER_OPEN, PAYMENT_CANCELLED)
        assert order.needs_reconciliation is False


class GatedProvider(ScriptedProvider):
    """Holds each status check until the test opens the gate."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def check_status(self, transaction_id, target=None):
        self.entered.set()
        self.gate.wait(10)
        return super().check_status(transaction_id, target)


class TestBackgroundPollAgainstRelease:

    def test_release_while_polling_leaves_order_unflagged(self, race_app):
        race_app.extensions[PROVIDERS_KEY][CLOUD_TERMINAL] = ScriptedProvider(
            CLOUD_TERMINAL, statuses=[status_pending("CLD-R3")])
        order_id, payment_id = _pending_cloud_payment("RACE-3", "CLD-R3")

        future = get_worker().submit(flow.poll_payment, order_id)
        assert _wait_for(lambda: get_worker().is_polling(order_id))

        ledger.release_payment(order_id, reason="Customer walked away")
        flow.cancel_polling(order_id)
        result = future.result(timeout=10)

        assert result.outcome == flow.OUTCOME_CANCELLED
        assert "resolved as CANCELLED" in result.message
        db.session.expire_all()
        order = ledger.get_order(order_id)
        assert order.needs_reconciliation is False
        assert "order.flagged" not in [e.event_type for e in ledger.get_order_events(order_id)]
        assert ledger.get_payment(payment_id).status == PAYMENT_CANCELLED

    def test_approval_arriving_after_release_loses(self, race_app):
        provider = GatedProvider(CLOUD_TERMINAL, statuses=[status_approved("CLD-R4")])
        race_app.extensions[PROVIDERS_KEY][CLOUD_TERMINAL] = provider
        order_id, payment_id = _pending_cloud_payment("RACE-4", "CLD-R4")

        future = get_worker().submit(flow.poll_payment, order_id)
        assert provider.entered.wait(5)

        ledger.release_payment(order_id, reason="Terminal shows no charge")
        provider.gate.set()

        assert isinstance(future.exception(timeout=10), InvalidTransition)
        db.session.expire_all()
        assert ledger.get_order(order_id).status == ORDER_OPEN
        assert ledger.get_payment(payment_id).status == PAYMENT_CANCELLED
        assert "order.paid" not in [e.event_type for e in ledger.get_order_events(order_id)]
