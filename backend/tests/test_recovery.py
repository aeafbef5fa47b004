# Overview: Pytest coverage for recovering processor charges the ledger never recorded.

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from flask import current_app

from lanepay import create_app
from lanepay.models.orders import (
    ORDER_OPEN,
    ORDER_PAID,
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_PENDING,
)
from lanepay.providers.base import CARD_READER, CLOUD_TERMINAL, MANUAL_CARD, GatewayUnreachable
from lanepay.services import ledger_service as ledger
from lanepay.services import recovery_service as recovery
from lanepay.services.worker import ScheduledJob
from lanepay.time_utils import to_utc_z

from conftest import TEST_CONFIG


def _txn(order, transaction_id, *, status="capturedPendingSettlement", amount=25.0, minutes=2, invoice=None):
    """A getUnsettledTransactionList / getTransactionList entry for the order."""
    return {
        "transId": transaction_id,
        "submitTimeUTC": to_utc_z(order.created_at + timedelta(minutes=minutes)),
        "transactionStatus": status,
        "invoiceNumber": invoice if invoice is not None else order.invoice_number,
        "accountType": "Visa",
        "accountNumber": "XXXX1111",
        "settleAmount": amount,
    }


class TestRecovery:

    def test_unrecorded_charge_pays_the_order(self, processor_reports, open_order):
        processor_reports.transactions = [_txn(open_order, "60030001")]

        report = recovery.reconcile_recent_transactions()

        order = ledger.get_order(open_order.id)
        payment = ledger.get_current_payment(open_order.id)
        assert order.status == ORDER_PAID
        assert (payment.transaction_id, payment.status, payment.auto_capture) == ("60030001", PAYMENT_AUTHORIZED, True)
        assert payment.provider == CARD_READER
        assert payment.amount == Decimal("25.00")
        assert report.recovered == [{
            "order_id": open_order.id,
            "invoice_number": "INV-1",
            "payment_id": payment.id,
            "transaction_id": "60030001",
            "status": PAYMENT_AUTHORIZED,
        }]
        events = [e.event_type for e in ledger.get_order_events(open_order.id)]
        assert events[-2:] == ["payment.recovered", "order.paid"]

    def test_settled_charge_is_recorded_captured(self, processor_reports, open_order):
        processor_reports.transactions = [_txn(open_order, "60030002", status="settledSuccessfully")]

        recovery.reconcile_recent_transactions()

        payment = ledger.get_current_payment(open_order.id)
        assert payment.status == PAYMENT_CAPTURED
        assert payment.settled_at is not None
        assert ledger.payment_actions(ledger.get_order(open_order.id)) == {"can_void": False, "can_refund": True}

    def test_second_run_finds_it_already_recorded(self, processor_reports, open_order):
        processor_reports.transactions = [_txn(open_order, "60030003")]
        recovery.reconcile_recent_transactions()

        report = recovery.reconcile_recent_transactions()

        assert report.recovered == []
        assert report.already_recorded == 1
        assert len(ledger.get_order(open_order.id).payments) == 1

    def test_recorded_through_a_normal_payment_is_left_alone(self, processor_reports, open_order):
        payment = ledger.attach_payment(open_order.id, MANUAL_CARD, "25.00")
        ledger.record_authorization(payment.id, transaction_id="60030004", status=PAYMENT_AUTHORIZED,
                                    auto_capture=True)
        ledger.mark_paid(open_order.id, payment.id)
        processor_reports.transactions = [_txn(open_order, "60030004")]

        report = recovery.reconcile_recent_transactions()

        assert report.already_recorded == 1
        assert [e.event_type for e in ledger.get_order_events(open_order.id)].count("payment.recovered") == 0

    @pytest.mark.parametrize("overrides", [
        {"amount": 24.98},
        {"minutes": 16},
        {"minutes": -1},
        {"status": "declined"},
        {"status": "voided"},
        {"invoice": "INV-404"},
    ])
    def test_non_matching_transactions_leave_order_open(self, processor_reports, open_order, overrides):
        processor_reports.transactions = [_txn(open_order, "60030005", **overrides)]

        report = recovery.reconcile_recent_transactions()

        assert report.recovered == []
        assert report.unmatched == 1
        assert ledger.get_order(open_order.id).status == ORDER_OPEN
        assert ledger.get_order(open_order.id).payments == []

    def test_amount_within_tolerance_matches(self, processor_reports, open_order):
        processor_reports.transactions = [_txn(open_order, "60030006", amount=25.01)]

        report = recovery.reconcile_recent_transactions()

        assert len(report.recovered) == 1
        assert ledger.get_current_payment(open_order.id).amount == Decimal("25.01")

    def test_unreadable_entry_is_skipped(self, processor_reports, open_order):
        entry = _txn(open_order, "60030007")
        entry["submitTimeUTC"] = "yesterday"
        processor_reports.transactions = [entry]

        report = recovery.reconcile_recent_transactions()

        assert report.skipped[0]["transaction_id"] == "60030007"
        assert ledger.get_order(open_order.id).status == ORDER_OPEN

    def test_pending_attempt_with_provisional_id_is_completed(self, processor_reports, open_order):
        attempt = ledger.attach_payment(open_order.id, MANUAL_CARD, "25.00")
        processor_reports.transactions = [_txn(open_order, "60030008")]

        recovery.reconcile_recent_transactions()

        payment = ledger.get_payment(attempt.id)
        assert (payment.status, payment.transaction_id, payment.provider) == (
            PAYMENT_AUTHORIZED, "60030008", MANUAL_CARD)
        assert len(ledger.get_order(open_order.id).payments) == 1
        assert ledger.get_order(open_order.id).status == ORDER_PAID

    def test_other_attempt_in_flight_is_reported_not_overwritten(self, processor_reports, open_order):
        attempt = ledger.attach_payment(open_order.id, CLOUD_TERMINAL, "25.00")
        ledger.record_pending(attempt.id, "CLD-9")
        processor_reports.transactions = [_txn(open_order, "60030009")]

        report = recovery.reconcile_recent_transactions()

        assert report.recovered == []
        assert report.skipped[0]["invoice_number"] == "INV-1"
        assert "still PENDING" in report.skipped[0]["reason"]
        assert ledger.get_payment(attempt.id).status == PAYMENT_PENDING
        assert ledger.get_order(open_order.id).status == ORDER_OPEN

    def test_truncated_invoice_matches_by_prefix(self, processor_reports, db_session):
        order = ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number="LANE01-20261017-000123")
        processor_reports.transactions = [_txn(order, "60030010", invoice="LANE01-20261017-0001")]

        report = recovery.reconcile_recent_transactions()

        assert report.recovered[0]["invoice_number"] == "LANE01-20261017-000123"
        assert ledger.get_order(order.id).status == ORDER_PAID

    def test_ambiguous_truncated_invoice_is_skipped(self, processor_reports, db_session):
        first = ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number="LANE01-20261017-000123")
        second = ledger.create_order(lane_id="LANE-01", amount="25.00", invoice_number="LANE01-20261017-000145")
        processor_reports.transactions = [_txn(first, "60030011", invoice="LANE01-20261017-0001")]

        report = recovery.reconcile_recent_transactions()

        assert "matches 2 open orders" in report.skipped[0]["reason"]
        assert ledger.get_order(first.id).status == ORDER_OPEN
        assert ledger.get_order(second.id).status == ORDER_OPEN

    def test_recovered_sale_is_forwarded_to_accounting(self, processor_reports, accounting, open_order):
        processor_reports.transactions = [_txn(open_order, "60030012")]

        recovery.reconcile_recent_transactions()

        order = ledger.get_order(open_order.id)
        assert order.synced_to_zoho is True
        assert accounting.receipts == {"INV-1": order.zoho_sales_receipt_id}

    def test_lookback_sets_the_listing_window(self, processor_reports, db_session):
        recovery.reconcile_recent_transactions(lookback_minutes=30)

        since, until = processor_reports.windows[0]
        assert until - since == timedelta(minutes=30)

    def test_listing_failure_propagates_and_next_run_proceeds(self, processor_reports, open_order):
        processor_reports.error = GatewayUnreachable("Cannot reach card processor: connection refused")

        with pytest.raises(GatewayUnreachable):
            recovery.reconcile_recent_transactions()

        processor_reports.error = None
        processor_reports.transactions = [_txn(open_order, "60030013")]
        report = recovery.reconcile_recent_transactions()
        assert report.ran is True
        assert len(report.recovered) == 1

    def test_overlapping_run_is_skipped(self, processor_reports, db_session):
        recovery._run_guard.acquire()
        try:
            report = recovery.reconcile_recent_transactions()
        finally:
            recovery._run_guard.release()

        assert report.ran is False
        assert processor_reports.windows == []


class TestRecoveryScheduler:

    def test_scheduler_started_when_enabled(self):
        scheduled_app = create_app({**TEST_CONFIG, "RECOVERY_SCHEDULER_ENABLED": True,
                                    "RECOVERY_INTERVAL_SECONDS": 3600})
        job = scheduled_app.extensions[recovery.SCHEDULER_KEY]
        try:
            assert isinstance(job, ScheduledJob)
            assert job.job is recovery.reconcile_recent_transactions
            assert job.interval_seconds == 3600
        finally:
            job.stop(timeout=5)

    def test_scheduler_off_by_default(self, app):
        assert recovery.SCHEDULER_KEY not in app.extensions

    def test_scheduled_job_runs_inside_app_context(self, app):
        ran = threading.Event()
        seen = []

        def job():
            seen.append(current_app.name)
            ran.set()

        scheduled = ScheduledJob(app, "test-job", 0.01, job)
        scheduled.start()
        try:
            assert ran.wait(5)
        finally:
            scheduled.stop(timeout=5)

        assert seen[0] == app.name
