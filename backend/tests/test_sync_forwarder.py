# Overview: Pytest coverage for forwarding paid orders to accounting.

import pytest

from lanepay.models.orders import ORDER_PAID
from lanepay.services import ledger_service as ledger
from lanepay.services import payment_flow_service as flow
from lanepay.services import sync_service
from lanepay.validation import ConflictError

from conftest import ScriptedProvider, approved


def _paid_order(install_provider, invoice_number="INV-S1", transaction_id="LAN-300"):
    install_provider(ScriptedProvider(initiate=[approved(transaction_id)]))
    order = ledger.create_order(lane_id="LANE-02", amount="25.00", invoice_number=invoice_number)
    flow.start_payment(order.id, "LAN_TERMINAL", target={"ip": "10.0.0.9"})
    return ledger.get_order(order.id)


class TestForwardOnPaid:

    def test_paid_order_is_forwarded_automatically(self, db_session, install_provider, accounting):
        order = _paid_order(install_provider)

        assert order.status == ORDER_PAID
        assert order.synced_to_zoho is True
        assert order.zoho_sales_receipt_id == "ZR-0001"
        assert order.sync_attempts == 1
        assert order.sync_error is None
        assert accounting.create_calls == 1

    def test_auto_forward_disabled_leaves_order_unsynced(self, app, db_session, install_provider, accounting):
        app.config['SYNC_AUTO_FORWARD'] = False

        order = _paid_order(install_provider)

        assert order.synced_to_zoho is False
        assert accounting.find_calls == 0

    def test_accounting_failure_never_touches_payment(self, db_session, install_provider, accounting):
        accounting.unavailable = True

        order = _paid_order(install_provider)

        assert order.status == ORDER_PAID
        assert order.synced_to_zoho is False
        assert "connection refused" in order.sync_error
        assert order.sync_attempts == 1
        assert order.last_sync_attempt_at is not None
        events = [e.event_type for e in ledger.get_order_events(order.id)]
        assert "sync.failed" in events


class TestRetry:

    def test_lost_success_response_does_not_duplicate(self, db_session, install_provider, accounting):
        accounting.lose_next_response = True
        order = _paid_order(install_provider)
        assert order.synced_to_zoho is False

        order = sync_service.retry_sync(order.id)

        assert order.synced_to_zoho is True
        assert order.zoho_sales_receipt_id == "ZR-0001"
        assert accounting.create_calls == 1
        assert len(accounting.receipts) == 1
        assert order.sync_attempts == 2

    def test_retry_of_synced_order_is_noop(self, db_session, install_provider, accounting):
        order = _paid_order(install_provider)

        sync_service.retry_sync(order.id)

        assert accounting.find_calls == 1
        assert accounting.create_calls == 1

    def test_open_order_is_not_synced(self, db_session, accounting):
        order = ledger.create_order(lane_id="LANE-02", amount="10.00")

        with pytest.raises(ConflictError):
            sync_service.retry_sync(order.id)

        assert accounting.find_calls == 0

    def test_retry_failed_syncs_batch(self, db_session, install_provider, accounting):
        accounting.unavailable = True
        first = _paid_order(install_provider, "INV-S2", "LAN-301")
        second = _paid_order(install_provider, "INV-S3", "LAN-302")
        ledger.create_order(lane_id="LANE-02", amount="5.00", invoice_number="INV-S4")

        still_down = sync_service.retry_failed_syncs()
        assert still_down == {"attempted": 2, "succeeded": 0, "failed": 2}

        accounting.unavailable = False
        recovered = sync_service.retry_failed_syncs()

        assert recovered == {"attempted": 2, "succeeded": 2, "failed": 0}
        assert ledger.get_order(first.id).synced_to_zoho is True
        assert ledger.get_order(second.id).sync_attempts == 3

    def test_retry_batch_respects_limit(self, db_session, install_provider, accounting):
        accounting.unavailable = True
        _paid_order(install_provider, "INV-S5", "LAN-303")
        _paid_order(install_provider, "INV-S6", "LAN-304")
        accounting.unavailable = False

        result = sync_service.retry_failed_syncs(limit=1)

        assert result["attempted"] == 1
        assert sync_service.sync_summary()["unsynced"] == 1


class TestSummary:

    def test_summary_counts(self, db_session, install_provider, accounting):
        _paid_order(install_provider, "INV-S7", "LAN-305")
        accounting.unavailable = True
        _paid_order(install_provider, "INV-S8", "LAN-306")
        ledger.create_order(lane_id="LANE-02", amount="5.00", invoice_number="INV-S9")

        summary = sync_service.sync_summary()

        assert summary["synced"] == 1
        assert summary["unsynced"] == 1
        assert summary["failed"] == 1
        assert summary["never_attempted"] == 0
        assert summary["oldest_unsynced_at"].endswith("Z")

    def test_summary_empty(self, db_session):
        summary = sync_service.sync_summary()

        assert summary == {
            "synced": 0,
            "unsynced": 0,
            "failed": 0,
            "never_attempted": 0,
            "oldest_unsynced_at": None,
        }
