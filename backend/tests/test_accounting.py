# Overview: Pytest coverage for the Zoho Books client.

import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from lanepay.accounting import AccountingError, AccountingUnavailable, SaleSnapshot, ZohoBooksClient


class FakeZoho:
    def __init__(self):
        self.requests = []
        self.receipts = []
        self.token_calls = 0
        self.expire_next = False
        self.drop_id_on_create = False

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/oauth/v2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"zt-{self.token_calls}", "expires_in": 3600})

        if self.expire_next:
            self.expire_next = False
            return httpx.Response(401, json={"code": 57, "message": "You are not authorized"})

        if request.method == "GET" and request.url.path == "/books/v3/salesreceipts":
            search = request.url.params.get("search_text")
            matches = [r for r in self.receipts if search in r["salesreceipt_number"]]
            return httpx.Response(200, json={"code": 0, "salesreceipts": matches})

        if request.method == "POST" and request.url.path == "/books/v3/salesreceipts":
            body = json.loads(request.content)
            receipt = {"salesreceipt_id": f"46000000{len(self.receipts) + 1}",
                       "salesreceipt_number": body["salesreceipt_number"]}
            self.receipts.append(receipt)
            if self.drop_id_on_create:
                return httpx.Response(201, json={"code": 0, "salesreceipt": {}})
            return httpx.Response(201, json={"code": 0, "salesreceipt": receipt})

        return httpx.Response(404, json={"code": 5, "message": "Invalid URL Passed"})


def _client(fake, **overrides):
    options = dict(
        api_base="https://books.test/books/v3",
        accounts_base="https://accounts.test/oauth/v2",
        client_id="cid",
        client_secret="secret",
        refresh_token="refresh",
        organization_id="org-1",
        default_customer_id="cust-1",
        client=httpx.Client(transport=httpx.MockTransport(fake)),
    )
    options.update(overrides)
    return ZohoBooksClient(**options)


def _snapshot(invoice_number="INV-1"):
    return SaleSnapshot(invoice_number=invoice_number, lane_id="LANE-01", amount=Decimal("25.00"),
                        date="2026-10-17", provider="LAN_TERMINAL", transaction_id="LAN-1")


class TestZohoBooksClient:

    def test_create_receipt_numbered_with_invoice(self):
        fake = FakeZoho()
        client = _client(fake)

        receipt_id = client.create_sales_receipt(_snapshot())

        assert receipt_id == "460000001"
        post = fake.requests[-1]
        body = json.loads(post.content)
        assert body["salesreceipt_number"] == "INV-1"
        assert body["customer_id"] == "cust-1"
        assert body["line_items"][0]["rate"] == 25.0
        assert "Txn LAN-1" in body["notes"]
        assert post.url.params["organization_id"] == "org-1"
        assert post.headers["Authorization"] == "Zoho-oauthtoken zt-1"

    def test_find_existing_receipt(self):
        fake = FakeZoho()
        client = _client(fake)
        client.create_sales_receipt(_snapshot("INV-7"))

        assert client.find_sales_receipt("INV-7") == "460000001"
        assert client.find_sales_receipt("INV-8") is None

    def test_missing_id_recovered_by_lookup(self):
        fake = FakeZoho()
        fake.drop_id_on_create = True

        assert _client(fake).create_sales_receipt(_snapshot()) == "460000001"

    def test_expired_token_refreshed_once(self):
        fake = FakeZoho()
        client = _client(fake)
        client.find_sales_receipt("INV-1")
        fake.expire_next = True

        client.find_sales_receipt("INV-1")

        assert fake.token_calls == 2

    def test_api_error_raises_accounting_error(self):
        fake = FakeZoho()
        client = _client(fake, api_base="https://books.test/books/v9")

        with pytest.raises(AccountingError, match="Invalid URL"):
            client.find_sales_receipt("INV-1")

    def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(None, client=httpx.Client(transport=httpx.MockTransport(refuse)))

        with pytest.raises(AccountingUnavailable):
            client.find_sales_receipt("INV-1")

    def test_missing_configuration(self):
        fake = FakeZoho()

        with pytest.raises(AccountingError, match="ZOHO_ORGANIZATION_ID"):
            _client(fake, organization_id=None).find_sales_receipt("INV-1")
        with pytest.raises(AccountingError, match="OAuth"):
            _client(fake, refresh_token=None).find_sales_receipt("INV-1")
        assert fake.token_calls == 0


class TestSaleSnapshot:

    def test_from_order(self):
        class OrderStub:
            invoice_number = "INV-3"
            lane_id = "LANE-04"
            amount = Decimal("12.50")
            created_at = datetime(2026, 10, 17, 9, 30)
            notes = None

        class PaymentStub:
            provider = "CARD_READER"
            transaction_id = "60012345"

        snapshot = SaleSnapshot.from_order(OrderStub(), PaymentStub())

        assert snapshot.date == "2026-10-17"
        assert snapshot.provider == "CARD_READER"
        assert snapshot.amount == Decimal("12.50")
