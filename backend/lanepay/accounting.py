# Overview: Zoho Books client used by the sync forwarder (sales receipts only).

"""
Accounting Boundary

WHY: Paid sales are mirrored into Zoho Books as sales receipts. The
forwarder needs two calls only:

- find_sales_receipt(invoice_number) -> receipt id | None
- create_sales_receipt(snapshot) -> receipt id

The receipt number is the order's invoice number, so a lookup before
create finds a receipt whose success response was lost in transit.

AUTH: OAuth refresh-token grant against accounts.zoho.com; the access
token lives in a CredentialCache shared by every sync thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx
from flask import Flask, current_app

from .providers.credentials import CredentialCache

logger = logging.getLogger(__name__)

EXTENSION_KEY = "lanepay.accounting"

DEFAULT_TOKEN_TTL_SECONDS = 3600


class AccountingError(Exception):
    """Zoho rejected the request or answered with something unreadable."""

    def __init__(self, message: str, *, raw=None):
        super().__init__(message)
        self.raw = raw


class AccountingUnavailable(AccountingError):
    """Zoho could not be reached."""


@dataclass
class SaleSnapshot:
    """What the accounting system needs to know about one paid order."""
    invoice_number: str
    lane_id: str
    amount: Decimal
    date: str
    provider: str | None = None
    transaction_id: str | None = None
    notes: str | None = None

    @classmethod
    def from_order(cls, order, payment=None) -> "SaleSnapshot":
        created = order.created_at
        return cls(
            invoice_number=order.invoice_number,
            lane_id=order.lane_id,
            amount=Decimal(order.amount),
            date=created.strftime("%Y-%m-%d") if created else "",
            provider=payment.provider if payment is not None else None,
            transaction_id=payment.transaction_id if payment is not None else None,
            notes=order.notes,
        )


class ZohoBooksClient:
    def __init__(
        self,
        *,
        api_base: str,
        accounts_base: str,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        organization_id: str | None,
        default_customer_id: str | None,
        sale_item_id: str | None = None,
        timeout: float = 30.0,
        credentials: CredentialCache | None = None,
        client: httpx.Client | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.accounts_base = accounts_base.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.organization_id = organization_id
        self.default_customer_id = default_customer_id
        self.sale_item_id = sale_item_id
        self.client = client or httpx.Client(timeout=timeout)
        self.credentials = credentials or CredentialCache("zoho-books", self._refresh_access_token)

    # ------------------------------------------------------------------
    # Auth + transport
    # ------------------------------------------------------------------

    def _refresh_access_token(self) -> tuple[str, int]:
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise AccountingError("Zoho OAuth credentials are not configured")
        try:
            response = self.client.post(f"{self.accounts_base}/token", params={
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            })
        except httpx.HTTPError as exc:
            raise AccountingUnavailable(f"Cannot reach Zoho accounts server: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            raise AccountingError("Zoho token endpoint returned a non-JSON response", raw=response.text)

        # Zoho reports bad grants with HTTP 200 and an "error" key
        if response.is_error or data.get("error") or not data.get("access_token"):
            raise AccountingError(f"Failed to refresh Zoho access token: {data.get('error') or response.status_code}",
                                  raw=data)
        return data["access_token"], int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)

    def _request(self, method: str, path: str, *, params: dict | None = None, json: dict | None = None,
                 _retried: bool = False) -> dict:
        if not self.organization_id:
            raise AccountingError("ZOHO_ORGANIZATION_ID is not configured")

        query = {"organization_id": self.organization_id}
        query.update(params or {})
        headers = {"Authorization": f"Zoho-oauthtoken {self.credentials.get_token()}"}

        try:
            response = self.client.request(method, f"{self.api_base}{path}", params=query, json=json,
                                           headers=headers)
        except httpx.HTTPError as exc:
            raise AccountingUnavailable(f"Cannot reach Zoho Books: {exc}") from exc

        if response.status_code == 401 and not _retried:
            self.credentials.invalidate()
            return self._request(method, path, params=params, json=json, _retried=True)

        try:
            data = response.json()
        except ValueError:
            raise AccountingError(f"Zoho Books returned a non-JSON response (HTTP {response.status_code})",
                                  raw=response.text)

        if not isinstance(data, dict) or data.get("code") != 0:
            message = data.get("message") if isinstance(data, dict) else None
            raise AccountingError(message or f"Zoho Books request failed (HTTP {response.status_code})", raw=data)
        return data

    # ------------------------------------------------------------------
    # Sales receipts
    # ------------------------------------------------------------------

    def find_sales_receipt(self, invoice_number: str) -> str | None:
        data = self._request("GET", "/salesreceipts", params={
            "search_text": invoice_number,
            "page": 1,
            "per_page": 25,
        })
        for receipt in data.get("salesreceipts") or []:
            if invoice_number in (receipt.get("salesreceipt_number"), receipt.get("reference_number")):
                receipt_id = receipt.get("salesreceipt_id")
                if receipt_id:
                    return str(receipt_id)
        return None

    def create_sales_receipt(self, snapshot: SaleSnapshot) -> str:
        if not self.default_customer_id:
            raise AccountingError("ZOHO_DEFAULT_CUSTOMER_ID is not configured")

        line_item = {
            "description": f"POS sale {snapshot.invoice_number} ({snapshot.lane_id})",
            "rate": float(snapshot.amount),
            "quantity": 1,
        }
        if self.sale_item_id:
            line_item["item_id"] = self.sale_item_id

        payload = {
            "customer_id": self.default_customer_id,
            "salesreceipt_number": snapshot.invoice_number,
            "reference_number": snapshot.invoice_number,
            "date": snapshot.date,
            "payment_mode": "creditcard",
            "line_items": [line_item],
            "notes": _receipt_notes(snapshot),
        }
        data = self._request("POST", "/salesreceipts", params={"ignore_auto_number_generation": "true"},
                             json=payload)

        receipt = data.get("salesreceipt") or {}
        receipt_id = receipt.get("salesreceipt_id") or data.get("salesreceipt_id")
        if receipt_id:
            return str(receipt_id)

        # Created but the id was dropped from the response; recover it by number
        logger.warning("Zoho response for %s had no salesreceipt_id; looking it up", snapshot.invoice_number)
        receipt_id = self.find_sales_receipt(snapshot.invoice_number)
        if not receipt_id:
            raise AccountingError(f"Sales receipt for {snapshot.invoice_number} created without an id", raw=data)
        return receipt_id


def _receipt_notes(snapshot: SaleSnapshot) -> str:
    parts = [f"Lane {snapshot.lane_id}"]
    if snapshot.provider:
        parts.append(f"Paid via {snapshot.provider}")
    if snapshot.transaction_id:
        parts.append(f"Txn {snapshot.transaction_id}")
    if snapshot.notes:
        parts.append(snapshot.notes)
    return " | ".join(parts)


def init_accounting(app: Flask) -> None:
    config = app.config
    app.extensions[EXTENSION_KEY] = ZohoBooksClient(
        api_base=config["ZOHO_BOOKS_API_BASE"],
        accounts_base=config["ZOHO_ACCOUNTS_API_BASE"],
        client_id=config.get("ZOHO_CLIENT_ID"),
        client_secret=config.get("ZOHO_CLIENT_SECRET"),
        refresh_token=config.get("ZOHO_REFRESH_TOKEN"),
        organization_id=config.get("ZOHO_ORGANIZATION_ID"),
        default_customer_id=config.get("ZOHO_DEFAULT_CUSTOMER_ID"),
        sale_item_id=config.get("ZOHO_SALE_ITEM_ID"),
        timeout=config.get("ZOHO_TIMEOUT", 30.0),
    )


def get_accounting_client():
    return current_app.extensions[EXTENSION_KEY]
