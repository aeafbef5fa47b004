# backend/lanepay/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, "true" if default else "false").lower() in ("1", "true", "yes")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/lanepay.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///lanepay.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Register UI dev servers allowed to call the API from the browser
    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if origin.strip()
    )

    # Polling coordinator defaults (60 x 2s = 2 minutes)
    PAYMENT_POLL_MAX_ATTEMPTS = _env_int("PAYMENT_POLL_MAX_ATTEMPTS", 60)
    PAYMENT_POLL_INTERVAL_MS = _env_int("PAYMENT_POLL_INTERVAL_MS", 2000)

    # Background worker pool (polls and accounting sync)
    PAYMENT_WORKER_THREADS = _env_int("PAYMENT_WORKER_THREADS", 8)
    # Run background tasks in the caller's thread (tests, CLI)
    PAYMENT_WORKER_INLINE = _env_bool("PAYMENT_WORKER_INLINE", False)
    # Start a background poll as soon as a channel returns a pending handle
    PAYMENT_AUTO_POLL = _env_bool("PAYMENT_AUTO_POLL", True)

    # Order amount vs payment amount rounding tolerance
    AMOUNT_TOLERANCE = os.environ.get("AMOUNT_TOLERANCE", "0.01")

    # LAN terminal (PAX-style JSON over TCP)
    LAN_TERMINAL_PORT = _env_int("LAN_TERMINAL_PORT", 10009)
    LAN_TERMINAL_CONNECT_TIMEOUT = float(os.environ.get("LAN_TERMINAL_CONNECT_TIMEOUT", "10"))
    LAN_TERMINAL_RESPONSE_TIMEOUT = float(os.environ.get("LAN_TERMINAL_RESPONSE_TIMEOUT", "120"))
    LAN_TERMINAL_DISCOVERY_TIMEOUT = float(os.environ.get("LAN_TERMINAL_DISCOVERY_TIMEOUT", "3"))
    LAN_TERMINAL_BROADCAST_ADDRESS = os.environ.get("LAN_TERMINAL_BROADCAST_ADDRESS", "255.255.255.255")

    # Cloud terminal gateway (Valor Connect style)
    CLOUD_TERMINAL_BASE_URL = os.environ.get("CLOUD_TERMINAL_BASE_URL", "https://api.valorpaytech.com")
    CLOUD_TERMINAL_MERCHANT_ID = os.environ.get("CLOUD_TERMINAL_MERCHANT_ID")
    CLOUD_TERMINAL_API_KEY = os.environ.get("CLOUD_TERMINAL_API_KEY")
    CLOUD_TERMINAL_SECRET_KEY = os.environ.get("CLOUD_TERMINAL_SECRET_KEY")
    CLOUD_TERMINAL_TIMEOUT = float(os.environ.get("CLOUD_TERMINAL_TIMEOUT", "30"))

    # Card processor (Authorize.Net JSON API) for reader, card-on-file and manual entry
    AUTHORIZE_NET_ENDPOINT = os.environ.get(
        "AUTHORIZE_NET_ENDPOINT",
        "https://apitest.authorize.net/xml/v1/request.api",
    )
    AUTHORIZE_NET_API_LOGIN_ID = os.environ.get("AUTHORIZE_NET_API_LOGIN_ID")
    AUTHORIZE_NET_TRANSACTION_KEY = os.environ.get("AUTHORIZE_NET_TRANSACTION_KEY")
    AUTHORIZE_NET_TIMEOUT = float(os.environ.get("AUTHORIZE_NET_TIMEOUT", "30"))

    # Accounting sync (Zoho Books)
    ZOHO_BOOKS_API_BASE = os.environ.get("ZOHO_BOOKS_API_BASE", "https://www.zohoapis.com/books/v3")
    ZOHO_ACCOUNTS_API_BASE = os.environ.get("ZOHO_ACCOUNTS_API_BASE", "https://accounts.zoho.com/oauth/v2")
    ZOHO_CLIENT_ID = os.environ.get("ZOHO_CLIENT_ID")
    ZOHO_CLIENT_SECRET = os.environ.get("ZOHO_CLIENT_SECRET")
    ZOHO_REFRESH_TOKEN = os.environ.get("ZOHO_REFRESH_TOKEN")
    ZOHO_ORGANIZATION_ID = os.environ.get("ZOHO_ORGANIZATION_ID")
    ZOHO_DEFAULT_CUSTOMER_ID = os.environ.get("ZOHO_DEFAULT_CUSTOMER_ID")
    ZOHO_SALE_ITEM_ID = os.environ.get("ZOHO_SALE_ITEM_ID")
    ZOHO_TIMEOUT = float(os.environ.get("ZOHO_TIMEOUT", "30"))

    SYNC_AUTO_FORWARD = _env_bool("SYNC_AUTO_FORWARD", True)
    SYNC_RETRY_INTERVAL_SECONDS = _env_int("SYNC_RETRY_INTERVAL_SECONDS", 300)
    SYNC_RETRY_BATCH_SIZE = _env_int("SYNC_RETRY_BATCH_SIZE", 25)
    SYNC_SCHEDULER_ENABLED = _env_bool("SYNC_SCHEDULER_ENABLED", False)

    # Transaction recovery: match processor charges the ledger never recorded
    RECOVERY_SCHEDULER_ENABLED = _env_bool("RECOVERY_SCHEDULER_ENABLED", False)
    RECOVERY_INTERVAL_SECONDS = _env_int("RECOVERY_INTERVAL_SECONDS", 60)
    RECOVERY_LOOKBACK_MINUTES = _env_int("RECOVERY_LOOKBACK_MINUTES", 15)
    # A charge belongs to an order only if submitted this soon after the order was created
    RECOVERY_MATCH_WINDOW_MINUTES = _env_int("RECOVERY_MATCH_WINDOW_MINUTES", 15)
