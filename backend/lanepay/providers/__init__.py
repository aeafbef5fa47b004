# Overview: Provider registry built from app config and stored on the Flask app.

from __future__ import annotations

from flask import Flask, current_app

from ..validation import NotFoundError, ValidationError
from .authorize_net import AuthorizeNetClient, CardOnFileProvider, CardReaderProvider, ManualCardProvider
from .base import (
    CARD_ON_FILE,
    CARD_READER,
    CLOUD_TERMINAL,
    LAN_TERMINAL,
    MANUAL_CARD,
    PROVIDER_NAMES,
    PaymentProvider,
)
from .cloud_terminal import CloudTerminalProvider
from .lan_terminal import LanTerminalProvider

EXTENSION_KEY = "lanepay.providers"
PROCESSOR_KEY = "lanepay.processor"

# URL slugs accepted by the request surface ("cloud-terminal" -> CLOUD_TERMINAL)
_SLUGS = {name.lower().replace("_", "-"): name for name in PROVIDER_NAMES}


class UnknownProvider(NotFoundError):
    pass


def normalize_provider_name(value: str | None) -> str:
    if not value:
        raise ValidationError("provider is required")
    text = str(value).strip()
    if text.upper() in PROVIDER_NAMES:
        return text.upper()
    if text.lower() in _SLUGS:
        return _SLUGS[text.lower()]
    raise UnknownProvider(f"Unknown provider: {value}. Must be one of {list(PROVIDER_NAMES)}")


def build_processor(config) -> AuthorizeNetClient:
    return AuthorizeNetClient(
        endpoint=config["AUTHORIZE_NET_ENDPOINT"],
        api_login_id=config.get("AUTHORIZE_NET_API_LOGIN_ID"),
        transaction_key=config.get("AUTHORIZE_NET_TRANSACTION_KEY"),
        timeout=config.get("AUTHORIZE_NET_TIMEOUT", 30.0),
    )


def build_providers(config, processor: AuthorizeNetClient) -> dict[str, PaymentProvider]:
    return {
        LAN_TERMINAL: LanTerminalProvider(
            port=config.get("LAN_TERMINAL_PORT", 10009),
            connect_timeout=config.get("LAN_TERMINAL_CONNECT_TIMEOUT", 10.0),
            response_timeout=config.get("LAN_TERMINAL_RESPONSE_TIMEOUT", 120.0),
            discovery_timeout=config.get("LAN_TERMINAL_DISCOVERY_TIMEOUT", 3.0),
            broadcast_address=config.get("LAN_TERMINAL_BROADCAST_ADDRESS", "255.255.255.255"),
        ),
        CLOUD_TERMINAL: CloudTerminalProvider(
            base_url=config["CLOUD_TERMINAL_BASE_URL"],
            merchant_id=config.get("CLOUD_TERMINAL_MERCHANT_ID"),
            api_key=config.get("CLOUD_TERMINAL_API_KEY"),
            secret_key=config.get("CLOUD_TERMINAL_SECRET_KEY"),
            timeout=config.get("CLOUD_TERMINAL_TIMEOUT", 30.0),
        ),
        CARD_READER: CardReaderProvider(processor),
        CARD_ON_FILE: CardOnFileProvider(processor),
        MANUAL_CARD: ManualCardProvider(processor),
    }


def init_providers(app: Flask) -> None:
    processor = build_processor(app.config)
    app.extensions[PROCESSOR_KEY] = processor
    app.extensions[EXTENSION_KEY] = build_providers(app.config, processor)


def get_provider(name: str) -> PaymentProvider:
    name = normalize_provider_name(name)
    providers = current_app.extensions.get(EXTENSION_KEY) or {}
    provider = providers.get(name)
    if provider is None:
        raise UnknownProvider(f"Provider {name} is not configured")
    return provider


def get_processor() -> AuthorizeNetClient:
    """The Authorize.Net client shared by the processor channels."""
    return current_app.extensions[PROCESSOR_KEY]
