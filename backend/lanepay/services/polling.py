# Overview: Bounded, cancellable polling of an asynchronous payment to a terminal outcome.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from ..providers.base import (
    STATUS_APPROVED,
    STATUS_DECLINED,
    GatewayError,
    GatewayUnreachable,
    StatusResult,
)
from ..validation import ValidationError

logger = logging.getLogger(__name__)


POLL_APPROVED = "APPROVED"
POLL_DECLINED = "DECLINED"
POLL_TIMEOUT = "TIMEOUT"
POLL_CANCELLED = "CANCELLED"

DEFAULT_MAX_ATTEMPTS = 60
DEFAULT_INTERVAL_MS = 2000
MAX_INTERVAL_MS = 60_000


@dataclass
class PollOutcome:
    outcome: str
    attempts: int
    last_status: StatusResult | None = None
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (POLL_APPROVED, POLL_DECLINED)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "attempts": self.attempts,
            "last_status": self.last_status.status if self.last_status else None,
            "message": self.last_status.message if self.last_status else None,
            "last_error": self.last_error,
        }


class PollingCoordinator:
    """
    Drive check_status until APPROVED/DECLINED, the attempt ceiling, or cancellation.

    WHY: A cloud sale may take minutes while the customer reads the
    terminal screen. The coordinator bounds that wait and distinguishes
    "gave up" (TIMEOUT, the charge may still complete) and "stopped"
    (CANCELLED) from a real decline.

    - Waits between ticks on the cancel token, so cancellation is seen
      within one interval
    - No wait after the last attempt
    - GatewayUnreachable/GatewayError during a tick is logged and counted
      as a pending tick
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, interval_ms: int = DEFAULT_INTERVAL_MS):
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer")
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, int) or interval_ms < 0:
            raise ValidationError("interval_ms must be a non-negative integer")
        if interval_ms > MAX_INTERVAL_MS:
            raise ValidationError(f"interval_ms must be at most {MAX_INTERVAL_MS}")
        self.max_attempts = max_attempts
        self.interval_ms = interval_ms

    def poll(
        self,
        check: Callable[[], StatusResult],
        cancel_token: threading.Event | None = None,
        on_tick: Callable[[int, StatusResult], None] | None = None,
    ) -> PollOutcome:
        cancel = cancel_token or threading.Event()
        interval = self.interval_ms / 1000.0
        attempts = 0
        last_status: StatusResult | None = None
        last_error: str | None = None

        while attempts < self.max_attempts:
            if cancel.is_set():
                return PollOutcome(POLL_CANCELLED, attempts, last_status, last_error)

            attempts += 1
            try:
                status = check()
            except (GatewayUnreachable, GatewayError) as exc:
                logger.warning("Status check %d/%d failed: %s", attempts, self.max_attempts, exc)
                last_error = str(exc)
                status = None

            if status is not None:
                last_status = status
                if on_tick:
                    on_tick(attempts, status)
                if status.status == STATUS_APPROVED:
                    return PollOutcome(POLL_APPROVED, attempts, status, last_error)
                if status.status == STATUS_DECLINED:
                    return PollOutcome(POLL_DECLINED, attempts, status, last_error)

            if attempts >= self.max_attempts:
                break
            if cancel.wait(interval):
                return PollOutcome(POLL_CANCELLED, attempts, last_status, last_error)

        logger.info("Polling gave up after %d attempts", attempts)
        return PollOutcome(POLL_TIMEOUT, attempts, last_status, last_error)
