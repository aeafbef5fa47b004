# Overview: Pytest coverage for the polling coordinator.

import threading

import pytest

from lanepay.providers.base import GatewayError, GatewayUnreachable
from lanepay.services.polling import (
    POLL_APPROVED,
    POLL_CANCELLED,
    POLL_DECLINED,
    POLL_TIMEOUT,
    PollingCoordinator,
)
from lanepay.validation import ValidationError

from conftest import status_approved, status_declined, status_pending


class ScriptedCheck:
    """Callable returning queued status results; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class TestPollingCoordinator:

    def test_always_pending_times_out_after_exact_attempts(self):
        check = ScriptedCheck(status_pending())

        outcome = PollingCoordinator(max_attempts=3, interval_ms=0).poll(check)

        assert outcome.outcome == POLL_TIMEOUT
        assert outcome.attempts == 3
        assert check.calls == 3

    def test_approved_on_third_tick(self):
        check = ScriptedCheck(status_pending(), status_pending(), status_approved())
        ticks = []

        outcome = PollingCoordinator(max_attempts=10, interval_ms=0).poll(
            check, on_tick=lambda attempt, status: ticks.append((attempt, status.status))
        )

        assert outcome.outcome == POLL_APPROVED
        assert outcome.attempts == 3
        assert [attempt for attempt, _ in ticks] == [1, 2, 3]
        assert check.calls == 3

    def test_declined_stops_polling(self):
        check = ScriptedCheck(status_pending(), status_declined(message="Card expired"))

        outcome = PollingCoordinator(max_attempts=10, interval_ms=0).poll(check)

        assert outcome.outcome == POLL_DECLINED
        assert outcome.last_status.message == "Card expired"
        assert check.calls == 2

    def test_gateway_errors_count_as_pending_ticks(self):
        check = ScriptedCheck(
            GatewayUnreachable("connection refused"),
            GatewayError("HTTP 500"),
            status_approved(),
        )

        outcome = PollingCoordinator(max_attempts=5, interval_ms=0).poll(check)

        assert outcome.outcome == POLL_APPROVED
        assert outcome.attempts == 3
        assert outcome.last_error == "HTTP 500"

    def test_errors_until_exhausted_time_out(self):
        check = ScriptedCheck(GatewayUnreachable("connection refused"))

        outcome = PollingCoordinator(max_attempts=2, interval_ms=0).poll(check)

        assert outcome.outcome == POLL_TIMEOUT
        assert outcome.last_status is None
        assert outcome.to_dict()["last_error"] == "connection refused"

    def test_cancel_before_first_attempt(self):
        check = ScriptedCheck(status_pending())
        token = threading.Event()
        token.set()

        outcome = PollingCoordinator(max_attempts=5, interval_ms=0).poll(check, token)

        assert outcome.outcome == POLL_CANCELLED
        assert check.calls == 0

    def test_cancel_during_wait_stops_promptly(self):
        token = threading.Event()
        check = ScriptedCheck(status_pending())

        def cancel_after_first_tick(attempt, status):
            token.set()

        # A 60s interval would hang the test if the wait ignored the token
        outcome = PollingCoordinator(max_attempts=5, interval_ms=60_000).poll(
            check, token, on_tick=cancel_after_first_tick
        )

        assert outcome.outcome == POLL_CANCELLED
        assert outcome.attempts == 1
        assert outcome.last_status.status == "PENDING"

    def test_cancel_is_never_a_decline(self):
        token = threading.Event()
        check = ScriptedCheck(status_pending())

        outcome = PollingCoordinator(max_attempts=3, interval_ms=0).poll(
            check, token, on_tick=lambda attempt, status: token.set()
        )

        assert outcome.outcome == POLL_CANCELLED
        assert outcome.is_terminal is False

    @pytest.mark.parametrize("max_attempts,interval_ms", [
        (0, 0),
        (-1, 0),
        (3, -5),
        (3, 120_000),
        ("3", 0),
        (True, 0),
    ])
    def test_invalid_arguments_rejected(self, max_attempts, interval_ms):
        with pytest.raises(ValidationError):
            PollingCoordinator(max_attempts=max_attempts, interval_ms=interval_ms)


class TestPaymentWorker:

    def test_second_poll_for_same_order_is_rejected(self, app):
        from lanepay.services.worker import PaymentWorker, PollInProgress

        worker = PaymentWorker(app, inline=True)

        with worker.poll_token(7):
            assert worker.is_polling(7)
            with pytest.raises(PollInProgress):
                with worker.poll_token(7):
                    pass
            # Other orders are independent
            with worker.poll_token(8):
                assert worker.is_polling(8)

        assert not worker.is_polling(7)
        assert not worker.is_polling(8)

    def test_cancel_sets_the_registered_token(self, app):
        from lanepay.services.worker import PaymentWorker

        worker = PaymentWorker(app, inline=True)

        assert worker.cancel(3) is False
        with worker.poll_token(3) as token:
            assert worker.cancel(3) is True
            assert token.is_set()

    def test_inline_submit_captures_exception_in_future(self, app):
        from lanepay.services.worker import PaymentWorker

        worker = PaymentWorker(app, inline=True)

        def boom():
            raise RuntimeError("terminal offline")

        future = worker.submit(boom)

        with pytest.raises(RuntimeError):
            future.result()
        assert worker.submit(lambda: 42).result() == 42

    def test_threaded_submit_runs_in_app_context(self, app):
        from flask import current_app

        from lanepay.services.worker import PaymentWorker

        worker = PaymentWorker(app, max_workers=2)
        try:
            future = worker.submit(lambda: current_app.name)
            assert future.result(timeout=5) == app.name
        finally:
            worker.shutdown()
