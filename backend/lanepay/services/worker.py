# Overview: Background thread pool for payment polls and accounting sync, plus interval jobs.

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager

from flask import Flask, current_app

from ..extensions import db
from ..validation import ConflictError

logger = logging.getLogger(__name__)

EXTENSION_KEY = "lanepay.worker"


class PollInProgress(ConflictError):
    """A status poll for the order is already running."""


class PaymentWorker:
    """
    Runs slow gateway work off the request thread.

    WHY: One order's two-minute terminal poll must not hold up payments on
    other lanes. Each task gets its own app context and database session.
    Inline mode runs tasks in the caller's thread and context (tests, CLI).

    Also owns the per-order cancel tokens for in-flight polls.
    """

    def __init__(self, app: Flask, *, max_workers: int = 8, inline: bool = False):
        self.app = app
        self.inline = inline
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lanepay-worker"
        )
        self._tokens: dict[int, threading.Event] = {}
        self._tokens_lock = threading.Lock()

    def submit(self, fn, *args, **kwargs) -> Future:
        if self.inline:
            future: Future = Future()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                logger.exception("Inline task %s failed", getattr(fn, "__name__", fn))
                future.set_exception(exc)
            return future

        def _run():
            with self.app.app_context():
                try:
                    return fn(*args, **kwargs)
                except Exception:
                    logger.exception("Background task %s failed", getattr(fn, "__name__", fn))
                    raise
                finally:
                    db.session.remove()

        return self._executor.submit(_run)

    @contextmanager
    def poll_token(self, order_id: int):
        """Register a cancel token for the duration of one poll."""
        token = threading.Event()
        with self._tokens_lock:
            if order_id in self._tokens:
                raise PollInProgress(f"Order {order_id} is already being polled")
            self._tokens[order_id] = token
        try:
            yield token
        finally:
            with self._tokens_lock:
                if self._tokens.get(order_id) is token:
                    del self._tokens[order_id]

    def cancel(self, order_id: int) -> bool:
        """Signal the running poll for an order. False when none is running."""
        with self._tokens_lock:
            token = self._tokens.get(order_id)
        if token is None:
            return False
        token.set()
        return True

    def is_polling(self, order_id: int) -> bool:
        with self._tokens_lock:
            return order_id in self._tokens

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def init_worker(app: Flask) -> PaymentWorker:
    worker = PaymentWorker(
        app,
        max_workers=app.config.get("PAYMENT_WORKER_THREADS", 8),
        inline=app.config.get("PAYMENT_WORKER_INLINE", False),
    )
    app.extensions[EXTENSION_KEY] = worker
    return worker


def get_worker() -> PaymentWorker:
    return current_app.extensions[EXTENSION_KEY]


class ScheduledJob:
    """Daemon thread that runs `job` inside an app context on a fixed interval."""

    def __init__(self, app: Flask, name: str, interval_seconds: float, job):
        self.app = app
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lanepay-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            with self.app.app_context():
                try:
                    self.job()
                except Exception:
                    logger.exception("Scheduled %s failed", self.name)
                finally:
                    db.session.remove()


def schedule(app: Flask, key: str, name: str, interval_seconds: float, job) -> ScheduledJob:
    """Start a ScheduledJob and keep it on app.extensions[key]."""
    scheduled = ScheduledJob(app, name, interval_seconds, job)
    app.extensions[key] = scheduled
    scheduled.start()
    return scheduled
