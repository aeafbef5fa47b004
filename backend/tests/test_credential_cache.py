# Overview: Pytest coverage for the shared bearer credential cache.

import threading
import time
from datetime import datetime, timedelta

import pytest

from lanepay.providers.base import GatewayError
from lanepay.providers.credentials import CredentialCache


class FakeClock:
    """on_read runs once on the next read, standing in for another thread."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0)
        self.on_read = None

    def __call__(self):
        hook, self.on_read = self.on_read, None
        if hook is not None:
            hook()
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class CountingLogin:
    def __init__(self, ttl=3600, delay=0.0):
        self.ttl = ttl
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
            number = self.calls
        if self.delay:
            time.sleep(self.delay)
        return f"token-{number}", self.ttl


class TestCredentialCache:

    def test_token_reused_while_fresh(self):
        login = CountingLogin()
        cache = CredentialCache("cloud", login, clock=FakeClock())

        assert cache.get_token() == "token-1"
        assert cache.get_token() == "token-1"
        assert login.calls == 1

    def test_refresh_after_expiry_with_safety_margin(self):
        clock = FakeClock()
        login = CountingLogin(ttl=600)
        cache = CredentialCache("cloud", login, clock=clock, safety_margin_seconds=60)

        cache.get_token()
        clock.advance(539)
        assert cache.get_token() == "token-1"

        clock.advance(2)
        assert cache.get_token() == "token-2"
        assert login.calls == 2

    def test_short_lived_token_ignores_margin(self):
        clock = FakeClock()
        cache = CredentialCache("cloud", CountingLogin(ttl=30), clock=clock, safety_margin_seconds=60)

        status = cache.authenticate()

        assert status.expires_at == clock.now + timedelta(seconds=30)

    def test_concurrent_expiry_refreshes_once(self):
        login = CountingLogin(delay=0.05)
        cache = CredentialCache("cloud", login)
        tokens = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            tokens.append(cache.get_token())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert login.calls == 1
        assert tokens == ["token-1"] * 8

    def test_authenticate_reports_cached(self):
        login = CountingLogin()
        cache = CredentialCache("cloud", login, clock=FakeClock())

        first = cache.authenticate()
        second = cache.authenticate()

        assert first.cached is False
        assert second.cached is True
        assert second.to_dict()["expires_at"].endswith("Z")
        assert login.calls == 1

    def test_forced_authenticate_always_logs_in(self):
        login = CountingLogin()
        cache = CredentialCache("cloud", login, clock=FakeClock())
        cache.get_token()

        status = cache.authenticate(force=True)

        assert status.cached is False
        assert cache.get_token() == "token-2"

    def test_invalidate_drops_token(self):
        login = CountingLogin()
        cache = CredentialCache("cloud", login, clock=FakeClock())
        cache.get_token()

        cache.invalidate()

        assert cache.get_token() == "token-2"

    def test_failed_login_leaves_cache_empty(self):
        def broken_login():
            raise GatewayError("Authentication failed")

        cache = CredentialCache("cloud", broken_login, clock=FakeClock())

        with pytest.raises(GatewayError):
            cache.get_token()
        assert cache.refresh_count == 0

    def test_invalidate_between_check_and_read_still_returns_checked_token(self):
        clock = FakeClock()
        cache = CredentialCache("cloud", CountingLogin(), clock=clock)
        cache.get_token()

        # A 401 on another thread lands while this read is checking expiry
        clock.on_read = cache.invalidate
        token = cache.get_token()

        assert token == "token-1"
        assert cache.get_token() == "token-2"

    def test_authenticate_reports_expiry_of_the_token_it_checked(self):
        clock = FakeClock()
        cache = CredentialCache("cloud", CountingLogin(ttl=600), clock=clock, safety_margin_seconds=0)
        first = cache.authenticate()

        clock.on_read = cache.invalidate
        second = cache.authenticate()

        assert second.cached is True
        assert second.expires_at == first.expires_at
