# Overview: Shared bearer credential with lazy, single-writer refresh.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from lanepay.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

# Treat a token as expired this long before the gateway says it is
DEFAULT_SAFETY_MARGIN_SECONDS = 60


@dataclass
class CredentialStatus:
    cached: bool
    expires_at: datetime

    def to_dict(self) -> dict:
        return {"cached": self.cached, "expires_at": to_utc_z(self.expires_at)}


class CredentialCache:
    """
    Process-wide bearer token for one remote API.

    WHY: Every in-flight cloud payment and every accounting call needs the
    same token. Reads are lock-free while the token is fresh; on expiry the
    first caller refreshes under the lock and the others reuse its result,
    so a burst of expiries costs one re-authentication.

    `fetch` performs the login and returns (token, expires_in_seconds). It
    raises on failure; the cache then stays empty and the error propagates.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], tuple[str, int]],
        *,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self._fetch = fetch
        self._margin = timedelta(seconds=safety_margin_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        # (token, expires_at); always replaced as a whole
        self._credential: tuple[str, datetime] | None = None
        self.refresh_count = 0

    def _fresh(self, credential: tuple[str, datetime] | None) -> bool:
        return credential is not None and self._clock() < credential[1]

    def get_token(self) -> str:
        credential = self._credential
        if self._fresh(credential):
            return credential[0]
        return self._refresh(force=False)[0][0]

    def authenticate(self, force: bool = False) -> CredentialStatus:
        """Report whether a cached token was reused and when it expires."""
        credential = self._credential
        if not force and self._fresh(credential):
            return CredentialStatus(cached=True, expires_at=credential[1])
        credential, cached = self._refresh(force=force)
        return CredentialStatus(cached=cached, expires_at=credential[1])

    def invalidate(self) -> None:
        """Drop the token (e.g. the API answered 401)."""
        with self._lock:
            self._credential = None

    def _refresh(self, *, force: bool) -> tuple[tuple[str, datetime], bool]:
        with self._lock:
            # Another thread may have refreshed while we waited
            credential = self._credential
            if not force and self._fresh(credential):
                return credential, True

            token, expires_in = self._fetch()
            now = self._clock()
            expires_at = now + timedelta(seconds=int(expires_in)) - self._margin
            if expires_at <= now:
                expires_at = now + timedelta(seconds=int(expires_in))

            credential = (token, expires_at)
            self._credential = credential
            self.refresh_count += 1
            logger.info("Refreshed %s credential; expires at %s", self.name, to_utc_z(expires_at))
            return credential, False
