"""In-memory cache of WSAA session credentials, keyed by service name."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from threading import Lock

import structlog

from afip_invoicer.domain.models import SessionCredential

log = structlog.get_logger()

DEFAULT_VALIDITY = timedelta(minutes=11)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionCredentialCache:
    """
    Holds one credential per service for the lifetime of the process.

    A credential is served only while younger than the validity window;
    `get` enforces the cutoff on its own, `sweep` merely frees memory.
    Constructed once in the composition root and shared by reference.
    """

    def __init__(
        self,
        *,
        validity: timedelta = DEFAULT_VALIDITY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._validity = validity
        self._clock = clock
        self._entries: dict[str, SessionCredential] = {}
        self._lock = Lock()

    @property
    def validity(self) -> timedelta:
        return self._validity

    def get(self, service: str) -> SessionCredential | None:
        now = self._clock()
        with self._lock:
            credential = self._entries.get(service)
            if credential is None:
                return None
            if now - credential.issued_at < self._validity:
                return credential
            del self._entries[service]
        log.debug("cache.expired", service=service)
        return None

    def put(self, credential: SessionCredential) -> SessionCredential:
        """Store `credential`, stamped with the cache clock, and return the stored instance."""
        stored = replace(credential, issued_at=self._clock())
        with self._lock:
            self._entries[stored.service] = stored
        return stored

    def invalidate(self, service: str) -> None:
        with self._lock:
            self._entries.pop(service, None)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.info("cache.cleared", evicted=count)

    def sweep(self) -> int:
        """Evict every credential older than the validity window; return how many."""
        now = self._clock()
        with self._lock:
            expired = [
                service
                for service, credential in self._entries.items()
                if now - credential.issued_at >= self._validity
            ]
            for service in expired:
                del self._entries[service]
        if expired:
            log.info("cache.swept", evicted=len(expired), services=expired)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
