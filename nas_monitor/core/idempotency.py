"""Idempotency index for control requests.

Maps caller-supplied idempotency keys to the control request created for
them, so that a repeated submit observes the first request instead of
executing the action again.

Key features:
- TTL-based expiration (default 24 hours)
- Per-key asyncio locks to serialise concurrent submits with the same key
- Periodic cleanup that never drops a binding its owner still retains

The index never evicts bindings to make room. Its owner bounds the number of
tracked requests and calls ``forget`` when it lets one go.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexedRequest:
    """Record linking an idempotency key to a control request."""

    idempotency_key: str
    request_id: str
    indexed_at: datetime


class IdempotencyIndex:
    """
    Tracks which control request owns each idempotency key.

    Usage:
        index = IdempotencyIndex(ttl_hours=24, retain=requests.__contains__)

        async with index.lock(key):
            existing = index.lookup(key)
            if existing is not None and not is_failed(existing):
                return existing
            request_id = create_request()
            index.bind(key, request_id)
    """

    def __init__(
        self,
        ttl_hours: int = 24,
        cleanup_interval: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
        retain: Optional[Callable[[str], bool]] = None,
    ) -> None:
        """
        Initialize the index.

        Args:
            ttl_hours: Time-to-live for key bindings (default 24 hours).
            cleanup_interval: Run cleanup every N operations.
            clock: Source of the current UTC time (for tests).
            retain: Returns True for request ids the owner still tracks;
                their bindings outlive the TTL.
        """
        self._entries: Dict[str, IndexedRequest] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._ttl = timedelta(hours=ttl_hours)
        self._cleanup_interval = max(1, cleanup_interval)
        self._operation_count = 0
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._retain = retain or (lambda _request_id: False)

    def lock(self, idempotency_key: str) -> asyncio.Lock:
        """Return the lock serialising submits for ``idempotency_key``."""
        lock = self._locks.get(idempotency_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[idempotency_key] = lock
        return lock

    def lookup(self, idempotency_key: str) -> Optional[str]:
        """
        Return the request id bound to the key.

        Returns None if not found or expired.
        """
        self._maybe_cleanup()

        entry = self._entries.get(idempotency_key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock() - self._ttl):
            del self._entries[idempotency_key]
            return None
        return entry.request_id

    def bind(self, idempotency_key: str, request_id: str) -> None:
        """Bind the key to a (new) request, replacing any previous binding."""
        self._maybe_cleanup()

        previous = self._entries.get(idempotency_key)
        self._entries[idempotency_key] = IndexedRequest(
            idempotency_key=idempotency_key,
            request_id=request_id,
            indexed_at=self._clock(),
        )
        if previous is not None and previous.request_id != request_id:
            LOGGER.info(
                "Idempotency key %s rebound from %s to %s",
                idempotency_key,
                previous.request_id,
                request_id,
            )

    def forget(self, request_id: str) -> None:
        """Drop any binding pointing at ``request_id``."""
        keys = [k for k, v in self._entries.items() if v.request_id == request_id]
        for key in keys:
            del self._entries[key]

    def clear(self) -> None:
        """Clear all bindings. Used for testing or reset."""
        self._entries.clear()
        self._locks.clear()
        self._operation_count = 0

    @property
    def entry_count(self) -> int:
        """Get current number of tracked keys."""
        return len(self._entries)

    def _is_expired(self, entry: IndexedRequest, cutoff: datetime) -> bool:
        return entry.indexed_at < cutoff and not self._retain(entry.request_id)

    def _maybe_cleanup(self) -> None:
        self._operation_count += 1
        if self._operation_count % self._cleanup_interval != 0:
            return
        self._cleanup_expired()

    def _cleanup_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        expired_keys = [k for k, v in self._entries.items() if self._is_expired(v, cutoff)]

        for key in expired_keys:
            del self._entries[key]

        if expired_keys:
            LOGGER.debug("Cleaned up %d expired idempotency keys", len(expired_keys))

        # Locks are only needed while a key is live and unheld.
        for key in [k for k in self._locks if k not in self._entries]:
            if not self._locks[key].locked():
                del self._locks[key]
