"""Held scan results awaiting confirmation.

An interactive scan stores its diff here under a scan id; the user then applies
or discards it. Unconfirmed results expire.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, Optional, Protocol, Tuple

from .logging_config import get_logger
from .scanner import ScanResult

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


class PendingScanNotFoundError(KeyError):
    """The scan id is unknown, already applied/discarded, or expired."""


class PendingScanStore(Protocol):
    def get(self, scan_id: str) -> Optional[ScanResult]:
        ...

    def set(self, scan_id: str, result: ScanResult) -> None:
        ...

    def delete(self, scan_id: str) -> bool:
        ...

    def expire(self) -> int:
        """Drop expired entries and return how many were dropped."""
        ...


def new_scan_id(library_id: str) -> str:
    return f"scan_{int(time.time() * 1000)}_{library_id}_{uuid.uuid4().hex[:8]}"


class InMemoryPendingScanStore:
    """Process-local store; entries live for ttl_seconds after being set."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[float, ScanResult]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, scan_id: str) -> Optional[ScanResult]:
        with self._lock:
            item = self._items.get(scan_id)
            if item is None:
                return None
            expires_at, result = item
            if self._clock() >= expires_at:
                del self._items[scan_id]
                logger.debug(f"Pending scan {scan_id} expired")
                return None
            return result

    def set(self, scan_id: str, result: ScanResult) -> None:
        with self._lock:
            self._items[scan_id] = (self._clock() + self.ttl_seconds, result)

    def delete(self, scan_id: str) -> bool:
        with self._lock:
            return self._items.pop(scan_id, None) is not None

    def expire(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._items.items() if now >= expires_at]
            for key in expired:
                del self._items[key]
        if expired:
            logger.info(f"Discarded {len(expired)} expired pending scan(s)")
        return len(expired)
