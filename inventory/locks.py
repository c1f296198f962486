"""Process-local locks keyed by (branch_id, raw_item_id).

Writers for the same key are serialized; writers for different keys never
wait on each other. Entries are dropped from the registry once nobody holds
or waits for them, so the registry only grows with live contention.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime

from django.conf import settings
from django.utils import timezone

from inventory.exceptions import DeadlineExceeded, LockTimeout

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[tuple, _Entry] = {}

    def _checkout(self, key) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, key, timeout: float):
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=max(timeout, 0)):
                raise LockTimeout(key, timeout)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def active_keys(self) -> list[tuple]:
        with self._guard:
            return list(self._entries)


registry = KeyedLockRegistry()


def stock_key(branch_id, raw_item_id) -> tuple[str, str]:
    return (str(branch_id), str(raw_item_id))


def remaining_seconds(deadline: datetime | None) -> float | None:
    if deadline is None:
        return None
    return (deadline - timezone.now()).total_seconds()


@contextmanager
def stock_lock(branch_id, raw_item_id, *, deadline: datetime | None = None, timeout: float | None = None):
    """Hold the lock for one stock key.

    An already expired ``deadline`` fails before waiting. The wait itself is
    bounded by the smaller of ``timeout`` (or ``INVENTORY_LOCK_TIMEOUT_SECONDS``)
    and the time left before ``deadline``.
    """
    if timeout is None:
        timeout = float(getattr(settings, "INVENTORY_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS))

    remaining = remaining_seconds(deadline)
    if remaining is not None:
        if remaining <= 0:
            raise DeadlineExceeded()
        timeout = min(timeout, remaining)

    started = time.monotonic()
    with registry.hold(stock_key(branch_id, raw_item_id), timeout):
        yield time.monotonic() - started
