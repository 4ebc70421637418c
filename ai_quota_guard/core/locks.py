"""
Per-account mutual exclusion.

Gate calls for one account are linearized in-process by a keyed lock;
calls for different accounts never wait on each other here.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class AccountLocks:
    """Registry of one lock per account id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, account_id: str) -> Iterator[None]:
        """Hold the account's lock for the duration of the block."""
        lock = self._lock_for(account_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_default_locks = AccountLocks()


def get_account_locks() -> AccountLocks:
    """Process-wide lock registry shared by every gate call."""
    return _default_locks
