import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from mining.errors import Busy


# Global acquisition order: every session lock before any tool lock, every
# tool lock before any ledger lock, the daily quota lock last. Within a kind,
# keys sort lexicographically.
_KIND_RANK = {'session': 0, 'tool': 1, 'ledger': 2, 'quota': 3}

LockKey = Tuple[str, ...]


def session_key(session_pk: int) -> LockKey:
    return ('session', f'{session_pk:012d}')


def tool_key(tool_pk: int) -> LockKey:
    return ('tool', f'{tool_pk:012d}')


def ledger_key(user_id: int, resource_type) -> LockKey:
    return ('ledger', f'{user_id:012d}', getattr(resource_type, 'value', resource_type))


def quota_key(resource_type) -> LockKey:
    return ('quota', getattr(resource_type, 'value', resource_type))


def _order(key: LockKey):
    return (_KIND_RANK[key[0]],) + tuple(key[1:])


class KeyedLocks:
    """Reentrant per-key locks with bounded, ordered acquisition.

    A thread may re-acquire keys it already holds (nested ledger calls inside
    a settlement). Failing to get every key within ``timeout`` seconds
    releases whatever was taken and raises Busy.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[LockKey, threading.RLock] = {}

    def _lock_for(self, key: LockKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[LockKey], timeout: float = None):
        ordered = sorted(set(keys), key=_order)
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        taken: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    raise Busy(
                        'Resource is busy, retry shortly',
                        {'lock': ':'.join(key), 'timeout_sec': budget},
                    )
                taken.append(lock)
            yield
        finally:
            for lock in reversed(taken):
                lock.release()
