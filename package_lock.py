import threading
from contextlib import contextmanager


class PackageLocks:
    """One lock per (device, package) so a package is never installed twice at once on a device."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._active = set()

    def _lock_for(self, key):
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def acquire(self, serial, package, timeout=-1):
        key = (serial, package)
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            raise TimeoutError(f"{package} is already being installed on {serial}")
        with self._guard:
            self._active.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._active.discard(key)
            lock.release()

    def is_locked(self, serial, package):
        with self._guard:
            return (serial, package) in self._active
