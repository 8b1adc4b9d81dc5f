from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from .errors import AppConflictError

logger = logging.getLogger("appsd.locks")


class OperationLocks:
    """
    One non-blocking lock per app name.

    install / update / uninstall / status changes on the same name never
    overlap: a second caller is turned away with AppConflictError instead of
    waiting. Different names don't interact.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def is_busy(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            logger.warning(f"Rejected concurrent operation on app '{name}'")
            raise AppConflictError(name)
        try:
            yield
        finally:
            lock.release()
