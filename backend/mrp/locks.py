"""Company-scoped exclusive run lock."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Hashable, Optional

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


class CompanyRunLock:
    """
    One exclusive lock per company, with the current owner recorded.

    Usage:
        locks = CompanyRunLock()
        if locks.try_acquire(company_id, owner=run_id):
            try:
                ...
            finally:
                locks.release(company_id, run_id)
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}
        self._owners: Dict[int, Hashable] = {}

    def _lock_for(self, company_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = self._locks[company_id] = threading.Lock()
            return lock

    def try_acquire(self, company_id: int, owner: Hashable) -> bool:
        if not self._lock_for(company_id).acquire(blocking=False):
            return False
        with self._guard:
            self._owners[company_id] = owner
        return True

    def acquire(self, company_id: int, owner: Hashable, timeout: Optional[float] = None) -> None:
        """
        Block until the lock is free.

        Raises:
            LockTimeoutError: not acquired within `timeout` seconds
        """
        lock = self._lock_for(company_id)
        acquired = lock.acquire(timeout=timeout) if timeout is not None and timeout >= 0 else lock.acquire()
        if not acquired:
            raise LockTimeoutError(company_id, timeout or 0.0)
        with self._guard:
            self._owners[company_id] = owner

    def transfer(self, company_id: int, owner: Hashable, new_owner: Hashable) -> None:
        with self._guard:
            if self._owners.get(company_id) != owner:
                raise RuntimeError(f"MRP lock of company {company_id} is not held by {owner!r}")
            self._owners[company_id] = new_owner

    def release(self, company_id: int, owner: Hashable) -> None:
        with self._guard:
            if self._owners.get(company_id) != owner:
                raise RuntimeError(f"MRP lock of company {company_id} is not held by {owner!r}")
            del self._owners[company_id]
            lock = self._locks[company_id]
        lock.release()
        logger.debug(f"Released MRP lock of company {company_id}")

    def owner(self, company_id: int) -> Optional[Hashable]:
        with self._guard:
            return self._owners.get(company_id)

    def is_locked(self, company_id: int) -> bool:
        return self.owner(company_id) is not None
