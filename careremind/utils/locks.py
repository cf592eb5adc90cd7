import os
import re
import threading
import logging
from contextlib import contextmanager
from typing import Dict

from filelock import FileLock, Timeout

from .errors import AppointmentBusy

logger = logging.getLogger(__name__)


class AppointmentLocks:
    """
    One file lock per appointment id. Work on different appointments runs in
    parallel; work on the same appointment is serialised, across threads and
    processes sharing the lock directory.
    """

    def __init__(self, lock_dir: str = "data/locks", timeout: float = 30):
        self.lock_dir = lock_dir
        self.timeout = timeout
        self._locks: Dict[str, FileLock] = {}
        self._guard = threading.Lock()
        os.makedirs(lock_dir, exist_ok=True)

    def _lock_for(self, appointment_id: str) -> FileLock:
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", appointment_id)
        with self._guard:
            lock = self._locks.get(safe_id)
            if lock is None:
                lock = FileLock(os.path.join(self.lock_dir, f"appointment-{safe_id}.lock"))
                self._locks[safe_id] = lock
            return lock

    @contextmanager
    def hold(self, appointment_id: str):
        """Hold the appointment's lock; re-entrant within one thread"""
        lock = self._lock_for(appointment_id)
        try:
            lock.acquire(timeout=self.timeout)
        except Timeout as e:
            logger.warning(f"Timed out waiting for lock on appointment {appointment_id}")
            raise AppointmentBusy(
                f"Appointment {appointment_id} is being modified by another operation"
            ) from e
        try:
            yield
        finally:
            lock.release()
