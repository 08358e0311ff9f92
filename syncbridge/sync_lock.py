import os
import socket
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, Optional

from syncbridge.datetime_utils import utcnow
from syncbridge.errors import SyncLockError
from syncbridge.logging_config import get_logger
from syncbridge.services.state_store import StateStore

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "lock:"


class SyncLockManager:
    """
    Named, non-blocking run locks for queue processing.

    Each lock is a lease row in sync_state, so it is shared by every worker
    process using the same database. A lease expires after ``lease_seconds``
    which lets the queue recover on its own if a worker dies while holding it.
    Acquisition never waits: a busy lock raises SyncLockError and the caller
    skips this tick.
    """

    def __init__(self, state_store: Optional[StateStore] = None, lease_seconds: int = 300):
        self._lock = threading.RLock()  # guards the local bookkeeping below
        self._state = state_store or StateStore()
        self._lease_seconds = lease_seconds
        self._owner_prefix = f"{socket.gethostname()}:{os.getpid()}"
        self._held: Dict[str, dict] = {}

    def _key(self, name: str) -> str:
        return f"{LOCK_KEY_PREFIX}{name}"

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held by anyone"""
        return self._state.is_held(self._key(name))

    def get_current_operation(self, name: str) -> Optional[str]:
        """Get the operation name this process is running under ``name``, if any"""
        with self._lock:
            held = self._held.get(name)
            return held["operation"] if held else None

    @contextmanager
    def acquire_sync_lock(self, name: str, operation_name: Optional[str] = None, lease_seconds: Optional[int] = None):
        """
        Context manager to acquire a run lock

        Args:
            name: Lock name (global queue or per-module)
            operation_name: Label for logs and status output
            lease_seconds: Override for the lease length

        Raises:
            SyncLockError: If another worker holds the lock
        """
        operation_name = operation_name or name
        owner = f"{self._owner_prefix}:{uuid.uuid4().hex[:8]}"
        ttl = lease_seconds or self._lease_seconds

        with self._lock:
            if name in self._held:
                logger.warning(
                    "Sync lock already held in this process",
                    lock=name, current_operation=self._held[name]["operation"], requested=operation_name,
                )
                raise SyncLockError(f"Sync already in progress: {self._held[name]['operation']}")

            if not self._state.try_acquire(self._key(name), ttl, owner=owner):
                logger.info("Sync lock busy, skipping", lock=name, operation=operation_name)
                raise SyncLockError(f"Sync lock '{name}' is held by another worker")

            self._held[name] = {
                "operation": operation_name,
                "owner": owner,
                "thread_id": threading.get_ident(),
                "acquired_at": utcnow(),
            }
            logger.info("Sync lock acquired", lock=name, operation=operation_name)

        try:
            yield  # This is where the sync operation runs
        finally:
            with self._lock:
                self._held.pop(name, None)
                try:
                    released = self._state.release(self._key(name), owner=owner)
                except Exception:
                    # The lease will still expire on its own
                    logger.error("Failed to release sync lock", lock=name, exc_info=True)
                    released = False
                if released:
                    logger.info("Sync lock released", lock=name, operation=operation_name)
                else:
                    logger.warning("Sync lock was not held at release time", lock=name, operation=operation_name)

    def get_status(self) -> dict:
        """Get current status of the locks held by this process"""
        now = utcnow()
        with self._lock:
            held = {
                name: {
                    "operation": info["operation"],
                    "held_by_thread": info["thread_id"],
                    "held_for_seconds": (now - info["acquired_at"]).total_seconds(),
                }
                for name, info in self._held.items()
            }
        return {
            "held_locks": held,
            "timestamp": now.isoformat(),
            "lease_seconds": self._lease_seconds,
        }


def synchronized_sync(lock_manager: SyncLockManager, name: str):
    """
    Decorator to ensure a function runs under a named run lock

    Args:
        lock_manager: Lock manager to use
        name: Lock name
    """

    def decorator(func):
        def wrapper(*args, **kwargs):
            try:
                with lock_manager.acquire_sync_lock(name):
                    return func(*args, **kwargs)
            except SyncLockError as e:
                logger.warning(f"Cannot execute {name}: {e}")
                raise

        return wrapper

    return decorator
