"""
Durable key/value state with store-level atomic primitives.

Every cross-worker mutation that must not lose updates (counters, trial
gates, run locks, cooldowns) goes through a single conditional SQL statement
here, never through read-modify-write in Python.
"""
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, insert, select, update, or_
from sqlalchemy.exc import IntegrityError

from syncbridge.datetime_utils import utcnow
from syncbridge.logging_config import get_logger
from syncbridge.models import SyncState, db

logger = get_logger(__name__)


class StateStore:
    """Thin repository over the sync_state table."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # -- plain values -------------------------------------------------------

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.session.execute(
            select(SyncState.int_value).where(SyncState.key == key)
        ).scalar()
        return default if value is None else int(value)

    def get_data(self, key: str) -> Optional[dict]:
        return self.session.execute(
            select(SyncState.data).where(SyncState.key == key)
        ).scalar()

    def set(self, key: str, int_value: int = 0, data: Optional[dict] = None, expires_at=None) -> None:
        """Upsert a row. Last writer wins, so only use for idempotent state."""
        for _ in range(3):
            result = self.session.execute(
                update(SyncState)
                .where(SyncState.key == key)
                .values(int_value=int_value, data=data, expires_at=expires_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                self.session.commit()
                return
            try:
                self.session.execute(
                    insert(SyncState).values(key=key, int_value=int_value, data=data, expires_at=expires_at)
                )
                self.session.commit()
                return
            except IntegrityError:
                # Inserted concurrently; loop back to the update path
                self.session.rollback()
        raise RuntimeError(f"Could not write state key {key!r}")

    def keys_with_prefix(self, prefix: str) -> list:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return list(self.session.execute(
            select(SyncState.key).where(SyncState.key.like(f"{escaped}%", escape="\\")).order_by(SyncState.key)
        ).scalars().all())

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        result = self.session.execute(
            delete(SyncState).where(SyncState.key.in_(keys)).execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount or 0

    # -- atomic counter -----------------------------------------------------

    def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to a counter and return the new value."""
        for _ in range(3):
            result = self.session.execute(
                update(SyncState)
                .where(SyncState.key == key)
                .values(int_value=SyncState.int_value + amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                # Still inside our write transaction, so this reads our own increment
                value = self.get_int(key)
                self.session.commit()
                return value
            try:
                self.session.execute(insert(SyncState).values(key=key, int_value=amount))
                self.session.commit()
                return amount
            except IntegrityError:
                self.session.rollback()
        raise RuntimeError(f"Could not increment state key {key!r}")

    # -- leases -------------------------------------------------------------

    def try_acquire(self, key: str, ttl_seconds: float, owner: str = "", now=None) -> bool:
        """
        Take a lease on ``key`` for ``ttl_seconds`` without blocking.

        Returns True when this caller now holds the lease. An expired lease
        is taken over with a conditional update; a missing one is inserted and
        the primary key arbitrates between concurrent inserters.
        """
        now = now or utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        result = self.session.execute(
            update(SyncState)
            .where(SyncState.key == key)
            .where(SyncState.expires_at.isnot(None))
            .where(SyncState.expires_at <= now)
            .values(owner=owner, expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            self.session.commit()
            return True

        try:
            self.session.execute(
                insert(SyncState).values(key=key, owner=owner, expires_at=expires_at, updated_at=now)
            )
            self.session.commit()
            return True
        except IntegrityError:
            self.session.rollback()
            return False

    def release(self, key: str, owner: Optional[str] = None) -> bool:
        """Drop a lease. With ``owner`` given, only that holder's lease is dropped."""
        stmt = delete(SyncState).where(SyncState.key == key)
        if owner is not None:
            stmt = stmt.where(or_(SyncState.owner == owner, SyncState.owner.is_(None)))
        result = self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.commit()
        return bool(result.rowcount)

    def is_held(self, key: str, now=None) -> bool:
        now = now or utcnow()
        expires_at = self.session.execute(
            select(SyncState.expires_at).where(SyncState.key == key)
        ).first()
        if expires_at is None:
            return False
        return expires_at[0] is None or expires_at[0] > now

    def lease_info(self, key: str) -> Optional[dict]:
        row = self.session.execute(
            select(SyncState.owner, SyncState.expires_at, SyncState.updated_at).where(SyncState.key == key)
        ).first()
        if row is None:
            return None
        return {"owner": row.owner, "expires_at": row.expires_at, "acquired_at": row.updated_at}
