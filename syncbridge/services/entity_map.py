"""
Identity map between local records and their remote counterparts.

Reads go through a bounded per-process LRU cache that holds both directions
of each mapping. Writes are single-statement upserts so the surrogate key
of an existing mapping never churns.
"""
import hashlib
import json
import threading
from collections import OrderedDict
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from syncbridge.datetime_utils import utcnow
from syncbridge.errors import IdentityConflictError
from syncbridge.logging_config import get_logger
from syncbridge.models import EntityMap, db

logger = get_logger(__name__)

BATCH_CHUNK_SIZE = 500
MAX_CACHE_SIZE = 5000
MAPPINGS_LIMIT = 50000

_UPSERT_DIALECTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def content_hash(payload) -> str:
    """sha256 of the canonical JSON form of a payload ("" for no payload)."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return hashlib.sha256(payload.encode("utf-8")).hexdigest()
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EntityMapRepository:
    """Repository over entity_map with a two-way LRU cache."""

    def __init__(self, session=None, max_cache_size=MAX_CACHE_SIZE):
        self._session = session
        self.max_cache_size = max_cache_size
        self._cache: "OrderedDict[str, int]" = OrderedDict()
        self._cache_lock = threading.RLock()

    @property
    def session(self):
        return self._session or db.session

    # ==============================================================================
    # Cache
    # ==============================================================================

    @staticmethod
    def _local_key(module, entity_type, local_id):
        return f"{module}:{entity_type}:local:{int(local_id)}"

    @staticmethod
    def _remote_key(module, entity_type, remote_id):
        return f"{module}:{entity_type}:remote:{int(remote_id)}"

    def _cache_get(self, key) -> Optional[int]:
        with self._cache_lock:
            if key not in self._cache:
                return None
            self._cache.move_to_end(key)
            return self._cache[key]

    def _cache_put(self, module, entity_type, local_id, remote_id):
        with self._cache_lock:
            local_key = self._local_key(module, entity_type, local_id)
            remote_key = self._remote_key(module, entity_type, remote_id)
            self._cache[local_key] = int(remote_id)
            self._cache[remote_key] = int(local_id)
            self._cache.move_to_end(local_key)
            self._cache.move_to_end(remote_key)
            self._evict()

    def _evict(self):
        # Drop least recently used entries together with their reverse entry
        while len(self._cache) > self.max_cache_size:
            key, value = self._cache.popitem(last=False)
            prefix, _, _ = key.rpartition(":")
            scope, _, direction = prefix.rpartition(":")
            partner_direction = "remote" if direction == "local" else "local"
            self._cache.pop(f"{scope}:{partner_direction}:{value}", None)

    def _cache_drop_local(self, module, entity_type, local_id):
        with self._cache_lock:
            remote_id = self._cache.pop(self._local_key(module, entity_type, local_id), None)
            if remote_id is not None:
                self._cache.pop(self._remote_key(module, entity_type, remote_id), None)

    def _cache_drop_remote(self, module, entity_type, remote_id):
        with self._cache_lock:
            local_id = self._cache.pop(self._remote_key(module, entity_type, remote_id), None)
            if local_id is not None:
                self._cache.pop(self._local_key(module, entity_type, local_id), None)

    def flush_cache(self):
        with self._cache_lock:
            self._cache.clear()
        logger.debug("Entity map cache flushed")

    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    # ==============================================================================
    # Single lookups
    # ==============================================================================

    def resolve_remote(self, module, entity_type, local_id) -> Optional[int]:
        """Remote id mapped to a local record, or None."""
        cached = self._cache_get(self._local_key(module, entity_type, local_id))
        if cached is not None:
            return cached

        remote_id = self.session.execute(
            select(EntityMap.remote_id)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.local_id == local_id)
        ).scalar()
        if remote_id is not None:
            self._cache_put(module, entity_type, local_id, remote_id)
        return remote_id

    def resolve_local(self, module, entity_type, remote_id) -> Optional[int]:
        """Local id mapped to a remote record, or None."""
        cached = self._cache_get(self._remote_key(module, entity_type, remote_id))
        if cached is not None:
            return cached

        local_id = self.session.execute(
            select(EntityMap.local_id)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.remote_id == remote_id)
        ).scalar()
        if local_id is not None:
            self._cache_put(module, entity_type, local_id, remote_id)
        return local_id

    def get_entry(self, module, entity_type, local_id) -> Optional[EntityMap]:
        return self.session.execute(
            select(EntityMap)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.local_id == local_id)
        ).scalar_one_or_none()

    # ==============================================================================
    # Batch lookups
    # ==============================================================================

    def resolve_remote_batch(self, module, entity_type, local_ids: Iterable[int]) -> Dict[int, int]:
        """Map of local id -> remote id for every local id that has a mapping."""
        return self._resolve_batch(module, entity_type, local_ids, from_local=True)

    def resolve_local_batch(self, module, entity_type, remote_ids: Iterable[int]) -> Dict[int, int]:
        """Map of remote id -> local id for every remote id that has a mapping."""
        return self._resolve_batch(module, entity_type, remote_ids, from_local=False)

    def _resolve_batch(self, module, entity_type, ids, from_local):
        ids = sorted({int(i) for i in ids if i is not None})
        if not ids:
            return {}

        key_fn = self._local_key if from_local else self._remote_key
        resolved = {}
        uncached = []
        for entity_id in ids:
            cached = self._cache_get(key_fn(module, entity_type, entity_id))
            if cached is not None:
                resolved[entity_id] = cached
            else:
                uncached.append(entity_id)

        source_col = EntityMap.local_id if from_local else EntityMap.remote_id
        for chunk in _chunks(uncached, BATCH_CHUNK_SIZE):
            rows = self.session.execute(
                select(EntityMap.local_id, EntityMap.remote_id)
                .where(EntityMap.module == module)
                .where(EntityMap.entity_type == entity_type)
                .where(source_col.in_(chunk))
            ).all()
            for row in rows:
                self._cache_put(module, entity_type, row.local_id, row.remote_id)
                if from_local:
                    resolved[row.local_id] = row.remote_id
                else:
                    resolved[row.remote_id] = row.local_id

        logger.debug(
            "Resolved identity batch",
            module=module, entity_type=entity_type, requested=len(ids),
            cache_hits=len(ids) - len(uncached), found=len(resolved),
        )
        return resolved

    def get_module_entity_mappings(self, module, entity_type, limit=MAPPINGS_LIMIT) -> Dict[int, dict]:
        """
        All mappings for a module/entity type, keyed by local id.

        Bounded by ``limit`` and kept out of the cache, since it is used for
        bulk scans that would otherwise flush the hot entries.
        """
        rows = self.session.execute(
            select(EntityMap.local_id, EntityMap.remote_id, EntityMap.content_hash)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .order_by(EntityMap.local_id)
            .limit(limit)
        ).all()
        if len(rows) >= limit:
            logger.warning("Mapping scan hit its limit", module=module, entity_type=entity_type, limit=limit)
        return {
            row.local_id: {"remote_id": row.remote_id, "content_hash": row.content_hash}
            for row in rows
        }

    # ==============================================================================
    # Writes
    # ==============================================================================

    def save(self, module, entity_type, local_id, remote_id, remote_model="", payload_hash="", now=None) -> None:
        """
        Insert or update the mapping for a local record in one statement.

        Raises:
            IdentityConflictError: the remote id already belongs to another local record
        """
        now = now or utcnow()
        values = dict(
            module=module,
            entity_type=entity_type,
            local_id=int(local_id),
            remote_id=int(remote_id),
            remote_model=remote_model or "",
            content_hash=payload_hash or "",
            last_synced_at=now,
        )
        changes = dict(
            remote_id=values["remote_id"],
            remote_model=values["remote_model"],
            content_hash=values["content_hash"],
            last_synced_at=now,
        )

        # The previous remote id for this local record must leave the cache too
        self._cache_drop_local(module, entity_type, local_id)
        self._cache_drop_remote(module, entity_type, remote_id)

        try:
            dialect_insert = _UPSERT_DIALECTS.get(self.session.get_bind().dialect.name)
            if dialect_insert is not None:
                stmt = dialect_insert(EntityMap).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[EntityMap.module, EntityMap.entity_type, EntityMap.local_id],
                    set_=changes,
                )
                self.session.execute(stmt)
            else:
                self._save_portable(values, changes)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.error(
                "Identity conflict on save",
                module=module, entity_type=entity_type, local_id=local_id, remote_id=remote_id,
            )
            raise IdentityConflictError(
                f"{module}/{entity_type} remote id {remote_id} is already mapped to another local record"
            ) from e

        self._cache_put(module, entity_type, local_id, remote_id)
        logger.debug("Identity mapping saved", module=module, entity_type=entity_type, local_id=local_id, remote_id=remote_id)

    def _save_portable(self, values, changes):
        result = self.session.execute(
            update(EntityMap)
            .where(EntityMap.module == values["module"])
            .where(EntityMap.entity_type == values["entity_type"])
            .where(EntityMap.local_id == values["local_id"])
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self.session.execute(EntityMap.__table__.insert().values(**values))

    def remove(self, module, entity_type, local_id) -> bool:
        """Delete the mapping for a local record and evict both cache directions."""
        self._cache_drop_local(module, entity_type, local_id)
        remote_id = self.session.execute(
            select(EntityMap.remote_id)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.local_id == local_id)
        ).scalar()
        if remote_id is not None:
            self._cache_drop_remote(module, entity_type, remote_id)

        result = self.session.execute(
            delete(EntityMap)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.local_id == local_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        removed = bool(result.rowcount)
        if removed:
            logger.info("Identity mapping removed", module=module, entity_type=entity_type, local_id=local_id)
        return removed

    def remove_by_remote(self, module, entity_type, remote_id) -> bool:
        local_id = self.resolve_local(module, entity_type, remote_id)
        self._cache_drop_remote(module, entity_type, remote_id)
        if local_id is None:
            return False
        return self.remove(module, entity_type, local_id)

    def has_changed(self, module, entity_type, local_id, payload) -> bool:
        """True unless the stored content hash matches this payload."""
        stored = self.session.execute(
            select(EntityMap.content_hash)
            .where(EntityMap.module == module)
            .where(EntityMap.entity_type == entity_type)
            .where(EntityMap.local_id == local_id)
        ).scalar()
        if not stored:
            return True
        return stored != content_hash(payload)
