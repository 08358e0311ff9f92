from flask_sqlalchemy import SQLAlchemy
from enum import Enum
from syncbridge.datetime_utils import utcnow, isoformat_or_none

db = SQLAlchemy()


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value)


class Direction(str, Enum):
    OUTBOUND = "outbound"  # local -> remote (push)
    INBOUND = "inbound"    # remote -> local (pull)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


_ACTIVE_SQL = "status IN ('pending', 'processing')"


class SyncJob(db.Model):
    """One unit of synchronization work in the persistent queue."""
    __tablename__ = "sync_jobs"

    id = db.Column(db.Integer, primary_key=True)
    correlation_id = db.Column(db.String(36), nullable=True)
    module = db.Column(db.String(64), nullable=False)
    direction = db.Column(db.String(16), nullable=False, default=Direction.OUTBOUND.value)
    entity_type = db.Column(db.String(64), nullable=False)
    local_id = db.Column(db.Integer, nullable=True)
    remote_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(16), nullable=False, default=Action.UPDATE.value)
    payload = db.Column(db.Text, nullable=True)  # JSON, size-bounded at enqueue
    priority = db.Column(db.Integer, nullable=False, default=5)

    status = db.Column(db.String(16), nullable=False, default=JobStatus.PENDING.value)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    last_error = db.Column(db.Text, nullable=True)
    error_kind = db.Column(db.String(16), nullable=True)

    # Coalescing: a trigger that arrived while this job was in flight
    dedup_key = db.Column(db.String(200), nullable=True)
    rerun_requested = db.Column(db.Boolean, nullable=False, default=False)

    # Timing
    scheduled_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Polling index: status + due time, then the claim ordering columns
        db.Index("idx_sync_jobs_poll", "status", "scheduled_at", "priority"),
        db.Index("idx_sync_jobs_module_status", "module", "status"),
        db.Index("idx_sync_jobs_created_at", "created_at"),
        # At most one pending/processing job per dedup key
        db.Index(
            "uq_sync_jobs_active_dedup",
            "dedup_key",
            unique=True,
            sqlite_where=db.text(_ACTIVE_SQL),
            postgresql_where=db.text(_ACTIVE_SQL),
        ),
    )

    def __repr__(self):
        return f"<SyncJob {self.id} {self.module}/{self.entity_type} {self.action} - {self.status}>"

    def to_dict(self):
        return {
            "id": self.id,
            "correlation_id": self.correlation_id,
            "module": self.module,
            "direction": self.direction,
            "entity_type": self.entity_type,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "action": self.action,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "error_kind": self.error_kind,
            "scheduled_at": isoformat_or_none(self.scheduled_at),
            "processed_at": isoformat_or_none(self.processed_at),
            "created_at": isoformat_or_none(self.created_at),
        }


class EntityMap(db.Model):
    """Durable correspondence between a local record and its remote counterpart."""
    __tablename__ = "entity_map"

    id = db.Column(db.Integer, primary_key=True)
    module = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(64), nullable=False)
    local_id = db.Column(db.Integer, nullable=False)
    remote_id = db.Column(db.Integer, nullable=False)
    remote_model = db.Column(db.String(128), nullable=False, default="")
    content_hash = db.Column(db.String(64), nullable=False, default="")
    last_synced_at = db.Column(db.DateTime, nullable=True)

    # Each direction has its own unique index, which also makes the 4-tuple unique
    __table_args__ = (
        db.UniqueConstraint("module", "entity_type", "local_id", name="uq_entity_map_local"),
        db.UniqueConstraint("module", "entity_type", "remote_id", name="uq_entity_map_remote"),
    )

    def __repr__(self):
        return f"<EntityMap {self.module}/{self.entity_type} {self.local_id}<->{self.remote_id}>"

    def to_dict(self):
        return {
            "module": self.module,
            "entity_type": self.entity_type,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "remote_model": self.remote_model,
            "content_hash": self.content_hash,
            "last_synced_at": isoformat_or_none(self.last_synced_at),
        }


class SyncState(db.Model):
    """Durable key/value row for breaker, notifier, lock and rate-limit state."""
    __tablename__ = "sync_state"

    key = db.Column(db.String(128), primary_key=True)
    int_value = db.Column(db.Integer, nullable=False, default=0)
    data = db.Column(db.JSON, nullable=True)
    owner = db.Column(db.String(64), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)  # NULL = no expiry
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncState {self.key}={self.int_value}>"
