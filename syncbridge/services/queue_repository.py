"""
Persistent job queue.

Every state transition is a single UPDATE guarded by the status the caller
expects the row to be in, so concurrent workers can never both move the same
job. The partial unique index on ``dedup_key`` arbitrates concurrent enqueues.
"""
import json
import math
import threading
import time
import uuid
from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from syncbridge.datetime_utils import isoformat_or_none, utcnow
from syncbridge.errors import (
    ErrorKind,
    InvalidJobError,
    PayloadTooLargeError,
    TransientError,
)
from syncbridge.logging_config import get_logger
from syncbridge.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Action,
    Direction,
    JobStatus,
    SyncJob,
    db,
)
from syncbridge.services.retry_policy import next_retry_at, should_retry

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 65535
DEFAULT_MAX_PAYLOAD_BYTES = 65536
STATS_CACHE_SECONDS = 30
ENQUEUE_RETRIES = 3
MAX_DEBOUNCE_SECONDS = 86400

STALE_FAILED_MESSAGE = "Recovered from stale processing; max attempts exhausted"
STALE_REQUEUED_MESSAGE = "Recovered from stale processing"


def build_dedup_key(module, entity_type, direction, local_id=None, remote_id=None):
    """Key shared by all triggers for the same entity; None when the entity has no id yet."""
    if local_id is not None:
        return f"{module}:{entity_type}:{direction}:L{local_id}"
    if remote_id is not None:
        return f"{module}:{entity_type}:{direction}:R{remote_id}"
    return None


def serialize_payload(payload, max_bytes=DEFAULT_MAX_PAYLOAD_BYTES):
    """
    Serialize a payload to JSON and enforce the size cap.

    Raises:
        InvalidJobError: payload is not JSON-serializable
        PayloadTooLargeError: serialized payload is larger than ``max_bytes``
    """
    if payload is None:
        return None
    try:
        text = json.dumps(payload, default=str, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise InvalidJobError(f"Payload is not JSON-serializable: {e}") from e
    size = len(text.encode("utf-8"))
    if size > max_bytes:
        raise PayloadTooLargeError(size, max_bytes)
    return text


def _coerce_id(name, value):
    """Entity ids are integers; numeric strings from form or query input are accepted."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidJobError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise InvalidJobError(f"{name} must be an integer, got {value!r}")


def _coerce_debounce(value):
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise InvalidJobError(f"debounce_seconds must be a number, got {value!r}")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise InvalidJobError(f"debounce_seconds must be a number, got {value!r}")
    if not math.isfinite(seconds) or not 0 <= seconds <= MAX_DEBOUNCE_SECONDS:
        raise InvalidJobError(f"debounce_seconds must be between 0 and {MAX_DEBOUNCE_SECONDS}, got {value!r}")
    return seconds


def _coalesce_action(existing, incoming):
    """Action an active job should carry after a new trigger lands on it."""
    if incoming == Action.DELETE.value:
        return incoming
    if existing == Action.CREATE.value:
        # Nothing exists remotely yet, so an update still has to create
        return existing
    return incoming


class SyncQueueRepository:
    """Job Store over the sync_jobs table."""

    _stats_lock = threading.Lock()
    _stats_cache = {"value": None, "expires": 0.0}

    def __init__(self, session=None, max_payload_bytes=DEFAULT_MAX_PAYLOAD_BYTES, default_max_attempts=3):
        self._session = session
        self.max_payload_bytes = max_payload_bytes
        self.default_max_attempts = default_max_attempts

    @property
    def session(self):
        return self._session or db.session

    # ==============================================================================
    # Enqueue
    # ==============================================================================

    def enqueue(
        self,
        module,
        entity_type,
        action=Action.UPDATE.value,
        direction=Direction.OUTBOUND.value,
        local_id=None,
        remote_id=None,
        payload=None,
        priority=5,
        max_attempts=None,
        debounce_seconds=0,
        correlation_id=None,
        now=None,
    ) -> int:
        """
        Add a job, or fold it into the active job for the same entity.

        A pending match takes the new payload/priority/schedule in place.
        A processing match stores the new payload and is flagged so it runs
        again once the in-flight attempt finishes.

        Returns:
            int: id of the job that will carry this trigger

        Raises:
            InvalidJobError: missing module/entity_type, bad direction/priority,
                non-integer ids or a bad debounce
            PayloadTooLargeError: serialized payload exceeds the cap
        """
        now = now or utcnow()
        module = (module or "").strip()
        entity_type = (entity_type or "").strip()
        if not module or not entity_type:
            raise InvalidJobError("module and entity_type are required")

        if direction not in (Direction.OUTBOUND.value, Direction.INBOUND.value):
            raise InvalidJobError(f"Invalid direction: {direction!r}")

        if action not in (Action.CREATE.value, Action.UPDATE.value, Action.DELETE.value):
            logger.warning("Unknown action, defaulting to update", module=module, entity_type=entity_type, action=action)
            action = Action.UPDATE.value

        try:
            priority = int(priority)
        except (TypeError, ValueError):
            raise InvalidJobError(f"Invalid priority: {priority!r}")
        if not 1 <= priority <= 10:
            raise InvalidJobError(f"Priority must be between 1 and 10, got {priority}")

        local_id = _coerce_id("local_id", local_id)
        remote_id = _coerce_id("remote_id", remote_id)
        debounce_seconds = _coerce_debounce(debounce_seconds)

        payload_text = serialize_payload(payload, self.max_payload_bytes)
        scheduled_at = now + timedelta(seconds=debounce_seconds) if debounce_seconds else now
        dedup_key = build_dedup_key(module, entity_type, direction, local_id, remote_id)

        for attempt in range(1, ENQUEUE_RETRIES + 1):
            if dedup_key is not None:
                job_id = self._fold_into_active(dedup_key, action, payload_text, priority, scheduled_at, now)
                if job_id is not None:
                    return job_id

            job = SyncJob(
                correlation_id=correlation_id or uuid.uuid4().hex,
                module=module,
                direction=direction,
                entity_type=entity_type,
                local_id=local_id,
                remote_id=remote_id,
                action=action,
                payload=payload_text,
                priority=priority,
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=max_attempts or self.default_max_attempts,
                dedup_key=dedup_key,
                scheduled_at=scheduled_at,
                created_at=now,
                updated_at=now,
            )
            try:
                self.session.add(job)
                self.session.commit()
            except IntegrityError:
                # Another writer inserted the active job first
                self.session.rollback()
                logger.info("Concurrent enqueue detected, retrying dedup check", dedup_key=dedup_key, attempt=attempt)
                continue

            logger.info(
                "Job enqueued",
                job_id=job.id, module=module, entity_type=entity_type, action=action,
                direction=direction, local_id=local_id, remote_id=remote_id, scheduled_at=scheduled_at.isoformat(),
            )
            return job.id

        raise TransientError(f"Could not enqueue job for {dedup_key} after {ENQUEUE_RETRIES} attempts")

    def _fold_into_active(self, dedup_key, action, payload_text, priority, scheduled_at, now) -> Optional[int]:
        row = self.session.execute(
            select(SyncJob.id, SyncJob.status, SyncJob.action)
            .where(SyncJob.dedup_key == dedup_key)
            .where(SyncJob.status.in_(ACTIVE_STATUSES))
        ).first()
        if row is None:
            return None

        values = dict(
            action=_coalesce_action(row.action, action),
            payload=payload_text,
            priority=priority,
            updated_at=now,
        )
        if row.status == JobStatus.PENDING.value:
            values["scheduled_at"] = scheduled_at
        else:
            values["rerun_requested"] = True

        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id == row.id)
            .where(SyncJob.status == row.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            # Status moved under us; the caller re-runs the check
            return None

        logger.info(
            "Coalesced trigger into active job",
            job_id=row.id, dedup_key=dedup_key, active_status=row.status,
            rerun_requested=row.status == JobStatus.PROCESSING.value,
        )
        return row.id

    # ==============================================================================
    # Claiming
    # ==============================================================================

    def claim_due(self, limit, now=None, module=None, exclude_modules: Iterable[str] = ()) -> List[SyncJob]:
        """
        Claim up to ``limit`` due jobs for this worker.

        Candidates are ordered by (priority, scheduled_at, id). Each is moved
        to processing by an UPDATE guarded on status='pending'; rows another
        worker got to first are dropped from the result.
        """
        now = now or utcnow()
        if limit <= 0:
            return []
        candidate_ids = self._select_candidates(limit, now, module, tuple(exclude_modules or ()))
        if not candidate_ids:
            return []
        return self._claim_ids(candidate_ids, now)

    def _select_candidates(self, limit, now, module=None, exclude_modules=()) -> List[int]:
        stmt = (
            select(SyncJob.id)
            .where(SyncJob.status == JobStatus.PENDING.value)
            .where(SyncJob.scheduled_at <= now)
            .order_by(SyncJob.priority.asc(), SyncJob.scheduled_at.asc(), SyncJob.id.asc())
            .limit(limit)
        )
        if module:
            stmt = stmt.where(SyncJob.module == module)
        if exclude_modules:
            stmt = stmt.where(SyncJob.module.notin_(exclude_modules))
        # Rendered as FOR UPDATE SKIP LOCKED on backends that support it
        stmt = stmt.with_for_update(skip_locked=True)
        return list(self.session.execute(stmt).scalars().all())

    def _claim_ids(self, candidate_ids, now) -> List[SyncJob]:
        claimed = []
        for job_id in candidate_ids:
            result = self.session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id)
                .where(SyncJob.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(job_id)
        self.session.commit()

        if not claimed:
            return []

        jobs = self.session.execute(
            select(SyncJob).where(SyncJob.id.in_(claimed)).execution_options(populate_existing=True)
        ).scalars().all()
        order = {job_id: index for index, job_id in enumerate(claimed)}
        jobs = sorted(jobs, key=lambda j: order[j.id])
        logger.info("Claimed jobs", count=len(jobs), job_ids=claimed)
        return jobs

    def release_claimed(self, job_ids, now=None) -> int:
        """Hand claimed jobs back to the queue untouched, e.g. when a run hits its time limit."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        now = now or utcnow()
        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id.in_(job_ids))
            .where(SyncJob.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.PENDING.value, processed_at=None, rerun_requested=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        released = result.rowcount or 0
        if released:
            logger.info("Released claimed jobs back to the queue", count=released)
        return released

    # ==============================================================================
    # Outcome transitions
    # ==============================================================================

    def complete(self, job_id, remote_id=None, now=None) -> Optional[str]:
        """
        Finish a processing job.

        Returns the job's new status: ``completed``, or ``pending`` when a
        trigger arrived while it was in flight. None if the job was not ours.
        """
        now = now or utcnow()
        done_values = dict(
            status=JobStatus.COMPLETED.value, processed_at=now, last_error=None, error_kind=None, updated_at=now,
        )
        if remote_id is not None:
            done_values["remote_id"] = remote_id

        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id)
            .where(SyncJob.status == JobStatus.PROCESSING.value)
            .where(SyncJob.rerun_requested.is_(False))
            .values(**done_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.session.commit()
            logger.info("Job completed", job_id=job_id, remote_id=remote_id)
            return JobStatus.COMPLETED.value

        if self._rearm_for_rerun(job_id, now, remote_id=remote_id):
            self.session.commit()
            logger.info("Job re-armed for a trigger received while in flight", job_id=job_id, remote_id=remote_id)
            return JobStatus.PENDING.value

        self.session.commit()
        logger.warning("Job was not in processing state at completion", job_id=job_id)
        return None

    def _rearm_for_rerun(self, job_id, now, remote_id=None) -> bool:
        # Once the entity exists remotely the rerun must update it, not create it again
        if remote_id is not None:
            became_update = SyncJob.action == Action.CREATE.value
        else:
            became_update = and_(SyncJob.action == Action.CREATE.value, SyncJob.remote_id.isnot(None))
        values = dict(
            status=JobStatus.PENDING.value,
            attempts=0,
            rerun_requested=False,
            scheduled_at=now,
            last_error=None,
            error_kind=None,
            action=case((became_update, Action.UPDATE.value), else_=SyncJob.action),
            updated_at=now,
        )
        if remote_id is not None:
            values["remote_id"] = remote_id
        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id)
            .where(SyncJob.status == JobStatus.PROCESSING.value)
            .where(SyncJob.rerun_requested.is_(True))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def fail(self, job, error, kind=ErrorKind.TRANSIENT, remote_id=None, now=None, base_delay=60, max_jitter=60) -> Optional[str]:
        """
        Record a failed attempt.

        Transient failures with attempts left go back to pending with
        exponential backoff. Everything else becomes failed with
        ``scheduled_at`` left where it was.

        Returns:
            str: the job's new status, or None if the job was no longer ours
        """
        now = now or utcnow()
        kind = ErrorKind(kind)
        attempts = (job.attempts or 0) + 1
        message = (str(error) if error is not None else "Unknown error")[:MAX_ERROR_LENGTH]

        values = dict(attempts=attempts, last_error=message, error_kind=kind.value, updated_at=now)
        if remote_id is not None and job.remote_id is None:
            # Keep the created remote id so the retry updates instead of duplicating
            values["remote_id"] = remote_id
            if job.action == Action.CREATE.value:
                values["action"] = Action.UPDATE.value

        if should_retry(kind, attempts, job.max_attempts):
            retry_at = next_retry_at(now, attempts, base_delay, max_jitter)
            values.update(status=JobStatus.PENDING.value, scheduled_at=retry_at, rerun_requested=False)
            new_status = JobStatus.PENDING.value
        else:
            retry_at = None
            values.update(status=JobStatus.FAILED.value, processed_at=now)
            new_status = JobStatus.FAILED.value

        stmt = (
            update(SyncJob)
            .where(SyncJob.id == job.id)
            .where(SyncJob.status == JobStatus.PROCESSING.value)
            .where(SyncJob.attempts == (job.attempts or 0))
        )
        if new_status == JobStatus.FAILED.value:
            stmt = stmt.where(SyncJob.rerun_requested.is_(False))
        result = self.session.execute(stmt.values(**values).execution_options(synchronize_session=False))

        if result.rowcount != 1:
            # A fresh trigger landed while this attempt ran: give it its own run
            if new_status == JobStatus.FAILED.value and self._rearm_for_rerun(
                job.id, now, remote_id=values.get("remote_id")
            ):
                new_status = JobStatus.PENDING.value
            else:
                self.session.commit()
                logger.warning("Job was not in processing state at failure", job_id=job.id, error=message)
                return None
        self.session.commit()

        if new_status == JobStatus.PENDING.value and retry_at is not None:
            logger.warning(
                "Job failed, will retry",
                job_id=job.id, module=job.module, attempt=attempts, max_attempts=job.max_attempts,
                error_kind=kind.value, retry_at=retry_at.isoformat(), error=message,
            )
        elif new_status == JobStatus.PENDING.value:
            logger.warning("Job failed but was re-armed by a newer trigger", job_id=job.id, error=message)
        else:
            logger.error(
                "Job failed permanently",
                job_id=job.id, module=job.module, attempt=attempts, max_attempts=job.max_attempts,
                error_kind=kind.value, error=message,
            )
        return new_status

    # ==============================================================================
    # Maintenance
    # ==============================================================================

    def recover_stale(self, timeout_seconds, now=None, module=None) -> int:
        """
        Return jobs stuck in processing to the queue.

        A job whose next attempt would exceed its budget is failed instead,
        so a job that keeps crashing its worker cannot loop forever.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stale = and_(
            SyncJob.status == JobStatus.PROCESSING.value,
            SyncJob.processed_at < cutoff,
        )
        if module:
            stale = and_(stale, SyncJob.module == module)

        failed = self.session.execute(
            update(SyncJob)
            .where(stale)
            .where(SyncJob.attempts + 1 >= SyncJob.max_attempts)
            .values(
                status=JobStatus.FAILED.value,
                attempts=SyncJob.attempts + 1,
                last_error=STALE_FAILED_MESSAGE,
                error_kind=ErrorKind.TRANSIENT.value,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount or 0

        requeued = self.session.execute(
            update(SyncJob)
            .where(stale)
            .values(
                status=JobStatus.PENDING.value,
                attempts=SyncJob.attempts + 1,
                last_error=STALE_REQUEUED_MESSAGE,
                error_kind=ErrorKind.TRANSIENT.value,
                rerun_requested=False,
                scheduled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        self.session.commit()

        if failed or requeued:
            logger.warning("Recovered stale jobs", requeued=requeued, failed=failed, module=module)
        return failed + requeued

    def cleanup(self, days=7, now=None) -> int:
        """Delete finished jobs created more than ``days`` ago."""
        now = now or utcnow()
        cutoff = now - timedelta(days=days)
        result = self.session.execute(
            delete(SyncJob)
            .where(SyncJob.status.in_(TERMINAL_STATUSES))
            .where(SyncJob.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        deleted = result.rowcount or 0
        logger.info("Cleaned up old jobs", deleted=deleted, days=days)
        self.invalidate_stats_cache()
        return deleted

    def cancel(self, job_id, now=None) -> bool:
        """Cancel a pending job. Jobs already in flight cannot be cancelled."""
        now = now or utcnow()
        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id)
            .where(SyncJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.CANCELLED.value, processed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        cancelled = result.rowcount == 1
        if cancelled:
            logger.info("Job cancelled", job_id=job_id)
            self.invalidate_stats_cache()
        return cancelled

    def retry_failed(self, now=None, module=None) -> int:
        """
        Re-arm failed jobs with a fresh retry budget.

        Newest first; a failed job whose entity already has an active job is
        left alone.
        """
        now = now or utcnow()
        stmt = select(SyncJob.id).where(SyncJob.status == JobStatus.FAILED.value).order_by(SyncJob.id.desc())
        if module:
            stmt = stmt.where(SyncJob.module == module)
        failed_ids = list(self.session.execute(stmt).scalars().all())

        rearmed = 0
        for job_id in failed_ids:
            try:
                result = self.session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job_id)
                    .where(SyncJob.status == JobStatus.FAILED.value)
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        last_error=None,
                        error_kind=None,
                        rerun_requested=False,
                        scheduled_at=now,
                        processed_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                self.session.commit()
                rearmed += result.rowcount or 0
            except IntegrityError:
                self.session.rollback()
                logger.info("Skipped failed job with an active duplicate", job_id=job_id)

        logger.info("Re-armed failed jobs", count=rearmed, module=module)
        self.invalidate_stats_cache()
        return rearmed

    # ==============================================================================
    # Reads
    # ==============================================================================

    def get(self, job_id) -> Optional[SyncJob]:
        return self.session.get(SyncJob, job_id, populate_existing=True)

    def get_pending(self, module, entity_type=None) -> List[SyncJob]:
        stmt = (
            select(SyncJob)
            .where(SyncJob.module == module)
            .where(SyncJob.status == JobStatus.PENDING.value)
            .order_by(SyncJob.priority.asc(), SyncJob.scheduled_at.asc(), SyncJob.id.asc())
        )
        if entity_type:
            stmt = stmt.where(SyncJob.entity_type == entity_type)
        return list(self.session.execute(stmt).scalars().all())

    def count_by_status(self, module=None) -> dict:
        stmt = select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status)
        if module:
            stmt = stmt.where(SyncJob.module == module)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.session.execute(stmt).all():
            counts[status] = count
        return counts

    def list_jobs(self, page=1, per_page=50, status=None, module=None) -> dict:
        page = max(int(page or 1), 1)
        per_page = min(max(int(per_page or 50), 1), 500)

        stmt = select(SyncJob)
        count_stmt = select(func.count(SyncJob.id))
        if status:
            stmt = stmt.where(SyncJob.status == status)
            count_stmt = count_stmt.where(SyncJob.status == status)
        if module:
            stmt = stmt.where(SyncJob.module == module)
            count_stmt = count_stmt.where(SyncJob.module == module)

        total = self.session.execute(count_stmt).scalar() or 0
        items = self.session.execute(
            stmt.order_by(SyncJob.id.desc()).offset((page - 1) * per_page).limit(per_page)
        ).scalars().all()
        return {
            "items": [job.to_dict() for job in items],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": math.ceil(total / per_page) if total else 0,
        }

    def get_stats(self, use_cache=True) -> dict:
        """Queue depth per status. Served from a 30 second in-process cache."""
        now = time.monotonic()
        with self._stats_lock:
            cached = self._stats_cache["value"]
            if use_cache and cached is not None and now < self._stats_cache["expires"]:
                return dict(cached)

        stats = self.count_by_status()
        stats["total"] = sum(stats.values())
        last_completed = self.session.execute(
            select(func.max(SyncJob.processed_at)).where(SyncJob.status == JobStatus.COMPLETED.value)
        ).scalar()
        oldest_pending = self.session.execute(
            select(func.min(SyncJob.scheduled_at)).where(SyncJob.status == JobStatus.PENDING.value)
        ).scalar()
        stats["last_completed_at"] = isoformat_or_none(last_completed)
        stats["oldest_pending_at"] = isoformat_or_none(oldest_pending)

        with self._stats_lock:
            SyncQueueRepository._stats_cache = {"value": dict(stats), "expires": now + STATS_CACHE_SECONDS}
        return stats

    @classmethod
    def invalidate_stats_cache(cls):
        with cls._stats_lock:
            cls._stats_cache = {"value": None, "expires": 0.0}
