"""
Tests for the persistent job queue (enqueue, claim, outcome transitions, maintenance).
Run with: pytest tests/test_queue_repository.py -v
"""
import threading
from datetime import datetime, timedelta

import pytest

from syncbridge.errors import ErrorKind, InvalidJobError, PayloadTooLargeError
from syncbridge.models import SyncJob, db
from syncbridge.services.queue_repository import (
    STALE_FAILED_MESSAGE,
    SyncQueueRepository,
    build_dedup_key,
)

T0 = datetime(2025, 1, 15, 12, 0, 0)


def _count():
    return db.session.query(SyncJob).count()


# ==============================================================================
# ENQUEUE
# ==============================================================================

class TestEnqueue:
    """Tests for enqueue() and trigger coalescing."""

    def test_enqueue_creates_pending_job(self, repo):
        """A new trigger becomes a pending job with a dedup key and correlation id."""
        job_id = repo.enqueue("crm", "contact", action="create", local_id=7, payload={"name": "Ada"}, now=T0)

        job = repo.get(job_id)
        assert job.status == "pending"
        assert job.action == "create"
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.dedup_key == build_dedup_key("crm", "contact", "outbound", 7)
        assert job.correlation_id
        assert job.scheduled_at == T0

    def test_second_trigger_for_same_entity_reuses_pending_job(self, repo):
        """Two triggers for the same entity leave one job carrying the latest payload."""
        first = repo.enqueue("crm", "contact", local_id=7, payload={"v": 1}, now=T0)
        second = repo.enqueue("crm", "contact", local_id=7, payload={"v": 2}, priority=2, now=T0)

        assert first == second
        assert _count() == 1
        job = repo.get(first)
        assert '"v": 2' in job.payload
        assert job.priority == 2

    def test_different_direction_is_a_different_entity(self, repo):
        outbound = repo.enqueue("crm", "contact", local_id=7, now=T0)
        inbound = repo.enqueue("crm", "contact", direction="inbound", local_id=7, now=T0)
        assert outbound != inbound

    def test_pending_create_stays_create_after_update(self, repo):
        """An update landing on a pending create must still create the record."""
        job_id = repo.enqueue("crm", "contact", action="create", local_id=7, now=T0)
        repo.enqueue("crm", "contact", action="update", local_id=7, now=T0)
        assert repo.get(job_id).action == "create"

    def test_delete_wins_over_pending_update(self, repo):
        job_id = repo.enqueue("crm", "contact", action="update", local_id=7, now=T0)
        repo.enqueue("crm", "contact", action="delete", local_id=7, now=T0)
        assert repo.get(job_id).action == "delete"

    def test_trigger_on_processing_job_requests_rerun(self, repo):
        """A trigger arriving mid-flight flags the job instead of creating a second one."""
        job_id = repo.enqueue("crm", "contact", local_id=7, payload={"v": 1}, now=T0)
        repo.claim_due(10, now=T0)

        again = repo.enqueue("crm", "contact", local_id=7, payload={"v": 2}, now=T0)

        assert again == job_id
        assert _count() == 1
        job = repo.get(job_id)
        assert job.status == "processing"
        assert job.rerun_requested is True

    def test_jobs_without_ids_are_not_deduplicated(self, repo):
        first = repo.enqueue("crm", "report", now=T0)
        second = repo.enqueue("crm", "report", now=T0)
        assert first != second
        assert repo.get(first).dedup_key is None

    def test_unknown_action_defaults_to_update(self, repo):
        job_id = repo.enqueue("crm", "contact", action="upsert", local_id=1, now=T0)
        assert repo.get(job_id).action == "update"

    def test_debounce_delays_schedule(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=7, debounce_seconds=5, now=T0)
        assert repo.get(job_id).scheduled_at == T0 + timedelta(seconds=5)
        assert repo.claim_due(10, now=T0) == []
        assert len(repo.claim_due(10, now=T0 + timedelta(seconds=5))) == 1

    def test_missing_module_rejected(self, repo):
        with pytest.raises(InvalidJobError):
            repo.enqueue("", "contact", local_id=1)

    def test_invalid_direction_rejected(self, repo):
        with pytest.raises(InvalidJobError):
            repo.enqueue("crm", "contact", direction="sideways", local_id=1)

    @pytest.mark.parametrize("priority", [0, 11, "high"])
    def test_priority_out_of_range_rejected(self, repo, priority):
        with pytest.raises(InvalidJobError):
            repo.enqueue("crm", "contact", local_id=1, priority=priority)

    @pytest.mark.parametrize("field,value", [
        ("local_id", "abc"),
        ("local_id", 1.5),
        ("local_id", True),
        ("remote_id", [7]),
    ])
    def test_non_integer_ids_rejected(self, repo, field, value):
        with pytest.raises(InvalidJobError):
            repo.enqueue("crm", "contact", **{field: value})
        assert _count() == 0

    def test_numeric_string_ids_are_converted(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=" 12 ", remote_id="300", now=T0)
        job = repo.get(job_id)
        assert job.local_id == 12
        assert job.remote_id == 300
        assert job.dedup_key == build_dedup_key("crm", "contact", "outbound", 12)

    def test_debounce_string_is_coerced(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=7, debounce_seconds="2.5", now=T0)
        assert repo.get(job_id).scheduled_at == T0 + timedelta(seconds=2.5)

    @pytest.mark.parametrize("debounce", ["soon", -1, float("inf"), 10 ** 9])
    def test_bad_debounce_rejected(self, repo, debounce):
        with pytest.raises(InvalidJobError):
            repo.enqueue("crm", "contact", local_id=7, debounce_seconds=debounce)

    def test_payload_too_large_rejected(self, app):
        repo = SyncQueueRepository(max_payload_bytes=100)
        with pytest.raises(PayloadTooLargeError) as exc_info:
            repo.enqueue("crm", "contact", local_id=1, payload={"notes": "x" * 200})
        assert exc_info.value.limit == 100
        assert exc_info.value.size > 100
        assert _count() == 0

    def test_circular_payload_rejected(self, repo):
        payload = {}
        payload["self"] = payload
        with pytest.raises(InvalidJobError):
            repo.enqueue("crm", "contact", local_id=1, payload=payload)


# ==============================================================================
# CLAIMING
# ==============================================================================

class TestClaim:
    """Tests for claim_due() and release_claimed()."""

    def test_claim_orders_by_priority_then_schedule(self, repo):
        low = repo.enqueue("crm", "contact", local_id=1, priority=9, now=T0)
        early = repo.enqueue("crm", "contact", local_id=2, priority=5, now=T0 - timedelta(minutes=5))
        late = repo.enqueue("crm", "contact", local_id=3, priority=5, now=T0)
        urgent = repo.enqueue("crm", "contact", local_id=4, priority=1, now=T0)

        jobs = repo.claim_due(10, now=T0)

        assert [j.id for j in jobs] == [urgent, early, late, low]
        assert all(j.status == "processing" for j in jobs)
        assert all(j.processed_at == T0 for j in jobs)

    def test_claim_respects_limit(self, repo):
        for local_id in range(5):
            repo.enqueue("crm", "contact", local_id=local_id, now=T0)
        assert len(repo.claim_due(3, now=T0)) == 3
        assert len(repo.claim_due(3, now=T0)) == 2
        assert repo.claim_due(3, now=T0) == []

    def test_claimed_job_is_not_claimed_twice(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        assert len(repo.claim_due(10, now=T0)) == 1
        assert repo.claim_due(10, now=T0) == []

    def test_concurrent_workers_never_claim_the_same_job(self, tmp_path, make_app):
        """Workers that all see the same pending rows each get a disjoint share."""
        app = make_app(SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'queue.db'}")
        workers = 4
        barrier = threading.Barrier(workers, timeout=10)

        class BarrierRepository(SyncQueueRepository):
            def _select_candidates(self, *args, **kwargs):
                ids = super()._select_candidates(*args, **kwargs)
                barrier.wait()
                return ids

        with app.app_context():
            db.create_all()
            repo = SyncQueueRepository()
            job_ids = {repo.enqueue("crm", "contact", local_id=local_id, now=T0) for local_id in range(40)}

        claimed, errors = [], []

        def worker():
            with app.app_context():
                try:
                    claimed.append([job.id for job in BarrierRepository().claim_due(40, now=T0)])
                except Exception as e:
                    errors.append(e)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        try:
            assert errors == []
            flat = [job_id for ids in claimed for job_id in ids]
            assert len(flat) == len(set(flat))
            assert set(flat) == job_ids
        finally:
            with app.app_context():
                db.drop_all()
                db.engine.dispose()

    def test_claim_filters_by_module(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        erp_id = repo.enqueue("erp", "invoice", local_id=1, now=T0)
        jobs = repo.claim_due(10, now=T0, module="erp")
        assert [j.id for j in jobs] == [erp_id]

    def test_claim_excludes_modules(self, repo):
        crm_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        repo.enqueue("erp", "invoice", local_id=1, now=T0)
        jobs = repo.claim_due(10, now=T0, exclude_modules=["erp"])
        assert [j.id for j in jobs] == [crm_id]

    def test_release_claimed_returns_jobs_to_pending(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        repo.claim_due(10, now=T0)

        assert repo.release_claimed([job_id]) == 1
        job = repo.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.processed_at is None


# ==============================================================================
# OUTCOMES
# ==============================================================================

class TestOutcomes:
    """Tests for complete() and fail()."""

    def _claim_one(self, repo, **kwargs):
        repo.enqueue("crm", "contact", local_id=kwargs.pop("local_id", 1), now=T0, **kwargs)
        return repo.claim_due(1, now=T0)[0]

    def test_complete_marks_completed(self, repo):
        job = self._claim_one(repo)
        assert repo.complete(job.id, remote_id=55, now=T0) == "completed"
        job = repo.get(job.id)
        assert job.status == "completed"
        assert job.remote_id == 55
        assert job.processed_at == T0

    def test_complete_with_rerun_requested_rearms_job(self, repo):
        """A trigger received in flight gets its own run with a fresh budget."""
        job = self._claim_one(repo, action="create")
        repo.enqueue("crm", "contact", action="update", local_id=1, now=T0)

        assert repo.complete(job.id, remote_id=55, now=T0) == "pending"
        job = repo.get(job.id)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.rerun_requested is False
        assert job.remote_id == 55
        assert job.action == "update"

    def test_complete_on_job_not_processing_returns_none(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        assert repo.complete(job_id, now=T0) is None
        assert repo.get(job_id).status == "pending"

    def test_transient_failure_schedules_backoff(self, repo):
        job = self._claim_one(repo)

        status = repo.fail(job, "503 Service Unavailable", ErrorKind.TRANSIENT, now=T0, base_delay=60, max_jitter=60)

        assert status == "pending"
        job = repo.get(job.id)
        assert job.attempts == 1
        assert job.last_error == "503 Service Unavailable"
        assert job.error_kind == "transient"
        # 2**1 * 60 plus at most 60 seconds of jitter
        assert T0 + timedelta(seconds=120) <= job.scheduled_at <= T0 + timedelta(seconds=180)

    def test_backoff_doubles_with_each_attempt(self, repo):
        """Each transient retry waits about twice as long as the one before it."""
        job = self._claim_one(repo, max_attempts=5)
        now = T0
        delays = []
        for attempt in range(1, 5):
            assert repo.fail(job, "503", ErrorKind.TRANSIENT, now=now, base_delay=60, max_jitter=10) == "pending"
            job = repo.get(job.id)
            delay = (job.scheduled_at - now).total_seconds()
            assert 60 * 2 ** attempt <= delay <= 60 * 2 ** attempt + 10
            delays.append(delay)
            now = job.scheduled_at
            job = repo.claim_due(1, now=now)[0]

        for previous, current in zip(delays, delays[1:]):
            assert current > previous
            assert 1.8 <= current / previous <= 2.2

        last_scheduled_at = job.scheduled_at
        assert repo.fail(job, "503", ErrorKind.TRANSIENT, now=now, base_delay=60, max_jitter=10) == "failed"
        job = repo.get(job.id)
        assert job.attempts == 5
        assert job.scheduled_at == last_scheduled_at

    def test_transient_failure_on_last_attempt_fails_job(self, repo):
        job = self._claim_one(repo, max_attempts=1)
        scheduled_at = job.scheduled_at

        assert repo.fail(job, "timeout", ErrorKind.TRANSIENT, now=T0) == "failed"
        job = repo.get(job.id)
        assert job.status == "failed"
        assert job.attempts == 1
        assert job.scheduled_at == scheduled_at

    def test_permanent_failure_fails_immediately(self, repo):
        job = self._claim_one(repo)
        assert repo.fail(job, "422 Unprocessable", ErrorKind.PERMANENT, now=T0) == "failed"
        job = repo.get(job.id)
        assert job.status == "failed"
        assert job.attempts == 1
        assert job.error_kind == "permanent"

    def test_failure_keeps_created_remote_id(self, repo):
        """A create that reached the remote retries as an update."""
        job = self._claim_one(repo, action="create")
        repo.fail(job, "link step failed", ErrorKind.TRANSIENT, remote_id=88, now=T0)
        job = repo.get(job.id)
        assert job.remote_id == 88
        assert job.action == "update"

    def test_failure_error_is_truncated(self, repo):
        job = self._claim_one(repo)
        repo.fail(job, "x" * 70000, ErrorKind.PERMANENT, now=T0)
        assert len(repo.get(job.id).last_error) == 65535

    def test_permanent_failure_with_rerun_requested_rearms(self, repo):
        job = self._claim_one(repo)
        repo.enqueue("crm", "contact", local_id=1, payload={"fixed": True}, now=T0)

        assert repo.fail(job, "400 Bad Request", ErrorKind.PERMANENT, now=T0) == "pending"
        job = repo.get(job.id)
        assert job.attempts == 0
        assert job.rerun_requested is False

    def test_fail_on_job_not_processing_returns_none(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        job = repo.get(job_id)
        assert repo.fail(job, "boom", ErrorKind.TRANSIENT, now=T0) is None
        assert repo.get(job_id).attempts == 0


# ==============================================================================
# MAINTENANCE
# ==============================================================================

class TestMaintenance:
    """Tests for stale recovery, cleanup, cancel and retry."""

    def test_recover_stale_requeues_with_attempt_counted(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        repo.claim_due(10, now=T0)

        recovered = repo.recover_stale(600, now=T0 + timedelta(minutes=11))

        assert recovered == 1
        job = repo.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 1

    def test_recover_stale_fails_job_without_budget(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, max_attempts=1, now=T0)
        repo.claim_due(10, now=T0)

        repo.recover_stale(600, now=T0 + timedelta(minutes=11))

        job = repo.get(job_id)
        assert job.status == "failed"
        assert job.last_error == STALE_FAILED_MESSAGE

    def test_recover_stale_leaves_recent_jobs(self, repo):
        job_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        repo.claim_due(10, now=T0)
        assert repo.recover_stale(600, now=T0 + timedelta(minutes=5)) == 0
        assert repo.get(job_id).status == "processing"

    def test_cleanup_deletes_old_finished_jobs(self, repo):
        old = T0 - timedelta(days=10)
        done_id = repo.enqueue("crm", "contact", local_id=1, now=old)
        repo.claim_due(10, now=old)
        repo.complete(done_id, now=old)
        pending_id = repo.enqueue("crm", "contact", local_id=2, now=old)
        recent_id = repo.enqueue("crm", "contact", local_id=3, now=T0)
        repo.cancel(recent_id, now=T0)

        assert repo.cleanup(7, now=T0) == 1
        assert repo.get(done_id) is None
        assert repo.get(pending_id) is not None
        assert repo.get(recent_id) is not None

    def test_cancel_only_pending(self, repo):
        pending_id = repo.enqueue("crm", "contact", local_id=1, now=T0)
        processing_id = repo.enqueue("crm", "contact", local_id=2, priority=1, now=T0)
        repo.claim_due(1, now=T0)

        assert repo.cancel(pending_id) is True
        assert repo.get(pending_id).status == "cancelled"
        assert repo.cancel(processing_id) is False
        assert repo.get(processing_id).status == "processing"

    def test_retry_failed_resets_budget(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        job = repo.claim_due(1, now=T0)[0]
        repo.fail(job, "bad", ErrorKind.PERMANENT, now=T0)

        assert repo.retry_failed(now=T0) == 1
        job = repo.get(job.id)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.last_error is None

    def test_retry_failed_skips_entity_with_active_job(self, repo):
        """Re-arming must not create a second active job for the same entity."""
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        job = repo.claim_due(1, now=T0)[0]
        repo.fail(job, "bad", ErrorKind.PERMANENT, now=T0)
        newer_id = repo.enqueue("crm", "contact", local_id=1, now=T0)

        assert repo.retry_failed(now=T0) == 0
        assert repo.get(job.id).status == "failed"
        assert repo.get(newer_id).status == "pending"


# ==============================================================================
# READS
# ==============================================================================

class TestReads:
    """Tests for listing and statistics."""

    def test_list_jobs_paginates_newest_first(self, repo):
        ids = [repo.enqueue("crm", "contact", local_id=i, now=T0) for i in range(5)]

        page = repo.list_jobs(page=1, per_page=2)

        assert page["total"] == 5
        assert page["pages"] == 3
        assert [item["id"] for item in page["items"]] == [ids[4], ids[3]]

    def test_list_jobs_filters_by_status(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        cancelled = repo.enqueue("crm", "contact", local_id=2, now=T0)
        repo.cancel(cancelled)
        result = repo.list_jobs(status="cancelled")
        assert [item["id"] for item in result["items"]] == [cancelled]

    def test_get_pending_for_module(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        repo.enqueue("crm", "deal", local_id=1, now=T0)
        repo.enqueue("erp", "invoice", local_id=1, now=T0)
        assert len(repo.get_pending("crm")) == 2
        assert len(repo.get_pending("crm", "deal")) == 1

    def test_stats_count_every_status(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        cancelled = repo.enqueue("crm", "contact", local_id=2, now=T0)
        repo.cancel(cancelled)

        stats = repo.get_stats(use_cache=False)

        assert stats["pending"] == 1
        assert stats["cancelled"] == 1
        assert stats["processing"] == 0
        assert stats["total"] == 2
        assert stats["oldest_pending_at"] == T0.isoformat() + "Z"

    def test_stats_are_cached_until_invalidated(self, repo):
        repo.enqueue("crm", "contact", local_id=1, now=T0)
        assert repo.get_stats()["pending"] == 1

        repo.enqueue("crm", "contact", local_id=2, now=T0)
        assert repo.get_stats()["pending"] == 1

        SyncQueueRepository.invalidate_stats_cache()
        assert repo.get_stats()["pending"] == 2
