"""
Tests for grouping outbound creates into batch calls.
"""
from types import SimpleNamespace

import pytest

from syncbridge.adapters.base import JobContext, SyncResult
from syncbridge.errors import ErrorKind
from syncbridge.services.batch_processor import BatchCreateProcessor


def _job(job_id, local_id, entity_type="contact", action="create", direction="outbound", module="crm", remote_id=None):
    return SimpleNamespace(
        id=job_id, module=module, entity_type=entity_type, action=action,
        direction=direction, local_id=local_id, remote_id=remote_id,
    )


def _context(job):
    return JobContext(
        job_id=job.id, module=job.module, entity_type=job.entity_type, direction=job.direction,
        action=job.action, local_id=job.local_id, remote_id=job.remote_id, payload={"local_id": job.local_id},
    )


@pytest.fixture
def batch_adapter(make_adapter):
    return make_adapter(batch_types=["contact"])


@pytest.fixture
def outcomes():
    return {"success": [], "failure": []}


@pytest.fixture
def processor(batch_adapter, outcomes):
    modules = {"crm": batch_adapter}
    return BatchCreateProcessor(
        modules.get,
        _context,
        lambda job, context, result: outcomes["success"].append((job.id, result.remote_id)),
        lambda job, error, kind, remote_id: outcomes["failure"].append((job.id, error, kind)),
    )


class TestBatchCreateProcessor:

    def test_creates_grouped_into_one_call(self, processor, batch_adapter, outcomes):
        result = processor.process([_job(1, 10), _job(2, 20)])

        assert result["handled"] == {1, 2}
        assert result["successes"] == 2
        assert len(batch_adapter.batches) == 1
        assert [c.local_id for c in batch_adapter.batches[0]] == [10, 20]
        assert [job_id for job_id, _ in outcomes["success"]] == [1, 2]

    def test_single_create_left_for_per_job_dispatch(self, processor, batch_adapter):
        result = processor.process([_job(1, 10), _job(2, 20, action="update")])
        assert result["handled"] == set()
        assert batch_adapter.batches == []

    def test_inbound_and_updates_ignored(self, processor, batch_adapter):
        jobs = [_job(1, 10, direction="inbound"), _job(2, 20, direction="inbound"), _job(3, 30, action="update")]
        assert processor.process(jobs)["handled"] == set()
        assert batch_adapter.batches == []

    def test_entity_type_without_batch_support_skipped(self, processor, batch_adapter):
        result = processor.process([_job(1, 10, entity_type="deal"), _job(2, 20, entity_type="deal")])
        assert result["handled"] == set()
        assert batch_adapter.batches == []

    def test_missing_module_fails_group_permanently(self, processor, outcomes):
        result = processor.process([_job(1, 10, module="gone"), _job(2, 20, module="gone")])

        assert result["handled"] == {1, 2}
        assert result["failures"] == 2
        assert all(kind == ErrorKind.PERMANENT for _, _, kind in outcomes["failure"])
        assert "not found" in outcomes["failure"][0][1]

    def test_each_claimed_create_sent_once_in_claim_order(self, processor, batch_adapter):
        result = processor.process([_job(3, 30), _job(1, 10), _job(2, 20)])

        assert result["handled"] == {1, 2, 3}
        assert len(batch_adapter.batches) == 1
        assert [c.job_id for c in batch_adapter.batches[0]] == [3, 1, 2]

    def test_jobs_with_known_remote_id_not_batched(self, processor, batch_adapter):
        result = processor.process([_job(1, 10, remote_id=500), _job(2, 20), _job(3, 30)])
        assert result["handled"] == {2, 3}
        assert [c.job_id for c in batch_adapter.batches[0]] == [2, 3]

    def test_batch_exception_falls_back_to_per_job(self, processor, batch_adapter, outcomes):
        batch_adapter.batch_error = RuntimeError("batch endpoint down")

        result = processor.process([_job(1, 10), _job(2, 20)])

        assert result["handled"] == set()
        assert outcomes["success"] == []
        assert outcomes["failure"] == []

    def test_missing_result_is_transient_failure(self, processor, batch_adapter, outcomes):
        batch_adapter.batch_results = [SyncResult.ok(remote_id=501)]

        result = processor.process([_job(1, 10), _job(2, 20)])

        assert result["successes"] == 1
        assert result["failures"] == 1
        assert outcomes["failure"] == [(2, "No result from batch.", ErrorKind.TRANSIENT)]

    def test_failed_result_settled_with_its_kind(self, processor, batch_adapter, outcomes):
        batch_adapter.batch_results = [
            SyncResult.ok(remote_id=501),
            SyncResult.failure("email is invalid", ErrorKind.PERMANENT),
        ]

        processor.process([_job(1, 10), _job(2, 20)])

        assert outcomes["success"] == [(1, 501)]
        assert outcomes["failure"] == [(2, "email is invalid", ErrorKind.PERMANENT)]
