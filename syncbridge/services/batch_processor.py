"""
Groups claimed outbound creates so each (module, entity_type) group goes to
the remote in one call.
"""
from collections import OrderedDict
from typing import Callable, Dict, List

from syncbridge.adapters.base import SyncResult
from syncbridge.errors import ErrorKind, UnknownModuleError
from syncbridge.logging_config import get_logger
from syncbridge.models import Action, Direction

logger = get_logger(__name__)


class BatchCreateProcessor:
    """
    Sends groups of two or more create jobs through ``push_batch``.

    Jobs this processor settles are returned in ``handled``; everything else
    is left for per-job dispatch. A batch call that raises settles nothing,
    so one bad record cannot fail the whole group.

    Args:
        module_resolver: name -> adapter, or None for a disabled module
        context_factory: job -> JobContext (raises ValueError for a bad payload)
        on_success: callback(job, context, result)
        on_failure: callback(job, error, kind, remote_id)
    """

    def __init__(
        self,
        module_resolver: Callable,
        context_factory: Callable,
        on_success: Callable,
        on_failure: Callable,
    ):
        self.module_resolver = module_resolver
        self.context_factory = context_factory
        self.on_success = on_success
        self.on_failure = on_failure

    def process(self, jobs: List) -> Dict:
        handled = set()
        successes = 0
        failures = 0

        groups = self._group_eligible_jobs(jobs)
        for (module, entity_type), group_jobs in groups.items():
            if len(group_jobs) < 2:
                continue
            result = self._process_group(module, entity_type, group_jobs)
            handled |= result["handled"]
            successes += result["successes"]
            failures += result["failures"]

        if successes:
            logger.info("Batch-created records", count=successes)
        return {"handled": handled, "successes": successes, "failures": failures}

    def _group_eligible_jobs(self, jobs):
        # The dedup key keeps one active job per record
        groups: "OrderedDict[tuple, List]" = OrderedDict()
        for job in jobs:
            if job.direction != Direction.OUTBOUND.value or job.action != Action.CREATE.value:
                continue
            groups.setdefault((job.module, job.entity_type), []).append(job)
        return groups

    def _process_group(self, module, entity_type, group_jobs):
        handled = set()
        successes = 0
        failures = 0

        adapter = self.module_resolver(module)
        if adapter is None:
            logger.warning("Batch creates skipped: module not found", module=module, jobs=len(group_jobs))
            error = UnknownModuleError(module)
            for job in group_jobs:
                self.on_failure(job, str(error), ErrorKind.PERMANENT, None)
                handled.add(job.id)
                failures += 1
            return {"handled": handled, "successes": successes, "failures": failures}

        try:
            supported = adapter.supports_batch_create(entity_type)
        except Exception as e:
            logger.warning(
                "Batch support check failed, using per-job processing",
                module=module, entity_type=entity_type, error=str(e), exc_info=True,
            )
            supported = False
        if not supported:
            return {"handled": handled, "successes": successes, "failures": failures}

        batch_jobs = []
        contexts = []
        for job in group_jobs:
            try:
                context = self.context_factory(job)
            except ValueError as e:
                self.on_failure(job, f"Invalid JSON payload in batch job #{job.id}: {e}", ErrorKind.PERMANENT, None)
                handled.add(job.id)
                failures += 1
                continue
            if context.remote_id is not None:
                # Already exists remotely; per-job dispatch turns this into an update
                continue
            batch_jobs.append(job)
            contexts.append(context)

        if len(batch_jobs) < 2:
            return {"handled": handled, "successes": successes, "failures": failures}

        try:
            results = list(adapter.push_batch(batch_jobs, contexts) or [])
        except Exception as e:
            logger.warning(
                "Batch create failed, falling back to per-job processing",
                module=module, entity_type=entity_type, jobs=len(batch_jobs), error=str(e), exc_info=True,
            )
            return {"handled": handled, "successes": successes, "failures": failures}

        for position, (job, context) in enumerate(zip(batch_jobs, contexts)):
            result = results[position] if position < len(results) else None
            if result is not None and not isinstance(result, SyncResult):
                self.on_failure(
                    job, f"Batch returned {type(result).__name__}, expected SyncResult", ErrorKind.PERMANENT, None
                )
                failures += 1
            elif result is not None and result.success:
                self.on_success(job, context, result)
                successes += 1
            elif result is None:
                self.on_failure(job, "No result from batch.", ErrorKind.TRANSIENT, None)
                failures += 1
            else:
                self.on_failure(job, result.error, result.error_kind, result.remote_id)
                failures += 1
            handled.add(job.id)

        return {"handled": handled, "successes": successes, "failures": failures}
