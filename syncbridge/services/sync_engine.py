"""
Queue processing loop.

One call to ``process()`` drains due jobs in bounded batches under a
non-blocking run lock. A periodic driver (APScheduler, the CLI) calls it;
throughput comes from several independent calls running under different
lock names, never from threads inside one call.
"""
import json
import time
from collections import defaultdict
from functools import partial
from typing import Callable, List, Optional

import psutil
from sqlalchemy.exc import SQLAlchemyError

from syncbridge.adapters.base import JobContext, SyncResult
from syncbridge.config import SyncSettings
from syncbridge.datetime_utils import utcnow
from syncbridge.errors import (
    ErrorKind,
    IdentityConflictError,
    InvalidJobError,
    SyncLockError,
    UnknownModuleError,
    classify_exception,
)
from syncbridge.logging_config import SyncContext, bind_correlation_id, get_logger
from syncbridge.models import Action, Direction
from syncbridge.services.batch_processor import BatchCreateProcessor
from syncbridge.services.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from syncbridge.services.entity_map import EntityMapRepository, content_hash
from syncbridge.services.failure_notifier import FailureNotifier
from syncbridge.services.queue_repository import SyncQueueRepository
from syncbridge.services.state_store import StateStore
from syncbridge.sync_lock import SyncLockManager

logger = get_logger(__name__)

GLOBAL_LOCK_NAME = "sync_queue"
STALE_RECOVERY_INTERVAL_SECONDS = 60


def lock_name_for(module: Optional[str] = None) -> str:
    return f"{GLOBAL_LOCK_NAME}:{module}" if module else GLOBAL_LOCK_NAME


class BatchOutcome:
    """Running tally for one claimed batch."""

    def __init__(self):
        self.successes = 0
        self.failures = 0
        self.modules = defaultdict(lambda: {"successes": 0, "failures": 0})
        self.should_stop = False

    def success(self, module):
        self.successes += 1
        self.modules[module]["successes"] += 1

    def failure(self, module):
        self.failures += 1
        self.modules[module]["failures"] += 1


class SyncEngine:
    """
    Claims due jobs and dispatches them to target adapters.

    Args:
        module_resolver: name -> TargetAdapter, or None for a disabled module
        settings: SyncSettings with batch size, budgets and retry timing
        clock: returns the current naive-UTC time (injectable for tests)
        memory_reader: returns the current RSS in bytes (defaults to psutil)
    """

    def __init__(
        self,
        module_resolver: Callable,
        queue_repo: Optional[SyncQueueRepository] = None,
        entity_map: Optional[EntityMapRepository] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        module_breaker: Optional[ModuleCircuitBreaker] = None,
        notifier: Optional[FailureNotifier] = None,
        lock_manager: Optional[SyncLockManager] = None,
        settings: Optional[SyncSettings] = None,
        state_store: Optional[StateStore] = None,
        clock: Optional[Callable] = None,
        monotonic: Optional[Callable] = None,
        memory_reader: Optional[Callable] = None,
    ):
        self.module_resolver = module_resolver
        self.settings = settings or SyncSettings()
        self.state_store = state_store or StateStore()
        self.queue_repo = queue_repo or SyncQueueRepository(
            max_payload_bytes=self.settings.max_payload_bytes,
            default_max_attempts=self.settings.max_attempts,
        )
        self.entity_map = entity_map or EntityMapRepository()
        self.notifier = notifier or FailureNotifier(self.state_store)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.state_store, notifier=self.notifier)
        self.module_breaker = module_breaker or ModuleCircuitBreaker(self.state_store, notifier=self.notifier)
        self.lock_manager = lock_manager or SyncLockManager(
            self.state_store, lease_seconds=int(self.settings.time_limit_seconds) + 245
        )
        self.clock = clock or utcnow
        self._monotonic = monotonic or time.monotonic
        self._memory_reader = memory_reader or (lambda: psutil.Process().memory_info().rss)
        self.dry_run = False

    def set_dry_run(self, enabled: bool) -> None:
        """Claim and log jobs without calling any adapter or writing the identity map."""
        self.dry_run = bool(enabled)
        if self.dry_run:
            logger.info("Dry-run mode enabled: no remote calls will be made")

    def enqueue(self, module, entity_type, **kwargs) -> int:
        return self.queue_repo.enqueue(module, entity_type, **kwargs)

    # ==============================================================================
    # Main loop
    # ==============================================================================

    def process(self, module: Optional[str] = None) -> int:
        """
        Process due jobs, globally or for one module.

        Returns:
            int: number of jobs completed in this run
        """
        lock_name = lock_name_for(module)
        try:
            with self.lock_manager.acquire_sync_lock(lock_name, operation_name="process_queue"):
                with SyncContext("process_queue", module=module, dry_run=self.dry_run):
                    return self._run(module)
        except SyncLockError:
            logger.info("Queue processing skipped: another process is running", lock=lock_name)
            return 0

    def process_module(self, module: str) -> int:
        return self.process(module=module)

    def _run(self, module: Optional[str]) -> int:
        # Check before loading anything; loading first risks running out of memory
        if self._memory_exhausted():
            logger.warning("Memory threshold reached before fetching jobs, skipping run", **self._memory_context())
            return 0

        self._maybe_recover_stale(module)

        start = self._monotonic()
        processed = 0
        iteration = 0
        while iteration < self.settings.max_iterations:
            iteration += 1
            if not self._should_continue_batching(start, processed, iteration):
                break

            now = self.clock()
            if module:
                if not self.module_breaker.is_module_available(module, now):
                    logger.info("Module circuit breaker open, skipping module", module=module)
                    break
                exclude = ()
            else:
                exclude = self.module_breaker.get_unavailable_modules(now)

            jobs = self.queue_repo.claim_due(self.settings.batch_size, now, module=module, exclude_modules=exclude)
            self._release_unused_trials({job.module for job in jobs})
            if not jobs:
                break  # Queue drained

            outcome = self._process_batch(jobs, start)
            processed += outcome.successes
            self._record_outcome(outcome)
            # Once per batch rather than per job
            self.queue_repo.invalidate_stats_cache()

            if outcome.should_stop:
                break

        if processed:
            logger.info("Queue processing completed", processed=processed, iterations=iteration, module=module)
        return processed

    def _should_continue_batching(self, start, processed, iteration) -> bool:
        elapsed = self._monotonic() - start
        if elapsed >= self.settings.time_limit_seconds:
            logger.info(
                "Multi-batch: time limit reached between batches",
                elapsed=round(elapsed, 2), processed=processed, iterations=iteration - 1,
            )
            return False

        if self._memory_exhausted():
            logger.warning("Multi-batch: memory threshold reached between batches", **self._memory_context())
            return False

        if not self.circuit_breaker.is_available(self.clock()):
            logger.info("Multi-batch: circuit breaker open, deferring remaining jobs", processed=processed)
            return False

        return True

    def _maybe_recover_stale(self, module: Optional[str]) -> int:
        key = f"stale_recovery:{module}" if module else "stale_recovery"
        now = self.clock()
        if not self.state_store.try_acquire(key, STALE_RECOVERY_INTERVAL_SECONDS, owner="engine", now=now):
            return 0
        return self.queue_repo.recover_stale(self.settings.stale_timeout_seconds, now=now, module=module)

    # ==============================================================================
    # Batch
    # ==============================================================================

    def _process_batch(self, jobs: List, start) -> BatchOutcome:
        outcome = BatchOutcome()

        handled = set()
        if not self.dry_run:
            processor = BatchCreateProcessor(
                self.module_resolver,
                self._build_context,
                partial(self._settle_success, outcome=outcome),
                partial(self._settle_failure, outcome=outcome),
            )
            handled = processor.process(jobs)["handled"]

        remaining = [job for job in jobs if job.id not in handled]
        for index, job in enumerate(remaining):
            elapsed = self._monotonic() - start
            if elapsed >= self.settings.time_limit_seconds or self._memory_exhausted():
                deferred = [j.id for j in remaining[index:]]
                logger.info("Run budget reached, deferring remaining jobs", elapsed=round(elapsed, 2), deferred=len(deferred))
                self.queue_repo.release_claimed(deferred)
                outcome.should_stop = True
                break
            self._dispatch(job, outcome)

        return outcome

    def _dispatch(self, job, outcome: BatchOutcome) -> None:
        bind_correlation_id(job.correlation_id)
        try:
            context = None
            try:
                context = self._build_context(job)
                result = self._execute(job, context)
                if result is None:
                    result = SyncResult.failure("Adapter returned no result", ErrorKind.TRANSIENT)
                elif not isinstance(result, SyncResult):
                    raise TypeError(f"Adapter returned {type(result).__name__}, expected SyncResult")
            except Exception as e:
                kind = classify_exception(e)
                logger.error(
                    "Job raised during dispatch",
                    job_id=job.id, module=job.module, entity_type=job.entity_type,
                    error_kind=kind.value, error=str(e), exc_info=True,
                )
                result = SyncResult.failure(e, kind, remote_id=getattr(e, "remote_id", None))

            if result.success:
                self._settle_success(job, context, result, outcome=outcome)
            else:
                self._settle_failure(job, result.error, result.error_kind, result.remote_id, outcome=outcome)
        finally:
            bind_correlation_id(None)

    def _build_context(self, job) -> JobContext:
        payload = json.loads(job.payload) if job.payload else {}
        if not isinstance(payload, dict):
            payload = {"value": payload}

        local_id = job.local_id
        remote_id = job.remote_id
        if job.direction == Direction.OUTBOUND.value and remote_id is None and local_id is not None:
            remote_id = self.entity_map.resolve_remote(job.module, job.entity_type, local_id)
        elif job.direction == Direction.INBOUND.value and local_id is None and remote_id is not None:
            local_id = self.entity_map.resolve_local(job.module, job.entity_type, remote_id)

        action = job.action
        if action == Action.CREATE.value and job.direction == Direction.OUTBOUND.value and remote_id is not None:
            # Already created by an earlier attempt or trigger
            action = Action.UPDATE.value

        return JobContext(
            job_id=job.id,
            module=job.module,
            entity_type=job.entity_type,
            direction=job.direction,
            action=action,
            correlation_id=job.correlation_id,
            local_id=local_id,
            remote_id=remote_id,
            payload=payload,
            importing=job.direction == Direction.INBOUND.value,
            dry_run=self.dry_run,
        )

    def _execute(self, job, context: JobContext) -> SyncResult:
        adapter = self.module_resolver(job.module)
        if adapter is None:
            raise UnknownModuleError(job.module)

        if self.dry_run:
            logger.info(
                "[dry-run] Would process job",
                job_id=job.id, module=job.module, direction=job.direction, entity_type=job.entity_type,
                action=context.action, local_id=context.local_id, remote_id=context.remote_id,
            )
            return SyncResult.ok()

        if job.direction == Direction.OUTBOUND.value:
            return adapter.push(job, context)
        if job.direction == Direction.INBOUND.value:
            return adapter.pull(job, context)
        raise InvalidJobError(f'Invalid sync direction "{job.direction}" in job #{job.id}')

    # ==============================================================================
    # Settling outcomes
    # ==============================================================================

    def _settle_success(self, job, context: Optional[JobContext], result: SyncResult, outcome: BatchOutcome) -> None:
        remote_id = result.remote_id if result.remote_id is not None else (context.remote_id if context else None)
        if not self.dry_run and context is not None:
            try:
                self._update_identity(job, context, result, remote_id)
            except IdentityConflictError as e:
                self._settle_failure(job, str(e), ErrorKind.PERMANENT, remote_id, outcome=outcome)
                return
            except SQLAlchemyError:
                raise
            except Exception as e:
                # The remote write already landed; the kept remote id turns the retry into an update
                logger.error(
                    "Identity update failed after remote write",
                    job_id=job.id, module=job.module, entity_type=job.entity_type, remote_id=remote_id,
                    error=str(e), exc_info=True,
                )
                self._settle_failure(job, str(e), classify_exception(e), remote_id, outcome=outcome)
                return

        self.queue_repo.complete(job.id, remote_id=remote_id, now=self.clock())
        outcome.success(job.module)

    def _settle_failure(self, job, error, kind, remote_id, outcome: BatchOutcome) -> None:
        self.queue_repo.fail(
            job,
            error,
            kind or ErrorKind.TRANSIENT,
            remote_id=remote_id,
            now=self.clock(),
            base_delay=self.settings.base_delay_seconds,
            max_jitter=self.settings.max_jitter_seconds,
        )
        outcome.failure(job.module)

    def _update_identity(self, job, context: JobContext, result: SyncResult, remote_id) -> None:
        local_id = result.local_id if result.local_id is not None else context.local_id
        if local_id is None:
            return

        if context.action == Action.DELETE.value:
            self.entity_map.remove(job.module, job.entity_type, local_id)
            return
        if remote_id is None:
            return

        adapter = self.module_resolver(job.module)
        remote_model = adapter.remote_model(job.entity_type) if adapter is not None else ""
        self.entity_map.save(
            job.module,
            job.entity_type,
            local_id,
            remote_id,
            remote_model=remote_model,
            payload_hash=content_hash(context.payload),
            now=self.clock(),
        )

    def _release_unused_trials(self, used_modules) -> None:
        """Half-open trial leases are only kept by breakers that got a batch to send."""
        if not used_modules:
            self.circuit_breaker.release_trial()
        self.module_breaker.release_unused_trials(used_modules)

    def _record_outcome(self, outcome: BatchOutcome) -> None:
        if self.dry_run or not (outcome.successes or outcome.failures):
            # Nothing was learned about the remote
            self._release_unused_trials(())
            return
        now = self.clock()
        self.circuit_breaker.record_batch(outcome.successes, outcome.failures, now=now)
        for module, counts in outcome.modules.items():
            self.module_breaker.record_module_batch(module, counts["successes"], counts["failures"], now=now)
        self.notifier.check(outcome.successes, outcome.failures, now=now)
        # Modules claimed in this batch but never dispatched
        self.module_breaker.release_unused_trials(outcome.modules.keys())

    # ==============================================================================
    # Memory
    # ==============================================================================

    def _memory_exhausted(self) -> bool:
        if not self.settings.memory_limit_mb:
            return False
        limit = int(self.settings.memory_limit_mb) * 1024 * 1024
        return self._memory_reader() >= limit * self.settings.memory_threshold

    def _memory_context(self) -> dict:
        return {"memory_usage_mb": round(self._memory_reader() / 1048576, 1), "memory_limit_mb": self.settings.memory_limit_mb}

    def get_status(self) -> dict:
        now = self.clock()
        return {
            "dry_run": self.dry_run,
            "circuit_breaker": self.circuit_breaker.get_status(now),
            "open_modules": self.module_breaker.get_open_modules(now),
            "locks": self.lock_manager.get_status(),
            "queue": self.queue_repo.get_stats(),
        }


def build_sync_engine(app=None, registry=None, **overrides) -> SyncEngine:
    """
    Wire an engine from the Flask app's config and extensions.

    Must be called inside an app context. The identity map instance (and so
    its cache) is shared by every engine built for the same app.
    """
    from flask import current_app

    from syncbridge.services.failure_notifier import WebhookAlertSender

    app = app or current_app._get_current_object()
    extension = app.extensions["syncbridge"]
    config = app.config

    settings = overrides.pop("settings", None) or SyncSettings.from_config(config)
    state_store = overrides.pop("state_store", None) or StateStore()
    notifier = overrides.pop("notifier", None) or FailureNotifier(
        state_store,
        sender=WebhookAlertSender(config.get("ALERT_WEBHOOK_URL")),
        threshold=config.get("ALERT_FAILURE_THRESHOLD") or 5,
        cooldown=config.get("ALERT_COOLDOWN_SECONDS") or 3600,
    )
    registry = registry or extension["registry"]
    return SyncEngine(
        registry.resolver(),
        entity_map=overrides.pop("entity_map", None) or extension["entity_map"],
        settings=settings,
        state_store=state_store,
        notifier=notifier,
        **overrides,
    )
