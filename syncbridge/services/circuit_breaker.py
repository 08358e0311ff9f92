"""
Circuit breakers that pause remote calls during a systemic outage.

A batch counts as failed when at least 80% of its jobs failed, so one bad
record in an otherwise healthy batch never trips the breaker. State lives in
sync_state rather than process memory: a restart cannot silently close an
open breaker, and every worker sees the same state.

States:
    closed     normal operation
    open       no remote calls; jobs stay pending
    half_open  recovery delay elapsed; exactly one trial batch may run
"""
from datetime import datetime
from typing import Iterable, List, Optional

from syncbridge.datetime_utils import utcnow
from syncbridge.logging_config import get_logger
from syncbridge.services.state_store import StateStore

logger = get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

FAILURE_RATIO = 0.8


class CircuitBreaker:
    """Global breaker over every remote call the engine makes."""

    def __init__(
        self,
        state_store: Optional[StateStore] = None,
        notifier=None,
        failure_threshold: int = 3,
        recovery_delay: int = 300,
        trial_ttl: int = 360,
        stale_ceiling: int = 3600,
        failure_ratio: float = FAILURE_RATIO,
        key_prefix: str = "cb",
    ):
        self.state_store = state_store or StateStore()
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self.recovery_delay = recovery_delay
        # Longer than recovery_delay plus one batch time limit, so a slow
        # trial cannot overlap the next one
        self.trial_ttl = trial_ttl
        self.stale_ceiling = stale_ceiling
        self.failure_ratio = failure_ratio
        self.key_prefix = key_prefix
        self._trial_held = False

    @property
    def _failures_key(self):
        return f"{self.key_prefix}:failures"

    @property
    def _state_key(self):
        return f"{self.key_prefix}:state"

    @property
    def _trial_key(self):
        return f"{self.key_prefix}:trial"

    def set_failure_notifier(self, notifier):
        self.notifier = notifier

    # ==============================================================================
    # State
    # ==============================================================================

    def _opened_at(self) -> Optional[datetime]:
        data = self.state_store.get_data(self._state_key) or {}
        opened_at = data.get("opened_at")
        return datetime.fromisoformat(opened_at) if opened_at else None

    def get_state(self, now=None) -> str:
        """closed, open or half_open. Heals an open state older than the stale ceiling."""
        now = now or utcnow()
        opened_at = self._opened_at()
        if opened_at is None:
            return CLOSED

        open_for = (now - opened_at).total_seconds()
        if open_for > self.stale_ceiling:
            logger.warning(
                "Circuit breaker open past its ceiling, auto-closing",
                breaker=self.key_prefix, open_for_seconds=open_for, ceiling_seconds=self.stale_ceiling,
            )
            self.reset()
            return CLOSED
        if open_for >= self.recovery_delay:
            return HALF_OPEN
        return OPEN

    def is_available(self, now=None) -> bool:
        """
        Whether this worker may make remote calls now.

        In half_open only the worker that wins the trial lease gets True.
        """
        now = now or utcnow()
        state = self.get_state(now)
        if state == CLOSED:
            return True
        if state == OPEN:
            return False

        if self.state_store.try_acquire(self._trial_key, self.trial_ttl, owner=self.key_prefix, now=now):
            self._trial_held = True
            logger.info("Circuit breaker half-open: allowing trial batch", breaker=self.key_prefix)
            return True
        return False

    def release_trial(self) -> bool:
        """Give back a trial lease this instance took but sent no batch under."""
        if not self._trial_held:
            return False
        self._trial_held = False
        self.state_store.release(self._trial_key)
        logger.info("Circuit breaker trial released unused", breaker=self.key_prefix)
        return True

    def get_status(self, now=None) -> dict:
        now = now or utcnow()
        # get_state may heal a stale open state, so read opened_at after it
        state = self.get_state(now)
        opened_at = self._opened_at()
        return {
            "state": state,
            "consecutive_failures": self.state_store.get_int(self._failures_key),
            "opened_at": opened_at.isoformat() if opened_at else None,
            "recovery_delay_seconds": self.recovery_delay,
        }

    # ==============================================================================
    # Recording outcomes
    # ==============================================================================

    def record_batch(self, successes: int, failures: int, now=None) -> None:
        """Record one batch outcome. Empty batches are ignored."""
        total = successes + failures
        if total == 0:
            return
        self._trial_held = False
        if failures / total >= self.failure_ratio:
            self.record_failure(successes, failures, now=now)
        else:
            self.record_success()

    def record_success(self) -> None:
        """Close the breaker and clear all counters."""
        if self._opened_at() is not None:
            logger.info("Circuit breaker closed: remote connection recovered", breaker=self.key_prefix)
        self.reset()

    def record_failure(self, successes: int = 0, failures: int = 0, now=None) -> None:
        now = now or utcnow()
        count = self.state_store.increment(self._failures_key)
        opened_at = self._opened_at()

        if opened_at is not None:
            # A failed trial: start the recovery delay over
            self.state_store.set(self._state_key, data={"opened_at": now.isoformat(), "failures": count})
            self.state_store.release(self._trial_key)
            logger.warning(
                "Circuit breaker trial failed, re-opened",
                breaker=self.key_prefix, consecutive_batch_failures=count,
                recovery_delay_seconds=self.recovery_delay,
            )
            return

        if count >= self.failure_threshold:
            self.state_store.set(self._state_key, data={"opened_at": now.isoformat(), "failures": count})
            logger.warning(
                "Circuit breaker opened: remote appears unreachable",
                breaker=self.key_prefix,
                consecutive_batch_failures=count,
                last_batch_successes=successes,
                last_batch_failures=failures,
                recovery_delay_seconds=self.recovery_delay,
            )
            self._notify_open(count)

    def _notify_open(self, count):
        if self.notifier is not None:
            self.notifier.notify_circuit_breaker_open(count)

    def reset(self) -> None:
        self.state_store.delete(self._failures_key, self._state_key, self._trial_key)


class _ModuleBreaker(CircuitBreaker):
    def __init__(self, module, **kwargs):
        super().__init__(key_prefix=f"{ModuleCircuitBreaker.KEY_PREFIX}:{module}", **kwargs)
        self.module = module

    def _notify_open(self, count):
        if self.notifier is not None:
            self.notifier.notify_module_circuit_breaker_open(self.module, count)


class ModuleCircuitBreaker:
    """
    Per-module breakers, so one broken integration does not stall the others.

    More tolerant than the global breaker: five failed batches to open and a
    ten minute recovery delay.
    """

    KEY_PREFIX = "mcb"

    def __init__(
        self,
        state_store: Optional[StateStore] = None,
        notifier=None,
        failure_threshold: int = 5,
        recovery_delay: int = 600,
        trial_ttl: int = 660,
        stale_ceiling: int = 7200,
    ):
        self.state_store = state_store or StateStore()
        self.notifier = notifier
        self._settings = dict(
            failure_threshold=failure_threshold,
            recovery_delay=recovery_delay,
            trial_ttl=trial_ttl,
            stale_ceiling=stale_ceiling,
        )
        self._breakers = {}

    def set_failure_notifier(self, notifier):
        self.notifier = notifier
        for breaker in self._breakers.values():
            breaker.set_failure_notifier(notifier)

    def _breaker(self, module) -> CircuitBreaker:
        if module not in self._breakers:
            self._breakers[module] = _ModuleBreaker(
                module, state_store=self.state_store, notifier=self.notifier, **self._settings
            )
        return self._breakers[module]

    def is_module_available(self, module, now=None) -> bool:
        return self._breaker(module).is_available(now)

    def get_module_state(self, module, now=None) -> str:
        return self._breaker(module).get_state(now)

    def record_module_batch(self, module, successes: int, failures: int, now=None) -> None:
        self._breaker(module).record_batch(successes, failures, now=now)

    def release_unused_trials(self, used_modules: Iterable[str] = ()) -> List[str]:
        """Release trial leases taken for modules that got no jobs in this batch."""
        used = set(used_modules)
        return [
            module for module, breaker in self._breakers.items()
            if module not in used and breaker.release_trial()
        ]

    def reset_module(self, module) -> None:
        self._breaker(module).reset()
        logger.info("Module circuit breaker reset", module=module)

    def _tracked_modules(self) -> List[str]:
        suffix = ":state"
        prefix = f"{self.KEY_PREFIX}:"
        return [
            key[len(prefix):-len(suffix)]
            for key in self.state_store.keys_with_prefix(prefix)
            if key.endswith(suffix)
        ]

    def get_open_modules(self, now=None) -> List[str]:
        """Modules whose breaker is open (half-open modules are not listed)."""
        return [m for m in self._tracked_modules() if self.get_module_state(m, now) == OPEN]

    def get_unavailable_modules(self, now=None) -> List[str]:
        """Modules this worker must not claim jobs for right now."""
        return [m for m in self._tracked_modules() if not self.is_module_available(m, now)]
