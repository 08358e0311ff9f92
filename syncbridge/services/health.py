from typing import Optional

from syncbridge.datetime_utils import utcnow
from syncbridge.services.circuit_breaker import OPEN, CircuitBreaker, ModuleCircuitBreaker
from syncbridge.services.queue_repository import SyncQueueRepository
from syncbridge.services.state_store import StateStore

HEALTHY = "healthy"
DEGRADED = "degraded"
DEFAULT_FAILED_CEILING = 100


def get_health(
    queue_repo: Optional[SyncQueueRepository] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    module_breaker: Optional[ModuleCircuitBreaker] = None,
    registry=None,
    failed_ceiling: int = DEFAULT_FAILED_CEILING,
    now=None,
) -> dict:
    """
    Queue and breaker summary for external monitoring.

    ``degraded`` when the global breaker is open or more than
    ``failed_ceiling`` jobs have failed.
    """
    now = now or utcnow()
    state_store = StateStore()
    queue_repo = queue_repo or SyncQueueRepository()
    circuit_breaker = circuit_breaker or CircuitBreaker(state_store)
    module_breaker = module_breaker or ModuleCircuitBreaker(state_store)

    stats = queue_repo.get_stats()
    breaker_state = circuit_breaker.get_state(now)
    failed_count = stats.get("failed", 0)

    status = HEALTHY
    if breaker_state == OPEN or failed_count > failed_ceiling:
        status = DEGRADED

    return {
        "status": status,
        "pending_count": stats.get("pending", 0),
        "processing_count": stats.get("processing", 0),
        "failed_count": failed_count,
        "breaker_state": breaker_state,
        "modules_active": registry.enabled_modules() if registry is not None else [],
        "open_modules": module_breaker.get_open_modules(now),
        "last_completed_at": stats.get("last_completed_at"),
    }
