from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from syncbridge.errors import ErrorKind


@dataclass
class SyncResult:
    """Outcome of one adapter call for one job."""

    success: bool
    remote_id: Optional[int] = None
    local_id: Optional[int] = None
    error: Optional[str] = None
    error_kind: ErrorKind = ErrorKind.TRANSIENT

    @classmethod
    def ok(cls, remote_id=None, local_id=None) -> "SyncResult":
        return cls(success=True, remote_id=remote_id, local_id=local_id)

    @classmethod
    def failure(cls, error, error_kind=ErrorKind.TRANSIENT, remote_id=None) -> "SyncResult":
        return cls(success=False, remote_id=remote_id, error=str(error), error_kind=ErrorKind(error_kind))


@dataclass
class JobContext:
    """
    Per-call context handed to adapters.

    ``importing`` is True while an inbound job writes local records; local
    change hooks check it so the write does not enqueue an outbound echo.
    ``remote_id`` is the job's remote id, or the one resolved from the
    identity map when the job did not carry it.
    """

    job_id: int
    module: str
    entity_type: str
    direction: str
    action: str
    correlation_id: Optional[str] = None
    local_id: Optional[int] = None
    remote_id: Optional[int] = None
    payload: Dict = field(default_factory=dict)
    importing: bool = False
    dry_run: bool = False


class TargetAdapter(ABC):
    """
    One integration's connection to the remote system.

    Implementations make exactly one attempt per call and raise (or return
    a failed SyncResult) on error; retry and backoff belong to the queue.
    """

    name = ""

    @abstractmethod
    def push(self, job, context: JobContext) -> SyncResult:
        """Send a local change to the remote system."""

    @abstractmethod
    def pull(self, job, context: JobContext) -> SyncResult:
        """Apply a remote change locally."""

    def supports_batch_create(self, entity_type: str) -> bool:
        return False

    def push_batch(self, jobs: List, contexts: List[JobContext]) -> List[SyncResult]:
        """Create several records in one remote call; results line up with ``jobs``."""
        raise NotImplementedError(f"{type(self).__name__} does not support batch creates")

    def remote_model(self, entity_type: str) -> str:
        return entity_type

    def exists(self, entity_type: str, remote_ids: Iterable[int]) -> Set[int]:
        """Subset of ``remote_ids`` that still exist remotely."""
        raise NotImplementedError(f"{type(self).__name__} cannot check remote existence")
