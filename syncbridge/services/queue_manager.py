from flask import current_app, has_app_context

from syncbridge.config import SyncSettings
from syncbridge.logging_config import get_logger
from syncbridge.models import Direction
from syncbridge.services.queue_repository import SyncQueueRepository

logger = get_logger(__name__)

DEBOUNCE_SECONDS = 5


class QueueManager:
    """Entry points used by local change hooks and webhook handlers to enqueue sync work"""

    @staticmethod
    def _settings():
        if has_app_context():
            return SyncSettings.from_config(current_app.config)
        return SyncSettings()

    @staticmethod
    def _repo():
        settings = QueueManager._settings()
        return SyncQueueRepository(
            max_payload_bytes=settings.max_payload_bytes,
            default_max_attempts=settings.max_attempts,
        )

    @staticmethod
    def push(module, entity_type, action, local_id, remote_id=None, payload=None, priority=5, debounce=None, context=None):
        """
        Queue a local change for delivery to the remote system.

        Args:
            module: Integration name
            entity_type: Entity type within the module
            action: 'create', 'update' or 'delete'
            local_id: Local record id
            remote_id: Remote id, when already known
            payload: JSON-serializable data to send
            priority: 1 (first) to 10 (last)
            debounce: Seconds to hold the job so a burst of saves runs once
            context: JobContext of the call that caused this change, if any

        Returns:
            int: job id, or None when skipped
        """
        if context is not None and context.importing and context.module == module:
            # Local write made by an inbound job; pushing it back would echo
            logger.debug("Skipping push during inbound import", module=module, entity_type=entity_type, local_id=local_id)
            return None

        if debounce is None:
            debounce = QueueManager._settings().debounce_seconds
        return QueueManager._repo().enqueue(
            module,
            entity_type,
            action=action,
            direction=Direction.OUTBOUND.value,
            local_id=local_id,
            remote_id=remote_id,
            payload=payload,
            priority=priority,
            debounce_seconds=debounce,
        )

    @staticmethod
    def pull(module, entity_type, action, remote_id, local_id=None, payload=None, priority=5, debounce=0):
        """Queue a remote change (e.g. from a webhook) to be applied locally."""
        return QueueManager._repo().enqueue(
            module,
            entity_type,
            action=action,
            direction=Direction.INBOUND.value,
            local_id=local_id,
            remote_id=remote_id,
            payload=payload,
            priority=priority,
            debounce_seconds=debounce,
        )

    @staticmethod
    def cancel(job_id):
        return QueueManager._repo().cancel(job_id)

    @staticmethod
    def get_pending(module, entity_type=None):
        return QueueManager._repo().get_pending(module, entity_type)

    @staticmethod
    def get_stats():
        return QueueManager._repo().get_stats()

    @staticmethod
    def retry_failed():
        return QueueManager._repo().retry_failed()

    @staticmethod
    def cleanup(days_old=7):
        return QueueManager._repo().cleanup(days_old)
