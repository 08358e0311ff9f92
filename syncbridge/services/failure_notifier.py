"""
Throttled operator alerts for failure streaks and opened breakers.
"""
from typing import Optional

import requests

from syncbridge.datetime_utils import utcnow
from syncbridge.logging_config import get_logger
from syncbridge.services.state_store import StateStore

logger = get_logger(__name__)

KEY_CONSECUTIVE = "notifier:consecutive_failures"
KEY_COOLDOWN = "notifier:cooldown"
KEY_LAST_NOTIFIED = "notifier:last_notified_at"


class WebhookAlertSender:
    """
    Posts alerts as JSON to a webhook.

    Makes one attempt; a delivery failure is logged and dropped. Without a
    URL the alert is only logged.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: int = 10):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, subject: str, message: str, context: Optional[dict] = None) -> bool:
        if not self.webhook_url:
            logger.warning("Alert (no webhook configured)", subject=subject, alert_message=message, **(context or {}))
            return False
        try:
            response = requests.post(
                self.webhook_url,
                json={"subject": subject, "text": message, "context": context or {}},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error("Failed to deliver alert", subject=subject, error=str(e))
            return False


class FailureNotifier:
    """
    Counts consecutive failed jobs across batches and alerts once per cooldown.

    The counter is global (one per queue database), not per module, and any
    batch with at least one success resets it.
    """

    def __init__(self, state_store: Optional[StateStore] = None, sender=None, threshold: int = 5, cooldown: int = 3600):
        self.state_store = state_store or StateStore()
        self.sender = sender or WebhookAlertSender()
        self.threshold = threshold
        self.cooldown = cooldown

    def get_consecutive_failures(self) -> int:
        return self.state_store.get_int(KEY_CONSECUTIVE)

    def check(self, successes: int, failures: int, now=None) -> bool:
        """
        Record a batch outcome.

        Returns:
            bool: True if a notification was sent
        """
        if successes > 0:
            if self.get_consecutive_failures() > 0:
                self.state_store.delete(KEY_CONSECUTIVE)
            return False
        if failures == 0:
            return False

        consecutive = self.state_store.increment(KEY_CONSECUTIVE, failures)
        if consecutive < self.threshold:
            return False
        return self._maybe_send(
            KEY_COOLDOWN,
            f"[syncbridge] {consecutive} consecutive sync failures",
            f"The sync queue has encountered {consecutive} consecutive failures. Check the failed jobs in the queue.",
            {"consecutive_failures": consecutive},
            now,
        )

    def notify_circuit_breaker_open(self, consecutive_batches: int, now=None) -> bool:
        return self._maybe_send(
            f"{KEY_COOLDOWN}:cb",
            "[syncbridge] Circuit breaker opened",
            f"Remote calls are paused after {consecutive_batches} consecutive failed batches.",
            {"consecutive_batch_failures": consecutive_batches},
            now,
        )

    def notify_module_circuit_breaker_open(self, module: str, consecutive_batches: int, now=None) -> bool:
        return self._maybe_send(
            f"{KEY_COOLDOWN}:mcb:{module}",
            f"[syncbridge] Module {module} paused",
            f"Module {module} is paused after {consecutive_batches} consecutive failed batches.",
            {"module": module, "consecutive_batch_failures": consecutive_batches},
            now,
        )

    def _maybe_send(self, cooldown_key, subject, message, context, now=None) -> bool:
        now = now or utcnow()
        # The cooldown lease is taken atomically, so concurrent workers send at most one alert
        if not self.state_store.try_acquire(cooldown_key, self.cooldown, owner="notifier", now=now):
            logger.debug("Notification suppressed by cooldown", cooldown_key=cooldown_key)
            return False

        self.sender.send(subject, message, context)
        self.state_store.set(KEY_LAST_NOTIFIED, data={"at": now.isoformat(), "subject": subject})
        logger.warning("Failure notification sent", subject=subject, **context)
        return True
