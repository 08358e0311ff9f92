"""
Tests for throttled failure alerts.
"""
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from syncbridge.services.failure_notifier import FailureNotifier, WebhookAlertSender
from syncbridge.services.state_store import StateStore

T0 = datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def notifier(app, sender):
    return FailureNotifier(StateStore(), sender=sender, threshold=5, cooldown=3600)


class TestFailureNotifier:

    def test_alert_sent_when_threshold_reached(self, notifier, sender):
        assert notifier.check(0, 2, now=T0) is False
        assert notifier.check(0, 3, now=T0) is True

        assert len(sender.sent) == 1
        assert "5 consecutive" in sender.sent[0]["subject"]
        assert sender.sent[0]["context"]["consecutive_failures"] == 5

    def test_cooldown_suppresses_repeat_alerts(self, notifier, sender):
        notifier.check(0, 5, now=T0)
        assert notifier.check(0, 1, now=T0 + timedelta(minutes=30)) is False
        assert notifier.check(0, 1, now=T0 + timedelta(seconds=3601)) is True
        assert len(sender.sent) == 2

    def test_any_success_resets_counter(self, notifier, sender):
        notifier.check(0, 4, now=T0)
        assert notifier.check(1, 4, now=T0) is False
        assert notifier.get_consecutive_failures() == 0

        assert notifier.check(0, 4, now=T0) is False
        assert sender.sent == []

    def test_empty_batch_changes_nothing(self, notifier):
        notifier.check(0, 3, now=T0)
        notifier.check(0, 0, now=T0)
        assert notifier.get_consecutive_failures() == 3

    def test_breaker_alerts_have_their_own_cooldown(self, notifier, sender):
        notifier.check(0, 5, now=T0)

        assert notifier.notify_circuit_breaker_open(3, now=T0) is True
        assert notifier.notify_circuit_breaker_open(3, now=T0) is False
        assert len(sender.sent) == 2

    def test_module_alerts_throttled_per_module(self, notifier, sender):
        assert notifier.notify_module_circuit_breaker_open("crm", 5, now=T0) is True
        assert notifier.notify_module_circuit_breaker_open("erp", 5, now=T0) is True
        assert notifier.notify_module_circuit_breaker_open("crm", 5, now=T0) is False
        assert [s["context"]["module"] for s in sender.sent] == ["crm", "erp"]

    def test_last_notified_recorded(self, notifier):
        notifier.notify_circuit_breaker_open(3, now=T0)
        assert StateStore().get_data("notifier:last_notified_at")["at"] == T0.isoformat()


class TestWebhookAlertSender:

    def test_without_url_only_logs(self):
        assert WebhookAlertSender(None).send("subject", "message") is False

    @patch("syncbridge.services.failure_notifier.requests.post")
    def test_posts_json_once(self, mock_post):
        mock_post.return_value = Mock(status_code=200)

        assert WebhookAlertSender("https://hooks.example.com/x", timeout=5).send("s", "m", {"k": 1}) is True

        mock_post.assert_called_once_with(
            "https://hooks.example.com/x",
            json={"subject": "s", "text": "m", "context": {"k": 1}},
            timeout=5,
        )

    @patch("syncbridge.services.failure_notifier.requests.post")
    def test_delivery_failure_is_logged_not_raised(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        assert WebhookAlertSender("https://hooks.example.com/x").send("s", "m") is False
        assert mock_post.call_count == 1
