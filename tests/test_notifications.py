"""
Test suite for notification gating, senders and the notification ledger
"""

import pytest
from datetime import date, datetime, time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests

from arrears_core.models import AlertSeverity, CollectionAlert, NotificationChannel
from arrears_core.notifications import (
    NotificationService, WebhookNotificationSender, in_send_window
)
from arrears_core.policy import ArrearsConfiguration

TUESDAY_10AM = datetime(2024, 3, 5, 10, 0)
SATURDAY_10AM = datetime(2024, 3, 9, 10, 0)


def make_alert(alert_id="A1", installment_id="CR-1-1", customer_id="CUST-1"):
    return CollectionAlert(
        id=alert_id,
        credit_id="CR-1",
        customer_id=customer_id,
        installment_id=installment_id,
        days_late=20,
        overdue_amount=Decimal("1000.00"),
        severity=AlertSeverity.MEDIUM,
        alert_date=date(2024, 3, 5),
    )


@pytest.fixture
def service(storage, sender):
    return NotificationService(storage, sender)


class TestSendWindow:
    """Test the time-of-day window"""

    def test_window_is_inclusive(self):
        assert in_send_window(time(8, 0), time(8, 0), time(20, 0))
        assert in_send_window(time(20, 0), time(8, 0), time(20, 0))
        assert not in_send_window(time(7, 59), time(8, 0), time(20, 0))
        assert not in_send_window(time(20, 1), time(8, 0), time(20, 0))

    def test_overnight_window(self):
        assert in_send_window(time(23, 0), time(22, 0), time(6, 0))
        assert in_send_window(time(5, 0), time(22, 0), time(6, 0))
        assert not in_send_window(time(12, 0), time(22, 0), time(6, 0))


class TestChannelResolution:
    """Test narrowing of the requested channel"""

    def test_both_downgrades_to_enabled_channel(self, service):
        config = ArrearsConfiguration(whatsapp_enabled=False)
        assert service.resolve_channel(NotificationChannel.BOTH, config) == NotificationChannel.EMAIL

    def test_disabled_channel_resolves_to_none(self, service):
        config = ArrearsConfiguration(email_enabled=False)
        assert service.resolve_channel(NotificationChannel.EMAIL, config) is None

    def test_preferred_channel_used_by_default(self, service):
        config = ArrearsConfiguration(preferred_channel=NotificationChannel.EMAIL)
        assert service.resolve_channel(None, config) == NotificationChannel.EMAIL


class TestNotificationGates:
    """Test the policy gates in front of the sender"""

    def test_sends_inside_window_on_weekday(self, service, sender):
        outcome = service.notify(make_alert(), ArrearsConfiguration(), TUESDAY_10AM, template="overdue_notice")

        assert outcome.sent is True
        assert outcome.channel == NotificationChannel.WHATSAPP
        assert sender.sent[0]["template"] == "overdue_notice"
        assert sender.sent[0]["payload"]["alert_id"] == "A1"
        assert service.count_sent(sent_on=TUESDAY_10AM.date()) == 1

    def test_notifications_disabled(self, service, sender):
        outcome = service.notify(make_alert(), ArrearsConfiguration(notifications_enabled=False), TUESDAY_10AM)

        assert outcome.skipped_reason == "notifications disabled"
        assert sender.sent == []

    def test_channel_disabled(self, service, sender):
        config = ArrearsConfiguration(whatsapp_enabled=False, email_enabled=False)

        outcome = service.notify(make_alert(), config, TUESDAY_10AM)

        assert outcome.skipped_reason == "channel disabled"
        assert sender.sent == []

    def test_outside_window(self, service, sender):
        outcome = service.notify(make_alert(), ArrearsConfiguration(), datetime(2024, 3, 5, 21, 30))

        assert outcome.skipped
        assert outcome.skipped_reason == "outside sending window"
        assert sender.sent == []

    def test_weekend_suppressed_unless_enabled(self, service, sender):
        blocked = service.notify(make_alert(), ArrearsConfiguration(), SATURDAY_10AM)
        allowed = service.notify(make_alert(), ArrearsConfiguration(send_on_weekends=True), SATURDAY_10AM)

        assert blocked.skipped_reason == "weekend sending disabled"
        assert allowed.sent is True
        assert len(sender.sent) == 1

    def test_daily_cap(self, service, sender):
        config = ArrearsConfiguration(max_notifications_per_day=2, max_notifications_per_installment=0)

        outcomes = [
            service.notify(make_alert(alert_id=f"A{i}", installment_id=f"I{i}"), config, TUESDAY_10AM)
            for i in range(3)
        ]

        assert [o.sent for o in outcomes] == [True, True, False]
        assert outcomes[2].skipped_reason == "daily notification cap reached"

    def test_installment_cap_spans_days(self, service):
        config = ArrearsConfiguration(max_notifications_per_installment=2)
        alert = make_alert()

        service.notify(alert, config, datetime(2024, 3, 4, 10, 0))
        service.notify(alert, config, datetime(2024, 3, 5, 10, 0))
        third = service.notify(alert, config, datetime(2024, 3, 6, 10, 0))

        assert third.skipped_reason == "installment notification cap reached"

    def test_zero_cap_is_unlimited(self, service):
        config = ArrearsConfiguration(max_notifications_per_day=0, max_notifications_per_installment=0)
        alert = make_alert()

        outcomes = [service.notify(alert, config, TUESDAY_10AM) for _ in range(5)]

        assert all(o.sent for o in outcomes)

    def test_failed_send_is_logged_but_not_counted(self, service, sender, storage):
        sender.fail_with = "gateway down"

        outcome = service.notify(make_alert(), ArrearsConfiguration(), TUESDAY_10AM)

        assert outcome.sent is False
        assert outcome.error == "gateway down"
        assert service.count_sent(sent_on=TUESDAY_10AM.date()) == 0
        assert storage.count(service.table) == 1

    def test_raising_sender_is_a_failed_send(self, service, sender):
        sender.raise_with = RuntimeError("socket closed")

        outcome = service.notify(make_alert(), ArrearsConfiguration(), TUESDAY_10AM)

        assert outcome.sent is False
        assert "socket closed" in outcome.error


class TestWebhookSender:
    """Test the HTTP transport"""

    def test_successful_post(self):
        response = MagicMock(status_code=202, headers={"Content-Type": "application/json"})
        response.json.return_value = {"message_id": "msg-1"}

        with patch("arrears_core.notifications.requests.post", return_value=response) as post:
            result = WebhookNotificationSender("https://gateway.test/send", timeout=3).send(
                "CUST-1", NotificationChannel.EMAIL, "final_notice", {"days_late": 60}
            )

        assert result.success is True
        assert result.message_id == "msg-1"
        body = post.call_args.kwargs["json"]
        assert body["channel"] == "email"
        assert body["template"] == "final_notice"
        assert post.call_args.kwargs["timeout"] == 3

    def test_http_error_status(self):
        response = MagicMock(status_code=503, headers={})

        with patch("arrears_core.notifications.requests.post", return_value=response):
            result = WebhookNotificationSender("https://gateway.test/send").send(
                "CUST-1", NotificationChannel.WHATSAPP, "overdue_notice", {}
            )

        assert result.success is False
        assert result.error == "HTTP 503"

    def test_connection_error(self):
        with patch(
            "arrears_core.notifications.requests.post",
            side_effect=requests.ConnectionError("refused")
        ):
            result = WebhookNotificationSender("https://gateway.test/send").send(
                "CUST-1", NotificationChannel.WHATSAPP, "overdue_notice", {}
            )

        assert result.success is False
        assert "refused" in result.error
