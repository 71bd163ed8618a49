"""
Notification Module

Customer notifications for overdue credits. Senders are thin transport
adapters; NotificationService applies the policy gates (global switch,
channel availability, sending window, weekend suppression, daily and
per-installment caps) and keeps the ledger the caps are counted from.

Sending is best effort: a blocked or failed send is reported to the caller
and never retried or rolled back into the state change that triggered it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Dict, Optional
import threading
import uuid

import requests

from .logging_config import get_logger
from .models import CollectionAlert, NotificationChannel, NotificationLog
from .policy import ArrearsConfiguration
from .storage import StorageInterface


@dataclass
class SendResult:
    """Transport-level outcome of one send"""
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class NotificationSender(ABC):
    """Abstract transport for customer notifications"""

    @abstractmethod
    def send(
        self,
        customer_id: str,
        channel: NotificationChannel,
        template: str,
        payload: Dict[str, Any]
    ) -> SendResult:
        """Deliver ``template`` rendered with ``payload`` to the customer"""
        pass


class LogNotificationSender(NotificationSender):
    """Logs notifications instead of delivering them (development default)"""

    def __init__(self):
        self.logger = get_logger("arrears.notifications.log")

    def send(self, customer_id, channel, template, payload) -> SendResult:
        self.logger.info(f"{channel.name} to customer {customer_id}: {template} {payload}")
        return SendResult(success=True, message_id=str(uuid.uuid4()))


class WebhookNotificationSender(NotificationSender):
    """POSTs notifications to an external messaging gateway"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("arrears.notifications.webhook")

    def send(self, customer_id, channel, template, payload) -> SendResult:
        body = {
            "customer_id": customer_id,
            "channel": channel.name.lower(),
            "template": template,
            "payload": payload,
        }
        try:
            response = requests.post(
                self.url,
                json=body,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.warning(f"Webhook send to {self.url} failed: {e}")
            return SendResult(success=False, error=str(e))

        if 200 <= response.status_code < 300:
            message_id = None
            if response.headers.get("Content-Type", "").startswith("application/json"):
                message_id = response.json().get("message_id")
            return SendResult(success=True, message_id=message_id)
        return SendResult(success=False, error=f"HTTP {response.status_code}")


@dataclass
class NotificationOutcome:
    """Result of asking the service to notify a customer"""
    sent: bool
    channel: Optional[NotificationChannel] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def in_send_window(moment: time, start: time, end: time) -> bool:
    """True when ``moment`` falls inside the window; start > end spans midnight"""
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end


class NotificationService:
    """Policy-gated, rate-limited notification dispatch"""

    def __init__(self, storage: StorageInterface, sender: Optional[NotificationSender] = None):
        self.storage = storage
        self.sender = sender or LogNotificationSender()
        self.table = "notification_log"
        self._lock = threading.Lock()
        self.logger = get_logger("arrears.notifications")

    def resolve_channel(
        self,
        requested: Optional[NotificationChannel],
        config: ArrearsConfiguration
    ) -> Optional[NotificationChannel]:
        """Requested (or preferred) channel narrowed to the enabled ones"""
        channel = requested or config.preferred_channel
        whatsapp = config.whatsapp_enabled
        email = config.email_enabled

        if channel == NotificationChannel.BOTH:
            if whatsapp and email:
                return NotificationChannel.BOTH
            if whatsapp:
                return NotificationChannel.WHATSAPP
            if email:
                return NotificationChannel.EMAIL
            return None
        if channel == NotificationChannel.WHATSAPP:
            return channel if whatsapp else None
        return channel if email else None

    def blocked_reason(
        self,
        alert: CollectionAlert,
        config: ArrearsConfiguration,
        now: datetime
    ) -> Optional[str]:
        """Why a notification may not go out now, or None when it may"""
        if not config.notifications_enabled:
            return "notifications disabled"
        if not in_send_window(now.time(), config.send_window_start, config.send_window_end):
            return "outside sending window"
        if now.weekday() >= 5 and not config.send_on_weekends:
            return "weekend sending disabled"

        if config.max_notifications_per_day > 0:
            sent_today = self.count_sent(sent_on=now.date())
            if sent_today >= config.max_notifications_per_day:
                return "daily notification cap reached"
        if config.max_notifications_per_installment > 0:
            sent_for_installment = self.count_sent(installment_key=self._installment_key(alert))
            if sent_for_installment >= config.max_notifications_per_installment:
                return "installment notification cap reached"
        return None

    def notify(
        self,
        alert: CollectionAlert,
        config: ArrearsConfiguration,
        now: datetime,
        channel: Optional[NotificationChannel] = None,
        template: str = "overdue_reminder",
        payload: Optional[Dict[str, Any]] = None
    ) -> NotificationOutcome:
        """
        Send one notification for ``alert`` if every gate allows it.

        Gates are checked and the ledger written under one lock so
        concurrent alerts cannot overshoot the caps.
        """
        with self._lock:
            if not config.notifications_enabled:
                return NotificationOutcome(sent=False, skipped_reason="notifications disabled")
            resolved = self.resolve_channel(channel, config)
            if resolved is None:
                return NotificationOutcome(sent=False, skipped_reason="channel disabled")
            reason = self.blocked_reason(alert, config, now)
            if reason:
                self.logger.info(f"Notification for alert {alert.id} skipped: {reason}")
                return NotificationOutcome(sent=False, channel=resolved, skipped_reason=reason)

            payload = dict(payload or {})
            payload.setdefault("alert_id", alert.id)
            payload.setdefault("credit_id", alert.credit_id)
            payload.setdefault("days_late", alert.days_late)
            payload.setdefault("overdue_amount", str(alert.overdue_amount))
            payload.setdefault("arrears_amount", str(alert.arrears_amount))

            try:
                result = self.sender.send(alert.customer_id, resolved, template, payload)
            except Exception as e:
                # Transport adapters are external code; a crash counts as a failed send
                self.logger.error(f"Notification sender raised for alert {alert.id}: {e}")
                result = SendResult(success=False, error=str(e))

            entry = NotificationLog(
                id=str(uuid.uuid4()),
                customer_id=alert.customer_id,
                alert_id=alert.id,
                installment_id=self._installment_key(alert),
                channel=resolved,
                template=template,
                sent_at=now,
                sent_on=now.date(),
                succeeded=result.success,
                error=result.error,
            )
            self.storage.save(self.table, entry.id, entry.to_dict())

        if result.success:
            return NotificationOutcome(sent=True, channel=resolved)
        return NotificationOutcome(sent=False, channel=resolved, error=result.error)

    def count_sent(self, sent_on=None, installment_key: Optional[str] = None) -> int:
        """Successful sends, optionally for one day or one installment"""
        filters: Dict[str, Any] = {"succeeded": True}
        if sent_on is not None:
            filters["sent_on"] = sent_on.isoformat()
        if installment_key is not None:
            filters["installment_id"] = installment_key
        return len(self.storage.find(self.table, filters))

    @staticmethod
    def _installment_key(alert: CollectionAlert) -> str:
        return alert.installment_id or alert.id
