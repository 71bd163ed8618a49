"""
Collection Tier ("tramo") Engine

CobranzaTramoEngine matches each active alert to the first collection tier
whose day band contains the alert's days late and executes the actions that
are due on that day. Every action runs in isolation: a failed action is
recorded and the remaining actions and alerts still run. Nothing is retried
automatically.

An action with ``day_of_execution`` fires only on that day late; an action
without one fires on the first day of its tier. Two actions are implied
rather than configured: a broken promise is marked as such, and the
policy's automatic blocking criteria trigger a client block.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
import uuid

from .audit import AuditEventType, AuditTrail
from .blocking import ClientBlockingService, should_block
from .collections import CollectionsManager
from .concurrency import ConcurrencyGuard
from .errors import ArrearsError, ConflictError, ValidationError
from .events import DomainEvent, EventDispatcher
from .installments import InstallmentRepository
from .logging_config import get_logger, log_action
from .models import (
    AlertSeverity, AuditInfo, CollectionAlert, CollectionTier, InstallmentStatus,
    NotificationChannel, PaymentPromise, TierAction, TierActionType
)
from .mora import is_overdue
from .notifications import NotificationService
from .policy import ArrearsConfiguration, ConfigurationProvider
from .promises import PromiseTracker
from .storage import StorageInterface


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ActionOutcome:
    """Result of one tier action on one alert"""
    alert_id: str
    customer_id: str
    action_type: TierActionType
    status: OutcomeStatus
    description: str = ""
    error: Optional[str] = None
    tier_name: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "customer_id": self.customer_id,
            "action_type": self.action_type.name,
            "status": self.status.value,
            "description": self.description,
            "error": self.error,
            "tier_name": self.tier_name,
        }


@dataclass
class BatchSummary:
    """Aggregated outcomes of one pass over the active alerts"""
    processed: int = 0
    actions_executed: int = 0
    escalated: int = 0
    notifications_sent: int = 0
    promises_expired: int = 0
    clients_blocked: int = 0
    failures: int = 0
    outcomes: List[ActionOutcome] = field(default_factory=list)

    def add(self, outcome: ActionOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == OutcomeStatus.FAILED:
            self.failures += 1
            return
        if outcome.status != OutcomeStatus.SUCCEEDED:
            return
        self.actions_executed += 1
        if outcome.action_type == TierActionType.ESCALATE_PRIORITY:
            self.escalated += 1
        elif outcome.action_type == TierActionType.SEND_NOTIFICATION:
            self.notifications_sent += 1
        elif outcome.action_type == TierActionType.MARK_PROMISE_BROKEN:
            self.promises_expired += 1
        elif outcome.action_type == TierActionType.BLOCK_CLIENT:
            self.clients_blocked += 1

    def to_dict(self, include_outcomes: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "processed": self.processed,
            "actions_executed": self.actions_executed,
            "escalated": self.escalated,
            "notifications_sent": self.notifications_sent,
            "promises_expired": self.promises_expired,
            "clients_blocked": self.clients_blocked,
            "failures": self.failures,
        }
        if include_outcomes:
            data["outcomes"] = [o.to_dict() for o in self.outcomes]
        return data


def build_default_tiers(config: ArrearsConfiguration) -> List[CollectionTier]:
    """
    Tiers derived from the policy thresholds.

    Preventive (optional), grace, initial arrears, medium, high and
    critical. Bands are contiguous and ordered.
    """
    tiers: List[CollectionTier] = []
    grace = config.grace_days
    first_late_day = grace + 1

    def tier(name, days_from, days_to, priority, actions, description):
        tiers.append(CollectionTier(
            id=f"default-{len(tiers) + 1}",
            name=name,
            days_from=days_from,
            days_to=days_to,
            priority=priority,
            order=len(tiers) + 1,
            actions=actions,
            description=description,
        ))

    if config.preventive_alerts_enabled:
        tier("Preventive", -config.days_before_due_alert, 0, AlertSeverity.LOW,
             [TierAction(TierActionType.SEND_NOTIFICATION, template="payment_reminder")],
             "Reminder before the due date")
    if grace > 0:
        tier("Grace", 1, grace, AlertSeverity.LOW, [], "Grace period, no fee and no action")

    medium = max(config.medium_days_threshold, first_late_day + 1)
    high = max(config.high_days_threshold, medium + 1)
    critical = max(config.critical_days_threshold, high + 1)

    tier("Initial arrears", first_late_day, medium - 1, AlertSeverity.LOW, [
        TierAction(TierActionType.GENERATE_ALERT),
        TierAction(TierActionType.CHANGE_INSTALLMENT_STATUS, target_status=InstallmentStatus.OVERDUE),
        TierAction(TierActionType.SEND_NOTIFICATION, template="overdue_notice"),
    ], "First day past grace")
    tier("Medium arrears", medium, high - 1, AlertSeverity.MEDIUM, [
        TierAction(TierActionType.ESCALATE_PRIORITY),
        TierAction(TierActionType.SEND_NOTIFICATION, template="overdue_reminder"),
    ], "Medium severity threshold")
    tier("High arrears", high, critical - 1, AlertSeverity.HIGH, [
        TierAction(TierActionType.ESCALATE_PRIORITY),
        TierAction(TierActionType.ASSIGN_MANAGER),
        TierAction(TierActionType.SEND_NOTIFICATION, template="overdue_warning"),
    ], "High severity threshold")

    critical_actions = [
        TierAction(TierActionType.ESCALATE_PRIORITY),
        TierAction(TierActionType.SEND_NOTIFICATION, template="final_notice", channel=NotificationChannel.BOTH),
    ]
    if config.auto_block_enabled:
        critical_actions.append(TierAction(
            TierActionType.BLOCK_CLIENT,
            day_of_execution=max(config.block_after_days, critical),
            block_type=config.block_type,
        ))
    tier("Critical arrears", critical, None, AlertSeverity.CRITICAL, critical_actions,
         "Critical severity threshold")
    return tiers


def select_tier(tiers: Sequence[CollectionTier], days_late: int) -> Optional[CollectionTier]:
    """First active tier, in the given order, whose band contains ``days_late``"""
    for tier in tiers:
        if tier.active and tier.contains(days_late):
            return tier
    return None


def action_fires(action: TierAction, tier: CollectionTier, days_late: int) -> bool:
    if not action.active:
        return False
    if action.day_of_execution is not None:
        return days_late == action.day_of_execution
    return days_late == tier.days_from


def determine_actions(
    tier: CollectionTier,
    alert: CollectionAlert,
    config: ArrearsConfiguration,
    today: date,
    active_promise: Optional[PaymentPromise] = None
) -> List[TierAction]:
    """Actions due for ``alert`` today, in declaration order, plus implied ones"""
    actions = [a for a in tier.actions if action_fires(a, tier, alert.days_late)]
    types = {a.action_type for a in actions}

    if (active_promise is not None and active_promise.is_active and today > active_promise.deadline
            and TierActionType.MARK_PROMISE_BROKEN not in types):
        actions.append(TierAction(TierActionType.MARK_PROMISE_BROKEN))
    if should_block(alert, config) and TierActionType.BLOCK_CLIENT not in types:
        actions.append(TierAction(TierActionType.BLOCK_CLIENT, block_type=config.block_type))
    return actions


def validate_tiers(tiers: Sequence[CollectionTier]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for index, tier in enumerate(tiers):
        prefix = f"tiers[{index}]"
        if not tier.name:
            errors[f"{prefix}.name"] = "required"
        if tier.days_to is not None and tier.days_to < tier.days_from:
            errors[f"{prefix}.days_to"] = "must not be before days_from"
        for position, action in enumerate(tier.actions):
            if action.day_of_execution is not None and not tier.contains(action.day_of_execution):
                errors[f"{prefix}.actions[{position}].day_of_execution"] = "must fall inside the tier"
    return errors


class CobranzaTramoEngine:
    """Executes collection tier actions for overdue alerts"""

    def __init__(
        self,
        storage: StorageInterface,
        collections: CollectionsManager,
        promises: PromiseTracker,
        notifications: NotificationService,
        installments: InstallmentRepository,
        config_provider: ConfigurationProvider,
        blocking: Optional[ClientBlockingService] = None,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        max_workers: int = 1
    ):
        self.storage = storage
        self.collections = collections
        self.promises = promises
        self.notifications = notifications
        self.installments = installments
        self.config_provider = config_provider
        self.blocking = blocking
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.events = events
        self.max_workers = max(1, max_workers)
        self.table = "collection_tiers"
        self.logger = get_logger("arrears.tiers")

        self._handlers = {
            TierActionType.GENERATE_ALERT: self._generate_alert,
            TierActionType.SEND_NOTIFICATION: self._send_notification,
            TierActionType.CHANGE_INSTALLMENT_STATUS: self._change_installment_status,
            TierActionType.ESCALATE_PRIORITY: self._escalate_priority,
            TierActionType.BLOCK_CLIENT: self._block_client,
            TierActionType.RECORD_NOTE: self._record_note,
            TierActionType.ASSIGN_MANAGER: self._assign_manager,
            TierActionType.MARK_PROMISE_BROKEN: self._mark_promise_broken,
        }

    # Tier configuration

    def get_tiers(self, config: Optional[ArrearsConfiguration] = None) -> List[CollectionTier]:
        """Persisted tiers in configured order, or the policy defaults when none are stored"""
        tiers = [CollectionTier.from_dict(d) for d in self.storage.load_all(self.table)]
        if not tiers:
            return build_default_tiers(config or self.config_provider.get())
        tiers.sort(key=lambda t: t.order)
        return tiers

    def save_tiers(self, tiers: List[CollectionTier], user_id: str = "SYSTEM") -> List[CollectionTier]:
        """Replace the configured tiers as a whole"""
        errors = validate_tiers(tiers)
        if errors:
            raise ValidationError("Invalid collection tiers", errors)

        with self.storage.atomic():
            self.storage.clear_table(self.table)
            for position, tier in enumerate(tiers, start=1):
                tier.id = tier.id or str(uuid.uuid4())
                tier.order = tier.order or position
                tier.audit = AuditInfo(created_by=user_id)
                tier.version = 0
                self.guard.insert(self.table, tier)

        if self.audit:
            self.audit.log_event(
                AuditEventType.TIERS_UPDATED,
                entity_type="collection_tiers",
                entity_id=self.table,
                metadata={"tiers": [t.name for t in tiers]},
                user_id=user_id
            )
        return self.get_tiers()

    # Processing

    def process_tier(
        self,
        alert: CollectionAlert,
        tiers: Sequence[CollectionTier],
        config: ArrearsConfiguration,
        today: date,
        now: Optional[datetime] = None
    ) -> List[ActionOutcome]:
        """
        Execute the actions due today for ``alert``.

        Returns one outcome per executed, skipped or failed action. An
        inactive alert or one outside every tier yields no outcomes.
        """
        now = now or datetime.now()
        if not alert.is_active:
            return []
        tier = select_tier(tiers, alert.days_late)
        if tier is None:
            self.logger.debug(f"Alert {alert.id} at {alert.days_late} days matches no tier")
            return []

        promise = self.promises.get_active_promise(alert.id)
        outcomes = []
        for action in determine_actions(tier, alert, config, today, promise):
            try:
                status, description = self._handlers[action.action_type](alert, action, tier, config, today, now)
                outcome = ActionOutcome(alert.id, alert.customer_id, action.action_type, status,
                                        description, tier_name=tier.name)
            except ArrearsError as e:
                self.logger.error(f"{action.action_type.name} failed for alert {alert.id}: {e}")
                outcome = ActionOutcome(alert.id, alert.customer_id, action.action_type, OutcomeStatus.FAILED,
                                        f"{action.action_type.name} failed", error=str(e), tier_name=tier.name)
                alert = self._stored_copy(alert, force=True)
            else:
                alert = self._stored_copy(alert)
            log_action(
                self.logger, "debug", outcome.description, action=action.action_type.name,
                resource=f"alert:{alert.id}", extra={"status": outcome.status.name, "tier": tier.name}
            )
            outcomes.append(outcome)
        return outcomes

    def _stored_copy(self, alert: CollectionAlert, force: bool = False) -> CollectionAlert:
        """
        The persisted alert when ``alert`` is behind storage or, with
        ``force``, may hold changes that were never committed. An alert
        that is not stored yet is returned as is.
        """
        stored = self.collections.get_alert(alert.id)
        if stored is None:
            return alert
        if force or stored.version != alert.version:
            return stored
        return alert

    def process_alerts(
        self,
        alerts: Optional[Sequence[CollectionAlert]] = None,
        config: Optional[ArrearsConfiguration] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
        tiers: Optional[Sequence[CollectionTier]] = None
    ) -> BatchSummary:
        """
        Run the tier engine over every active alert.

        Alerts are independent and may run on a thread pool; their order
        is not guaranteed. With automation disabled nothing runs.
        """
        config = config or self.config_provider.get()
        summary = BatchSummary()
        if not config.automation_enabled:
            self.logger.info("Collection automation disabled, tier processing skipped")
            return summary

        today = today or date.today()
        now = now or datetime.now()
        tiers = list(tiers) if tiers is not None else self.get_tiers(config)
        alerts = list(alerts) if alerts is not None else self.collections.get_active_alerts()

        def run(alert: CollectionAlert) -> List[ActionOutcome]:
            try:
                return self.process_tier(alert, tiers, config, today, now)
            except ArrearsError as e:
                self.logger.error(f"Tier processing failed for alert {alert.id}: {e}")
                return [ActionOutcome(alert.id, alert.customer_id, TierActionType.GENERATE_ALERT,
                                      OutcomeStatus.FAILED, "alert could not be processed", error=str(e))]

        if self.max_workers > 1 and len(alerts) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                results = list(executor.map(run, alerts))
        else:
            results = [run(alert) for alert in alerts]

        for outcomes in results:
            summary.processed += 1
            for outcome in outcomes:
                summary.add(outcome)

        self.logger.info(
            f"Tier batch: {summary.processed} alerts, {summary.actions_executed} actions, "
            f"{summary.escalated} escalated, {summary.notifications_sent} notified, "
            f"{summary.promises_expired} promises expired, {summary.clients_blocked} blocked, "
            f"{summary.failures} failures"
        )
        return summary

    # Action handlers: each returns (status, description)

    def _generate_alert(self, alert, action, tier, config, today, now):
        if self.collections.get_alert(alert.id) is not None:
            return OutcomeStatus.SKIPPED, "alert already active"
        existing = self.collections.get_active_alert_for_credit(alert.credit_id)
        if existing is not None:
            return OutcomeStatus.SKIPPED, f"credit already has active alert {existing.id}"
        alert.severity = AlertSeverity(max(alert.severity.value, tier.priority.value))
        self.guard.insert(self.collections.alerts_table, alert)
        if self.audit:
            self.audit.log_event(AuditEventType.ALERT_CREATED, "collection_alert", alert.id,
                                 {"tier": tier.name, "severity": alert.severity}, "SYSTEM")
        if self.events:
            self.events.emit(DomainEvent.ALERT_CREATED, "collection_alert", alert.id,
                             credit_id=alert.credit_id, customer_id=alert.customer_id)
        return OutcomeStatus.SUCCEEDED, "alert created"

    def _send_notification(self, alert, action, tier, config, today, now):
        result = self.notifications.notify(
            alert, config, now,
            channel=action.channel,
            template=action.template or "overdue_reminder",
            payload={"tier": tier.name}
        )
        if result.skipped:
            return OutcomeStatus.SKIPPED, result.skipped_reason
        if not result.sent:
            return OutcomeStatus.FAILED, f"send failed: {result.error}"

        if self.events:
            self.events.emit(DomainEvent.NOTIFICATION_SENT, "collection_alert", alert.id,
                             customer_id=alert.customer_id, channel=result.channel.name)
        if self.audit:
            self.audit.log_event(AuditEventType.NOTIFICATION_SENT, "collection_alert", alert.id,
                                 {"channel": result.channel, "template": action.template}, "SYSTEM")
        self._count_delivery(alert, now)
        return OutcomeStatus.SUCCEEDED, f"sent via {result.channel.name}"

    def _count_delivery(self, alert: CollectionAlert, now: datetime) -> None:
        """Bump the alert's notification counter, retrying once on the stored copy"""
        current = alert
        for attempt in (1, 2):
            current.notifications_sent += 1
            current.last_notification_at = now
            current.audit.touch("SYSTEM")
            try:
                self.guard.commit(self.collections.alerts_table, current, current.version)
                return
            except ConflictError as e:
                current = self.collections.get_alert(alert.id)
                if current is None or attempt == 2:
                    self.logger.warning(f"Notification counter not updated for alert {alert.id}: {e}")
                    return

    def _change_installment_status(self, alert, action, tier, config, today, now):
        if not config.auto_change_installment_status:
            return OutcomeStatus.SKIPPED, "automatic status change disabled"
        target = action.target_status or InstallmentStatus.OVERDUE
        changed = 0
        for installment in self.installments.get_installments_for_credit(alert.credit_id):
            if installment.status != InstallmentStatus.PENDING:
                continue
            if not is_overdue(installment, config.grace_days, today):
                continue
            self.installments.change_status(installment.id, target, installment.version)
            changed += 1
        if not changed:
            return OutcomeStatus.SKIPPED, "no pending overdue installments"
        return OutcomeStatus.SUCCEEDED, f"{changed} installments set to {target.name}"

    def _escalate_priority(self, alert, action, tier, config, today, now):
        if alert.severity.value >= tier.priority.value:
            return OutcomeStatus.SKIPPED, f"already at {alert.severity.name}"
        reason = f"tier {tier.name} at {alert.days_late} days late"
        self.collections.escalate(alert, reason, target=tier.priority)
        alert.audit.touch("SYSTEM")
        self.guard.commit(self.collections.alerts_table, alert, alert.version)
        self.collections.after_escalation(alert, reason)
        return OutcomeStatus.SUCCEEDED, f"severity raised to {alert.severity.name}"

    def _block_client(self, alert, action, tier, config, today, now):
        if self.blocking is None:
            return OutcomeStatus.SKIPPED, "no blocking service configured"
        if not config.auto_block_enabled:
            return OutcomeStatus.SKIPPED, "automatic blocking disabled"
        block_type = action.block_type or config.block_type
        if self.blocking.is_blocked(alert.customer_id, block_type):
            return OutcomeStatus.SKIPPED, "client already blocked"
        self.blocking.block(
            alert.customer_id, block_type,
            reason=f"{alert.days_late} days late on credit {alert.credit_id}",
            alert_id=alert.id
        )
        return OutcomeStatus.SUCCEEDED, f"client blocked ({block_type.name})"

    def _record_note(self, alert, action, tier, config, today, now):
        text = action.note or f"Tier {tier.name} reached at {alert.days_late} days late"
        note = self.collections.new_note(alert, text)
        self.guard.insert(self.collections.contacts_table, note)
        return OutcomeStatus.SUCCEEDED, "note recorded"

    def _assign_manager(self, alert, action, tier, config, today, now):
        if not action.manager_id:
            return OutcomeStatus.SKIPPED, "no manager configured for the tier"
        if alert.assigned_manager_id == action.manager_id:
            return OutcomeStatus.SKIPPED, "manager already assigned"
        self.collections.apply_assignment(alert, action.manager_id)
        self.guard.commit(self.collections.alerts_table, alert, alert.version)
        self.collections.after_assignment(alert)
        return OutcomeStatus.SUCCEEDED, f"assigned to {action.manager_id}"

    def _mark_promise_broken(self, alert, action, tier, config, today, now):
        promise = self.promises.get_active_promise(alert.id)
        if promise is None:
            return OutcomeStatus.SKIPPED, "no active promise"
        if today <= promise.deadline:
            return OutcomeStatus.SKIPPED, f"promise deadline {promise.deadline.isoformat()} not passed"
        self.promises.expire_promise(promise, today, alert)
        return OutcomeStatus.SUCCEEDED, f"promise {promise.id} expired"
