"""
Collections Management Module

Collection alerts (one active alert per overdue credit), their manual
resolution and assignment, and the contact log worked by collection
managers. Alerts are created and refreshed from the fee batch; every change
goes through the concurrency guard.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .audit import AuditEventType, AuditTrail
from .concurrency import Change, ConcurrencyGuard
from .errors import ArrearsError, EntityNotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher
from .installments import InstallmentRepository
from .logging_config import get_logger
from .models import (
    AlertSeverity, AlertStatus, AuditInfo, CollectionAlert, ContactOutcome,
    ContactRecord, ContactType, ZERO, to_money, utc_now
)
from .mora import FeeBatchResult, FeeDetail, classify_severity, is_overdue
from .policy import ArrearsConfiguration
from .storage import StorageInterface


@dataclass
class AlertSyncResult:
    """Outcome of refreshing alerts from a fee batch"""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    resolved: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "resolved": self.resolved,
            "failures": [{"credit_id": c, "error": e} for c, e in self.failures],
        }


class CollectionsManager:
    """Manager for collection alerts and customer contacts"""

    def __init__(
        self,
        storage: StorageInterface,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        installments: Optional[InstallmentRepository] = None
    ):
        self.storage = storage
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.events = events
        self.installments = installments

        self.alerts_table = "collection_alerts"
        self.contacts_table = "contact_records"
        self.logger = get_logger("arrears.collections")

    # Alert synchronisation

    def sync_alerts(
        self,
        fees: FeeBatchResult,
        config: ArrearsConfiguration,
        today: Optional[date] = None
    ) -> AlertSyncResult:
        """
        Create or refresh one alert per credit with overdue installments.

        Severity is re-classified from the current thresholds but never
        lowered below a level already reached through escalation. A failure
        on one credit is recorded and the remaining credits are processed.
        """
        today = today or fees.as_of
        result = AlertSyncResult()

        overdue_by_credit: Dict[str, List[FeeDetail]] = {}
        upcoming_by_credit: Dict[str, List[FeeDetail]] = {}
        for detail in fees.details:
            if detail.is_overdue:
                overdue_by_credit.setdefault(detail.credit_id, []).append(detail)
            elif config.preventive_alerts_enabled and detail.days_late == 0:
                days_to_due = (detail.due_date - today).days
                if 0 <= days_to_due <= config.days_before_due_alert:
                    upcoming_by_credit.setdefault(detail.credit_id, []).append(detail)

        for credit_id, details in overdue_by_credit.items():
            try:
                outcome = self._sync_overdue_credit(credit_id, details, config, today)
                setattr(result, outcome, getattr(result, outcome) + 1)
            except ArrearsError as e:
                self.logger.error(f"Alert sync failed for credit {credit_id}: {e}")
                result.failures.append((credit_id, str(e)))

        for credit_id, details in upcoming_by_credit.items():
            if credit_id in overdue_by_credit:
                continue
            try:
                if self._sync_preventive_credit(credit_id, details, today):
                    result.created += 1
                else:
                    result.unchanged += 1
            except ArrearsError as e:
                self.logger.error(f"Preventive alert failed for credit {credit_id}: {e}")
                result.failures.append((credit_id, str(e)))

        if self.installments:
            for alert in self.get_active_alerts():
                if alert.credit_id in overdue_by_credit:
                    continue
                try:
                    if self._resolve_if_cleared(alert, config, today):
                        result.resolved += 1
                except ArrearsError as e:
                    self.logger.error(f"Clearing check failed for alert {alert.id}: {e}")
                    result.failures.append((alert.credit_id, str(e)))

        self.logger.info(
            f"Alert sync: {result.created} created, {result.updated} updated, "
            f"{result.resolved} resolved, {len(result.failures)} failed"
        )
        return result

    def _sync_overdue_credit(
        self,
        credit_id: str,
        details: List[FeeDetail],
        config: ArrearsConfiguration,
        today: date
    ) -> str:
        oldest = max(details, key=lambda d: d.days_late)
        overdue_amount = to_money(sum((d.outstanding_balance for d in details), ZERO))
        arrears_amount = to_money(sum((d.final_fee for d in details), ZERO))
        classified = classify_severity(oldest.days_late, overdue_amount, config)

        alert = self.get_active_alert_for_credit(credit_id)
        if alert is None:
            alert = CollectionAlert(
                id=str(uuid.uuid4()),
                credit_id=credit_id,
                customer_id=oldest.customer_id,
                installment_id=oldest.installment_id,
                days_late=oldest.days_late,
                overdue_amount=overdue_amount,
                arrears_amount=arrears_amount,
                overdue_installments=len(details),
                severity=classified,
                alert_date=today,
            )
            self.guard.insert(self.alerts_table, alert)
            self._log(AuditEventType.ALERT_CREATED, alert, {"severity": alert.severity, "days_late": alert.days_late})
            self._emit(DomainEvent.ALERT_CREATED, alert)
            return "created"

        severity = AlertSeverity(max(alert.severity.value, classified.value))
        snapshot = (oldest.installment_id, oldest.days_late, overdue_amount, arrears_amount, len(details), severity)
        if snapshot == (alert.installment_id, alert.days_late, alert.overdue_amount,
                        alert.arrears_amount, alert.overdue_installments, alert.severity):
            return "unchanged"

        alert.installment_id = oldest.installment_id
        alert.days_late = oldest.days_late
        alert.overdue_amount = overdue_amount
        alert.arrears_amount = arrears_amount
        alert.overdue_installments = len(details)
        alert.severity = severity
        alert.audit.touch("SYSTEM")
        self.guard.commit(self.alerts_table, alert, alert.version)
        return "updated"

    def _sync_preventive_credit(self, credit_id: str, details: List[FeeDetail], today: date) -> bool:
        if self.get_active_alert_for_credit(credit_id) is not None:
            return False
        nearest = min(details, key=lambda d: d.due_date)
        alert = CollectionAlert(
            id=str(uuid.uuid4()),
            credit_id=credit_id,
            customer_id=nearest.customer_id,
            installment_id=nearest.installment_id,
            days_late=-(nearest.due_date - today).days,
            overdue_amount=to_money(sum((d.outstanding_balance for d in details), ZERO)),
            overdue_installments=0,
            severity=AlertSeverity.LOW,
            alert_date=today,
        )
        alert.add_observation(f"Preventive alert: installment due on {nearest.due_date.isoformat()}")
        self.guard.insert(self.alerts_table, alert)
        self._log(AuditEventType.ALERT_CREATED, alert, {"preventive": True})
        self._emit(DomainEvent.ALERT_CREATED, alert)
        return True

    def _resolve_if_cleared(self, alert: CollectionAlert, config: ArrearsConfiguration, today: date) -> bool:
        open_installments = [i for i in self.installments.get_installments_for_credit(alert.credit_id) if i.is_open]
        if alert.days_late <= 0:
            # Preventive alerts last while their installment is unpaid
            if any(i.id == alert.installment_id for i in open_installments):
                return False
        elif any(is_overdue(i, config.grace_days, today) for i in open_installments):
            return False
        self._transition_to_resolved(alert, "Overdue installments settled", "SYSTEM")
        self.guard.commit(self.alerts_table, alert, alert.version)
        self._after_resolution(alert, "SYSTEM")
        return True

    # Queries

    def get_alert(self, alert_id: str) -> Optional[CollectionAlert]:
        data = self.storage.load(self.alerts_table, alert_id)
        return CollectionAlert.from_dict(data) if data else None

    def require_alert(self, alert_id: str) -> CollectionAlert:
        alert = self.get_alert(alert_id)
        if alert is None:
            raise EntityNotFoundError("CollectionAlert", alert_id)
        return alert

    def get_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        manager_id: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> List[CollectionAlert]:
        """Alerts matching the filters, most severe and oldest first"""
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = status.value
        if severity:
            filters["severity"] = severity.value
        if manager_id:
            filters["assigned_manager_id"] = manager_id
        if customer_id:
            filters["customer_id"] = customer_id

        alerts = [CollectionAlert.from_dict(d) for d in self.storage.find(self.alerts_table, filters)]
        alerts.sort(key=lambda a: (-a.severity.value, -a.days_late, a.alert_date))
        return alerts

    def get_active_alerts(self) -> List[CollectionAlert]:
        return [a for a in self.get_alerts() if a.is_active]

    def get_active_alert_for_credit(self, credit_id: str) -> Optional[CollectionAlert]:
        for data in self.storage.find(self.alerts_table, {"credit_id": credit_id}):
            alert = CollectionAlert.from_dict(data)
            if alert.is_active:
                return alert
        return None

    # Manual operations

    def resolve_alert(
        self,
        alert_id: str,
        expected_version: int,
        reason: str,
        user_id: str
    ) -> CollectionAlert:
        """
        Mark an alert resolved. Resolving an already resolved alert is a no-op.
        """
        alert = self.require_alert(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            return alert
        if alert.status == AlertStatus.IGNORED:
            raise ValidationError(f"Alert {alert_id} was ignored", {"status": "alert is ignored"})
        if not reason or not reason.strip():
            raise ValidationError("Resolution reason is required", {"reason": "required"})

        self._transition_to_resolved(alert, reason, user_id)
        self.guard.commit(self.alerts_table, alert, expected_version)
        self._after_resolution(alert, user_id)
        return alert

    def ignore_alert(self, alert_id: str, expected_version: int, reason: str, user_id: str) -> CollectionAlert:
        alert = self.require_alert(alert_id)
        self._require_active(alert)
        alert.status = AlertStatus.IGNORED
        alert.resolution_reason = reason
        alert.resolved_by = user_id
        alert.resolved_at = utc_now()
        alert.add_observation(f"Ignored by {user_id}: {reason}")
        alert.audit.touch(user_id)
        self.guard.commit(self.alerts_table, alert, expected_version)
        self._log(AuditEventType.ALERT_IGNORED, alert, {"reason": reason}, user_id)
        return alert

    def assign_manager(
        self,
        alert_id: str,
        manager_id: str,
        expected_version: int,
        user_id: str
    ) -> CollectionAlert:
        """Set the collection manager responsible for an alert"""
        if not manager_id:
            raise ValidationError("Manager is required", {"manager_id": "required"})
        alert = self.require_alert(alert_id)
        self._require_active(alert)
        self._apply_assignment(alert, manager_id, user_id)
        self.guard.commit(self.alerts_table, alert, expected_version)
        self.after_assignment(alert, user_id)
        return alert

    def record_contact(
        self,
        alert_id: str,
        manager_id: str,
        contact_type: ContactType,
        outcome: Optional[ContactOutcome] = None,
        notes: str = "",
        expected_version: Optional[int] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        contact_at: Optional[datetime] = None
    ) -> ContactRecord:
        """
        Append a contact attempt to an active alert.

        A pending alert moves to in-progress and gets the contacting manager
        if it has none. Both writes commit together. When ``expected_version``
        is given the alert is always written, so a stale version rejects the
        contact even if the alert itself does not change.
        """
        errors: Dict[str, str] = {}
        if not manager_id:
            errors["manager_id"] = "required"
        if outcome is None and contact_type != ContactType.INTERNAL_NOTE:
            errors["outcome"] = "required for customer contacts"
        if errors:
            raise ValidationError("Invalid contact", errors)

        alert = self.require_alert(alert_id)
        self._require_active(alert)
        version = alert.version if expected_version is None else expected_version

        contact = self._new_contact(alert, manager_id, contact_type, outcome, notes, contact_at)
        contact.phone = phone
        contact.email = email

        alert_changed = self._mark_in_progress(alert, manager_id)
        changes = [Change(self.contacts_table, contact, None)]
        if alert_changed or expected_version is not None:
            alert.audit.touch(manager_id)
            changes.append(Change(self.alerts_table, alert, version))
        self.guard.commit_all(changes)

        self._log(AuditEventType.CONTACT_RECORDED, alert, {
            "contact_id": contact.id,
            "contact_type": contact_type,
            "outcome": outcome,
        }, manager_id)
        return contact

    def get_contacts(self, alert_id: str) -> List[ContactRecord]:
        contacts = [ContactRecord.from_dict(d) for d in self.storage.find(self.contacts_table, {"alert_id": alert_id})]
        contacts.sort(key=lambda c: c.contact_at)
        return contacts

    def get_collection_summary(self) -> Dict[str, Any]:
        """Portfolio-level view of the active alerts"""
        active = self.get_active_alerts()
        summary: Dict[str, Any] = {
            "total_alerts": len(active),
            "alerts_by_severity": {s.name: 0 for s in AlertSeverity},
            "alerts_by_status": {s.name: 0 for s in (AlertStatus.PENDING, AlertStatus.IN_PROGRESS)},
            "total_overdue_amount": ZERO,
            "total_arrears_amount": ZERO,
            "assigned_alerts": 0,
            "unassigned_alerts": 0,
        }
        for alert in active:
            summary["alerts_by_severity"][alert.severity.name] += 1
            summary["alerts_by_status"][alert.status.name] += 1
            summary["total_overdue_amount"] += alert.overdue_amount
            summary["total_arrears_amount"] += alert.arrears_amount
            if alert.assigned_manager_id:
                summary["assigned_alerts"] += 1
            else:
                summary["unassigned_alerts"] += 1
        summary["total_overdue_amount"] = to_money(summary["total_overdue_amount"])
        summary["total_arrears_amount"] = to_money(summary["total_arrears_amount"])
        return summary

    # Building blocks shared with the promise, agreement and tier engines

    def new_note(self, alert: CollectionAlert, text: str, user_id: str = "SYSTEM",
                 outcome: Optional[ContactOutcome] = None) -> ContactRecord:
        """Automatic internal note for ``alert``; the caller commits it"""
        contact = self._new_contact(alert, user_id, ContactType.INTERNAL_NOTE, outcome, text, None)
        contact.automatic = True
        return contact

    def new_contact(self, alert: CollectionAlert, manager_id: str, contact_type: ContactType,
                    outcome: Optional[ContactOutcome], notes: str = "") -> ContactRecord:
        return self._new_contact(alert, manager_id, contact_type, outcome, notes, None)

    def escalate(self, alert: CollectionAlert, reason: str, target: Optional[AlertSeverity] = None) -> bool:
        """
        Raise severity in memory, one level or straight to ``target``.
        Returns False when that would not raise it.
        """
        raised = alert.severity.escalated() if target is None else target
        if raised.value <= alert.severity.value:
            return False
        previous = alert.severity
        alert.severity = raised
        alert.add_observation(f"Escalated {previous.name} -> {alert.severity.name}: {reason}")
        return True

    def mark_in_progress(self, alert: CollectionAlert, manager_id: str) -> bool:
        return self._mark_in_progress(alert, manager_id)

    def apply_assignment(self, alert: CollectionAlert, manager_id: str, user_id: str = "SYSTEM") -> None:
        self._apply_assignment(alert, manager_id, user_id)

    def after_assignment(self, alert: CollectionAlert, user_id: str = "SYSTEM") -> None:
        self._log(AuditEventType.ALERT_ASSIGNED, alert, {"manager_id": alert.assigned_manager_id}, user_id)

    def mark_resolved(self, alert: CollectionAlert, reason: str, user_id: str) -> None:
        """Resolve in memory; the caller commits and then calls after_resolution"""
        self._transition_to_resolved(alert, reason, user_id)

    def after_resolution(self, alert: CollectionAlert, user_id: str) -> None:
        self._after_resolution(alert, user_id)

    def after_escalation(self, alert: CollectionAlert, reason: str, user_id: str = "SYSTEM") -> None:
        self._log(AuditEventType.ALERT_ESCALATED, alert, {"severity": alert.severity, "reason": reason}, user_id)
        self._emit(DomainEvent.ALERT_ESCALATED, alert, reason=reason)

    # Private helpers

    def _new_contact(
        self,
        alert: CollectionAlert,
        manager_id: str,
        contact_type: ContactType,
        outcome: Optional[ContactOutcome],
        notes: str,
        contact_at: Optional[datetime]
    ) -> ContactRecord:
        return ContactRecord(
            id=str(uuid.uuid4()),
            alert_id=alert.id,
            credit_id=alert.credit_id,
            customer_id=alert.customer_id,
            manager_id=manager_id,
            contact_type=contact_type,
            outcome=outcome,
            contact_at=contact_at or utc_now(),
            notes=notes,
            audit=AuditInfo(created_by=manager_id),
        )

    @staticmethod
    def _require_active(alert: CollectionAlert) -> None:
        if not alert.is_active:
            raise ValidationError(
                f"Alert {alert.id} is {alert.status.name} and can no longer be worked",
                {"status": "alert is closed"}
            )

    def _apply_assignment(self, alert: CollectionAlert, manager_id: str, user_id: str) -> None:
        if alert.assigned_manager_id != manager_id:
            alert.add_observation(f"Assigned to {manager_id} by {user_id}")
        alert.assigned_manager_id = manager_id
        alert.assigned_at = utc_now()
        alert.audit.touch(user_id)

    def _mark_in_progress(self, alert: CollectionAlert, manager_id: str) -> bool:
        changed = False
        if alert.status == AlertStatus.PENDING:
            alert.status = AlertStatus.IN_PROGRESS
            changed = True
        if not alert.assigned_manager_id and manager_id:
            alert.assigned_manager_id = manager_id
            alert.assigned_at = utc_now()
            changed = True
        return changed

    @staticmethod
    def _transition_to_resolved(alert: CollectionAlert, reason: str, user_id: str) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = utc_now()
        alert.resolved_by = user_id
        alert.resolution_reason = reason
        alert.add_observation(f"Resolved by {user_id}: {reason}")
        alert.audit.touch(user_id)

    def _after_resolution(self, alert: CollectionAlert, user_id: str) -> None:
        self._log(AuditEventType.ALERT_RESOLVED, alert, {"reason": alert.resolution_reason}, user_id)
        self._emit(DomainEvent.ALERT_RESOLVED, alert, reason=alert.resolution_reason)
        self.logger.info(f"Alert {alert.id} resolved by {user_id}")

    def _log(self, event_type: AuditEventType, alert: CollectionAlert,
             metadata: Dict[str, Any], user_id: str = "SYSTEM") -> None:
        if self.audit:
            metadata = dict(metadata, version=alert.version, credit_id=alert.credit_id)
            self.audit.log_event(event_type, "collection_alert", alert.id, metadata, user_id)

    def _emit(self, event_type: DomainEvent, alert: CollectionAlert, **data: Any) -> None:
        if self.events:
            self.events.emit(
                event_type, "collection_alert", alert.id,
                credit_id=alert.credit_id, customer_id=alert.customer_id,
                severity=alert.severity.name, **data
            )
