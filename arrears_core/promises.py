"""
Payment Promise Module

PromiseTracker runs the promise-to-pay lifecycle:

    (none) -> ACTIVE -> FULFILLED
                     -> EXPIRED

Both outcomes are terminal. Registration, fulfilment and expiry each commit
the promise, its contact record and the alert as one unit.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .audit import AuditEventType, AuditTrail
from .collections import CollectionsManager
from .concurrency import Change, ConcurrencyGuard
from .errors import ArrearsError, EntityNotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher
from .logging_config import get_logger
from .models import (
    AuditInfo, CollectionAlert, ContactOutcome, ContactType, PaymentPromise,
    PromiseStatus, to_money, utc_now
)
from .policy import ArrearsConfiguration, ConfigurationProvider
from .storage import StorageInterface


@dataclass
class PromiseExpiryResult:
    """Promises expired by one evaluation pass"""
    expired: List[str] = field(default_factory=list)
    escalated: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": len(self.expired),
            "escalated": self.escalated,
            "promise_ids": list(self.expired),
            "failures": [{"promise_id": p, "error": e} for p, e in self.failures],
        }


class PromiseTracker:
    """Registers, fulfils and expires payment promises"""

    def __init__(
        self,
        storage: StorageInterface,
        collections: CollectionsManager,
        config_provider: ConfigurationProvider,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.collections = collections
        self.config_provider = config_provider
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.events = events
        self.table = "payment_promises"
        self.logger = get_logger("arrears.promises")

    def register_promise(
        self,
        alert_id: str,
        expected_version: int,
        promised_date: date,
        amount: Decimal,
        manager_id: str,
        contact_type: ContactType = ContactType.PHONE_CALL,
        notes: str = "",
        today: Optional[date] = None,
        config: Optional[ArrearsConfiguration] = None
    ) -> PaymentPromise:
        """
        Record a customer's promise to pay ``amount`` by ``promised_date``.

        Args:
            alert_id: Alert the promise was obtained on
            expected_version: Alert version read by the caller
            promised_date: Date the customer promised to pay by
            amount: Promised amount, must be positive
            manager_id: Collection manager who obtained the promise
            contact_type: Channel of the contact that produced the promise

        Returns:
            The ACTIVE promise

        Raises:
            ValidationError: invalid input, closed alert or an alert that
                already has an active promise
            ConflictError: the alert changed since ``expected_version``
        """
        today = today or date.today()
        config = config or self.config_provider.get()

        errors: Dict[str, str] = {}
        if not manager_id:
            errors["manager_id"] = "required"
        if amount is None or amount <= 0:
            errors["amount"] = "must be greater than zero"
        if promised_date is None:
            errors["promised_date"] = "required"
        elif promised_date < today:
            errors["promised_date"] = "must not be in the past"
        if errors:
            raise ValidationError("Invalid payment promise", errors)

        alert = self.collections.require_alert(alert_id)
        if not alert.is_active:
            raise ValidationError(
                f"Alert {alert_id} is {alert.status.name}",
                {"alert_id": "alert is closed"}
            )
        if self.get_active_promise(alert_id) is not None:
            raise ValidationError(
                f"Alert {alert_id} already has an active promise",
                {"alert_id": "an active promise already exists"}
            )

        amount = to_money(amount)
        contact = self.collections.new_contact(
            alert, manager_id, contact_type, ContactOutcome.PROMISE,
            notes or f"Promise to pay {amount} by {promised_date.isoformat()}"
        )
        promise = PaymentPromise(
            id=str(uuid.uuid4()),
            alert_id=alert.id,
            credit_id=alert.credit_id,
            customer_id=alert.customer_id,
            manager_id=manager_id,
            promised_date=promised_date,
            promised_amount=amount,
            deadline=promised_date + timedelta(days=config.days_to_fulfill_promise),
            contact_id=contact.id,
            notes=notes,
            audit=AuditInfo(created_by=manager_id),
        )
        contact.promise_id = promise.id

        self.collections.mark_in_progress(alert, manager_id)
        alert.add_observation(f"Payment promise of {amount} for {promised_date.isoformat()}")
        alert.audit.touch(manager_id)

        self.guard.commit_all([
            Change(self.collections.contacts_table, contact, None),
            Change(self.table, promise, None),
            Change(self.collections.alerts_table, alert, expected_version),
        ])

        self._log(AuditEventType.PROMISE_REGISTERED, promise, {
            "amount": amount,
            "promised_date": promised_date,
            "deadline": promise.deadline,
        }, manager_id)
        self._emit(DomainEvent.PROMISE_REGISTERED, promise, deadline=promise.deadline.isoformat())
        self.logger.info(f"Promise {promise.id} registered on alert {alert.id}, deadline {promise.deadline}")
        return promise

    def mark_fulfilled(
        self,
        promise_id: str,
        paid_amount: Optional[Decimal] = None,
        expected_version: Optional[int] = None,
        user_id: str = "SYSTEM"
    ) -> PaymentPromise:
        """
        Close an ACTIVE promise as fulfilled.

        Called by payment posting. A payment that covers the promised amount
        (or an unspecified amount) also resolves the alert.
        """
        promise = self.require_promise(promise_id)
        if not promise.is_active:
            raise ValidationError(
                f"Promise {promise_id} is {promise.status.name} and cannot be fulfilled",
                {"status": "promise is closed"}
            )
        if paid_amount is not None and paid_amount <= 0:
            raise ValidationError("Invalid payment", {"paid_amount": "must be greater than zero"})

        version = promise.version if expected_version is None else expected_version
        promise.status = PromiseStatus.FULFILLED
        promise.paid_amount = to_money(paid_amount) if paid_amount is not None else promise.promised_amount
        promise.fulfilled_at = utc_now()
        promise.audit.touch(user_id)
        changes = [Change(self.table, promise, version)]

        alert = self.collections.get_alert(promise.alert_id)
        resolve = alert is not None and alert.is_active and promise.paid_amount >= promise.promised_amount
        if resolve:
            note = self.collections.new_note(
                alert, f"Promise fulfilled with payment of {promise.paid_amount}", user_id, ContactOutcome.PAID
            )
            self.collections.mark_resolved(alert, "Payment promise fulfilled", user_id)
            changes.append(Change(self.collections.contacts_table, note, None))
            changes.append(Change(self.collections.alerts_table, alert, alert.version))

        self.guard.commit_all(changes)

        self._log(AuditEventType.PROMISE_FULFILLED, promise, {"paid_amount": promise.paid_amount}, user_id)
        self._emit(DomainEvent.PROMISE_FULFILLED, promise, paid_amount=str(promise.paid_amount))
        if resolve:
            self.collections.after_resolution(alert, user_id)
        return promise

    def expire_promise(
        self,
        promise: PaymentPromise,
        today: date,
        alert: Optional[CollectionAlert] = None,
        user_id: str = "SYSTEM"
    ) -> bool:
        """
        Expire ``promise`` if ``today`` is past its deadline.

        The alert is escalated one level and gets an automatic note. Passing
        ``alert`` reuses the caller's copy so its version stays current.
        Returns False when the promise is not yet due for expiry.
        """
        if not promise.is_active or today <= promise.deadline:
            return False

        promise.status = PromiseStatus.EXPIRED
        promise.expired_on = today
        promise.audit.touch(user_id)
        changes = [Change(self.table, promise, promise.version)]

        if alert is None:
            alert = self.collections.get_alert(promise.alert_id)
        escalated = False
        if alert is not None and alert.is_active:
            reason = f"payment promise due {promise.promised_date.isoformat()} was broken"
            escalated = self.collections.escalate(alert, reason)
            if not escalated:
                alert.add_observation(f"Broken promise on {alert.severity.name} alert")
            note = self.collections.new_note(
                alert, f"Promise of {promise.promised_amount} expired on {today.isoformat()}",
                user_id, ContactOutcome.PROMISE_BROKEN
            )
            alert.audit.touch(user_id)
            changes.append(Change(self.collections.contacts_table, note, None))
            changes.append(Change(self.collections.alerts_table, alert, alert.version))

        self.guard.commit_all(changes)

        self._log(AuditEventType.PROMISE_EXPIRED, promise, {"deadline": promise.deadline, "expired_on": today}, user_id)
        self._emit(DomainEvent.PROMISE_EXPIRED, promise, deadline=promise.deadline.isoformat())
        if escalated:
            self.collections.after_escalation(alert, "payment promise broken", user_id)
        self.logger.info(f"Promise {promise.id} expired (deadline {promise.deadline})")
        return True

    def expire_overdue_promises(self, today: Optional[date] = None) -> PromiseExpiryResult:
        """Expire every ACTIVE promise past its deadline; failures are isolated"""
        today = today or date.today()
        result = PromiseExpiryResult()

        for promise in self.get_promises(status=PromiseStatus.ACTIVE):
            if today <= promise.deadline:
                continue
            try:
                alert = self.collections.get_alert(promise.alert_id)
                severity_before = alert.severity if alert else None
                if self.expire_promise(promise, today, alert):
                    result.expired.append(promise.id)
                    if alert is not None and alert.severity != severity_before:
                        result.escalated += 1
            except ArrearsError as e:
                self.logger.error(f"Could not expire promise {promise.id}: {e}")
                result.failures.append((promise.id, str(e)))

        if result.expired or result.failures:
            self.logger.info(f"Expired {len(result.expired)} promises, {len(result.failures)} failures")
        return result

    # Queries

    def get_promise(self, promise_id: str) -> Optional[PaymentPromise]:
        data = self.storage.load(self.table, promise_id)
        return PaymentPromise.from_dict(data) if data else None

    def require_promise(self, promise_id: str) -> PaymentPromise:
        promise = self.get_promise(promise_id)
        if promise is None:
            raise EntityNotFoundError("PaymentPromise", promise_id)
        return promise

    def get_active_promise(self, alert_id: str) -> Optional[PaymentPromise]:
        for promise in self.get_promises(alert_id=alert_id, status=PromiseStatus.ACTIVE):
            return promise
        return None

    def get_promises(
        self,
        alert_id: Optional[str] = None,
        status: Optional[PromiseStatus] = None
    ) -> List[PaymentPromise]:
        filters: Dict[str, Any] = {}
        if alert_id:
            filters["alert_id"] = alert_id
        if status:
            filters["status"] = status.value
        promises = [PaymentPromise.from_dict(d) for d in self.storage.find(self.table, filters)]
        promises.sort(key=lambda p: (p.promised_date, p.audit.created_at))
        return promises

    def promises_due_soon(self, days_ahead: int = 1, today: Optional[date] = None) -> List[PaymentPromise]:
        """Active promises whose promised date falls within the next ``days_ahead`` days"""
        today = today or date.today()
        horizon = today + timedelta(days=days_ahead)
        return [
            p for p in self.get_promises(status=PromiseStatus.ACTIVE)
            if today <= p.promised_date <= horizon
        ]

    def _log(self, event_type: AuditEventType, promise: PaymentPromise,
             metadata: Dict[str, Any], user_id: str) -> None:
        if self.audit:
            metadata = dict(metadata, alert_id=promise.alert_id, version=promise.version)
            self.audit.log_event(event_type, "payment_promise", promise.id, metadata, user_id)

    def _emit(self, event_type: DomainEvent, promise: PaymentPromise, **data: Any) -> None:
        if self.events:
            self.events.emit(
                event_type, "payment_promise", promise.id,
                alert_id=promise.alert_id, customer_id=promise.customer_id, **data
            )
