"""
Payment Agreement Module

AgreementEngine negotiates repayment plans for overdue credits:

    DRAFT -> ACTIVE -> FULFILLED
                    -> BROKEN
    DRAFT/ACTIVE    -> CANCELLED

Agreement terms are checked against the arrears policy before anything is
written. The financed part (total minus initial payment) is split into equal
monthly installments, any remainder cents falling on the last one. A broken
agreement keeps the payments already made and does not reinstate the
original debt or arrears.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .audit import AuditEventType, AuditTrail
from .collections import CollectionsManager
from .concurrency import Change, ConcurrencyGuard
from .errors import ArrearsError, EntityNotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher
from .logging_config import get_logger
from .models import (
    AgreementInstallment, AgreementInstallmentStatus, AgreementStatus, AuditInfo,
    ContactOutcome, MONEY_QUANTUM, PaymentAgreement, ZERO, to_money, utc_now
)
from .policy import ArrearsConfiguration, ConfigurationProvider
from .storage import StorageInterface

HUNDRED = Decimal("100")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_schedule(
    financed: Decimal,
    installment_count: int,
    first_installment_date: date
) -> List[AgreementInstallment]:
    """Equal monthly installments; the last one absorbs the rounding remainder"""
    regular = (financed / Decimal(installment_count)).quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)
    schedule = []
    for number in range(1, installment_count + 1):
        amount = regular
        if number == installment_count:
            amount = to_money(financed - regular * (installment_count - 1))
        schedule.append(AgreementInstallment(
            number=number,
            due_date=add_months(first_installment_date, number - 1),
            amount=amount,
        ))
    return schedule


@dataclass
class AgreementTerms:
    """Terms proposed for a new agreement"""
    alert_id: str
    manager_id: str
    original_debt: Decimal
    original_arrears: Decimal
    initial_payment: Decimal
    installment_count: int
    first_installment_date: date
    condoned_amount: Decimal = ZERO
    notes: str = ""

    @property
    def total_amount(self) -> Decimal:
        return to_money(self.original_debt + self.original_arrears - self.condoned_amount)


@dataclass
class AgreementEvaluationResult:
    """Outcome of checking active agreements for overdue and broken installments"""
    evaluated: int = 0
    installments_overdue: int = 0
    broken: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "installments_overdue": self.installments_overdue,
            "broken": len(self.broken),
            "agreement_ids": list(self.broken),
            "failures": [{"agreement_id": a, "error": e} for a, e in self.failures],
        }


class AgreementEngine:
    """Creates payment agreements and drives their lifecycle"""

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
        self.table = "payment_agreements"
        self.logger = get_logger("arrears.agreements")

    def validate_terms(
        self,
        terms: AgreementTerms,
        config: ArrearsConfiguration,
        today: date
    ) -> Dict[str, str]:
        """Per-field violations of the agreement policy; empty when acceptable"""
        errors: Dict[str, str] = {}

        if not terms.manager_id:
            errors["manager_id"] = "required"
        if terms.original_debt is None or terms.original_debt <= 0:
            errors["original_debt"] = "must be greater than zero"
        if terms.original_arrears is None or terms.original_arrears < 0:
            errors["original_arrears"] = "must not be negative"
        if terms.initial_payment is None or terms.initial_payment < 0:
            errors["initial_payment"] = "must not be negative"
        if terms.condoned_amount is None or terms.condoned_amount < 0:
            errors["condoned_amount"] = "must not be negative"

        if terms.installment_count is None or terms.installment_count < 1:
            errors["installment_count"] = "must be at least 1"
        elif terms.installment_count > config.max_agreement_installments:
            errors["installment_count"] = f"must not exceed {config.max_agreement_installments}"

        if terms.first_installment_date is None:
            errors["first_installment_date"] = "required"
        elif terms.first_installment_date < today:
            errors["first_installment_date"] = "must not be in the past"

        # Policy checks run on every input that passed the field checks
        amounts_valid = not {"original_debt", "original_arrears"} & set(errors)
        if "condoned_amount" not in errors and terms.condoned_amount > 0:
            if not config.condonation_allowed:
                errors["condoned_amount"] = "condonation is not allowed"
            elif amounts_valid:
                limit = to_money((terms.original_debt + terms.original_arrears)
                                 * config.max_condonation_percent / HUNDRED)
                if terms.condoned_amount > limit:
                    errors["condoned_amount"] = f"must not exceed {limit}"

        if not amounts_valid or terms.condoned_amount is None or terms.condoned_amount < 0:
            return errors

        total = terms.total_amount
        if total <= 0:
            errors["total_amount"] = "must be greater than zero"
            return errors

        if "initial_payment" not in errors:
            minimum_initial = to_money(total * config.minimum_initial_payment_percent / HUNDRED)
            if terms.initial_payment < minimum_initial:
                errors["initial_payment"] = f"must be at least {minimum_initial}"
            elif terms.initial_payment >= total:
                errors["initial_payment"] = "must leave a balance to finance"

        return errors

    def create_agreement(
        self,
        terms: AgreementTerms,
        expected_version: Optional[int] = None,
        today: Optional[date] = None,
        config: Optional[ArrearsConfiguration] = None
    ) -> PaymentAgreement:
        """
        Create a DRAFT agreement with its installment schedule.

        Raises:
            ValidationError: the terms violate the policy; nothing is written
            ConflictError: the alert changed since ``expected_version``
        """
        today = today or date.today()
        config = config or self.config_provider.get()

        errors = self.validate_terms(terms, config, today)
        if errors:
            raise ValidationError("Agreement terms violate the arrears policy", errors)

        alert = self.collections.require_alert(terms.alert_id)
        if not alert.is_active:
            raise ValidationError(f"Alert {alert.id} is {alert.status.name}", {"alert_id": "alert is closed"})
        if self.get_open_agreement(alert.id) is not None:
            raise ValidationError(
                f"Alert {alert.id} already has an open agreement",
                {"alert_id": "an open agreement already exists"}
            )

        total = terms.total_amount
        initial = to_money(terms.initial_payment)
        agreement = PaymentAgreement(
            id=str(uuid.uuid4()),
            alert_id=alert.id,
            credit_id=alert.credit_id,
            customer_id=alert.customer_id,
            manager_id=terms.manager_id,
            original_debt=to_money(terms.original_debt),
            original_arrears=to_money(terms.original_arrears),
            condoned_amount=to_money(terms.condoned_amount),
            initial_payment=initial,
            total_amount=total,
            installment_count=terms.installment_count,
            first_installment_date=terms.first_installment_date,
            installments=build_schedule(total - initial, terms.installment_count, terms.first_installment_date),
            notes=terms.notes,
            audit=AuditInfo(created_by=terms.manager_id),
        )

        note = self.collections.new_note(
            alert,
            f"Payment agreement drafted: {total} in {terms.installment_count} installments, initial {initial}",
            terms.manager_id,
            ContactOutcome.REQUESTS_AGREEMENT
        )
        self.collections.mark_in_progress(alert, terms.manager_id)
        alert.audit.touch(terms.manager_id)
        version = alert.version if expected_version is None else expected_version

        self.guard.commit_all([
            Change(self.table, agreement, None),
            Change(self.collections.contacts_table, note, None),
            Change(self.collections.alerts_table, alert, version),
        ])

        self._log(AuditEventType.AGREEMENT_CREATED, agreement, {
            "total_amount": total,
            "initial_payment": initial,
            "condoned_amount": agreement.condoned_amount,
            "installment_count": agreement.installment_count,
        }, terms.manager_id)
        self._emit(DomainEvent.AGREEMENT_CREATED, agreement, total_amount=str(total))
        self.logger.info(f"Agreement {agreement.id} drafted for alert {alert.id}: total {total}")
        return agreement

    def confirm_agreement(self, agreement_id: str, expected_version: int, user_id: str) -> PaymentAgreement:
        """DRAFT -> ACTIVE"""
        agreement = self.require_agreement(agreement_id)
        self._require_status(agreement, AgreementStatus.DRAFT)
        agreement.status = AgreementStatus.ACTIVE
        agreement.confirmed_at = utc_now()
        agreement.audit.touch(user_id)
        self.guard.commit(self.table, agreement, expected_version)
        self._log(AuditEventType.AGREEMENT_CONFIRMED, agreement, {}, user_id)
        return agreement

    def record_initial_payment(
        self,
        agreement_id: str,
        amount: Decimal,
        expected_version: int,
        user_id: str = "SYSTEM"
    ) -> PaymentAgreement:
        """Register (part of) the initial payment of an open agreement"""
        agreement = self.require_agreement(agreement_id)
        if not agreement.is_open:
            raise ValidationError(
                f"Agreement {agreement_id} is {agreement.status.name}",
                {"status": "agreement is closed"}
            )
        pending = to_money(agreement.initial_payment - agreement.initial_payment_received)
        if amount is None or amount <= 0:
            raise ValidationError("Invalid payment", {"amount": "must be greater than zero"})
        if amount > pending:
            raise ValidationError("Invalid payment", {"amount": f"must not exceed the pending initial payment {pending}"})

        agreement.initial_payment_received = to_money(agreement.initial_payment_received + amount)
        agreement.audit.touch(user_id)
        self.guard.commit(self.table, agreement, expected_version)
        self._log(AuditEventType.AGREEMENT_PAYMENT_RECORDED, agreement, {"initial": True, "amount": amount}, user_id)
        return agreement

    def record_installment_payment(
        self,
        agreement_id: str,
        installment_number: int,
        amount: Decimal,
        expected_version: int,
        paid_on: Optional[date] = None,
        user_id: str = "SYSTEM"
    ) -> PaymentAgreement:
        """
        Apply a payment to one agreement installment.

        When every installment is paid the agreement is FULFILLED and its
        alert resolved in the same commit.
        """
        agreement = self.require_agreement(agreement_id)
        self._require_status(agreement, AgreementStatus.ACTIVE)

        installment = next((i for i in agreement.installments if i.number == installment_number), None)
        if installment is None:
            raise ValidationError(
                f"Agreement {agreement_id} has no installment {installment_number}",
                {"installment_number": "unknown installment"}
            )
        if amount is None or amount <= 0:
            raise ValidationError("Invalid payment", {"amount": "must be greater than zero"})
        if installment.status == AgreementInstallmentStatus.PAID:
            raise ValidationError("Installment already paid", {"installment_number": "already paid"})
        if amount > installment.outstanding:
            raise ValidationError(
                "Invalid payment",
                {"amount": f"must not exceed the outstanding {installment.outstanding}"}
            )

        paid_on = paid_on or date.today()
        installment.paid_amount = to_money(installment.paid_amount + amount)
        installment.paid_on = paid_on
        if installment.outstanding == ZERO:
            installment.status = AgreementInstallmentStatus.PAID
        else:
            installment.status = AgreementInstallmentStatus.PARTIAL
        agreement.audit.touch(user_id)
        changes = [Change(self.table, agreement, expected_version)]

        fulfilled = all(i.status == AgreementInstallmentStatus.PAID for i in agreement.installments)
        alert = None
        if fulfilled:
            agreement.status = AgreementStatus.FULFILLED
            agreement.fulfilled_at = utc_now()
            alert = self.collections.get_alert(agreement.alert_id)
            if alert is not None and alert.is_active:
                self.collections.mark_resolved(alert, "Payment agreement fulfilled", user_id)
                changes.append(Change(self.collections.alerts_table, alert, alert.version))
            else:
                alert = None

        self.guard.commit_all(changes)

        self._log(AuditEventType.AGREEMENT_PAYMENT_RECORDED, agreement, {
            "installment_number": installment_number,
            "amount": amount,
        }, user_id)
        if fulfilled:
            self._log(AuditEventType.AGREEMENT_FULFILLED, agreement, {}, user_id)
            self._emit(DomainEvent.AGREEMENT_FULFILLED, agreement)
            if alert is not None:
                self.collections.after_resolution(alert, user_id)
        return agreement

    def evaluate_agreements(self, today: Optional[date] = None, config: Optional[ArrearsConfiguration] = None
                            ) -> AgreementEvaluationResult:
        """
        Mark unpaid past-due installments OVERDUE and break agreements with
        an installment unpaid beyond the breach tolerance.
        """
        today = today or date.today()
        config = config or self.config_provider.get()
        result = AgreementEvaluationResult()

        for agreement in self.get_agreements(status=AgreementStatus.ACTIVE):
            result.evaluated += 1
            try:
                newly_overdue, broken = self._evaluate(agreement, today, config.agreement_breach_tolerance_days)
                result.installments_overdue += newly_overdue
                if broken:
                    result.broken.append(agreement.id)
            except ArrearsError as e:
                self.logger.error(f"Could not evaluate agreement {agreement.id}: {e}")
                result.failures.append((agreement.id, str(e)))

        return result

    def _evaluate(self, agreement: PaymentAgreement, today: date, tolerance_days: int) -> Tuple[int, bool]:
        newly_overdue = 0
        breached = False
        for installment in agreement.installments:
            if installment.status == AgreementInstallmentStatus.PAID or installment.due_date >= today:
                continue
            if installment.status != AgreementInstallmentStatus.OVERDUE:
                installment.status = AgreementInstallmentStatus.OVERDUE
                newly_overdue += 1
            if today > installment.due_date + timedelta(days=tolerance_days):
                breached = True

        if not newly_overdue and not breached:
            return 0, False

        agreement.audit.touch("SYSTEM")
        changes = [Change(self.table, agreement, agreement.version)]
        alert = None
        escalated = False
        if breached:
            agreement.status = AgreementStatus.BROKEN
            agreement.broken_on = today
            alert = self.collections.get_alert(agreement.alert_id)
            if alert is not None and alert.is_active:
                escalated = self.collections.escalate(alert, "payment agreement broken")
                note = self.collections.new_note(
                    alert, f"Agreement {agreement.id} broken on {today.isoformat()}"
                )
                alert.audit.touch("SYSTEM")
                changes.append(Change(self.collections.contacts_table, note, None))
                changes.append(Change(self.collections.alerts_table, alert, alert.version))

        self.guard.commit_all(changes)

        if breached:
            self._log(AuditEventType.AGREEMENT_BROKEN, agreement, {"broken_on": today, "paid": agreement.amount_paid})
            self._emit(DomainEvent.AGREEMENT_BROKEN, agreement, amount_paid=str(agreement.amount_paid))
            if escalated:
                self.collections.after_escalation(alert, "payment agreement broken")
            self.logger.warning(f"Agreement {agreement.id} broken on {today}")
        return newly_overdue, breached

    def cancel_agreement(
        self,
        agreement_id: str,
        expected_version: int,
        reason: str,
        user_id: str
    ) -> PaymentAgreement:
        """Manual cancellation, allowed from DRAFT or ACTIVE only"""
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required", {"reason": "required"})
        agreement = self.require_agreement(agreement_id)
        if not agreement.is_open:
            raise ValidationError(
                f"Agreement {agreement_id} is {agreement.status.name} and cannot be cancelled",
                {"status": "only draft or active agreements can be cancelled"}
            )

        agreement.status = AgreementStatus.CANCELLED
        agreement.cancelled_at = utc_now()
        agreement.cancellation_reason = reason
        agreement.audit.touch(user_id)
        self.guard.commit(self.table, agreement, expected_version)
        self._log(AuditEventType.AGREEMENT_CANCELLED, agreement, {"reason": reason}, user_id)
        return agreement

    # Queries

    def get_agreement(self, agreement_id: str) -> Optional[PaymentAgreement]:
        data = self.storage.load(self.table, agreement_id)
        return PaymentAgreement.from_dict(data) if data else None

    def require_agreement(self, agreement_id: str) -> PaymentAgreement:
        agreement = self.get_agreement(agreement_id)
        if agreement is None:
            raise EntityNotFoundError("PaymentAgreement", agreement_id)
        return agreement

    def get_agreements(
        self,
        alert_id: Optional[str] = None,
        status: Optional[AgreementStatus] = None
    ) -> List[PaymentAgreement]:
        filters: Dict[str, Any] = {}
        if alert_id:
            filters["alert_id"] = alert_id
        if status:
            filters["status"] = status.value
        agreements = [PaymentAgreement.from_dict(d) for d in self.storage.find(self.table, filters)]
        agreements.sort(key=lambda a: a.audit.created_at)
        return agreements

    def get_open_agreement(self, alert_id: str) -> Optional[PaymentAgreement]:
        for agreement in self.get_agreements(alert_id=alert_id):
            if agreement.is_open:
                return agreement
        return None

    @staticmethod
    def _require_status(agreement: PaymentAgreement, status: AgreementStatus) -> None:
        if agreement.status != status:
            raise ValidationError(
                f"Agreement {agreement.id} is {agreement.status.name}, expected {status.name}",
                {"status": f"must be {status.name}"}
            )

    def _log(self, event_type: AuditEventType, agreement: PaymentAgreement,
             metadata: Dict[str, Any], user_id: str = "SYSTEM") -> None:
        if self.audit:
            metadata = dict(metadata, alert_id=agreement.alert_id, version=agreement.version)
            self.audit.log_event(event_type, "payment_agreement", agreement.id, metadata, user_id)

    def _emit(self, event_type: DomainEvent, agreement: PaymentAgreement, **data: Any) -> None:
        if self.events:
            self.events.emit(
                event_type, "payment_agreement", agreement.id,
                alert_id=agreement.alert_id, customer_id=agreement.customer_id, **data
            )
