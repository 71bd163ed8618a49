"""
Late Fee ("mora") Calculation Module

MoraCalculator derives the late fee of an installment purely from the
installment, an as-of date and the arrears policy. Nothing is stored: the
same inputs always give the same FeeDetail.

Fee pipeline:
    days late -> grace -> base -> rate (bucketed when escalation is on)
    -> raw fee (rounded to cents) -> cap -> minimum
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, getcontext
from typing import Any, Dict, List, Optional, Sequence

from .errors import ComputationError
from .logging_config import get_logger
from .models import (
    AlertSeverity, CalculationBase, CapType, Installment, InstallmentStatus,
    RateType, ZERO, to_money
)
from .policy import ArrearsConfiguration

getcontext().prec = 28

HUNDRED = Decimal("100")
DAYS_PER_MONTH = Decimal("30")

# Escalation bucket upper bounds in effective days late
FIRST_MONTH_LAST_DAY = 30
SECOND_MONTH_LAST_DAY = 60

FEE_POLICY_FIELDS = (
    "base_rate", "first_month_rate", "second_month_rate", "third_month_rate",
    "grace_days", "minimum_fee", "cap_type", "cap_value",
)


def _decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def days_late(due_date: date, as_of: date) -> int:
    """Calendar days past the due date, never negative"""
    return max(0, (as_of - due_date).days)


def effective_days_late(due_date: date, grace_days: int, as_of: date) -> int:
    """Days late beyond the grace period"""
    return max(0, days_late(due_date, as_of) - grace_days)


def is_overdue(installment: Installment, grace_days: int, as_of: date) -> bool:
    """True when an open installment is late beyond the grace period"""
    return installment.is_open and effective_days_late(installment.due_date, grace_days, as_of) > 0


def classify_severity(days: int, amount: Decimal, config: ArrearsConfiguration) -> AlertSeverity:
    """Severity from days-late thresholds first, then overdue-amount thresholds"""
    if days >= config.critical_days_threshold:
        return AlertSeverity.CRITICAL
    if days >= config.high_days_threshold:
        return AlertSeverity.HIGH
    if days >= config.medium_days_threshold:
        return AlertSeverity.MEDIUM

    if config.critical_amount_threshold is not None and amount >= config.critical_amount_threshold:
        return AlertSeverity.CRITICAL
    if config.high_amount_threshold is not None and amount >= config.high_amount_threshold:
        return AlertSeverity.HIGH
    if config.medium_amount_threshold is not None and amount >= config.medium_amount_threshold:
        return AlertSeverity.MEDIUM

    return AlertSeverity.LOW


@dataclass(frozen=True)
class FeeDetail:
    """Breakdown of the late fee of one installment on one date"""
    installment_id: str
    credit_id: str
    customer_id: str
    installment_number: int
    due_date: date
    as_of: date
    days_late: int
    effective_days: int
    base: Decimal
    rate_applied: Decimal
    raw_fee: Decimal
    final_fee: Decimal
    cap_applied: bool
    minimum_applied: bool
    capital: Decimal
    interest: Decimal
    paid_amount: Decimal
    outstanding_balance: Decimal
    total_due: Decimal
    cap_amount: Optional[Decimal] = None

    @property
    def is_overdue(self) -> bool:
        return self.effective_days > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment_id": self.installment_id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "installment_number": self.installment_number,
            "due_date": self.due_date.isoformat(),
            "as_of": self.as_of.isoformat(),
            "days_late": self.days_late,
            "effective_days": self.effective_days,
            "base": str(self.base),
            "rate_applied": str(self.rate_applied),
            "raw_fee": str(self.raw_fee),
            "final_fee": str(self.final_fee),
            "cap_applied": self.cap_applied,
            "minimum_applied": self.minimum_applied,
            "cap_amount": str(self.cap_amount) if self.cap_amount is not None else None,
            "capital": str(self.capital),
            "interest": str(self.interest),
            "paid_amount": str(self.paid_amount),
            "outstanding_balance": str(self.outstanding_balance),
            "total_due": str(self.total_due),
        }


@dataclass(frozen=True)
class FeeFailure:
    """An installment the batch could not evaluate"""
    installment_id: str
    error: str


@dataclass
class FeeBatchResult:
    """Per-installment fee details plus batch totals"""
    as_of: date
    details: List[FeeDetail] = field(default_factory=list)
    failures: List[FeeFailure] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.details) + len(self.failures)

    @property
    def with_fee(self) -> int:
        return sum(1 for d in self.details if d.final_fee > 0)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def total_fees(self) -> Decimal:
        return to_money(sum((d.final_fee for d in self.details), ZERO))

    @property
    def total_overdue_capital(self) -> Decimal:
        return to_money(sum((d.outstanding_balance for d in self.details if d.is_overdue), ZERO))

    @property
    def total_due(self) -> Decimal:
        return to_money(sum((d.total_due for d in self.details if d.is_overdue), ZERO))

    def overdue_details(self) -> List[FeeDetail]:
        return [d for d in self.details if d.is_overdue]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "processed": self.processed,
            "with_fee": self.with_fee,
            "failed": self.failed,
            "total_fees": str(self.total_fees),
            "total_overdue_capital": str(self.total_overdue_capital),
            "total_due": str(self.total_due),
            "details": [d.to_dict() for d in self.details],
            "failures": [{"installment_id": f.installment_id, "error": f.error} for f in self.failures],
        }


class MoraCalculator:
    """Stateless late fee calculator; safe to share between threads"""

    def __init__(self, max_workers: int = 1):
        self.max_workers = max(1, max_workers)
        self.logger = get_logger("arrears.mora")

    def calculate_fee(self, installment: Installment, as_of: date, config: ArrearsConfiguration) -> FeeDetail:
        """
        Late fee of ``installment`` on ``as_of``.

        Raises:
            ComputationError: the policy is malformed or the installment
                amounts cannot be computed with
        """
        try:
            self._check_policy(config, installment.id)

            capital = to_money(installment.capital)
            interest = to_money(installment.interest)
            paid = to_money(installment.paid_amount)
            outstanding = to_money(capital + interest - paid)
            if capital < 0 or interest < 0:
                raise ComputationError("Installment amounts must not be negative", installment.id)

            if config.calculation_base == CalculationBase.CAPITAL_PLUS_INTEREST:
                base = to_money(capital + interest)
            else:
                base = capital

            closed = installment.status in (InstallmentStatus.PAID, InstallmentStatus.CANCELLED)
            late = 0 if closed else days_late(installment.due_date, as_of)
            effective = max(0, late - config.grace_days)

            def result(rate: Decimal, raw: Decimal, final: Decimal, cap_applied: bool = False,
                       minimum_applied: bool = False, cap_amount: Optional[Decimal] = None) -> FeeDetail:
                return FeeDetail(
                    installment_id=installment.id,
                    credit_id=installment.credit_id,
                    customer_id=installment.customer_id,
                    installment_number=installment.number,
                    due_date=installment.due_date,
                    as_of=as_of,
                    days_late=late,
                    effective_days=effective,
                    base=base,
                    rate_applied=rate,
                    raw_fee=raw,
                    final_fee=final,
                    cap_applied=cap_applied,
                    minimum_applied=minimum_applied,
                    cap_amount=cap_amount,
                    capital=capital,
                    interest=interest,
                    paid_amount=paid,
                    outstanding_balance=outstanding,
                    total_due=to_money(outstanding + final),
                )

            # Grace dominates: no fee, no cap, no minimum
            if effective == 0:
                return result(ZERO, ZERO, ZERO)

            rate = self.select_rate(effective, config)
            fraction = rate / HUNDRED
            if config.rate_type == RateType.MONTHLY:
                raw_fee = to_money(base * fraction * Decimal(effective) / DAYS_PER_MONTH)
            else:
                raw_fee = to_money(base * fraction * Decimal(effective))

            final_fee = raw_fee
            cap_applied = False
            cap_amount = None
            if config.cap_enabled:
                cap_amount = self.cap_amount(base, config)
                if raw_fee > cap_amount:
                    final_fee = cap_amount
                    cap_applied = True

            minimum_applied = False
            minimum_fee = to_money(config.minimum_fee)
            if ZERO < final_fee < minimum_fee:
                final_fee = minimum_fee
                minimum_applied = True

            return result(rate, raw_fee, final_fee, cap_applied, minimum_applied, cap_amount)
        except (InvalidOperation, ArithmeticError, TypeError) as e:
            raise ComputationError(f"Fee calculation failed: {e}", installment.id) from e

    def calculate_fees(
        self,
        installments: Sequence[Installment],
        as_of: date,
        config: ArrearsConfiguration
    ) -> FeeBatchResult:
        """
        Evaluate many installments; failures are captured per installment.

        Details keep the input order whether or not a thread pool is used.
        """
        result = FeeBatchResult(as_of=as_of)

        def evaluate(installment: Installment):
            try:
                return self.calculate_fee(installment, as_of, config)
            except ComputationError as e:
                return FeeFailure(installment_id=installment.id, error=str(e))

        if self.max_workers > 1 and len(installments) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = list(executor.map(evaluate, installments))
        else:
            outcomes = [evaluate(installment) for installment in installments]

        for outcome in outcomes:
            if isinstance(outcome, FeeFailure):
                self.logger.error(f"Fee calculation failed for installment {outcome.installment_id}: {outcome.error}")
                result.failures.append(outcome)
            else:
                result.details.append(outcome)

        self.logger.info(
            f"Calculated fees as of {as_of.isoformat()}: {result.processed} processed, "
            f"{result.with_fee} with fee, {result.failed} failed, total {result.total_fees}"
        )
        return result

    @staticmethod
    def select_rate(effective_days: int, config: ArrearsConfiguration) -> Decimal:
        """
        Rate (percentage points) for the bucket containing the current day.

        A missing bucket rate falls back to the previous bucket, then to
        the base rate.
        """
        base_rate = _decimal(config.base_rate)
        if not config.escalation_enabled:
            return base_rate

        first = _decimal(config.first_month_rate) if config.first_month_rate is not None else base_rate
        if effective_days <= FIRST_MONTH_LAST_DAY:
            return first

        second = _decimal(config.second_month_rate) if config.second_month_rate is not None else first
        if effective_days <= SECOND_MONTH_LAST_DAY:
            return second

        return _decimal(config.third_month_rate) if config.third_month_rate is not None else second

    @staticmethod
    def cap_amount(base: Decimal, config: ArrearsConfiguration) -> Decimal:
        cap_value = _decimal(config.cap_value)
        if config.cap_type == CapType.PERCENTAGE:
            return to_money(base * cap_value / HUNDRED)
        return to_money(cap_value)

    @staticmethod
    def _check_policy(config: ArrearsConfiguration, installment_id: str) -> None:
        errors = {k: v for k, v in config.validation_errors().items() if k in FEE_POLICY_FIELDS}
        if errors:
            details = ", ".join(f"{k} {v}" for k, v in errors.items())
            raise ComputationError(f"Malformed arrears configuration: {details}", installment_id)
