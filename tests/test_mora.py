"""
Test suite for late fee calculation

Tests the fee pipeline (grace, base, rate selection, cap, minimum), severity
classification and the batch entry point's failure isolation.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from arrears_core.errors import ComputationError
from arrears_core.models import (
    AlertSeverity, CalculationBase, CapType, InstallmentStatus, RateType
)
from arrears_core.mora import MoraCalculator, classify_severity, days_late, effective_days_late
from arrears_core.policy import ArrearsConfiguration

from conftest import make_installment


@pytest.fixture
def calculator():
    return MoraCalculator()


def daily_config(**overrides) -> ArrearsConfiguration:
    values = dict(rate_type=RateType.DAILY, base_rate=Decimal("1"), grace_days=0)
    values.update(overrides)
    return ArrearsConfiguration(**values)


class TestDaysLate:
    """Test day counting helpers"""

    def test_days_late_never_negative(self):
        assert days_late(date(2024, 1, 10), date(2024, 1, 5)) == 0
        assert days_late(date(2024, 1, 10), date(2024, 1, 10)) == 0
        assert days_late(date(2024, 1, 10), date(2024, 1, 25)) == 15

    def test_effective_days_subtract_grace(self):
        assert effective_days_late(date(2024, 1, 1), 5, date(2024, 1, 4)) == 0
        assert effective_days_late(date(2024, 1, 1), 5, date(2024, 1, 6)) == 0
        assert effective_days_late(date(2024, 1, 1), 5, date(2024, 1, 7)) == 1


class TestScenarios:
    """Reference scenarios for the fee pipeline"""

    def test_daily_rate_capped_at_percentage_of_capital(self, calculator):
        """1% daily on 1000 for 10 days is 100, capped at 5% of capital"""
        config = daily_config(cap_enabled=True, cap_type=CapType.PERCENTAGE, cap_value=Decimal("5"))
        installment = make_installment(capital="1000.00", due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 11), config)

        assert detail.days_late == 10
        assert detail.effective_days == 10
        assert detail.raw_fee == Decimal("100.00")
        assert detail.cap_amount == Decimal("50.00")
        assert detail.final_fee == Decimal("50.00")
        assert detail.cap_applied is True
        assert detail.minimum_applied is False
        assert detail.total_due == Decimal("1050.00")

    def test_monthly_rate_prorated_on_capital_plus_interest(self, calculator):
        """5% monthly on 1200 for 15 days is 30"""
        config = ArrearsConfiguration(
            rate_type=RateType.MONTHLY,
            base_rate=Decimal("5"),
            calculation_base=CalculationBase.CAPITAL_PLUS_INTEREST,
        )
        installment = make_installment(capital="1000.00", interest="200.00", due_date=date(2024, 3, 1))

        detail = calculator.calculate_fee(installment, date(2024, 3, 16), config)

        assert detail.base == Decimal("1200.00")
        assert detail.effective_days == 15
        assert detail.final_fee == Decimal("30.00")
        assert detail.total_due == Decimal("1230.00")

    def test_monthly_rate_after_grace(self, calculator):
        """Grace days are excluded from the prorated days"""
        config = ArrearsConfiguration(
            rate_type=RateType.MONTHLY,
            base_rate=Decimal("5"),
            calculation_base=CalculationBase.CAPITAL_PLUS_INTEREST,
            grace_days=5,
        )
        installment = make_installment(capital="1000.00", interest="200.00", due_date=date(2024, 3, 1))

        detail = calculator.calculate_fee(installment, date(2024, 3, 21), config)

        assert detail.days_late == 20
        assert detail.effective_days == 15
        assert detail.final_fee == Decimal("30.00")


class TestFeeLaws:
    """Properties every fee result must satisfy"""

    def test_grace_period_dominates_cap_and_minimum(self, calculator):
        """Within grace the fee is zero and neither cap nor minimum applies"""
        config = daily_config(
            grace_days=5,
            cap_enabled=True, cap_type=CapType.FIXED_AMOUNT, cap_value=Decimal("1"),
            minimum_fee=Decimal("10"),
        )
        installment = make_installment(due_date=date(2024, 1, 1))

        for offset in range(0, 6):
            detail = calculator.calculate_fee(installment, date(2024, 1, 1) + timedelta(days=offset), config)
            assert detail.final_fee == Decimal("0")
            assert detail.minimum_applied is False
            assert detail.cap_applied is False

    def test_cap_not_applied_below_cap(self, calculator):
        config = daily_config(cap_enabled=True, cap_type=CapType.PERCENTAGE, cap_value=Decimal("5"))
        installment = make_installment(capital="1000.00", due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 4), config)

        assert detail.raw_fee == Decimal("30.00")
        assert detail.final_fee == detail.raw_fee
        assert detail.cap_applied is False

    def test_fixed_amount_cap(self, calculator):
        config = daily_config(cap_enabled=True, cap_type=CapType.FIXED_AMOUNT, cap_value=Decimal("75"))
        installment = make_installment(capital="1000.00", due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 21), config)

        assert detail.raw_fee == Decimal("200.00")
        assert detail.final_fee == Decimal("75.00")
        assert detail.cap_applied is True

    def test_minimum_fee_applied_to_small_fee(self, calculator):
        config = daily_config(base_rate=Decimal("0.1"), minimum_fee=Decimal("5"))
        installment = make_installment(capital="100.00", due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 2), config)

        assert detail.raw_fee == Decimal("0.10")
        assert detail.final_fee == Decimal("5.00")
        assert detail.minimum_applied is True

    def test_zero_rate_never_receives_minimum(self, calculator):
        """A zero fee past grace is not bumped to the minimum"""
        config = daily_config(base_rate=Decimal("0"), minimum_fee=Decimal("5"))
        installment = make_installment(due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 20), config)

        assert detail.final_fee == Decimal("0")
        assert detail.minimum_applied is False

    def test_fee_non_decreasing_within_bucket(self, calculator):
        config = daily_config(
            escalation_enabled=True,
            first_month_rate=Decimal("0.5"),
            second_month_rate=Decimal("1"),
            third_month_rate=Decimal("2"),
        )
        installment = make_installment(capital="1000.00", due_date=date(2024, 1, 1))

        previous = Decimal("0")
        for offset in range(1, 31):
            detail = calculator.calculate_fee(installment, date(2024, 1, 1) + timedelta(days=offset), config)
            assert detail.raw_fee >= previous
            previous = detail.raw_fee

    def test_fee_uses_original_capital_not_outstanding(self, calculator):
        config = daily_config()
        installment = make_installment(capital="1000.00", paid_amount="400.00",
                                       status=InstallmentStatus.PARTIALLY_PAID, due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 1, 3), config)

        assert detail.base == Decimal("1000.00")
        assert detail.raw_fee == Decimal("20.00")
        assert detail.outstanding_balance == Decimal("600.00")
        assert detail.total_due == Decimal("620.00")

    def test_paid_installment_has_no_fee(self, calculator):
        config = daily_config()
        installment = make_installment(paid_amount="1000.00", status=InstallmentStatus.PAID,
                                       due_date=date(2024, 1, 1))

        detail = calculator.calculate_fee(installment, date(2024, 2, 1), config)

        assert detail.days_late == 0
        assert detail.final_fee == Decimal("0")

    def test_calculation_is_idempotent_and_pure(self, calculator):
        config = daily_config(cap_enabled=True, cap_type=CapType.PERCENTAGE, cap_value=Decimal("5"))
        installment = make_installment(due_date=date(2024, 1, 1))
        before = installment.to_dict()
        config_before = config.to_dict()

        first = calculator.calculate_fee(installment, date(2024, 1, 15), config)
        second = calculator.calculate_fee(installment, date(2024, 1, 15), config)

        assert first == second
        assert first.to_dict() == second.to_dict()
        assert installment.to_dict() == before
        assert config.to_dict() == config_before


class TestEscalation:
    """Test bucketed rates"""

    def test_rate_for_bucket_containing_current_day(self, calculator):
        config = daily_config(
            escalation_enabled=True,
            first_month_rate=Decimal("0.5"),
            second_month_rate=Decimal("1"),
            third_month_rate=Decimal("2"),
        )
        installment = make_installment(capital="1000.00", due_date=date(2024, 1, 1))

        day_30 = calculator.calculate_fee(installment, date(2024, 1, 31), config)
        day_31 = calculator.calculate_fee(installment, date(2024, 2, 1), config)
        day_61 = calculator.calculate_fee(installment, date(2024, 3, 2), config)

        assert day_30.rate_applied == Decimal("0.5")
        assert day_30.raw_fee == Decimal("150.00")
        assert day_31.rate_applied == Decimal("1")
        assert day_31.raw_fee == Decimal("310.00")
        assert day_61.rate_applied == Decimal("2")

    def test_missing_bucket_rate_falls_back(self):
        config = daily_config(escalation_enabled=True, first_month_rate=Decimal("0.7"))

        assert MoraCalculator.select_rate(10, config) == Decimal("0.7")
        assert MoraCalculator.select_rate(45, config) == Decimal("0.7")
        assert MoraCalculator.select_rate(90, config) == Decimal("0.7")

    def test_escalation_disabled_uses_base_rate(self):
        config = daily_config(escalation_enabled=False, first_month_rate=Decimal("9"))
        assert MoraCalculator.select_rate(10, config) == Decimal("1")


class TestComputationErrors:
    """Test malformed inputs"""

    def test_cap_enabled_without_type_is_computation_error(self, calculator):
        config = daily_config(cap_enabled=True, cap_type=None, cap_value=None)
        installment = make_installment(due_date=date(2024, 1, 1))

        with pytest.raises(ComputationError) as exc_info:
            calculator.calculate_fee(installment, date(2024, 1, 10), config)
        assert exc_info.value.entity_id == installment.id

    def test_negative_rate_is_computation_error(self, calculator):
        config = daily_config(base_rate=Decimal("-1"))
        with pytest.raises(ComputationError):
            calculator.calculate_fee(make_installment(), date(2024, 1, 10), config)


class TestFeeBatch:
    """Test the batch entry point"""

    def test_batch_isolates_failures(self, calculator):
        config = daily_config()
        good = make_installment(capital="100.00", due_date=date(2024, 1, 1))
        bad = make_installment(capital="-5.00", due_date=date(2024, 1, 1))
        current = make_installment(capital="100.00", due_date=date(2024, 2, 1))

        result = calculator.calculate_fees([good, bad, current], date(2024, 1, 11), config)

        assert result.processed == 3
        assert result.failed == 1
        assert result.failures[0].installment_id == bad.id
        assert [d.installment_id for d in result.details] == [good.id, current.id]
        assert result.with_fee == 1
        assert result.total_fees == Decimal("10.00")
        assert len(result.overdue_details()) == 1
        assert not result.succeeded

    def test_thread_pool_keeps_input_order(self):
        calculator = MoraCalculator(max_workers=4)
        config = daily_config()
        installments = [
            make_installment(capital="100.00", due_date=date(2024, 1, 1) + timedelta(days=i))
            for i in range(20)
        ]

        result = calculator.calculate_fees(installments, date(2024, 2, 1), config)

        assert [d.installment_id for d in result.details] == [i.id for i in installments]
        assert result.succeeded


class TestSeverityClassification:
    """Test threshold classification"""

    def test_days_thresholds(self):
        config = ArrearsConfiguration()
        amount = Decimal("100")
        assert classify_severity(5, amount, config) == AlertSeverity.LOW
        assert classify_severity(15, amount, config) == AlertSeverity.MEDIUM
        assert classify_severity(30, amount, config) == AlertSeverity.HIGH
        assert classify_severity(60, amount, config) == AlertSeverity.CRITICAL

    def test_amount_thresholds_after_days(self):
        config = ArrearsConfiguration(
            medium_amount_threshold=Decimal("500"),
            critical_amount_threshold=Decimal("5000"),
        )
        assert classify_severity(3, Decimal("600"), config) == AlertSeverity.MEDIUM
        assert classify_severity(3, Decimal("6000"), config) == AlertSeverity.CRITICAL
        assert classify_severity(3, Decimal("100"), config) == AlertSeverity.LOW
