"""
Arrears Policy Module

ArrearsConfiguration holds the business policy every component reads: late
fee rates, caps, severity thresholds, automation and notification switches,
agreement limits and automatic blocking rules. It is persisted as a single
versioned record and only changed through ConfigurationProvider.update.

Percentages are stored as percentage points: a base_rate of 1 means 1%.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Dict, Optional

from .audit import AuditEventType, AuditTrail
from .concurrency import ConcurrencyGuard
from .errors import ConflictError, ValidationError
from .logging_config import get_logger
from .models import (
    AuditInfo, BlockType, CalculationBase, CapType, NotificationChannel, RateType,
    ZERO, _parse_datetime, utc_now
)
from .storage import StorageInterface

DEFAULT_CONFIGURATION_ID = "default"


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _undec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class ArrearsConfiguration:
    """Arrears and collections policy"""
    id: str = DEFAULT_CONFIGURATION_ID

    # Late fee calculation
    rate_type: RateType = RateType.DAILY
    base_rate: Decimal = ZERO
    calculation_base: CalculationBase = CalculationBase.CAPITAL
    grace_days: int = 0
    escalation_enabled: bool = False
    first_month_rate: Optional[Decimal] = None
    second_month_rate: Optional[Decimal] = None
    third_month_rate: Optional[Decimal] = None
    cap_enabled: bool = False
    cap_type: Optional[CapType] = None
    cap_value: Optional[Decimal] = None
    minimum_fee: Decimal = ZERO

    # Severity classification
    medium_days_threshold: int = 15
    high_days_threshold: int = 30
    critical_days_threshold: int = 60
    medium_amount_threshold: Optional[Decimal] = None
    high_amount_threshold: Optional[Decimal] = None
    critical_amount_threshold: Optional[Decimal] = None

    # Automation
    automation_enabled: bool = True
    daily_run_hour: int = 8
    preventive_alerts_enabled: bool = False
    days_before_due_alert: int = 3
    auto_change_installment_status: bool = True

    # Notifications
    notifications_enabled: bool = True
    whatsapp_enabled: bool = True
    email_enabled: bool = True
    preferred_channel: NotificationChannel = NotificationChannel.WHATSAPP
    max_notifications_per_day: int = 100
    max_notifications_per_installment: int = 3
    send_window_start: time = time(8, 0)
    send_window_end: time = time(20, 0)
    send_on_weekends: bool = False

    # Promises and agreements
    days_to_fulfill_promise: int = 3
    max_agreement_installments: int = 12
    minimum_initial_payment_percent: Decimal = Decimal("20")
    condonation_allowed: bool = False
    max_condonation_percent: Decimal = ZERO
    agreement_breach_tolerance_days: int = 5

    # Automatic client blocking
    auto_block_enabled: bool = False
    block_after_days: int = 90
    block_after_overdue_installments: Optional[int] = None
    block_after_arrears_amount: Optional[Decimal] = None
    block_type: BlockType = BlockType.NEW_CREDIT_ONLY

    last_run_at: Optional[datetime] = None
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    def validation_errors(self) -> Dict[str, str]:
        """Per-field problems that make the policy unusable"""
        errors: Dict[str, str] = {}

        if self.base_rate < 0:
            errors["base_rate"] = "must not be negative"
        for name in ("first_month_rate", "second_month_rate", "third_month_rate"):
            rate = getattr(self, name)
            if rate is not None and rate < 0:
                errors[name] = "must not be negative"
        if self.grace_days < 0:
            errors["grace_days"] = "must not be negative"
        if self.minimum_fee < 0:
            errors["minimum_fee"] = "must not be negative"

        if self.cap_enabled:
            if self.cap_type is None:
                errors["cap_type"] = "required when the cap is enabled"
            if self.cap_value is None:
                errors["cap_value"] = "required when the cap is enabled"
            elif self.cap_value < 0:
                errors["cap_value"] = "must not be negative"

        if not (0 < self.medium_days_threshold <= self.high_days_threshold <= self.critical_days_threshold):
            errors["days_thresholds"] = "must satisfy 0 < medium <= high <= critical"
        if not 0 <= self.daily_run_hour <= 23:
            errors["daily_run_hour"] = "must be between 0 and 23"
        if self.max_notifications_per_day < 0:
            errors["max_notifications_per_day"] = "must not be negative"
        if self.max_notifications_per_installment < 0:
            errors["max_notifications_per_installment"] = "must not be negative"
        if self.days_to_fulfill_promise < 0:
            errors["days_to_fulfill_promise"] = "must not be negative"
        if self.max_agreement_installments < 1:
            errors["max_agreement_installments"] = "must be at least 1"
        if not ZERO <= self.minimum_initial_payment_percent <= 100:
            errors["minimum_initial_payment_percent"] = "must be between 0 and 100"
        if not ZERO <= self.max_condonation_percent <= 100:
            errors["max_condonation_percent"] = "must be between 0 and 100"
        if self.agreement_breach_tolerance_days < 0:
            errors["agreement_breach_tolerance_days"] = "must not be negative"

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rate_type": self.rate_type.value,
            "base_rate": str(self.base_rate),
            "calculation_base": self.calculation_base.value,
            "grace_days": self.grace_days,
            "escalation_enabled": self.escalation_enabled,
            "first_month_rate": _dec(self.first_month_rate),
            "second_month_rate": _dec(self.second_month_rate),
            "third_month_rate": _dec(self.third_month_rate),
            "cap_enabled": self.cap_enabled,
            "cap_type": self.cap_type.value if self.cap_type else None,
            "cap_value": _dec(self.cap_value),
            "minimum_fee": str(self.minimum_fee),
            "medium_days_threshold": self.medium_days_threshold,
            "high_days_threshold": self.high_days_threshold,
            "critical_days_threshold": self.critical_days_threshold,
            "medium_amount_threshold": _dec(self.medium_amount_threshold),
            "high_amount_threshold": _dec(self.high_amount_threshold),
            "critical_amount_threshold": _dec(self.critical_amount_threshold),
            "automation_enabled": self.automation_enabled,
            "daily_run_hour": self.daily_run_hour,
            "preventive_alerts_enabled": self.preventive_alerts_enabled,
            "days_before_due_alert": self.days_before_due_alert,
            "auto_change_installment_status": self.auto_change_installment_status,
            "notifications_enabled": self.notifications_enabled,
            "whatsapp_enabled": self.whatsapp_enabled,
            "email_enabled": self.email_enabled,
            "preferred_channel": self.preferred_channel.value,
            "max_notifications_per_day": self.max_notifications_per_day,
            "max_notifications_per_installment": self.max_notifications_per_installment,
            "send_window_start": self.send_window_start.isoformat(),
            "send_window_end": self.send_window_end.isoformat(),
            "send_on_weekends": self.send_on_weekends,
            "days_to_fulfill_promise": self.days_to_fulfill_promise,
            "max_agreement_installments": self.max_agreement_installments,
            "minimum_initial_payment_percent": str(self.minimum_initial_payment_percent),
            "condonation_allowed": self.condonation_allowed,
            "max_condonation_percent": str(self.max_condonation_percent),
            "agreement_breach_tolerance_days": self.agreement_breach_tolerance_days,
            "auto_block_enabled": self.auto_block_enabled,
            "block_after_days": self.block_after_days,
            "block_after_overdue_installments": self.block_after_overdue_installments,
            "block_after_arrears_amount": _dec(self.block_after_arrears_amount),
            "block_type": self.block_type.value,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArrearsConfiguration":
        defaults = cls()
        return cls(
            id=data.get("id", DEFAULT_CONFIGURATION_ID),
            rate_type=RateType(data.get("rate_type", defaults.rate_type.value)),
            base_rate=Decimal(data.get("base_rate", "0")),
            calculation_base=CalculationBase(data.get("calculation_base", defaults.calculation_base.value)),
            grace_days=data.get("grace_days", 0),
            escalation_enabled=data.get("escalation_enabled", False),
            first_month_rate=_undec(data.get("first_month_rate")),
            second_month_rate=_undec(data.get("second_month_rate")),
            third_month_rate=_undec(data.get("third_month_rate")),
            cap_enabled=data.get("cap_enabled", False),
            cap_type=CapType(data["cap_type"]) if data.get("cap_type") else None,
            cap_value=_undec(data.get("cap_value")),
            minimum_fee=Decimal(data.get("minimum_fee", "0")),
            medium_days_threshold=data.get("medium_days_threshold", defaults.medium_days_threshold),
            high_days_threshold=data.get("high_days_threshold", defaults.high_days_threshold),
            critical_days_threshold=data.get("critical_days_threshold", defaults.critical_days_threshold),
            medium_amount_threshold=_undec(data.get("medium_amount_threshold")),
            high_amount_threshold=_undec(data.get("high_amount_threshold")),
            critical_amount_threshold=_undec(data.get("critical_amount_threshold")),
            automation_enabled=data.get("automation_enabled", defaults.automation_enabled),
            daily_run_hour=data.get("daily_run_hour", defaults.daily_run_hour),
            preventive_alerts_enabled=data.get("preventive_alerts_enabled", False),
            days_before_due_alert=data.get("days_before_due_alert", defaults.days_before_due_alert),
            auto_change_installment_status=data.get(
                "auto_change_installment_status", defaults.auto_change_installment_status
            ),
            notifications_enabled=data.get("notifications_enabled", defaults.notifications_enabled),
            whatsapp_enabled=data.get("whatsapp_enabled", defaults.whatsapp_enabled),
            email_enabled=data.get("email_enabled", defaults.email_enabled),
            preferred_channel=NotificationChannel(
                data.get("preferred_channel", defaults.preferred_channel.value)
            ),
            max_notifications_per_day=data.get("max_notifications_per_day", defaults.max_notifications_per_day),
            max_notifications_per_installment=data.get(
                "max_notifications_per_installment", defaults.max_notifications_per_installment
            ),
            send_window_start=time.fromisoformat(
                data.get("send_window_start", defaults.send_window_start.isoformat())
            ),
            send_window_end=time.fromisoformat(
                data.get("send_window_end", defaults.send_window_end.isoformat())
            ),
            send_on_weekends=data.get("send_on_weekends", False),
            days_to_fulfill_promise=data.get("days_to_fulfill_promise", defaults.days_to_fulfill_promise),
            max_agreement_installments=data.get(
                "max_agreement_installments", defaults.max_agreement_installments
            ),
            minimum_initial_payment_percent=Decimal(
                data.get("minimum_initial_payment_percent", str(defaults.minimum_initial_payment_percent))
            ),
            condonation_allowed=data.get("condonation_allowed", False),
            max_condonation_percent=Decimal(data.get("max_condonation_percent", "0")),
            agreement_breach_tolerance_days=data.get(
                "agreement_breach_tolerance_days", defaults.agreement_breach_tolerance_days
            ),
            auto_block_enabled=data.get("auto_block_enabled", False),
            block_after_days=data.get("block_after_days", defaults.block_after_days),
            block_after_overdue_installments=data.get("block_after_overdue_installments"),
            block_after_arrears_amount=_undec(data.get("block_after_arrears_amount")),
            block_type=BlockType(data.get("block_type", defaults.block_type.value)),
            last_run_at=_parse_datetime(data.get("last_run_at")),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


class ConfigurationProvider:
    """Loads and administers the persisted ArrearsConfiguration"""

    def __init__(
        self,
        storage: StorageInterface,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.table = "arrears_configuration"
        self.logger = get_logger("arrears.policy")

    def get(self) -> ArrearsConfiguration:
        """
        Return the current policy.

        A missing policy is created with zeroed rates and persisted; this
        never raises for a missing record.
        """
        data = self.storage.load(self.table, DEFAULT_CONFIGURATION_ID)
        if data:
            return ArrearsConfiguration.from_dict(data)

        config = ArrearsConfiguration()
        try:
            self.guard.insert(self.table, config)
            self.logger.info("Created default arrears configuration")
        except ConflictError:
            # Another caller created it first
            return ArrearsConfiguration.from_dict(self.storage.load(self.table, DEFAULT_CONFIGURATION_ID))
        return config

    def update(
        self,
        config: ArrearsConfiguration,
        expected_version: int,
        user_id: str = "SYSTEM"
    ) -> ArrearsConfiguration:
        """Replace the policy; rejects invalid values and stale versions"""
        errors = config.validation_errors()
        if errors:
            raise ValidationError("Invalid arrears configuration", errors)

        config.id = DEFAULT_CONFIGURATION_ID
        config.audit.touch(user_id)
        self.guard.commit(self.table, config, expected_version)

        if self.audit:
            self.audit.log_event(
                AuditEventType.CONFIGURATION_UPDATED,
                entity_type="arrears_configuration",
                entity_id=config.id,
                metadata={"version": config.version},
                user_id=user_id
            )
        self.logger.info(f"Arrears configuration updated to version {config.version} by {user_id}")
        return config

    def record_run(self, when: Optional[datetime] = None) -> ArrearsConfiguration:
        """Stamp the time of the last completed daily run"""
        config = self.get()
        config.last_run_at = when or utc_now()
        config.audit.touch("SYSTEM", config.last_run_at)
        self.guard.commit(self.table, config, config.version)
        return config
