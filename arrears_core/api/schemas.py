"""
Pydantic schemas for API requests
"""

from datetime import date, time
from decimal import Decimal
from enum import Enum
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field

from ..errors import ValidationError

E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value: Optional[str], field_name: str) -> Optional[E]:
    """Enum member from its name (case-insensitive); None passes through"""
    if value is None:
        return None
    try:
        return enum_cls[value.upper()]
    except KeyError:
        choices = ", ".join(m.name for m in enum_cls)
        raise ValidationError(f"Invalid {field_name}", {field_name: f"must be one of {choices}"})


# Installment schemas
class RegisterInstallmentRequest(BaseModel):
    id: Optional[str] = None
    credit_id: str
    customer_id: str
    number: int = Field(..., ge=1)
    due_date: date
    capital: Decimal
    interest: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    status: str = Field("PENDING", description="PENDING, PAID, OVERDUE, PARTIALLY_PAID or CANCELLED")


class FeeRequest(BaseModel):
    installment_id: str
    as_of: Optional[date] = None


class DailyRunRequest(BaseModel):
    today: Optional[date] = None


# Policy schemas
class ConfigurationUpdateRequest(BaseModel):
    """Partial policy update; omitted fields keep their current value"""
    expected_version: int
    user_id: str = "SYSTEM"

    rate_type: Optional[str] = None
    base_rate: Optional[Decimal] = None
    calculation_base: Optional[str] = None
    grace_days: Optional[int] = None
    escalation_enabled: Optional[bool] = None
    first_month_rate: Optional[Decimal] = None
    second_month_rate: Optional[Decimal] = None
    third_month_rate: Optional[Decimal] = None
    cap_enabled: Optional[bool] = None
    cap_type: Optional[str] = None
    cap_value: Optional[Decimal] = None
    minimum_fee: Optional[Decimal] = None

    medium_days_threshold: Optional[int] = None
    high_days_threshold: Optional[int] = None
    critical_days_threshold: Optional[int] = None

    automation_enabled: Optional[bool] = None
    daily_run_hour: Optional[int] = None
    notifications_enabled: Optional[bool] = None
    send_window_start: Optional[time] = None
    send_window_end: Optional[time] = None
    send_on_weekends: Optional[bool] = None
    max_notifications_per_day: Optional[int] = None
    max_notifications_per_installment: Optional[int] = None

    days_to_fulfill_promise: Optional[int] = None
    max_agreement_installments: Optional[int] = None
    minimum_initial_payment_percent: Optional[Decimal] = None
    condonation_allowed: Optional[bool] = None
    max_condonation_percent: Optional[Decimal] = None
    agreement_breach_tolerance_days: Optional[int] = None
    auto_block_enabled: Optional[bool] = None
    block_after_days: Optional[int] = None


# Alert schemas
class ResolveAlertRequest(BaseModel):
    expected_version: int
    reason: str
    user_id: str


class AssignManagerRequest(BaseModel):
    expected_version: int
    manager_id: str
    user_id: str


class RecordContactRequest(BaseModel):
    manager_id: str
    contact_type: str = Field(..., description="PHONE_CALL, WHATSAPP, EMAIL, VISIT, SMS or INTERNAL_NOTE")
    outcome: Optional[str] = None
    notes: str = ""
    expected_version: Optional[int] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ProcessAlertsRequest(BaseModel):
    today: Optional[date] = None


# Promise schemas
class RegisterPromiseRequest(BaseModel):
    alert_id: str
    expected_version: int
    promised_date: date
    amount: Decimal
    manager_id: str
    contact_type: str = "PHONE_CALL"
    notes: str = ""


class FulfillPromiseRequest(BaseModel):
    paid_amount: Optional[Decimal] = None
    expected_version: Optional[int] = None
    user_id: str = "SYSTEM"


# Agreement schemas
class CreateAgreementRequest(BaseModel):
    alert_id: str
    manager_id: str
    original_debt: Decimal
    original_arrears: Decimal
    initial_payment: Decimal
    installment_count: int
    first_installment_date: date
    condoned_amount: Decimal = Decimal("0")
    notes: str = ""
    expected_version: Optional[int] = None


class AgreementVersionRequest(BaseModel):
    expected_version: int
    user_id: str


class AgreementPaymentRequest(BaseModel):
    expected_version: int
    amount: Decimal
    installment_number: Optional[int] = Field(None, description="Omit to pay towards the initial payment")
    paid_on: Optional[date] = None
    user_id: str = "SYSTEM"


class CancelAgreementRequest(BaseModel):
    expected_version: int
    reason: str
    user_id: str
