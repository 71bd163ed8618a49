"""
Late fee, daily run and policy endpoints
"""

from datetime import date

from fastapi import APIRouter, Depends

from .schemas import ConfigurationUpdateRequest, DailyRunRequest, FeeRequest, parse_enum
from .system import ArrearsSystem, get_arrears_system
from ..models import CalculationBase, CapType, RateType


router = APIRouter()

ENUM_FIELDS = {
    "rate_type": RateType,
    "calculation_base": CalculationBase,
    "cap_type": CapType,
}


@router.post("/fees")
async def calculate_fee(
    request: FeeRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Late fee breakdown of one installment; nothing is stored"""
    installment = system.installments.require_installment(request.installment_id)
    config = system.config_provider.get()
    detail = system.calculator.calculate_fee(installment, request.as_of or date.today(), config)
    return detail.to_dict()


@router.post("/run")
async def run_daily_job(
    request: DailyRunRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Run the daily arrears batch now"""
    report = system.daily_job.run(today=request.today)
    return report.to_dict()


@router.get("/configuration")
async def get_configuration(system: ArrearsSystem = Depends(get_arrears_system)):
    """Current arrears policy"""
    return system.config_provider.get().to_dict()


@router.put("/configuration")
async def update_configuration(
    request: ConfigurationUpdateRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Change policy fields; requires the version read by the caller"""
    config = system.config_provider.get()
    changes = request.model_dump(exclude_none=True, exclude={"expected_version", "user_id"})
    for name, value in changes.items():
        if name in ENUM_FIELDS:
            value = parse_enum(ENUM_FIELDS[name], value, name)
        setattr(config, name, value)

    updated = system.config_provider.update(config, request.expected_version, request.user_id)
    return updated.to_dict()
