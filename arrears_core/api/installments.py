"""
Installment endpoints

Credit origination hands installments over here; the arrears engine only
ever changes their status afterwards.
"""

import uuid

from fastapi import APIRouter, Depends, status

from .schemas import RegisterInstallmentRequest, parse_enum
from .system import ArrearsSystem, get_arrears_system
from ..models import Installment, InstallmentStatus, to_money


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_installment(
    request: RegisterInstallmentRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Register an installment"""
    installment = Installment(
        id=request.id or str(uuid.uuid4()),
        credit_id=request.credit_id,
        customer_id=request.customer_id,
        number=request.number,
        due_date=request.due_date,
        capital=to_money(request.capital),
        interest=to_money(request.interest),
        paid_amount=to_money(request.paid_amount),
        status=parse_enum(InstallmentStatus, request.status, "status"),
    )
    system.installments.add_installment(installment)
    return installment.to_dict()


@router.get("/{installment_id}")
async def get_installment(
    installment_id: str,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Get installment details"""
    return system.installments.require_installment(installment_id).to_dict()


@router.get("/credit/{credit_id}")
async def list_credit_installments(
    credit_id: str,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Installments of a credit ordered by number"""
    installments = system.installments.get_installments_for_credit(credit_id)
    return {"installments": [i.to_dict() for i in installments], "count": len(installments)}
