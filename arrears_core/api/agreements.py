"""
Payment agreement endpoints
"""

from fastapi import APIRouter, Depends, status

from .schemas import (
    AgreementPaymentRequest, AgreementVersionRequest, CancelAgreementRequest, CreateAgreementRequest
)
from .system import ArrearsSystem, get_arrears_system
from ..agreements import AgreementTerms


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_agreement(
    request: CreateAgreementRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Draft a payment agreement; terms are checked against the policy first"""
    terms = AgreementTerms(
        alert_id=request.alert_id,
        manager_id=request.manager_id,
        original_debt=request.original_debt,
        original_arrears=request.original_arrears,
        initial_payment=request.initial_payment,
        installment_count=request.installment_count,
        first_installment_date=request.first_installment_date,
        condoned_amount=request.condoned_amount,
        notes=request.notes,
    )
    agreement = system.agreements.create_agreement(terms, expected_version=request.expected_version)
    return agreement.to_dict()


@router.get("/{agreement_id}")
async def get_agreement(agreement_id: str, system: ArrearsSystem = Depends(get_arrears_system)):
    """Get agreement details with its installment schedule"""
    agreement = system.agreements.require_agreement(agreement_id)
    data = agreement.to_dict()
    data["amount_paid"] = str(agreement.amount_paid)
    data["balance"] = str(agreement.balance)
    return data


@router.post("/{agreement_id}/confirm")
async def confirm_agreement(
    agreement_id: str,
    request: AgreementVersionRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Activate a draft agreement"""
    agreement = system.agreements.confirm_agreement(agreement_id, request.expected_version, request.user_id)
    return agreement.to_dict()


@router.post("/{agreement_id}/payments")
async def record_payment(
    agreement_id: str,
    request: AgreementPaymentRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Apply a payment to the initial payment or to one agreement installment"""
    if request.installment_number is None:
        agreement = system.agreements.record_initial_payment(
            agreement_id, request.amount, request.expected_version, request.user_id
        )
    else:
        agreement = system.agreements.record_installment_payment(
            agreement_id, request.installment_number, request.amount,
            request.expected_version, request.paid_on, request.user_id
        )
    return agreement.to_dict()


@router.post("/{agreement_id}/cancel")
async def cancel_agreement(
    agreement_id: str,
    request: CancelAgreementRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Cancel a draft or active agreement"""
    agreement = system.agreements.cancel_agreement(
        agreement_id, request.expected_version, request.reason, request.user_id
    )
    return agreement.to_dict()
