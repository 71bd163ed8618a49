"""
Payment promise endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .schemas import FulfillPromiseRequest, RegisterPromiseRequest, parse_enum
from .system import ArrearsSystem, get_arrears_system
from ..models import ContactType, PromiseStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_promise(
    request: RegisterPromiseRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Register a promise to pay obtained on an alert"""
    promise = system.promises.register_promise(
        alert_id=request.alert_id,
        expected_version=request.expected_version,
        promised_date=request.promised_date,
        amount=request.amount,
        manager_id=request.manager_id,
        contact_type=parse_enum(ContactType, request.contact_type, "contact_type"),
        notes=request.notes,
    )
    return promise.to_dict()


@router.post("/{promise_id}/fulfill")
async def fulfill_promise(
    promise_id: str,
    request: FulfillPromiseRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Mark a promise fulfilled after payment detection"""
    promise = system.promises.mark_fulfilled(
        promise_id, request.paid_amount, request.expected_version, request.user_id
    )
    return promise.to_dict()


@router.get("")
async def list_promises(
    alert_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """List promises, optionally for one alert or status"""
    promises = system.promises.get_promises(alert_id, parse_enum(PromiseStatus, status_filter, "status"))
    return {"promises": [p.to_dict() for p in promises], "count": len(promises)}


@router.get("/{promise_id}")
async def get_promise(promise_id: str, system: ArrearsSystem = Depends(get_arrears_system)):
    """Get promise details"""
    return system.promises.require_promise(promise_id).to_dict()
