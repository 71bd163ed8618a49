"""
Collection alert endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .schemas import (
    AssignManagerRequest, ProcessAlertsRequest, RecordContactRequest, ResolveAlertRequest, parse_enum
)
from .system import ArrearsSystem, get_arrears_system
from ..models import AlertSeverity, AlertStatus, ContactOutcome, ContactType


router = APIRouter()


@router.get("")
async def list_alerts(
    status_filter: Optional[str] = Query(None, alias="status"),
    severity: Optional[str] = None,
    manager_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """List alerts, most severe first"""
    alerts = system.collections.get_alerts(
        status=parse_enum(AlertStatus, status_filter, "status"),
        severity=parse_enum(AlertSeverity, severity, "severity"),
        manager_id=manager_id,
        customer_id=customer_id,
    )
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.get("/summary")
async def get_summary(system: ArrearsSystem = Depends(get_arrears_system)):
    """Portfolio summary of the active alerts"""
    summary = system.collections.get_collection_summary()
    summary["total_overdue_amount"] = str(summary["total_overdue_amount"])
    summary["total_arrears_amount"] = str(summary["total_arrears_amount"])
    return summary


@router.post("/process")
async def process_alerts(
    request: ProcessAlertsRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Run the collection tier engine over the active alerts"""
    summary = system.tier_engine.process_alerts(today=request.today)
    return summary.to_dict()


@router.get("/{alert_id}")
async def get_alert(alert_id: str, system: ArrearsSystem = Depends(get_arrears_system)):
    """Get alert details"""
    return system.collections.require_alert(alert_id).to_dict()


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    request: ResolveAlertRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Resolve an alert manually"""
    alert = system.collections.resolve_alert(alert_id, request.expected_version, request.reason, request.user_id)
    return alert.to_dict()


@router.post("/{alert_id}/assign")
async def assign_manager(
    alert_id: str,
    request: AssignManagerRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Assign the responsible collection manager"""
    alert = system.collections.assign_manager(
        alert_id, request.manager_id, request.expected_version, request.user_id
    )
    return alert.to_dict()


@router.post("/{alert_id}/contacts", status_code=status.HTTP_201_CREATED)
async def record_contact(
    alert_id: str,
    request: RecordContactRequest,
    system: ArrearsSystem = Depends(get_arrears_system)
):
    """Record a contact attempt with the customer"""
    contact = system.collections.record_contact(
        alert_id,
        manager_id=request.manager_id,
        contact_type=parse_enum(ContactType, request.contact_type, "contact_type"),
        outcome=parse_enum(ContactOutcome, request.outcome, "outcome"),
        notes=request.notes,
        expected_version=request.expected_version,
        phone=request.phone,
        email=request.email,
    )
    return contact.to_dict()


@router.get("/{alert_id}/contacts")
async def list_contacts(alert_id: str, system: ArrearsSystem = Depends(get_arrears_system)):
    """Contact history of an alert"""
    contacts = system.collections.get_contacts(alert_id)
    return {"contacts": [c.to_dict() for c in contacts], "count": len(contacts)}
