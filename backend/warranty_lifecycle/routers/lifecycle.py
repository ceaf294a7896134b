"""
Lifecycle API Routes

Endpoints for warranty registration and annual inspections.
Handles draft creation, submission, installer verification links, customer
activation links, audit history and administrative overrides.
"""
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..database import get_db
from ..models.db_models import InspectionDB, RecordType, UserDB
from ..services.config import SystemConfigService
from ..services.lifecycle import (
    LifecycleStateMachine,
    OverrideAction,
    TransitionResult,
    VerificationAction,
    AuditLedgerService,
)


router = APIRouter(tags=["lifecycle"])


def get_state_machine(db: Session = Depends(get_db)) -> LifecycleStateMachine:
    return LifecycleStateMachine(db, SystemConfigService(db))


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateWarrantyRequest(BaseModel):
    """Request to create a warranty draft."""
    vin_number: Optional[str] = Field(None, description="Vehicle identification number")
    make: Optional[str] = None
    model: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    installer_id: Optional[str] = Field(None, description="User responsible for verifying the installation")
    installation_date: Optional[date] = None
    generator_serial: Optional[str] = None
    photo_counts: Optional[Dict[str, int]] = Field(None, description="Uploaded photos per category")


class CreateInspectionRequest(BaseModel):
    """Request to create an annual inspection draft."""
    warranty_id: str
    installer_id: Optional[str] = Field(None, description="Inspector verifying the inspection")
    inspection_date: Optional[date] = None
    notes: Optional[str] = None
    photo_counts: Optional[Dict[str, int]] = None


class VerifyRequest(BaseModel):
    """Installer or inspector decision on a submission."""
    action: VerificationAction
    reason: Optional[str] = Field(None, description="Required when declining")


class ActivateRequest(BaseModel):
    """Customer acceptance of the warranty terms."""
    accepted: bool


class OverrideRequest(BaseModel):
    """Administrative override of a lifecycle status."""
    action: OverrideAction
    reason: str


# =============================================================================
# SERIALIZATION
# =============================================================================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _record_to_dict(record) -> Dict[str, Any]:
    data = {
        "id": record.id,
        "status": record.status.value,
        "vin_number": record.vin_number,
        "make": record.make,
        "model": record.model,
        "customer_name": record.customer_name,
        "customer_email": record.customer_email,
        "customer_phone": record.customer_phone,
        "installer_id": record.installer_id,
        "photo_counts": record.photo_counts or {},
        "submission_version": record.submission_version,
        "submitted_at": _iso(record.submitted_at),
        "verified_at": _iso(record.verified_at),
        "rejection_reason": record.rejection_reason,
        "due_date": _iso(record.due_date),
        "grace_period_end": _iso(record.grace_period_end),
        "is_overdue": bool(record.is_overdue),
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
    if isinstance(record, InspectionDB):
        data["warranty_id"] = record.warranty_id
        data["inspection_date"] = _iso(record.inspection_date)
        data["notes"] = record.notes
    else:
        data["is_active"] = bool(record.is_active)
        data["activated_at"] = _iso(record.activated_at)
        data["lapsed_at"] = _iso(record.lapsed_at)
        data["is_grace_expired"] = bool(record.is_grace_expired)
        data["is_reinstated"] = bool(record.is_reinstated)
        data["reinstatement_count"] = record.reinstatement_count or 0
        data["reminders_sent"] = record.reminders_sent or 0
    return data


def _transition_to_dict(result: TransitionResult) -> Dict[str, Any]:
    return {
        "record": _record_to_dict(result.record),
        "from_state": result.from_state,
        "to_state": result.to_state,
        "audit_version": result.audit_entry.version_number if result.audit_entry else None,
        "notifications": [n.to_dict() for n in result.notifications],
    }


def _audit_to_dict(entry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "version_number": entry.version_number,
        "is_current_version": bool(entry.is_current_version),
        "action_type": entry.action_type.value,
        "status_before": entry.status_before,
        "status_after": entry.status_after,
        "performed_by": entry.performed_by,
        "performed_at": _iso(entry.performed_at),
        "is_admin_override": bool(entry.is_admin_override),
        "reason": entry.reason,
        "notes": entry.notes,
        "is_archived": bool(entry.is_archived),
    }


# =============================================================================
# WARRANTIES
# =============================================================================

@router.post("/warranties", response_model=dict)
async def create_warranty(
    request: CreateWarrantyRequest,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    """Create a warranty registration in DRAFT."""
    warranty = machine.create_warranty(current_user.id, **request.model_dump())
    return _record_to_dict(warranty)


@router.get("/warranties/{warranty_id}", response_model=dict)
async def get_warranty(
    warranty_id: str,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    return _record_to_dict(machine.get_record(RecordType.WARRANTY, warranty_id))


@router.post("/warranties/{warranty_id}/submit", response_model=dict)
async def submit_warranty(
    warranty_id: str,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    """
    Submit a warranty for installer verification.

    Issues a verification link to the installer.
    """
    warranty = machine.get_record(RecordType.WARRANTY, warranty_id)
    return _transition_to_dict(machine.submit(warranty, current_user.id))


# =============================================================================
# INSPECTIONS
# =============================================================================

@router.post("/inspections", response_model=dict)
async def create_inspection(
    request: CreateInspectionRequest,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    """Create an annual inspection in DRAFT for an active or lapsed warranty."""
    fields = request.model_dump(exclude={"warranty_id"})
    inspection = machine.create_inspection(request.warranty_id, current_user.id, **fields)
    return _record_to_dict(inspection)


@router.get("/inspections/{inspection_id}", response_model=dict)
async def get_inspection(
    inspection_id: str,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    return _record_to_dict(machine.get_record(RecordType.INSPECTION, inspection_id))


@router.post("/inspections/{inspection_id}/submit", response_model=dict)
async def submit_inspection(
    inspection_id: str,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    current_user: UserDB = Depends(get_current_user),
):
    inspection = machine.get_record(RecordType.INSPECTION, inspection_id)
    return _transition_to_dict(machine.submit(inspection, current_user.id))


# =============================================================================
# AUDIT HISTORY
# =============================================================================

def _history(db: Session, record_type: RecordType, record_id: str, include_archived: bool) -> Dict[str, Any]:
    entries = AuditLedgerService(db).get_history(record_type, record_id, include_archived)
    return {
        "record_type": record_type.value,
        "record_id": record_id,
        "count": len(entries),
        "entries": [_audit_to_dict(e) for e in entries],
    }


def _history_version(db: Session, record_type: RecordType, record_id: str, version_number: int) -> Dict[str, Any]:
    entry = AuditLedgerService(db).get_version(record_type, record_id, version_number)
    data = _audit_to_dict(entry)
    data["snapshot"] = entry.submission_snapshot or {}
    return data


@router.get("/warranties/{warranty_id}/history", response_model=dict)
async def get_warranty_history(
    warranty_id: str,
    include_archived: bool = True,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Full audit trail of a warranty, oldest first."""
    return _history(db, RecordType.WARRANTY, warranty_id, include_archived)


@router.get("/warranties/{warranty_id}/history/{version_number}", response_model=dict)
async def get_warranty_history_version(
    warranty_id: str,
    version_number: int,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """One audit version with the record snapshot taken at that point."""
    return _history_version(db, RecordType.WARRANTY, warranty_id, version_number)


@router.get("/inspections/{inspection_id}/history", response_model=dict)
async def get_inspection_history(
    inspection_id: str,
    include_archived: bool = True,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    return _history(db, RecordType.INSPECTION, inspection_id, include_archived)


@router.get("/inspections/{inspection_id}/history/{version_number}", response_model=dict)
async def get_inspection_history_version(
    inspection_id: str,
    version_number: int,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    return _history_version(db, RecordType.INSPECTION, inspection_id, version_number)


# =============================================================================
# TOKEN LINKS (no login, the token is the credential)
# =============================================================================

@router.post("/verify/{token}", response_model=dict)
async def verify_submission(
    token: str,
    request: VerifyRequest,
    machine: LifecycleStateMachine = Depends(get_state_machine),
):
    """
    Installer or inspector confirms or declines a submission.

    A confirmed warranty moves to PENDING_CUSTOMER_ACTIVATION and the customer
    receives an activation link. A confirmed inspection extends the warranty.
    """
    return _transition_to_dict(machine.verify(token, request.action, request.reason))


@router.post("/activate/{token}", response_model=dict)
async def activate_warranty(
    token: str,
    request: ActivateRequest,
    machine: LifecycleStateMachine = Depends(get_state_machine),
):
    """Customer accepts the warranty terms. The warranty becomes ACTIVE."""
    return _transition_to_dict(machine.accept_activation(token, request.accepted))


# =============================================================================
# ADMIN OVERRIDE
# =============================================================================

@router.post("/admin/override/{record_type}/{record_id}", response_model=dict)
async def admin_override(
    record_type: RecordType,
    record_id: str,
    request: OverrideRequest,
    machine: LifecycleStateMachine = Depends(get_state_machine),
    admin: UserDB = Depends(require_admin),
):
    """
    Apply a status change on behalf of an administrator.

    Bypasses token validation; outstanding links of the record stop working.
    """
    result = machine.admin_override(record_type, record_id, request.action, request.reason, admin)
    return _transition_to_dict(result)


@router.get("/admin/override/actions", response_model=dict)
async def list_override_actions(admin: UserDB = Depends(require_admin)):
    return {
        RecordType.WARRANTY.value: [a.value for a in OverrideAction],
        RecordType.INSPECTION.value: [OverrideAction.VERIFY.value, OverrideAction.REJECT.value],
    }
