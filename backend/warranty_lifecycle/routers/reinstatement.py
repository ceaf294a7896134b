"""
Reinstatement API Routes

Administrator endpoints for restoring lapsed (EXPIRED) warranties.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..database import get_db
from ..models.db_models import UserDB
from ..services.config import SystemConfigService
from ..services.lifecycle import ReinstatementService

router = APIRouter(prefix="/admin/reinstatement", tags=["reinstatement"])


def get_reinstatement_service(db: Session = Depends(get_db)) -> ReinstatementService:
    return ReinstatementService(db, SystemConfigService(db))


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ReinstateRequest(BaseModel):
    reason: str = Field(..., description="Why the warranty is being restored")
    notes: Optional[str] = None
    inspection_id: Optional[str] = Field(None, description="Verified inspection supporting the reinstatement")


class BulkReinstateRequest(BaseModel):
    warranty_ids: List[str]
    reason: str


# =============================================================================
# ENDPOINTS (ADMIN ONLY)
# =============================================================================

@router.get("/lapsed", response_model=dict)
async def list_lapsed_warranties(
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    """EXPIRED warranties with their reinstatement eligibility."""
    lapsed = service.get_lapsed_warranties()
    return {"count": len(lapsed), "warranties": lapsed}


@router.get("/statistics", response_model=dict)
async def get_reinstatement_statistics(
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    return service.get_statistics()


@router.post("/bulk", response_model=dict)
async def bulk_reinstate(
    request: BulkReinstateRequest,
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    """
    Reinstate several warranties with one reason.

    Failures are reported per warranty and don't stop the batch.
    """
    return service.bulk_reinstate(request.warranty_ids, admin, request.reason)


@router.get("/{warranty_id}/eligibility", response_model=dict)
async def check_eligibility(
    warranty_id: str,
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    return service.check_eligibility(warranty_id).to_dict()


@router.post("/{warranty_id}", response_model=dict)
async def reinstate_warranty(
    warranty_id: str,
    request: ReinstateRequest,
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    """
    Reinstate a lapsed warranty.

    The warranty becomes ACTIVE with a new inspection cycle starting today.
    """
    history = service.reinstate(
        warranty_id, admin, request.reason,
        notes=request.notes,
        inspection_id=request.inspection_id,
    )
    return {
        "success": True,
        "warranty_id": history.warranty_id,
        "reinstatement_id": history.id,
        "new_due_date": history.new_due_date.isoformat(),
        "new_grace_period_end": history.new_grace_period_end.isoformat(),
    }


@router.get("/{warranty_id}/history", response_model=dict)
async def get_reinstatement_history(
    warranty_id: str,
    service: ReinstatementService = Depends(get_reinstatement_service),
    admin: UserDB = Depends(require_admin),
):
    history = service.get_reinstatement_history(warranty_id)
    return {
        "warranty_id": warranty_id,
        "count": len(history),
        "history": [
            {
                "id": h.id,
                "reinstated_by": h.reinstated_by,
                "reinstated_at": h.reinstated_at.isoformat() if h.reinstated_at else None,
                "reason": h.reason,
                "notes": h.notes,
                "previous_lapse_date": h.previous_lapse_date.isoformat() if h.previous_lapse_date else None,
                "new_due_date": h.new_due_date.isoformat() if h.new_due_date else None,
                "new_grace_period_end": h.new_grace_period_end.isoformat() if h.new_grace_period_end else None,
                "inspection_id": h.inspection_id,
            }
            for h in history
        ],
    }
