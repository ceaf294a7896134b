"""
Warranty Reinstatement Service

AUTHORITY: ADMIN
Restores warranties that lapsed at the end of their grace period.

Key behaviors:
- Only EXPIRED warranties are eligible
- A reason is mandatory and the REINSTATEMENT_ALLOWED setting must be on
- Reinstatement starts a fresh cycle from today and schedules a new reminder set
- Every reinstatement is kept in warranty_reinstatements and in the audit ledger
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import (
    WarrantyDB, InspectionDB, UserDB, WarrantyReinstatementDB,
    WarrantyStatus, InspectionStatus, RecordType,
)
from ..config.system_config import ConfigurationProvider, StaticConfigProvider, GRACE_PERIOD
from ..scheduling.clock import SystemClock
from .errors import PermissionDeniedError, RecordNotFoundError, ValidationError, LifecycleError
from .state_machine import LifecycleStateMachine

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    """Whether a warranty can be reinstated, and why."""
    eligible: bool
    reason: str
    has_completed_inspection: bool = False
    inspection_id: Optional[str] = None
    lapsed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "has_completed_inspection": self.has_completed_inspection,
            "inspection_id": self.inspection_id,
            "lapsed_at": self.lapsed_at.isoformat() if self.lapsed_at else None,
        }


class ReinstatementService:
    """Administrative reinstatement of lapsed warranties."""

    def __init__(
        self,
        db_session: Session,
        config: Optional[ConfigurationProvider] = None,
        clock=None,
        state_machine: Optional[LifecycleStateMachine] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.config = config or StaticConfigProvider()
        self.clock = clock or SystemClock()
        self.state_machine = state_machine or LifecycleStateMachine(
            db_session, self.config, self.clock
        )

    # =========================================================================
    # ELIGIBILITY
    # =========================================================================

    def _latest_inspection_after_lapse(self, warranty: WarrantyDB) -> Optional[InspectionDB]:
        query = self.db.query(InspectionDB).filter(
            InspectionDB.warranty_id == warranty.id,
            InspectionDB.status == InspectionStatus.VERIFIED,
        )
        if warranty.lapsed_at is not None:
            query = query.filter(InspectionDB.verified_at > warranty.lapsed_at)
        return query.order_by(InspectionDB.verified_at.desc()).first()

    def check_eligibility(self, warranty_id: str) -> EligibilityResult:
        warranty = self.db.query(WarrantyDB).filter(WarrantyDB.id == warranty_id).first()
        if warranty is None:
            return EligibilityResult(eligible=False, reason="Warranty not found")

        if warranty.status == WarrantyStatus.ACTIVE:
            return EligibilityResult(eligible=False, reason="Warranty is already active")

        if warranty.status != WarrantyStatus.EXPIRED:
            return EligibilityResult(
                eligible=False,
                reason="Warranty has not lapsed and does not require reinstatement",
            )

        inspection = self._latest_inspection_after_lapse(warranty)
        return EligibilityResult(
            eligible=True,
            reason=(
                "Eligible for reinstatement with completed inspection" if inspection
                else "Eligible for reinstatement (admin discretion)"
            ),
            has_completed_inspection=inspection is not None,
            inspection_id=inspection.id if inspection else None,
            lapsed_at=warranty.lapsed_at,
        )

    # =========================================================================
    # REINSTATE
    # =========================================================================

    def reinstate(
        self,
        warranty_id: str,
        admin: UserDB,
        reason: str,
        notes: Optional[str] = None,
        inspection_id: Optional[str] = None,
    ) -> WarrantyReinstatementDB:
        """
        Reinstate an EXPIRED warranty.

        Raises:
            PermissionDeniedError: actor is not an administrator
            ValidationError: empty reason, reinstatement disabled, or not eligible
        """
        if admin is None or not admin.is_admin:
            raise PermissionDeniedError("Only administrators can reinstate warranties")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reinstate a warranty")
        if not self.config.get_bool(GRACE_PERIOD, "REINSTATEMENT_ALLOWED"):
            raise ValidationError("Warranty reinstatement is disabled")

        eligibility = self.check_eligibility(warranty_id)
        if not eligibility.eligible:
            if eligibility.reason == "Warranty not found":
                raise RecordNotFoundError(f"Warranty {warranty_id} not found")
            raise ValidationError(eligibility.reason)

        warranty = self.state_machine.get_record(RecordType.WARRANTY, warranty_id)
        previous_lapse = warranty.lapsed_at

        try:
            _, cycle = self.state_machine.reinstate_transition(
                warranty, admin.id, reason.strip(), notes
            )
            history = WarrantyReinstatementDB(
                id=str(uuid4()),
                warranty_id=warranty.id,
                reinstated_by=admin.id,
                reinstated_at=self.clock.now(),
                reason=reason.strip(),
                notes=notes,
                previous_lapse_date=previous_lapse,
                new_due_date=cycle.due_date,
                new_grace_period_end=cycle.grace_period_end,
                inspection_id=inspection_id or eligibility.inspection_id,
            )
            self.db.add(history)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Warranty {warranty.id} reinstated by {admin.id}; next inspection due "
            f"{cycle.due_date.isoformat()}"
        )
        return history

    def bulk_reinstate(
        self,
        warranty_ids: List[str],
        admin: UserDB,
        reason: str,
    ) -> Dict[str, Any]:
        """Reinstate several warranties; failures don't stop the batch."""
        successful = []
        failed = []

        for warranty_id in warranty_ids:
            try:
                self.reinstate(warranty_id, admin, reason, notes="Bulk reinstatement operation")
                successful.append(warranty_id)
            except LifecycleError as e:
                failed.append({"warranty_id": warranty_id, "error": e.message})

        logger.info(f"Bulk reinstatement complete: {len(successful)} successful, {len(failed)} failed")
        return {"successful": successful, "failed": failed}

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_lapsed_warranties(self) -> List[Dict[str, Any]]:
        """EXPIRED warranties with their eligibility details."""
        lapsed = self.db.query(WarrantyDB).filter(
            WarrantyDB.status == WarrantyStatus.EXPIRED
        ).order_by(WarrantyDB.lapsed_at.desc()).all()

        results = []
        for warranty in lapsed:
            inspection = self._latest_inspection_after_lapse(warranty)
            days_lapsed = None
            if warranty.lapsed_at:
                days_lapsed = (self.clock.now() - warranty.lapsed_at).days
            results.append({
                "warranty_id": warranty.id,
                "vin_number": warranty.vin_number,
                "customer_name": warranty.customer_name,
                "customer_email": warranty.customer_email,
                "due_date": warranty.due_date.isoformat() if warranty.due_date else None,
                "grace_period_end": warranty.grace_period_end.isoformat() if warranty.grace_period_end else None,
                "lapsed_at": warranty.lapsed_at.isoformat() if warranty.lapsed_at else None,
                "days_lapsed": days_lapsed,
                "reinstatement_count": warranty.reinstatement_count or 0,
                "has_completed_inspection": inspection is not None,
                "inspection_id": inspection.id if inspection else None,
            })
        return results

    def get_reinstatement_history(self, warranty_id: str) -> List[WarrantyReinstatementDB]:
        return self.db.query(WarrantyReinstatementDB).filter(
            WarrantyReinstatementDB.warranty_id == warranty_id
        ).order_by(WarrantyReinstatementDB.reinstated_at.desc()).all()

    def get_statistics(self) -> Dict[str, Any]:
        now = self.clock.now()

        lapsed = self.db.query(WarrantyDB).filter(
            WarrantyDB.status == WarrantyStatus.EXPIRED
        ).all()
        lapsed_with_inspection = sum(
            1 for w in lapsed if self._latest_inspection_after_lapse(w) is not None
        )

        total_reinstated = self.db.query(
            func.count(func.distinct(WarrantyReinstatementDB.warranty_id))
        ).scalar() or 0
        recent = self.db.query(
            func.count(func.distinct(WarrantyReinstatementDB.warranty_id))
        ).filter(
            WarrantyReinstatementDB.reinstated_at >= now - timedelta(days=30)
        ).scalar() or 0

        return {
            "total_lapsed_warranties": len(lapsed),
            "eligible_for_reinstatement": len(lapsed),
            "lapsed_with_completed_inspection": lapsed_with_inspection,
            "total_reinstated_warranties": total_reinstated,
            "reinstated_last_30_days": recent,
        }
