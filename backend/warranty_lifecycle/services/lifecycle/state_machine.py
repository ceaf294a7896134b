"""
Lifecycle State Machine

Deterministic workflow for warranties and annual inspections.

Warranty:   DRAFT -> SUBMITTED -> PENDING_CUSTOMER_ACTIVATION -> ACTIVE -> EXPIRED
            REJECTED from SUBMITTED or PENDING_CUSTOMER_ACTIVATION, REJECTED -> SUBMITTED
            EXPIRED -> ACTIVE only through reinstatement
            CANCELLED from any non-terminal state by admin override (terminal)
Inspection: DRAFT -> SUBMITTED -> VERIFIED | REJECTED, REJECTED -> SUBMITTED

The state machine is the only writer of status and compliance date fields.
Every transition:
- checks the transition table before touching anything
- is a conditional UPDATE on (id, status, row_version), so of two concurrent
  writers exactly one wins and the other gets ConcurrencyConflict
- appends one audit entry in the same transaction
- sends notifications only after commit; delivery failures are logged
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    WarrantyDB, InspectionDB, UserDB, VerificationTokenDB, AuditEntryDB,
    WarrantyStatus, InspectionStatus, TokenType, RecordType, AuditActionType,
    SYSTEM_ACTOR,
)
from ..config.system_config import ConfigurationProvider, StaticConfigProvider, VERIFICATION_RULES
from ..notifications import templates
from ..notifications.gateway import DeliveryResult, NotificationGateway, get_notification_gateway
from ..scheduling.clock import SystemClock
from ..scheduling.date_policy import CycleDates, DatePolicyConfig, compute_cycle, cycle_for_due
from ..scheduling.reminder_entries import ReminderEntryService
from .audit_ledger import AuditLedgerService
from .errors import (
    ConcurrencyConflict, IllegalTransitionError, PermissionDeniedError,
    RecordNotFoundError, TokenError, TokenFailure, ValidationError,
)
from .submission_gate import PhotoCountCompletenessChecker, SubmissionCompletenessChecker
from .token_store import TokenStore

logger = logging.getLogger(__name__)

LifecycleRecord = Union[WarrantyDB, InspectionDB]


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# ENTRY AUTHORITY:
# - INSTALLER: submission, confirmation or decline through a verification link
# - CUSTOMER: acceptance of the warranty terms through an activation link
# - SYSTEM: grace period expiry by the scheduler
# - ADMIN: override, cancellation and reinstatement
#
# =============================================================================

WARRANTY_STATE_CONFIG = {
    WarrantyStatus.DRAFT: {
        "description": "Registration being prepared by the installer",
        "allowed_transitions": [WarrantyStatus.SUBMITTED, WarrantyStatus.CANCELLED],
        "entry_authority": "INSTALLER",
    },
    WarrantyStatus.SUBMITTED: {
        "description": "Submitted, awaiting installer verification",
        "allowed_transitions": [
            WarrantyStatus.PENDING_CUSTOMER_ACTIVATION,
            WarrantyStatus.REJECTED,
            WarrantyStatus.CANCELLED,
        ],
        "entry_authority": "INSTALLER",
    },
    WarrantyStatus.PENDING_CUSTOMER_ACTIVATION: {
        "description": "Verified, awaiting customer acceptance of terms",
        "allowed_transitions": [
            WarrantyStatus.ACTIVE,
            WarrantyStatus.REJECTED,
            WarrantyStatus.CANCELLED,
        ],
        "entry_authority": "INSTALLER",
    },
    WarrantyStatus.ACTIVE: {
        "description": "In force, subject to annual inspection",
        "allowed_transitions": [WarrantyStatus.EXPIRED, WarrantyStatus.CANCELLED],
        "entry_authority": "CUSTOMER",
    },
    WarrantyStatus.EXPIRED: {
        "description": "Grace period ended without a verified inspection",
        "allowed_transitions": [WarrantyStatus.ACTIVE, WarrantyStatus.CANCELLED],  # ACTIVE via reinstatement
        "entry_authority": "SYSTEM",
    },
    WarrantyStatus.REJECTED: {
        "description": "Declined by installer or administrator",
        "allowed_transitions": [WarrantyStatus.SUBMITTED, WarrantyStatus.CANCELLED],
        "entry_authority": "INSTALLER",
    },
    WarrantyStatus.CANCELLED: {
        "description": "Cancelled by administrator",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "ADMIN",
    },
}

INSPECTION_STATE_CONFIG = {
    InspectionStatus.DRAFT: {
        "description": "Inspection being prepared by the inspector",
        "allowed_transitions": [InspectionStatus.SUBMITTED],
        "entry_authority": "INSTALLER",
    },
    InspectionStatus.SUBMITTED: {
        "description": "Submitted, awaiting inspector verification",
        "allowed_transitions": [InspectionStatus.VERIFIED, InspectionStatus.REJECTED],
        "entry_authority": "INSTALLER",
    },
    InspectionStatus.VERIFIED: {
        "description": "Verified, warranty extended by one cycle",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "INSTALLER",
    },
    InspectionStatus.REJECTED: {
        "description": "Declined by inspector or administrator",
        "allowed_transitions": [InspectionStatus.SUBMITTED],
        "entry_authority": "INSTALLER",
    },
}


class VerificationAction(str, Enum):
    CONFIRM = "CONFIRM"
    DECLINE = "DECLINE"


class OverrideAction(str, Enum):
    VERIFY = "VERIFY"
    REJECT = "REJECT"
    ACTIVATE = "ACTIVATE"
    CANCEL = "CANCEL"


INSTALLER_TOKEN_FOR = {
    RecordType.WARRANTY: TokenType.WARRANTY_INSTALLER,
    RecordType.INSPECTION: TokenType.INSPECTION_INSTALLER,
}


@dataclass
class TransitionResult:
    """Outcome of a committed transition."""
    record: Any
    from_state: Optional[str]
    to_state: str
    token: Optional[VerificationTokenDB] = None
    audit_entry: Optional[AuditEntryDB] = None
    notifications: List[DeliveryResult] = field(default_factory=list)


def record_type_of(record: LifecycleRecord) -> RecordType:
    return RecordType.WARRANTY if isinstance(record, WarrantyDB) else RecordType.INSPECTION


# =============================================================================
# STATE MACHINE
# =============================================================================

class LifecycleStateMachine:
    """
    Workflow engine for warranties and inspections.

    Public operations commit their own transaction and roll it back on any
    error. Guard failures raise before any write.
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[ConfigurationProvider] = None,
        clock=None,
        gateway: Optional[NotificationGateway] = None,
        completeness_checker: Optional[SubmissionCompletenessChecker] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.config = config or StaticConfigProvider()
        self.clock = clock or SystemClock()
        self.gateway = gateway or get_notification_gateway()
        self.completeness_checker = completeness_checker or PhotoCountCompletenessChecker(self.config)
        self.tokens = TokenStore(db_session, self.config, self.clock)
        self.audit = AuditLedgerService(db_session, self.clock)
        self.reminders = ReminderEntryService(db_session, self.clock)

    # =========================================================================
    # TRANSITION TABLE
    # =========================================================================

    @staticmethod
    def state_config_for(record_type: RecordType) -> Dict:
        if record_type == RecordType.WARRANTY:
            return WARRANTY_STATE_CONFIG
        return INSPECTION_STATE_CONFIG

    def can_transition(self, from_state, to_state) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        table = WARRANTY_STATE_CONFIG if isinstance(from_state, WarrantyStatus) else INSPECTION_STATE_CONFIG
        allowed_transitions = table.get(from_state, {}).get("allowed_transitions", [])

        if to_state in allowed_transitions:
            return True, "Transition allowed"

        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def is_terminal_state(self, state) -> bool:
        table = WARRANTY_STATE_CONFIG if isinstance(state, WarrantyStatus) else INSPECTION_STATE_CONFIG
        return len(table.get(state, {}).get("allowed_transitions", [])) == 0

    def _require_transition(self, record: LifecycleRecord, to_state) -> None:
        allowed, reason = self.can_transition(record.status, to_state)
        if not allowed:
            raise IllegalTransitionError(reason)

    def _guarded_update(self, record: LifecycleRecord, values: Dict[str, Any]) -> None:
        """
        Write `values` only if the record is unchanged since it was read.

        Bumps row_version. Raises ConcurrencyConflict when another writer got
        there first.
        """
        model = type(record)
        expected_status = record.status
        expected_version = record.row_version

        values = dict(values)
        values["row_version"] = expected_version + 1
        values["updated_at"] = self.clock.now()

        updated = self.db.query(model).filter(
            model.id == record.id,
            model.status == expected_status,
            model.row_version == expected_version,
        ).update(values, synchronize_session=False)

        if updated != 1:
            logger.warning(
                f"Concurrent modification of {model.__tablename__} {record.id} "
                f"(status={expected_status.value}, row_version={expected_version})"
            )
            raise ConcurrencyConflict("The record was changed by another request, please retry")

        self.db.refresh(record)

    def _transition(self, record: LifecycleRecord, to_state, values: Optional[Dict[str, Any]] = None):
        """Checked, guarded status change. Returns the previous status."""
        from_state = record.status
        self._require_transition(record, to_state)
        payload = dict(values or {})
        payload["status"] = to_state
        self._guarded_update(record, payload)
        logger.info(
            f"{type(record).__tablename__} {record.id}: {from_state.value} -> {to_state.value}"
        )
        return from_state

    def _commit(self) -> None:
        self.db.commit()

    def _date_config(self) -> DatePolicyConfig:
        return DatePolicyConfig.from_provider(self.config)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_record(self, record_type: RecordType, record_id: str) -> LifecycleRecord:
        model = WarrantyDB if record_type == RecordType.WARRANTY else InspectionDB
        record = self.db.query(model).filter(model.id == record_id).first()
        if record is None:
            raise RecordNotFoundError(f"{record_type.value.title()} {record_id} not found")
        return record

    # =========================================================================
    # DRAFTS
    # =========================================================================

    def create_warranty(self, actor_id: str, **fields) -> WarrantyDB:
        """Create a warranty in DRAFT."""
        warranty = WarrantyDB(
            id=str(uuid4()),
            status=WarrantyStatus.DRAFT,
            created_by=actor_id,
            row_version=1,
            submission_version=0,
            photo_counts=fields.pop("photo_counts", None) or {},
            **fields,
        )
        try:
            self.db.add(warranty)
            self.db.flush()
            self.audit.append_for(warranty, AuditActionType.CREATE, actor_id)
            self._commit()
        except Exception:
            self.db.rollback()
            raise
        return warranty

    def create_inspection(self, warranty_id: str, actor_id: str, **fields) -> InspectionDB:
        """Create an inspection in DRAFT for an existing warranty."""
        warranty = self.get_record(RecordType.WARRANTY, warranty_id)
        if warranty.status not in (WarrantyStatus.ACTIVE, WarrantyStatus.EXPIRED):
            raise ValidationError(
                f"Inspections can only be recorded for active or lapsed warranties "
                f"(warranty is {warranty.status.value})"
            )

        inspection = InspectionDB(
            id=str(uuid4()),
            warranty_id=warranty.id,
            status=InspectionStatus.DRAFT,
            created_by=actor_id,
            row_version=1,
            submission_version=0,
            vin_number=fields.pop("vin_number", None) or warranty.vin_number,
            make=fields.pop("make", None) or warranty.make,
            model=fields.pop("model", None) or warranty.model,
            customer_name=fields.pop("customer_name", None) or warranty.customer_name,
            customer_email=fields.pop("customer_email", None) or warranty.customer_email,
            customer_phone=fields.pop("customer_phone", None) or warranty.customer_phone,
            photo_counts=fields.pop("photo_counts", None) or {},
            **fields,
        )
        try:
            self.db.add(inspection)
            self.db.flush()
            self.audit.append_for(inspection, AuditActionType.CREATE, actor_id)
            self._commit()
        except Exception:
            self.db.rollback()
            raise
        return inspection

    # =========================================================================
    # SUBMIT
    # =========================================================================

    def submit(self, record: LifecycleRecord, actor_id: str) -> TransitionResult:
        """
        Submit a DRAFT or REJECTED record for installer/inspector verification.

        Issues an installer token and texts the verification link after commit.
        """
        record_type = record_type_of(record)
        to_state = WarrantyStatus.SUBMITTED if record_type == RecordType.WARRANTY else InspectionStatus.SUBMITTED

        if not record.installer_id:
            raise ValidationError("An installer must be assigned before submission")
        if not record.vin_number:
            raise ValidationError("VIN number is required")
        missing = self.completeness_checker.missing_items(record)
        if missing:
            raise ValidationError(f"Submission incomplete: {'; '.join(missing)}")
        self._require_transition(record, to_state)

        if record_type == RecordType.INSPECTION:
            warranty = self.get_record(RecordType.WARRANTY, record.warranty_id)
            if warranty.status not in (WarrantyStatus.ACTIVE, WarrantyStatus.EXPIRED):
                raise ValidationError(
                    f"Warranty {warranty.id} is {warranty.status.value}; inspections cannot be submitted"
                )

        try:
            from_state = self._transition(record, to_state, {
                "submission_version": (record.submission_version or 0) + 1,
                "submitted_at": self.clock.now(),
                "rejection_reason": None,
                "rejected_at": None,
            })
            token = self.tokens.issue(
                INSTALLER_TOKEN_FOR[record_type],
                record.id,
                user_id=record.installer_id,
            )
            entry = self.audit.append_for(
                record, AuditActionType.SUBMIT, actor_id,
                status_before=from_state,
                notes=f"Submission version {record.submission_version}",
            )
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        result = TransitionResult(record, from_state.value, record.status.value, token, entry)
        result.notifications.extend(self._notify_installer(record, record_type, token))
        return result

    # =========================================================================
    # VERIFY (installer / inspector)
    # =========================================================================

    def verify(
        self,
        token_value: str,
        action: VerificationAction,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Installer or inspector confirms or declines a submission via their token.

        The token is consumed in the same transaction either way.
        """
        action = VerificationAction(action)
        token = self.tokens.validate(token_value).raise_for_failure()
        if token.type == TokenType.WARRANTY_INSTALLER:
            record_type = RecordType.WARRANTY
        elif token.type == TokenType.INSPECTION_INSTALLER:
            record_type = RecordType.INSPECTION
        else:
            raise TokenError(TokenFailure.WRONG_TYPE)

        record = self.get_record(record_type, token.record_id)
        performed_by = token.user_id or record.installer_id or SYSTEM_ACTOR

        if action == VerificationAction.DECLINE:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to decline a submission")
            to_state = WarrantyStatus.REJECTED if record_type == RecordType.WARRANTY else InspectionStatus.REJECTED
        elif record_type == RecordType.WARRANTY:
            to_state = WarrantyStatus.PENDING_CUSTOMER_ACTIVATION
        else:
            to_state = InspectionStatus.VERIFIED
        self._require_transition(record, to_state)

        try:
            self.tokens.consume(token_value)
            if action == VerificationAction.DECLINE:
                result = self._reject(record, performed_by, reason.strip())
            elif record_type == RecordType.WARRANTY:
                result = self._confirm_warranty(record, performed_by)
            else:
                result = self._confirm_inspection(record, performed_by)
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        result.notifications.extend(self._after_commit_notifications(result))
        return result

    def _reject(
        self,
        record: LifecycleRecord,
        performed_by: str,
        reason: str,
        is_admin_override: bool = False,
    ) -> TransitionResult:
        to_state = WarrantyStatus.REJECTED if isinstance(record, WarrantyDB) else InspectionStatus.REJECTED
        from_state = self._transition(record, to_state, {
            "rejection_reason": reason,
            "rejected_at": self.clock.now(),
        })
        entry = self.audit.append_for(
            record,
            AuditActionType.ADMIN_OVERRIDE if is_admin_override else AuditActionType.REJECT,
            performed_by,
            status_before=from_state,
            reason=reason,
            notes=f"Override action: {OverrideAction.REJECT.value}" if is_admin_override else None,
            is_admin_override=is_admin_override,
        )
        return TransitionResult(record, from_state.value, record.status.value, audit_entry=entry)

    def _confirm_warranty(
        self,
        warranty: WarrantyDB,
        performed_by: str,
        is_admin_override: bool = False,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        from_state = self._transition(warranty, WarrantyStatus.PENDING_CUSTOMER_ACTIVATION, {
            "verified_at": self.clock.now(),
            "verified_by": performed_by,
        })
        token = self.tokens.issue(
            TokenType.CUSTOMER_ACTIVATION,
            warranty.id,
            customer_email=warranty.customer_email,
            customer_phone=warranty.customer_phone,
        )
        entry = self.audit.append_for(
            warranty,
            AuditActionType.ADMIN_OVERRIDE if is_admin_override else AuditActionType.VERIFY,
            performed_by,
            status_before=from_state,
            reason=reason,
            notes=f"Override action: {OverrideAction.VERIFY.value}" if is_admin_override else None,
            is_admin_override=is_admin_override,
        )
        return TransitionResult(warranty, from_state.value, warranty.status.value, token, entry)

    def _confirm_inspection(
        self,
        inspection: InspectionDB,
        performed_by: str,
        is_admin_override: bool = False,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        today = self.clock.today()
        from_state = self._transition(inspection, InspectionStatus.VERIFIED, {
            "verified_at": self.clock.now(),
            "verified_by": performed_by,
            "inspection_date": inspection.inspection_date or today,
        })
        entry = self.audit.append_for(
            inspection,
            AuditActionType.ADMIN_OVERRIDE if is_admin_override else AuditActionType.VERIFY,
            performed_by,
            status_before=from_state,
            reason=reason,
            notes=f"Override action: {OverrideAction.VERIFY.value}" if is_admin_override else None,
            is_admin_override=is_admin_override,
        )

        warranty = self.get_record(RecordType.WARRANTY, inspection.warranty_id)
        if warranty.status == WarrantyStatus.ACTIVE:
            self._extend_cycle(warranty, today, performed_by, inspection.id)
        else:
            logger.info(
                f"Inspection {inspection.id} verified but warranty {warranty.id} is "
                f"{warranty.status.value}; cycle not extended"
            )

        return TransitionResult(inspection, from_state.value, inspection.status.value, audit_entry=entry)

    def _extend_cycle(self, warranty: WarrantyDB, anchor: date, performed_by: str, inspection_id: str) -> CycleDates:
        """Start a new cycle anchored on the verification date."""
        cycle = compute_cycle(anchor, self._date_config(), self.clock.today())
        previous_due = warranty.due_date
        self._guarded_update(warranty, {
            "due_date": cycle.due_date,
            "grace_period_end": cycle.grace_period_end,
            "is_overdue": False,
            "is_grace_expired": False,
        })
        self.reminders.cancel_outstanding(warranty.id)
        self.reminders.schedule_cycle(warranty, cycle, self.clock.today())
        self.audit.append_for(
            warranty, AuditActionType.CYCLE_EXTENDED, performed_by,
            status_before=warranty.status,
            notes=(
                f"Inspection {inspection_id} verified; due date "
                f"{previous_due.isoformat() if previous_due else 'unset'} -> {cycle.due_date.isoformat()}"
            ),
        )
        return cycle

    # =========================================================================
    # CUSTOMER ACTIVATION
    # =========================================================================

    def accept_activation(self, token_value: str, accepted: bool) -> TransitionResult:
        """Customer accepts the warranty terms; the warranty becomes ACTIVE."""
        if not accepted:
            raise ValidationError("The warranty terms must be accepted to activate the warranty")

        token = self.tokens.validate(token_value, TokenType.CUSTOMER_ACTIVATION).raise_for_failure()
        warranty = self.get_record(RecordType.WARRANTY, token.record_id)
        self._require_transition(warranty, WarrantyStatus.ACTIVE)
        performed_by = token.customer_email or "CUSTOMER"

        try:
            self.tokens.consume(token_value, TokenType.CUSTOMER_ACTIVATION)
            result = self._activate(warranty, performed_by, terms_accepted=True)
            self._commit()
        except Exception:
            self.db.rollback()
            raise
        return result

    def _activate(
        self,
        warranty: WarrantyDB,
        performed_by: str,
        terms_accepted: bool = False,
        is_admin_override: bool = False,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        now = self.clock.now()
        # First cycle runs from installation; activation date when none was recorded
        anchor = warranty.installation_date or now.date()
        cycle = compute_cycle(anchor, self._date_config(), now.date())
        values = {
            "is_active": True,
            "activated_at": now,
            "due_date": cycle.due_date,
            "grace_period_end": cycle.grace_period_end,
            "is_overdue": False,
            "is_grace_expired": False,
        }
        if terms_accepted:
            values["terms_accepted_at"] = now
        from_state = self._transition(warranty, WarrantyStatus.ACTIVE, values)
        self.reminders.schedule_cycle(warranty, cycle, now.date())
        entry = self.audit.append_for(
            warranty,
            AuditActionType.ADMIN_OVERRIDE if is_admin_override else AuditActionType.ACTIVATE,
            performed_by,
            status_before=from_state,
            reason=reason,
            notes=(
                f"Override action: {OverrideAction.ACTIVATE.value}" if is_admin_override
                else f"Terms accepted; first inspection due {cycle.due_date.isoformat()}"
            ),
            is_admin_override=is_admin_override,
        )
        return TransitionResult(warranty, from_state.value, warranty.status.value, audit_entry=entry)

    # =========================================================================
    # ADMIN OVERRIDE
    # =========================================================================

    def admin_override(
        self,
        record_type: RecordType,
        record_id: str,
        action: OverrideAction,
        reason: str,
        actor: UserDB,
    ) -> TransitionResult:
        """
        Apply a transition on behalf of an administrator, without token validation.

        Outstanding tokens of the record are invalidated. The audit entry is
        ADMIN_OVERRIDE with the requested action in its notes.
        """
        action = OverrideAction(action)
        if actor is None or not actor.is_admin:
            raise PermissionDeniedError("Only administrators can override lifecycle status")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for an administrative override")
        reason = reason.strip()

        record = self.get_record(record_type, record_id)

        if record_type == RecordType.WARRANTY:
            targets = {
                OverrideAction.VERIFY: WarrantyStatus.PENDING_CUSTOMER_ACTIVATION,
                OverrideAction.REJECT: WarrantyStatus.REJECTED,
                OverrideAction.ACTIVATE: WarrantyStatus.ACTIVE,
                OverrideAction.CANCEL: WarrantyStatus.CANCELLED,
            }
        else:
            targets = {
                OverrideAction.VERIFY: InspectionStatus.VERIFIED,
                OverrideAction.REJECT: InspectionStatus.REJECTED,
            }
        if action not in targets:
            raise IllegalTransitionError(
                f"{action.value} is not a valid override for {record_type.value.lower()}s"
            )
        if action == OverrideAction.ACTIVATE and record.status != WarrantyStatus.PENDING_CUSTOMER_ACTIVATION:
            # EXPIRED -> ACTIVE belongs to ReinstatementService
            raise IllegalTransitionError(
                f"Cannot activate a warranty in {record.status.value}; "
                "lapsed warranties are restored through reinstatement"
            )
        self._require_transition(record, targets[action])

        try:
            invalidated = self.tokens.invalidate_for_record(record.id)
            if action == OverrideAction.VERIFY and record_type == RecordType.WARRANTY:
                result = self._confirm_warranty(record, actor.id, True, reason)
            elif action == OverrideAction.VERIFY:
                result = self._confirm_inspection(record, actor.id, True, reason)
            elif action == OverrideAction.REJECT:
                result = self._reject(record, actor.id, reason, is_admin_override=True)
            elif action == OverrideAction.ACTIVATE:
                result = self._activate(record, actor.id, is_admin_override=True, reason=reason)
            else:
                result = self._cancel(record, actor.id, reason)
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Admin {actor.id} override {action.value} on {record_type.value} {record_id} "
            f"({invalidated} token(s) invalidated)"
        )
        result.notifications.extend(self._after_commit_notifications(result))
        return result

    def _cancel(self, warranty: WarrantyDB, performed_by: str, reason: str) -> TransitionResult:
        from_state = self._transition(warranty, WarrantyStatus.CANCELLED, {"is_active": False})
        cancelled = self.reminders.cancel_outstanding(warranty.id)
        entry = self.audit.append_for(
            warranty, AuditActionType.ADMIN_OVERRIDE, performed_by,
            status_before=from_state,
            reason=reason,
            notes=f"Override action: {OverrideAction.CANCEL.value}; {cancelled} reminder(s) cancelled",
            is_admin_override=True,
        )
        return TransitionResult(warranty, from_state.value, warranty.status.value, audit_entry=entry)

    # =========================================================================
    # SYSTEM TRANSITIONS
    # =========================================================================

    def expire_for_grace(self, warranty: WarrantyDB, today: Optional[date] = None) -> TransitionResult:
        """
        Grace period ended without a verified inspection: ACTIVE -> EXPIRED.

        Raises ValidationError if the grace period has not ended, and
        ConcurrencyConflict if the warranty changed since it was read
        (for example a verification extended the cycle).
        """
        today = today or self.clock.today()
        self._require_transition(warranty, WarrantyStatus.EXPIRED)
        if warranty.grace_period_end is None or warranty.grace_period_end > today:
            raise ValidationError(f"Grace period of warranty {warranty.id} has not ended")

        try:
            from_state = self._transition(warranty, WarrantyStatus.EXPIRED, {
                "is_active": False,
                "is_grace_expired": True,
                "is_overdue": True,
                "lapsed_at": self.clock.now(),
            })
            cancelled = self.reminders.cancel_outstanding(warranty.id)
            entry = self.audit.append_for(
                warranty, AuditActionType.GRACE_EXPIRED, SYSTEM_ACTOR,
                status_before=from_state,
                reason="Annual inspection not verified before the end of the grace period",
                notes=f"Grace period ended {warranty.grace_period_end.isoformat()}; {cancelled} reminder(s) cancelled",
            )
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        return TransitionResult(warranty, from_state.value, warranty.status.value, audit_entry=entry)

    def reconcile_compliance(self, warranty: WarrantyDB, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Repair derived date fields of an ACTIVE warranty without changing its status:
        missing due date, grace period end drift, overdue flag.

        Returns the changed fields (empty when nothing changed).
        """
        today = today or self.clock.today()
        config = self._date_config()
        changes: Dict[str, Any] = {}

        due = warranty.due_date
        if due is None:
            anchor = warranty.installation_date or (warranty.activated_at.date() if warranty.activated_at else today)
            due = compute_cycle(anchor, config, today).due_date
            changes["due_date"] = due

        expected_grace_end = cycle_for_due(due, config).grace_period_end
        if warranty.grace_period_end != expected_grace_end:
            changes["grace_period_end"] = expected_grace_end

        overdue = due < today
        if bool(warranty.is_overdue) != overdue:
            changes["is_overdue"] = overdue

        if not changes:
            return changes

        try:
            self._guarded_update(warranty, changes)
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Reconciled warranty {warranty.id}: {sorted(changes)}")
        return changes

    def reinstate_transition(
        self,
        warranty: WarrantyDB,
        admin_id: str,
        reason: str,
        notes: Optional[str] = None,
    ) -> Tuple[TransitionResult, CycleDates]:
        """
        EXPIRED -> ACTIVE with a fresh cycle anchored today.

        Does not commit: the reinstatement service records its history row in
        the same transaction.
        """
        today = self.clock.today()
        cycle = compute_cycle(today, self._date_config(), today)
        from_state = self._transition(warranty, WarrantyStatus.ACTIVE, {
            "is_active": True,
            "is_grace_expired": False,
            "is_overdue": False,
            "lapsed_at": None,
            "is_reinstated": True,
            "reinstatement_count": (warranty.reinstatement_count or 0) + 1,
            "due_date": cycle.due_date,
            "grace_period_end": cycle.grace_period_end,
            "reminders_sent": 0,
        })
        self.reminders.schedule_cycle(warranty, cycle, today)
        entry = self.audit.append_for(
            warranty, AuditActionType.REINSTATE, admin_id,
            status_before=from_state,
            reason=reason,
            notes=notes,
            is_admin_override=True,
        )
        return TransitionResult(warranty, from_state.value, warranty.status.value, audit_entry=entry), cycle

    # =========================================================================
    # NOTIFICATIONS (after commit)
    # =========================================================================

    def _send_safely(self, channel: str, send, *args) -> DeliveryResult:
        """Deliver one message. Failures are logged and returned, never raised."""
        try:
            result = send(*args)
        except Exception as e:
            logger.error(f"{channel} delivery to {args[0]} failed: {e}")
            return DeliveryResult(success=False, channel=channel, error_message=str(e))
        if not result.success:
            logger.error(f"{channel} delivery to {args[0]} failed: {result.error_message}")
        return result

    def _notify_installer(self, record: LifecycleRecord, record_type: RecordType, token) -> List[DeliveryResult]:
        installer = self.db.query(UserDB).filter(UserDB.id == record.installer_id).first()
        if installer is None:
            logger.warning(f"Installer {record.installer_id} not found; verification link not sent")
            return []

        message = templates.installer_verification(record, record_type, token.token)
        if installer.mobile_number:
            return [self._send_safely("sms", self.gateway.send_sms, installer.mobile_number, message.sms_body)]
        return [self._send_safely(
            "email", self.gateway.send_email,
            installer.email, message.subject, message.html_body, message.text_body,
        )]

    def _notify_customer_activation(self, warranty: WarrantyDB, token) -> List[DeliveryResult]:
        ttl_days = self.config.get_int(VERIFICATION_RULES, "CUSTOMER_TOKEN_TTL_DAYS")
        message = templates.customer_activation(warranty, token.token, ttl_days)
        results = []
        if warranty.customer_email:
            results.append(self._send_safely(
                "email", self.gateway.send_email,
                warranty.customer_email, message.subject, message.html_body, message.text_body,
            ))
        if warranty.customer_phone:
            results.append(self._send_safely("sms", self.gateway.send_sms, warranty.customer_phone, message.sms_body))
        if not results:
            logger.warning(f"Warranty {warranty.id} has no customer contact; activation link not sent")
        return results

    def _after_commit_notifications(self, result: TransitionResult) -> List[DeliveryResult]:
        if (
            isinstance(result.record, WarrantyDB)
            and result.record.status == WarrantyStatus.PENDING_CUSTOMER_ACTIVATION
            and result.token is not None
        ):
            return self._notify_customer_activation(result.record, result.token)
        return []
