"""
Audit Ledger Service

Append-only history of lifecycle events with submission versioning.

Core Principles:
1. Every submit, verify, reject, activate, reinstate, grace expiry, reminder and
   override produces exactly one new entry.
2. Entries are never edited or deleted. Time-based archival only sets a flag.
3. Each entry references exactly one record (warranty OR inspection).
4. version_number is gap-free per record and exactly one entry per record is current.
5. Each entry carries a full snapshot of the record at action time.

Version assignment is read-increment-write. A concurrent writer that picks the same
number hits the unique constraint and gets ConcurrencyConflict.
"""
import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    AuditEntryDB, AuditActionType, RecordType, WarrantyDB, InspectionDB,
    WarrantyStatus, InspectionStatus,
)
from ..scheduling.clock import SystemClock
from .errors import ConcurrencyConflict, DataIntegrityError, RecordNotFoundError

logger = logging.getLogger(__name__)


# Entries whose resulting status is still awaiting someone are never archived
UNRESOLVED_STATUSES = [
    WarrantyStatus.DRAFT.value,
    WarrantyStatus.SUBMITTED.value,
    WarrantyStatus.PENDING_CUSTOMER_ACTIVATION.value,
    InspectionStatus.SUBMITTED.value,
]


def reference_for(record: Union[WarrantyDB, InspectionDB]) -> Tuple[RecordType, str]:
    """(record_type, record_id) of a lifecycle record."""
    if isinstance(record, WarrantyDB):
        return RecordType.WARRANTY, record.id
    if isinstance(record, InspectionDB):
        return RecordType.INSPECTION, record.id
    raise DataIntegrityError(f"Unsupported record type: {type(record).__name__}")


def snapshot_record(record) -> Dict[str, Any]:
    """JSON-safe copy of every column of a record."""
    snapshot = {}
    for column in record.__table__.columns:
        value = getattr(record, column.key)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, dict):
            value = dict(value)
        snapshot[column.key] = value
    return snapshot


class AuditLedgerService:
    """
    Append-only audit ledger.

    Appends are flushed, not committed: they belong to the caller's transaction.
    """

    def __init__(self, db_session: Session, clock=None):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock or SystemClock()

    @staticmethod
    def _reference_column(record_type: RecordType):
        if record_type == RecordType.WARRANTY:
            return AuditEntryDB.warranty_id
        return AuditEntryDB.inspection_id

    # =========================================================================
    # APPEND
    # =========================================================================

    def append(
        self,
        action_type: AuditActionType,
        performed_by: str,
        warranty_id: Optional[str] = None,
        inspection_id: Optional[str] = None,
        status_before: Optional[str] = None,
        status_after: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        is_admin_override: bool = False,
    ) -> AuditEntryDB:
        """
        Append one entry for exactly one record.

        Raises:
            DataIntegrityError: both or neither of warranty_id / inspection_id given
            ConcurrencyConflict: another writer took the same version number
        """
        if bool(warranty_id) == bool(inspection_id):
            raise DataIntegrityError(
                "Audit entry must reference exactly one of warranty_id or inspection_id"
            )

        record_type = RecordType.WARRANTY if warranty_id else RecordType.INSPECTION
        record_id = warranty_id or inspection_id
        column = self._reference_column(record_type)

        latest = self.db.query(func.max(AuditEntryDB.version_number)).filter(
            column == record_id
        ).scalar()
        next_version = (latest or 0) + 1

        try:
            # Flip the previous current entry before inserting the new one
            self.db.query(AuditEntryDB).filter(
                column == record_id,
                AuditEntryDB.is_current_version == True,  # noqa: E712
            ).update({"is_current_version": False})

            entry = AuditEntryDB(
                id=str(uuid4()),
                warranty_id=warranty_id,
                inspection_id=inspection_id,
                record_type=record_type,
                action_type=action_type,
                version_number=next_version,
                is_current_version=True,
                is_admin_override=is_admin_override,
                status_before=_status_value(status_before),
                status_after=_status_value(status_after),
                performed_by=performed_by,
                performed_at=self.clock.now(),
                reason=reason,
                notes=notes,
                submission_snapshot=snapshot,
            )
            self.db.add(entry)
            self.db.flush()
        except IntegrityError as e:
            logger.warning(
                f"Audit version conflict on {record_type.value} {record_id} "
                f"(version {next_version}): {e.orig}"
            )
            raise ConcurrencyConflict(
                "The record was changed by another request, please retry"
            ) from e

        return entry

    def append_for(
        self,
        record: Union[WarrantyDB, InspectionDB],
        action_type: AuditActionType,
        performed_by: str,
        status_before=None,
        status_after=None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        is_admin_override: bool = False,
    ) -> AuditEntryDB:
        """Append an entry for a record, snapshotting its current state."""
        record_type, record_id = reference_for(record)
        return self.append(
            action_type=action_type,
            performed_by=performed_by,
            warranty_id=record_id if record_type == RecordType.WARRANTY else None,
            inspection_id=record_id if record_type == RecordType.INSPECTION else None,
            status_before=status_before,
            status_after=status_after if status_after is not None else record.status,
            reason=reason,
            notes=notes,
            snapshot=snapshot_record(record),
            is_admin_override=is_admin_override,
        )

    # =========================================================================
    # READ
    # =========================================================================

    def get_history(
        self,
        record_type: RecordType,
        record_id: str,
        include_archived: bool = True,
    ) -> List[AuditEntryDB]:
        """All entries of a record, oldest first."""
        query = self.db.query(AuditEntryDB).filter(
            self._reference_column(record_type) == record_id
        )
        if not include_archived:
            query = query.filter(AuditEntryDB.is_archived == False)  # noqa: E712
        return query.order_by(AuditEntryDB.version_number).all()

    def get_current(self, record_type: RecordType, record_id: str) -> Optional[AuditEntryDB]:
        return self.db.query(AuditEntryDB).filter(
            self._reference_column(record_type) == record_id,
            AuditEntryDB.is_current_version == True,  # noqa: E712
        ).first()

    def get_version(self, record_type: RecordType, record_id: str, version_number: int) -> AuditEntryDB:
        entry = self.db.query(AuditEntryDB).filter(
            self._reference_column(record_type) == record_id,
            AuditEntryDB.version_number == version_number,
        ).first()
        if entry is None:
            raise RecordNotFoundError(
                f"No audit version {version_number} for {record_type.value.lower()} {record_id}"
            )
        return entry

    def get_snapshot(self, record_type: RecordType, record_id: str, version_number: int) -> Dict[str, Any]:
        """Record payload as it was at a given version."""
        return self.get_version(record_type, record_id, version_number).submission_snapshot or {}

    # =========================================================================
    # ARCHIVAL
    # =========================================================================

    def archive_resolved(self, older_than_days: int = 365) -> int:
        """
        Flag old, non-current entries of resolved records as archived.

        Entries are kept. Current entries and entries that left a record in an
        unresolved status are never archived. Returns the number flagged.
        """
        now = self.clock.now()
        cutoff = now - timedelta(days=older_than_days)

        archived = self.db.query(AuditEntryDB).filter(
            AuditEntryDB.performed_at < cutoff,
            AuditEntryDB.is_current_version == False,  # noqa: E712
            AuditEntryDB.is_archived == False,  # noqa: E712
            (AuditEntryDB.status_after.is_(None))
            | (AuditEntryDB.status_after.notin_(UNRESOLVED_STATUSES)),
        ).update({"is_archived": True, "archived_at": now}, synchronize_session="fetch")

        if archived:
            logger.info(f"Archived {archived} audit entries older than {older_than_days} days")
        return archived


def _status_value(status) -> Optional[str]:
    if status is None:
        return None
    if isinstance(status, Enum):
        return status.value
    return str(status)
