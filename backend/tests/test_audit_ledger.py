"""
Tests for the audit ledger.

1. Exactly one record reference per entry
2. Gap-free version numbers, one current version
3. Snapshots of the record at action time
4. Archival flags old resolved entries and keeps everything
"""
import pytest
from sqlalchemy import event

from warranty_lifecycle.models.db_models import (
    AuditActionType, AuditEntryDB, RecordType, WarrantyStatus,
)
from warranty_lifecycle.services.lifecycle import (
    AuditLedgerService, ConcurrencyConflict, DataIntegrityError, RecordNotFoundError,
)


@pytest.fixture
def ledger(db, clock):
    return AuditLedgerService(db, clock)


# =============================================================================
# TEST: APPEND
# =============================================================================

class TestAppend:
    """Tests for AuditLedgerService.append."""

    def test_requires_one_reference(self, ledger):
        """Neither reference is rejected."""
        with pytest.raises(DataIntegrityError):
            ledger.append(AuditActionType.SUBMIT, "someone")

    def test_rejects_two_references(self, ledger):
        with pytest.raises(DataIntegrityError):
            ledger.append(AuditActionType.SUBMIT, "someone", warranty_id="w-1", inspection_id="i-1")

    def test_versions_are_sequential(self, ledger, make_draft, db, installer):
        """The draft has version 1 (CREATE); each append adds the next number."""
        warranty = make_draft()

        ledger.append_for(warranty, AuditActionType.SUBMIT, installer.id)
        ledger.append_for(warranty, AuditActionType.REJECT, installer.id, reason="Blurry photos")
        db.commit()

        history = ledger.get_history(RecordType.WARRANTY, warranty.id)
        assert [e.version_number for e in history] == [1, 2, 3]
        assert [e.action_type for e in history] == [
            AuditActionType.CREATE, AuditActionType.SUBMIT, AuditActionType.REJECT,
        ]

    def test_exactly_one_current_version(self, ledger, make_draft, db, installer):
        warranty = make_draft()
        ledger.append_for(warranty, AuditActionType.SUBMIT, installer.id)
        db.commit()

        current = db.query(AuditEntryDB).filter(
            AuditEntryDB.warranty_id == warranty.id,
            AuditEntryDB.is_current_version == True,  # noqa: E712
        ).all()
        assert len(current) == 1
        assert current[0].version_number == 2
        assert ledger.get_current(RecordType.WARRANTY, warranty.id).id == current[0].id

    def test_snapshot_is_json_safe(self, ledger, make_draft, db):
        warranty = make_draft()
        entry = ledger.get_current(RecordType.WARRANTY, warranty.id)

        snapshot = entry.submission_snapshot
        assert snapshot["id"] == warranty.id
        assert snapshot["status"] == "DRAFT"
        assert snapshot["vin_number"] == warranty.vin_number
        assert isinstance(snapshot["created_at"], str)

    def test_status_after_defaults_to_record_status(self, ledger, make_draft, installer):
        warranty = make_draft()
        entry = ledger.append_for(warranty, AuditActionType.SUBMIT, installer.id,
                                  status_before=WarrantyStatus.DRAFT)
        assert entry.status_before == "DRAFT"
        assert entry.status_after == "DRAFT"

    def test_version_taken_by_another_writer(self, make_draft, session_factory, clock):
        """Another session commits the same version number between read and insert."""
        warranty_id = make_draft().id
        stale_db, other_db = session_factory(), session_factory()

        def other_writer_commits(session, flush_context, instances):
            AuditLedgerService(other_db, clock).append(AuditActionType.SUBMIT, "other", warranty_id=warranty_id)
            other_db.commit()

        event.listen(stale_db, "before_flush", other_writer_commits, once=True)
        try:
            with pytest.raises(ConcurrencyConflict):
                AuditLedgerService(stale_db, clock).append(
                    AuditActionType.REJECT, "stale", warranty_id=warranty_id, reason="Blurry photos",
                )
            stale_db.rollback()
        finally:
            stale_db.close()
            other_db.close()

        check_db = session_factory()
        history = AuditLedgerService(check_db, clock).get_history(RecordType.WARRANTY, warranty_id)
        assert [(e.version_number, e.action_type) for e in history] == [
            (1, AuditActionType.CREATE), (2, AuditActionType.SUBMIT),
        ]
        assert [e.is_current_version for e in history] == [False, True]
        check_db.close()


# =============================================================================
# TEST: READ
# =============================================================================

class TestRead:

    def test_get_version_and_snapshot(self, ledger, make_draft):
        warranty = make_draft()

        entry = ledger.get_version(RecordType.WARRANTY, warranty.id, 1)
        assert entry.action_type == AuditActionType.CREATE
        assert ledger.get_snapshot(RecordType.WARRANTY, warranty.id, 1)["status"] == "DRAFT"

    def test_missing_version(self, ledger, make_draft):
        warranty = make_draft()
        with pytest.raises(RecordNotFoundError):
            ledger.get_version(RecordType.WARRANTY, warranty.id, 99)


# =============================================================================
# TEST: ARCHIVAL
# =============================================================================

class TestArchival:
    """Tests for archive_resolved."""

    def test_unresolved_entries_never_archived(self, ledger, make_active, db, clock):
        """Entries that left the warranty DRAFT, SUBMITTED or pending stay live however old."""
        warranty = make_active()
        clock.advance(days=400)

        archived = ledger.archive_resolved(older_than_days=365)
        db.commit()

        history = ledger.get_history(RecordType.WARRANTY, warranty.id)
        assert archived == 0
        assert len(history) == 4
        assert not any(e.is_archived for e in history)

    def test_recent_entries_untouched(self, ledger, make_active, db):
        make_active()
        assert ledger.archive_resolved(older_than_days=365) == 0

    def test_history_can_exclude_archived(self, ledger, make_draft, installer, db, clock):
        warranty = make_draft()
        ledger.append_for(warranty, AuditActionType.ADMIN_OVERRIDE, installer.id,
                          status_after=WarrantyStatus.CANCELLED)
        ledger.append_for(warranty, AuditActionType.ADMIN_OVERRIDE, installer.id,
                          status_after=WarrantyStatus.CANCELLED)
        db.commit()
        clock.advance(days=366)

        assert ledger.archive_resolved(365) == 1
        db.commit()

        assert len(ledger.get_history(RecordType.WARRANTY, warranty.id)) == 3
        assert len(ledger.get_history(RecordType.WARRANTY, warranty.id, include_archived=False)) == 2
