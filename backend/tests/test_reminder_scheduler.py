"""
Tests for the reminder scheduler sweeps.

1. Annual inspection reminder dispatch, retry and cancellation
2. Grace period expiry and its race with inspection verification
3. Status reconciliation of overdue flags and reminder sets
4. Customer activation reminders (delay, cooldown, cap)
5. Token cleanup, audit archival and statistics
"""
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import text

from warranty_lifecycle.models.db_models import (
    AuditActionType, RecordType, ReminderEntryDB, ReminderStatus, ReminderType,
    TokenType, WarrantyStatus,
)
from warranty_lifecycle.services.config import StaticConfigProvider
from warranty_lifecycle.services.config.system_config import REMINDER
from warranty_lifecycle.services.lifecycle import AuditLedgerService, ConcurrencyConflict
from warranty_lifecycle.services.scheduling.reminder_scheduler import ReminderScheduler


def _entries(db, warranty_id, status=None):
    query = db.query(ReminderEntryDB).filter(ReminderEntryDB.warranty_id == warranty_id)
    if status is not None:
        query = query.filter(ReminderEntryDB.status == status)
    return query.order_by(ReminderEntryDB.scheduled_date).all()


def _actions(db, clock, warranty_id):
    return [e.action_type for e in AuditLedgerService(db, clock).get_history(RecordType.WARRANTY, warranty_id)]


# =============================================================================
# TEST: REMINDER DISPATCH
# =============================================================================

class TestReminderDispatch:
    """Tests for run_reminder_dispatch."""

    def test_nothing_due_before_first_reminder(self, scheduler, make_active, clock):
        make_active()
        clock.set(datetime(2025, 12, 14, 9, 0))

        summary = scheduler.run_reminder_dispatch()

        assert summary["reminders_due"] == 0
        assert summary["reminders_sent"] == 0

    def test_sends_due_reminder_once(self, scheduler, make_active, gateway, clock, db):
        warranty = make_active()
        gateway.clear()
        clock.set(datetime(2025, 12, 15, 9, 0))

        summary = scheduler.run_reminder_dispatch()

        assert summary["reminders_sent"] == 1
        assert summary["details"]["sent"][0]["reminder_type"] == "ELEVEN_MONTH"
        assert gateway.emails[0]["to"] == "alex@example.com"

        entry = _entries(db, warranty.id, ReminderStatus.SENT)[0]
        assert entry.reminder_type == ReminderType.ELEVEN_MONTH
        assert entry.sent_at == clock.now()
        assert entry.attempt_count == 1
        assert warranty.reminders_sent == 1
        assert _actions(db, clock, warranty.id)[-1] == AuditActionType.REMINDER_SENT

        # Repeat run sends nothing
        clock.advance(hours=1)
        repeat = scheduler.run_reminder_dispatch()
        assert repeat["reminders_due"] == 0
        assert len(gateway.emails) == 1

    def test_failed_reminder_is_retried(self, scheduler, make_active, gateway, clock, db):
        warranty = make_active()
        clock.set(datetime(2025, 12, 15, 9, 0))
        gateway.fail = True

        summary = scheduler.run_reminder_dispatch()

        assert summary["reminders_failed"] == 1
        entry = _entries(db, warranty.id, ReminderStatus.FAILED)[0]
        assert entry.failure_reason == "mailbox unavailable"
        assert entry.attempt_count == 1

        gateway.fail = False
        clock.advance(hours=1)
        retry = scheduler.run_reminder_dispatch()

        assert retry["reminders_sent"] == 1
        db.refresh(entry)
        assert entry.status == ReminderStatus.SENT
        assert entry.attempt_count == 2
        assert entry.failure_reason is None

    def test_raising_gateway_marks_failed(self, scheduler, make_active, gateway, clock, db):
        warranty = make_active()
        clock.set(datetime(2025, 12, 15, 9, 0))
        gateway.raise_error = True

        summary = scheduler.run_reminder_dispatch()

        assert summary["reminders_failed"] == 1
        assert summary["errors"] == 0
        assert _entries(db, warranty.id, ReminderStatus.FAILED)[0].failure_reason == "transport unavailable"

    def test_reminders_of_inactive_warranty_are_cancelled(self, scheduler, make_active, gateway, clock, db):
        warranty = make_active()
        db.execute(text("UPDATE warranties SET status = 'EXPIRED' WHERE id = :id"), {"id": warranty.id})
        db.commit()
        gateway.clear()
        clock.set(datetime(2025, 12, 16, 9, 0))

        summary = scheduler.run_reminder_dispatch()

        assert summary["reminders_cancelled"] == 2
        assert summary["reminders_sent"] == 0
        assert gateway.emails == []
        # Not yet due, left for reconciliation
        assert [e.reminder_type for e in _entries(db, warranty.id, ReminderStatus.PENDING)] == [ReminderType.DUE_DATE]

    def test_sends_are_paced(self, db, clock, gateway, machine, make_active):
        make_active()
        clock.set(datetime(2025, 12, 16, 9, 0))
        paced = ReminderScheduler(
            db, StaticConfigProvider({REMINDER: {"SEND_DELAY_SECONDS": 5}}), clock, gateway, machine,
        )

        summary = paced.run_reminder_dispatch()

        assert summary["reminders_sent"] == 2
        assert clock.now() == datetime(2025, 12, 16, 9, 0, 5)


# =============================================================================
# TEST: GRACE PERIOD
# =============================================================================

class TestGracePeriodSweep:
    """Tests for run_grace_period_sweep."""

    def test_not_expired_on_due_date(self, scheduler, make_active, clock):
        warranty = make_active()
        clock.set(datetime(2026, 1, 15, 9, 0))

        summary = scheduler.run_grace_period_sweep()

        assert summary["candidates"] == 0
        assert warranty.status == WarrantyStatus.ACTIVE

    def test_expires_after_grace_end(self, scheduler, make_active, clock, db):
        """Grace ended yesterday: EXPIRED, reminders cancelled, one audit entry."""
        warranty = make_active()
        clock.set(datetime(2026, 2, 15, 2, 0))

        summary = scheduler.run_grace_period_sweep()

        assert summary["warranties_expired"] == 1
        assert summary["details"]["expired"][0]["grace_period_end"] == "2026-02-14"
        db.expire_all()
        assert warranty.status == WarrantyStatus.EXPIRED
        assert warranty.is_grace_expired is True
        assert _entries(db, warranty.id, ReminderStatus.PENDING) == []
        assert _actions(db, clock, warranty.id).count(AuditActionType.GRACE_EXPIRED) == 1

        # Second run finds nothing
        assert scheduler.run_grace_period_sweep()["candidates"] == 0
        assert _actions(db, clock, warranty.id).count(AuditActionType.GRACE_EXPIRED) == 1

    def test_concurrent_verification_wins(self, scheduler, machine, make_active, clock, db):
        """A warranty extended while the sweep runs is skipped, not expired."""
        warranty = make_active()
        clock.set(datetime(2026, 2, 20, 2, 0))

        def verified_meanwhile(record, today=None):
            db.execute(
                text(
                    "UPDATE warranties SET due_date = '2027-02-19', grace_period_end = '2027-03-21', "
                    "row_version = row_version + 1 WHERE id = :id"
                ),
                {"id": record.id},
            )
            db.commit()
            raise ConcurrencyConflict("The record was changed by another request, please retry")

        with patch.object(machine, "expire_for_grace", side_effect=verified_meanwhile):
            summary = scheduler.run_grace_period_sweep()

        assert summary["warranties_expired"] == 0
        assert summary["warranties_skipped"] == 1
        db.expire_all()
        assert warranty.status == WarrantyStatus.ACTIVE

    def test_one_bad_record_does_not_stop_sweep(self, scheduler, machine, make_active, clock):
        first = make_active()
        second = make_active(vin_number="1HGCM82633A004352")
        clock.set(datetime(2026, 2, 20, 2, 0))
        original = machine.expire_for_grace

        def fail_first(record, today=None):
            if record.id == first.id:
                raise RuntimeError("disk full")
            return original(record, today)

        with patch.object(machine, "expire_for_grace", side_effect=fail_first):
            summary = scheduler.run_grace_period_sweep()

        assert summary["errors"] == 1
        assert summary["warranties_expired"] == 1
        assert summary["details"]["errors"][0]["warranty_id"] == first.id
        assert second.status == WarrantyStatus.EXPIRED


# =============================================================================
# TEST: STATUS RECONCILIATION
# =============================================================================

class TestStatusReconciliation:
    """Tests for run_status_reconciliation."""

    def test_missing_reminders_are_recreated(self, scheduler, make_active, db):
        warranty = make_active()
        db.execute(text("DELETE FROM reminder_entries WHERE warranty_id = :id"), {"id": warranty.id})
        db.commit()

        summary = scheduler.run_status_reconciliation()

        assert summary["reminder_sets_scheduled"] == 1
        assert len(_entries(db, warranty.id, ReminderStatus.PENDING)) == 3

        assert scheduler.run_status_reconciliation()["reminder_sets_scheduled"] == 0

    def test_overdue_flag(self, scheduler, make_active, clock):
        warranty = make_active()
        clock.set(datetime(2026, 1, 20, 3, 0))

        summary = scheduler.run_status_reconciliation()

        assert summary["warranties_repaired"] == 1
        assert summary["details"]["repaired"][0]["fields"] == ["is_overdue"]
        assert warranty.is_overdue is True
        assert warranty.status == WarrantyStatus.ACTIVE

    def test_orphaned_reminders_cancelled(self, scheduler, make_active, db):
        warranty = make_active()
        db.execute(text("UPDATE warranties SET status = 'EXPIRED' WHERE id = :id"), {"id": warranty.id})
        db.commit()

        summary = scheduler.run_status_reconciliation()

        assert summary["active_warranties"] == 0
        assert summary["reminder_sets_cancelled"] == 1
        assert _entries(db, warranty.id, ReminderStatus.PENDING) == []


# =============================================================================
# TEST: ACTIVATION REMINDERS
# =============================================================================

class TestActivationReminders:
    """Tests for run_activation_reminders."""

    def test_first_reminder_after_initial_delay(self, scheduler, machine, make_pending, gateway, clock, db):
        """Pending for 25 hours: reminder #1 goes out once."""
        warranty, customer_token = make_pending()
        gateway.clear()
        clock.advance(hours=25)

        summary = scheduler.run_activation_reminders()

        assert summary["reminders_sent"] == 1
        assert summary["details"]["sent"][0]["reminder_number"] == 1
        assert gateway.emails[0]["to"] == "alex@example.com"
        assert gateway.sms[0]["to"] == "+64210000002"

        token = machine.tokens.get_by_value(customer_token)
        assert token.reminders_sent == 1
        assert token.last_reminder_sent_at == clock.now()

        entry = AuditLedgerService(db, clock).get_current(RecordType.WARRANTY, warranty.id)
        assert entry.action_type == AuditActionType.CUSTOMER_ACTIVATION_REMINDER_SENT
        assert entry.notes == "Activation reminder #1 of 3"

        clock.advance(hours=1)
        repeat = scheduler.run_activation_reminders()
        assert repeat["tokens_checked"] == 0
        assert len(gateway.emails) == 1

    def test_too_early(self, scheduler, make_pending, gateway, clock):
        make_pending()
        gateway.clear()
        clock.advance(hours=23)

        assert scheduler.run_activation_reminders()["reminders_sent"] == 0
        assert gateway.emails == []

    def test_at_most_three_reminders(self, scheduler, make_pending, gateway, clock):
        make_pending()
        clock.advance(hours=25)

        sent = 0
        for _ in range(6):
            sent += scheduler.run_activation_reminders()["reminders_sent"]
            clock.advance(days=3)

        assert sent == 3

    def test_failed_delivery_releases_slot(self, scheduler, machine, make_pending, gateway, clock):
        _, customer_token = make_pending()
        clock.advance(hours=25)
        gateway.fail = True

        summary = scheduler.run_activation_reminders()

        assert summary["reminders_failed"] == 1
        token = machine.tokens.get_by_value(customer_token)
        assert token.reminders_sent == 0
        assert token.last_reminder_sent_at is None

        # Eligible again on the next sweep
        gateway.fail = False
        assert scheduler.run_activation_reminders()["reminders_sent"] == 1

    def test_token_of_non_pending_warranty_invalidated(self, scheduler, machine, make_pending, gateway, clock, db):
        warranty, customer_token = make_pending()
        db.execute(text("UPDATE warranties SET status = 'REJECTED' WHERE id = :id"), {"id": warranty.id})
        db.commit()
        gateway.clear()
        clock.advance(hours=25)

        summary = scheduler.run_activation_reminders()

        assert summary["tokens_invalidated"] == 1
        assert gateway.emails == []
        assert machine.tokens.get_active_token(warranty.id, TokenType.CUSTOMER_ACTIVATION) is None


# =============================================================================
# TEST: MAINTENANCE AND STATISTICS
# =============================================================================

class TestMaintenance:

    def test_token_cleanup(self, scheduler, make_pending, clock):
        make_pending()
        clock.advance(days=31)

        # Customer token (30 days) is gone, installer token (60 days) is kept
        assert scheduler.run_token_cleanup()["tokens_deleted"] == 1
        assert scheduler.run_token_cleanup()["tokens_deleted"] == 0

    def test_audit_archival_summary(self, scheduler, make_active):
        make_active()
        summary = scheduler.run_audit_archival()

        assert summary["entries_archived"] == 0
        assert summary["older_than_days"] == 365

    def test_statistics(self, scheduler, make_active, clock):
        make_active()
        clock.set(clock.now() + timedelta(days=334))

        stats = scheduler.get_reminder_statistics()

        assert stats["by_status"]["PENDING"] == 3
        assert stats["by_type"]["DUE_DATE"] == 1
        assert stats["due_now"] == 1
        assert stats["overdue_warranties"] == 0
        assert stats["tokens"]["used"] == 2
