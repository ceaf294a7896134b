"""
Reminder Scheduler

AUTHORITY: SYSTEM
Periodic sweeps over warranty state. Each sweep is safe to repeat and safe to run
next to the others and next to user actions.

- run_reminder_dispatch: send due annual inspection reminders, retry failures
- run_grace_period_sweep: expire ACTIVE warranties whose grace period has ended
- run_status_reconciliation: repair overdue flags, date drift and reminder sets
- run_activation_reminders: remind customers who have not activated (max 3)
- run_token_cleanup: delete expired verification tokens
- run_audit_archival: flag old resolved audit entries as archived

Every sweep returns a summary dict and never raises for a single bad record:
the record is rolled back, listed under errors, and the sweep moves on.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import (
    WarrantyDB, ReminderEntryDB, ReminderStatus, ReminderType,
    WarrantyStatus, TokenType, AuditActionType, SYSTEM_ACTOR,
)
from ..config.system_config import (
    ConfigurationProvider, StaticConfigProvider, REMINDER, ACTIVATION_REMINDER, AUDIT,
)
from ..lifecycle.audit_ledger import AuditLedgerService
from ..lifecycle.errors import ConcurrencyConflict, NotificationError
from ..lifecycle.state_machine import LifecycleStateMachine
from ..lifecycle.token_store import TokenStore
from ..notifications import templates
from ..notifications.gateway import NotificationGateway, get_notification_gateway
from .clock import SystemClock
from .date_policy import DatePolicyConfig, cycle_for_due
from .reminder_entries import OUTSTANDING_STATUSES, ReminderEntryService

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """
    Runs the lifecycle sweeps against one database session.

    AUTHORITY: SYSTEM - Runs automatically, no user intervention required.
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[ConfigurationProvider] = None,
        clock=None,
        gateway: Optional[NotificationGateway] = None,
        state_machine: Optional[LifecycleStateMachine] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.config = config or StaticConfigProvider()
        self.clock = clock or SystemClock()
        self.gateway = gateway or get_notification_gateway()
        self.state_machine = state_machine or LifecycleStateMachine(
            db_session, self.config, self.clock, self.gateway
        )
        self.tokens = TokenStore(db_session, self.config, self.clock)
        self.audit = AuditLedgerService(db_session, self.clock)
        self.reminders = ReminderEntryService(db_session, self.clock)

    def _summary(self, **counts) -> Dict[str, Any]:
        details = counts.pop("details", {})
        summary = {"run_date": self.clock.now().isoformat()}
        summary.update(counts)
        summary["details"] = details
        return summary

    def _pace(self, attempted: int) -> None:
        """Fixed delay between consecutive sends."""
        if attempted > 0:
            self.clock.sleep(self.config.get_int(REMINDER, "SEND_DELAY_SECONDS"))

    # =========================================================================
    # 1. REMINDER DISPATCH
    # =========================================================================

    def run_reminder_dispatch(self) -> Dict[str, Any]:
        """
        Send PENDING and FAILED reminders scheduled for today or earlier.

        Reminders of warranties that are no longer ACTIVE, or that belong to a
        superseded cycle, are cancelled instead. Failures are retried on the
        next sweep for as long as the warranty stays ACTIVE.
        """
        today = self.clock.today()
        sent: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        cancelled: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        due_entries = self.db.query(ReminderEntryDB).filter(
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
            ReminderEntryDB.scheduled_date <= today,
        ).order_by(ReminderEntryDB.scheduled_date, ReminderEntryDB.created_at).all()

        attempted = 0
        for entry in due_entries:
            entry_id = entry.id
            try:
                warranty = self.db.query(WarrantyDB).filter(WarrantyDB.id == entry.warranty_id).first()

                if warranty is None or warranty.status != WarrantyStatus.ACTIVE:
                    self._cancel_entry(entry)
                    cancelled.append({"reminder_id": entry_id, "reason": "warranty not active"})
                    continue
                if entry.cycle_due_date != warranty.due_date:
                    self._cancel_entry(entry)
                    cancelled.append({"reminder_id": entry_id, "reason": "superseded cycle"})
                    continue

                if not self._claim_entry(entry):
                    skipped.append({"reminder_id": entry_id, "reason": "claimed by another sweep"})
                    continue

                self._pace(attempted)
                attempted += 1

                try:
                    self._deliver_reminder(entry, warranty)
                except Exception as e:
                    self._mark_failed(entry, str(e))
                    failed.append({"reminder_id": entry_id, "warranty_id": warranty.id, "error": str(e)})
                    continue

                self._mark_sent(entry, warranty)
                sent.append({
                    "reminder_id": entry_id,
                    "warranty_id": warranty.id,
                    "reminder_type": entry.reminder_type.value,
                })

            except Exception as e:
                self.db.rollback()
                logger.error(f"Reminder {entry_id} dispatch error: {e}")
                errors.append({"reminder_id": entry_id, "error": str(e)})

        logger.info(
            f"Reminder dispatch: {len(sent)} sent, {len(failed)} failed, "
            f"{len(cancelled)} cancelled, {len(errors)} errors"
        )
        return self._summary(
            reminders_due=len(due_entries),
            reminders_sent=len(sent),
            reminders_failed=len(failed),
            reminders_cancelled=len(cancelled),
            reminders_skipped=len(skipped),
            errors=len(errors),
            details={
                "sent": sent,
                "failed": failed,
                "cancelled": cancelled,
                "skipped": skipped,
                "errors": errors,
            },
        )

    def _cancel_entry(self, entry: ReminderEntryDB) -> None:
        self.db.query(ReminderEntryDB).filter(
            ReminderEntryDB.id == entry.id,
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
        ).update(
            {"status": ReminderStatus.CANCELLED, "cancelled_at": self.clock.now()},
            synchronize_session="fetch",
        )
        self.db.commit()

    def _claim_entry(self, entry: ReminderEntryDB) -> bool:
        """
        Reserve one send attempt. Conditional on attempt_count being unchanged,
        so an entry is sent by at most one overlapping sweep.
        """
        expected = entry.attempt_count or 0
        claimed = self.db.query(ReminderEntryDB).filter(
            ReminderEntryDB.id == entry.id,
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
            ReminderEntryDB.attempt_count == expected,
        ).update(
            {"attempt_count": expected + 1, "last_attempt_at": self.clock.now()},
            synchronize_session="fetch",
        )
        self.db.commit()
        return claimed == 1

    def _deliver_reminder(self, entry: ReminderEntryDB, warranty: WarrantyDB) -> None:
        recipient = entry.recipient or warranty.customer_email
        if not recipient:
            raise NotificationError("Warranty has no customer email")

        message = templates.inspection_reminder(warranty, entry.reminder_type, entry.cycle_due_date)
        result = self.gateway.send_email(recipient, message.subject, message.html_body, message.text_body)
        if not result.success:
            raise NotificationError(result.error_message or "Delivery failed")

    def _mark_sent(self, entry: ReminderEntryDB, warranty: WarrantyDB) -> None:
        now = self.clock.now()
        entry.status = ReminderStatus.SENT
        entry.sent_at = now
        entry.failure_reason = None

        self.db.query(WarrantyDB).filter(WarrantyDB.id == warranty.id).update(
            {
                "reminders_sent": WarrantyDB.reminders_sent + 1,
                "last_reminder_sent_at": now,
            },
            synchronize_session=False,
        )
        self.db.flush()
        self.db.refresh(warranty)

        self.audit.append_for(
            warranty, AuditActionType.REMINDER_SENT, SYSTEM_ACTOR,
            status_before=warranty.status,
            notes=(
                f"{entry.reminder_type.value} reminder sent to {entry.recipient or warranty.customer_email} "
                f"(due {entry.cycle_due_date.isoformat()})"
            ),
        )
        self.db.commit()

    def _mark_failed(self, entry: ReminderEntryDB, reason: str) -> None:
        entry.status = ReminderStatus.FAILED
        entry.failure_reason = reason[:1000]
        self.db.commit()
        logger.warning(f"Reminder {entry.id} failed (attempt {entry.attempt_count}): {reason}")

    # =========================================================================
    # 2. GRACE PERIOD SWEEP
    # =========================================================================

    def run_grace_period_sweep(self) -> Dict[str, Any]:
        """
        Expire ACTIVE warranties whose grace period ended today or earlier.

        A warranty changed concurrently (for example by an inspection
        verification) is re-read and re-checked; if it no longer qualifies
        it is skipped.
        """
        today = self.clock.today()
        expired: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        candidates = self.db.query(WarrantyDB).filter(
            WarrantyDB.status == WarrantyStatus.ACTIVE,
            WarrantyDB.grace_period_end.isnot(None),
            WarrantyDB.grace_period_end <= today,
        ).all()

        for warranty in candidates:
            warranty_id = warranty.id
            try:
                try:
                    self.state_machine.expire_for_grace(warranty, today)
                except ConcurrencyConflict:
                    self.db.refresh(warranty)
                    if (
                        warranty.status != WarrantyStatus.ACTIVE
                        or warranty.grace_period_end is None
                        or warranty.grace_period_end > today
                    ):
                        logger.info(f"Warranty {warranty_id} changed during grace sweep, skipping")
                        skipped.append({"warranty_id": warranty_id, "status": warranty.status.value})
                        continue
                    self.state_machine.expire_for_grace(warranty, today)

                expired.append({
                    "warranty_id": warranty_id,
                    "grace_period_end": warranty.grace_period_end.isoformat(),
                })
            except Exception as e:
                self.db.rollback()
                logger.error(f"Grace expiry of warranty {warranty_id} failed: {e}")
                errors.append({"warranty_id": warranty_id, "error": str(e)})

        logger.info(f"Grace period sweep: {len(expired)} expired, {len(skipped)} skipped, {len(errors)} errors")
        return self._summary(
            candidates=len(candidates),
            warranties_expired=len(expired),
            warranties_skipped=len(skipped),
            errors=len(errors),
            details={"expired": expired, "skipped": skipped, "errors": errors},
        )

    # =========================================================================
    # 3. STATUS RECONCILIATION
    # =========================================================================

    def run_status_reconciliation(self) -> Dict[str, Any]:
        """
        Bring derived state back in line:
        - ACTIVE warranties: overdue flag, grace period end, missing reminders
        - other warranties: no outstanding reminders
        """
        today = self.clock.today()
        date_config = DatePolicyConfig.from_provider(self.config)
        repaired: List[Dict[str, Any]] = []
        scheduled: List[Dict[str, Any]] = []
        cancelled: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        active = self.db.query(WarrantyDB).filter(WarrantyDB.status == WarrantyStatus.ACTIVE).all()
        for warranty in active:
            warranty_id = warranty.id
            try:
                changes = self.state_machine.reconcile_compliance(warranty, today)
                if changes:
                    repaired.append({
                        "warranty_id": warranty_id,
                        "fields": sorted(changes),
                    })

                cycle = cycle_for_due(warranty.due_date, date_config)
                created = self.reminders.schedule_cycle(warranty, cycle, today)
                self.db.commit()
                if created:
                    scheduled.append({
                        "warranty_id": warranty_id,
                        "reminder_types": [e.reminder_type.value for e in created],
                    })
            except Exception as e:
                self.db.rollback()
                logger.error(f"Reconciliation of warranty {warranty_id} failed: {e}")
                errors.append({"warranty_id": warranty_id, "error": str(e)})

        orphaned = self.db.query(ReminderEntryDB.warranty_id).join(
            WarrantyDB, WarrantyDB.id == ReminderEntryDB.warranty_id
        ).filter(
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
            WarrantyDB.status != WarrantyStatus.ACTIVE,
        ).distinct().all()
        for (warranty_id,) in orphaned:
            try:
                count = self.reminders.cancel_outstanding(warranty_id)
                self.db.commit()
                cancelled.append({"warranty_id": warranty_id, "reminders_cancelled": count})
            except Exception as e:
                self.db.rollback()
                errors.append({"warranty_id": warranty_id, "error": str(e)})

        logger.info(
            f"Status reconciliation: {len(repaired)} repaired, {len(scheduled)} rescheduled, "
            f"{len(cancelled)} cleared, {len(errors)} errors"
        )
        return self._summary(
            active_warranties=len(active),
            warranties_repaired=len(repaired),
            reminder_sets_scheduled=len(scheduled),
            reminder_sets_cancelled=len(cancelled),
            errors=len(errors),
            details={
                "repaired": repaired,
                "scheduled": scheduled,
                "cancelled": cancelled,
                "errors": errors,
            },
        )

    # =========================================================================
    # 4. CUSTOMER ACTIVATION REMINDERS
    # =========================================================================

    def run_activation_reminders(self) -> Dict[str, Any]:
        """
        Remind customers whose warranty is still waiting for activation.

        At most MAX_REMINDERS per token, COOLDOWN_DAYS apart, the first no
        earlier than INITIAL_DELAY_HOURS after the link was issued. Tokens of
        warranties that are no longer pending activation are invalidated.
        """
        max_reminders = self.config.get_int(ACTIVATION_REMINDER, "MAX_REMINDERS")
        cooldown_days = self.config.get_int(ACTIVATION_REMINDER, "COOLDOWN_DAYS")
        initial_delay_hours = self.config.get_int(ACTIVATION_REMINDER, "INITIAL_DELAY_HOURS")

        sent: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        invalidated: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        tokens = self.tokens.pending_activation_tokens_for_reminder(
            max_reminders, cooldown_days, initial_delay_hours
        )

        attempted = 0
        for token in tokens:
            token_id = token.id
            try:
                warranty = self.db.query(WarrantyDB).filter(WarrantyDB.id == token.record_id).first()
                if warranty is None or warranty.status != WarrantyStatus.PENDING_CUSTOMER_ACTIVATION:
                    self.tokens.invalidate_for_record(token.record_id, TokenType.CUSTOMER_ACTIVATION)
                    self.db.commit()
                    invalidated.append({"token_id": token_id, "warranty_id": token.record_id})
                    continue

                previous_sent_at = token.last_reminder_sent_at
                if not self.tokens.claim_reminder_slot(token):
                    self.db.rollback()
                    continue
                self.db.commit()
                reminder_number = token.reminders_sent

                self._pace(attempted)
                attempted += 1

                if self._deliver_activation_reminder(warranty, token, reminder_number):
                    self.audit.append_for(
                        warranty, AuditActionType.CUSTOMER_ACTIVATION_REMINDER_SENT, SYSTEM_ACTOR,
                        status_before=warranty.status,
                        notes=f"Activation reminder #{reminder_number} of {max_reminders}",
                    )
                    self.db.commit()
                    sent.append({
                        "token_id": token_id,
                        "warranty_id": warranty.id,
                        "reminder_number": reminder_number,
                    })
                else:
                    self.tokens.release_reminder_slot(token, previous_sent_at)
                    self.db.commit()
                    failed.append({"token_id": token_id, "warranty_id": warranty.id})

            except Exception as e:
                self.db.rollback()
                logger.error(f"Activation reminder for token {token_id} failed: {e}")
                errors.append({"token_id": token_id, "error": str(e)})

        logger.info(
            f"Activation reminders: {len(sent)} sent, {len(failed)} failed, "
            f"{len(invalidated)} invalidated, {len(errors)} errors"
        )
        return self._summary(
            tokens_checked=len(tokens),
            reminders_sent=len(sent),
            reminders_failed=len(failed),
            tokens_invalidated=len(invalidated),
            errors=len(errors),
            details={
                "sent": sent,
                "failed": failed,
                "invalidated": invalidated,
                "errors": errors,
            },
        )

    def _deliver_activation_reminder(self, warranty: WarrantyDB, token, reminder_number: int) -> bool:
        """Email and SMS. Counts as delivered if either channel succeeds."""
        message = templates.activation_reminder(warranty, token.token, reminder_number)
        email = token.customer_email or warranty.customer_email
        phone = token.customer_phone or warranty.customer_phone
        delivered = False

        if email:
            delivered = self._try_send(
                "email", self.gateway.send_email,
                email, message.subject, message.html_body, message.text_body,
            ) or delivered
        if phone:
            delivered = self._try_send("sms", self.gateway.send_sms, phone, message.sms_body) or delivered
        return delivered

    @staticmethod
    def _try_send(channel: str, send, *args) -> bool:
        try:
            result = send(*args)
        except Exception as e:
            logger.error(f"Activation reminder {channel} to {args[0]} failed: {e}")
            return False
        if not result.success:
            logger.error(f"Activation reminder {channel} to {args[0]} failed: {result.error_message}")
        return result.success

    # =========================================================================
    # 5. MAINTENANCE
    # =========================================================================

    def run_token_cleanup(self) -> Dict[str, Any]:
        try:
            deleted = self.tokens.cleanup_expired()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self._summary(tokens_deleted=deleted, errors=0)

    def run_audit_archival(self) -> Dict[str, Any]:
        older_than_days = self.config.get_int(AUDIT, "ARCHIVE_AFTER_DAYS")
        try:
            archived = self.audit.archive_resolved(older_than_days)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self._summary(entries_archived=archived, older_than_days=older_than_days, errors=0)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_reminder_statistics(self) -> Dict[str, Any]:
        today = self.clock.today()

        by_status = dict(
            self.db.query(ReminderEntryDB.status, func.count(ReminderEntryDB.id))
            .group_by(ReminderEntryDB.status).all()
        )
        by_type = dict(
            self.db.query(ReminderEntryDB.reminder_type, func.count(ReminderEntryDB.id))
            .group_by(ReminderEntryDB.reminder_type).all()
        )
        due_now = self.db.query(ReminderEntryDB).filter(
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
            ReminderEntryDB.scheduled_date <= today,
        ).count()
        overdue_warranties = self.db.query(WarrantyDB).filter(
            WarrantyDB.status == WarrantyStatus.ACTIVE,
            WarrantyDB.due_date < today,
        ).count()

        return {
            "by_status": {s.value: by_status.get(s, 0) for s in ReminderStatus},
            "by_type": {t.value: by_type.get(t, 0) for t in ReminderType},
            "due_now": due_now,
            "overdue_warranties": overdue_warranties,
            "tokens": self.tokens.get_statistics(),
        }
