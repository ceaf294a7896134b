"""
Reminder Entries

Creates and cancels the per-cycle reminder rows of a warranty.

- One non-cancelled entry per (warranty, reminder type, cycle due date)
- At most one outstanding (PENDING/FAILED) entry per (warranty, reminder type)
- Scheduling a new cycle cancels whatever is still outstanding from the old one

Used by the state machine (activation, cycle extension, reinstatement, expiry)
and by the reminder scheduler (reconciliation, dispatch).
"""
import logging
from datetime import date
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import ReminderEntryDB, ReminderStatus, ReminderType, WarrantyDB
from .clock import SystemClock
from .date_policy import CycleDates

logger = logging.getLogger(__name__)


OUTSTANDING_STATUSES = [ReminderStatus.PENDING, ReminderStatus.FAILED]


class ReminderEntryService:
    """Owns the reminder_entries rows. Flushes, never commits."""

    def __init__(self, db_session: Session, clock=None):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock or SystemClock()

    def schedule_cycle(
        self,
        warranty: WarrantyDB,
        cycle: CycleDates,
        today: Optional[date] = None,
    ) -> List[ReminderEntryDB]:
        """
        Create the reminder set for one cycle.

        Types already scheduled for this cycle are left alone. Reminders whose
        date has already passed are not created. Returns the new entries.
        """
        today = today or self.clock.today()

        existing = {
            entry.reminder_type
            for entry in self.db.query(ReminderEntryDB).filter(
                ReminderEntryDB.warranty_id == warranty.id,
                ReminderEntryDB.cycle_due_date == cycle.due_date,
                ReminderEntryDB.status != ReminderStatus.CANCELLED,
            ).all()
        }

        # Outstanding reminders of an earlier cycle are superseded
        self.cancel_outstanding(warranty.id, keep_cycle_due_date=cycle.due_date)

        created = []
        for reminder_type, scheduled in cycle.reminder_dates().items():
            if reminder_type in existing:
                continue
            if scheduled < today:
                logger.info(
                    f"Skipping {reminder_type.value} reminder for warranty {warranty.id}: "
                    f"{scheduled.isoformat()} already passed"
                )
                continue

            entry = ReminderEntryDB(
                id=str(uuid4()),
                warranty_id=warranty.id,
                reminder_type=reminder_type,
                cycle_due_date=cycle.due_date,
                scheduled_date=scheduled,
                recipient=warranty.customer_email,
                status=ReminderStatus.PENDING,
                attempt_count=0,
                created_at=self.clock.now(),
            )
            self.db.add(entry)
            created.append(entry)

        self.db.flush()
        if created:
            logger.info(
                f"Scheduled {len(created)} reminders for warranty {warranty.id} "
                f"(due {cycle.due_date.isoformat()})"
            )
        return created

    def cancel_outstanding(
        self,
        warranty_id: str,
        keep_cycle_due_date: Optional[date] = None,
    ) -> int:
        """Cancel PENDING/FAILED entries, optionally sparing one cycle. Returns the count."""
        query = self.db.query(ReminderEntryDB).filter(
            ReminderEntryDB.warranty_id == warranty_id,
            ReminderEntryDB.status.in_(OUTSTANDING_STATUSES),
        )
        if keep_cycle_due_date is not None:
            query = query.filter(ReminderEntryDB.cycle_due_date != keep_cycle_due_date)

        return query.update(
            {"status": ReminderStatus.CANCELLED, "cancelled_at": self.clock.now()},
            synchronize_session="fetch",
        )

    def get_for_warranty(
        self,
        warranty_id: str,
        reminder_type: Optional[ReminderType] = None,
    ) -> List[ReminderEntryDB]:
        query = self.db.query(ReminderEntryDB).filter(ReminderEntryDB.warranty_id == warranty_id)
        if reminder_type is not None:
            query = query.filter(ReminderEntryDB.reminder_type == reminder_type)
        return query.order_by(ReminderEntryDB.scheduled_date).all()
