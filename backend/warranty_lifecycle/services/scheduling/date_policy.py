"""
Date Policy

Pure date arithmetic for the inspection cycle:
- due date = anchor + cycle months (calendar months, end of month clamped)
- eleven-month reminder = due - 1 month
- thirty-day reminder = due - 30 days
- due-date reminder = due - 0 days
- grace period end = due + grace days

Offsets are read from configuration once per evaluation (DatePolicyConfig.from_provider)
so one sweep never mixes old and new settings.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta

from ...models.db_models import ReminderType
from ..config.system_config import (
    ConfigurationProvider, WARRANTY_CONTINUITY, REMINDER, GRACE_PERIOD,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatePolicyConfig:
    """Snapshot of the date settings used for one evaluation."""
    cycle_months: int = 12
    eleven_month_months_before: int = 1
    thirty_day_days_before: int = 30
    due_date_days_before: int = 0
    grace_days: int = 30

    @classmethod
    def from_provider(cls, config: ConfigurationProvider) -> "DatePolicyConfig":
        return cls(
            cycle_months=config.get_int(WARRANTY_CONTINUITY, "INSPECTION_CYCLE_MONTHS"),
            eleven_month_months_before=config.get_int(REMINDER, "ELEVEN_MONTH_REMINDER_MONTHS_BEFORE_DUE"),
            thirty_day_days_before=config.get_int(REMINDER, "THIRTY_DAY_REMINDER_DAYS_BEFORE_DUE"),
            due_date_days_before=config.get_int(REMINDER, "DUE_DATE_REMINDER_DAYS_BEFORE_DUE"),
            grace_days=config.get_int(GRACE_PERIOD, "INSPECTION_GRACE_DAYS"),
        )


@dataclass(frozen=True)
class CycleDates:
    """All dates of one inspection cycle."""
    anchor: date
    due_date: date
    eleven_month_reminder: date
    thirty_day_reminder: date
    due_date_reminder: date
    grace_period_end: date

    def reminder_dates(self) -> Dict[ReminderType, date]:
        return {
            ReminderType.ELEVEN_MONTH: self.eleven_month_reminder,
            ReminderType.THIRTY_DAY: self.thirty_day_reminder,
            ReminderType.DUE_DATE: self.due_date_reminder,
        }


def due_date(anchor: date, cycle_months: int = 12) -> date:
    return anchor + relativedelta(months=cycle_months)


def eleven_month_reminder(due: date, months_before: int = 1) -> date:
    return due - relativedelta(months=months_before)


def thirty_day_reminder(due: date, days_before: int = 30) -> date:
    return due - timedelta(days=days_before)


def due_date_reminder(due: date, days_before: int = 0) -> date:
    return due - timedelta(days=days_before)


def grace_period_end(due: date, grace_days: int = 30) -> date:
    return due + timedelta(days=grace_days)


def compute_cycle(
    anchor: date,
    config: Optional[DatePolicyConfig] = None,
    reference_date: Optional[date] = None,
) -> CycleDates:
    """
    Compute every date of the cycle starting at `anchor`.

    An anchor later than `reference_date` is clamped to it.
    """
    config = config or DatePolicyConfig()

    if reference_date is not None and anchor > reference_date:
        logger.warning(
            f"Cycle anchor {anchor.isoformat()} is after reference date "
            f"{reference_date.isoformat()}, clamping"
        )
        anchor = reference_date

    due = due_date(anchor, config.cycle_months)
    return CycleDates(
        anchor=anchor,
        due_date=due,
        eleven_month_reminder=eleven_month_reminder(due, config.eleven_month_months_before),
        thirty_day_reminder=thirty_day_reminder(due, config.thirty_day_days_before),
        due_date_reminder=due_date_reminder(due, config.due_date_days_before),
        grace_period_end=grace_period_end(due, config.grace_days),
    )


def days_until(target: date, today: date) -> int:
    """Signed days from today to target. Negative when target is past."""
    return (target - today).days


def cycle_for_due(due: date, config: Optional[DatePolicyConfig] = None) -> CycleDates:
    """Cycle dates for a known due date. Used to repair reminder sets."""
    config = config or DatePolicyConfig()
    return CycleDates(
        anchor=due - relativedelta(months=config.cycle_months),
        due_date=due,
        eleven_month_reminder=eleven_month_reminder(due, config.eleven_month_months_before),
        thirty_day_reminder=thirty_day_reminder(due, config.thirty_day_days_before),
        due_date_reminder=due_date_reminder(due, config.due_date_days_before),
        grace_period_end=grace_period_end(due, config.grace_days),
    )
