"""
Tests for the inspection cycle date policy.

Pure date arithmetic, no database:
1. Cycle dates from an anchor (calendar months, end of month clamped)
2. Reminder offsets and grace period from configuration
3. Future anchors clamped to the reference date
4. Cycle reconstruction from a known due date
"""
from datetime import date

from warranty_lifecycle.models.db_models import ReminderType
from warranty_lifecycle.services.config import StaticConfigProvider
from warranty_lifecycle.services.config.system_config import GRACE_PERIOD, WARRANTY_CONTINUITY
from warranty_lifecycle.services.scheduling.date_policy import (
    DatePolicyConfig,
    compute_cycle,
    cycle_for_due,
    days_until,
    due_date,
    eleven_month_reminder,
    grace_period_end,
    thirty_day_reminder,
)


# =============================================================================
# TEST: CYCLE COMPUTATION
# =============================================================================

class TestComputeCycle:
    """Tests for compute_cycle with default settings."""

    def test_installation_anchor(self):
        """Anchor 2024-01-10 gives due 2025-01-10 and the matching reminder dates."""
        cycle = compute_cycle(date(2024, 1, 10))

        assert cycle.due_date == date(2025, 1, 10)
        assert cycle.eleven_month_reminder == date(2024, 12, 10)
        assert cycle.thirty_day_reminder == date(2024, 12, 11)
        assert cycle.due_date_reminder == date(2025, 1, 10)
        assert cycle.grace_period_end == date(2025, 2, 9)

    def test_leap_day_anchor_clamps_to_month_end(self):
        """Feb 29 plus twelve months lands on Feb 28."""
        cycle = compute_cycle(date(2024, 2, 29))
        assert cycle.due_date == date(2025, 2, 28)

    def test_month_end_eleven_month_reminder(self):
        """One calendar month before Mar 31 is Feb 28 (non-leap year)."""
        assert eleven_month_reminder(date(2025, 3, 31)) == date(2025, 2, 28)

    def test_reminder_dates_in_order(self):
        """Reminders never come after the due date, grace end always does."""
        cycle = compute_cycle(date(2024, 6, 1))
        dates = cycle.reminder_dates()

        assert set(dates) == {ReminderType.ELEVEN_MONTH, ReminderType.THIRTY_DAY, ReminderType.DUE_DATE}
        assert dates[ReminderType.ELEVEN_MONTH] <= dates[ReminderType.THIRTY_DAY] <= dates[ReminderType.DUE_DATE]
        assert cycle.grace_period_end > cycle.due_date

    def test_future_anchor_is_clamped(self):
        """An anchor after the reference date starts the cycle on the reference date."""
        cycle = compute_cycle(date(2025, 3, 1), reference_date=date(2025, 2, 1))

        assert cycle.anchor == date(2025, 2, 1)
        assert cycle.due_date == date(2026, 2, 1)

    def test_past_anchor_is_kept(self):
        cycle = compute_cycle(date(2024, 1, 10), reference_date=date(2025, 2, 1))
        assert cycle.anchor == date(2024, 1, 10)


# =============================================================================
# TEST: CONFIGURATION
# =============================================================================

class TestDatePolicyConfig:
    """Tests for configurable offsets."""

    def test_defaults_from_empty_provider(self):
        """An empty provider yields the built-in defaults."""
        config = DatePolicyConfig.from_provider(StaticConfigProvider())
        assert config == DatePolicyConfig()

    def test_custom_cycle_and_grace(self):
        """Six-month cycle with a 14 day grace period."""
        provider = StaticConfigProvider({
            WARRANTY_CONTINUITY: {"INSPECTION_CYCLE_MONTHS": 6},
            GRACE_PERIOD: {"INSPECTION_GRACE_DAYS": 14},
        })
        config = DatePolicyConfig.from_provider(provider)
        cycle = compute_cycle(date(2025, 1, 10), config)

        assert cycle.due_date == date(2025, 7, 10)
        assert cycle.grace_period_end == date(2025, 7, 24)

    def test_zero_grace_is_honoured(self):
        """A stored 0 is not replaced by the default."""
        provider = StaticConfigProvider({GRACE_PERIOD: {"INSPECTION_GRACE_DAYS": 0}})
        config = DatePolicyConfig.from_provider(provider)
        assert config.grace_days == 0


# =============================================================================
# TEST: HELPERS
# =============================================================================

class TestHelpers:

    def test_single_step_functions(self):
        due = due_date(date(2024, 1, 10))
        assert due == date(2025, 1, 10)
        assert thirty_day_reminder(due) == date(2024, 12, 11)
        assert grace_period_end(due) == date(2025, 2, 9)

    def test_days_until_is_signed(self):
        assert days_until(date(2025, 1, 20), date(2025, 1, 15)) == 5
        assert days_until(date(2025, 1, 10), date(2025, 1, 15)) == -5

    def test_cycle_for_due_matches_compute_cycle(self):
        """Rebuilding a cycle from its due date gives the same reminder dates."""
        original = compute_cycle(date(2024, 1, 10))
        rebuilt = cycle_for_due(original.due_date)

        assert rebuilt.reminder_dates() == original.reminder_dates()
        assert rebuilt.grace_period_end == original.grace_period_end
