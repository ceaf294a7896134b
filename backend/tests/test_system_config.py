"""
Tests for configuration providers.
"""
from datetime import date

from warranty_lifecycle.models.db_models import SystemConfigDB
from warranty_lifecycle.services.config import StaticConfigProvider, SystemConfigService
from warranty_lifecycle.services.config.system_config import (
    CONFIG_DEFAULTS, CRON_JOBS, GRACE_PERIOD, PHOTO_VALIDATION, REMINDER, WARRANTY_CONTINUITY,
)


class TestStaticConfigProvider:

    def test_defaults_when_unset(self):
        provider = StaticConfigProvider()
        assert provider.get_int(GRACE_PERIOD, "INSPECTION_GRACE_DAYS") == 30
        assert provider.get(REMINDER, "UNKNOWN_KEY") is None

    def test_tuple_and_nested_keys(self):
        provider = StaticConfigProvider({
            (REMINDER, "SEND_DELAY_SECONDS"): 0,
            GRACE_PERIOD: {"REINSTATEMENT_ALLOWED": False},
        })
        assert provider.get_int(REMINDER, "SEND_DELAY_SECONDS") == 0
        assert provider.get_bool(GRACE_PERIOD, "REINSTATEMENT_ALLOWED") is False

    def test_explicit_default(self):
        assert StaticConfigProvider().get(REMINDER, "UNKNOWN_KEY", 5) == 5

    def test_string_booleans(self):
        provider = StaticConfigProvider({CRON_JOBS: {"AUTO_START_CRON_JOBS": "no"}})
        assert provider.get_bool(CRON_JOBS, "AUTO_START_CRON_JOBS") is False


class TestSystemConfigService:

    def test_empty_table_uses_defaults(self, db):
        service = SystemConfigService(db)
        assert service.get_int(WARRANTY_CONTINUITY, "INSPECTION_CYCLE_MONTHS") == 12

    def test_typed_columns(self, db):
        service = SystemConfigService(db)

        service.set_value(GRACE_PERIOD, "INSPECTION_GRACE_DAYS", 14)
        service.set_value(PHOTO_VALIDATION, "REQUIRED_CATEGORIES", ["GENERATOR"])
        service.set_value(REMINDER, "NOTE", "quiet hours")
        service.set_value(REMINDER, "BLACKOUT_FROM", date(2025, 12, 24))
        db.commit()

        row = db.query(SystemConfigDB).filter(SystemConfigDB.config_key == "INSPECTION_GRACE_DAYS").one()
        assert row.integer_value == 14
        assert row.boolean_value is None
        assert service.get_int(GRACE_PERIOD, "INSPECTION_GRACE_DAYS") == 14
        assert service.get(PHOTO_VALIDATION, "REQUIRED_CATEGORIES") == ["GENERATOR"]
        assert service.get(REMINDER, "NOTE") == "quiet hours"
        assert service.get(REMINDER, "BLACKOUT_FROM") == date(2025, 12, 24)

    def test_falsy_values_are_kept(self, db):
        """A stored 0 or False wins over the default."""
        service = SystemConfigService(db)
        service.set_value(REMINDER, "SEND_DELAY_SECONDS", 0)
        service.set_value(GRACE_PERIOD, "REINSTATEMENT_ALLOWED", False)
        db.commit()

        assert service.get_int(REMINDER, "SEND_DELAY_SECONDS") == 0
        assert service.get_bool(GRACE_PERIOD, "REINSTATEMENT_ALLOWED") is False

    def test_set_value_replaces_type(self, db):
        service = SystemConfigService(db)
        service.set_value(REMINDER, "SEND_DELAY_SECONDS", 2)
        service.set_value(REMINDER, "SEND_DELAY_SECONDS", True)
        db.commit()

        row = db.query(SystemConfigDB).filter(SystemConfigDB.config_key == "SEND_DELAY_SECONDS").one()
        assert row.integer_value is None
        assert row.boolean_value is True

    def test_inactive_rows_ignored(self, db):
        service = SystemConfigService(db)
        row = service.set_value(GRACE_PERIOD, "INSPECTION_GRACE_DAYS", 5)
        row.is_active = False
        db.commit()

        assert service.get_int(GRACE_PERIOD, "INSPECTION_GRACE_DAYS") == 30

    def test_initialize_defaults_is_idempotent(self, db):
        service = SystemConfigService(db)
        service.set_value(GRACE_PERIOD, "INSPECTION_GRACE_DAYS", 45)
        db.commit()

        created = service.initialize_defaults()

        expected = sum(len(entries) for entries in CONFIG_DEFAULTS.values())
        assert len(created) == expected - 1
        assert f"{GRACE_PERIOD}.INSPECTION_GRACE_DAYS" not in created
        assert service.get_int(GRACE_PERIOD, "INSPECTION_GRACE_DAYS") == 45
        assert service.initialize_defaults() == []

    def test_get_category(self, db):
        service = SystemConfigService(db)
        service.initialize_defaults()
        service.set_value(REMINDER, "THIRTY_DAY_REMINDER_DAYS_BEFORE_DUE", 21)
        db.commit()

        values = service.get_category(REMINDER)

        assert values["THIRTY_DAY_REMINDER_DAYS_BEFORE_DUE"] == 21
        assert values["ELEVEN_MONTH_REMINDER_MONTHS_BEFORE_DUE"] == 1
