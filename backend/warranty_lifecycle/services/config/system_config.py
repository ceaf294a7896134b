"""
System Configuration

Category/key configuration read by the lifecycle engine: inspection cycle length,
reminder offsets, grace period, token lifetimes, activation reminder policy,
photo requirements and sweep intervals.

Values live in the system_config table (SystemConfigService). Tests and tools can
use StaticConfigProvider instead. Both fall back to CONFIG_DEFAULTS.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import SystemConfigDB

logger = logging.getLogger(__name__)


# =============================================================================
# CATEGORIES AND DEFAULTS
# =============================================================================

WARRANTY_CONTINUITY = "WARRANTY_CONTINUITY"
REMINDER = "REMINDER"
GRACE_PERIOD = "GRACE_PERIOD"
VERIFICATION_RULES = "VERIFICATION_RULES"
ACTIVATION_REMINDER = "ACTIVATION_REMINDER"
PHOTO_VALIDATION = "PHOTO_VALIDATION"
CRON_JOBS = "CRON_JOBS"
AUDIT = "AUDIT"

_UNSET = object()

CONFIG_DEFAULTS: Dict[str, Dict[str, Dict[str, Any]]] = {
    WARRANTY_CONTINUITY: {
        "INSPECTION_CYCLE_MONTHS": {
            "name": "Inspection Cycle (months)",
            "value": 12,
            "description": "Months between a verification and the next inspection due date",
        },
    },
    REMINDER: {
        "ELEVEN_MONTH_REMINDER_MONTHS_BEFORE_DUE": {
            "name": "Eleven-Month Reminder Offset (months)",
            "value": 1,
            "description": "Calendar months before the due date to send the first reminder",
        },
        "THIRTY_DAY_REMINDER_DAYS_BEFORE_DUE": {
            "name": "Thirty-Day Reminder Offset (days)",
            "value": 30,
            "description": "Days before the due date to send the second reminder",
        },
        "DUE_DATE_REMINDER_DAYS_BEFORE_DUE": {
            "name": "Due Date Reminder Offset (days)",
            "value": 0,
            "description": "Days before the due date to send the final reminder",
        },
        "SEND_DELAY_SECONDS": {
            "name": "Delay Between Sends (seconds)",
            "value": 1,
            "description": "Pause between consecutive reminder sends in one sweep",
        },
    },
    GRACE_PERIOD: {
        "INSPECTION_GRACE_DAYS": {
            "name": "Inspection Grace Period (days)",
            "value": 30,
            "description": "Days after the due date before an unverified warranty expires",
        },
        "REINSTATEMENT_ALLOWED": {
            "name": "Reinstatement Allowed",
            "value": True,
            "description": "Whether administrators may reinstate lapsed warranties",
        },
    },
    VERIFICATION_RULES: {
        "INSTALLER_TOKEN_TTL_DAYS": {
            "name": "Installer Token Lifetime (days)",
            "value": 60,
            "description": "Validity of installer and inspector verification links",
        },
        "CUSTOMER_TOKEN_TTL_DAYS": {
            "name": "Customer Token Lifetime (days)",
            "value": 30,
            "description": "Validity of customer activation links",
        },
    },
    ACTIVATION_REMINDER: {
        "MAX_REMINDERS": {
            "name": "Maximum Activation Reminders",
            "value": 3,
            "description": "Reminders sent to a customer who has not activated",
        },
        "COOLDOWN_DAYS": {
            "name": "Activation Reminder Cooldown (days)",
            "value": 3,
            "description": "Minimum days between activation reminders",
        },
        "INITIAL_DELAY_HOURS": {
            "name": "Activation Reminder Initial Delay (hours)",
            "value": 24,
            "description": "Hours after the activation link is issued before the first reminder",
        },
    },
    PHOTO_VALIDATION: {
        "MIN_PHOTOS_WARRANTY": {
            "name": "Minimum Warranty Photos",
            "value": 3,
            "description": "Photos required before a warranty can be submitted",
        },
        "MIN_PHOTOS_INSPECTION": {
            "name": "Minimum Inspection Photos",
            "value": 3,
            "description": "Photos required before an inspection can be submitted",
        },
        "REQUIRED_CATEGORIES": {
            "name": "Required Photo Categories",
            "value": ["GENERATOR", "COUPLER", "CORROSION_OR_CLEAR"],
            "description": "Each category needs at least one photo",
        },
    },
    CRON_JOBS: {
        "REMINDER_PROCESSING_INTERVAL_MINUTES": {
            "name": "Reminder Dispatch Interval (minutes)",
            "value": 60,
            "description": "How often due reminders are sent",
        },
        "GRACE_PERIOD_PROCESSING_INTERVAL_MINUTES": {
            "name": "Grace Period Sweep Interval (minutes)",
            "value": 1440,
            "description": "How often expired grace periods are processed",
        },
        "STATUS_RECONCILIATION_INTERVAL_MINUTES": {
            "name": "Status Reconciliation Interval (minutes)",
            "value": 360,
            "description": "How often overdue flags and reminder sets are reconciled",
        },
        "ACTIVATION_REMINDER_INTERVAL_MINUTES": {
            "name": "Activation Reminder Interval (minutes)",
            "value": 60,
            "description": "How often pending customer activations are reminded",
        },
        "TOKEN_CLEANUP_INTERVAL_MINUTES": {
            "name": "Token Cleanup Interval (minutes)",
            "value": 1440,
            "description": "How often expired verification tokens are deleted",
        },
        "AUTO_START_CRON_JOBS": {
            "name": "Auto Start Jobs",
            "value": True,
            "description": "Start the periodic sweeps when the application starts",
        },
    },
    AUDIT: {
        "ARCHIVE_AFTER_DAYS": {
            "name": "Archive Resolved Audit Entries After (days)",
            "value": 365,
            "description": "Age after which non-current entries of resolved records are archived",
        },
        "ARCHIVAL_INTERVAL_MINUTES": {
            "name": "Audit Archival Interval (minutes)",
            "value": 1440,
            "description": "How often old audit entries are archived",
        },
    },
}


def default_value(category: str, key: str) -> Any:
    """Built-in default for a key, or None if the key is unknown."""
    entry = CONFIG_DEFAULTS.get(category, {}).get(key)
    return entry["value"] if entry else None


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

class ConfigurationProvider(ABC):
    """Read-only access to configuration values."""

    @abstractmethod
    def lookup(self, category: str, key: str) -> Any:
        """Stored value, or None when absent."""

    def get(self, category: str, key: str, default: Any = _UNSET) -> Any:
        """
        Value for (category, key).

        Falls back to `default` if given, else to CONFIG_DEFAULTS.
        Falsy stored values (0, False, "") are returned as-is.
        """
        value = self.lookup(category, key)
        if value is not None:
            return value
        if default is not _UNSET:
            return default
        return default_value(category, key)

    def get_int(self, category: str, key: str, default: Any = _UNSET) -> int:
        return int(self.get(category, key, default))

    def get_bool(self, category: str, key: str, default: Any = _UNSET) -> bool:
        value = self.get(category, key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)


class StaticConfigProvider(ConfigurationProvider):
    """
    In-memory provider.

    Accepts either {(category, key): value} or {category: {key: value}}.
    """

    def __init__(self, values: Optional[Mapping] = None):
        self._values: Dict[Tuple[str, str], Any] = {}
        for k, v in (values or {}).items():
            if isinstance(k, tuple):
                self._values[k] = v
            else:
                for key, value in v.items():
                    self._values[(k, key)] = value

    def lookup(self, category: str, key: str) -> Any:
        return self._values.get((category, key))

    def set(self, category: str, key: str, value: Any) -> None:
        self._values[(category, key)] = value


# =============================================================================
# DATABASE-BACKED PROVIDER
# =============================================================================

class SystemConfigService(ConfigurationProvider):
    """
    Configuration stored in the system_config table.

    Each row stores its value in exactly one typed column.
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def _get_row(self, category: str, key: str) -> Optional[SystemConfigDB]:
        return self.db.query(SystemConfigDB).filter(
            SystemConfigDB.config_category == category,
            SystemConfigDB.config_key == key,
            SystemConfigDB.is_active == True,  # noqa: E712
        ).first()

    @staticmethod
    def row_value(row: SystemConfigDB) -> Any:
        """First non-null typed value of a row."""
        for value in (
            row.string_value,
            row.integer_value,
            row.boolean_value,
            row.date_value,
            row.json_value,
        ):
            if value is not None:
                return value
        return None

    def lookup(self, category: str, key: str) -> Any:
        row = self._get_row(category, key)
        if row is None:
            return None
        return self.row_value(row)

    def get_category(self, category: str) -> Dict[str, Any]:
        """All active values of a category, defaults filled in."""
        values = {
            key: entry["value"]
            for key, entry in CONFIG_DEFAULTS.get(category, {}).items()
        }
        rows = self.db.query(SystemConfigDB).filter(
            SystemConfigDB.config_category == category,
            SystemConfigDB.is_active == True,  # noqa: E712
        ).order_by(SystemConfigDB.priority_order).all()
        for row in rows:
            value = self.row_value(row)
            if value is not None:
                values[row.config_key] = value
        return values

    def set_value(
        self,
        category: str,
        key: str,
        value: Any,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SystemConfigDB:
        """Create or update a value. Caller commits."""
        row = self.db.query(SystemConfigDB).filter(
            SystemConfigDB.config_category == category,
            SystemConfigDB.config_key == key,
        ).first()
        if row is None:
            default_entry = CONFIG_DEFAULTS.get(category, {}).get(key, {})
            row = SystemConfigDB(
                id=str(uuid4()),
                config_category=category,
                config_key=key,
                config_name=name or default_entry.get("name", key),
                description=description or default_entry.get("description"),
            )
            self.db.add(row)

        row.string_value = None
        row.integer_value = None
        row.boolean_value = None
        row.date_value = None
        row.json_value = None

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            row.boolean_value = value
        elif isinstance(value, int):
            row.integer_value = value
        elif isinstance(value, (date, datetime)):
            row.date_value = value if not isinstance(value, datetime) else value.date()
        elif isinstance(value, str):
            row.string_value = value
        else:
            row.json_value = value

        row.is_active = True
        self.db.flush()
        return row

    def initialize_defaults(self) -> List[str]:
        """
        Insert any missing default rows.
        Existing rows are left untouched. Returns the keys created.
        """
        created = []
        for category, entries in CONFIG_DEFAULTS.items():
            for priority, (key, entry) in enumerate(entries.items()):
                exists = self.db.query(SystemConfigDB.id).filter(
                    SystemConfigDB.config_category == category,
                    SystemConfigDB.config_key == key,
                ).first()
                if exists:
                    continue
                row = self.set_value(category, key, entry["value"], entry["name"], entry["description"])
                row.is_mandatory = True
                row.priority_order = priority
                created.append(f"{category}.{key}")

        self.db.commit()
        if created:
            logger.info(f"Seeded {len(created)} system config defaults")
        return created
