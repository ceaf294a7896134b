"""
Warranty Lifecycle Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Date, Text, JSON, Boolean, ForeignKey,
    Enum as SQLEnum, CheckConstraint, UniqueConstraint, Index, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR LIFECYCLE SYSTEM
# =============================================================================

class RecordType(str, Enum):
    """Kinds of lifecycle records."""
    WARRANTY = "WARRANTY"
    INSPECTION = "INSPECTION"


class WarrantyStatus(str, Enum):
    """States in the warranty lifecycle."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PENDING_CUSTOMER_ACTIVATION = "PENDING_CUSTOMER_ACTIVATION"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class InspectionStatus(str, Enum):
    """States in the annual inspection lifecycle."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class TokenType(str, Enum):
    """Verification token types."""
    WARRANTY_INSTALLER = "WARRANTY_INSTALLER"
    INSPECTION_INSTALLER = "INSPECTION_INSTALLER"
    CUSTOMER_ACTIVATION = "CUSTOMER_ACTIVATION"


class ReminderType(str, Enum):
    """Annual inspection reminder types."""
    ELEVEN_MONTH = "ELEVEN_MONTH"
    THIRTY_DAY = "THIRTY_DAY"
    DUE_DATE = "DUE_DATE"


class ReminderStatus(str, Enum):
    """Delivery status of a reminder entry."""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class AuditActionType(str, Enum):
    """Action types recorded in the audit ledger."""
    CREATE = "CREATE"
    SUBMIT = "SUBMIT"
    VERIFY = "VERIFY"
    REJECT = "REJECT"
    ACTIVATE = "ACTIVATE"
    CYCLE_EXTENDED = "CYCLE_EXTENDED"
    GRACE_EXPIRED = "GRACE_EXPIRED"
    REINSTATE = "REINSTATE"
    CANCEL = "CANCEL"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"
    REMINDER_SENT = "REMINDER_SENT"
    CUSTOMER_ACTIVATION_REMINDER_SENT = "CUSTOMER_ACTIVATION_REMINDER_SENT"


class UserRole(str, Enum):
    """Roles for actors acting on lifecycle records."""
    ADMIN = "admin"
    INSTALLER = "installer"
    ACCOUNT_STAFF = "account_staff"


SYSTEM_ACTOR = "SYSTEM"


class UserDB(Base):
    """Installer, inspector, staff or administrator account."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    mobile_number = Column(String(30), nullable=True)  # Verification SMS destination
    role = Column(String(30), nullable=False, default=UserRole.INSTALLER.value)
    is_accredited = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


# =============================================================================
# LIFECYCLE RECORDS
# =============================================================================

class LifecycleRecordMixin:
    """
    Columns shared by warranties and inspections.

    status/date fields are written only by the lifecycle state machine.
    row_version is the optimistic concurrency counter: every transition is a
    conditional UPDATE on (status, row_version).
    """
    id = Column(String(36), primary_key=True)  # UUID

    # Vehicle identity
    vin_number = Column(String(32), nullable=True, index=True)
    make = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)

    # Customer reference
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(30), nullable=True)

    # Who must verify
    installer_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = Column(String(36), nullable=True)

    # Compliance dates
    due_date = Column(Date, nullable=True)
    grace_period_end = Column(Date, nullable=True)
    is_overdue = Column(Boolean, default=False, nullable=False)
    is_grace_expired = Column(Boolean, default=False, nullable=False)
    reminders_sent = Column(Integer, default=0, nullable=False)

    # Counted by the upload service: {"GENERATOR": 2, "COUPLER": 1, ...}
    photo_counts = Column(JSON, nullable=True, default=dict)

    # Verification outcome
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String(36), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    submission_version = Column(Integer, default=0, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    row_version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WarrantyDB(LifecycleRecordMixin, Base):
    """
    A registered warranty.
    Activated by the customer after installer verification, then kept alive
    by one verified annual inspection per cycle.
    """
    __tablename__ = "warranties"

    status = Column(SQLEnum(WarrantyStatus), default=WarrantyStatus.DRAFT, nullable=False, index=True)

    installation_date = Column(Date, nullable=True)
    generator_serial = Column(String(100), nullable=True)

    # Activation
    is_active = Column(Boolean, default=False, nullable=False)
    activated_at = Column(DateTime, nullable=True)
    terms_accepted_at = Column(DateTime, nullable=True)

    # Lapse / reinstatement
    lapsed_at = Column(DateTime, nullable=True)
    is_reinstated = Column(Boolean, default=False, nullable=False)
    reinstatement_count = Column(Integer, default=0, nullable=False)
    last_reminder_sent_at = Column(DateTime, nullable=True)

    # Relationships
    inspections = relationship("InspectionDB", back_populates="warranty")
    reminders = relationship("ReminderEntryDB", back_populates="warranty", cascade="all, delete-orphan")
    reinstatements = relationship("WarrantyReinstatementDB", back_populates="warranty", cascade="all, delete-orphan")


class InspectionDB(LifecycleRecordMixin, Base):
    """
    An annual inspection of a warranted installation.
    Verification by the inspector extends the owning warranty by one cycle.
    """
    __tablename__ = "annual_inspections"

    status = Column(SQLEnum(InspectionStatus), default=InspectionStatus.DRAFT, nullable=False, index=True)

    warranty_id = Column(String(36), ForeignKey("warranties.id", ondelete="CASCADE"), nullable=False, index=True)
    inspection_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    warranty = relationship("WarrantyDB", back_populates="inspections")


# =============================================================================
# VERIFICATION TOKENS
# =============================================================================

class VerificationTokenDB(Base):
    """
    Single-use, time-boxed credential gating one transition of one record.
    At most one unused token per (record_id, type).
    """
    __tablename__ = "verification_tokens"

    id = Column(String(36), primary_key=True)  # UUID
    token = Column(String(128), unique=True, nullable=False, index=True)
    type = Column(SQLEnum(TokenType), nullable=False, index=True)
    record_id = Column(String(36), nullable=False, index=True)  # warranty or inspection id

    user_id = Column(String(36), nullable=True)  # installer for installer tokens
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(30), nullable=True)

    expires_at = Column(DateTime, nullable=False, index=True)
    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    invalidated_at = Column(DateTime, nullable=True)  # superseded, not consumed

    # Customer activation reminder bookkeeping
    reminders_sent = Column(Integer, default=0, nullable=False)
    last_reminder_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index(
            "uq_verification_tokens_live",
            "record_id", "type",
            unique=True,
            postgresql_where=text("is_used = false"),
            sqlite_where=text("is_used = 0"),
        ),
        Index("ix_verification_tokens_unused", "is_used", "expires_at"),
    )


# =============================================================================
# REMINDERS
# =============================================================================

class ReminderEntryDB(Base):
    """
    One scheduled annual inspection reminder for one warranty cycle.
    Owned by the reminder scheduler.
    """
    __tablename__ = "reminder_entries"

    id = Column(String(36), primary_key=True)  # UUID
    warranty_id = Column(String(36), ForeignKey("warranties.id", ondelete="CASCADE"), nullable=False, index=True)

    reminder_type = Column(SQLEnum(ReminderType), nullable=False)
    cycle_due_date = Column(Date, nullable=False)  # Due date of the cycle this reminder belongs to
    scheduled_date = Column(Date, nullable=False, index=True)
    recipient = Column(String(255), nullable=True)

    status = Column(SQLEnum(ReminderStatus), default=ReminderStatus.PENDING, nullable=False, index=True)
    sent_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    warranty = relationship("WarrantyDB", back_populates="reminders")

    __table_args__ = (
        Index(
            "uq_reminder_entries_outstanding",
            "warranty_id", "reminder_type",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'FAILED')"),
            sqlite_where=text("status IN ('PENDING', 'FAILED')"),
        ),
    )


# =============================================================================
# AUDIT LEDGER
# =============================================================================

class AuditEntryDB(Base):
    """
    Append-only record of a lifecycle event.
    References exactly one of warranty_id / inspection_id.
    version_number is gap-free per record; exactly one entry per record is current.
    """
    __tablename__ = "audit_entries"

    id = Column(String(36), primary_key=True)  # UUID

    warranty_id = Column(String(36), nullable=True, index=True)
    inspection_id = Column(String(36), nullable=True, index=True)
    record_type = Column(SQLEnum(RecordType), nullable=False)

    action_type = Column(SQLEnum(AuditActionType), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    is_current_version = Column(Boolean, default=False, nullable=False)
    is_admin_override = Column(Boolean, default=False, nullable=False)

    status_before = Column(String(50), nullable=True)
    status_after = Column(String(50), nullable=True)

    performed_by = Column(String(36), nullable=False)
    performed_at = Column(DateTime, nullable=False)

    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    submission_snapshot = Column(JSON, nullable=True)  # Full record payload at action time

    is_archived = Column(Boolean, default=False, nullable=False)
    archived_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "(warranty_id IS NOT NULL AND inspection_id IS NULL) OR "
            "(warranty_id IS NULL AND inspection_id IS NOT NULL)",
            name="chk_single_audit_reference",
        ),
        UniqueConstraint("warranty_id", "version_number", name="uq_audit_warranty_version"),
        UniqueConstraint("inspection_id", "version_number", name="uq_audit_inspection_version"),
        Index(
            "uq_audit_current_warranty",
            "warranty_id",
            unique=True,
            postgresql_where=text("is_current_version = true AND warranty_id IS NOT NULL"),
            sqlite_where=text("is_current_version = 1 AND warranty_id IS NOT NULL"),
        ),
        Index(
            "uq_audit_current_inspection",
            "inspection_id",
            unique=True,
            postgresql_where=text("is_current_version = true AND inspection_id IS NOT NULL"),
            sqlite_where=text("is_current_version = 1 AND inspection_id IS NOT NULL"),
        ),
    )


# =============================================================================
# SUPPORTING TABLES
# =============================================================================

class WarrantyReinstatementDB(Base):
    """History of administrative reinstatements of lapsed warranties."""
    __tablename__ = "warranty_reinstatements"

    id = Column(String(36), primary_key=True)  # UUID
    warranty_id = Column(String(36), ForeignKey("warranties.id", ondelete="CASCADE"), nullable=False, index=True)
    reinstated_by = Column(String(36), nullable=False)
    reinstated_at = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)

    previous_lapse_date = Column(DateTime, nullable=True)
    new_due_date = Column(Date, nullable=False)
    new_grace_period_end = Column(Date, nullable=False)
    inspection_id = Column(String(36), nullable=True)  # Qualifying inspection after lapse, if any

    created_at = Column(DateTime, default=datetime.utcnow)

    warranty = relationship("WarrantyDB", back_populates="reinstatements")


class SystemConfigDB(Base):
    """
    Category/key configuration entries.
    Exactly one of the typed value columns is expected to be set.
    """
    __tablename__ = "system_config"

    id = Column(String(36), primary_key=True)  # UUID
    config_category = Column(String(50), nullable=False, index=True)
    config_key = Column(String(100), nullable=False)
    config_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    string_value = Column(String(500), nullable=True)
    integer_value = Column(Integer, nullable=True)
    boolean_value = Column(Boolean, nullable=True)
    date_value = Column(Date, nullable=True)
    json_value = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    is_mandatory = Column(Boolean, default=False, nullable=False)
    priority_order = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("config_category", "config_key", name="uq_system_config_key"),
    )


class SchedulerJobRunDB(Base):
    """
    Tracks executions of the periodic sweeps.
    Reminder dispatch, grace period expiry, reconciliation, activation reminders.
    """
    __tablename__ = "scheduler_job_runs"

    id = Column(String(36), primary_key=True)  # UUID

    job_name = Column(String(50), nullable=False, index=True)
    trigger = Column(String(20), nullable=False, default="schedule")  # schedule, manual

    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    status = Column(String(20), default="running")  # running, completed, failed
    result = Column(JSON, nullable=True)            # Sweep summary
    error_message = Column(Text, nullable=True)     # If failed

    created_at = Column(DateTime, default=datetime.utcnow)
