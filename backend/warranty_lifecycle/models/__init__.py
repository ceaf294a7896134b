"""Warranty Lifecycle Engine - Data Models"""
from .db_models import (
    # Enums
    RecordType, WarrantyStatus, InspectionStatus, TokenType,
    ReminderType, ReminderStatus, AuditActionType, UserRole, SYSTEM_ACTOR,
    # Tables
    UserDB, WarrantyDB, InspectionDB, VerificationTokenDB, ReminderEntryDB,
    AuditEntryDB, WarrantyReinstatementDB, SystemConfigDB, SchedulerJobRunDB,
)

__all__ = [
    "RecordType", "WarrantyStatus", "InspectionStatus", "TokenType",
    "ReminderType", "ReminderStatus", "AuditActionType", "UserRole", "SYSTEM_ACTOR",
    "UserDB", "WarrantyDB", "InspectionDB", "VerificationTokenDB", "ReminderEntryDB",
    "AuditEntryDB", "WarrantyReinstatementDB", "SystemConfigDB", "SchedulerJobRunDB",
]
