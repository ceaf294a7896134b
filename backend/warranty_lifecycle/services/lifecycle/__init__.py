"""
Lifecycle Services

Warranty and annual inspection workflow:
- LifecycleStateMachine: transition table, guarded status changes, admin override
- TokenStore: single-use verification and activation tokens
- AuditLedgerService: append-only, versioned history of every transition
- ReinstatementService: administrative restore of lapsed warranties
"""

from .errors import (
    LifecycleError,
    ValidationError,
    IllegalTransitionError,
    RecordNotFoundError,
    TokenError,
    TokenFailure,
    NotificationError,
    ConcurrencyConflict,
    DataIntegrityError,
    PermissionDeniedError,
)
from .token_store import TokenStore, TokenValidationResult
from .audit_ledger import AuditLedgerService
from .submission_gate import SubmissionCompletenessChecker, PhotoCountCompletenessChecker
from .state_machine import (
    LifecycleStateMachine,
    TransitionResult,
    VerificationAction,
    OverrideAction,
    WARRANTY_STATE_CONFIG,
    INSPECTION_STATE_CONFIG,
)
from .reinstatement import ReinstatementService, EligibilityResult

__all__ = [
    'LifecycleError',
    'ValidationError',
    'IllegalTransitionError',
    'RecordNotFoundError',
    'TokenError',
    'TokenFailure',
    'NotificationError',
    'ConcurrencyConflict',
    'DataIntegrityError',
    'PermissionDeniedError',
    'TokenStore',
    'TokenValidationResult',
    'AuditLedgerService',
    'SubmissionCompletenessChecker',
    'PhotoCountCompletenessChecker',
    'LifecycleStateMachine',
    'TransitionResult',
    'VerificationAction',
    'OverrideAction',
    'WARRANTY_STATE_CONFIG',
    'INSPECTION_STATE_CONFIG',
    'ReinstatementService',
    'EligibilityResult',
]
