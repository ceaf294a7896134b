"""
Verification Token Store

Single-use, time-boxed tokens that gate lifecycle transitions:
- WARRANTY_INSTALLER: installer confirms or declines a warranty registration
- INSPECTION_INSTALLER: inspector confirms or declines an annual inspection
- CUSTOMER_ACTIVATION: customer accepts terms and activates the warranty

Rules:
- At most one unused token per (record_id, type); issuing invalidates the previous one
- A token is consumed exactly once (compare-and-set on is_used)
- A token is never accepted after use, invalidation or expiry

The store flushes but never commits. The calling transition owns the transaction.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import VerificationTokenDB, TokenType
from ..config.system_config import ConfigurationProvider, StaticConfigProvider, VERIFICATION_RULES
from ..scheduling.clock import SystemClock
from .errors import TokenError, TokenFailure

logger = logging.getLogger(__name__)


INSTALLER_TOKEN_TYPES = (TokenType.WARRANTY_INSTALLER, TokenType.INSPECTION_INSTALLER)


@dataclass
class TokenValidationResult:
    """Outcome of a read-only token check."""
    valid: bool
    token: Optional[VerificationTokenDB] = None
    failure: Optional[TokenFailure] = None

    def raise_for_failure(self) -> VerificationTokenDB:
        if not self.valid:
            raise TokenError(self.failure)
        return self.token


class TokenStore:
    """Issues, validates and consumes verification tokens."""

    def __init__(
        self,
        db_session: Session,
        config: Optional[ConfigurationProvider] = None,
        clock=None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.config = config or StaticConfigProvider()
        self.clock = clock or SystemClock()

    # =========================================================================
    # ISSUE
    # =========================================================================

    @staticmethod
    def generate_value() -> str:
        """64 hex characters."""
        return secrets.token_hex(32)

    def ttl_for(self, token_type: TokenType) -> timedelta:
        if token_type in INSTALLER_TOKEN_TYPES:
            days = self.config.get_int(VERIFICATION_RULES, "INSTALLER_TOKEN_TTL_DAYS")
        else:
            days = self.config.get_int(VERIFICATION_RULES, "CUSTOMER_TOKEN_TTL_DAYS")
        return timedelta(days=days)

    def issue(
        self,
        token_type: TokenType,
        record_id: str,
        user_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> VerificationTokenDB:
        """Issue a fresh token, invalidating any unused token for the same record and type."""
        now = self.clock.now()

        superseded = self.invalidate_for_record(record_id, token_type)
        if superseded:
            logger.info(f"Invalidated {superseded} prior {token_type.value} token(s) for {record_id}")

        token = VerificationTokenDB(
            id=str(uuid4()),
            token=self.generate_value(),
            type=token_type,
            record_id=record_id,
            user_id=user_id,
            customer_email=customer_email,
            customer_phone=customer_phone,
            expires_at=now + self.ttl_for(token_type),
            is_used=False,
            reminders_sent=0,
            created_at=now,
        )
        self.db.add(token)
        self.db.flush()
        return token

    # =========================================================================
    # VALIDATE / CONSUME
    # =========================================================================

    def get_by_value(self, value: str) -> Optional[VerificationTokenDB]:
        if not value:
            return None
        return self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.token == value
        ).first()

    def validate(
        self,
        value: str,
        expected_type: Optional[TokenType] = None,
        record_id: Optional[str] = None,
    ) -> TokenValidationResult:
        """Check a token without changing it."""
        token = self.get_by_value(value)
        if token is None:
            return TokenValidationResult(valid=False, failure=TokenFailure.TOKEN_INVALID)

        if token.is_used:
            return TokenValidationResult(valid=False, token=token, failure=TokenFailure.TOKEN_ALREADY_USED)

        if expected_type is not None and token.type != expected_type:
            return TokenValidationResult(valid=False, token=token, failure=TokenFailure.WRONG_TYPE)

        if record_id is not None and token.record_id != record_id:
            return TokenValidationResult(valid=False, token=token, failure=TokenFailure.TOKEN_INVALID)

        if token.expires_at <= self.clock.now():
            return TokenValidationResult(valid=False, token=token, failure=TokenFailure.TOKEN_EXPIRED)

        return TokenValidationResult(valid=True, token=token)

    def consume(
        self,
        value: str,
        expected_type: Optional[TokenType] = None,
        record_id: Optional[str] = None,
    ) -> VerificationTokenDB:
        """
        Validate and mark a token used.

        The used flag is flipped with a conditional UPDATE, so of two concurrent
        consumers exactly one succeeds; the other gets TOKEN_ALREADY_USED.
        """
        token = self.validate(value, expected_type, record_id).raise_for_failure()
        now = self.clock.now()

        updated = self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.id == token.id,
            VerificationTokenDB.is_used == False,  # noqa: E712
        ).update({"is_used": True, "used_at": now})
        if updated != 1:
            logger.warning(f"Token {token.id} consumed concurrently")
            raise TokenError(TokenFailure.TOKEN_ALREADY_USED)

        self.db.refresh(token)
        return token

    # =========================================================================
    # LOOKUPS AND MAINTENANCE
    # =========================================================================

    def get_active_token(self, record_id: str, token_type: TokenType) -> Optional[VerificationTokenDB]:
        """The live (unused, unexpired) token for a record, if any."""
        return self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.record_id == record_id,
            VerificationTokenDB.type == token_type,
            VerificationTokenDB.is_used == False,  # noqa: E712
            VerificationTokenDB.expires_at > self.clock.now(),
        ).first()

    def invalidate_for_record(self, record_id: str, token_type: Optional[TokenType] = None) -> int:
        """Mark every unused token of a record as used. Returns the count."""
        now = self.clock.now()
        query = self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.record_id == record_id,
            VerificationTokenDB.is_used == False,  # noqa: E712
        )
        if token_type is not None:
            query = query.filter(VerificationTokenDB.type == token_type)

        return query.update({"is_used": True, "invalidated_at": now})

    def cleanup_expired(self) -> int:
        """Delete tokens past expiry. Safe to repeat."""
        deleted = self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.expires_at < self.clock.now()
        ).delete()
        if deleted:
            logger.info(f"Deleted {deleted} expired verification tokens")
        return deleted

    # =========================================================================
    # CUSTOMER ACTIVATION REMINDERS
    # =========================================================================

    def pending_activation_tokens_for_reminder(
        self,
        max_reminders: int = 3,
        cooldown_days: int = 3,
        initial_delay_hours: int = 24,
    ) -> List[VerificationTokenDB]:
        """
        Live customer activation tokens due a reminder:
        issued at least initial_delay_hours ago, fewer than max_reminders sent,
        and no reminder within the last cooldown_days.
        """
        now = self.clock.now()
        issued_before = now - timedelta(hours=initial_delay_hours)
        last_sent_before = now - timedelta(days=cooldown_days)

        return self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.type == TokenType.CUSTOMER_ACTIVATION,
            VerificationTokenDB.is_used == False,  # noqa: E712
            VerificationTokenDB.expires_at > now,
            VerificationTokenDB.created_at <= issued_before,
            VerificationTokenDB.reminders_sent < max_reminders,
            (VerificationTokenDB.last_reminder_sent_at.is_(None))
            | (VerificationTokenDB.last_reminder_sent_at <= last_sent_before),
        ).order_by(VerificationTokenDB.created_at).all()

    def claim_reminder_slot(self, token: VerificationTokenDB) -> bool:
        """
        Reserve the next reminder number for a token.

        Conditional on reminders_sent being unchanged since it was read, so two
        overlapping sweeps cannot both send the same reminder.
        """
        expected = token.reminders_sent or 0
        claimed = self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.id == token.id,
            VerificationTokenDB.reminders_sent == expected,
            VerificationTokenDB.is_used == False,  # noqa: E712
        ).update({"reminders_sent": expected + 1, "last_reminder_sent_at": self.clock.now()})
        self.db.refresh(token)
        return claimed == 1

    def release_reminder_slot(
        self,
        token: VerificationTokenDB,
        previous_last_sent: Optional[datetime],
    ) -> None:
        """Undo a claim after a failed send so the reminder is retried."""
        current = token.reminders_sent or 0
        self.db.query(VerificationTokenDB).filter(
            VerificationTokenDB.id == token.id,
            VerificationTokenDB.reminders_sent == current,
        ).update({"reminders_sent": max(current - 1, 0), "last_reminder_sent_at": previous_last_sent})
        self.db.refresh(token)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        now = self.clock.now()
        base = self.db.query(VerificationTokenDB)

        by_type = dict(
            self.db.query(VerificationTokenDB.type, func.count(VerificationTokenDB.id))
            .group_by(VerificationTokenDB.type)
            .all()
        )

        return {
            "total": base.count(),
            "used": base.filter(
                VerificationTokenDB.is_used == True,  # noqa: E712
                VerificationTokenDB.invalidated_at.is_(None),
            ).count(),
            "invalidated": base.filter(VerificationTokenDB.invalidated_at.isnot(None)).count(),
            "active": base.filter(
                VerificationTokenDB.is_used == False,  # noqa: E712
                VerificationTokenDB.expires_at > now,
            ).count(),
            "expired": base.filter(
                VerificationTokenDB.is_used == False,  # noqa: E712
                VerificationTokenDB.expires_at <= now,
            ).count(),
            "by_type": {
                (t.value if isinstance(t, TokenType) else str(t)): count
                for t, count in by_type.items()
            },
        }
