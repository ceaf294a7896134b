"""
Tests for the verification token store.

1. Issue: 64 hex characters, TTL per token type, prior token invalidated
2. Validate: invalid, used, wrong type, wrong record, expired
3. Consume: exactly once
4. Cleanup of expired tokens
5. Activation reminder slot claim and release
"""
import pytest
from datetime import timedelta
from uuid import uuid4

from warranty_lifecycle.models.db_models import TokenType, VerificationTokenDB
from warranty_lifecycle.services.config import StaticConfigProvider
from warranty_lifecycle.services.config.system_config import VERIFICATION_RULES
from warranty_lifecycle.services.lifecycle import TokenError, TokenFailure, TokenStore


@pytest.fixture
def store(db, config, clock):
    return TokenStore(db, config, clock)


@pytest.fixture
def record_id():
    return str(uuid4())


# =============================================================================
# TEST: ISSUE
# =============================================================================

class TestIssue:
    """Tests for TokenStore.issue."""

    def test_token_value_format(self, store, record_id, db):
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()

        assert len(token.token) == 64
        int(token.token, 16)  # hex
        assert token.is_used is False

    def test_installer_ttl_is_sixty_days(self, store, record_id, clock):
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        assert token.expires_at == clock.now() + timedelta(days=60)

    def test_customer_ttl_is_thirty_days(self, store, record_id, clock):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id, customer_email="c@example.com")
        assert token.expires_at == clock.now() + timedelta(days=30)

    def test_ttl_from_configuration(self, db, clock, record_id):
        store = TokenStore(db, StaticConfigProvider({VERIFICATION_RULES: {"INSTALLER_TOKEN_TTL_DAYS": 7}}), clock)
        token = store.issue(TokenType.INSPECTION_INSTALLER, record_id)
        assert token.expires_at == clock.now() + timedelta(days=7)

    def test_reissue_invalidates_previous(self, store, record_id, db):
        """Only the newest token of a record and type is accepted."""
        first = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()
        first_value = first.token

        second = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()

        assert store.validate(first_value).failure == TokenFailure.TOKEN_ALREADY_USED
        assert store.validate(second.token).valid
        db.refresh(first)
        assert first.invalidated_at is not None

    def test_reissue_keeps_other_types(self, store, record_id, db):
        installer = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        assert store.validate(installer.token).valid


# =============================================================================
# TEST: VALIDATE / CONSUME
# =============================================================================

class TestValidate:
    """Tests for TokenStore.validate and consume."""

    def test_unknown_token(self, store):
        result = store.validate("0" * 64)
        assert not result.valid
        assert result.failure == TokenFailure.TOKEN_INVALID

    def test_empty_token(self, store):
        assert store.validate("").failure == TokenFailure.TOKEN_INVALID

    def test_wrong_type(self, store, record_id, db):
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()

        result = store.validate(token.token, TokenType.CUSTOMER_ACTIVATION)
        assert result.failure == TokenFailure.WRONG_TYPE

    def test_wrong_record(self, store, record_id, db):
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()

        result = store.validate(token.token, record_id=str(uuid4()))
        assert result.failure == TokenFailure.TOKEN_INVALID

    def test_expired(self, store, record_id, db, clock):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        clock.advance(days=30)
        result = store.validate(token.token)
        assert result.failure == TokenFailure.TOKEN_EXPIRED

    def test_valid_just_before_expiry(self, store, record_id, db, clock):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        clock.advance(days=30, seconds=-1)
        assert store.validate(token.token).valid

    def test_consume_once(self, store, record_id, db, clock):
        """A second consume fails with TOKEN_ALREADY_USED."""
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()
        value = token.token

        consumed = store.consume(value, TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()
        assert consumed.is_used is True
        assert consumed.used_at == clock.now()

        with pytest.raises(TokenError) as exc_info:
            store.consume(value)
        assert exc_info.value.failure == TokenFailure.TOKEN_ALREADY_USED

    def test_concurrent_consumers_one_wins(self, session_factory, config, clock, record_id):
        """Two requests validate the same link, then both consume it."""
        setup_db = session_factory()
        value = TokenStore(setup_db, config, clock).issue(TokenType.CUSTOMER_ACTIVATION, record_id).token
        setup_db.commit()
        setup_db.close()

        first_db, second_db = session_factory(), session_factory()
        first, second = TokenStore(first_db, config, clock), TokenStore(second_db, config, clock)
        try:
            assert first.validate(value).valid
            assert second.validate(value).valid

            first.consume(value, TokenType.CUSTOMER_ACTIVATION)
            first_db.commit()

            with pytest.raises(TokenError) as exc_info:
                second.consume(value, TokenType.CUSTOMER_ACTIVATION)
            assert exc_info.value.failure == TokenFailure.TOKEN_ALREADY_USED
            second_db.rollback()
        finally:
            first_db.close()
            second_db.close()

        check_db = session_factory()
        token = check_db.query(VerificationTokenDB).filter(VerificationTokenDB.token == value).one()
        assert token.is_used is True
        assert token.used_at == clock.now()
        check_db.close()

    def test_expired_token_error_is_gone(self, store, record_id, db, clock):
        token = store.issue(TokenType.WARRANTY_INSTALLER, record_id)
        db.commit()
        clock.advance(days=61)

        with pytest.raises(TokenError) as exc_info:
            store.consume(token.token)
        assert exc_info.value.http_status == 410
        assert exc_info.value.code == "TOKEN_EXPIRED"


# =============================================================================
# TEST: MAINTENANCE
# =============================================================================

class TestMaintenance:

    def test_cleanup_deletes_only_expired(self, store, db, clock):
        old = store.issue(TokenType.CUSTOMER_ACTIVATION, str(uuid4()))
        db.commit()
        old_id = old.id

        clock.advance(days=31)
        fresh = store.issue(TokenType.CUSTOMER_ACTIVATION, str(uuid4()))
        db.commit()

        assert store.cleanup_expired() == 1
        db.commit()
        assert db.query(VerificationTokenDB).filter(VerificationTokenDB.id == old_id).first() is None
        assert store.get_by_value(fresh.token) is not None

        # Repeatable
        assert store.cleanup_expired() == 0

    def test_get_active_token(self, store, record_id, db):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        assert store.get_active_token(record_id, TokenType.CUSTOMER_ACTIVATION).id == token.id
        assert store.get_active_token(record_id, TokenType.WARRANTY_INSTALLER) is None

    def test_statistics(self, store, db):
        store.issue(TokenType.CUSTOMER_ACTIVATION, str(uuid4()))
        store.issue(TokenType.WARRANTY_INSTALLER, str(uuid4()))
        db.commit()

        stats = store.get_statistics()
        assert stats["total"] == 2
        assert stats["active"] == 2
        assert stats["by_type"]["CUSTOMER_ACTIVATION"] == 1


# =============================================================================
# TEST: ACTIVATION REMINDER SLOTS
# =============================================================================

class TestReminderSlots:
    """Tests for claim/release of activation reminder numbers."""

    def test_initial_delay(self, store, record_id, db, clock):
        """No reminder before 24 hours have passed since issuance."""
        store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        clock.advance(hours=23)
        assert store.pending_activation_tokens_for_reminder() == []

        clock.advance(hours=2)
        assert len(store.pending_activation_tokens_for_reminder()) == 1

    def test_claim_is_conditional(self, store, record_id, db, clock):
        """A claim based on a stale reminders_sent value fails."""
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        assert store.claim_reminder_slot(token) is True
        assert token.reminders_sent == 1
        assert token.last_reminder_sent_at == clock.now()

        token.reminders_sent = 0  # stale in-memory view
        assert store.claim_reminder_slot(token) is False
        assert token.reminders_sent == 1

    def test_release_restores_previous_state(self, store, record_id, db, clock):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()

        store.claim_reminder_slot(token)
        store.release_reminder_slot(token, None)
        db.commit()

        assert token.reminders_sent == 0
        assert token.last_reminder_sent_at is None

    def test_cooldown_and_cap(self, store, record_id, db, clock):
        token = store.issue(TokenType.CUSTOMER_ACTIVATION, record_id)
        db.commit()
        clock.advance(hours=25)

        store.claim_reminder_slot(token)
        db.commit()

        clock.advance(days=2)
        assert store.pending_activation_tokens_for_reminder() == []

        clock.advance(days=1)
        assert len(store.pending_activation_tokens_for_reminder()) == 1

        store.claim_reminder_slot(token)
        clock.advance(days=3)
        store.claim_reminder_slot(token)
        db.commit()
        clock.advance(days=3)

        assert token.reminders_sent == 3
        assert store.pending_activation_tokens_for_reminder(max_reminders=3) == []
