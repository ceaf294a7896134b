"""
Shared fixtures for the lifecycle engine tests.

Every test gets its own in-memory SQLite database, a manual clock, a recording
notification gateway and a static configuration with no send delay.
"""
import os

# Must be set before warranty_lifecycle.database creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from warranty_lifecycle.database import Base, init_db, make_engine
from warranty_lifecycle.models.db_models import UserDB, UserRole
from warranty_lifecycle.services.config import StaticConfigProvider
from warranty_lifecycle.services.config.system_config import REMINDER
from warranty_lifecycle.services.lifecycle import LifecycleStateMachine, VerificationAction
from warranty_lifecycle.services.notifications.gateway import DeliveryResult, NotificationGateway
from warranty_lifecycle.services.scheduling.clock import ManualClock
from warranty_lifecycle.services.scheduling.reminder_scheduler import ReminderScheduler


START = datetime(2025, 1, 15, 9, 0, 0)

COMPLETE_PHOTOS = {"GENERATOR": 2, "COUPLER": 1, "CORROSION_OR_CLEAR": 1}


class RecordingGateway(NotificationGateway):
    """Keeps every message in memory. Can be told to fail or to raise."""

    def __init__(self):
        self.emails: List[dict] = []
        self.sms: List[dict] = []
        self.fail = False
        self.raise_error = False

    @property
    def provider_name(self) -> str:
        return "recording"

    def _result(self, channel: str) -> DeliveryResult:
        if self.raise_error:
            raise RuntimeError("transport unavailable")
        if self.fail:
            return DeliveryResult(
                success=False, channel=channel, provider=self.provider_name,
                error_message="mailbox unavailable",
            )
        return DeliveryResult(
            success=True, channel=channel, provider=self.provider_name,
            message_id=f"rec-{uuid4()}",
        )

    def send_email(self, to, subject, html_body, text_body):
        result = self._result("email")
        self.emails.append({"to": to, "subject": subject, "text": text_body, "success": result.success})
        return result

    def send_sms(self, to, body):
        result = self._result("sms")
        self.sms.append({"to": to, "body": body, "success": result.success})
        return result

    def clear(self):
        self.emails.clear()
        self.sms.clear()


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def config():
    return StaticConfigProvider({REMINDER: {"SEND_DELAY_SECONDS": 0}})


@pytest.fixture
def machine(db, config, clock, gateway):
    return LifecycleStateMachine(db, config, clock, gateway)


@pytest.fixture
def scheduler(db, config, clock, gateway, machine):
    return ReminderScheduler(db, config, clock, gateway, machine)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_user(db):
    def _make_user(role: str = UserRole.INSTALLER.value, mobile_number: Optional[str] = None) -> UserDB:
        suffix = uuid4().hex[:8]
        user = UserDB(
            id=str(uuid4()),
            email=f"{role}-{suffix}@example.com",
            username=f"{role}-{suffix}",
            password_hash="not-a-real-hash",
            full_name=f"Test {role.title()}",
            mobile_number=mobile_number,
            role=role,
        )
        db.add(user)
        db.commit()
        return user
    return _make_user


@pytest.fixture
def installer(make_user):
    return make_user(UserRole.INSTALLER.value, mobile_number="+64210000001")


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN.value)


@pytest.fixture
def make_draft(machine, installer):
    def _make_draft(**overrides):
        fields = {
            "vin_number": "JTDKB20U793512345",
            "make": "Toyota",
            "model": "Hilux",
            "customer_name": "Alex Customer",
            "customer_email": "alex@example.com",
            "customer_phone": "+64210000002",
            "installer_id": installer.id,
            "photo_counts": dict(COMPLETE_PHOTOS),
        }
        fields.update(overrides)
        return machine.create_warranty(installer.id, **fields)
    return _make_draft


@pytest.fixture
def make_pending(machine, make_draft, installer):
    """Warranty in PENDING_CUSTOMER_ACTIVATION. Returns (warranty, customer token value)."""
    def _make_pending(**overrides):
        warranty = make_draft(**overrides)
        submitted = machine.submit(warranty, installer.id)
        confirmed = machine.verify(submitted.token.token, VerificationAction.CONFIRM)
        return warranty, confirmed.token.token
    return _make_pending


@pytest.fixture
def make_active(machine, make_pending):
    """ACTIVE warranty activated at the current clock time."""
    def _make_active(**overrides):
        warranty, customer_token = make_pending(**overrides)
        machine.accept_activation(customer_token, True)
        return warranty
    return _make_active
