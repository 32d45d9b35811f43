"""Test configuration and fixtures."""

import json
import os
import pytest
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set up test environment variables BEFORE importing app modules
os.environ.setdefault("DEVICE_TOKEN_SECRET", "test-device-token-secret-for-testing-only")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from fieldsync.auth.passwords import hash_password
from fieldsync.core.audit import AuditEvent, AuditSink
from fieldsync.core.device_credentials import DeviceCredentialManager, DeviceUser
from fieldsync.core.sync_processor import SyncBatchItem, SyncProcessor, compute_checksum
from fieldsync.database import Base
from fieldsync.models import District, Partner, School, User, UserRole

TEST_PASSWORD = "correct-horse-battery"
SHARED_KEY = "dGVzdC1zaGFyZWQta2V5LTMyLWJ5dGVzLWxvbmchISE="


class RecordingAuditSink(AuditSink):
    """Keeps emitted events in memory."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def emit(self, db, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def audit_recorder() -> RecordingAuditSink:
    """In-memory audit sink."""
    return RecordingAuditSink()


@pytest.fixture
def credential_manager(audit_recorder) -> DeviceCredentialManager:
    """Credential manager writing audit events to the recorder."""
    return DeviceCredentialManager(audit=audit_recorder)


@pytest.fixture
def processor(audit_recorder) -> SyncProcessor:
    """Sync processor writing audit events to the recorder."""
    return SyncProcessor(audit=audit_recorder)


@pytest.fixture
async def partner_a(db_session: AsyncSession) -> Partner:
    """Partner owning district 101."""
    partner = Partner(name="Vision Trust", code="VT")
    db_session.add(partner)
    await db_session.commit()
    return partner


@pytest.fixture
async def partner_b(db_session: AsyncSession) -> Partner:
    """Partner owning district 102."""
    partner = Partner(name="Sight Foundation", code="SF")
    db_session.add(partner)
    await db_session.commit()
    return partner


@pytest.fixture
async def school_a(db_session: AsyncSession, partner_a: Partner) -> School:
    """School 201 in district 101 (partner A)."""
    district = District(name="North", code="101", partner_id=partner_a.id, state="Delhi")
    db_session.add(district)
    await db_session.flush()
    school = School(name="Government School 201", code="201", district_id=district.id, partner_id=partner_a.id)
    db_session.add(school)
    await db_session.commit()
    return school


@pytest.fixture
async def school_b(db_session: AsyncSession, partner_b: Partner) -> School:
    """School 301 in district 102 (partner B)."""
    district = District(name="South", code="102", partner_id=partner_b.id, state="Delhi")
    db_session.add(district)
    await db_session.flush()
    school = School(name="Government School 301", code="301", district_id=district.id, partner_id=partner_b.id)
    db_session.add(school)
    await db_session.commit()
    return school


@pytest.fixture
async def team_user(db_session: AsyncSession, partner_a: Partner) -> User:
    """Team member of partner A."""
    user = User(
        email="surveyor@example.org",
        password_hash=hash_password(TEST_PASSWORD, rounds=4),
        name="Field Surveyor",
        role=UserRole.TEAM_MEMBER,
        partner_id=partner_a.id,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def admin_user(db_session: AsyncSession) -> User:
    """National admin without a partner."""
    user = User(
        email="admin@example.org",
        password_hash=hash_password(TEST_PASSWORD, rounds=4),
        name="National Admin",
        role=UserRole.NATIONAL_ADMIN,
        partner_id=None,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def team_device_user(team_user: User) -> DeviceUser:
    """Snapshot of the team member as seen by the sync core."""
    return DeviceUser.from_user(team_user)


@pytest.fixture
async def client(db_session: AsyncSession):
    """HTTP client bound to the test database session."""
    from httpx import ASGITransport, AsyncClient

    from fieldsync.database import get_db
    from fieldsync.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def make_survey(unique_id: str, school_id: str, **overrides) -> dict:
    """Complete questionnaire document as a device produces it."""
    district_code, _, class_number, section, roll_no = unique_id.split("-")
    survey = {
        "localId": f"local-{unique_id}",
        "surveyUniqueId": unique_id,
        "surveyDate": "2024-11-05",
        "districtId": district_code,
        "areaType": "urban",
        "schoolId": school_id,
        "schoolType": "government",
        "class": int(class_number),
        "section": section,
        "rollNo": roll_no,
        "studentName": "Asha Kumari",
        "sex": "female",
        "age": 11,
        "consent": "yes",
        "usesDistanceGlasses": False,
        "presentingVaRightEye": "6/6",
        "presentingVaLeftEye": "6/9",
        "referredForRefraction": False,
        "spectaclesPrescribed": False,
        "referredToOphthalmologist": False,
    }
    survey.update(overrides)
    return survey


def make_item(survey: dict, shared_key: str = SHARED_KEY, local_id: str | None = None) -> SyncBatchItem:
    """Plaintext-mode batch item with a correct checksum."""
    encrypted_data = json.dumps(survey)
    return SyncBatchItem(
        local_id=local_id or survey.get("localId", "local"),
        encrypted_data=encrypted_data,
        checksum=compute_checksum(encrypted_data, shared_key),
    )
