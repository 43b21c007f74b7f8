"""
Shared fixtures: an in-memory SQLite database per test, a recording
notification dispatcher and factories for users and requests.
"""

import asyncio
import math
import os
import uuid
from datetime import datetime, timedelta

# Must be set before bloodlink.config is first imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["NOTIFICATION_TIMEOUT_SECONDS"] = "0.5"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bloodlink.db.session import Base
from bloodlink.models import (
    BloodGroup, BloodRequest, RequestStatus, User, UserRole, Urgency,
)
from bloodlink.services.notification_service import NotificationDispatcher, commit_and_deliver

# Bengaluru city centre, (longitude, latitude)
ORIGIN = (77.5946, 12.9716)


class FakeDispatcher(NotificationDispatcher):
    """Records every notification; can be told to fail or hang."""

    def __init__(self, fail_for=(), hang_for=(), fail_all=False):
        self.sent = []
        self.fail_for = set(fail_for)
        self.hang_for = set(hang_for)
        self.fail_all = fail_all

    async def notify(self, user_id, payload):
        if self.fail_all or user_id in self.fail_for:
            raise RuntimeError("delivery failed")
        if user_id in self.hang_for:
            await asyncio.sleep(10)
        self.sent.append((user_id, payload))

    def to(self, user_id):
        return [payload for uid, payload in self.sent if uid == user_id]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def deliver(db):
    """Commit the test session, then send what the services queued on it."""

    async def _deliver():
        return await commit_and_deliver(db)

    return _deliver


def build_user(n, role=UserRole.DONOR, blood_group=BloodGroup.O_NEG, location=ORIGIN, **fields):
    """An unsaved user; donors start available so they can be matched."""
    lon, lat = location if location is not None else (None, None)
    values = dict(
        id=uuid.uuid4(),
        name=f"{role.value.title()} {n}",
        email=f"{role.value}{n}@example.com",
        role=role,
        blood_group=blood_group,
        longitude=lon,
        latitude=lat,
        address="MG Road, Bengaluru",
        is_available=role == UserRole.DONOR,
        is_active=True,
        donation_count=0,
        rating_count=0,
        verification_count=0,
    )
    values.update(fields)
    return User(**values)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make(role=UserRole.DONOR, blood_group=BloodGroup.O_NEG, location=ORIGIN, **fields):
        counter["n"] += 1
        user = build_user(counter["n"], role, blood_group, location, **fields)
        db.add(user)
        await db.flush()
        return user

    return _make


@pytest.fixture
def make_request(db):
    """Insert a request directly, bypassing the create operation."""

    async def _make(requester, status=RequestStatus.PENDING, blood_group=BloodGroup.O_POS, **fields):
        values = dict(
            id=uuid.uuid4(),
            requester_id=requester.id,
            blood_group=blood_group,
            units=2,
            diseases=[],
            urgency=Urgency.HIGH,
            patient_name="Asha Rao",
            purpose="Surgery",
            longitude=ORIGIN[0],
            latitude=ORIGIN[1],
            address="Victoria Hospital, Bengaluru",
            need_by_date=datetime.utcnow() + timedelta(days=2),
            is_public=True,
            status=status,
        )
        values.update(fields)
        req = BloodRequest(**values)
        db.add(req)
        await db.flush()
        return req

    return _make


def km_east(km, origin=ORIGIN):
    """Point roughly *km* kilometres east of *origin* at its latitude."""
    lon, lat = origin
    return lon + km / (111.32 * math.cos(math.radians(lat))), lat
