"""Shared test fixtures."""
import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PERSISTENCE_BACKEND", "local")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SMTP_HOST", "")

from datetime import UTC, date, datetime, time, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.local_store import LocalStore
from app.core.sql_store import SqlStore
from app.models.user import Gender, PatientProfile, ProviderProfile
from app.services import auth_service, slot_service
from app.services.notifications import ChangeEvent


class RecordingSink:
    """Collects every event it is handed."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    def notify(self, event: ChangeEvent) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


@pytest_asyncio.fixture(params=["local", "sql"])
async def store(request, tmp_path):
    """Every service test runs against both persistence adapters."""
    if request.param == "local":
        yield LocalStore()
        return
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}")
    sql_store = SqlStore(engine)
    await sql_store.init_db()
    yield sql_store
    await sql_store.close()


@pytest.fixture
def local_store() -> LocalStore:
    return LocalStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def today() -> date:
    return datetime.now(UTC).date()


@pytest.fixture
def slot_day(today) -> date:
    """A day safely in the future."""
    return today + timedelta(days=3)


@pytest.fixture
def nine() -> time:
    return time(9, 0)


async def make_provider(store, email="dr.house@example.com", name="Dr. Gregory House", specialty="cardiology"):
    user, _ = await auth_service.register(
        store, email, "secret123", ProviderProfile(display_name=name, specialty=specialty)
    )
    return user


async def make_patient(store, email="jane@example.com", name="Jane Doe", age=34, gender=Gender.FEMALE):
    user, _ = await auth_service.register(
        store, email, "secret123", PatientProfile(display_name=name, age=age, gender=gender)
    )
    return user


@pytest_asyncio.fixture
async def provider(store):
    return await make_provider(store)


@pytest_asyncio.fixture
async def patient(store):
    return await make_patient(store)


@pytest_asyncio.fixture
async def other_patient(store):
    return await make_patient(store, email="bob@example.com", name="Bob Stone", age=51, gender=Gender.MALE)


@pytest_asyncio.fixture
async def other_provider(store):
    return await make_provider(store, email="dr.grey@example.com", name="Dr. Meredith Grey", specialty="neurology")


@pytest_asyncio.fixture
async def provider_with_slot(store, slot_day):
    """A provider with one open slot at 10:00."""
    provider = await make_provider(store, email="dr.race@example.com", name="Dr. Race", specialty="general")
    slot = await slot_service.publish_slot(store, provider.id, slot_day, time(10, 0))
    return provider, slot


@pytest.fixture
def make_patients(store):
    async def _make(count: int):
        return [
            await make_patient(
                store, email=f"patient{i}@example.com", name=f"Patient {i}", age=20 + i, gender=Gender.OTHER
            )
            for i in range(count)
        ]

    return _make
