"""Shared fixtures for the sync test suite."""

import os
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set required environment variables before importing app modules
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("KEKA_COMPANY", "acme")
os.environ.setdefault("KEKA_ENVIRONMENT", "keka")

from app.database.cache import CacheBackend
from app.database.database import Base
from app.services.encryption_service import EncryptionService
from app.services.keka_client import KekaPage
from app.services.token_provider import Credential, TokenProvider


class MemoryCache(CacheBackend):
    """In-memory CacheBackend that remembers the TTL of every setex."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.writes: List[Tuple[str, str]] = []
        self.healthy = True

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def set(self, key: str, value: str) -> None:
        self.store[key] = value
        self.ttls.pop(key, None)
        self.writes.append((key, value))

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        self.store[key] = value
        self.ttls[key] = ttl_seconds
        self.writes.append((key, value))

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)
        self.ttls.pop(key, None)

    async def ping(self) -> bool:
        return self.healthy


class FakeClock:
    """Controllable epoch clock with a sleep that advances it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeKekaClient:
    """Stand-in for KekaClient serving scripted pages.

    ``attendance`` maps (employee_id, page) to a KekaPage or an exception;
    ``employees`` maps page number to a KekaPage or an exception. Entries
    given as lists are consumed one response per call.
    """

    def __init__(self, attendance=None, employees=None):
        self.attendance = attendance or {}
        self.employees = employees or {}
        self.calls: List[tuple] = []

    def __call__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @staticmethod
    def _respond(response):
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def get_attendance(self, token, employee_id, from_date, to_date, page_number, page_size=100):
        self.calls.append(("attendance", token, employee_id, from_date, to_date, page_number))
        response = self.attendance.get((employee_id, page_number), KekaPage([], 0))
        return self._respond(response)

    async def list_employees(self, token, page_number, page_size=100):
        self.calls.append(("employees", token, page_number))
        response = self.employees.get(page_number, KekaPage([], 0))
        return self._respond(response)


@pytest.fixture
def memory_cache():
    """Create an empty in-memory cache."""
    return MemoryCache()


@pytest.fixture
def fake_clock():
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def db_session():
    """Create a test database session."""
    # Use in-memory SQLite shared across threads for TestClient requests
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def encryption_service():
    """Create an encryption service with a fresh key."""
    return EncryptionService(Fernet.generate_key().decode())


@pytest.fixture
def token_provider():
    """Create a mock token provider that always has a token in memory."""
    provider = MagicMock(spec=TokenProvider)
    provider.get_token = AsyncMock(return_value=Credential("token-1", 0, 86400, Credential.MEMORY))
    provider.refresh_token = AsyncMock(return_value=Credential("token-2", 0, 86400, Credential.REMOTE))
    return provider
