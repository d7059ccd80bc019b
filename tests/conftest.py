# tests/conftest.py
# Set environment variables BEFORE any imports that read them
import os
os.environ["ENCRYPTION_KEY"] = "test-secret-key-for-testing-only"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = ""

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tutor_gateway.crypto import CredentialCipher, StaticKeyProvider
from tutor_gateway.database import Base
from tutor_gateway import models  # noqa: F401  registers tables on Base
from tutor_gateway.model_config import ModelConfigResolver


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the quota and strike counters."""

    def __init__(self):
        self.values = {}
        self.expirations = {}

    async def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        self.expirations[key] = seconds
        return True

    async def get(self, key):
        value = self.values.get(key)
        return str(value).encode() if value is not None else None

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0


class InMemoryConfigStore:
    def __init__(self, document=None):
        self.document = document
        self.writes = 0
        self.loads = 0

    def load(self):
        self.loads += 1
        return json.loads(json.dumps(self.document)) if self.document is not None else None

    def upsert(self, document):
        self.document = json.loads(json.dumps(document))
        self.writes += 1


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def session_factory():
    """Isolated in-memory SQLite database with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def cipher():
    return CredentialCipher(StaticKeyProvider("unit-test-key"))


@pytest.fixture
def config_store():
    return InMemoryConfigStore()


@pytest.fixture
def resolver(config_store, cipher):
    return ModelConfigResolver(store=config_store, cipher=cipher)


@pytest.fixture
def store_factory():
    return InMemoryConfigStore
