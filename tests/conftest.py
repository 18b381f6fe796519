"""Pytest fixtures for tenancy tests."""

from __future__ import annotations

import os

# Settings are read once; point them at throwaway backends before any
# schoolspace module is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("TENANT_CACHE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy.orm import sessionmaker

from schoolspace.database import build_engine, init_db
from schoolspace.models import School, User
from schoolspace.tenancy.cache import TenantCache
from schoolspace.tenancy.executor import NamespaceQueryExecutor
from schoolspace.tenancy.onboarding import provision_tenant
from schoolspace.tenancy.provisioner import NamespaceProvisioner
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.tenancy.resolver import TenantResolver


class ManualClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    """Fresh in-memory database with the catalog tables."""
    eng = build_engine("sqlite://")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cache(clock: ManualClock) -> TenantCache:
    return TenantCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def registry(db, cache) -> TenantRegistry:
    return TenantRegistry(db, cache=cache)


@pytest.fixture
def resolver(registry, cache) -> TenantResolver:
    return TenantResolver(registry, cache)


@pytest.fixture
def provisioner(engine) -> NamespaceProvisioner:
    return NamespaceProvisioner(engine)


@pytest.fixture
def executor(engine) -> NamespaceQueryExecutor:
    return NamespaceQueryExecutor(engine, max_attempts=3, wait_min=0, wait_max=0)


@pytest.fixture
def onboard(db, provisioner, cache):
    """Onboard a school end to end and return its registry row."""

    def _onboard(code: str, name: str = None) -> School:
        result = provision_tenant(db, provisioner, code, name=name or code.title(), cache=cache)
        assert result.success, result.error
        return TenantRegistry(db).get_tenant_by_namespace(result.namespace)

    return _onboard


@pytest.fixture
def make_user(db):
    """Create a catalog user."""
    counter = {"n": 0}

    def _make_user(role: str = "teacher", primary_school_id=None, email: str = None) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.org",
            name=f"User {counter['n']}",
            role=role,
            primary_school_id=primary_school_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user
