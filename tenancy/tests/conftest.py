"""
Root test configuration and fixtures.

Every test gets its own SQLite in-memory database with the full schema.
"""

import os
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")
os.environ.setdefault("NOTIFICATION_EMAIL_PROVIDER", "mock")


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import models so every table is registered on Base
    from tenancy.db_base import Base
    from tenancy import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_plan_catalog():
    """Plan catalog is a process singleton; give each test a fresh load."""
    from tenancy.entitlements.plan_catalog import reset_plan_catalog

    reset_plan_catalog()
    yield
    reset_plan_catalog()


@pytest.fixture
def tenant_service(db_session):
    from tenancy.services.tenant_service import TenantService

    return TenantService(db_session)


@pytest.fixture
def make_tenant(tenant_service):
    """
    Factory fixture that creates tenants through the service.

    Usage:
        tenant = make_tenant()                       # 7-day trial
        tenant = make_tenant(marketplace=True)       # pending_setup
    """
    from tenancy.services.tenant_service import TenantCreate

    counter = {"n": 0}

    def _make(name: str = "Acme Schools", marketplace: bool = False, **kwargs):
        counter["n"] += 1
        data = TenantCreate(
            name=name,
            primary_email=kwargs.pop("primary_email", f"owner{counter['n']}@acme.example"),
            **kwargs,
        )
        if marketplace:
            data.marketplace_subscription_id = data.marketplace_subscription_id or f"mp-sub-{counter['n']}"
            data.marketplace_purchase_token = data.marketplace_purchase_token or f"token-{counter['n']}"
            data.marketplace_plan_id = data.marketplace_plan_id or "professional-monthly"
        return tenant_service.create_tenant(data)

    return _make


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
