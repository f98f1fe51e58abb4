from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.hooks import LifecycleHooks
from app.db.base import Base
from app.services.runtime import build_runtime
from tests.testkit import HookRecorder

TEST_SETTINGS = {
    "entitlements.providers.stripe.enabled": True,
    "entitlements.providers.stripe.secret_key": "sk_test_123",
    "entitlements.providers.stripe.publishable_key": "pk_test_123",
    "entitlements.providers.stripe.webhook_secret": "whsec_test_123",
    "entitlements.providers.stripe.success_url": "https://example.com/billing/success?session_id={CHECKOUT_SESSION_ID}",
    "entitlements.providers.stripe.cancel_url": "https://example.com/billing/cancel",
    "entitlements.providers.wire.bank_name": "First National",
    "entitlements.providers.wire.account_number": "123456789",
    "entitlements.providers.wire.routing_number": "021000021",
}


@pytest.fixture()
def engine():
    eng = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture()
def db(engine):
    session = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def recorder() -> HookRecorder:
    return HookRecorder()


@pytest.fixture()
def runtime(recorder):
    rt = build_runtime(initial_settings=TEST_SETTINGS, environ={}, hooks=LifecycleHooks())
    recorder.attach(rt.hooks)
    try:
        yield rt
    finally:
        rt.reset()


@pytest.fixture()
def client(db, runtime):
    from fastapi.testclient import TestClient

    from app.db.session import get_db
    from app.main import app

    def _get_db():
        yield db

    previous = app.state.runtime
    app.dependency_overrides[get_db] = _get_db
    app.state.runtime = runtime
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.state.runtime = previous


@pytest.fixture()
def admin_headers():
    from app.core.security import create_api_token

    return {"Authorization": f"Bearer {create_api_token('ops@example.com', role='admin')}"}


@pytest.fixture()
def service_headers():
    from app.core.security import create_api_token

    return {"Authorization": f"Bearer {create_api_token('checkout-service', role='service')}"}
