"""Shared fixtures: in-memory SQLite per test, tenant and integration factories, API client."""

import os

# Settings must be in place before posreviews.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ["POS_TOKEN_ENCRYPTION_KEY"] = "test-master-key-for-pos-credentials"
os.environ["SQUARE_WEBHOOK_NOTIFICATION_URL"] = "https://reviews.example.com/webhooks/square"

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from posreviews import models, models_pos  # noqa: F401
from posreviews.database import Base, get_db
from posreviews.encryption import encrypt
from posreviews.main import app
from posreviews.models import User
from posreviews.models_pos import PosIntegration, PosProvider, PosTransaction, SmsStatus

WEBHOOK_SECRET = "integration-webhook-secret"
SQUARE_KEY = "square-signature-key"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def make_user(db):
    def _make(**overrides) -> User:
        values = {
            "email": "owner@sunnycafe.example",
            "business_name": "Sunny Cafe",
            "review_url": "https://g.page/r/sunny-cafe/review",
            "sms_message_tone": "friendly",
            "plan": "basic",
            "subscription_status": "active",
            "subscription_start_date": datetime.utcnow() - timedelta(days=3),
            "sms_usage_count": 0,
        }
        values.update(overrides)
        user = User(**values)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def user(make_user):
    return make_user()


@pytest.fixture()
def make_integration(db, user):
    def _make(**overrides) -> PosIntegration:
        values = {
            "user_id": user.id,
            "provider": PosProvider.SQUARE,
            "merchant_id": "MERCHANT_1",
            "access_token_encrypted": encrypt("square-access-token"),
            "webhook_secret_encrypted": encrypt(SQUARE_KEY),
            "is_active": True,
            "consent_confirmed": True,
            "test_mode": False,
        }
        values.update(overrides)
        integration = PosIntegration(**values)
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


@pytest.fixture()
def make_transaction(db):
    def _make(integration: PosIntegration, **overrides) -> PosTransaction:
        values = {
            "user_id": integration.user_id,
            "pos_integration_id": integration.id,
            "external_transaction_id": "PAY_1",
            "customer_name": "Jane Doe",
            "customer_phone": "+15551234567",
            "sms_status": SmsStatus.PENDING,
            "is_test_mode": False,
        }
        values.update(overrides)
        transaction = PosTransaction(**values)
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
        return transaction

    return _make


@pytest.fixture()
def enqueue_mock():
    with patch(
        "posreviews.domain.webhooks.service.enqueue_review_request",
        new_callable=AsyncMock,
        return_value="pos-sms-1",
    ) as mock:
        yield mock


@pytest.fixture()
def client(session_factory, enqueue_mock):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
