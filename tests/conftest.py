import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import base64
import hashlib
import hmac
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import billing.auth
import billing.routes
from billing.config import Settings
from billing.database import Base
from billing.main import app as fastapi_app
from billing.payment_store import PaymentStore
from billing.providers import build_adapters

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_billing.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 15}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_SETTINGS = Settings(
    database_url=SQLALCHEMY_DATABASE_URL,
    jwt_secret="test-jwt-secret",
    yookassa_shop_id="shop_123",
    yookassa_secret_key="yk_secret",
    cloudpayments_public_id="pk_cloud",
    cloudpayments_api_secret="cp_secret",
    stripe_secret_key="sk_test",
    stripe_webhook_secret="whsec_test",
)


def cloudpayments_signature(body: bytes, secret: str = "cp_secret") -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def adapters():
    return build_adapters(TEST_SETTINGS)


@pytest.fixture
def client(monkeypatch, adapters):
    monkeypatch.setattr(billing.routes, "SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[billing.auth.verify_token] = lambda: "user-1"
    fastapi_app.dependency_overrides[billing.routes.get_adapters] = lambda: adapters
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def create_attempt():
    def _create(
        provider_reference="pay-1",
        provider="yookassa",
        user_id="user-1",
        amount=Decimal("990"),
        currency="RUB",
        kind="subscription",
        tier="basic",
        course_id=None,
    ):
        db = TestingSessionLocal()
        PaymentStore(db).create_pending(
            provider=provider,
            provider_reference=provider_reference,
            user_id=user_id,
            amount=amount,
            currency=currency,
            kind=kind,
            tier=tier if kind == "subscription" else None,
            course_id=course_id,
            metadata={"provider": provider},
        )
        db.commit()
        db.close()
        return provider_reference

    return _create
