"""Shared fixtures: in-memory SQLite, settings, fake Daraja gateway, TestClient."""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["APP_ENV"] = "test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stkpay.core.config import Settings
from stkpay.db.base import Base
from stkpay.models import audit_log, payment_intent, user  # noqa: F401  (register tables)
from stkpay.models.user import User
from stkpay.services.mpesa.client import StkPushResponse


def make_settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        app_env="test",
        database_url="sqlite://",
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        mpesa_consumer_key="key",
        mpesa_consumer_secret="secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        mpesa_callback_url="https://example.com/mpesa/callback",
    )
    values.update(overrides)
    return Settings(**values)


class FakeGateway:
    """Stands in for MpesaClient.stk_push; records calls."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.on_push = None
        self.response = StkPushResponse(
            merchant_request_id="29115-34620561-1",
            checkout_request_id="ws_CO_191220191020363925",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    def stk_push(self, amount, phone, account_ref, description, mode=None):
        self.calls.append(
            {"amount": amount, "phone": phone, "account_ref": account_ref, "description": description, "mode": mode}
        )
        if self.on_push is not None:
            self.on_push()
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(db):
    def _make(user_id: str = "user-1", subscription: str = "FREE") -> User:
        u = User(id=user_id, email=f"{user_id}@example.com", subscription=subscription)
        db.add(u)
        db.commit()
        return u

    return _make


@pytest.fixture
def callback_payload():
    def _build(
        checkout_request_id="ws_CO_191220191020363925",
        merchant_request_id="29115-34620561-1",
        result_code=0,
        result_desc="The service request is processed successfully.",
        amount=199,
        receipt="NLJ7RT61SV",
        phone=254708374149,
        transaction_date=20191219102115,
    ) -> dict:
        cb = {
            "MerchantRequestID": merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc,
        }
        if result_code == 0:
            cb["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": transaction_date},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": cb}}

    return _build


@pytest.fixture
def app(settings, session_factory, gateway):
    from stkpay.db.session import get_db
    from stkpay.main import create_app

    application = create_app(settings)
    application.state.mpesa_client = gateway

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
