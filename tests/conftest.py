import hashlib
import hmac
import json
import re
from datetime import datetime
from unittest.mock import Mock, patch

import bcrypt
import mongomock
import pytest
import requests
import resend
from flask_jwt_extended import create_access_token

from app import create_app

PAYSTACK_SECRET = "sk_test_minimart_webhook_secret"

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "minimart-test-secret-key-that-is-long-enough",
    "BCRYPT_ROUNDS": 4,
    "RESEND_API_KEY": "re_test_key",
    "PAYSTACK_SECRET_KEY": PAYSTACK_SECRET,
    "PAYSTACK_WEBHOOK_SECRET": "",
    "PAYSTACK_BASE_URL": "https://api.paystack.test",
    "PAYSTACK_CALLBACK_URL": "https://shop.example.com/payment/complete",
    "PAYMENT_CURRENCY": "NGN",
    "GATEWAY_TIMEOUT_SECONDS": 5,
    "GOOGLE_CLIENT_ID": "google-client-id",
    "GOOGLE_CLIENT_SECRET": "google-client-secret",
    "GOOGLE_REDIRECT_URI": "https://shop.example.com/api/v1/auth/google/callback",
    "DEFAULT_ADMIN_EMAIL": "",
}


def pytest_configure(config):
    config.addinivalue_line("markers", "auth: mark test as authentication-related")
    config.addinivalue_line("markers", "payment: mark test as payment-related")


def gateway_response(body, status_code=200):
    """Build a stand-in for a ``requests.Response``."""
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = json.dumps(body)
    return response


def sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def extract_code(email_payload) -> str:
    return re.search(r"\b(\d{6})\b", email_payload["text"]).group(1)


@pytest.fixture()
def database():
    client = mongomock.MongoClient()
    yield client.get_database("minimart_test")
    client.drop_database("minimart_test")


@pytest.fixture()
def app(database, tmp_path):
    config = dict(TEST_CONFIG, PROFILE_UPLOAD_FOLDER=str(tmp_path / "uploads"))
    return create_app(config, database=database)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def outbox():
    """Capture verification emails instead of sending them through Resend."""
    sent = []

    def capture(payload):
        sent.append(payload)
        return {"id": f"email_{len(sent)}"}

    with patch.object(resend.Emails, "send", side_effect=capture):
        yield sent


@pytest.fixture()
def gateway_post():
    with patch.object(requests, "post") as mocked:
        yield mocked


@pytest.fixture()
def gateway_get():
    with patch.object(requests, "get") as mocked:
        yield mocked


@pytest.fixture()
def register(client, outbox):
    """Register an account and return the verification code emailed to it."""

    def _register(email="ada@example.com", **overrides):
        payload = {
            "fullName": "Ada Obi",
            "email": email,
            "phoneNumber": "2349012345678",
            "age": 23,
            "password": "Pass1234",
            "confirmPassword": "Pass1234",
        }
        payload.update(overrides)
        response = client.post("/api/v1/register", json=payload)
        assert response.status_code == 201, response.get_json()
        return extract_code(outbox[-1])

    return _register


@pytest.fixture()
def make_account(database):
    def _make_account(email="buyer@example.com", role="user", status="active", password="Pass1234"):
        document = {
            "full_name": "Test Account",
            "email": email,
            "phone_number": "",
            "age": 30,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "status": status,
            "role": role,
            "auth_provider": "local",
            "created_at": datetime.utcnow(),
        }
        document["_id"] = database.users.insert_one(document).inserted_id
        return document

    return _make_account


@pytest.fixture()
def token_for(app):
    def _token_for(account):
        with app.app_context():
            return create_access_token(
                identity=str(account["_id"]),
                additional_claims={"role": account["role"], "email": account["email"]},
            )

    return _token_for


@pytest.fixture()
def admin_headers(make_account, token_for):
    admin = make_account(email="admin@example.com", role="admin")
    return {"Authorization": f"Bearer {token_for(admin)}"}


@pytest.fixture()
def buyer(make_account):
    return make_account()


@pytest.fixture()
def buyer_headers(buyer, token_for):
    return {"Authorization": f"Bearer {token_for(buyer)}"}


@pytest.fixture()
def product(database):
    document = {
        "name": "Chicken Burger",
        "name_key": "chicken burger",
        "price": 2500.0,
        "created_at": datetime.utcnow(),
    }
    document["_id"] = database.products.insert_one(document).inserted_id
    return document
