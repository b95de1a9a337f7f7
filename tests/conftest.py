import json
import time

import mongomock
import pytest

from backend.app import create_app
from backend.auth import hash_password, issue_token
from backend.database import utcnow
from backend.payments import StripeClient, compute_signature

WEBHOOK_SECRET = "whsec_test"


class FakePaymentProvider(StripeClient):
    """Keeps intents in memory; webhook verification is the real one."""

    def __init__(self):
        super().__init__("sk_test", webhook_secret=WEBHOOK_SECRET)
        self.intents = {}
        self.created = []

    def create_payment_intent(self, amount, currency, metadata=None):
        intent_id = f"pi_{len(self.intents) + 1}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "status": "requires_payment_method",
            "amount": int(round(float(amount) * 100)),
            "currency": currency,
            "metadata": dict(metadata or {}),
        }
        self.intents[intent_id] = intent
        self.created.append(intent)
        return intent

    def retrieve_payment_intent(self, payment_intent_id):
        return self.intents[payment_intent_id]


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def _record(self, kind, *args):
        self.sent.append((kind,) + args)
        if self.fail_with:
            return False, self.fail_with
        return True, None

    def send_welcome(self, recipient, name):
        return self._record("welcome", recipient, name)

    def send_verification(self, recipient, token, hours=24):
        return self._record("verification", recipient, token)

    def send_password_reset(self, recipient, token, hours=1):
        return self._record("password_reset", recipient, token)

    def send_order_confirmation(self, recipient, order_document, currency="PKR"):
        return self._record("order_confirmation", recipient, order_document.get("_id"))


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def app(db):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret",
            "BCRYPT_ROUNDS": 4,
            "STRIPE_SECRET_KEY": "sk_test",
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        },
        database=db,
    )
    app.extensions["payment_provider"] = FakePaymentProvider()
    app.extensions["email_notifier"] = FakeNotifier()
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def notifier(app):
    return app.extensions["email_notifier"]


@pytest.fixture
def provider(app):
    return app.extensions["payment_provider"]


@pytest.fixture
def make_user(app, db):
    def _make_user(email="shopper@example.com", role="user", verified=True, password="secret123", **extra):
        with app.app_context():
            hashed = hash_password(password)
        document = {
            "name": extra.pop("name", "Shopper"),
            "email": email,
            "password": hashed,
            "role": role,
            "status": extra.pop("status", "Active"),
            "isEmailVerified": verified,
            "createdAt": utcnow(),
        }
        document.update(extra)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make_user


@pytest.fixture
def auth_header(app):
    def _auth_header(user):
        with app.app_context():
            token = issue_token(user["_id"])
        return {"Authorization": f"Bearer {token}"}

    return _auth_header


@pytest.fixture
def admin_headers(make_user, auth_header):
    return auth_header(make_user(email="admin@example.com", role="admin", name="Admin"))


@pytest.fixture
def sign_webhook():
    def _sign(event, secret=WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(event).encode("utf-8")
        timestamp = int(time.time()) if timestamp is None else timestamp
        signature = compute_signature(payload, timestamp, secret)
        return payload, {"Stripe-Signature": f"t={timestamp},v1={signature}"}

    return _sign
