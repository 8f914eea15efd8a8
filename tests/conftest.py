import os

# Settings are read at import time, so they must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-at-least-32-chars"
os.environ["SECRETS_ENCRYPTION_KEY"] = "test-secrets-encryption-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["APP_ENV"] = "development"
os.environ["MAIL_API_URL"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_placeholder"

import itertools

import pytest
from fastapi.testclient import TestClient

import models
from auth import create_access_token
from database import Base, SessionLocal, engine, get_db
from errors import NotFoundError
from main import app
from rate_limit import RateLimiter


class FakeStorage:
    """In-memory stand-in for BlobStorage."""

    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.fail_deletes = False

    def issue_upload_locator(self, key, content_type, ttl=None):
        return f"https://storage.test/upload/{key}?signature=put"

    def issue_download_locator(self, key, ttl=None, filename=None):
        return f"https://storage.test/download/{key}?signature=get"

    def put_bytes(self, key, data, content_type="application/octet-stream"):
        self.objects[key] = bytes(data)

    def fetch_bytes(self, key):
        if key not in self.objects:
            raise NotFoundError("File content not found")
        return self.objects[key]

    def delete_object(self, key):
        self.deleted.append(key)
        if self.fail_deletes:
            return False
        self.objects.pop(key, None)
        return True

    def get_health(self):
        return {"status": "healthy", "bucket": "test"}


class FakeBilling:
    """In-memory stand-in for BillingClient."""

    def __init__(self):
        self.customers = {}
        self.created = []
        self.deleted = []
        self.before_create = None     # hook to simulate a concurrent request
        self._ids = itertools.count(1)

    def retrieve_customer(self, customer_id):
        return self.customers.get(customer_id)

    def find_customer_by_email(self, email):
        for customer in self.customers.values():
            if customer["email"] == email:
                return customer
        return None

    def create_customer(self, email, metadata):
        if self.before_create is not None:
            hook, self.before_create = self.before_create, None
            hook()
        customer_id = f"cus_{next(self._ids)}"
        self.customers[customer_id] = {
            "id": customer_id, "email": email, "metadata": dict(metadata), "deleted": False,
        }
        self.created.append(customer_id)
        return customer_id

    def update_customer_metadata(self, customer_id, metadata):
        self.customers[customer_id]["metadata"] = dict(metadata)

    def delete_customer(self, customer_id):
        self.customers.pop(customer_id, None)
        self.deleted.append(customer_id)


class FakeMailer:

    enabled = True

    def __init__(self):
        self.sent = []

    def send(self, to, subject, text, html_body=None):
        self.sent.append({"to": to, "subject": subject, "text": text})

    def send_message(self, to, message):
        self.send(to, message.subject, message.text, message.html)

    def send_quietly(self, to, message):
        self.send_message(to, message)
        return True


@pytest.fixture
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_billing():
    return FakeBilling()


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def client(db_session, fake_storage, fake_billing, fake_mailer, limiter):
    def _get_db():
        try:
            yield db_session
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = _get_db
    app.state.storage = fake_storage
    app.state.billing = fake_billing
    app.state.mailer = fake_mailer
    app.state.rate_limiter = limiter
    app.state.session_factory = SessionLocal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    def _make(user_id="user-1", plan=models.PLAN_FREE, email=None, **fields):
        user = models.User(id=user_id, plan=plan, email=email or f"{user_id}@example.com", **fields)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make


@pytest.fixture
def auth_header():
    def _header(user):
        token = create_access_token({"sub": user.id, "email": user.email})
        return {"Authorization": f"Bearer {token}"}
    return _header
