"""
Pytest configuration for all tests.
In-memory database and a mocked WhatsApp gateway; the environment is set
before the package is imported so config picks it up.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SEED_DEMO"] = "0"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["WAHA_API_URL"] = "http://waha.test"
os.environ["WAHA_API_KEY"] = "test-key"
os.environ["FRONTEND_URL"] = "http://frontend.test"

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from dental_clinic import messaging
from dental_clinic.api_main import app
from dental_clinic.auth_models import UserRole
from dental_clinic.auth_service import add_member, register_organization
from dental_clinic.db import Base, engine
from dental_clinic.messaging import SendResult
from dental_clinic.services import init_db

PASSWORD = "s3cret-pass"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_db():
    """Empty schema for every test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture(autouse=True)
def whatsapp():
    """Gateway mock: every send succeeds unless a test changes return_value."""
    with patch.object(messaging.WhatsAppSender, "send", autospec=True, return_value=SendResult(True)) as send:
        yield send


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def clinic():
    """One clinic: admin, two dentists (30% and 20% commission), a secretary."""
    org_id, admin_id = register_organization("Smile Clinic", "admin@smile.test", "Ada Admin", PASSWORD,
                                             location="1 Main Street")
    dentist = add_member(org_id, "dentist@smile.test", "Dan Dentist", UserRole.DENTIST, PASSWORD, percentage=30)
    other = add_member(org_id, "other@smile.test", "Olga Other", UserRole.DENTIST, PASSWORD, percentage=20)
    secretary = add_member(org_id, "desk@smile.test", "Sue Desk", UserRole.SECRETARY, PASSWORD)
    return SimpleNamespace(
        org_id=org_id,
        admin_id=admin_id,
        dentist_id=dentist["user_id"],
        other_dentist_id=other["user_id"],
        secretary_id=secretary["user_id"],
    )


def login(client, email: str, password: str = PASSWORD) -> dict:
    r = client.post("/api/auth/login", data={"username": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(client, clinic):
    return bearer(login(client, "admin@smile.test")["access_token"])


@pytest.fixture
def dentist(client, clinic):
    return bearer(login(client, "dentist@smile.test")["access_token"])


@pytest.fixture
def other_dentist(client, clinic):
    return bearer(login(client, "other@smile.test")["access_token"])


@pytest.fixture
def secretary(client, clinic):
    return bearer(login(client, "desk@smile.test")["access_token"])
