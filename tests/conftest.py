"""
Shared fixtures.

Environment is set before any project module is imported: the engine and
the grant-signing keys are read at import/startup time.
"""

import os
import tempfile

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

_TMP = tempfile.mkdtemp(prefix="apk-entitlements-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["APK_STORAGE_ROOT"] = "/srv/apk"
os.environ["RESOLVE_BACKOFF_SECONDS"] = "0"

_key = Ed25519PrivateKey.generate()
os.environ["PRIVATE_KEY_PEM"] = _key.private_bytes(
    serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
).decode()
os.environ["PUBLIC_KEY_PEM"] = _key.public_key().public_bytes(
    serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
).decode()

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

import models  # noqa: E402,F401
from binder import CustomerDeviceBinder  # noqa: E402
from db import engine  # noqa: E402
from registry import CustomerRegistry, DeviceRegistry  # noqa: E402
from tokens import TokenIssuer  # noqa: E402

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


@pytest.fixture(autouse=True)
def fresh_schema():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def client():
    from app import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def acme(session):
    """Customer ck-1 "Acme", device dev-42 bound to it, one non-expiring token."""
    customer = CustomerRegistry(session).create("ck-1", "Acme", "key account")
    device = DeviceRegistry(session).register("dev-42", "Pixel 8")
    CustomerDeviceBinder(session).bind(customer.id, device.id)
    token = TokenIssuer(session).issue("ck-1")
    return {
        "customer_id": customer.id,
        "customer_key": "ck-1",
        "device_id": device.id,
        "device_code": "dev-42",
        "token_value": token.token_value,
    }
