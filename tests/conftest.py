from __future__ import annotations

import base64
import os
import uuid
from datetime import datetime

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from carslab_crm.core.config import settings
from carslab_crm.db import session as db_session_module
from carslab_crm.db.session import get_session
from carslab_crm.main import app
from carslab_crm.models.company import Company
from carslab_crm.models.tablet import DeviceStatus, TabletDevice
from carslab_crm.models.user import User, UserRole
from carslab_crm.services.rate_limit import rate_limiter

pytestmark = pytest.mark.anyio

SIGNATURE_PNG = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nfake-signature").decode("ascii")


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args = {"options": f"-csearch_path={schema_name},public -cclient_encoding={client_encoding}"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    original_get_session = db_session_module.get_session

    db_session_module.engine = engine

    def _get_session():
        with Session(engine) as session:
            yield session

    db_session_module.get_session = _get_session

    def override_dependency():
        yield from _get_session()

    app.dependency_overrides[get_session] = override_dependency

    yield engine

    app.dependency_overrides.pop(get_session, None)
    db_session_module.get_session = original_get_session
    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def storage_env(monkeypatch, tmp_path) -> None:
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("CARSLAB_STORAGE", str(storage_dir))
    yield


@pytest.fixture(autouse=True)
def sync_side_effects(monkeypatch) -> None:
    monkeypatch.setattr(settings, "events_async", False)
    monkeypatch.setattr(settings, "backup_enabled", False)
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture()
def client(db_engine, storage_env) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def company_context(db_session: Session) -> dict:
    """A company with an admin user and one active, online tablet."""
    company = Company(name="Detailing Studio", slug=f"studio-{uuid.uuid4().hex[:6]}")
    user = User(
        company_id=company.id,
        email=f"admin_{uuid.uuid4().hex[:6]}@example.com",
        full_name="Admin",
        password_hash="hash",
        role=UserRole.ADMIN.value,
    )
    tablet = TabletDevice(
        company_id=company.id,
        device_token=uuid.uuid4().hex,
        friendly_name="Front desk tablet",
        status=DeviceStatus.ACTIVE,
        last_seen=datetime.utcnow(),
    )
    db_session.add_all([company, user, tablet])
    db_session.commit()
    for item in (company, user, tablet):
        db_session.refresh(item)
    return {"company": company, "user": user, "tablet": tablet}


def register_and_login(client: TestClient, email: str, password: str) -> tuple[dict[str, str], str]:
    unique_email = f"{uuid.uuid4().hex[:8]}_{email}"
    payload = {
        "company_name": "Detailing Studio",
        "company_slug": f"studio-{uuid.uuid4().hex[:8]}",
        "admin_full_name": "Admin Test",
        "admin_email": unique_email,
        "admin_password": password,
    }
    register_response = client.post(f"{settings.api_prefix}/auth/register", json=payload)
    assert register_response.status_code == status.HTTP_201_CREATED, register_response.json()

    login_response = client.post(
        f"{settings.api_prefix}/auth/login",
        json={"username": unique_email, "password": password},
    )
    assert login_response.status_code == status.HTTP_200_OK, login_response.json()
    token = login_response.json()
    return token, unique_email


def auth_headers(token: dict[str, str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token['access_token']}"}


def pair_tablet(client: TestClient, token: dict[str, str], workstation_id: str | None = None) -> dict[str, str]:
    """Runs the pairing handshake and returns the tablet credentials."""
    payload = {"device_name": "Front desk tablet"}
    if workstation_id:
        payload["workstation_id"] = workstation_id
    code_response = client.post(f"{settings.api_prefix}/tablets/register", json=payload, headers=auth_headers(token))
    assert code_response.status_code == status.HTTP_201_CREATED, code_response.json()

    pair_response = client.post(
        f"{settings.api_prefix}/tablets/pair",
        json={"code": code_response.json()["code"], "device_name": "Front desk tablet"},
    )
    assert pair_response.status_code == status.HTTP_200_OK, pair_response.json()
    return pair_response.json()
