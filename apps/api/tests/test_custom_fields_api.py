from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": AuthUser(user_id=1, role="admin"),
        "user": AuthUser(user_id=2, role="user"),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _column_names(session: Session) -> set[str]:
    return {str(column["name"]) for column in inspect(session.connection()).get_columns("customers")}


def test_admin_registers_fields_and_lists_them(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client

    created = test_client.post(
        "/api/crm/custom-fields",
        json={
            "fields": [
                {"field_name": "Region", "field_type": "text"},
                {"field_name": "Tier", "field_type": "dropdown", "dropdown_options": ["Gold", "Silver"]},
            ]
        },
    )
    assert created.status_code == 201
    payload = created.json()
    assert [item["field_name"] for item in payload] == ["Region", "Tier"]
    assert payload[1]["dropdown_options"] == ["Gold", "Silver"]
    assert {"Region", "Tier"} <= _column_names(db_session)

    set_actor("user")
    listed = test_client.get("/api/crm/custom-fields")
    assert listed.status_code == 200
    assert [item["field_name"] for item in listed.json()] == ["Region", "Tier"]


def test_non_admin_cannot_register_fields(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("user")

    response = test_client.post("/api/crm/custom-fields", json={"fields": [{"field_name": "Region", "field_type": "text"}]})

    assert response.status_code == 403
    body = response.json()
    assert body["details"] == {"kind": "MissingRole"}
    assert "Region" not in _column_names(db_session)


def test_invalid_name_returns_validation_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/crm/custom-fields",
        json={"fields": [{"field_name": "Region\"; DROP TABLE customers; --", "field_type": "text"}]},
        headers={"X-Correlation-Id": "cf-invalid-1"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "crm_custom_fields_create_failed"
    assert body["details"] == {"kind": "InvalidName"}
    assert body["correlation_id"] == "cf-invalid-1"


def test_duplicate_field_returns_conflict(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    body = {"fields": [{"field_name": "Region", "field_type": "text"}]}

    assert test_client.post("/api/crm/custom-fields", json=body).status_code == 201
    second = test_client.post("/api/crm/custom-fields", json=body)

    assert second.status_code == 409
    assert second.json()["details"] == {"kind": "DuplicateColumn"}
    assert len(test_client.get("/api/crm/custom-fields").json()) == 1


def test_failed_batch_leaves_no_columns(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/crm/custom-fields",
        json={
            "fields": [
                {"field_name": "Alpha", "field_type": "text"},
                {"field_name": "Beta", "field_type": "currency"},
                {"field_name": "Gamma", "field_type": "text"},
            ]
        },
    )

    assert response.status_code == 400
    assert response.json()["details"] == {"kind": "InvalidType"}
    assert test_client.get("/api/crm/custom-fields").json() == []
    assert not {"Alpha", "Beta", "Gamma"} & _column_names(db_session)


def test_empty_batch_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/custom-fields", json={"fields": []})

    assert response.status_code == 400
    assert response.json()["details"] == {"kind": "MissingField"}
