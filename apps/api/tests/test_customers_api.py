from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CustomFieldValue
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


def _create_customer(test_client: TestClient, key: str, **fields: str) -> dict:
    response = test_client.post("/api/crm/customers", json={"company_unique_id": key, **fields})
    assert response.status_code == 201
    return response.json()


def _register_field(test_client: TestClient, name: str, field_type: str = "text") -> int:
    response = test_client.post("/api/crm/custom-fields", json={"fields": [{"field_name": name, "field_type": field_type}]})
    assert response.status_code == 201
    return response.json()[0]["id"]


def test_create_and_list_customers(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("user")

    created = _create_customer(test_client, "C-1", first_name="Ada", email_id="ada@example.com")
    assert created["contact_type"] == "customer"
    _create_customer(test_client, "C-2", first_name="Grace")

    listed = test_client.get("/api/crm/customers")
    assert listed.status_code == 200
    assert {item["company_unique_id"] for item in listed.json()} == {"C-1", "C-2"}

    duplicate = test_client.post("/api/crm/customers", json={"company_unique_id": "C-1"})
    assert duplicate.status_code == 409
    assert duplicate.json()["details"] == {"kind": "DuplicateCustomer"}


def test_region_scenario_projects_latest_values(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    region_id = _register_field(test_client, "Region")
    set_actor("user")
    _create_customer(test_client, "C-1", first_name="Ada")
    _create_customer(test_client, "C-2", first_name="Grace")

    first = test_client.put(
        "/api/crm/custom-values/C-1",
        json={"custom_fields": [{"field_id": region_id, "field_value": "APAC"}]},
    )
    assert first.status_code == 200
    second = test_client.put(
        "/api/crm/custom-values/C-1",
        json={"custom_fields": [{"field_id": region_id, "field_value": "EMEA"}]},
    )
    assert second.status_code == 200
    assert second.json() == {"company_unique_id": "C-1", "written": 1, "skipped": 0}

    projected = test_client.get("/api/crm/customers/custom-fields")
    assert projected.status_code == 200
    views = projected.json()
    assert [(view["company_unique_id"], view["custom_fields"]) for view in views] == [
        ("C-1", [{"field_name": "Region", "field_value": "EMEA"}]),
        ("C-2", []),
    ]


def test_post_custom_values_does_not_overwrite(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    region_id = _register_field(test_client, "Region")
    _create_customer(test_client, "C-1")

    first = test_client.post(
        "/api/crm/custom-values/C-1",
        json={"custom_fields": [{"field_id": region_id, "field_value": "APAC"}]},
    )
    second = test_client.post(
        "/api/crm/custom-values/C-1",
        json={"custom_fields": [{"field_id": region_id, "field_value": "EMEA"}]},
    )

    assert first.json()["written"] == 1
    assert second.json() == {"company_unique_id": "C-1", "written": 0, "skipped": 1}
    values = db_session.scalars(select(CustomFieldValue.field_value)).all()
    assert values == ["APAC"]


def test_custom_values_validation_and_existence(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    region_id = _register_field(test_client, "Region")
    _create_customer(test_client, "C-1")

    missing_value = test_client.put("/api/crm/custom-values/C-1", json={"custom_fields": [{"field_id": region_id}]})
    assert missing_value.status_code == 400
    assert missing_value.json()["details"] == {"kind": "MissingField"}

    empty = test_client.put("/api/crm/custom-values/C-1", json={"custom_fields": []})
    assert empty.status_code == 400

    unknown_customer = test_client.put(
        "/api/crm/custom-values/C-404",
        json={"custom_fields": [{"field_id": region_id, "field_value": "APAC"}]},
    )
    assert unknown_customer.status_code == 404
    assert unknown_customer.json()["details"] == {"kind": "UnknownCustomer"}

    unknown_field = test_client.put(
        "/api/crm/custom-values/C-1",
        json={"custom_fields": [{"field_id": 999, "field_value": "APAC"}]},
    )
    assert unknown_field.status_code == 404
    assert unknown_field.json()["details"] == {"kind": "UnknownField"}


def test_update_customer_records_change_history(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    region_id = _register_field(test_client, "Region")
    set_actor("user")
    _create_customer(test_client, "C-1", first_name="Ada", phone_no="111")
    test_client.put("/api/crm/custom-values/C-1", json={"custom_fields": [{"field_id": region_id, "field_value": "APAC"}]})

    updated = test_client.put(
        "/api/crm/customers/C-1",
        json={
            "first_name": "Ada",
            "phone_no": "222",
            "date_of_birth": "1815-12-10",
            "custom_fields": [{"field_id": region_id, "field_value": "EMEA"}],
        },
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["phone_no"] == "222"
    assert body["date_of_birth"] == "1815-12-10"
    assert body["custom_fields"] == [{"field_name": "Region", "field_value": "EMEA"}]

    history = test_client.get("/api/crm/customers/log-change/C-1")
    assert history.status_code == 200
    changes = {entry["field"]: (entry["old_value"], entry["new_value"]) for entry in history.json()["change_history"]}
    assert changes == {
        "phone_no": ("111", "222"),
        "date_of_birth": (None, "1815-12-10"),
        f"Custom Field {region_id}": ("APAC", "EMEA"),
    }


def test_failed_update_changes_nothing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _create_customer(test_client, "C-1", first_name="Ada")

    response = test_client.put(
        "/api/crm/customers/C-1",
        json={"first_name": "Augusta", "custom_fields": [{"field_id": 42, "field_value": "x"}]},
    )

    assert response.status_code == 404
    current = test_client.get("/api/crm/customers/C-1").json()
    assert current["first_name"] == "Ada"
    assert test_client.get("/api/crm/customers/log-change/C-1").json()["change_history"] == []
    assert db_session.scalar(select(func.count()).select_from(CustomFieldValue)) == 0


def test_update_unknown_customer_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.put("/api/crm/customers/C-404", json={"first_name": "Nobody"})

    assert response.status_code == 404


def test_log_change_endpoints(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_customer(test_client, "C-1")

    empty = test_client.get("/api/crm/customers/log-change/C-1")
    assert empty.status_code == 200
    assert empty.json()["change_history"] == []

    logged = test_client.post(
        "/api/crm/customers/log-change",
        json={
            "company_unique_id": "C-1",
            "changes": [
                {"field": "address", "old_value": "", "new_value": "1 Loop"},
                {"field_id": 3, "old_value": "a", "new_value": "b", "is_custom_field": True},
            ],
        },
    )
    assert logged.status_code == 200
    entries = logged.json()["change_history"]
    assert [entry["field"] for entry in entries] == ["Custom Field 3", "address"]
    assert entries[1]["old_value"] is None

    missing = test_client.post("/api/crm/customers/log-change", json={"company_unique_id": "C-1", "changes": []})
    assert missing.status_code == 400

    unknown = test_client.get("/api/crm/customers/log-change/C-404")
    assert unknown.status_code == 404


def test_search_customers(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_customer(test_client, "C-1", first_name="Ada", company_name="Analytical Engines")
    _create_customer(test_client, "C-2", first_name="Grace", agent_name="Hopper")

    found = test_client.get("/api/crm/customers/search", params={"query": "hopper"})
    assert found.status_code == 200
    assert [view["company_unique_id"] for view in found.json()] == ["C-2"]

    blank = test_client.get("/api/crm/customers/search", params={"query": "  "})
    assert blank.status_code == 400
    assert blank.json()["details"] == {"kind": "MissingField"}


def test_delete_customer_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create_customer(test_client, "C-1")

    set_actor("user")
    forbidden = test_client.delete(f"/api/crm/customers/{created['id']}")
    assert forbidden.status_code == 403

    set_actor("admin")
    deleted = test_client.delete(f"/api/crm/customers/{created['id']}")
    assert deleted.status_code == 200
    assert test_client.get("/api/crm/customers").json() == []

    again = test_client.delete(f"/api/crm/customers/{created['id']}")
    assert again.status_code == 404


def test_values_longer_than_their_columns_are_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    too_long = test_client.post("/api/crm/customers", json={"company_unique_id": "C-1", "phone_no": "9" * 33})
    assert too_long.status_code == 400
    body = too_long.json()
    assert body["code"] == "request_validation_failed"
    assert body["details"]["kind"] == "InvalidInput"
    assert body["details"]["errors"][0]["loc"] == ["body", "phone_no"]
    assert test_client.get("/api/crm/customers").json() == []

    _create_customer(test_client, "C-1")
    update = test_client.put("/api/crm/customers/C-1", json={"disposition": "x" * 129})
    assert update.status_code == 400

    log = test_client.post(
        "/api/crm/customers/log-change",
        json={"company_unique_id": "C-1", "changes": [{"field": "f" * 256, "new_value": "v"}]},
    )
    assert log.status_code == 400
    assert test_client.get("/api/crm/customers/log-change/C-1").json()["change_history"] == []
