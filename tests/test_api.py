from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from services import seed_system_utility_types

NOW = datetime(2024, 3, 10, 8, 0)
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def frozen_clock() -> datetime:
    return NOW


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        seed_system_utility_types(session)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_db
    main.app.dependency_overrides[main.get_clock] = lambda: frozen_clock
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _type_id(client: TestClient, name: str) -> int:
    types = client.get("/types", headers=ALICE).json()
    return next(t["id"] for t in types if t["name"] == name)


def test_requests_without_user_are_rejected(client: TestClient) -> None:
    response = client.get("/bills")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_system_types_are_listed_first(client: TestClient) -> None:
    client.post("/types", json={"name": "Aquarium"}, headers=ALICE)

    types = client.get("/types", headers=ALICE).json()

    assert len(types) == 7
    assert all(t["is_system_type"] for t in types[:6])
    assert types[-1]["name"] == "Aquarium"
    assert len(client.get("/types", headers=BOB).json()) == 6


def test_bill_creation_evaluates_threshold_alerts(client: TestClient) -> None:
    electricity = _type_id(client, "Electricity")
    alert = client.post(
        "/alerts",
        json={
            "alert_type": "cost_threshold",
            "utility_type_id": electricity,
            "configuration": {"threshold": 100, "comparison": "greater_than"},
        },
        headers=ALICE,
    )
    assert alert.status_code == 201

    response = client.post(
        "/bills",
        json={
            "utility_type_id": electricity,
            "amount_cents": 15000,
            "bill_date": "2024-03-01",
        },
        headers=ALICE,
    )

    assert response.status_code == 201
    assert response.json()["amount"] == 150.0
    assert response.json()["origin"] == "manual"
    inbox = client.get("/notifications", headers=ALICE).json()
    assert inbox["total"] == 1
    assert inbox["unread_count"] == 1
    assert inbox["notifications"][0]["title"] == "Cost Threshold Alert"
    assert inbox["notifications"][0]["type"] == "alert"


def test_bill_is_created_even_when_alert_hook_fails(
    client: TestClient, monkeypatch
) -> None:
    def explode(self, user_id, bill_id):
        raise RuntimeError("alert store down")

    monkeypatch.setattr(main.AlertEngine, "evaluate_thresholds", explode)
    electricity = _type_id(client, "Electricity")

    response = client.post(
        "/bills",
        json={
            "utility_type_id": electricity,
            "amount_cents": 15000,
            "bill_date": "2024-03-01",
        },
        headers=ALICE,
    )

    assert response.status_code == 201
    assert client.get("/bills", headers=ALICE).json()["total"] == 1


def test_invalid_bill_amount_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/bills",
        json={
            "utility_type_id": _type_id(client, "Water"),
            "amount_cents": 0,
            "bill_date": "2024-03-01",
        },
        headers=ALICE,
    )

    assert response.status_code == 422


def test_alert_configuration_is_validated(client: TestClient) -> None:
    missing_threshold = client.post(
        "/alerts",
        json={"alert_type": "usage_threshold", "configuration": {"unit": "kWh"}},
        headers=ALICE,
    )
    scoped_promotion = client.post(
        "/alerts",
        json={
            "alert_type": "promotion_end",
            "utility_type_id": _type_id(client, "Internet"),
            "configuration": {"end_date": "2024-04-01"},
        },
        headers=ALICE,
    )

    assert missing_threshold.status_code == 400
    assert missing_threshold.json()["error"]["code"] == "VALIDATION_ERROR"
    assert "threshold" in missing_threshold.json()["error"]["message"]
    assert scoped_promotion.status_code == 400


def test_empty_alert_update_is_rejected(client: TestClient) -> None:
    alert = client.post(
        "/alerts",
        json={"alert_type": "bill_reminder", "configuration": {}},
        headers=ALICE,
    ).json()

    response = client.put(f"/alerts/{alert['id']}", json={}, headers=ALICE)

    assert alert["configuration"] == {"days_before": 3}
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_UPDATES"


def test_recurring_processing_is_idempotent(client: TestClient) -> None:
    gas = _type_id(client, "Gas")
    created = client.post(
        "/recurring",
        json={"utility_type_id": gas, "amount_cents": 4500, "day_of_month": 5},
        headers=ALICE,
    )
    client.post(
        "/recurring",
        json={"utility_type_id": gas, "amount_cents": 4500, "day_of_month": 20},
        headers=ALICE,
    )
    assert created.status_code == 201

    first = client.post("/recurring/process", headers=ALICE).json()
    second = client.post("/recurring/process", headers=ALICE).json()

    assert first["current_month"] == "2024-03"
    assert first["processed"] == 1
    assert first["created_bills"][0]["bill_date"] == "2024-03-05"
    assert first["created_bills"][0]["amount"] == 45.0
    assert first["created_bills"][0]["utility_type_name"] == "Gas"
    assert second["processed"] == 0
    bills = client.get("/bills", headers=ALICE).json()["items"]
    assert [b["origin"] for b in bills] == ["recurring"]
    assert bills[0]["period"] == "2024-03"


def test_day_of_month_beyond_28_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/recurring",
        json={
            "utility_type_id": _type_id(client, "Gas"),
            "amount_cents": 4500,
            "day_of_month": 31,
        },
        headers=ALICE,
    )

    assert response.status_code == 422


def test_check_promotions_endpoint(client: TestClient) -> None:
    client.post(
        "/alerts",
        json={
            "alert_type": "promotion_end",
            "configuration": {
                "end_date": "2024-03-13",
                "promotion_name": "Intro rate",
                "utility_name": "Internet",
                "days_before": 5,
            },
        },
        headers=ALICE,
    )

    first = client.post("/check-promotions", headers=ALICE).json()
    second = client.post("/check-promotions", headers=ALICE).json()

    assert [
        (item["promotion_name"], item["days_until_end"])
        for item in first["triggered_alerts"]
    ] == [("Intro rate", 3)]
    assert second["triggered_alerts"] == []
    inbox = client.get("/notifications", headers=ALICE).json()
    assert inbox["notifications"][0]["type"] == "warning"


def test_notifications_are_scoped_to_their_owner(client: TestClient) -> None:
    client.post(
        "/alerts",
        json={
            "alert_type": "promotion_end",
            "configuration": {"end_date": "2024-03-10"},
        },
        headers=ALICE,
    )
    client.post("/check-promotions", headers=ALICE)
    notification_id = client.get("/notifications", headers=ALICE).json()[
        "notifications"
    ][0]["id"]

    foreign = client.put(f"/notifications/{notification_id}/read", headers=BOB)
    missing = client.put("/notifications/9999/read", headers=ALICE)
    own = client.put(f"/notifications/{notification_id}/read", headers=ALICE)

    assert foreign.status_code == 403
    assert missing.status_code == 404
    assert own.json() == {"id": notification_id, "is_read": True}
    assert client.get("/notifications", headers=BOB).json()["total"] == 0


def test_utility_type_rules(client: TestClient) -> None:
    duplicate = client.post("/types", json={"name": "electricity"}, headers=ALICE)
    custom = client.post(
        "/types", json={"name": "Garden water", "unit": "m³"}, headers=ALICE
    ).json()
    client.post(
        "/bills",
        json={
            "utility_type_id": custom["id"],
            "amount_cents": 1200,
            "bill_date": "2024-03-02",
        },
        headers=ALICE,
    )

    in_use = client.delete(f"/types/{custom['id']}", headers=ALICE)
    system = client.delete(f"/types/{_type_id(client, 'Water')}", headers=ALICE)
    foreign = client.delete(f"/types/{custom['id']}", headers=BOB)

    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "DUPLICATE_NAME"
    assert in_use.status_code == 409
    assert in_use.json()["error"]["code"] == "UTILITY_TYPE_IN_USE"
    assert system.status_code == 403
    assert foreign.status_code == 403


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_check_thresholds_endpoint(client: TestClient) -> None:
    water = _type_id(client, "Water")
    bill = client.post(
        "/bills",
        json={
            "utility_type_id": water,
            "amount_cents": 2000,
            "usage_amount": 12.5,
            "bill_date": "2024-03-01",
        },
        headers=ALICE,
    ).json()
    alert = client.post(
        "/alerts",
        json={
            "alert_type": "usage_threshold",
            "utility_type_id": water,
            "configuration": {"threshold": 10, "unit": "m³"},
        },
        headers=ALICE,
    ).json()

    response = client.post(
        "/check-thresholds", json={"bill_id": bill["id"]}, headers=ALICE
    )
    foreign = client.post(
        "/check-thresholds", json={"bill_id": bill["id"]}, headers=BOB
    )

    assert response.status_code == 200
    assert response.json()["triggered_alerts"] == [
        {
            "alert_id": alert["id"],
            "alert_type": "usage_threshold",
            "notification_title": "Usage Threshold Alert",
        }
    ]
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "BILL_NOT_FOUND"


def test_check_reminders_endpoint(client: TestClient) -> None:
    client.post(
        "/alerts",
        json={"alert_type": "bill_reminder", "configuration": {"days_before": 3}},
        headers=ALICE,
    )
    client.post(
        "/bills",
        json={
            "utility_type_id": _type_id(client, "Phone"),
            "amount_cents": 3999,
            "bill_date": "2024-03-01",
            "due_date": "2024-03-11",
        },
        headers=ALICE,
    )

    first = client.post("/check-reminders", headers=ALICE).json()
    second = client.post("/check-reminders", headers=ALICE).json()

    assert [item["bill_count"] for item in first["triggered_alerts"]] == [1]
    assert second["triggered_alerts"] == []
    inbox = client.get("/notifications", headers=ALICE).json()
    assert inbox["notifications"][0]["message"] == (
        "Your Phone bill of $39.99 is due tomorrow."
    )


def test_store_outage_maps_to_503(client: TestClient, monkeypatch) -> None:
    def unavailable(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(main.NotificationService, "list", unavailable)

    response = client.get("/notifications", headers=ALICE)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


def test_analytics_endpoints(client: TestClient) -> None:
    electricity = _type_id(client, "Electricity")
    for bill_date, cents, usage in [
        ("2024-01-15", 10000, 200),
        ("2024-02-15", 12500, 260),
    ]:
        client.post(
            "/bills",
            json={
                "utility_type_id": electricity,
                "amount_cents": cents,
                "usage_amount": usage,
                "bill_date": bill_date,
            },
            headers=ALICE,
        )

    summary = client.get("/analytics/cost-summary", headers=ALICE).json()
    trends = client.get(
        "/analytics/cost-trends",
        params={"start_date": "2024-01-01", "end_date": "2024-12-31"},
        headers=ALICE,
    ).json()
    usage = client.get(
        "/analytics/usage-trends",
        params={
            "start_date": "2024-01-01",
            "end_date": "2024-12-31",
            "group_by": "year",
        },
        headers=ALICE,
    ).json()
    comparison = client.get(
        "/analytics/comparison",
        params={
            "period1_start": "2024-01-01",
            "period1_end": "2024-01-31",
            "period2_start": "2024-02-01",
            "period2_end": "2024-02-29",
        },
        headers=ALICE,
    ).json()
    forecast = client.get(
        "/analytics/forecast", params={"months_ahead": 1}, headers=ALICE
    ).json()
    missing_dates = client.get("/analytics/cost-trends", headers=ALICE)

    assert summary["total_cost"] == 225.0
    assert summary["average_per_bill"] == 112.5
    assert summary["period"] == {"start_date": "2024-01-15", "end_date": "2024-02-15"}
    assert [(row["period"], row["total_cost"]) for row in trends["data"]] == [
        ("2024-01", 100.0),
        ("2024-02", 125.0),
    ]
    assert usage["data"][0]["total_usage"] == 460.0
    assert usage["data"][0]["unit"] == "kWh"
    assert comparison["change"]["cost_change_percent"] == 25.0
    assert comparison["change"]["usage_change_percent"] == 30.0
    assert forecast["forecasts"] == [
        {"month": "2024-04", "predicted_cost": 112.5, "confidence_level": "low"}
    ]
    assert missing_dates.status_code == 422


def test_startup_seeding_is_idempotent_and_tolerates_missing_schema() -> None:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine)

    assert main.prepare_database(factory) == 0

    Base.metadata.create_all(engine)
    assert main.prepare_database(factory) == 6
    assert main.prepare_database(factory) == 0
