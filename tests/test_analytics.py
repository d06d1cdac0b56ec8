from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationError
from models import Bill, UtilityType
from schemas import TrendGrouping
from services import AnalyticsService, seed_system_utility_types

USER = "user-1"


def _session() -> tuple[Session, UtilityType, UtilityType]:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_system_utility_types(session)
    electricity = session.scalar(
        select(UtilityType).where(UtilityType.name == "Electricity")
    )
    water = session.scalar(select(UtilityType).where(UtilityType.name == "Water"))
    return session, electricity, water


def _bill(session, utility, bill_date, amount_cents, usage_amount=None, user_id=USER):
    session.add(
        Bill(
            user_id=user_id,
            utility_type_id=utility.id,
            amount_cents=amount_cents,
            bill_date=bill_date,
            usage_amount=usage_amount,
        )
    )
    session.commit()


def test_cost_summary_groups_by_utility_type() -> None:
    session, electricity, water = _session()
    _bill(session, electricity, date(2024, 1, 15), 10_000)
    _bill(session, electricity, date(2024, 2, 15), 12_001)
    _bill(session, water, date(2024, 2, 3), 3_000)
    _bill(session, water, date(2024, 2, 3), 99_999, user_id="user-2")

    summary = AnalyticsService(session, USER).cost_summary()

    assert summary["total_cents"] == 25_001
    assert summary["bill_count"] == 3
    assert summary["average_cents"] == 8_334
    assert [
        (item["utility_type_name"], item["total_cents"], item["bill_count"])
        for item in summary["by_utility_type"]
    ] == [("Electricity", 22_001, 2), ("Water", 3_000, 1)]
    assert summary["by_utility_type"][0]["average_cents"] == 11_000
    assert summary["first_bill_date"] == date(2024, 1, 15)
    assert summary["last_bill_date"] == date(2024, 2, 15)


def test_cost_summary_with_no_bills_is_zero() -> None:
    session, _electricity, _water = _session()

    summary = AnalyticsService(session, USER).cost_summary(
        start_date=date(2024, 1, 1), end_date=date(2024, 1, 31)
    )

    assert summary["total_cents"] == 0
    assert summary["average_cents"] == 0
    assert summary["by_utility_type"] == []
    assert summary["first_bill_date"] is None


def test_inverted_date_range_is_rejected() -> None:
    session, _electricity, _water = _session()

    with pytest.raises(ValidationError):
        AnalyticsService(session, USER).cost_summary(
            start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)
        )


def test_cost_trends_by_month_and_quarter() -> None:
    session, electricity, water = _session()
    _bill(session, electricity, date(2024, 1, 15), 10_000)
    _bill(session, electricity, date(2024, 2, 15), 12_000)
    _bill(session, water, date(2024, 2, 3), 3_000)
    _bill(session, electricity, date(2024, 4, 15), 9_000)

    analytics = AnalyticsService(session, USER)
    monthly = analytics.cost_trends(date(2024, 1, 1), date(2024, 3, 31))
    quarterly = analytics.cost_trends(
        date(2024, 1, 1), date(2024, 12, 31), group_by=TrendGrouping.quarter
    )

    assert [(r["period"], r["utility_type_name"], r["total"]) for r in monthly] == [
        ("2024-01", "Electricity", 10_000),
        ("2024-02", "Electricity", 12_000),
        ("2024-02", "Water", 3_000),
    ]
    assert [(r["period"], r["utility_type_name"], r["total"]) for r in quarterly] == [
        ("2024-Q1", "Electricity", 22_000),
        ("2024-Q1", "Water", 3_000),
        ("2024-Q2", "Electricity", 9_000),
    ]


def test_usage_trends_skip_bills_without_usage() -> None:
    session, electricity, _water = _session()
    _bill(session, electricity, date(2024, 1, 15), 10_000, usage_amount=250.5)
    _bill(session, electricity, date(2024, 1, 28), 1_000)
    _bill(session, electricity, date(2023, 12, 15), 10_000, usage_amount=300)

    rows = AnalyticsService(session, USER).usage_trends(
        date(2023, 1, 1), date(2024, 12, 31), group_by=TrendGrouping.year
    )

    assert [(r["period"], r["total"], r["unit"]) for r in rows] == [
        ("2023", 300.0, "kWh"),
        ("2024", 250.5, "kWh"),
    ]


def test_comparison_reports_percent_change() -> None:
    session, electricity, water = _session()
    _bill(session, electricity, date(2024, 1, 15), 10_000, usage_amount=100)
    _bill(session, electricity, date(2024, 2, 15), 12_500, usage_amount=80)
    _bill(session, water, date(2024, 2, 20), 5_000)

    result = AnalyticsService(session, USER).comparison(
        (date(2024, 1, 1), date(2024, 1, 31)),
        (date(2024, 2, 1), date(2024, 2, 29)),
        utility_type_id=electricity.id,
    )

    assert result["period1"]["total_cents"] == 10_000
    assert result["period2"]["total_cents"] == 12_500
    assert result["cost_change_percent"] == 25.0
    assert result["usage_change_percent"] == -20.0


def test_comparison_against_empty_period_has_no_change() -> None:
    session, electricity, _water = _session()
    _bill(session, electricity, date(2024, 2, 15), 12_500)

    result = AnalyticsService(session, USER).comparison(
        (date(2024, 1, 1), date(2024, 1, 31)),
        (date(2024, 2, 1), date(2024, 2, 29)),
    )

    assert result["period1"]["bill_count"] == 0
    assert result["cost_change_percent"] == 0.0


def test_forecast_averages_monthly_means() -> None:
    session, electricity, water = _session()
    _bill(session, electricity, date(2024, 1, 15), 10_000)
    _bill(session, water, date(2024, 1, 20), 2_000)
    _bill(session, electricity, date(2024, 2, 15), 8_000)
    # Outside the twelve month window.
    _bill(session, electricity, date(2022, 6, 15), 90_000)

    forecasts = AnalyticsService(session, USER).forecast(
        today=date(2024, 3, 10), months_ahead=2
    )

    # January mean 6000, February mean 8000.
    assert forecasts == [
        {"month": "2024-04", "predicted_cents": 7_000, "confidence_level": "low"},
        {"month": "2024-05", "predicted_cents": 7_000, "confidence_level": "low"},
    ]


def test_forecast_confidence_and_year_rollover() -> None:
    session, electricity, _water = _session()
    for month in range(6, 12):
        _bill(session, electricity, date(2024, month, 10), 5_000)

    forecasts = AnalyticsService(session, USER).forecast(
        today=date(2024, 11, 20), months_ahead=3
    )

    assert [f["month"] for f in forecasts] == ["2024-12", "2025-01", "2025-02"]
    assert {f["confidence_level"] for f in forecasts} == {"high"}


def test_forecast_without_history_is_empty() -> None:
    session, _electricity, _water = _session()

    assert AnalyticsService(session, USER).forecast(today=date(2024, 3, 10)) == []
