import logging
from datetime import date
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from alerting import AlertEngine
from database import SessionLocal
from errors import BillsError, TransientStoreError, UnauthorizedError, error_body
from models import Alert, Bill, Notification, PaymentStatus, RecurringBill, UtilityType
from periods import Clock, local_now
from recurrence import RecurringBillEngine
from scheduler import SchedulerManager
from schemas import (
    AlertIn,
    AlertUpdate,
    BillIn,
    BillUpdate,
    CheckThresholdsIn,
    RecurringBillIn,
    TrendGrouping,
    UtilityTypeIn,
)
from services import (
    AlertService,
    AnalyticsService,
    BillFilters,
    BillService,
    NotificationService,
    RecurringBillService,
    UtilityTypeService,
    cents_to_amount,
    seed_system_utility_types,
)


logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Utility Bill Tracker", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return local_now


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("User information required")
    return x_user_id.strip()


scheduler_manager = SchedulerManager()


def prepare_database(session_factory=SessionLocal) -> int:
    """Seed the shared utility types. The schema itself comes from alembic."""
    session = session_factory()
    try:
        return seed_system_utility_types(session)
    except OperationalError:
        session.rollback()
        logger.warning(
            "database_not_ready: run `alembic upgrade head` to create the schema"
        )
        return 0
    finally:
        session.close()


@app.on_event("startup")
def startup_event():
    prepare_database()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(BillsError)
def bills_error_handler(request: Request, exc: BillsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"request_failed: path={request.url.path} code={exc.code}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


@app.exception_handler(OperationalError)
def store_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.exception(f"store_unavailable: path={request.url.path}")
    return bills_error_handler(request, TransientStoreError("Ledger store unavailable"))


def _page(limit: int, offset: int) -> tuple[int, int]:
    return min(max(limit, 1), 100), max(offset, 0)


def utility_type_to_dict(utility_type: UtilityType) -> dict[str, object]:
    return {
        "id": utility_type.id,
        "name": utility_type.name,
        "description": utility_type.description,
        "unit": utility_type.unit,
        "is_system_type": utility_type.is_system_type,
        "created_at": utility_type.created_at.isoformat(),
    }


def bill_to_dict(bill: Bill) -> dict[str, object]:
    return {
        "id": bill.id,
        "utility_type_id": bill.utility_type_id,
        "utility_type_name": bill.utility_type.name if bill.utility_type else None,
        "amount_cents": bill.amount_cents,
        "amount": cents_to_amount(bill.amount_cents),
        "bill_date": bill.bill_date.isoformat(),
        "due_date": bill.due_date.isoformat() if bill.due_date else None,
        "usage_amount": bill.usage_amount,
        "notes": bill.notes,
        "payment_status": bill.payment_status.value,
        "origin": bill.origin.value,
        "recurring_bill_id": bill.recurring_bill_id,
        "period": bill.period,
    }


def recurring_to_dict(template: RecurringBill) -> dict[str, object]:
    return {
        "id": template.id,
        "utility_type_id": template.utility_type_id,
        "utility_type_name": template.utility_type.name
        if template.utility_type
        else None,
        "amount_cents": template.amount_cents,
        "amount": cents_to_amount(template.amount_cents),
        "day_of_month": template.day_of_month,
        "notes": template.notes,
        "is_active": template.is_active,
        "last_generated_period": template.last_generated_period,
    }


def alert_to_dict(alert: Alert) -> dict[str, object]:
    return {
        "id": alert.id,
        "alert_type": alert.alert_type.value,
        "utility_type_id": alert.utility_type_id,
        "is_active": alert.is_active,
        "configuration": alert.configuration,
        "last_triggered": alert.last_triggered.isoformat()
        if alert.last_triggered
        else None,
        "created_at": alert.created_at.isoformat(),
    }


def notification_to_dict(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "alert_id": notification.alert_id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type.value,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
    }


def evaluate_bill_alerts(
    bind: Engine, user_id: str, bill_ids: list[int], clock: Clock
) -> None:
    """Background hook run after bills are created; never raises."""
    with Session(bind, expire_on_commit=False) as session:
        try:
            AlertEngine(session, clock=clock).evaluate_new_bills(user_id, bill_ids)
        except Exception:
            session.rollback()
            logger.exception(
                f"threshold_hook_failed: user_id={user_id} bill_ids={bill_ids}"
            )


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except OperationalError as exc:
        logger.warning(f"health_check_failed: {exc}")
        return JSONResponse(
            status_code=503, content={"status": "unhealthy", "version": APP_VERSION}
        )
    return {"status": "healthy", "version": APP_VERSION}


# Utility types


@app.get("/types")
def list_utility_types(
    db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return [utility_type_to_dict(t) for t in UtilityTypeService(db, user_id).list_all()]


@app.post("/types", status_code=201)
def create_utility_type(
    data: UtilityTypeIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return utility_type_to_dict(UtilityTypeService(db, user_id).create(data))


@app.put("/types/{type_id}")
def update_utility_type(
    type_id: int,
    data: UtilityTypeIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return utility_type_to_dict(UtilityTypeService(db, user_id).update(type_id, data))


@app.delete("/types/{type_id}")
def delete_utility_type(
    type_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    UtilityTypeService(db, user_id).delete(type_id)
    return {"success": True}


# Bills


@app.get("/bills")
def list_bills(
    utility_type_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    payment_status: Optional[PaymentStatus] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    limit, offset = _page(limit, offset)
    filters = BillFilters(
        utility_type_id=utility_type_id,
        start_date=start_date,
        end_date=end_date,
        payment_status=payment_status,
    )
    items, total = BillService(db, user_id).list(filters, limit=limit, offset=offset)
    return {
        "items": [bill_to_dict(bill) for bill in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/bills/{bill_id}")
def get_bill(
    bill_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return bill_to_dict(BillService(db, user_id).get(bill_id))


@app.post("/bills", status_code=201)
def create_bill(
    data: BillIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    bill = BillService(db, user_id).create(data)
    background_tasks.add_task(
        evaluate_bill_alerts, db.get_bind(), user_id, [bill.id], clock
    )
    return bill_to_dict(bill)


@app.put("/bills/{bill_id}")
def update_bill(
    bill_id: int,
    data: BillUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return bill_to_dict(BillService(db, user_id).update(bill_id, data))


@app.delete("/bills/{bill_id}")
def delete_bill(
    bill_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    BillService(db, user_id).delete(bill_id)
    return {"success": True}


# Recurring bills


@app.get("/recurring")
def list_recurring(db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    return [recurring_to_dict(r) for r in RecurringBillService(db, user_id).list()]


@app.post("/recurring", status_code=201)
def create_recurring(
    data: RecurringBillIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return recurring_to_dict(RecurringBillService(db, user_id).create(data))


@app.post("/recurring/process")
def process_recurring(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    result = RecurringBillEngine(db, clock=clock).materialize_due_bills(user_id)
    if result.created:
        background_tasks.add_task(
            evaluate_bill_alerts,
            db.get_bind(),
            user_id,
            [generated.bill_id for generated in result.created],
            clock,
        )
    return {
        "processed": result.created_count,
        "created_bills": [
            {
                "recurring_id": generated.recurring_id,
                "bill_id": generated.bill_id,
                "utility_type_name": generated.utility_type_name,
                "amount": cents_to_amount(generated.amount_cents),
                "bill_date": generated.bill_date.isoformat(),
            }
            for generated in result.created
        ],
        "skipped": [
            {"recurring_id": recurring_id, "reason": reason}
            for recurring_id, reason in result.skipped
        ],
        "current_month": result.period.key,
    }


@app.put("/recurring/{recurring_id}")
def update_recurring(
    recurring_id: int,
    data: RecurringBillIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    template = RecurringBillService(db, user_id).update(recurring_id, data)
    return recurring_to_dict(template)


@app.delete("/recurring/{recurring_id}")
def delete_recurring(
    recurring_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    RecurringBillService(db, user_id).delete(recurring_id)
    return {"success": True}


# Alerts


@app.get("/alerts")
def list_alerts(
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return [alert_to_dict(a) for a in AlertService(db, user_id).list(is_active)]


@app.post("/alerts", status_code=201)
def create_alert(
    data: AlertIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return alert_to_dict(AlertService(db, user_id).create(data))


@app.put("/alerts/{alert_id}")
def update_alert(
    alert_id: int,
    data: AlertUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return alert_to_dict(AlertService(db, user_id).update(alert_id, data))


@app.delete("/alerts/{alert_id}")
def delete_alert(
    alert_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    AlertService(db, user_id).delete(alert_id)
    return {"success": True}


@app.post("/check-thresholds")
def check_thresholds(
    data: CheckThresholdsIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    triggered = AlertEngine(db, clock=clock).evaluate_thresholds(user_id, data.bill_id)
    return {
        "triggered_alerts": [
            {
                "alert_id": item.alert_id,
                "alert_type": item.alert_type.value,
                "notification_title": item.notification_title,
            }
            for item in triggered
        ]
    }


@app.post("/check-promotions")
def check_promotions(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    triggered = AlertEngine(db, clock=clock).check_promotions(user_id)
    return {
        "triggered_alerts": [
            {
                "alert_id": item.alert_id,
                "promotion_name": item.promotion_name,
                "days_until_end": item.days_until_end,
            }
            for item in triggered
        ]
    }


@app.post("/check-reminders")
def check_reminders(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    triggered = AlertEngine(db, clock=clock).check_bill_reminders(user_id)
    return {
        "triggered_alerts": [
            {"alert_id": item.alert_id, "bill_count": item.bill_count}
            for item in triggered
        ]
    }


# Analytics


def _money(cents: float) -> float:
    return round(cents_to_amount(cents), 2)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@app.get("/analytics/cost-summary")
def cost_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    utility_type_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    summary = AnalyticsService(db, user_id).cost_summary(
        start_date, end_date, utility_type_id
    )
    return {
        "total_cost": _money(summary["total_cents"]),
        "average_per_bill": _money(summary["average_cents"]),
        "bill_count": summary["bill_count"],
        "by_utility_type": [
            {
                "utility_type_id": item["utility_type_id"],
                "utility_type_name": item["utility_type_name"],
                "total": _money(item["total_cents"]),
                "bill_count": item["bill_count"],
                "average": _money(item["average_cents"]),
            }
            for item in summary["by_utility_type"]
        ],
        "period": {
            "start_date": _iso(summary["first_bill_date"]),
            "end_date": _iso(summary["last_bill_date"]),
        },
    }


@app.get("/analytics/cost-trends")
def cost_trends(
    start_date: date,
    end_date: date,
    utility_type_id: Optional[int] = None,
    group_by: TrendGrouping = TrendGrouping.month,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    rows = AnalyticsService(db, user_id).cost_trends(
        start_date, end_date, utility_type_id, group_by
    )
    return {
        "data": [
            {
                "period": row["period"],
                "total_cost": _money(row["total"]),
                "utility_type_id": row["utility_type_id"],
                "utility_type_name": row["utility_type_name"],
            }
            for row in rows
        ],
        "period": {"start_date": _iso(start_date), "end_date": _iso(end_date)},
        "group_by": group_by.value,
    }


@app.get("/analytics/usage-trends")
def usage_trends(
    start_date: date,
    end_date: date,
    utility_type_id: Optional[int] = None,
    group_by: TrendGrouping = TrendGrouping.month,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    rows = AnalyticsService(db, user_id).usage_trends(
        start_date, end_date, utility_type_id, group_by
    )
    return {
        "data": [
            {
                "period": row["period"],
                "total_usage": row["total"],
                "utility_type_id": row["utility_type_id"],
                "utility_type_name": row["utility_type_name"],
                "unit": row["unit"],
            }
            for row in rows
        ],
        "period": {"start_date": _iso(start_date), "end_date": _iso(end_date)},
        "group_by": group_by.value,
    }


def _period_totals_to_dict(totals: dict[str, object]) -> dict[str, object]:
    return {
        "total_cost": _money(totals["total_cents"]),
        "total_usage": totals["total_usage"],
        "bill_count": totals["bill_count"],
        "average": _money(totals["average_cents"]),
        "dates": {
            "start": totals["start_date"].isoformat(),
            "end": totals["end_date"].isoformat(),
        },
    }


@app.get("/analytics/comparison")
def compare_periods(
    period1_start: date,
    period1_end: date,
    period2_start: date,
    period2_end: date,
    utility_type_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    result = AnalyticsService(db, user_id).comparison(
        (period1_start, period1_end), (period2_start, period2_end), utility_type_id
    )
    return {
        "period1": _period_totals_to_dict(result["period1"]),
        "period2": _period_totals_to_dict(result["period2"]),
        "change": {
            "cost_change_percent": result["cost_change_percent"],
            "usage_change_percent": result["usage_change_percent"],
        },
    }


@app.get("/analytics/forecast")
def forecast(
    utility_type_id: Optional[int] = None,
    months_ahead: int = Query(default=3, ge=1, le=24),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    clock: Clock = Depends(get_clock),
):
    forecasts = AnalyticsService(db, user_id).forecast(
        clock().date(), utility_type_id, months_ahead
    )
    if not forecasts:
        return {"forecasts": [], "message": "Insufficient data for forecasting"}
    return {
        "forecasts": [
            {
                "month": item["month"],
                "predicted_cost": _money(item["predicted_cents"]),
                "confidence_level": item["confidence_level"],
            }
            for item in forecasts
        ]
    }


# Notifications


@app.get("/notifications")
def list_notifications(
    is_read: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    limit, offset = _page(limit, offset)
    page = NotificationService(db, user_id).list(is_read, limit=limit, offset=offset)
    return {
        "notifications": [notification_to_dict(n) for n in page.items],
        "total": page.total,
        "unread_count": page.unread_count,
        "limit": limit,
        "offset": offset,
    }


@app.put("/notifications/read-all")
def mark_all_notifications_read(
    db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return {"updated": NotificationService(db, user_id).mark_all_read()}


@app.put("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    notification = NotificationService(db, user_id).mark_read(notification_id)
    return {"id": notification.id, "is_read": notification.is_read}


@app.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    NotificationService(db, user_id).delete(notification_id)
    return {"success": True}
