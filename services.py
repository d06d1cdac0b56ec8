from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import (
    Alert,
    AlertType,
    Bill,
    Notification,
    PaymentStatus,
    RecurringBill,
    UtilityType,
)
from periods import Period, period_of
from schemas import (
    AlertIn,
    AlertUpdate,
    BillIn,
    BillUpdate,
    RecurringBillIn,
    TrendGrouping,
    UtilityTypeIn,
    decode_configuration,
)


SYSTEM_UTILITY_TYPES: tuple[tuple[str, str, Optional[str]], ...] = (
    ("Electricity", "Electric power supply", "kWh"),
    ("Water", "Water and sewage", "m³"),
    ("Gas", "Natural gas supply", "m³"),
    ("Internet", "Broadband and internet access", None),
    ("Phone", "Mobile and landline service", None),
    ("Trash", "Waste collection", None),
)


def cents_to_amount(cents: int) -> float:
    return cents / 100


def seed_system_utility_types(session: Session) -> int:
    existing = {
        name.lower()
        for name in session.scalars(
            select(UtilityType.name).where(UtilityType.user_id.is_(None))
        ).all()
    }
    created = 0
    for name, description, unit in SYSTEM_UTILITY_TYPES:
        if name.lower() in existing:
            continue
        session.add(
            UtilityType(user_id=None, name=name, description=description, unit=unit)
        )
        created += 1
    session.commit()
    return created


def users_with_scheduled_work(session: Session) -> list[str]:
    recurring_users = select(RecurringBill.user_id).where(
        RecurringBill.is_active.is_(True)
    )
    alert_users = select(Alert.user_id).where(
        Alert.is_active.is_(True),
        Alert.alert_type.in_((AlertType.promotion_end, AlertType.bill_reminder)),
    )
    rows = session.scalars(recurring_users.union(alert_users)).all()
    return sorted(set(rows))


class UtilityTypeService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[UtilityType]:
        stmt = (
            select(UtilityType)
            .where(
                or_(UtilityType.user_id.is_(None), UtilityType.user_id == self.user_id)
            )
            .order_by(UtilityType.user_id.is_not(None), UtilityType.name)
        )
        return self.session.scalars(stmt).all()

    def get_visible(self, type_id: int) -> UtilityType:
        utility_type = self.session.get(UtilityType, type_id)
        if not utility_type or (
            utility_type.user_id is not None and utility_type.user_id != self.user_id
        ):
            raise NotFoundError(
                "Utility type not found", code="UTILITY_TYPE_NOT_FOUND"
            )
        return utility_type

    def _get_owned(self, type_id: int, action: str) -> UtilityType:
        utility_type = self.session.get(UtilityType, type_id)
        if not utility_type:
            raise NotFoundError("Utility type not found")
        if utility_type.user_id is None:
            raise ForbiddenError(f"Cannot {action} system utility types")
        if utility_type.user_id != self.user_id:
            raise ForbiddenError(f"Not authorized to {action} this utility type")
        return utility_type

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(UtilityType.id).where(
            or_(UtilityType.user_id.is_(None), UtilityType.user_id == self.user_id),
            func.lower(UtilityType.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(UtilityType.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError(
                "Utility type with this name already exists", code="DUPLICATE_NAME"
            )

    def create(self, data: UtilityTypeIn) -> UtilityType:
        name = data.name.strip()
        if not name:
            raise ValidationError("Utility type name cannot be empty")
        self._ensure_unique_name(name)
        utility_type = UtilityType(
            user_id=self.user_id,
            name=name,
            description=data.description or None,
            unit=data.unit or None,
        )
        self.session.add(utility_type)
        self.session.commit()
        self.session.refresh(utility_type)
        return utility_type

    def update(self, type_id: int, data: UtilityTypeIn) -> UtilityType:
        utility_type = self._get_owned(type_id, "modify")
        name = data.name.strip()
        if not name:
            raise ValidationError("Utility type name cannot be empty")
        self._ensure_unique_name(name, exclude_id=type_id)
        utility_type.name = name
        utility_type.description = data.description or None
        utility_type.unit = data.unit or None
        self.session.commit()
        self.session.refresh(utility_type)
        return utility_type

    def delete(self, type_id: int) -> None:
        utility_type = self._get_owned(type_id, "delete")
        bill_count = self.session.scalar(
            select(func.count(Bill.id)).where(Bill.utility_type_id == type_id)
        )
        if bill_count:
            raise ConflictError(
                f"Cannot delete utility type with {bill_count} existing bills",
                code="UTILITY_TYPE_IN_USE",
            )
        scoped_alerts = select(Alert.id).where(Alert.utility_type_id == type_id)
        self.session.execute(
            update(Notification)
            .where(Notification.alert_id.in_(scoped_alerts))
            .values(alert_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(Alert)
            .where(Alert.utility_type_id == type_id)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(RecurringBill)
            .where(RecurringBill.utility_type_id == type_id)
            .values(utility_type_id=None)
        )
        self.session.delete(utility_type)
        self.session.commit()


@dataclass
class BillFilters:
    utility_type_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    payment_status: Optional[PaymentStatus] = None


REQUIRED_BILL_FIELDS = {
    "utility_type_id",
    "amount_cents",
    "bill_date",
    "payment_status",
}


class BillService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, bill_id: int) -> Bill:
        bill = self.session.scalar(
            select(Bill)
            .options(joinedload(Bill.utility_type))
            .where(Bill.id == bill_id)
        )
        if not bill:
            raise NotFoundError("Bill not found")
        if bill.user_id != self.user_id:
            raise ForbiddenError("Not authorized to access this bill")
        return bill

    def list(
        self, filters: BillFilters, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Bill], int]:
        conditions = [Bill.user_id == self.user_id]
        if filters.utility_type_id is not None:
            conditions.append(Bill.utility_type_id == filters.utility_type_id)
        if filters.start_date is not None:
            conditions.append(Bill.bill_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(Bill.bill_date <= filters.end_date)
        if filters.payment_status is not None:
            conditions.append(Bill.payment_status == filters.payment_status)

        total = self.session.scalar(select(func.count(Bill.id)).where(*conditions)) or 0
        stmt = (
            select(Bill)
            .options(joinedload(Bill.utility_type))
            .where(*conditions)
            .order_by(Bill.bill_date.desc(), Bill.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return self.session.scalars(stmt).all(), total

    def create(self, data: BillIn) -> Bill:
        UtilityTypeService(self.session, self.user_id).get_visible(data.utility_type_id)
        bill = Bill(
            user_id=self.user_id,
            utility_type_id=data.utility_type_id,
            amount_cents=data.amount_cents,
            bill_date=data.bill_date,
            due_date=data.due_date,
            usage_amount=data.usage_amount,
            notes=data.notes or None,
            payment_status=data.payment_status,
        )
        self.session.add(bill)
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def update(self, bill_id: int, data: BillUpdate) -> Bill:
        bill = self.get(bill_id)
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No valid fields to update", code="NO_UPDATES")
        if changes.get("utility_type_id") not in (None, bill.utility_type_id):
            UtilityTypeService(self.session, self.user_id).get_visible(
                changes["utility_type_id"]
            )
        for field, value in changes.items():
            if value is None and field in REQUIRED_BILL_FIELDS:
                raise ValidationError(f"{field} cannot be null")
            setattr(bill, field, value)
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def delete(self, bill_id: int) -> None:
        bill = self.get(bill_id)
        self.session.delete(bill)
        self.session.commit()


class RecurringBillService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, recurring_id: int) -> RecurringBill:
        template = self.session.get(RecurringBill, recurring_id)
        if not template:
            raise NotFoundError("Recurring bill not found")
        if template.user_id != self.user_id:
            raise ForbiddenError("Not authorized to access this recurring bill")
        return template

    def list(self) -> list[RecurringBill]:
        stmt = (
            select(RecurringBill)
            .options(joinedload(RecurringBill.utility_type))
            .where(RecurringBill.user_id == self.user_id)
            .order_by(RecurringBill.day_of_month, RecurringBill.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringBillIn) -> RecurringBill:
        UtilityTypeService(self.session, self.user_id).get_visible(data.utility_type_id)
        template = RecurringBill(
            user_id=self.user_id,
            utility_type_id=data.utility_type_id,
            amount_cents=data.amount_cents,
            day_of_month=data.day_of_month,
            notes=data.notes or None,
            is_active=data.is_active,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(self, recurring_id: int, data: RecurringBillIn) -> RecurringBill:
        template = self.get(recurring_id)
        if data.utility_type_id != template.utility_type_id:
            UtilityTypeService(self.session, self.user_id).get_visible(
                data.utility_type_id
            )
        # last_generated_period is engine-owned and never rewound here.
        template.utility_type_id = data.utility_type_id
        template.amount_cents = data.amount_cents
        template.day_of_month = data.day_of_month
        template.notes = data.notes or None
        template.is_active = data.is_active
        self.session.commit()
        self.session.refresh(template)
        return template

    def delete(self, recurring_id: int) -> None:
        template = self.get(recurring_id)
        self.session.execute(
            update(Bill)
            .where(Bill.recurring_bill_id == template.id)
            .values(recurring_bill_id=None)
        )
        self.session.delete(template)
        self.session.commit()


class AlertService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, alert_id: int) -> Alert:
        alert = self.session.get(Alert, alert_id)
        if not alert:
            raise NotFoundError("Alert not found")
        if alert.user_id != self.user_id:
            raise ForbiddenError("Not authorized to access this alert")
        return alert

    def list(self, is_active: Optional[bool] = None) -> list[Alert]:
        stmt = select(Alert).where(Alert.user_id == self.user_id)
        if is_active is not None:
            stmt = stmt.where(Alert.is_active.is_(is_active))
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc())
        return self.session.scalars(stmt).all()

    def create(self, data: AlertIn) -> Alert:
        scoped = data.utility_type_id is not None
        if data.alert_type == AlertType.promotion_end and scoped:
            raise ValidationError("promotion_end alerts cannot target a utility type")
        if scoped:
            UtilityTypeService(self.session, self.user_id).get_visible(
                data.utility_type_id
            )
        config = decode_configuration(data.alert_type, data.configuration)
        alert = Alert(
            user_id=self.user_id,
            alert_type=data.alert_type,
            utility_type_id=data.utility_type_id,
            configuration=config.model_dump(mode="json"),
            is_active=True,
        )
        self.session.add(alert)
        self.session.commit()
        self.session.refresh(alert)
        return alert

    def update(self, alert_id: int, data: AlertUpdate) -> Alert:
        alert = self.get(alert_id)
        if data.configuration is None and data.is_active is None:
            raise ValidationError("No valid fields to update", code="NO_UPDATES")
        if data.configuration is not None:
            config = decode_configuration(alert.alert_type, data.configuration)
            alert.configuration = config.model_dump(mode="json")
        if data.is_active is not None:
            alert.is_active = data.is_active
        self.session.commit()
        self.session.refresh(alert)
        return alert

    def delete(self, alert_id: int) -> None:
        alert = self.get(alert_id)
        self.session.execute(
            update(Notification)
            .where(Notification.alert_id == alert.id)
            .values(alert_id=None)
        )
        self.session.delete(alert)
        self.session.commit()


@dataclass
class NotificationPage:
    items: list[Notification]
    total: int
    unread_count: int


class NotificationService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self, is_read: Optional[bool] = None, *, limit: int = 50, offset: int = 0
    ) -> NotificationPage:
        conditions = [Notification.user_id == self.user_id]
        if is_read is not None:
            conditions.append(Notification.is_read.is_(is_read))
        total = (
            self.session.scalar(select(func.count(Notification.id)).where(*conditions))
            or 0
        )
        unread = (
            self.session.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == self.user_id,
                    Notification.is_read.is_(False),
                )
            )
            or 0
        )
        stmt = (
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return NotificationPage(
            items=self.session.scalars(stmt).all(), total=total, unread_count=unread
        )

    def _get(self, notification_id: int) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if not notification:
            raise NotFoundError("Notification not found")
        if notification.user_id != self.user_id:
            raise ForbiddenError("Not authorized to access this notification")
        return notification

    def mark_read(self, notification_id: int) -> Notification:
        notification = self._get(notification_id)
        if not notification.is_read:
            notification.is_read = True
            self.session.commit()
            self.session.refresh(notification)
        return notification

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        self.session.commit()
        return result.rowcount

    def delete(self, notification_id: int) -> None:
        notification = self._get(notification_id)
        self.session.delete(notification)
        self.session.commit()


def _percent_change(before: float, after: float) -> float:
    if before <= 0:
        return 0.0
    return round((after - before) / before * 100, 2)


def _bucket_key(period: Period, group_by: TrendGrouping) -> str:
    if group_by == TrendGrouping.year:
        return f"{period.year:04d}"
    if group_by == TrendGrouping.quarter:
        return f"{period.year:04d}-Q{period.quarter}"
    return period.key


class AnalyticsService:
    """Cost and usage aggregates over a user's bills.

    Money stays in integer cents; the HTTP layer converts to amounts.
    """

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _conditions(
        self,
        start_date: Optional[date],
        end_date: Optional[date],
        utility_type_id: Optional[int],
    ) -> list:
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        conditions = [Bill.user_id == self.user_id]
        if start_date is not None:
            conditions.append(Bill.bill_date >= start_date)
        if end_date is not None:
            conditions.append(Bill.bill_date <= end_date)
        if utility_type_id is not None:
            conditions.append(Bill.utility_type_id == utility_type_id)
        return conditions

    def cost_summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        utility_type_id: Optional[int] = None,
    ) -> dict[str, object]:
        conditions = self._conditions(start_date, end_date, utility_type_id)
        stmt = (
            select(
                Bill.utility_type_id,
                UtilityType.name.label("utility_type_name"),
                func.coalesce(func.sum(Bill.amount_cents), 0).label("total"),
                func.count(Bill.id).label("bill_count"),
            )
            .join(UtilityType, UtilityType.id == Bill.utility_type_id)
            .where(*conditions)
            .group_by(Bill.utility_type_id, UtilityType.name)
            .order_by(UtilityType.name)
        )
        by_type: list[dict[str, object]] = []
        for row in self.session.execute(stmt):
            total = int(row.total or 0)
            count = int(row.bill_count)
            by_type.append(
                {
                    "utility_type_id": row.utility_type_id,
                    "utility_type_name": row.utility_type_name,
                    "total_cents": total,
                    "bill_count": count,
                    "average_cents": round(total / count) if count else 0,
                }
            )
        total_cents = sum(item["total_cents"] for item in by_type)
        bill_count = sum(item["bill_count"] for item in by_type)
        first, last = self.session.execute(
            select(func.min(Bill.bill_date), func.max(Bill.bill_date)).where(
                *conditions
            )
        ).one()
        return {
            "total_cents": total_cents,
            "bill_count": bill_count,
            "average_cents": round(total_cents / bill_count) if bill_count else 0,
            "by_utility_type": by_type,
            "first_bill_date": first,
            "last_bill_date": last,
        }

    def _trend(
        self,
        value,
        start_date: date,
        end_date: date,
        utility_type_id: Optional[int],
        group_by: TrendGrouping,
        extra_conditions: tuple = (),
    ) -> list[dict[str, object]]:
        conditions = self._conditions(start_date, end_date, utility_type_id)
        stmt = (
            select(
                func.strftime("%Y", Bill.bill_date).label("year"),
                func.strftime("%m", Bill.bill_date).label("month"),
                Bill.utility_type_id,
                UtilityType.name.label("utility_type_name"),
                UtilityType.unit,
                func.coalesce(func.sum(value), 0).label("total"),
            )
            .join(UtilityType, UtilityType.id == Bill.utility_type_id)
            .where(*conditions, *extra_conditions)
            .group_by(
                "year",
                "month",
                Bill.utility_type_id,
                UtilityType.name,
                UtilityType.unit,
            )
        )
        buckets: dict[tuple[str, int], dict[str, object]] = {}
        for row in self.session.execute(stmt):
            key = _bucket_key(Period(int(row.year), int(row.month)), group_by)
            entry = buckets.setdefault(
                (key, row.utility_type_id),
                {
                    "period": key,
                    "utility_type_id": row.utility_type_id,
                    "utility_type_name": row.utility_type_name,
                    "unit": row.unit,
                    "total": 0,
                },
            )
            entry["total"] += row.total
        return sorted(
            buckets.values(),
            key=lambda entry: (entry["period"], entry["utility_type_name"]),
        )

    def cost_trends(
        self,
        start_date: date,
        end_date: date,
        utility_type_id: Optional[int] = None,
        group_by: TrendGrouping = TrendGrouping.month,
    ) -> list[dict[str, object]]:
        return self._trend(
            Bill.amount_cents, start_date, end_date, utility_type_id, group_by
        )

    def usage_trends(
        self,
        start_date: date,
        end_date: date,
        utility_type_id: Optional[int] = None,
        group_by: TrendGrouping = TrendGrouping.month,
    ) -> list[dict[str, object]]:
        return self._trend(
            Bill.usage_amount,
            start_date,
            end_date,
            utility_type_id,
            group_by,
            extra_conditions=(Bill.usage_amount.is_not(None),),
        )

    def _period_totals(
        self, start_date: date, end_date: date, utility_type_id: Optional[int]
    ) -> dict[str, object]:
        conditions = self._conditions(start_date, end_date, utility_type_id)
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Bill.amount_cents), 0).label("total"),
                func.coalesce(func.sum(Bill.usage_amount), 0).label("usage"),
                func.count(Bill.id).label("bill_count"),
            ).where(*conditions)
        ).one()
        total = int(row.total or 0)
        count = int(row.bill_count)
        return {
            "total_cents": total,
            "total_usage": float(row.usage or 0),
            "bill_count": count,
            "average_cents": round(total / count) if count else 0,
            "start_date": start_date,
            "end_date": end_date,
        }

    def comparison(
        self,
        first: tuple[date, date],
        second: tuple[date, date],
        utility_type_id: Optional[int] = None,
    ) -> dict[str, object]:
        before = self._period_totals(first[0], first[1], utility_type_id)
        after = self._period_totals(second[0], second[1], utility_type_id)
        return {
            "period1": before,
            "period2": after,
            "cost_change_percent": _percent_change(
                before["total_cents"], after["total_cents"]
            ),
            "usage_change_percent": _percent_change(
                before["total_usage"], after["total_usage"]
            ),
        }

    def forecast(
        self,
        today: date,
        utility_type_id: Optional[int] = None,
        months_ahead: int = 3,
    ) -> list[dict[str, object]]:
        """Project the average bill of the last twelve months forward.

        Each month contributes its mean bill amount once, so a month with
        many small bills does not outweigh the others. Confidence grows with
        the number of months that have any bills.
        """
        current = period_of(today)
        window_start = current.shifted(-12).day(1)
        conditions = self._conditions(window_start, today, utility_type_id)
        stmt = (
            select(
                func.strftime("%Y", Bill.bill_date).label("year"),
                func.strftime("%m", Bill.bill_date).label("month"),
                func.avg(Bill.amount_cents).label("average"),
            )
            .where(*conditions)
            .group_by("year", "month")
        )
        monthly = [float(row.average) for row in self.session.execute(stmt)]
        if not monthly:
            return []
        predicted = round(sum(monthly) / len(monthly))
        if len(monthly) >= 6:
            confidence = "high"
        elif len(monthly) >= 3:
            confidence = "medium"
        else:
            confidence = "low"
        return [
            {
                "month": current.shifted(offset).key,
                "predicted_cents": predicted,
                "confidence_level": confidence,
            }
            for offset in range(1, months_ahead + 1)
        ]
