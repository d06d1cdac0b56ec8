"""Alert evaluation: bill thresholds, promotion countdowns and due-date reminders.

All three checks are safe to call repeatedly. Threshold alerts fire once per
qualifying bill; promotion and reminder alerts fire at most once per alert
per calendar day, enforced by a conditional UPDATE on ``last_triggered``
committed together with the notification row.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import BillsError, NotFoundError, TransientStoreError
from models import (
    Alert,
    AlertType,
    Bill,
    Notification,
    NotificationType,
    PaymentStatus,
    UtilityType,
)
from periods import Clock, local_now
from schemas import (
    BillReminderConfig,
    Comparison,
    PromotionEndConfig,
    ThresholdConfig,
    decode_configuration,
)


logger = logging.getLogger(__name__)

THRESHOLD_ALERT_TYPES = (AlertType.usage_threshold, AlertType.cost_threshold)

_COMPARISON_VERBS = {
    Comparison.greater_than: "exceeded",
    Comparison.less_than: "fallen below",
    Comparison.equals: "reached",
}


@dataclass(frozen=True)
class TriggeredThreshold:
    alert_id: int
    alert_type: AlertType
    notification_title: str
    notification_id: int


@dataclass(frozen=True)
class TriggeredPromotion:
    alert_id: int
    promotion_name: str
    days_until_end: int
    notification_id: int


@dataclass(frozen=True)
class TriggeredReminder:
    alert_id: int
    bill_count: int
    notification_id: int


def compare(observed: float, threshold: float, comparison: Comparison) -> bool:
    if comparison == Comparison.greater_than:
        return observed > threshold
    if comparison == Comparison.less_than:
        return observed < threshold
    # Exact float equality, no tolerance.
    return observed == threshold


def days_until(end_date: date, today: date) -> int:
    return (end_date - today).days


def _with_unit(value: float, unit: Optional[str]) -> str:
    return f"{value:g} {unit}" if unit else f"{value:g}"


def threshold_message(
    alert_type: AlertType,
    utility_name: str,
    observed: float,
    config: ThresholdConfig,
) -> tuple[str, str]:
    verb = _COMPARISON_VERBS[config.comparison]
    if alert_type == AlertType.usage_threshold:
        return (
            "Usage Threshold Alert",
            f"Your {utility_name} usage ({_with_unit(observed, config.unit)}) has "
            f"{verb} the threshold of {_with_unit(config.threshold, config.unit)}.",
        )
    return (
        "Cost Threshold Alert",
        f"Your {utility_name} bill (${observed:.2f}) has {verb} the threshold "
        f"of ${config.threshold:.2f}.",
    )


def promotion_message(config: PromotionEndConfig, days_until_end: int) -> str:
    subject = f"{config.promotion_name} for {config.utility_name}"
    if days_until_end <= 0:
        return f"{subject} ends TODAY! Make sure to review your options."
    if days_until_end == 1:
        return f"{subject} ends TOMORROW! Time to review your options."
    return (
        f"{subject} ends in {days_until_end} days "
        f"({config.end_date.isoformat()}). Consider reviewing your options."
    )


def _due_phrase(due: date, today: date) -> str:
    delta = days_until(due, today)
    if delta == 0:
        return "today"
    if delta == 1:
        return "tomorrow"
    return f"in {delta} days ({due.isoformat()})"


def reminder_message(bills: list[Bill], today: date) -> str:
    if len(bills) == 1:
        bill = bills[0]
        return (
            f"Your {bill.utility_type.name} bill of ${bill.amount_cents / 100:.2f} "
            f"is due {_due_phrase(bill.due_date, today)}."
        )
    total = sum(bill.amount_cents for bill in bills) / 100
    parts = ", ".join(
        f"{bill.utility_type.name} {_due_phrase(bill.due_date, today)}"
        for bill in bills
    )
    return f"You have {len(bills)} unpaid bills (${total:.2f}) coming due: {parts}."


class AlertEngine:
    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or local_now

    # Threshold alerts

    def evaluate_thresholds(
        self, user_id: str, bill_id: int
    ) -> list[TriggeredThreshold]:
        try:
            bill = self.session.get(Bill, bill_id)
            if bill is None or bill.user_id != user_id:
                raise NotFoundError("Bill not found", code="BILL_NOT_FOUND")
            utility_type = self.session.get(UtilityType, bill.utility_type_id)
            if utility_type is None:
                raise NotFoundError(
                    "Utility type not found", code="UTILITY_TYPE_NOT_FOUND"
                )
            stmt = (
                select(Alert)
                .where(
                    Alert.user_id == user_id,
                    Alert.is_active.is_(True),
                    Alert.alert_type.in_(THRESHOLD_ALERT_TYPES),
                    or_(
                        Alert.utility_type_id == bill.utility_type_id,
                        Alert.utility_type_id.is_(None),
                    ),
                )
                .order_by(Alert.id)
            )
            alerts = list(self.session.scalars(stmt).all())
            utility_name = utility_type.name
            amount = bill.amount_cents / 100
            usage = bill.usage_amount
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Ledger store unavailable") from exc

        triggered: list[TriggeredThreshold] = []
        for alert in alerts:
            try:
                config = decode_configuration(alert.alert_type, alert.configuration)
                if alert.alert_type == AlertType.usage_threshold:
                    observed = usage
                else:
                    observed = amount
                if observed is None or not compare(
                    observed, config.threshold, config.comparison
                ):
                    continue
                title, message = threshold_message(
                    alert.alert_type, utility_name, observed, config
                )
                notification = self._fire(
                    alert, title, message, NotificationType.alert, self.clock()
                )
                self.session.commit()
            except OperationalError as exc:
                self.session.rollback()
                raise TransientStoreError("Ledger store unavailable") from exc
            except (BillsError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"threshold_check_failed: user_id={user_id} bill_id={bill_id} "
                    f"alert_id={alert.id}"
                )
                continue
            if notification is None:
                continue
            triggered.append(
                TriggeredThreshold(
                    alert_id=alert.id,
                    alert_type=alert.alert_type,
                    notification_title=title,
                    notification_id=notification.id,
                )
            )

        logger.info(
            f"threshold_check: user_id={user_id} bill_id={bill_id} "
            f"alerts={len(alerts)} triggered={len(triggered)}"
        )
        return triggered

    def evaluate_new_bills(
        self, user_id: str, bill_ids: list[int]
    ) -> list[TriggeredThreshold]:
        """Run threshold checks for freshly created bills, one bill at a time.

        A bill that cannot be evaluated is logged and skipped so the others
        still get checked. Store outages propagate.
        """
        triggered: list[TriggeredThreshold] = []
        for bill_id in bill_ids:
            try:
                triggered.extend(self.evaluate_thresholds(user_id, bill_id))
            except TransientStoreError:
                raise
            except (BillsError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"threshold_hook_failed: user_id={user_id} bill_id={bill_id}"
                )
        return triggered

    # Daily alerts

    def check_promotions(
        self, user_id: str, today: Optional[date] = None
    ) -> list[TriggeredPromotion]:
        now = self.clock()
        today = today or now.date()
        stamp = datetime.combine(today, now.time())
        alerts = self._active_alerts(user_id, AlertType.promotion_end)

        triggered: list[TriggeredPromotion] = []
        for alert in alerts:
            try:
                config = decode_configuration(alert.alert_type, alert.configuration)
                remaining = days_until(config.end_date, today)
                if not 0 <= remaining <= config.days_before:
                    continue
                if self._triggered_on(alert, today):
                    continue
                if not self._claim_day(alert, today, stamp, deactivate=remaining <= 0):
                    continue
                notification = self._insert_notification(
                    alert,
                    "Promotion Ending Soon",
                    promotion_message(config, remaining),
                    NotificationType.warning,
                    stamp,
                )
                self.session.commit()
            except OperationalError as exc:
                self.session.rollback()
                raise TransientStoreError("Ledger store unavailable") from exc
            except (BillsError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"promotion_check_failed: user_id={user_id} alert_id={alert.id}"
                )
                continue
            triggered.append(
                TriggeredPromotion(
                    alert_id=alert.id,
                    promotion_name=config.promotion_name,
                    days_until_end=remaining,
                    notification_id=notification.id,
                )
            )

        logger.info(
            f"promotion_check: user_id={user_id} today={today.isoformat()} "
            f"alerts={len(alerts)} triggered={len(triggered)}"
        )
        return triggered

    def check_bill_reminders(
        self, user_id: str, today: Optional[date] = None
    ) -> list[TriggeredReminder]:
        now = self.clock()
        today = today or now.date()
        stamp = datetime.combine(today, now.time())
        alerts = self._active_alerts(user_id, AlertType.bill_reminder)

        triggered: list[TriggeredReminder] = []
        for alert in alerts:
            try:
                config: BillReminderConfig = decode_configuration(
                    alert.alert_type, alert.configuration
                )
                if self._triggered_on(alert, today):
                    continue
                bills = self._bills_coming_due(
                    user_id, alert, today, config.days_before
                )
                if not bills:
                    continue
                if not self._claim_day(alert, today, stamp):
                    continue
                notification = self._insert_notification(
                    alert,
                    "Bill Reminder",
                    reminder_message(bills, today),
                    NotificationType.info,
                    stamp,
                )
                self.session.commit()
            except OperationalError as exc:
                self.session.rollback()
                raise TransientStoreError("Ledger store unavailable") from exc
            except (BillsError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"reminder_check_failed: user_id={user_id} alert_id={alert.id}"
                )
                continue
            triggered.append(
                TriggeredReminder(
                    alert_id=alert.id,
                    bill_count=len(bills),
                    notification_id=notification.id,
                )
            )

        logger.info(
            f"reminder_check: user_id={user_id} today={today.isoformat()} "
            f"alerts={len(alerts)} triggered={len(triggered)}"
        )
        return triggered

    # Helpers

    def _active_alerts(self, user_id: str, alert_type: AlertType) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(
                Alert.user_id == user_id,
                Alert.is_active.is_(True),
                Alert.alert_type == alert_type,
            )
            .order_by(Alert.id)
        )
        try:
            alerts = list(self.session.scalars(stmt).all())
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Ledger store unavailable") from exc
        return alerts

    def _bills_coming_due(
        self, user_id: str, alert: Alert, today: date, days_before: int
    ) -> list[Bill]:
        stmt = (
            select(Bill)
            .where(
                Bill.user_id == user_id,
                Bill.payment_status == PaymentStatus.need_payment,
                Bill.due_date.is_not(None),
                Bill.due_date >= today,
                Bill.due_date <= today + timedelta(days=days_before),
            )
            .order_by(Bill.due_date, Bill.id)
        )
        if alert.utility_type_id is not None:
            stmt = stmt.where(Bill.utility_type_id == alert.utility_type_id)
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _triggered_on(alert: Alert, today: date) -> bool:
        return alert.last_triggered is not None and alert.last_triggered.date() == today

    def _claim_day(
        self, alert: Alert, today: date, stamp: datetime, deactivate: bool = False
    ) -> bool:
        day_start = datetime.combine(today, time.min)
        next_day = day_start + timedelta(days=1)
        values: dict[str, object] = {"last_triggered": stamp}
        if deactivate:
            values["is_active"] = False
        stmt = (
            update(Alert)
            .where(
                Alert.id == alert.id,
                Alert.is_active.is_(True),
                or_(
                    Alert.last_triggered.is_(None),
                    Alert.last_triggered < day_start,
                    Alert.last_triggered >= next_day,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            return False
        self.session.expire(alert, ["last_triggered", "is_active"])
        return True

    def _fire(
        self,
        alert: Alert,
        title: str,
        message: str,
        notification_type: NotificationType,
        now: datetime,
    ) -> Optional[Notification]:
        stmt = (
            update(Alert)
            .where(Alert.id == alert.id, Alert.is_active.is_(True))
            .values(last_triggered=now)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            return None
        self.session.expire(alert, ["last_triggered"])
        return self._insert_notification(alert, title, message, notification_type, now)

    def _insert_notification(
        self,
        alert: Alert,
        title: str,
        message: str,
        notification_type: NotificationType,
        now: datetime,
    ) -> Notification:
        notification = Notification(
            user_id=alert.user_id,
            alert_id=alert.id,
            title=title,
            message=message,
            type=notification_type,
            is_read=False,
            created_at=now,
        )
        self.session.add(notification)
        self.session.flush()
        return notification
