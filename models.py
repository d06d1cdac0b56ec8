from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PaymentStatus(str, Enum):
    need_payment = "need_payment"
    paid = "paid"
    auto_pay = "auto_pay"


class BillOrigin(str, Enum):
    manual = "manual"
    recurring = "recurring"


class AlertType(str, Enum):
    bill_reminder = "bill_reminder"
    usage_threshold = "usage_threshold"
    cost_threshold = "cost_threshold"
    promotion_end = "promotion_end"


class NotificationType(str, Enum):
    info = "info"
    warning = "warning"
    alert = "alert"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class UtilityType(Base, TimestampMixin):
    __tablename__ = "utility_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL owner marks a shared system type.
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    unit: Mapped[Optional[str]] = mapped_column(String(50))

    bills: Mapped[list["Bill"]] = relationship("Bill", back_populates="utility_type")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_utility_type_user_name"),
    )

    @property
    def is_system_type(self) -> bool:
        return self.user_id is None


class Bill(Base, TimestampMixin):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    utility_type_id: Mapped[int] = mapped_column(
        ForeignKey("utility_types.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    bill_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    usage_amount: Mapped[Optional[float]] = mapped_column(Float)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.need_payment
    )
    origin: Mapped[BillOrigin] = mapped_column(
        SAEnum(BillOrigin), nullable=False, default=BillOrigin.manual
    )
    recurring_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_bills.id", ondelete="SET NULL")
    )
    period: Mapped[Optional[str]] = mapped_column(String(7))

    utility_type: Mapped["UtilityType"] = relationship(
        "UtilityType", back_populates="bills"
    )
    recurring_bill: Mapped[Optional["RecurringBill"]] = relationship(
        "RecurringBill", back_populates="bills"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_bill_id", "period", name="uq_bill_recurring_period"
        ),
        Index("ix_bills_user_date", "user_id", "bill_date"),
        Index("ix_bills_user_type_date", "user_id", "utility_type_id", "bill_date"),
        CheckConstraint("amount_cents > 0", name="ck_bills_amount_positive"),
    )


class RecurringBill(Base, TimestampMixin):
    __tablename__ = "recurring_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    utility_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("utility_types.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # "YYYY-MM"; string order matches calendar order.
    last_generated_period: Mapped[Optional[str]] = mapped_column(String(7))

    utility_type: Mapped[Optional["UtilityType"]] = relationship("UtilityType")
    bills: Mapped[list["Bill"]] = relationship("Bill", back_populates="recurring_bill")

    __table_args__ = (
        CheckConstraint(
            "day_of_month >= 1 AND day_of_month <= 28",
            name="ck_recurring_day_of_month",
        ),
        CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
        Index("ix_recurring_user_active", "user_id", "is_active"),
    )


class Alert(Base, TimestampMixin):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(SAEnum(AlertType), nullable=False)
    utility_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("utility_types.id", ondelete="CASCADE")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    configuration: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_triggered: Mapped[Optional[datetime]] = mapped_column(DateTime)

    utility_type: Mapped[Optional["UtilityType"]] = relationship("UtilityType")

    __table_args__ = (
        Index("ix_alerts_user_type_active", "user_id", "alert_type", "is_active"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("alerts.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType), nullable=False, default=NotificationType.info
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
