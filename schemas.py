from datetime import date
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from errors import ValidationError
from models import AlertType, PaymentStatus


class Comparison(str, Enum):
    greater_than = "greater_than"
    less_than = "less_than"
    equals = "equals"


class TrendGrouping(str, Enum):
    month = "month"
    quarter = "quarter"
    year = "year"


class UtilityTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    unit: Optional[str] = Field(default=None, max_length=50)


class BillIn(BaseModel):
    utility_type_id: int
    amount_cents: int = Field(..., gt=0)
    bill_date: date
    due_date: Optional[date] = None
    usage_amount: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.need_payment


class BillUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    utility_type_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    bill_date: Optional[date] = None
    due_date: Optional[date] = None
    usage_amount: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None


class RecurringBillIn(BaseModel):
    utility_type_id: int
    amount_cents: int = Field(..., gt=0)
    day_of_month: int = Field(..., ge=1, le=28)
    notes: Optional[str] = None
    is_active: bool = True


class BillReminderConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    days_before: int = Field(default=3, ge=0, le=365)


class ThresholdConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    threshold: float
    comparison: Comparison = Comparison.greater_than
    unit: Optional[str] = Field(default=None, max_length=50)


class PromotionEndConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    end_date: date
    promotion_name: str = Field(default="Your promotion", min_length=1, max_length=255)
    utility_name: str = Field(default="utility", min_length=1, max_length=255)
    days_before: int = Field(
        default_factory=lambda: get_settings().promotion_days_before, ge=0, le=365
    )


AlertConfig = Union[BillReminderConfig, ThresholdConfig, PromotionEndConfig]

CONFIG_MODELS: dict[AlertType, type[BaseModel]] = {
    AlertType.bill_reminder: BillReminderConfig,
    AlertType.usage_threshold: ThresholdConfig,
    AlertType.cost_threshold: ThresholdConfig,
    AlertType.promotion_end: PromotionEndConfig,
}


class AlertIn(BaseModel):
    alert_type: AlertType
    utility_type_id: Optional[int] = None
    configuration: dict = Field(default_factory=dict)


class AlertUpdate(BaseModel):
    configuration: Optional[dict] = None
    is_active: Optional[bool] = None


class CheckThresholdsIn(BaseModel):
    bill_id: int


def decode_configuration(alert_type: AlertType, raw: Optional[dict]) -> AlertConfig:
    model = CONFIG_MODELS[alert_type]
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ())) or "configuration"
        raise ValidationError(
            f"Invalid {alert_type.value} configuration: {where}: {first['msg']}"
        ) from exc
