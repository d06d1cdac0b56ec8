import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import DependencyError, TransientStoreError
from models import Bill, BillOrigin, PaymentStatus, RecurringBill, UtilityType
from periods import Clock, Period, is_period_behind, local_now, period_of


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedBill:
    recurring_id: int
    bill_id: int
    utility_type_name: str
    amount_cents: int
    bill_date: date


@dataclass
class MaterializeResult:
    period: Period
    created: list[GeneratedBill] = field(default_factory=list)
    skipped: list[tuple[int, str]] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)


class RecurringBillEngine:
    """Turns due recurring templates into bills, at most once per template per month.

    Each template is claimed with a conditional UPDATE on
    ``last_generated_period`` and the bill is inserted in the same
    transaction, so concurrent or repeated calls for the same month cannot
    both generate. Every template commits on its own; a failing template is
    rolled back and skipped without touching the ones already committed.
    """

    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or local_now

    def due_template_ids(self, user_id: str, as_of: date) -> list[int]:
        period = period_of(as_of)
        stmt = (
            select(RecurringBill.id)
            .where(
                RecurringBill.user_id == user_id,
                RecurringBill.is_active.is_(True),
                or_(
                    RecurringBill.last_generated_period.is_(None),
                    RecurringBill.last_generated_period < period.key,
                ),
                RecurringBill.day_of_month <= as_of.day,
            )
            .order_by(RecurringBill.day_of_month, RecurringBill.id)
        )
        return list(self.session.scalars(stmt).all())

    def materialize_due_bills(
        self, user_id: str, as_of: Optional[date] = None
    ) -> MaterializeResult:
        as_of = as_of or self.clock().date()
        result = MaterializeResult(period=period_of(as_of))
        try:
            template_ids = self.due_template_ids(user_id, as_of)
            # Close the read transaction so each template gets its own.
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Ledger store unavailable") from exc

        for template_id in template_ids:
            try:
                generated = self._materialize_one(user_id, template_id, as_of)
                self.session.commit()
            except DependencyError as exc:
                self.session.rollback()
                logger.warning(
                    f"recurring_skip: user_id={user_id} recurring_id={template_id} "
                    f"reason={exc.message}"
                )
                result.skipped.append((template_id, exc.message))
                continue
            except OperationalError as exc:
                self.session.rollback()
                raise TransientStoreError("Ledger store unavailable") from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.exception(
                    f"recurring_failed: user_id={user_id} recurring_id={template_id}"
                )
                result.skipped.append((template_id, str(exc.__class__.__name__)))
                continue
            if generated is not None:
                result.created.append(generated)

        logger.info(
            f"recurring_process: user_id={user_id} period={result.period.key} "
            f"created={result.created_count} skipped={len(result.skipped)}"
        )
        return result

    def _materialize_one(
        self, user_id: str, template_id: int, as_of: date
    ) -> Optional[GeneratedBill]:
        period = period_of(as_of)
        template = self.session.get(RecurringBill, template_id)
        if template is None or template.user_id != user_id:
            return None
        if not is_period_behind(template.last_generated_period, period):
            return None
        utility_type = (
            self.session.get(UtilityType, template.utility_type_id)
            if template.utility_type_id is not None
            else None
        )
        if utility_type is None:
            raise DependencyError(
                f"Utility type for recurring bill {template_id} no longer exists",
                code="UTILITY_TYPE_NOT_FOUND",
            )

        claim = (
            update(RecurringBill)
            .where(
                RecurringBill.id == template_id,
                RecurringBill.user_id == user_id,
                RecurringBill.is_active.is_(True),
                or_(
                    RecurringBill.last_generated_period.is_(None),
                    RecurringBill.last_generated_period < period.key,
                ),
                RecurringBill.day_of_month <= as_of.day,
            )
            .values(last_generated_period=period.key)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(claim).rowcount != 1:
            # Another caller already generated this month.
            return None
        self.session.expire(template, ["last_generated_period"])

        bill = Bill(
            user_id=user_id,
            utility_type_id=utility_type.id,
            amount_cents=template.amount_cents,
            bill_date=period.day(template.day_of_month),
            notes=template.notes,
            payment_status=PaymentStatus.need_payment,
            origin=BillOrigin.recurring,
            recurring_bill_id=template.id,
            period=period.key,
        )
        self.session.add(bill)
        self.session.flush()
        return GeneratedBill(
            recurring_id=template.id,
            bill_id=bill.id,
            utility_type_name=utility_type.name,
            amount_cents=bill.amount_cents,
            bill_date=bill.bill_date,
        )
