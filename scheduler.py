import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from alerting import AlertEngine
from config import get_settings
from database import session_scope
from errors import TransientStoreError
from recurrence import RecurringBillEngine
from services import users_with_scheduled_work


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def sweep_user(session, user_id: str) -> dict[str, int]:
    created = RecurringBillEngine(session).materialize_due_bills(user_id)
    alerts = AlertEngine(session)
    thresholds = alerts.evaluate_new_bills(
        user_id, [generated.bill_id for generated in created.created]
    )
    promotions = alerts.check_promotions(user_id)
    reminders = alerts.check_bill_reminders(user_id)
    return {
        "bills_created": created.created_count,
        "thresholds": len(thresholds),
        "promotions": len(promotions),
        "reminders": len(reminders),
    }


class SchedulerManager:
    """Optional safety-net sweep; client calls remain the primary trigger."""

    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.interval_minutes = settings.scheduler_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            user_ids = users_with_scheduled_work(session)
        for user_id in user_ids:
            try:
                with session_scope() as session:
                    stats = sweep_user(session, user_id)
            except TransientStoreError:
                logger.warning(f"scheduler_run: source={source} store unavailable")
                return
            logger.info(
                f"scheduler_run: source={source} user_id={user_id} "
                f"bills_created={stats['bills_created']} "
                f"thresholds={stats['thresholds']} promotions={stats['promotions']} "
                f"reminders={stats['reminders']}"
            )

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled; relying on client-triggered checks")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval_safety_net"],
            id="bills_sweep",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.interval_minutes} minute safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
