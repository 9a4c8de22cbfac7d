import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from periods import previous_month_key
from services import generate_reports_for_all


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual", month_key: Optional[str] = None) -> int:
        month_key = month_key or previous_month_key()
        logger.info(f"scheduler_run: source={source} month={month_key}")
        with session_scope() as session:
            written = generate_reports_for_all(session, month_key)
        logger.info(
            f"scheduler_run: source={source} month={month_key} reports_written={written}"
        )
        return written

    def start(self) -> None:
        trigger = CronTrigger(day=1, hour=0, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly_snapshot"],
            id="reports_monthly",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly report snapshot on day 1 at 00:15")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
