import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from date_ranges import RangePreset, resolve
from models import CurrencyCode
from services import ReportService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def generate_last_month_reports(
    session: Session, now: datetime, source: str = "manual"
) -> int:
    """Create missing draft reports for the last complete month. Returns how many were created."""
    window = resolve(RangePreset.last_month, now)
    bucket = window.buckets[0]
    service = ReportService(session)
    created = 0
    for currency in CurrencyCode:
        if service.exists(bucket.year, bucket.month, currency):
            status = "exists"
        else:
            service.generate(bucket.year, bucket.month, currency)
            created += 1
            status = "created"
        logger.info(
            f"report_job: source={source} year={bucket.year} month={bucket.month} "
            f"currency={currency.value} status={status}"
        )
    return created


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=timezone.utc)

    def _run_job(self, source: str = "manual", now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = generate_last_month_reports(session, now, source)
            logger.info(f"scheduler_run: source={source} reports_created={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=self.settings.report_hour, minute=0)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly"],
            id="monthly_report",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="monthly_report_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with monthly report at day 1 "
            f"{self.settings.report_hour:02d}:00 UTC and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
