import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from ocr import ReceiptStorage
from services import ExpenseService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ORPHAN_RECEIPT_AGE = timedelta(hours=24)


def purge_orphan_receipts(storage: ReceiptStorage) -> int:
    with session_scope() as session:
        # The lookup spans every user; the owner id is irrelevant here.
        referenced = ExpenseService(session, 0).referenced_receipts()
    return storage.purge_orphans(referenced, older_than=ORPHAN_RECEIPT_AGE)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.storage = ReceiptStorage(settings=settings)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        removed = purge_orphan_receipts(self.storage)
        logger.info(f"scheduler_run: source={source} receipts_purged={removed}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=30)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:30"],
            id="receipt_purge_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=6)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["six_hourly"],
            id="receipt_purge_interval",
            replace_existing=True,
            misfire_grace_time=600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:30 and six-hourly receipt purge")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
