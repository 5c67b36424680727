import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import recalculate_all_balances


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope() as session:
                drifted = recalculate_all_balances(session)
        except Exception:
            logger.exception(f"scheduler_run_failed: source={source}")
            raise
        logger.info(f"scheduler_run: source={source} accounts_repaired={len(drifted)}")
        return len(drifted)

    def start(self) -> None:
        self._run_job("startup")

        hour = self.settings.repair_hour
        minute = self.settings.repair_minute
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=hour, minute=minute),
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="balance_repair_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily balance repair at {hour:02d}:{minute:02d}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
