import logging
from decimal import Decimal
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .errors import ConfigurationError, HolderDropError
from .models import DistributionMode
from .service import DistributionService

# Monday 12:00 UTC / first of the month 12:00 UTC
SCHEDULE_CRONS = {
    "weekly": "0 12 * * 1",
    "monthly": "0 12 1 * *",
}


def cron_for(schedule: str, cron_expression: Optional[str] = None) -> str:
    if cron_expression:
        return cron_expression
    if schedule not in SCHEDULE_CRONS:
        raise ConfigurationError(
            f"Schedule {schedule!r} has no cron; use weekly, monthly or an explicit cron expression"
        )
    return SCHEDULE_CRONS[schedule]


class DistributionScheduler:
    """Runs collect, allocate and execute on a cron schedule"""

    def __init__(self, service: DistributionService, total_amount: Decimal, mode: DistributionMode,
                 scheduler: Optional[BlockingScheduler] = None):
        self.service = service
        self.total_amount = total_amount
        self.mode = mode
        self.scheduler = scheduler or BlockingScheduler(timezone="UTC")
        self.logger = logging.getLogger(__name__)

    def run_job(self):
        """One scheduled distribution; failures are logged and reported, never raised"""
        self.logger.info(f"Scheduled distribution of {self.total_amount} ({self.mode.value}) starting")
        try:
            snapshot = self.service.collect(use_cache=False)
            request = self.service.prepare(snapshot, self.total_amount, self.mode)
            record = self.service.execute(request)
        except HolderDropError as e:
            self.logger.error(f"Scheduled distribution failed: {e}")
            self.service.notifier.notify_failure("Scheduled distribution failed", e)
            return None
        self.logger.info(f"Scheduled distribution {record.request.id} finished")
        return record

    def add_job(self, cron_expression: str) -> None:
        self.scheduler.add_job(
            self.run_job,
            CronTrigger.from_crontab(cron_expression, timezone="UTC"),
            name=f'{self.__class__.__name__}_job',
            max_instances=1,
        )

    def start(self, cron_expression: str):
        """Start the scheduler with the given cron expression; blocks"""
        self.add_job(cron_expression)
        try:
            self.logger.info(f"Starting scheduler with cron: {cron_expression}")
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            self.scheduler.shutdown()
