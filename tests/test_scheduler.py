from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.blocking import BlockingScheduler

from holder_drop.errors import ConfigurationError, NetworkError
from holder_drop.models import DistributionMode
from holder_drop.scheduler import DistributionScheduler, cron_for
from holder_drop.service import DistributionService


def test_cron_for_named_schedules():
    assert cron_for("weekly") == "0 12 * * 1"
    assert cron_for("monthly") == "0 12 1 * *"
    assert cron_for("manual", "*/5 * * * *") == "*/5 * * * *"
    with pytest.raises(ConfigurationError):
        cron_for("manual")


def test_job_runs_full_pipeline():
    service = MagicMock(spec=DistributionService)
    scheduler = DistributionScheduler(service, Decimal("10"), DistributionMode.EQUAL)

    record = scheduler.run_job()

    service.collect.assert_called_once_with(use_cache=False)
    service.prepare.assert_called_once_with(service.collect.return_value, Decimal("10"), DistributionMode.EQUAL)
    service.execute.assert_called_once_with(service.prepare.return_value)
    assert record is service.execute.return_value


def test_job_failure_is_reported():
    service = MagicMock(spec=DistributionService)
    service.notifier = MagicMock()
    service.collect.side_effect = NetworkError("rpc down")
    scheduler = DistributionScheduler(service, Decimal("10"), DistributionMode.EQUAL)

    assert scheduler.run_job() is None
    service.notifier.notify_failure.assert_called_once()
    service.execute.assert_not_called()


def test_add_job_registers_cron():
    scheduler = DistributionScheduler(MagicMock(spec=DistributionService), Decimal("1"),
                                      DistributionMode.PROPORTIONAL, scheduler=BlockingScheduler(timezone="UTC"))
    scheduler.add_job("0 12 * * 1")
    jobs = scheduler.scheduler.get_jobs()
    assert len(jobs) == 1
    assert jobs[0].name == "DistributionScheduler_job"
