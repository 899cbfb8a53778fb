"""
System Wiring Module

Builds the engine's components from one configuration object and runs the
scheduled jobs through the execution guard.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from .audit import AuditTrail
from .config import LendingConfig, get_config
from .exceptions import JobAlreadyRunningError
from .gold_returns import GoldReturnReminderService
from .jobs import CronJobExecution, ExecutionType, JobExecutionGuard, JobName, JobResult
from .loans import LoanManager
from .models import LoanStatus
from .notifications import NotificationService
from .providers import NotificationProvider, build_notification_provider
from .rate_upgrades import InterestRateUpgradeService
from .reminders import PaymentReminderService
from .storage import StorageInterface, create_storage


logger = logging.getLogger("gold_lending.system")


class LendingSystem:
    """
    All services sharing one storage backend, audit trail and provider
    """

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        provider: Optional[NotificationProvider] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.sqlite_path)
        self.audit_trail = AuditTrail(self.storage)
        self.provider = provider or build_notification_provider(self.config)

        self.notifications = NotificationService(self.storage, self.audit_trail, self.config)
        self.loans = LoanManager(
            self.storage, self.audit_trail, self.config, self.notifications, self.provider
        )
        self.jobs = JobExecutionGuard(self.storage, self.audit_trail)
        self.payment_reminders = PaymentReminderService(self.storage, self.provider, self.config)
        self.gold_return_reminders = GoldReturnReminderService(self.loans, self.provider, self.config)
        self.rate_upgrades = InterestRateUpgradeService(self.loans)

    def job_function(
        self,
        job_name: Union[JobName, str],
        now: Optional[datetime] = None
    ) -> Callable[[], JobResult]:
        """The callable the guard runs for a job"""
        job_name = JobName(job_name) if isinstance(job_name, str) else job_name
        functions: Dict[JobName, Callable[[], JobResult]] = {
            JobName.ADMIN_NOTIFICATIONS: lambda: self.notifications.generate_all(
                self.loans.list_loans(LoanStatus.ACTIVE), now
            ),
            JobName.PAYMENT_REMINDERS: lambda: self.payment_reminders.process(
                self.loans.list_loans(LoanStatus.ACTIVE), now
            ),
            JobName.GOLD_RETURN_REMINDERS: lambda: self.gold_return_reminders.process(now),
            JobName.INTEREST_RATE_UPGRADES: lambda: self.rate_upgrades.process(now),
        }
        return functions[job_name]

    def run_job(
        self,
        job_name: Union[JobName, str],
        execution_type: ExecutionType = ExecutionType.MANUAL,
        executed_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CronJobExecution:
        """
        Run one job under the guard

        Raises:
            JobAlreadyRunningError: If the job is already running
            ValidationError: If the job name is unknown
        """
        return self.jobs.run(
            job_name, self.job_function(job_name, now), execution_type, executed_by
        )

    def run_daily_jobs(
        self,
        executed_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[CronJobExecution]:
        """Run every job once as a scheduled execution; jobs already running are skipped"""
        executions = []
        for job_name in JobName:
            try:
                executions.append(self.run_job(job_name, ExecutionType.SCHEDULED, executed_by, now))
            except JobAlreadyRunningError as e:
                logger.warning(f"Skipping {job_name.value}: {e}")
        return executions

    def close(self) -> None:
        self.storage.close()
