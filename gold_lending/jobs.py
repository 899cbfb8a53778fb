"""
Batch Job Execution Module

Tracks every run of a scheduled job as a CronJobExecution record and
guarantees at most one running execution per job name. The per-name lock is
a row inserted with an atomic insert-if-absent, so two concurrent starts
cannot both pass the check.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .exceptions import (
    JobAlreadyRunningError, NotFoundError, StateConflictError, ValidationError
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("gold_lending.jobs")


class JobName(Enum):
    """Scheduled jobs known to the engine"""
    GOLD_RETURN_REMINDERS = "gold_return_reminders"
    ADMIN_NOTIFICATIONS = "admin_notifications"
    INTEREST_RATE_UPGRADES = "interest_rate_upgrades"
    PAYMENT_REMINDERS = "payment_reminders"


class ExecutionType(Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class JobStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class JobResult:
    """Counters a job reports back when it finishes"""
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def record(self, success: bool) -> None:
        self.records_processed += 1
        if success:
            self.records_successful += 1
        else:
            self.records_failed += 1

    def merge(self, other: 'JobResult', key: Optional[str] = None) -> 'JobResult':
        """Fold another result's counters into this one"""
        self.records_processed += other.records_processed
        self.records_successful += other.records_successful
        self.records_failed += other.records_failed
        if key:
            self.details[key] = other.details
        else:
            self.details.update(other.details)
        return self


@dataclass
class CronJobExecution(StorageRecord):
    """One run of a scheduled job"""
    job_name: JobName
    execution_type: ExecutionType
    status: JobStatus
    start_time: datetime
    executed_by: Optional[str] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == JobStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'job_name': self.job_name.value,
            'execution_type': self.execution_type.value,
            'status': self.status.value,
            'start_time': self.start_time.isoformat(),
            'executed_by': self.executed_by,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_ms': self.duration_ms,
            'records_processed': self.records_processed,
            'records_successful': self.records_successful,
            'records_failed': self.records_failed,
            'error_message': self.error_message,
            'error_stack': self.error_stack,
            'details': self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CronJobExecution':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            job_name=JobName(data['job_name']),
            execution_type=ExecutionType(data['execution_type']),
            status=JobStatus(data['status']),
            start_time=datetime.fromisoformat(data['start_time']),
            executed_by=data.get('executed_by'),
            end_time=datetime.fromisoformat(data['end_time']) if data.get('end_time') else None,
            duration_ms=data.get('duration_ms'),
            records_processed=data.get('records_processed', 0),
            records_successful=data.get('records_successful', 0),
            records_failed=data.get('records_failed', 0),
            error_message=data.get('error_message'),
            error_stack=data.get('error_stack'),
            details=data.get('details') or {},
        )


def _parse_job_name(job_name: Union[JobName, str]) -> JobName:
    if isinstance(job_name, JobName):
        return job_name
    try:
        return JobName(job_name)
    except ValueError:
        raise ValidationError(
            f"Unknown job: {job_name}",
            {"allowed": [j.value for j in JobName]}
        )


class JobExecutionGuard:
    """
    Mutual exclusion and history for scheduled jobs
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.executions_table = "cron_job_executions"
        self.locks_table = "cron_job_locks"

    def start(
        self,
        job_name: Union[JobName, str],
        execution_type: ExecutionType = ExecutionType.MANUAL,
        executed_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CronJobExecution:
        """
        Begin a run of a job

        Raises:
            JobAlreadyRunningError: If another run of the same job is in progress
        """
        job_name = _parse_job_name(job_name)
        now = now or datetime.now(timezone.utc)
        execution_id = str(uuid.uuid4())

        acquired = self.storage.insert_if_absent(self.locks_table, job_name.value, {
            'id': job_name.value,
            'execution_id': execution_id,
            'started_at': now.isoformat(),
        })
        if not acquired:
            holder = self.storage.load(self.locks_table, job_name.value) or {}
            logger.warning(f"Rejected start of {job_name.value}: already running")
            raise JobAlreadyRunningError(job_name.value, holder.get('started_at'))

        execution = CronJobExecution(
            id=execution_id,
            created_at=now,
            updated_at=now,
            job_name=job_name,
            execution_type=execution_type,
            status=JobStatus.RUNNING,
            start_time=now,
            executed_by=executed_by,
        )
        try:
            self._save_execution(execution)
        except Exception:
            self.storage.delete(self.locks_table, job_name.value)
            raise

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.JOB_STARTED,
                "cron_job_execution",
                execution.id,
                {'job_name': job_name.value, 'execution_type': execution_type.value},
                user_id=executed_by
            )

        log_action(
            logger, "info", f"Job {job_name.value} started",
            user_id=executed_by, action="job_started", resource=execution.id
        )
        return execution

    def complete(
        self,
        execution_id: str,
        status: JobStatus,
        result: Optional[JobResult] = None,
        error: Optional[BaseException] = None,
        now: Optional[datetime] = None
    ) -> CronJobExecution:
        """
        Finish a run, exactly once, and release the job lock

        Raises:
            NotFoundError: If the execution id is unknown
            StateConflictError: If the execution has already completed
        """
        if status == JobStatus.RUNNING:
            raise ValidationError("A job can only complete as success or failed")

        with self.storage.lock(self.executions_table, execution_id):
            execution = self.get_execution(execution_id)
            if not execution.is_running:
                raise StateConflictError(
                    f"Job execution {execution_id} has already completed",
                    {"execution_id": execution_id, "status": execution.status.value}
                )

            now = now or datetime.now(timezone.utc)
            execution.status = status
            execution.end_time = now
            execution.updated_at = now
            execution.duration_ms = max(0, int((now - execution.start_time) / timedelta(milliseconds=1)))

            if result is not None:
                execution.records_processed = result.records_processed
                execution.records_successful = result.records_successful
                execution.records_failed = result.records_failed
                execution.details = dict(result.details)

            if error is not None:
                execution.error_message = str(error)
                execution.error_stack = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )

            self._save_execution(execution)
            self._release_lock(execution)

        if self.audit_trail:
            event_type = (
                AuditEventType.JOB_COMPLETED if status == JobStatus.SUCCESS
                else AuditEventType.JOB_FAILED
            )
            self.audit_trail.log_event(
                event_type,
                "cron_job_execution",
                execution.id,
                {
                    'job_name': execution.job_name.value,
                    'records_processed': execution.records_processed,
                    'records_failed': execution.records_failed,
                    'duration_ms': execution.duration_ms,
                    'error_message': execution.error_message,
                },
                user_id=execution.executed_by
            )

        log_action(
            logger,
            "info" if status == JobStatus.SUCCESS else "error",
            f"Job {execution.job_name.value} finished with status {status.value}",
            user_id=execution.executed_by,
            action="job_completed",
            resource=execution.id,
            extra={
                'duration_ms': execution.duration_ms,
                'records_processed': execution.records_processed,
                'records_successful': execution.records_successful,
                'records_failed': execution.records_failed,
            }
        )
        return execution

    def run(
        self,
        job_name: Union[JobName, str],
        job_fn: Callable[[], Optional[JobResult]],
        execution_type: ExecutionType = ExecutionType.MANUAL,
        executed_by: Optional[str] = None
    ) -> CronJobExecution:
        """
        Start, execute and complete a job

        Any exception raised by the job marks the run failed; the execution
        never stays running. An interrupt or system exit is recorded as a
        failure and then re-raised. A rejected start still raises.
        """
        execution = self.start(job_name, execution_type, executed_by)
        try:
            result = job_fn()
        except Exception as e:
            logger.exception(f"Job {execution.job_name.value} failed: {e}")
            return self.complete(execution.id, JobStatus.FAILED, error=e)
        except BaseException as e:
            logger.error(f"Job {execution.job_name.value} interrupted: {e!r}")
            self.complete(execution.id, JobStatus.FAILED, error=e)
            raise
        return self.complete(execution.id, JobStatus.SUCCESS, result=result or JobResult())

    def get_execution(self, execution_id: str) -> CronJobExecution:
        data = self.storage.load(self.executions_table, execution_id)
        if data is None:
            raise NotFoundError("job execution", execution_id)
        return CronJobExecution.from_dict(data)

    def is_running(self, job_name: Union[JobName, str]) -> bool:
        return self.storage.exists(self.locks_table, _parse_job_name(job_name).value)

    def get_history(
        self,
        job_name: Optional[Union[JobName, str]] = None,
        limit: int = 5
    ) -> List[CronJobExecution]:
        """Most recent executions first"""
        filters = {'job_name': _parse_job_name(job_name).value} if job_name else {}
        executions = [
            CronJobExecution.from_dict(data)
            for data in self.storage.find(self.executions_table, filters)
        ]
        executions.sort(key=lambda e: e.start_time, reverse=True)
        return executions[:limit] if limit else executions

    def get_stats(
        self,
        job_name: Optional[Union[JobName, str]] = None,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Per-job aggregates over the last `days` days

        Returns:
            One entry per job name, most recently run first
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=days)

        groups: Dict[str, List[CronJobExecution]] = {}
        for execution in self.get_history(job_name, limit=0):
            if execution.start_time >= since:
                groups.setdefault(execution.job_name.value, []).append(execution)

        stats = []
        for name, executions in groups.items():
            durations = [e.duration_ms for e in executions if e.duration_ms is not None]
            stats.append({
                'job_name': name,
                'total_executions': len(executions),
                'successful_executions': sum(1 for e in executions if e.status == JobStatus.SUCCESS),
                'failed_executions': sum(1 for e in executions if e.status == JobStatus.FAILED),
                'running_executions': sum(1 for e in executions if e.is_running),
                'average_duration_ms': sum(durations) / len(durations) if durations else None,
                'total_records_processed': sum(e.records_processed for e in executions),
                'last_execution': max(e.start_time for e in executions),
            })
        stats.sort(key=lambda s: s['last_execution'], reverse=True)
        return stats

    def _release_lock(self, execution: CronJobExecution) -> None:
        holder = self.storage.load(self.locks_table, execution.job_name.value)
        if holder and holder.get('execution_id') == execution.id:
            self.storage.delete(self.locks_table, execution.job_name.value)

    def _save_execution(self, execution: CronJobExecution) -> None:
        self.storage.save(self.executions_table, execution.id, execution.to_dict())
