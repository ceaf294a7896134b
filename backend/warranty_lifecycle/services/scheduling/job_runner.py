"""
Job Runner

Wires the reminder scheduler sweeps to PeriodicTasks.

Each run opens its own database session, reads configuration from it, runs one
sweep and records the outcome in scheduler_job_runs. Intervals come from the
CRON_JOBS configuration category.
"""
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import SchedulerJobRunDB
from ..config.system_config import (
    ConfigurationProvider, SystemConfigService, CRON_JOBS, AUDIT,
)
from ..lifecycle.errors import RecordNotFoundError
from ..notifications.gateway import NotificationGateway, get_notification_gateway
from .clock import SystemClock
from .periodic import PeriodicTask
from .reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


# job name -> (config category, interval key, ReminderScheduler method)
JOB_DEFINITIONS = {
    "reminder_dispatch": (CRON_JOBS, "REMINDER_PROCESSING_INTERVAL_MINUTES", "run_reminder_dispatch"),
    "grace_period": (CRON_JOBS, "GRACE_PERIOD_PROCESSING_INTERVAL_MINUTES", "run_grace_period_sweep"),
    "status_reconciliation": (CRON_JOBS, "STATUS_RECONCILIATION_INTERVAL_MINUTES", "run_status_reconciliation"),
    "activation_reminders": (CRON_JOBS, "ACTIVATION_REMINDER_INTERVAL_MINUTES", "run_activation_reminders"),
    "token_cleanup": (CRON_JOBS, "TOKEN_CLEANUP_INTERVAL_MINUTES", "run_token_cleanup"),
    "audit_archival": (AUDIT, "ARCHIVAL_INTERVAL_MINUTES", "run_audit_archival"),
}

# Upper bound of the first-run jitter, as a fraction of the interval
JITTER_FRACTION = 0.1
MAX_JITTER_SECONDS = 300


class JobRunner:
    """Owns one PeriodicTask per sweep."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config_factory: Callable[[Session], ConfigurationProvider] = SystemConfigService,
        gateway: Optional[NotificationGateway] = None,
        clock=None,
        sleep=None,
    ):
        self.session_factory = session_factory
        self.config_factory = config_factory
        self.gateway = gateway or get_notification_gateway()
        self.clock = clock or SystemClock()
        self._sleep = sleep
        self.tasks: Dict[str, PeriodicTask] = {}
        self._build_tasks()

    def _build_tasks(self) -> None:
        db = self.session_factory()
        try:
            config = self.config_factory(db)
            for name, (category, key, _) in JOB_DEFINITIONS.items():
                interval = config.get_int(category, key) * 60
                self.tasks[name] = PeriodicTask(
                    name,
                    self._make_runner(name),
                    interval_seconds=interval,
                    jitter_seconds=min(interval * JITTER_FRACTION, MAX_JITTER_SECONDS),
                    clock=self.clock,
                    sleep=self._sleep,
                )
        finally:
            db.close()

    def _make_runner(self, name: str) -> Callable[[str], Dict[str, Any]]:
        def runner(trigger: str) -> Dict[str, Any]:
            return self.execute(name, trigger)
        return runner

    def auto_start_enabled(self) -> bool:
        db = self.session_factory()
        try:
            return self.config_factory(db).get_bool(CRON_JOBS, "AUTO_START_CRON_JOBS")
        finally:
            db.close()

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute(self, name: str, trigger: str = "manual") -> Dict[str, Any]:
        """
        Run one sweep synchronously in a fresh session and log the run.
        Called from a worker thread by PeriodicTask.
        """
        if name not in JOB_DEFINITIONS:
            raise RecordNotFoundError(f"Unknown job: {name}")
        method_name = JOB_DEFINITIONS[name][2]

        db = self.session_factory()
        run = SchedulerJobRunDB(
            id=str(uuid4()),
            job_name=name,
            trigger=trigger,
            started_at=self.clock.now(),
            status="running",
        )
        try:
            db.add(run)
            db.commit()

            config = self.config_factory(db)
            scheduler = ReminderScheduler(db, config, self.clock, self.gateway)
            result = getattr(scheduler, method_name)()

            run.status = "completed"
            run.result = result
            run.finished_at = self.clock.now()
            db.commit()
            return result
        except Exception as e:
            db.rollback()
            run.status = "failed"
            run.error_message = str(e)
            run.finished_at = self.clock.now()
            db.add(run)
            db.commit()
            raise
        finally:
            db.close()

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def start_all(self) -> None:
        for task in self.tasks.values():
            await task.start()
        logger.info(f"Started {len(self.tasks)} scheduler jobs")

    async def stop_all(self) -> None:
        for task in self.tasks.values():
            await task.stop()
        logger.info("Scheduler jobs stopped")

    async def trigger(self, name: str) -> Optional[Dict[str, Any]]:
        """Run a job now, outside its schedule."""
        task = self.tasks.get(name)
        if task is None:
            raise RecordNotFoundError(f"Unknown job: {name}")
        logger.info(f"Manual trigger of {name}")
        return await task.run_once(trigger="manual")

    def get_status(self) -> Dict[str, Any]:
        return {name: task.get_status() for name, task in self.tasks.items()}

    def get_recent_runs(self, limit: int = 20, job_name: Optional[str] = None) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(SchedulerJobRunDB)
            if job_name:
                query = query.filter(SchedulerJobRunDB.job_name == job_name)
            runs = query.order_by(SchedulerJobRunDB.started_at.desc()).limit(limit).all()
            return [
                {
                    "id": r.id,
                    "job_name": r.job_name,
                    "trigger": r.trigger,
                    "status": r.status,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "error_message": r.error_message,
                }
                for r in runs
            ]
        finally:
            db.close()


# Global instance
_job_runner: Optional[JobRunner] = None


def get_job_runner() -> Optional[JobRunner]:
    return _job_runner


def set_job_runner(runner: Optional[JobRunner]) -> None:
    global _job_runner
    _job_runner = runner
