"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Reminder dispatch, grace period expiry, status reconciliation, activation
reminders, token cleanup and audit archival.
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..services.config import SystemConfigService
from ..services.lifecycle import RecordNotFoundError
from ..services.scheduling.job_runner import JOB_DEFINITIONS, get_job_runner
from ..services.scheduling.reminder_scheduler import ReminderScheduler


router = APIRouter(prefix="/internal", tags=["scheduler"])


async def _run_job(name: str, db: Session) -> dict:
    """
    Run a sweep now.

    Goes through the job runner when one is active so the run is recorded.
    Otherwise the sweep runs on the request session in a worker thread, since
    sends are paced with a blocking sleep.
    """
    if name not in JOB_DEFINITIONS:
        raise RecordNotFoundError(f"Unknown job: {name}")

    runner = get_job_runner()
    if runner is not None:
        result = await runner.trigger(name)
        task = runner.tasks[name]
        return {"job": name, "success": result is not None, "result": result, "error": task.last_error}

    scheduler = ReminderScheduler(db, SystemConfigService(db))
    result = await asyncio.to_thread(getattr(scheduler, JOB_DEFINITIONS[name][2]))
    return {"job": name, "success": True, "result": result, "error": None}


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/reminders/dispatch", response_model=dict)
async def run_reminder_dispatch(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Send inspection reminders that are due.

    System-automatic - failed sends are retried on the next run.
    """
    return await _run_job("reminder_dispatch", db)


@router.post("/grace-period", response_model=dict)
async def run_grace_period_sweep(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Expire ACTIVE warranties whose grace period has ended.
    """
    return await _run_job("grace_period", db)


@router.post("/status-reconciliation", response_model=dict)
async def run_status_reconciliation(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    return await _run_job("status_reconciliation", db)


@router.post("/activation-reminders", response_model=dict)
async def run_activation_reminders(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Remind customers who have not accepted their warranty terms yet.
    """
    return await _run_job("activation_reminders", db)


@router.post("/token-cleanup", response_model=dict)
async def run_token_cleanup(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    return await _run_job("token_cleanup", db)


@router.post("/audit-archival", response_model=dict)
async def run_audit_archival(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    return await _run_job("audit_archival", db)


@router.post("/jobs/{job_name}/trigger", response_model=dict)
async def trigger_job(
    job_name: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Run any registered job by name."""
    return await _run_job(job_name, db)


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/jobs", response_model=dict)
async def get_job_status(
    _: bool = Depends(verify_internal_key),
):
    """
    Get the state of every periodic job.
    """
    runner = get_job_runner()
    if runner is None:
        return {"running": False, "jobs": {}}
    return {"running": True, "jobs": runner.get_status()}


@router.get("/jobs/runs", response_model=dict)
async def get_recent_job_runs(
    limit: int = 20,
    job_name: Optional[str] = None,
    _: bool = Depends(verify_internal_key),
):
    runner = get_job_runner()
    runs = runner.get_recent_runs(limit, job_name) if runner is not None else []
    return {"count": len(runs), "runs": runs}


@router.get("/reminders/statistics", response_model=dict)
async def get_reminder_statistics(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Reminder and token counts for monitoring.
    """
    return ReminderScheduler(db, SystemConfigService(db)).get_reminder_statistics()
