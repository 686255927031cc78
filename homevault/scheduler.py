"""
APScheduler configuration and job scheduling for HomeVault.

Manages:
- The periodic backup check, which decides between full and incremental backups
- Manual backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from homevault.service import BackupService

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = 'periodic_backup_check'

# Global scheduler instance and service reference
scheduler = None
backup_service = None


def init_scheduler(service: BackupService, check_interval_seconds: int = 60):
    """
    Initialize and configure APScheduler.

    Args:
        service: Backup service checked by the periodic job
        check_interval_seconds: Interval of the periodic check
    """
    global scheduler, backup_service

    if scheduler is not None:
        return scheduler

    backup_service = service

    # backups must never overlap, one worker runs every job
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_periodic_check_wrapper,
        trigger=IntervalTrigger(seconds=check_interval_seconds, timezone='UTC'),
        id=PERIODIC_JOB_ID,
        name='Periodic Backup Check',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after the backup service is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler and forget it, so it can be initialized again."""
    global scheduler, backup_service

    if scheduler is not None:
        if scheduler.running:
            scheduler.shutdown()
            logger.info("APScheduler stopped")
        scheduler = None
        backup_service = None


def _periodic_check_wrapper():
    """Run the periodic check, failures must not stop the scheduler."""
    try:
        run = backup_service.run_periodic_check()
        if run is not None:
            logger.info(f"Scheduled {run.kind} backup finished (success={run.success})")
    except Exception:
        logger.exception("Scheduled backup check failed")


def _manual_backup_wrapper():
    try:
        run = backup_service.create_backup(full=True)
        if run is not None:
            logger.info(f"Manual backup finished (success={run.success})")
    except Exception:
        logger.exception("Manual backup failed")


def trigger_backup_now():
    """
    Trigger a full backup immediately.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    # 1 second delay to avoid a race with scheduler startup
    scheduler.add_job(
        func=_manual_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name='Manual Backup',
        replace_existing=True
    )

    logger.info("Manually triggered full backup")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
