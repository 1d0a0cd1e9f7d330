"""
APScheduler configuration and periodic runs for cycler.

Manages:
- Scheduled backup models (based on crontab expressions)
- Manual triggers

Each model runs with max_instances=1, so the scheduler never cycles the
same storages from two runs of one trigger at the same time.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from cycler.backup.executor import BackupModel, execute_backup_model


logger = logging.getLogger(__name__)

# Global scheduler instance, configuration and registered models
scheduler = None
app_config = None
models = {}


def init_scheduler(backup_models: List[BackupModel], cfg):
    """
    Initialize and configure APScheduler.

    Args:
        backup_models: Models to schedule (those with a schedule get a cron job)
        cfg: Configuration class
    """
    global scheduler, app_config, models

    if scheduler is not None:
        return scheduler

    app_config = cfg
    models = {model.trigger: model for model in backup_models}

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=cfg.SCHEDULER_MAX_WORKERS)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=cfg.SCHEDULER_TIMEZONE
    )

    for model in backup_models:
        if model.schedule:
            _add_scheduled_model(model)

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state}, running={scheduler.running})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def reset_scheduler():
    """Forget the scheduler and registered models."""
    global scheduler, app_config, models

    stop_scheduler()
    scheduler = None
    app_config = None
    models = {}


def _add_scheduled_model(model: BackupModel):
    """
    Add a backup model to the scheduler.

    Raises:
        ValueError: If the model's schedule is not a valid crontab expression
    """
    trigger = CronTrigger.from_crontab(model.schedule, timezone=app_config.SCHEDULER_TIMEZONE)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[model.trigger],
        trigger=trigger,
        id=f"backup_{model.trigger}",
        name=f"Backup: {model.trigger}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup: {model.trigger} ({model.schedule})")


def _execute_backup_wrapper(trigger: str):
    """
    Run a registered model from a scheduler thread.

    Failures are logged, the scheduler keeps running.
    """
    model = models.get(trigger)
    if model is None:
        logger.error(f"Scheduled trigger no longer registered: {trigger}")
        return

    logger.info(f"Scheduler executing backup: {trigger}")
    report = execute_backup_model(model, app_config)
    if report.succeeded:
        logger.info(f"Backup {trigger} completed with status: {report.status}")
    else:
        logger.error(f"Backup {trigger} failed: {report.error}")


def trigger_backup_now(trigger: str):
    """
    Manually trigger a backup model immediately.

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If the trigger is not registered
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if trigger not in models:
        raise ValueError(f"Backup model not found: {trigger}")

    # 1 second delay to avoid racing the scheduler's own wakeup
    run_date = datetime.now(timezone.utc) + timedelta(seconds=1)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[trigger],
        trigger=DateTrigger(run_date=run_date),
        id=f"manual_{trigger}_{int(run_date.timestamp())}",
        name=f"Manual: {trigger}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {trigger}")


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
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
