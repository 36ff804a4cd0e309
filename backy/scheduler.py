"""
Background job runner for Backy.

Backup jobs run on an APScheduler thread pool as one-shot jobs, so callers are
never blocked by chunking or uploads. Running and finished jobs are kept in an
in-process registry until their result is released.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from backy.backup.executor import BackupExecutor, BackupJob, BackupSettings


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

_registry: Dict[str, BackupExecutor] = {}
_registry_lock = threading.Lock()


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config['MAX_CONCURRENT_JOBS'])
    }

    job_defaults = {
        'coalesce': False,
        'max_instances': 1,
        # Queued jobs wait for a free worker however long that takes
        'misfire_grace_time': None
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info("Job runner started (state=%s)", scheduler.state)
    else:
        logger.info("Job runner already running (state=%s)", scheduler.state)


def stop_scheduler(wait: bool = True):
    """Stop the APScheduler so a later init_scheduler() starts fresh."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("Job runner stopped")
    scheduler = None
    flask_app = None


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def _execute_job_wrapper(job_id: str):
    """
    Run a registered job on a scheduler thread.

    Args:
        job_id: BackupJob id
    """
    with _registry_lock:
        executor = _registry.get(job_id)

    if executor is None:
        logger.warning("Job %s was released before it started", job_id)
        return

    if flask_app is not None:
        with flask_app.app_context():
            job = executor.execute()
    else:
        job = executor.execute()

    logger.info("Job %s finished with state: %s", job_id, job.state.value)


def submit_job(job: BackupJob, settings: Optional[BackupSettings] = None) -> BackupExecutor:
    """
    Queue a job for immediate background execution.

    Args:
        job: BackupJob to run
        settings: Execution settings; defaults to the Flask app config

    Returns:
        The BackupExecutor driving the job

    Raises:
        RuntimeError: If the scheduler is not running
    """
    if not is_scheduler_running():
        raise RuntimeError("Scheduler not initialized")

    if settings is None:
        settings = BackupSettings.from_config(flask_app.config)

    executor = BackupExecutor(job, settings)
    with _registry_lock:
        _registry[job.id] = executor

    scheduler.add_job(
        func=_execute_job_wrapper,
        args=[job.id],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
        id=f"job_{job.id}",
        name=f"{job.kind.value}: {job.source_path}",
        misfire_grace_time=None,
        replace_existing=False
    )

    logger.info("Queued %s job %s", job.kind.value, job.id)
    return executor


def run_job(job: BackupJob, settings: Optional[BackupSettings] = None,
            timeout: Optional[float] = None) -> BackupJob:
    """
    Run a job in the background and wait for it to finish.

    The job is released from the registry once it is done.
    """
    submit_job(job, settings)
    try:
        if not job.wait(timeout):
            get_executor(job.id).cancel()
            job.wait()
    finally:
        release_job(job.id)
    return job


def get_executor(job_id: str) -> Optional[BackupExecutor]:
    with _registry_lock:
        return _registry.get(job_id)


def get_job(job_id: str) -> Optional[BackupJob]:
    executor = get_executor(job_id)
    return executor.job if executor else None


def list_jobs() -> List[BackupJob]:
    with _registry_lock:
        return [executor.job for executor in _registry.values()]


def cancel_job(job_id: str) -> bool:
    """
    Request cancellation of a running job.

    Returns:
        False if the job is unknown or already finished
    """
    executor = get_executor(job_id)
    if executor is None or executor.job.state.is_terminal:
        return False
    executor.cancel()
    return True


def release_job(job_id: str) -> Optional[BackupJob]:
    """
    Drop a job from the registry.

    Raises:
        ValueError: If the job is still running
    """
    with _registry_lock:
        executor = _registry.get(job_id)
        if executor is None:
            return None
        if not executor.job.state.is_terminal:
            raise ValueError(f"Job {job_id} is still running")
        del _registry[job_id]
    return executor.job
