"""
Production Workflow & Billing
Scheduler Service.

Lightweight in-process scheduler: one daemon thread wakes up periodically
and runs every enabled job whose interval has elapsed. Each job runs inside
a Flask app context and its outcome is recorded on the job's ScheduledJob
row.

Architecture:
    - register_job(name, interval_config_key): decorator that registers a job
    - SchedulerService: job records, manual trigger, start/stop of the loop
    - Jobs are plain functions taking the Flask app
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, interval_config_key: str):
    """Decorator to register a job function.

    Usage:
        @register_job("outbox_drain", "OUTBOX_POLL_INTERVAL_SECONDS")
        def drain_outbox(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _job_intervals[name] = interval_config_key
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job records, execution and the background loop.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _stop: threading.Event | None = None
    _thread: threading.Thread | None = None
    _last_started: dict[str, float] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        # Registers the job functions
        from app.services import scheduled_jobs  # noqa: F401

        cls._app = app
        cls._last_started = {}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def interval_for(cls, job_name: str) -> float:
        return float(cls._app.config[_job_intervals[job_name]])

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                        interval_seconds=cls.interval_for(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        cls._last_started[job_name] = start
        result = None
        error = None
        status = "success"

        with cls._app.app_context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls) -> list[dict]:
        """Run every enabled job whose interval has elapsed since it last started."""
        with cls._app.app_context():
            disabled = set(db.session.execute(
                db.select(ScheduledJob.job_name).where(ScheduledJob.is_enabled.is_(False))
            ).scalars())

        now = time.monotonic()
        ran = []
        for name in _job_registry:
            if name in disabled:
                continue
            last = cls._last_started.get(name)
            if last is not None and now - last < cls.interval_for(name):
                continue
            ran.append(cls.run_job(name))
        return ran

    @classmethod
    def _tick_seconds(cls) -> float:
        return max(0.1, min(cls.interval_for(name) for name in _job_registry))

    @classmethod
    def _loop(cls, stop: threading.Event) -> None:
        logger.info("Scheduler loop started")
        while not stop.is_set():
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop.wait(cls._tick_seconds())
        logger.info("Scheduler loop stopped")

    @classmethod
    def start(cls) -> bool:
        """Start the background loop. Returns False if it is already running."""
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() has not been called")
        if cls._thread is not None and cls._thread.is_alive():
            return False
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(cls._stop,), name="scheduler", daemon=True,
        )
        cls._thread.start()
        return True

    @classmethod
    def stop(cls, timeout: float = 10.0) -> None:
        if cls._stop is not None:
            cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = None

    @classmethod
    def is_running(cls) -> bool:
        return cls._thread is not None and cls._thread.is_alive()

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
