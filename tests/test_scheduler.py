"""
Tests for the in-process scheduler and the outbox jobs it runs.

Covers:
    1. Job registry + ScheduledJob records
    2. run_job success / failure bookkeeping
    3. run_due_jobs interval and enable/disable handling
    4. Background loop start / stop
"""

import logging
import threading

import pytest

from app.models import db
from app.models.outbox import OutboxEventType
from app.models.scheduling import ScheduledJob
from app.models.workflow import AGGREGATE_ORDER
from app.services import outbox_handlers, outbox_service
from app.services.scheduler_service import SchedulerService, get_registered_jobs


@pytest.fixture()
def scheduler(app, monkeypatch):
    # Other tests build their own apps; point the scheduler back at this one
    SchedulerService.init_app(app)
    monkeypatch.setitem(app.config, "OUTBOX_POLL_INTERVAL_SECONDS", 60.0)
    yield SchedulerService
    SchedulerService.stop()


def _job(name):
    return db.session.execute(
        db.select(ScheduledJob).where(ScheduledJob.job_name == name)
        .execution_options(populate_existing=True)
    ).scalar_one()


def _park_one(app, monkeypatch):
    def _boom(event):
        raise RuntimeError("downstream unavailable")

    monkeypatch.setitem(app.config, "OUTBOX_MAX_ATTEMPTS", 1)
    monkeypatch.setitem(outbox_handlers.HANDLERS, OutboxEventType.WORKFLOW_TRANSITION_APPLIED, _boom)
    outbox_service.enqueue(AGGREGATE_ORDER, "agg-1", OutboxEventType.WORKFLOW_TRANSITION_APPLIED, {})
    db.session.commit()
    outbox_service.drain()


class TestRegistry:
    def test_outbox_jobs_registered(self, scheduler):
        assert {"outbox_drain", "outbox_parked_alert"} <= set(get_registered_jobs())

    def test_ensure_jobs_registered(self, scheduler):
        created = scheduler.ensure_jobs_registered()
        assert len(created) == 2
        assert _job("outbox_drain").interval_seconds == 60.0
        assert _job("outbox_parked_alert").status == "active"
        assert scheduler.ensure_jobs_registered() == []

    def test_list_jobs(self, scheduler):
        scheduler.ensure_jobs_registered()
        jobs = {j["job_name"]: j for j in scheduler.list_jobs()}
        assert jobs["outbox_drain"]["registered"] is True
        assert jobs["outbox_drain"]["db_record"]["is_enabled"] is True

    def test_toggle_job(self, scheduler):
        scheduler.ensure_jobs_registered()
        paused = scheduler.toggle_job("outbox_drain", False)
        assert (paused["status"], paused["is_enabled"]) == ("paused", False)
        assert scheduler.toggle_job("outbox_drain", True)["status"] == "active"
        assert scheduler.toggle_job("nonexistent", True) is None


class TestRunJob:
    def test_unknown_job(self, scheduler):
        result = scheduler.run_job("unknown_job_xyz")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_drain_job(self, scheduler, make_order):
        scheduler.ensure_jobs_registered()
        make_order()
        result = scheduler.run_job("outbox_drain")
        assert result["status"] == "success"
        assert result["result"]["processed"] == 1
        assert outbox_service.pending_count() == 0

        job = _job("outbox_drain")
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_result["processed"] == 1

    def test_failed_job_recorded(self, scheduler, monkeypatch):
        def _broken(batch_size=None):
            raise RuntimeError("database went away")

        scheduler.ensure_jobs_registered()
        monkeypatch.setattr(outbox_service, "drain", _broken)
        result = scheduler.run_job("outbox_drain")
        assert result["status"] == "failed"
        assert "went away" in result["error"]

        job = _job("outbox_drain")
        assert job.error_count == 1
        assert job.last_error == "database went away"

    def test_parked_alert(self, app, scheduler, monkeypatch, caplog):
        _park_one(app, monkeypatch)
        with caplog.at_level(logging.ERROR):
            result = scheduler.run_job("outbox_parked_alert")
        assert result["result"] == {"parked": 1}
        assert "outbox events parked" in caplog.text

    def test_parked_alert_quiet_when_nothing_parked(self, scheduler):
        assert scheduler.run_job("outbox_parked_alert")["result"] == {"parked": 0}


class TestDueJobs:
    def test_interval_respected(self, scheduler):
        scheduler.ensure_jobs_registered()
        first = {r["job_name"] for r in scheduler.run_due_jobs()}
        assert first == {"outbox_drain", "outbox_parked_alert"}
        assert scheduler.run_due_jobs() == []

    def test_disabled_job_skipped(self, scheduler):
        scheduler.ensure_jobs_registered()
        scheduler.toggle_job("outbox_parked_alert", False)
        ran = [r["job_name"] for r in scheduler.run_due_jobs()]
        assert ran == ["outbox_drain"]


class TestLoop:
    def test_start_and_stop(self, scheduler, monkeypatch):
        ticked = threading.Event()

        def _tick(cls):
            ticked.set()
            return []

        monkeypatch.setattr(SchedulerService, "run_due_jobs", classmethod(_tick))

        assert scheduler.start() is True
        assert scheduler.is_running()
        assert scheduler.start() is False
        assert ticked.wait(5)

        scheduler.stop()
        assert not scheduler.is_running()
