"""
Tests for SchedulerService: job registry, single-run execution, overlap
protection and the background thread lifecycle.
"""

import threading

import pytest

from reqflow.services import scheduler_service
from reqflow.services.scheduler_service import SchedulerService, get_registered_jobs


@pytest.fixture()
def isolated_jobs(monkeypatch):
    """Swap the module registry for an empty one; returns (registry, intervals)."""
    registry, intervals = {}, {}
    monkeypatch.setattr(scheduler_service, "_job_registry", registry)
    monkeypatch.setattr(scheduler_service, "_job_intervals", intervals)
    monkeypatch.setattr(SchedulerService, "_locks", {})
    monkeypatch.setattr(SchedulerService, "_last_runs", {})
    yield registry, intervals
    SchedulerService.stop(timeout=2.0)


class TestRegistry:
    def test_outbox_dispatcher_is_registered(self):
        assert "outbox_dispatcher" in get_registered_jobs()

    def test_list_jobs_reports_interval(self):
        jobs = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert jobs["outbox_dispatcher"]["interval_seconds"] == 10.0

    def test_register_job_decorator(self, isolated_jobs):
        registry, intervals = isolated_jobs

        @scheduler_service.register_job("nightly", interval_config="NIGHTLY_INTERVAL")
        def nightly(app):
            return {"ok": True}

        assert registry["nightly"] is nightly
        assert intervals["nightly"] == "NIGHTLY_INTERVAL"


class TestRunJob:
    def test_unknown_job(self):
        result = SchedulerService.run_job("does_not_exist")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_success_records_last_run(self, isolated_jobs):
        registry, _ = isolated_jobs
        registry["echo"] = lambda app: {"processed": 2}

        result = SchedulerService.run_job("echo")

        assert result["status"] == "success"
        assert result["result"] == {"processed": 2}
        assert result["error"] is None
        [job] = SchedulerService.list_jobs()
        assert job["last_run"]["status"] == "success"
        assert job["last_run"]["finished_at"]

    def test_failure_is_reported_not_raised(self, isolated_jobs):
        registry, _ = isolated_jobs

        def broken(app):
            raise RuntimeError("consumer offline")

        registry["broken"] = broken
        result = SchedulerService.run_job("broken")
        assert result["status"] == "failed"
        assert result["error"] == "consumer offline"

    def test_overlapping_run_is_skipped(self, isolated_jobs):
        registry, _ = isolated_jobs
        calls = []
        registry["slow"] = lambda app: calls.append(1)

        lock = SchedulerService._locks.setdefault("slow", threading.Lock())
        lock.acquire()
        try:
            result = SchedulerService.run_job("slow")
        finally:
            lock.release()

        assert result["status"] == "skipped"
        assert calls == []
        assert SchedulerService.run_job("slow")["status"] == "success"
        assert calls == [1]

    def test_outbox_dispatcher_job_with_nothing_due(self):
        result = SchedulerService.run_job("outbox_dispatcher")
        assert result["status"] == "success"
        assert result["result"]["selected"] == 0


class TestBackgroundThread:
    def test_start_ticks_and_stop(self, app, isolated_jobs, monkeypatch):
        registry, intervals = isolated_jobs
        ticked = threading.Event()
        registry["tick"] = lambda a: ticked.set()
        intervals["tick"] = "TICK_INTERVAL"
        monkeypatch.setitem(app.config, "TICK_INTERVAL", 60)

        assert SchedulerService.start() is True
        assert SchedulerService.is_running()
        assert SchedulerService.start() is False

        assert ticked.wait(timeout=5.0)

        SchedulerService.stop(timeout=5.0)
        assert not SchedulerService.is_running()

    def test_jobs_without_interval_never_tick(self, isolated_jobs):
        registry, _ = isolated_jobs
        ran = threading.Event()
        registry["manual_only"] = lambda a: ran.set()

        SchedulerService.start()
        assert not ran.wait(timeout=0.3)
        SchedulerService.stop(timeout=5.0)
