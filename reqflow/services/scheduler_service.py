"""
Request Lifecycle Platform
Scheduler Service — periodic background jobs.

Architecture:
    - Job functions are registered via the ``@register_job`` decorator
    - ``run_job`` executes one job inside the Flask app context; a job that
      is still running when the next tick arrives is skipped, never stacked
    - ``start`` spawns one daemon thread that ticks every job on its own
      interval; ``stop`` sets an Event the thread waits on and joins it
    - Last-run results are kept in memory for the admin API
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, interval_config: str | None = None):
    """Decorator to register a job function.

    ``interval_config`` names the app config key holding the tick interval
    in seconds.

    Usage:
        @register_job("outbox_dispatcher", interval_config="OUTBOX_DISPATCH_INTERVAL")
        def dispatch_outbox(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_config:
            _job_intervals[name] = interval_config
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Class-level state: one scheduler per process.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None
    _locks: dict[str, threading.Lock] = {}
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        # Import for the @register_job side effect
        from reqflow.services import scheduled_jobs  # noqa: F401

        cls._app = app
        cls._locks = {name: threading.Lock() for name in _job_registry}
        cls._last_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def is_running(cls) -> bool:
        return cls._thread is not None and cls._thread.is_alive()

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status (success | failed | skipped | error),
            duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        lock = cls._locks.setdefault(job_name, threading.Lock())
        if not lock.acquire(blocking=False):
            logger.info("Job %s still running, skipping this tick", job_name)
            return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                    "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"
        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)
        finally:
            lock.release()

        duration_ms = int((time.monotonic() - start) * 1000)
        run = {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }
        cls._last_runs[job_name] = {**run, "finished_at": datetime.now(timezone.utc).isoformat()}
        return run

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their interval and last run."""
        return [
            {
                "job_name": name,
                "interval_seconds": cls._interval_for(name),
                "last_run": cls._last_runs.get(name),
            }
            for name in _job_registry
        ]

    # ── Background loop ─────────────────────────────────────────────────────

    @classmethod
    def _interval_for(cls, job_name: str) -> float | None:
        key = _job_intervals.get(job_name)
        if not key or not cls._app:
            return None
        return float(cls._app.config.get(key, 0)) or None

    @classmethod
    def start(cls) -> bool:
        """Start the background thread. Returns False if already running."""
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() must be called first")
        if cls.is_running():
            return False

        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(cls._stop_event,),
            name="reqflow-scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started")
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        if cls._stop_event is not None:
            cls._stop_event.set()
        thread = cls._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
        cls._thread = None
        cls._stop_event = None
        logger.info("Scheduler thread stopped")

    @classmethod
    def _loop(cls, stop_event: threading.Event) -> None:
        next_due: dict[str, float] = {}
        while not stop_event.is_set():
            now = time.monotonic()
            for name in list(_job_registry):
                interval = cls._interval_for(name)
                if interval is None:
                    continue
                if now >= next_due.get(name, 0.0):
                    cls.run_job(name)
                    next_due[name] = time.monotonic() + interval
                if stop_event.is_set():
                    return

            waits = [due - time.monotonic() for due in next_due.values()]
            stop_event.wait(max(min(waits, default=1.0), 0.05))
