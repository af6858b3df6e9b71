"""Background scheduler for the engine's periodic jobs (poll, follow-ups, reminders)."""

from __future__ import annotations

import logging
import threading
from typing import Callable


class PeriodicJobScheduler:
    """In-process periodic runner; one instance per recurring trigger."""

    def __init__(
        self,
        *,
        name: str,
        enabled: bool,
        interval_seconds: int,
        run_job: Callable[[], None],
        logger: logging.Logger,
        run_on_start: bool = True,
    ) -> None:
        self.name = name
        self.enabled = enabled
        self.interval_seconds = max(1, int(interval_seconds))
        self.run_job = run_job
        self.logger = logger
        self.run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> bool:
        """Start background loop when enabled."""

        if not self.enabled:
            self.logger.info("%s scheduler not started: disabled", self.name)
            return False
        if self.is_running:
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"{self.name}-scheduler",
            daemon=True,
        )
        self._thread.start()
        self.logger.info("%s scheduler started (interval_seconds=%s)", self.name, self.interval_seconds)
        return True

    def stop(self, timeout: float = 30.0) -> None:
        """Request scheduler stop and wait for the in-flight run to finish."""

        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning("%s scheduler still running after %.0fs", self.name, timeout)

    def run_now(self) -> bool:
        """Run the job synchronously; False when a run is already in flight."""

        return self._safe_run_once()

    def _run_loop(self) -> None:
        """Run one job on startup (optional), then continue periodically."""

        if self.run_on_start:
            self._safe_run_once()
        while not self._stop_event.wait(self.interval_seconds):
            self._safe_run_once()

    def _safe_run_once(self) -> bool:
        """Execute scheduled job with overlap protection and fault isolation."""

        if not self._run_lock.acquire(blocking=False):
            self.logger.warning("%s scheduler skipped overlapping run", self.name)
            return False

        try:
            self.run_job()
        except Exception:
            self.logger.exception("%s scheduler run failed", self.name)
        finally:
            self._run_lock.release()
        return True
