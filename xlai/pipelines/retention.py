from __future__ import annotations

from threading import Event, Thread

from xlai.agents.message_agent import MessageService
from xlai.utils.env import read_float_env
from xlai.utils.logging import get_logger
from xlai.utils.observability import get_metrics

log = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60


def sweep_interval_seconds() -> float:
    return read_float_env("XLAI_SWEEP_INTERVAL_SECONDS", float(DEFAULT_SWEEP_INTERVAL_SECONDS), minimum=1.0)


class RetentionSweeper:
    """Delete expired messages on a timer. A failed pass is logged and retried next tick."""

    def __init__(self, service: MessageService, *, interval_seconds: float | None = None) -> None:
        self.service = service
        self.interval_seconds = interval_seconds if interval_seconds is not None else sweep_interval_seconds()
        self._stop_event = Event()
        self._thread: Thread | None = None

    def run_once(self) -> int:
        metrics = get_metrics()
        try:
            deleted = self.service.sweep()
        except Exception as exc:
            metrics.increment_counter("retention_sweep::failed")
            log.error("retention_sweep_failed", error=str(exc), error_type=type(exc).__name__)
            return 0
        metrics.increment_counter("retention_sweep::deleted", float(deleted))
        log.info("retention_sweep_complete", deleted=deleted)
        return deleted

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._worker, name="retention-sweeper", daemon=True)
        self._thread.start()
        log.info("retention_sweeper_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break
