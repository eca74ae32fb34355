from __future__ import annotations

import logging
from threading import Event, Lock, Thread

from .config import AppConfig, load_app_config
from .store import ActivationStore


class ExpirationSweeper:
    """Background thread that moves elapsed TRIGGERED activations to EXPIRED.

    Reads already expire rows lazily; the sweeper keeps the table honest for
    consumers that query the database directly.
    """

    def __init__(
        self,
        store: ActivationStore,
        *,
        enabled: bool = False,
        interval_seconds: int = 60,
    ) -> None:
        self._logger = logging.getLogger("dealtrigger.worker")
        self._store = store
        self._enabled = enabled
        self._interval_seconds = max(1, int(interval_seconds))
        self._stop_event = Event()
        self._start_lock = Lock()
        self._running = False
        self._thread: Thread | None = None
        self._total_expired = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._running

    def runtime_status(self) -> dict[str, int | bool]:
        thread = self._thread
        return {
            "enabled": bool(self._enabled),
            "running": bool(self._running),
            "interval_seconds": int(self._interval_seconds),
            "thread_alive": bool(thread is not None and thread.is_alive()),
            "total_expired": int(self._total_expired),
        }

    def start_if_enabled(self) -> None:
        if self._enabled:
            self.start()
        else:
            self._logger.info("expiration sweeper disabled (sweeper.enabled=false)")

    def start(self) -> None:
        with self._start_lock:
            if self._running:
                return
            self._stop_event.clear()
            self._thread = Thread(
                target=self._sweep_loop,
                name="dealtrigger-expiration-sweeper",
                daemon=True,
            )
            self._thread.start()
            self._running = True
            self._logger.info("expiration sweeper started interval=%ss", self._interval_seconds)

    def stop(self, timeout_seconds: float = 10.0) -> None:
        with self._start_lock:
            if not self._running:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._running = False

        if thread is not None:
            thread.join(timeout=timeout_seconds)
        self._logger.info("expiration sweeper stopped")

    def sweep_once(self) -> int:
        expired = self._store.sweep_expired()
        self._total_expired += expired
        return expired

    def _sweep_loop(self) -> None:
        self._logger.info("sweep loop started")
        while not self._stop_event.is_set():
            try:
                expired = self.sweep_once()
                self._logger.debug("sweep expired=%s", expired)
            except Exception:
                self._logger.exception("sweep loop failed")
            if self._stop_event.wait(timeout=float(self._interval_seconds)):
                break
        self._logger.info("sweep loop stopped")


def build_sweeper_from_config(store: ActivationStore, config: AppConfig | None = None) -> ExpirationSweeper:
    cfg = config or load_app_config()
    return ExpirationSweeper(
        store,
        enabled=cfg.sweeper.enabled,
        interval_seconds=cfg.sweeper.interval_seconds,
    )
