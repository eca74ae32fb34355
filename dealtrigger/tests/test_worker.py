from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dealtrigger.config import clear_app_config_cache, load_app_config
from dealtrigger.keys import key_for
from dealtrigger.store import ActivationStore
from dealtrigger.worker import ExpirationSweeper, build_sweeper_from_config


def _write_toml(path: Path, content: str) -> None:
    path.write_text(content.strip() + "\n", encoding="utf-8")


def test_sweep_once_expires_elapsed_rows(store: ActivationStore) -> None:
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    store.try_activate(key_for("deal-1", "game-1", "s"), "deal-1", "game-1", 60, now=past)
    sweeper = ExpirationSweeper(store, enabled=True, interval_seconds=1)
    assert sweeper.sweep_once() == 1
    assert sweeper.runtime_status()["total_expired"] == 1
    assert store.stats()["EXPIRED"] == 1


def test_sweeper_start_stop(store: ActivationStore) -> None:
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    store.try_activate(key_for("deal-1", "game-1", "s"), "deal-1", "game-1", 60, now=past)
    sweeper = ExpirationSweeper(store, enabled=True, interval_seconds=1)
    sweeper.start_if_enabled()
    try:
        assert sweeper.running is True
        deadline = time.monotonic() + 5
        while store.stats()["EXPIRED"] == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        sweeper.stop(timeout_seconds=5)
    assert sweeper.running is False
    assert store.stats()["EXPIRED"] == 1


def test_disabled_sweeper_does_not_start(store: ActivationStore) -> None:
    sweeper = ExpirationSweeper(store, enabled=False)
    sweeper.start_if_enabled()
    assert sweeper.running is False


def test_build_sweeper_from_config(store: ActivationStore, tmp_path: Path, monkeypatch) -> None:
    conf_path = tmp_path / "app.toml"
    _write_toml(
        conf_path,
        """
        [sweeper]
        enabled = true
        interval_seconds = 15
        """,
    )
    monkeypatch.setenv("DEALTRIGGER_APP_CONFIG", str(conf_path))
    clear_app_config_cache()
    sweeper = build_sweeper_from_config(store, load_app_config())
    status = sweeper.runtime_status()
    assert status["enabled"] is True
    assert status["interval_seconds"] == 15
