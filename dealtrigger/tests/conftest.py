from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from dealtrigger.config import clear_app_config_cache
from dealtrigger.store import ActivationStore


def pytest_configure(config: pytest.Config) -> None:
    # Keep module-level app construction away from the project data directory.
    data_dir = Path(tempfile.mkdtemp(prefix="dealtrigger-tests-"))
    os.environ.setdefault("DEALTRIGGER_DATA_DIR", str(data_dir))
    os.environ.setdefault("DEALTRIGGER_DB_PATH", str(data_dir / "dealtrigger.sqlite3"))


@pytest.fixture(autouse=True)
def _fresh_app_config():
    clear_app_config_cache()
    yield
    clear_app_config_cache()


@pytest.fixture
def store(tmp_path: Path) -> ActivationStore:
    return ActivationStore(tmp_path / "activations.sqlite3", retry_backoff_seconds=0.0)
