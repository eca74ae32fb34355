from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import load_app_config

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"


@dataclass(frozen=True)
class RuntimePaths:
    data_dir: Path
    db_path: Path
    log_path: Path
    data_quality_log_path: Path

    def directories(self) -> set[Path]:
        return {
            self.data_dir,
            self.db_path.parent,
            self.log_path.parent,
            self.data_quality_log_path.parent,
        }


def _pick(env_name: str, configured: str | None, fallback: Callable[[], Path]) -> Path:
    # env beats conf/app.toml beats the data-dir default; relative config is project-rooted
    env_value = os.getenv(env_name)
    if env_value:
        return Path(env_value)
    if configured:
        path = Path(configured)
        return path if path.is_absolute() else PROJECT_ROOT / path
    return fallback()


def resolve_data_dir() -> Path:
    return _pick("DEALTRIGGER_DATA_DIR", load_app_config().runtime.data_dir, lambda: DEFAULT_DATA_DIR)


def resolve_db_file() -> Path:
    return _pick(
        "DEALTRIGGER_DB_PATH",
        load_app_config().runtime.db_path,
        lambda: resolve_data_dir() / "dealtrigger.sqlite3",
    )


def resolve_log_path() -> Path:
    return _pick(
        "DEALTRIGGER_LOG_PATH",
        load_app_config().runtime.log_path,
        lambda: resolve_data_dir() / "logs" / "dealtrigger.log",
    )


def resolve_data_quality_log_path() -> Path:
    return _pick(
        "DEALTRIGGER_DATA_QUALITY_LOG_PATH",
        load_app_config().runtime.data_quality_log_path,
        lambda: resolve_data_dir() / "logs" / "data_quality.log",
    )


def current_runtime_paths() -> RuntimePaths:
    return RuntimePaths(
        data_dir=resolve_data_dir(),
        db_path=resolve_db_file(),
        log_path=resolve_log_path(),
        data_quality_log_path=resolve_data_quality_log_path(),
    )


def ensure_runtime_dirs() -> RuntimePaths:
    paths = current_runtime_paths()
    for directory in sorted(paths.directories()):
        directory.mkdir(parents=True, exist_ok=True)
    return paths
