from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_APP_CONFIG_PATH = PROJECT_ROOT / "conf" / "app.toml"
DEFAULT_CONDITION_SYNONYMS_CONFIG_PATH = PROJECT_ROOT / "conf" / "condition_synonyms.json"
MAX_ACTIVATION_TTL_SECONDS = 90 * 86400


@dataclass(frozen=True)
class RuntimeConfig:
    data_dir: str | None
    db_path: str | None
    log_path: str | None
    data_quality_log_path: str | None


@dataclass(frozen=True)
class ActivationConfig:
    default_ttl_seconds: int
    max_retries: int
    retry_backoff_seconds: float
    busy_timeout_ms: int
    auto_trigger: bool


@dataclass(frozen=True)
class ParserConfig:
    cache_maxsize: int


@dataclass(frozen=True)
class SweeperConfig:
    enabled: bool
    interval_seconds: int


@dataclass(frozen=True)
class ConditionVocabularyConfig:
    synonyms: dict[str, str]
    occurrences: dict[str, str]


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    activation: ActivationConfig
    parser: ParserConfig
    sweeper: SweeperConfig
    vocabulary: ConditionVocabularyConfig


def resolve_app_config_path() -> Path:
    env_path = os.getenv("DEALTRIGGER_APP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_APP_CONFIG_PATH


def resolve_condition_synonyms_path() -> Path:
    env_path = os.getenv("DEALTRIGGER_CONDITION_SYNONYMS")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONDITION_SYNONYMS_CONFIG_PATH


def clear_app_config_cache() -> None:
    load_app_config.cache_clear()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_optional_str(value: Any) -> str | None:
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _as_int(value: Any, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_float(
    value: Any,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _normalize_phrase(value: Any) -> str:
    return " ".join(str(value or "").strip().lower().split())


def _normalize_stat_key(value: Any) -> str:
    return str(value or "").strip().lower().replace("-", "_").replace(" ", "_")


def _load_condition_synonyms_raw() -> dict[str, Any]:
    path = resolve_condition_synonyms_path()
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"invalid condition synonyms JSON: {path}: {exc}") from exc
    return _as_dict(payload)


def _build_phrase_map(raw: Any) -> dict[str, str]:
    out: dict[str, str] = {}
    for phrase, stat_key in _as_dict(raw).items():
        normalized_phrase = _normalize_phrase(phrase)
        normalized_key = _normalize_stat_key(stat_key)
        if not normalized_phrase or not normalized_key:
            continue
        out[normalized_phrase] = normalized_key
    return out


def _build_vocabulary_config(raw: dict[str, Any]) -> ConditionVocabularyConfig:
    return ConditionVocabularyConfig(
        synonyms=_build_phrase_map(raw.get("synonyms")),
        occurrences=_build_phrase_map(raw.get("occurrences")),
    )


@lru_cache(maxsize=1)
def load_app_config() -> AppConfig:
    path = resolve_app_config_path()
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = _as_dict(tomllib.loads(path.read_text(encoding="utf-8")))
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"invalid app config TOML: {path}: {exc}") from exc

    runtime_raw = _as_dict(raw.get("runtime"))
    activation_raw = _as_dict(raw.get("activation"))
    parser_raw = _as_dict(raw.get("parser"))
    sweeper_raw = _as_dict(raw.get("sweeper"))

    runtime = RuntimeConfig(
        data_dir=_as_optional_str(runtime_raw.get("data_dir")),
        db_path=_as_optional_str(runtime_raw.get("db_path")),
        log_path=_as_optional_str(runtime_raw.get("log_path")),
        data_quality_log_path=_as_optional_str(runtime_raw.get("data_quality_log_path")),
    )
    activation = ActivationConfig(
        default_ttl_seconds=_as_int(
            activation_raw.get("default_ttl_seconds"),
            86400,
            minimum=0,
            maximum=MAX_ACTIVATION_TTL_SECONDS,
        ),
        max_retries=_as_int(activation_raw.get("max_retries"), 3, minimum=0, maximum=20),
        retry_backoff_seconds=_as_float(
            activation_raw.get("retry_backoff_seconds"),
            0.05,
            minimum=0.0,
            maximum=5.0,
        ),
        busy_timeout_ms=_as_int(activation_raw.get("busy_timeout_ms"), 5000, minimum=0, maximum=60000),
        auto_trigger=_as_bool(activation_raw.get("auto_trigger"), True),
    )
    parser = ParserConfig(
        cache_maxsize=_as_int(parser_raw.get("cache_maxsize"), 1024, minimum=1, maximum=100000),
    )
    sweeper = SweeperConfig(
        enabled=_as_bool(sweeper_raw.get("enabled"), False),
        interval_seconds=_as_int(sweeper_raw.get("interval_seconds"), 60, minimum=1, maximum=3600),
    )
    vocabulary = _build_vocabulary_config(_load_condition_synonyms_raw())

    return AppConfig(
        runtime=runtime,
        activation=activation,
        parser=parser,
        sweeper=sweeper,
        vocabulary=vocabulary,
    )
