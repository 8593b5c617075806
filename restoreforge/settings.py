"""Runtime configuration loaded from YAML for restoreforge."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional, Union, get_args, get_origin, get_type_hints

import yaml

from .config import LOGS_DIR, PACKAGE_ROOT, PRESETS_DIR, PROJECT_ROOT

CONFIG_ENV_VAR = "RESTOREFORGE_CONFIG"
DEFAULT_CONFIG_FILENAME = "config.yaml"


def _resolve_path(value: str | Path | None) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return path


def _unwrap_optional(type_hint: Any) -> Any:
    origin = get_origin(type_hint)
    if origin is Union:
        args = [arg for arg in get_args(type_hint) if arg is not type(None)]
        return args[0] if args else Any
    return type_hint


@dataclass(slots=True)
class EngineSettings:
    """Which encoder backend drives a job and where to find it."""

    backend: str = "ffmpeg"
    ffmpeg_bin: Optional[str] = None
    ffprobe_bin: str = "ffprobe"
    library_path: Optional[Path] = None
    dry_run: bool = False


@dataclass(slots=True)
class CompletionSettings:
    """Bounds for the output-file polling done after an encode finishes."""

    poll_interval: float = 0.5
    max_attempts: int = 20
    required_stable_checks: int = 1
    sentinel_pattern: str = r"^Done\.$"
    engine_grace: float = 5.0


@dataclass(slots=True)
class PathsSettings:
    """Filesystem locations used by the runner and preset store."""

    output_dir: Optional[Path] = None
    presets_dir: Path = PRESETS_DIR
    logs_dir: Path = LOGS_DIR


@dataclass(slots=True)
class LoggingSettings:
    log_to_file: bool = True
    max_age_hours: int = 24


@dataclass(slots=True)
class AppSettings:
    """Top-level settings exposed to the rest of the application."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    paths: PathsSettings = field(default_factory=PathsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _coerce_value(value: Any, target_type: Any) -> Any:
    """Convert ``value`` into ``target_type`` when possible."""

    base_type = _unwrap_optional(target_type)
    if base_type is Path:
        return _resolve_path(value)
    if base_type is str:
        return None if value is None else str(value)
    if base_type is int:
        return None if value is None else int(value)
    if base_type is float:
        return None if value is None else float(value)
    if base_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "1", "yes", "on"}:
                return True
            if lowered in {"false", "0", "no", "off"}:
                return False
        return bool(value)
    return value


def _merge_dataclass(instance: Any, data: dict[str, Any]) -> Any:
    hints = get_type_hints(type(instance))
    for field_info in fields(instance):
        key = field_info.name
        if key not in data:
            continue
        value = data[key]
        current = getattr(instance, key)
        if is_dataclass(current) and isinstance(value, dict):
            _merge_dataclass(current, value)
        else:
            coerced = _coerce_value(value, hints.get(key, field_info.type))
            setattr(instance, key, coerced)
    return instance


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load configuration from ``path`` falling back to defaults."""

    config_path = path
    if config_path is None:
        env_value = os.environ.get(CONFIG_ENV_VAR)
        if env_value:
            config_path = Path(env_value).expanduser()
        else:
            config_path = PACKAGE_ROOT / DEFAULT_CONFIG_FILENAME
    config = AppSettings()
    if config_path and Path(config_path).exists():
        with open(config_path, "r", encoding="utf8") as handle:
            payload = yaml.safe_load(handle) or {}
        if isinstance(payload, dict):
            _merge_dataclass(config, payload)
    config.engine.library_path = _resolve_path(config.engine.library_path)
    config.paths.output_dir = _resolve_path(config.paths.output_dir)
    config.paths.presets_dir = _resolve_path(config.paths.presets_dir) or PRESETS_DIR
    config.paths.logs_dir = _resolve_path(config.paths.logs_dir) or LOGS_DIR
    if config.completion.max_attempts < 1:
        config.completion.max_attempts = 1
    if config.completion.required_stable_checks < 1:
        config.completion.required_stable_checks = 1
    if config.completion.engine_grace < 0:
        config.completion.engine_grace = 0.0
    return config


__all__ = [
    "AppSettings",
    "CompletionSettings",
    "EngineSettings",
    "LoggingSettings",
    "PathsSettings",
    "load_settings",
]
