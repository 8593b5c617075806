"""YAML-backed storage for named :class:`EncodeSettings` presets."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Union

import yaml

from .encode_settings import EncodeSettings

FACTORY_PRESET = "factory"
DEFAULT_ACTIVE = "default"
ACTIVE_FILENAME = "active_preset"
PRESET_SUFFIX = ".yaml"

_UNSAFE_CHARS = re.compile(r"[\\/\x00]+")


def clean_name(name: str) -> str:
    """Strip path separators and surrounding whitespace from ``name``."""

    cleaned = _UNSAFE_CHARS.sub("", name or "").strip().strip(".")
    if not cleaned:
        raise KeyError(f"Invalid preset name: {name!r}")
    return cleaned


class PresetStore:
    """Presets live as ``<name>.yaml`` files under a single directory."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def _path(self, name: str) -> Path:
        return self.directory / f"{clean_name(name)}{PRESET_SUFFIX}"

    def list(self) -> list[str]:
        names = {FACTORY_PRESET}
        if self.directory.is_dir():
            names.update(path.stem for path in self.directory.glob(f"*{PRESET_SUFFIX}"))
        return sorted(names)

    def exists(self, name: str) -> bool:
        cleaned = clean_name(name)
        return cleaned == FACTORY_PRESET or self._path(cleaned).is_file()

    def save(self, name: str, settings: EncodeSettings) -> Path:
        cleaned = clean_name(name)
        if cleaned == FACTORY_PRESET:
            raise KeyError("The factory preset is read-only")
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(cleaned)
        with open(path, "w", encoding="utf8") as handle:
            yaml.safe_dump(settings.to_dict(), handle, sort_keys=False, allow_unicode=True)
        return path

    def load(self, name: str) -> EncodeSettings:
        cleaned = clean_name(name)
        if cleaned == FACTORY_PRESET:
            return EncodeSettings()
        path = self._path(cleaned)
        if not path.is_file():
            raise KeyError(f"Unknown preset: {cleaned}")
        with open(path, "r", encoding="utf8") as handle:
            payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError(f"Preset {cleaned} is not a mapping")
        settings = EncodeSettings()
        settings.apply_dict(payload)
        return settings

    def delete(self, name: str) -> None:
        cleaned = clean_name(name)
        if cleaned == FACTORY_PRESET:
            raise KeyError("The factory preset cannot be deleted")
        path = self._path(cleaned)
        if not path.is_file():
            raise KeyError(f"Unknown preset: {cleaned}")
        path.unlink()
        if self.active == cleaned:
            self.set_active(DEFAULT_ACTIVE)

    @property
    def active(self) -> str:
        marker = self.directory / ACTIVE_FILENAME
        try:
            value = marker.read_text(encoding="utf8").strip()
        except OSError:
            return DEFAULT_ACTIVE
        return value or DEFAULT_ACTIVE

    def set_active(self, name: str) -> None:
        cleaned = clean_name(name)
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / ACTIVE_FILENAME).write_text(cleaned + "\n", encoding="utf8")

    def load_active(self) -> EncodeSettings:
        """Load the active preset, falling back to factory defaults if it is missing."""

        name = self.active
        if name == FACTORY_PRESET or not self._path(name).is_file():
            return EncodeSettings()
        return self.load(name)


__all__ = ["DEFAULT_ACTIVE", "FACTORY_PRESET", "PresetStore", "clean_name"]
