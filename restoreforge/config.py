"""Static paths and naming constants used throughout restoreforge."""

from __future__ import annotations

from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent
USER_CONFIG_DIR = Path.home() / ".config" / "restoreforge"
PRESETS_DIR = USER_CONFIG_DIR / "presets"
LOGS_DIR = PROJECT_ROOT / "logs"

OUTPUT_SUFFIX = "_[restored]"
VIDEO_OUTPUT_EXTENSION = ".mp4"
IMAGE_OUTPUT_EXTENSION = ".png"
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"})

# Capacity of path slots in the native option record (matches PATH_MAX on Linux).
PATH_MAX = 4096

__all__ = [
    "IMAGE_EXTENSIONS",
    "IMAGE_OUTPUT_EXTENSION",
    "LOGS_DIR",
    "OUTPUT_SUFFIX",
    "PACKAGE_ROOT",
    "PATH_MAX",
    "PRESETS_DIR",
    "PROJECT_ROOT",
    "USER_CONFIG_DIR",
    "VIDEO_OUTPUT_EXTENSION",
]
