from __future__ import annotations

from pathlib import Path

import pytest

from restoreforge.encode_settings import EncodeSettings
from restoreforge.presets import DEFAULT_ACTIVE, FACTORY_PRESET, PresetStore, clean_name


def test_list_always_contains_factory(tmp_path: Path) -> None:
    store = PresetStore(tmp_path / "presets")

    assert store.list() == [FACTORY_PRESET]
    assert store.active == DEFAULT_ACTIVE


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = PresetStore(tmp_path)
    settings = EncodeSettings()
    settings.update(use_hevc=True, crf=20, denoiser="nlmeans", use_deblock_2=True)

    path = store.save("anime", settings)
    loaded = store.load("anime")

    assert path == tmp_path / "anime.yaml"
    assert loaded == settings
    assert loaded.deblock_thresh_2 == "0.5"
    assert store.list() == ["anime", FACTORY_PRESET]


def test_factory_preset_is_defaults_and_read_only(tmp_path: Path) -> None:
    store = PresetStore(tmp_path)

    assert store.load(FACTORY_PRESET) == EncodeSettings()
    with pytest.raises(KeyError):
        store.save(FACTORY_PRESET, EncodeSettings())
    with pytest.raises(KeyError):
        store.delete(FACTORY_PRESET)


def test_missing_preset_raises_key_error(tmp_path: Path) -> None:
    store = PresetStore(tmp_path)

    with pytest.raises(KeyError):
        store.load("nope")
    with pytest.raises(KeyError):
        store.delete("nope")


def test_unknown_keys_in_preset_file_are_ignored(tmp_path: Path) -> None:
    (tmp_path / "old.yaml").write_text("crf: 18\nremoved_option: true\nuse_grain_2: true\ngrain_strength_2: '0'\n")
    store = PresetStore(tmp_path)

    loaded = store.load("old")

    assert loaded.crf == 18.0
    assert loaded.use_grain_2 is False


def test_names_are_cleaned(tmp_path: Path) -> None:
    assert clean_name("  ../evil/name  ") == "evilname"
    with pytest.raises(KeyError):
        clean_name(" / ")

    store = PresetStore(tmp_path)
    store.save("sub/dir", EncodeSettings())
    assert (tmp_path / "subdir.yaml").is_file()


def test_active_preset_tracking(tmp_path: Path) -> None:
    store = PresetStore(tmp_path)
    settings = EncodeSettings()
    settings.crf = 24
    store.save("web", settings)

    store.set_active("web")

    assert store.active == "web"
    assert store.load_active().crf == 24.0

    store.delete("web")
    assert store.active == DEFAULT_ACTIVE
    assert store.load_active() == EncodeSettings()
