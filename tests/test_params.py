from __future__ import annotations

import ctypes
import json
from pathlib import Path

from restoreforge.encode_settings import EncodeSettings
from restoreforge.params import (
    FLAG_SLOTS,
    SLOT_CAPACITY,
    ParameterRecord,
    compile_settings,
    record_bytes,
    record_to_dict,
    record_to_json,
    truncate_c_string,
)

FIXTURES = Path(__file__).parent / "fixtures"


def test_default_settings_match_golden_record() -> None:
    expected = json.loads((FIXTURES / "video_options.json").read_text(encoding="utf8"))

    record = compile_settings(EncodeSettings(), "")

    assert record_to_dict(record) == expected
    assert json.loads(record_to_json(record)) == expected


def test_record_layout_matches_native_struct() -> None:
    assert SLOT_CAPACITY["codec"] == 8
    assert SLOT_CAPACITY["ai_model"] == 4096
    assert SLOT_CAPACITY["x265_params"] == 256
    assert FLAG_SLOTS[0] == "dering_active"
    assert FLAG_SLOTS[-1] == "pci_safe_mode"
    assert ParameterRecord._fields_[0][0] == "codec"
    assert ParameterRecord._fields_[-1][0] == "encoder"
    assert len(record_bytes(ParameterRecord())) == ctypes.sizeof(ParameterRecord)


def test_compile_is_deterministic() -> None:
    settings = EncodeSettings()
    settings.update(use_hevc=True, crf=22.7, use_10bit=True, pci_safe=True)

    first = compile_settings(settings, "/srv/out")
    second = compile_settings(settings, "/srv/out")

    assert record_bytes(first) == record_bytes(second)
    payload = record_to_dict(first)
    assert payload["codec"] == "hevc"
    assert payload["crf"] == "22"
    assert payload["use10"] == 1
    assert payload["pci_safe_mode"] == 1
    assert payload["outdir"] == "/srv/out"


def test_second_set_carries_attenuated_values() -> None:
    settings = EncodeSettings()
    settings.update(use_sharpen_2=True, use_deband_2=True)

    payload = record_to_dict(compile_settings(settings))

    assert payload["use_sharpen_2"] == 1
    assert payload["sharpen_strength_2"] == "0.150"
    assert payload["deband_strength_2"] == "0.0090"


def test_renamed_fields_land_in_their_slots() -> None:
    settings = EncodeSettings()
    settings.update(interpolation="blend", lut_path="/luts/a.cube", ai_model_path="/models/x.pb", scale_factor=1.5)

    payload = record_to_dict(compile_settings(settings))

    assert payload["mi_mode"] == "blend"
    assert payload["lut3d_file"] == "/luts/a.cube"
    assert payload["ai_model"] == "/models/x.pb"
    assert payload["scale_factor"] == "1.50"


def test_long_values_are_truncated_to_capacity() -> None:
    settings = EncodeSettings()
    settings.preset = "p" * 100

    payload = record_to_dict(compile_settings(settings))

    assert payload["preset"] == "p" * 31


def test_truncate_never_splits_multibyte_characters() -> None:
    text = "é" * 10  # two bytes each

    assert truncate_c_string(text, 8) == ("é" * 3).encode("utf-8")
    assert truncate_c_string(text, 9) == ("é" * 4).encode("utf-8")


def test_truncate_drops_everything_after_nul() -> None:
    assert truncate_c_string("abc\x00def", 16) == b"abc"
    assert truncate_c_string(None, 16) == b""
    assert truncate_c_string("abc", 0) == b""


def test_unicode_output_folder_survives_compilation() -> None:
    payload = record_to_dict(compile_settings(EncodeSettings(), "/tmp/Видео 日本"))

    assert payload["outdir"] == "/tmp/Видео 日本"
