"""Compile :class:`EncodeSettings` into the fixed-layout engine option record."""

from __future__ import annotations

import ctypes
import json
import math
from typing import Any, Dict, List, Tuple

from .config import PATH_MAX
from .encode_settings import EncodeSettings


class ParameterRecord(ctypes.Structure):
    """Mirror of the native ``up60p_options`` struct.

    String slots are NUL-terminated ``char[N]`` buffers; flags are C ints.
    """

    _fields_ = [
        # Core
        ("codec", ctypes.c_char * 8),
        ("crf", ctypes.c_char * 16),
        ("preset", ctypes.c_char * 32),
        ("fps", ctypes.c_char * 16),
        ("scale_factor", ctypes.c_char * 16),
        # Scaler / AI
        ("scaler", ctypes.c_char * 16),
        ("ai_backend", ctypes.c_char * 16),
        ("ai_model", ctypes.c_char * PATH_MAX),
        ("ai_model_type", ctypes.c_char * 16),
        ("dnn_backend", ctypes.c_char * 32),
        # First filter set
        ("denoiser", ctypes.c_char * 16),
        ("denoise_strength", ctypes.c_char * 16),
        ("deblock_mode", ctypes.c_char * 16),
        ("deblock_thresh", ctypes.c_char * 64),
        ("dering_active", ctypes.c_int),
        ("dering_strength", ctypes.c_char * 16),
        ("sharpen_method", ctypes.c_char * 16),
        ("sharpen_strength", ctypes.c_char * 32),
        ("usm_radius", ctypes.c_char * 16),
        ("usm_amount", ctypes.c_char * 16),
        ("usm_threshold", ctypes.c_char * 16),
        ("deband_method", ctypes.c_char * 16),
        ("deband_strength", ctypes.c_char * 32),
        ("f3kdb_range", ctypes.c_char * 16),
        ("f3kdb_y", ctypes.c_char * 16),
        ("f3kdb_cbcr", ctypes.c_char * 16),
        ("grain_strength", ctypes.c_char * 16),
        # Second filter set
        ("denoiser_2", ctypes.c_char * 16),
        ("denoise_strength_2", ctypes.c_char * 16),
        ("deblock_mode_2", ctypes.c_char * 16),
        ("deblock_thresh_2", ctypes.c_char * 64),
        ("dering_active_2", ctypes.c_int),
        ("dering_strength_2", ctypes.c_char * 16),
        ("sharpen_method_2", ctypes.c_char * 16),
        ("sharpen_strength_2", ctypes.c_char * 32),
        ("usm_radius_2", ctypes.c_char * 16),
        ("usm_amount_2", ctypes.c_char * 16),
        ("usm_threshold_2", ctypes.c_char * 16),
        ("deband_method_2", ctypes.c_char * 16),
        ("deband_strength_2", ctypes.c_char * 32),
        ("f3kdb_range_2", ctypes.c_char * 16),
        ("f3kdb_y_2", ctypes.c_char * 16),
        ("f3kdb_cbcr_2", ctypes.c_char * 16),
        ("grain_strength_2", ctypes.c_char * 16),
        ("use_denoise_2", ctypes.c_int),
        ("use_deblock_2", ctypes.c_int),
        ("use_dering_2", ctypes.c_int),
        ("use_sharpen_2", ctypes.c_int),
        ("use_deband_2", ctypes.c_int),
        ("use_grain_2", ctypes.c_int),
        # Interpolation / EQ / LUT
        ("mi_mode", ctypes.c_char * 16),
        ("eq_contrast", ctypes.c_char * 16),
        ("eq_brightness", ctypes.c_char * 16),
        ("eq_saturation", ctypes.c_char * 16),
        ("lut3d_file", ctypes.c_char * PATH_MAX),
        # Encoder extra
        ("x265_params", ctypes.c_char * 256),
        # I/O
        ("outdir", ctypes.c_char * PATH_MAX),
        ("audio_bitrate", ctypes.c_char * 32),
        ("threads", ctypes.c_char * 16),
        ("movflags", ctypes.c_char * 32),
        ("use10", ctypes.c_int),
        ("preview", ctypes.c_int),
        # Toggles
        ("no_deblock", ctypes.c_int),
        ("no_denoise", ctypes.c_int),
        ("no_decimate", ctypes.c_int),
        ("no_interpolate", ctypes.c_int),
        ("no_sharpen", ctypes.c_int),
        ("no_deband", ctypes.c_int),
        ("no_eq", ctypes.c_int),
        ("no_grain", ctypes.c_int),
        ("pci_safe_mode", ctypes.c_int),
        # Hardware
        ("hwaccel", ctypes.c_char * 16),
        ("encoder", ctypes.c_char * 16),
    ]


STRING_SLOTS: Tuple[Tuple[str, int], ...] = tuple(
    (name, ctypes.sizeof(ctype)) for name, ctype in ParameterRecord._fields_ if issubclass(ctype, ctypes.Array)
)
FLAG_SLOTS: Tuple[str, ...] = tuple(
    name for name, ctype in ParameterRecord._fields_ if not issubclass(ctype, ctypes.Array)
)
SLOT_CAPACITY: Dict[str, int] = dict(STRING_SLOTS)


def truncate_c_string(text: Any, capacity: int) -> bytes:
    """Return the bytes stored in a ``char[capacity]`` slot for ``text``.

    Everything after an embedded NUL is dropped and the result is cut to at
    most ``capacity - 1`` bytes without splitting a UTF-8 sequence.
    """

    if capacity <= 0:
        return b""
    if text is None:
        raw = b""
    elif isinstance(text, (bytes, bytearray)):
        raw = bytes(text)
    else:
        text = str(text)
        try:
            raw = text.encode("utf-8", "surrogateescape")
        except UnicodeEncodeError:
            raw = text.encode("utf-8", "replace")
    nul = raw.find(b"\x00")
    if nul >= 0:
        raw = raw[:nul]
    limit = capacity - 1
    if len(raw) <= limit:
        return raw
    cut = limit
    # Step back over continuation bytes so a multi-byte character is never split.
    while cut > 0 and (raw[cut] & 0xC0) == 0x80:
        cut -= 1
    return raw[:cut]


def _crf_text(value: Any) -> str:
    try:
        number = float(value)
        if math.isfinite(number):
            return str(int(number))
    except (TypeError, ValueError, OverflowError):
        pass
    return str(value)


def _scale_text(value: Any) -> str:
    try:
        return format(float(value), ".2f")
    except (TypeError, ValueError):
        return str(value)


def _string_values(settings: EncodeSettings, output_dir: str) -> Dict[str, Any]:
    return {
        "codec": "hevc" if settings.use_hevc else "h264",
        "crf": _crf_text(settings.crf),
        "preset": settings.preset,
        "fps": settings.fps,
        "scale_factor": _scale_text(settings.scale_factor),
        "scaler": settings.scaler,
        "ai_backend": settings.ai_backend,
        "ai_model": settings.ai_model_path,
        "ai_model_type": settings.ai_model_type,
        "dnn_backend": settings.dnn_backend,
        "denoiser": settings.denoiser,
        "denoise_strength": settings.denoise_strength,
        "deblock_mode": settings.deblock_mode,
        "deblock_thresh": settings.deblock_thresh,
        "dering_strength": settings.dering_strength,
        "sharpen_method": settings.sharpen_method,
        "sharpen_strength": settings.sharpen_strength,
        "usm_radius": settings.usm_radius,
        "usm_amount": settings.usm_amount,
        "usm_threshold": settings.usm_threshold,
        "deband_method": settings.deband_method,
        "deband_strength": settings.deband_strength,
        "f3kdb_range": settings.f3kdb_range,
        "f3kdb_y": settings.f3kdb_y,
        "f3kdb_cbcr": settings.f3kdb_cbcr,
        "grain_strength": settings.grain_strength,
        # Second set carries the attenuated values when stages are stacked.
        "denoiser_2": settings.denoiser_2,
        "denoise_strength_2": settings.effective_denoise_strength_2,
        "deblock_mode_2": settings.deblock_mode_2,
        "deblock_thresh_2": settings.deblock_thresh_2,
        "dering_strength_2": settings.dering_strength_2,
        "sharpen_method_2": settings.sharpen_method_2,
        "sharpen_strength_2": settings.effective_sharpen_strength_2,
        "usm_radius_2": settings.effective_usm_radius_2,
        "usm_amount_2": settings.effective_usm_amount_2,
        "usm_threshold_2": settings.usm_threshold_2,
        "deband_method_2": settings.deband_method_2,
        "deband_strength_2": settings.effective_deband_strength_2,
        "f3kdb_range_2": settings.f3kdb_range_2,
        "f3kdb_y_2": settings.effective_f3kdb_y_2,
        "f3kdb_cbcr_2": settings.effective_f3kdb_cbcr_2,
        "grain_strength_2": settings.grain_strength_2,
        "mi_mode": settings.interpolation,
        "eq_contrast": settings.eq_contrast,
        "eq_brightness": settings.eq_brightness,
        "eq_saturation": settings.eq_saturation,
        "lut3d_file": settings.lut_path,
        "x265_params": settings.compile_derived_parameter_string(),
        "outdir": output_dir,
        "audio_bitrate": settings.audio_bitrate,
        "threads": settings.threads,
        "movflags": settings.movflags,
        "hwaccel": settings.hwaccel,
        "encoder": settings.encoder,
    }


def _flag_values(settings: EncodeSettings) -> Dict[str, Any]:
    return {
        "dering_active": settings.dering_active,
        "dering_active_2": settings.dering_active_2,
        "use_denoise_2": settings.use_denoise_2,
        "use_deblock_2": settings.use_deblock_2,
        "use_dering_2": settings.use_dering_2,
        "use_sharpen_2": settings.use_sharpen_2,
        "use_deband_2": settings.use_deband_2,
        "use_grain_2": settings.use_grain_2,
        "use10": settings.use_10bit,
        "preview": settings.preview,
        "no_deblock": settings.no_deblock,
        "no_denoise": settings.no_denoise,
        "no_decimate": settings.no_decimate,
        "no_interpolate": settings.no_interpolate,
        "no_sharpen": settings.no_sharpen,
        "no_deband": settings.no_deband,
        "no_eq": settings.no_eq,
        "no_grain": settings.no_grain,
        "pci_safe_mode": settings.pci_safe,
    }


def compile_settings(settings: EncodeSettings, output_dir: Any = "") -> ParameterRecord:
    """Build a zero-initialised :class:`ParameterRecord` from ``settings``.

    Deterministic for equal inputs; no settings value makes it fail.
    """

    record = ParameterRecord()
    strings = _string_values(settings, "" if output_dir is None else str(output_dir))
    for name, capacity in STRING_SLOTS:
        setattr(record, name, truncate_c_string(strings.get(name, ""), capacity))
    flags = _flag_values(settings)
    for name in FLAG_SLOTS:
        setattr(record, name, 1 if flags.get(name) else 0)
    return record


def record_to_dict(record: ParameterRecord) -> Dict[str, Any]:
    """Return the canonical form of ``record``: decoded strings and integer flags."""

    payload: Dict[str, Any] = {}
    for name, ctype in ParameterRecord._fields_:
        value = getattr(record, name)
        if issubclass(ctype, ctypes.Array):
            payload[name] = value.decode("utf-8", "surrogateescape")
        else:
            payload[name] = int(value)
    return payload


def record_to_json(record: ParameterRecord) -> str:
    return json.dumps(record_to_dict(record), sort_keys=True, indent=2)


def record_bytes(record: ParameterRecord) -> bytes:
    return ctypes.string_at(ctypes.addressof(record), ctypes.sizeof(record))


__all__: List[str] = [
    "FLAG_SLOTS",
    "ParameterRecord",
    "SLOT_CAPACITY",
    "STRING_SLOTS",
    "compile_settings",
    "record_bytes",
    "record_to_dict",
    "record_to_json",
    "truncate_c_string",
]
