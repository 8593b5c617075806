"""User-editable encode settings and the invariants that keep them consistent.

Many numeric knobs are stored as text because callers accept free-form input.
They are only parsed when an invariant needs to know whether a value is zero.
Optional filter stages pair an enable flag with one or more strengths. Those
pairs are kept in agreement on every assignment. A stage can never be enabled
with only zero strengths, and enabling one reseeds its strengths with usable
defaults.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Iterable, Mapping, Optional

DENOISE_2_DEFAULTS = {
    "bm3d": 2.5,
    "hqdn3d": 4.0,
    "nlmeans": 1.0,
    "atadenoise": 9.0,
}

X265_DEFAULTS = {
    "x265_aq_mode": "3",
    "x265_psy_rd": "2.0",
    "x265_deblock1": "-2",
    "x265_deblock2": "-2",
}

_X265_KEYS = ("aq-mode", "psy-rd", "deblock")
# Keys whose value legitimately contains the outer separator.
_MULTI_VALUE_KEYS = {"deblock": 2}
_X265_SPLIT = re.compile(r"[,:]")


def _parse_number(text: Any) -> Optional[float]:
    if isinstance(text, bool):
        return float(text)
    if isinstance(text, (int, float)):
        return float(text)
    if text is None:
        return None
    stripped = str(text).strip()
    if not stripped:
        return None
    try:
        return float(stripped)
    except ValueError:
        return None


def is_zero(text: Any) -> bool:
    """Return ``True`` when ``text`` parses as a number equal to zero.

    Empty and unparsable text are not zero, so an unreadable strength keeps
    its feature active.
    """

    value = _parse_number(text)
    return value is not None and value == 0


def is_zero_or_empty(text: Any) -> bool:
    if text is None:
        return True
    if isinstance(text, str) and not text.strip():
        return True
    return is_zero(text)


def _coerce_value(value: Any, target_type: type, previous: Any) -> Any:
    """Convert ``value`` into ``target_type``; unusable floats keep ``previous``."""

    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "1", "yes", "on"}:
                return True
            if lowered in {"false", "0", "no", "off", ""}:
                return False
        return bool(value)
    if target_type is float:
        number = _parse_number(value)
        return previous if number is None else number
    if target_type is str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "1" if value else "0"
        return str(value)
    return value


def _fmt(value: float, spec: str) -> str:
    return format(value, spec)


@dataclass
class EncodeSettings:
    """Settings for one restore job.

    Assigning any public attribute goes through :meth:`set`, so the paired
    enable/strength invariants hold after every mutation.
    """

    # Codec & rate control
    use_hevc: bool = False
    crf: float = 16.0
    preset: str = "slow"
    use_10bit: bool = False
    x265_aq_mode: str = "3"
    x265_psy_rd: str = "2.0"
    x265_deblock1: str = "-2"
    x265_deblock2: str = "-2"

    # Hardware
    hwaccel: str = "none"
    encoder: str = "auto"
    threads: str = "0"

    # Frame rate & scaling
    fps: str = "60"
    scale_factor: float = 2.0
    interpolation: str = "mci"
    scaler: str = "lanczos"
    ai_model_path: str = ""
    ai_backend: str = "sr"
    ai_model_type: str = "espcn"
    dnn_backend: str = "native"

    # First filter set
    denoiser: str = "bm3d"
    denoise_strength: str = "2.5"
    deblock_mode: str = "strong"
    deblock_thresh: str = ""
    dering_active: bool = False
    dering_strength: str = "0.5"
    sharpen_method: str = "cas"
    sharpen_strength: str = "0.25"
    usm_radius: str = "5"
    usm_amount: str = "1.0"
    usm_threshold: str = "0.03"
    deband_method: str = "deband"
    deband_strength: str = "0.015"
    f3kdb_range: str = "15"
    f3kdb_y: str = "64"
    f3kdb_cbcr: str = "64"
    grain_strength: str = "1.0"

    # Second filter set
    denoiser_2: str = "bm3d"
    denoise_strength_2: str = "2.5"
    deblock_mode_2: str = "strong"
    deblock_thresh_2: str = ""
    dering_active_2: bool = False
    dering_strength_2: str = "0.5"
    sharpen_method_2: str = "cas"
    sharpen_strength_2: str = "0.25"
    usm_radius_2: str = "5"
    usm_amount_2: str = "1.0"
    usm_threshold_2: str = "0.03"
    deband_method_2: str = "deband"
    deband_strength_2: str = "0.015"
    f3kdb_range_2: str = "15"
    f3kdb_y_2: str = "64"
    f3kdb_cbcr_2: str = "64"
    grain_strength_2: str = "1.0"
    use_denoise_2: bool = False
    use_deblock_2: bool = False
    use_dering_2: bool = False
    use_sharpen_2: bool = False
    use_deband_2: bool = False
    use_grain_2: bool = False

    # Colour
    eq_contrast: str = "1.03"
    eq_brightness: str = "0.005"
    eq_saturation: str = "1.06"
    lut_path: str = ""

    # Output
    audio_bitrate: str = "192k"
    movflags: str = "+faststart"

    # Stage toggles
    no_deblock: bool = False
    no_denoise: bool = False
    no_decimate: bool = False
    no_interpolate: bool = False
    no_sharpen: bool = False
    no_deband: bool = False
    no_eq: bool = False
    no_grain: bool = False
    pci_safe: bool = False
    preview: bool = False

    _ready: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for group in PAIRED_GROUPS:
            if group.is_degenerate(self):
                for flag in group.flags:
                    object.__setattr__(self, flag, False)
        self._ready = True

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or not getattr(self, "_ready", False):
            object.__setattr__(self, name, value)
            return
        self.set(name, value)

    # ---- mutation ----------------------------------------------------------------
    def set(self, name: str, value: Any) -> None:
        """Assign ``name`` and re-evaluate every paired group it belongs to.

        Raises :class:`KeyError` for names that are not settings fields.
        """

        target_type = FIELD_TYPES.get(name)
        if target_type is None:
            raise KeyError(name)
        previous = getattr(self, name)
        coerced = _coerce_value(value, target_type, previous)
        object.__setattr__(self, name, coerced)
        for group in PAIRED_GROUPS:
            group.on_change(self, name, previous, coerced)

    def update(self, **values: Any) -> None:
        for name, value in values.items():
            self.set(name, value)

    def reset_to_defaults(self) -> None:
        for name, default in FIELD_DEFAULTS.items():
            object.__setattr__(self, name, default)

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in FIELD_TYPES}

    def apply_dict(self, payload: Mapping[str, Any]) -> list[str]:
        """Apply known keys from ``payload`` in order and return the ignored ones."""

        ignored: list[str] = []
        for key, value in payload.items():
            if key in FIELD_TYPES:
                self.set(key, value)
            else:
                ignored.append(str(key))
        return ignored

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EncodeSettings":
        instance = cls()
        instance.apply_dict(payload)
        return instance

    # ---- derived x265 parameter string -------------------------------------------
    def compile_derived_parameter_string(self) -> str:
        """Return ``aq-mode=..,psy-rd=..,deblock=d1,d2`` skipping empty values."""

        parts: list[str] = []
        if self.x265_aq_mode:
            parts.append(f"aq-mode={self.x265_aq_mode}")
        if self.x265_psy_rd:
            parts.append(f"psy-rd={self.x265_psy_rd}")
        if self.x265_deblock1 or self.x265_deblock2:
            parts.append(f"deblock={self.x265_deblock1},{self.x265_deblock2}")
        return ",".join(parts)

    @property
    def x265_params(self) -> str:
        return self.compile_derived_parameter_string()

    def parse_derived_parameter_string(self, text: Optional[str]) -> None:
        """Load the x265 sub-parameters from a ``,`` or ``:`` separated string.

        Keys absent from ``text`` fall back to their defaults. A fragment
        without ``=`` continues the previous key when that key takes several
        values (``deblock=-1,-3``); otherwise it is ignored.
        """

        collected: dict[str, list[str]] = {}
        current: Optional[str] = None
        for fragment in _X265_SPLIT.split(text or ""):
            if "=" in fragment:
                key, _, value = fragment.partition("=")
                key = key.strip().lower()
                current = key if key in _X265_KEYS else None
                if current is not None:
                    collected[current] = [value.strip()]
                continue
            limit = _MULTI_VALUE_KEYS.get(current or "")
            if limit and len(collected[current]) < limit:
                collected[current].append(fragment.strip())
            else:
                current = None

        values = dict(X265_DEFAULTS)
        if "aq-mode" in collected:
            values["x265_aq_mode"] = collected["aq-mode"][0]
        if "psy-rd" in collected:
            values["x265_psy_rd"] = collected["psy-rd"][0]
        if "deblock" in collected:
            deblock = collected["deblock"]
            values["x265_deblock1"] = deblock[0]
            if len(deblock) > 1:
                values["x265_deblock2"] = deblock[1]
        for name, value in values.items():
            object.__setattr__(self, name, value)

    # ---- filter stacking ---------------------------------------------------------
    @property
    def is_sharpen_stacked(self) -> bool:
        return not self.no_sharpen and self.use_sharpen_2

    @property
    def is_denoise_stacked(self) -> bool:
        return not self.no_denoise and self.use_denoise_2

    @property
    def is_deband_stacked(self) -> bool:
        return not self.no_deband and self.use_deband_2

    @property
    def has_filter_stacking(self) -> bool:
        return self.is_sharpen_stacked or self.is_denoise_stacked or self.is_deband_stacked

    @property
    def sharpen_2_attenuation(self) -> float:
        if not self.is_sharpen_stacked:
            return 1.0
        first, second = self.sharpen_method, self.sharpen_method_2
        if first == "unsharp" and second == "unsharp":
            return 0.35
        if first == "unsharp" or second == "unsharp":
            return 0.5
        return 0.6

    @property
    def denoise_2_attenuation(self) -> float:
        return 0.55 if self.is_denoise_stacked else 1.0

    @property
    def deband_2_attenuation(self) -> float:
        return 0.6 if self.is_deband_stacked else 1.0

    def _attenuate(
        self,
        raw: str,
        active: bool,
        factor: float,
        spec: str,
        low: float = 0.0,
        high: float = math.inf,
    ) -> str:
        if not active:
            return raw
        value = _parse_number(raw)
        if value is None or not math.isfinite(value):
            return raw
        return _fmt(max(low, min(high, value * factor)), spec)

    @property
    def effective_sharpen_strength_2(self) -> str:
        return self._attenuate(
            self.sharpen_strength_2,
            self.is_sharpen_stacked and self.sharpen_method_2 == "cas",
            self.sharpen_2_attenuation,
            ".3f",
            0.0,
            1.0,
        )

    @property
    def effective_usm_amount_2(self) -> str:
        return self._attenuate(
            self.usm_amount_2,
            self.is_sharpen_stacked and self.sharpen_method_2 == "unsharp",
            self.sharpen_2_attenuation,
            ".2f",
            -2.0,
            5.0,
        )

    @property
    def effective_usm_radius_2(self) -> str:
        # Radius is reduced less than amount.
        return self._attenuate(
            self.usm_radius_2,
            self.is_sharpen_stacked and self.sharpen_method_2 == "unsharp",
            self.sharpen_2_attenuation + 0.2,
            ".0f",
            3.0,
            23.0,
        )

    @property
    def effective_denoise_strength_2(self) -> str:
        if self.is_denoise_stacked and self.denoise_strength_2.strip().lower() == "auto":
            return "auto"
        return self._attenuate(
            self.denoise_strength_2, self.is_denoise_stacked, self.denoise_2_attenuation, ".2f"
        )

    @property
    def effective_deband_strength_2(self) -> str:
        return self._attenuate(
            self.deband_strength_2, self.is_deband_stacked, self.deband_2_attenuation, ".4f"
        )

    @property
    def effective_f3kdb_y_2(self) -> str:
        return self._attenuate(
            self.f3kdb_y_2,
            self.is_deband_stacked and self.deband_method_2 == "f3kdb",
            self.deband_2_attenuation,
            ".0f",
            16.0,
            512.0,
        )

    @property
    def effective_f3kdb_cbcr_2(self) -> str:
        return self._attenuate(
            self.f3kdb_cbcr_2,
            self.is_deband_stacked and self.deband_method_2 == "f3kdb",
            self.deband_2_attenuation,
            ".0f",
            16.0,
            512.0,
        )

    def stacking_summary(self) -> list[str]:
        """Describe the attenuation applied to stacked second-set filters."""

        lines: list[str] = []
        if self.is_sharpen_stacked:
            pct = round((1.0 - self.sharpen_2_attenuation) * 100)
            lines.append(f"Sharpen 2nd set: reduced by {pct}% to prevent over-sharpening")
        if self.is_denoise_stacked:
            pct = round((1.0 - self.denoise_2_attenuation) * 100)
            lines.append(f"Denoise 2nd set: reduced by {pct}% to prevent over-smoothing")
        if self.is_deband_stacked:
            pct = round((1.0 - self.deband_2_attenuation) * 100)
            lines.append(f"Deband 2nd set: reduced by {pct}% to prevent banding artifacts")
        return lines


@dataclass(frozen=True)
class PairedGroup:
    """An optional filter stage: enable flags plus the strengths that make it do something.

    ``params`` returns the sub-parameters that matter for the stage's current
    method, ``reseed`` the values written when the stage is enabled while
    degenerate. ``watched`` lists every field whose change can make the stage
    degenerate (all possible sub-parameters plus the method selector).
    """

    name: str
    flags: tuple[str, ...]
    watched: frozenset[str]
    params: Callable[[EncodeSettings], tuple[str, ...]]
    reseed: Callable[[EncodeSettings], dict[str, str]]

    def is_degenerate(self, settings: EncodeSettings) -> bool:
        return all(is_zero_or_empty(getattr(settings, param)) for param in self.params(settings))

    def on_change(self, settings: EncodeSettings, name: str, previous: Any, value: Any) -> None:
        if name in self.flags:
            if value and not previous and self.is_degenerate(settings):
                for param, seed in self.reseed(settings).items():
                    object.__setattr__(settings, param, seed)
            elif value and self.is_degenerate(settings):
                object.__setattr__(settings, name, False)
            return
        if name in self.watched and self.is_degenerate(settings):
            for flag in self.flags:
                object.__setattr__(settings, flag, False)


def _group(
    name: str,
    flags: Iterable[str],
    watched: Iterable[str],
    params: Callable[[EncodeSettings], tuple[str, ...]],
    reseed: Callable[[EncodeSettings], dict[str, str]],
) -> PairedGroup:
    return PairedGroup(name, tuple(flags), frozenset(watched), params, reseed)


def _denoise_2_seed(settings: EncodeSettings) -> dict[str, str]:
    default = DENOISE_2_DEFAULTS.get(settings.denoiser_2, 2.5)
    return {"denoise_strength_2": f"{default:.2f}"}


def _sharpen_2_params(settings: EncodeSettings) -> tuple[str, ...]:
    if settings.sharpen_method_2 == "unsharp":
        return ("usm_radius_2", "usm_amount_2", "usm_threshold_2")
    return ("sharpen_strength_2",)


def _sharpen_2_seed(settings: EncodeSettings) -> dict[str, str]:
    if settings.sharpen_method_2 == "unsharp":
        return {"usm_radius_2": "5", "usm_amount_2": "1.0", "usm_threshold_2": "0.03"}
    return {"sharpen_strength_2": "0.25"}


def _deband_2_params(settings: EncodeSettings) -> tuple[str, ...]:
    if settings.deband_method_2 == "f3kdb":
        return ("f3kdb_range_2", "f3kdb_y_2", "f3kdb_cbcr_2")
    return ("deband_strength_2",)


def _deband_2_seed(settings: EncodeSettings) -> dict[str, str]:
    if settings.deband_method_2 == "f3kdb":
        return {"f3kdb_range_2": "15", "f3kdb_y_2": "64", "f3kdb_cbcr_2": "64"}
    return {"deband_strength_2": "0.015"}


PAIRED_GROUPS: tuple[PairedGroup, ...] = (
    _group(
        "dering",
        ["dering_active"],
        ["dering_strength"],
        lambda s: ("dering_strength",),
        lambda s: {"dering_strength": "0.5"},
    ),
    _group(
        "denoise_2",
        ["use_denoise_2"],
        ["denoise_strength_2"],
        lambda s: ("denoise_strength_2",),
        _denoise_2_seed,
    ),
    _group(
        "deblock_2",
        ["use_deblock_2"],
        ["deblock_thresh_2"],
        lambda s: ("deblock_thresh_2",),
        lambda s: {"deblock_thresh_2": "0.5"},
    ),
    _group(
        "dering_2",
        ["use_dering_2", "dering_active_2"],
        ["dering_strength_2"],
        lambda s: ("dering_strength_2",),
        lambda s: {"dering_strength_2": "0.5"},
    ),
    _group(
        "sharpen_2",
        ["use_sharpen_2"],
        ["sharpen_method_2", "sharpen_strength_2", "usm_radius_2", "usm_amount_2", "usm_threshold_2"],
        _sharpen_2_params,
        _sharpen_2_seed,
    ),
    _group(
        "deband_2",
        ["use_deband_2"],
        ["deband_method_2", "deband_strength_2", "f3kdb_range_2", "f3kdb_y_2", "f3kdb_cbcr_2"],
        _deband_2_params,
        _deband_2_seed,
    ),
    _group(
        "grain_2",
        ["use_grain_2"],
        ["grain_strength_2"],
        lambda s: ("grain_strength_2",),
        lambda s: {"grain_strength_2": "1.0"},
    ),
)

FIELD_DEFAULTS: dict[str, Any] = {
    info.name: info.default for info in fields(EncodeSettings) if not info.name.startswith("_")
}
FIELD_TYPES: dict[str, type] = {name: type(default) for name, default in FIELD_DEFAULTS.items()}


__all__ = [
    "EncodeSettings",
    "FIELD_DEFAULTS",
    "FIELD_TYPES",
    "PAIRED_GROUPS",
    "PairedGroup",
    "X265_DEFAULTS",
    "DENOISE_2_DEFAULTS",
    "is_zero",
    "is_zero_or_empty",
]
