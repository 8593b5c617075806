"""FFmpeg/ffprobe utilities used by the restore engine."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Mapping, Optional, Union

from .config import IMAGE_EXTENSIONS, IMAGE_OUTPUT_EXTENSION, OUTPUT_SUFFIX, VIDEO_OUTPUT_EXTENSION
from .params import ParameterRecord, record_to_dict

FFMPEG_ENV_VARS = ("RESTOREFORGE_FFMPEG", "FFMPEG_PATH")

Options = Mapping[str, Union[str, int]]


class FFmpegError(RuntimeError):
    """Raised when FFmpeg or ffprobe exits with a failure."""


def _split_name(path: Union[str, Path]) -> tuple[str, str]:
    text = str(path).rstrip("/" + os.sep)
    name = text.replace(os.sep, "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    return (name[:dot], name[dot:]) if dot >= 0 else (name, "")


def is_image(path: Union[str, Path]) -> bool:
    return _split_name(path)[1].lower() in IMAGE_EXTENSIONS


def predicted_output_name(input_path: Union[str, Path]) -> str:
    """Return the file name the engine writes for ``input_path``.

    The last path component loses its final extension and gains
    ``_[restored]`` plus ``.png`` for still images or ``.mp4`` otherwise.
    """

    base, _ = _split_name(input_path)
    output_extension = IMAGE_OUTPUT_EXTENSION if is_image(input_path) else VIDEO_OUTPUT_EXTENSION
    return f"{base}{OUTPUT_SUFFIX}{output_extension}"


def output_file_for(input_path: Union[str, Path], output_dir: Union[str, Path, None] = None) -> Path:
    """Return ``<output_dir>/<predicted name>``, defaulting to the input's folder."""

    source = Path(str(input_path))
    directory = Path(str(output_dir)) if output_dir else source.parent
    return directory / predicted_output_name(input_path)


def _strength(text: Union[str, int, None]) -> float:
    """Parse a filter strength; ``auto``, negative or malformed values give 0."""

    if text is None or text == "auto":
        return 0.0
    try:
        value = float(text)
    except (TypeError, ValueError):
        return 0.0
    return value if value >= 0 else 0.0


def _float(text: Union[str, int, None]) -> float:
    try:
        return float(text)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def _hqdn3d(strength_text: str) -> str:
    strength = _strength(strength_text) or 4.0
    luma = min(10.0, max(1.0, strength))
    luma_tmp = luma * 1.5
    return f"hqdn3d={luma:.2f}:{luma * 0.75:.2f}:{luma_tmp:.2f}:{luma_tmp * 0.75:.2f}"


def _nlmeans(strength_text: str) -> str:
    strength = min(30.0, max(1.0, _strength(strength_text) or 1.0))
    patch = 7
    for bound, size in ((5.0, 9), (10.0, 11), (15.0, 13), (20.0, 15)):
        if strength > bound:
            patch = size
    research = 15
    for bound, size in ((5.0, 17), (10.0, 19), (15.0, 21), (20.0, 23), (25.0, 25)):
        if strength > bound:
            research = size
    return f"nlmeans=s={strength:.2f}:p={patch}:r={research}"


def _atadenoise(strength_text: str) -> str:
    threshold = min(20.0, max(1.0, _strength(strength_text) or 9.0))
    param_a = 0.01 + (threshold / 20.0) * 0.03
    param_b = 0.02 + (threshold / 20.0) * 0.06
    return f"atadenoise=s={threshold:.2f}:0a={param_a:.3f}:0b={param_b:.3f}"


def _bm3d(strength_text: str) -> str:
    if strength_text == "auto":
        return "bm3d=estim=final:planes=1"
    sigma = min(20.0, _strength(strength_text) or 2.5)
    return f"bm3d=sigma={sigma:.2f}:estim=basic:planes=1"


def _denoise(denoiser: str, strength_text: str) -> Optional[str]:
    builders = {"bm3d": _bm3d, "hqdn3d": _hqdn3d, "nlmeans": _nlmeans, "atadenoise": _atadenoise}
    builder = builders.get(denoiser)
    return builder(strength_text) if builder else None


def _dering(strength_text: str) -> str:
    luma = (_strength(strength_text) or 0.5) * 8.0
    chroma = luma * 0.75
    luma_tmp = luma * 1.5
    chroma_tmp = luma_tmp * 0.75
    luma = min(luma, 15.0)
    return f"hqdn3d={luma:.2f}:{chroma:.2f}:{luma_tmp:.2f}:{chroma_tmp:.2f}"


def _deblock(mode: str, threshold: str) -> str:
    if threshold:
        return f"deblock=filter={mode}:block=8:{threshold}"
    return f"deblock=filter={mode}:block=8"


def _sharpen(method: str, strength: str, radius: str, amount: str) -> str:
    if method == "unsharp":
        return f"unsharp={radius}:{radius}:{amount}"
    return f"cas=strength={strength}"


def _deband(method: str, strength: str, f3kdb_range: str, f3kdb_y: str, f3kdb_cbcr: str) -> str:
    if method == "gradfun":
        return f"gradfun={strength}"
    if method == "f3kdb":
        y = _float(f3kdb_y)
        cbcr = _float(f3kdb_cbcr)
        thr_y = y / 2000.0 if y > 0 else 0.03
        thr_c = cbcr / 2000.0 if cbcr > 0 else 0.015
        thr_y = max(0.001, min(0.5, thr_y))
        thr_c = min(0.5, thr_c)
        radius = int(_float(f3kdb_range))
        if radius < 1:
            radius = 16
        return f"deband=1thr={thr_y:.5f}:2thr={thr_c:.5f}:3thr={thr_c:.5f}:range={radius}:blur=0"
    return f"deband=1thr={strength}:b=1"


def _scaler(o: Options) -> str:
    factor = o["scale_factor"]
    scaler = o["scaler"]
    if scaler == "zscale":
        return (
            f"zscale=w=trunc(iw*{factor}/2)*2:h=trunc(ih*{factor}/2)*2"
            ":filter=lanczos:dither=error_diffusion"
        )
    if scaler == "ai":
        if o["ai_backend"] == "sr":
            chain = f"sr=dnn_backend={o['dnn_backend']}:model='{o['ai_model']}'"
            if o["ai_model_type"] == "srcnn":
                chain += f":scale_factor={factor}"
            return chain
        return f"dnn_processing=dnn_backend={o['dnn_backend']}:model='{o['ai_model']}':input=x:output=y"
    if scaler == "hw":
        if o["hwaccel"] == "cuda":
            return f"scale_npp=trunc(iw*{factor}/2)*2:trunc(ih*{factor}/2)*2"
        return f"scale=trunc(iw*{factor}/2)*2:trunc(ih*{factor}/2)*2:flags=lanczos"
    return f"scale=trunc(iw*{factor}/2)*2:trunc(ih*{factor}/2)*2:flags=lanczos+accurate_rnd"


def pixel_format(o: Options) -> str:
    if o["pci_safe_mode"]:
        return "yuv420p"
    if o["use10"]:
        return "p010le" if o["encoder"] in {"nvenc", "hevc_nvenc"} else "yuv420p10le"
    return "yuv420p"


def video_codec(o: Options) -> str:
    encoder = o["encoder"]
    if o["codec"] == "hevc":
        return {"nvenc": "hevc_nvenc", "qsv": "hevc_qsv", "vaapi": "hevc_vaapi"}.get(str(encoder), "libx265")
    return {"nvenc": "h264_nvenc", "qsv": "h264_qsv", "vaapi": "h264_vaapi"}.get(str(encoder), "libx264")


def x265_argument(params: str) -> str:
    """Rejoin a comma-separated x265 string with ``:`` as ffmpeg expects.

    Only commas that start a new ``key=value`` fragment are replaced, so
    ``deblock=-2,-2`` keeps its inner comma.
    """

    fragments = params.split(",")
    joined = fragments[0]
    for fragment in fragments[1:]:
        head = fragment.lstrip(" \t").split(":", 1)[0]
        joined += (":" if "=" in head else ",") + fragment
    return joined


def build_filter_chain(record: ParameterRecord, *, image: bool = False) -> str:
    """Return the ``-vf`` graph applied to the input."""

    o = record_to_dict(record)
    chain: List[str] = []
    if not image:
        chain.append("format=yuv420p" if o["pci_safe_mode"] else "format=yuv444p16le")
        if not o["no_decimate"]:
            chain.append("mpdecimate=hi=64*12,setpts=PTS")

    if not o["no_deblock"]:
        chain.append(_deblock(o["deblock_mode"], o["deblock_thresh"]))
    if o["dering_active"]:
        chain.append(_dering(o["dering_strength"]))
    if not o["no_denoise"]:
        denoise = _denoise(o["denoiser"], o["denoise_strength"])
        if denoise:
            chain.append(denoise)

    if not image and not o["no_interpolate"]:
        motion = f"mi_mode={o['mi_mode']}:mc_mode=aobmc:me_mode=bidir:vsbmc=1"
        if o["fps"] in {"source", "lock"}:
            chain.append(f"minterpolate={motion}")
        else:
            chain.append(f"minterpolate=fps={o['fps']}:{motion}")

    chain.append(_scaler(o))

    if not o["no_sharpen"]:
        chain.append(_sharpen(o["sharpen_method"], o["sharpen_strength"], o["usm_radius"], o["usm_amount"]))
    if not o["no_deband"]:
        chain.append(
            _deband(o["deband_method"], o["deband_strength"], o["f3kdb_range"], o["f3kdb_y"], o["f3kdb_cbcr"])
        )
    if not o["no_eq"]:
        chain.append(
            f"eq=contrast={o['eq_contrast']}:brightness={o['eq_brightness']}:saturation={o['eq_saturation']}"
        )
        if o["lut3d_file"]:
            chain.append(f"lut3d=file='{o['lut3d_file']}'")

    # Second filter set
    if o["use_deblock_2"] and not o["no_deblock"]:
        chain.append(_deblock(o["deblock_mode_2"], o["deblock_thresh_2"]))
    if o["use_dering_2"] and o["dering_active_2"]:
        chain.append(_dering(o["dering_strength_2"]))
    if o["use_denoise_2"] and not o["no_denoise"]:
        denoise = _denoise(o["denoiser_2"], o["denoise_strength_2"])
        if denoise:
            chain.append(denoise)
    if o["use_sharpen_2"] and not o["no_sharpen"]:
        chain.append(
            _sharpen(o["sharpen_method_2"], o["sharpen_strength_2"], o["usm_radius_2"], o["usm_amount_2"])
        )
    if o["use_deband_2"] and not o["no_deband"]:
        chain.append(
            _deband(
                o["deband_method_2"],
                o["deband_strength_2"],
                o["f3kdb_range_2"],
                o["f3kdb_y_2"],
                o["f3kdb_cbcr_2"],
            )
        )

    if not o["no_grain"]:
        grain = o["grain_strength_2"] if o["use_grain_2"] else o["grain_strength"]
        chain.append(f"noise=alls={grain}:allf=t")

    if not image:
        chain.append(f"format={pixel_format(o)}")
        if o["use10"] and not o["pci_safe_mode"]:
            chain.append("limiter=min=64:max=940:planes=15")
        else:
            chain.append("limiter=min=16:max=235:planes=15")
        chain.append("setsar=1")
    return ",".join(chain)


class FFmpegTooling:
    """Thin wrapper around FFmpeg/ffprobe commands."""

    def __init__(self, ffmpeg_bin: Optional[str] = None, ffprobe_bin: str = "ffprobe") -> None:
        if ffmpeg_bin is None:
            ffmpeg_bin = next((os.environ[var] for var in FFMPEG_ENV_VARS if os.environ.get(var)), "ffmpeg")
        self.ffmpeg_bin = shutil.which(ffmpeg_bin) or ffmpeg_bin
        self.ffprobe_bin = shutil.which(ffprobe_bin) or ffprobe_bin

    def available(self) -> bool:
        """Return ``True`` when the ffmpeg binary resolves to an executable."""

        return shutil.which(self.ffmpeg_bin) is not None

    def probe_format(self, media: Path) -> dict:
        """Return ffprobe's ``format`` section for ``media``."""

        command = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration,format_name,bit_rate",
            "-of",
            "json",
            str(media),
        ]
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise FFmpegError(f"ffprobe could not be started: {exc}") from exc
        if result.returncode != 0:
            raise FFmpegError(result.stderr.strip() or "ffprobe failed")
        try:
            payload = json.loads(result.stdout or "{}")
        except ValueError as exc:
            raise FFmpegError("ffprobe returned malformed JSON") from exc
        return payload.get("format") or {}

    def probe_duration(self, media: Path) -> float:
        """Return the container duration of ``media`` in seconds, or ``0.0`` when unknown."""

        if is_image(media):
            return 0.0
        try:
            duration = float(self.probe_format(media).get("duration") or 0.0)
        except (FFmpegError, TypeError, ValueError):
            return 0.0
        return duration if duration > 0 else 0.0

    def build_command(self, input_path: Path, output_path: Path, record: ParameterRecord) -> List[str]:
        """Return the full ffmpeg argv restoring ``input_path`` into ``output_path``."""

        o = record_to_dict(record)
        image = is_image(input_path)
        chain = build_filter_chain(record, image=image)

        command = [self.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-stats", "-y"]
        if o["hwaccel"] and o["hwaccel"] != "none":
            command += ["-hwaccel", str(o["hwaccel"])]
        command += ["-i", str(input_path)]

        if o["preview"]:
            command += ["-filter_complex", f"[0:v]{chain},split=2[main][prev]", "-map", "[main]", "-map", "0:a?"]
        else:
            command += ["-vf", chain, "-map", "0:v:0", "-map", "0:a?"]

        if image:
            command += ["-frames:v", "1"]
        else:
            codec = video_codec(o)
            command += ["-c:v", codec]
            if "hevc" in codec or "265" in codec:
                command += ["-tag:v", "hvc1"]
            command += ["-pix_fmt", pixel_format(o)]
            if o["threads"]:
                command += ["-threads", str(o["threads"])]
            if "vaapi" not in codec:
                command += ["-preset", str(o["preset"]), "-crf", str(o["crf"])]
            if codec == "libx265" and o["x265_params"]:
                command += ["-x265-params", x265_argument(str(o["x265_params"]))]
            command += ["-c:a", "aac", "-b:a", str(o["audio_bitrate"])]
            if o["movflags"]:
                command += ["-movflags", str(o["movflags"])]
        command.append(str(output_path))

        if o["preview"]:
            command += ["-map", "[prev]", "-c:v", "rawvideo", "-f", "sdl", "Live Preview"]
        return command


__all__ = [
    "FFmpegError",
    "FFmpegTooling",
    "build_filter_chain",
    "is_image",
    "output_file_for",
    "predicted_output_name",
    "pixel_format",
    "video_codec",
    "x265_argument",
]
