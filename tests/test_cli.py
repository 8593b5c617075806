from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from restoreforge import cli
from restoreforge.errors import EngineStatus
from restoreforge.ffmpeg import output_file_for
from restoreforge.params import record_to_dict

runner = CliRunner()

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
paths:
  presets_dir: {tmp_path / "presets"}
  logs_dir: {tmp_path / "logs"}
completion:
  poll_interval: 0.01
  max_attempts: 3
""".strip()
    )
    return path


class DummyProbe:
    def __init__(self, _tooling=None) -> None:
        pass

    async def probe(self, path) -> float:
        return 0.0


class WritingEngine:
    """Writes the expected output file and reports ``status``."""

    def __init__(self, status: int = EngineStatus.OK, write: bool = True) -> None:
        self.status = status
        self.write = write

    async def process(self, input_path, record, channel) -> int:
        output = output_file_for(input_path, record_to_dict(record)["outdir"] or None)
        if self.write:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"restored")
        channel.push("frame=  10 fps=5.0 time=00:00:01.00 speed=1.0x")
        if self.status == EngineStatus.OK:
            channel.push("Done.")
        else:
            channel.push("Error: something broke")
        return self.status

    def cancel(self) -> None:
        pass


def _patch_engine(monkeypatch, engine) -> None:
    monkeypatch.setattr(cli, "build_engine", lambda _settings: engine)
    monkeypatch.setattr(cli, "FFprobeDurationProbe", DummyProbe)


def test_no_command_prints_help() -> None:
    result = runner.invoke(cli.app, [])

    assert result.exit_code == 0
    assert "Usage" in result.output


def test_compile_prints_golden_record(config_file: Path) -> None:
    result = runner.invoke(cli.app, ["compile", "--config", str(config_file)])

    assert result.exit_code == 0
    expected = json.loads((FIXTURES / "video_options.json").read_text(encoding="utf8"))
    assert json.loads(result.stdout) == expected


def test_compile_applies_overrides(config_file: Path) -> None:
    result = runner.invoke(
        cli.app,
        ["compile", "--config", str(config_file), "--set", "crf=20.9", "--set", "x265_params=aq-mode=1:deblock=0,0"],
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["crf"] == "20"
    assert payload["x265_params"] == "aq-mode=1,psy-rd=2.0,deblock=0,0"


def test_compile_rejects_unknown_setting(config_file: Path) -> None:
    result = runner.invoke(cli.app, ["compile", "--config", str(config_file), "--set", "warp_speed=9"])

    assert result.exit_code == 2
    assert "warp_speed" in result.output


def test_compile_rejects_malformed_assignment(config_file: Path) -> None:
    result = runner.invoke(cli.app, ["compile", "--config", str(config_file), "--set", "crf"])

    assert result.exit_code == 2


def test_preset_lifecycle(config_file: Path, tmp_path: Path) -> None:
    saved = runner.invoke(cli.app, ["presets", "save", "web", "--set", "crf=24", "--config", str(config_file)])
    assert saved.exit_code == 0
    assert (tmp_path / "presets" / "web.yaml").is_file()

    used = runner.invoke(cli.app, ["presets", "use", "web", "--config", str(config_file)])
    assert used.exit_code == 0

    listed = runner.invoke(cli.app, ["presets", "list", "--config", str(config_file)])
    assert listed.exit_code == 0
    assert listed.stdout.splitlines() == ["  factory", "* web"]

    compiled = runner.invoke(cli.app, ["compile", "--config", str(config_file)])
    assert json.loads(compiled.stdout)["crf"] == "24"

    deleted = runner.invoke(cli.app, ["presets", "delete", "web", "--config", str(config_file)])
    assert deleted.exit_code == 0
    assert not (tmp_path / "presets" / "web.yaml").exists()


def test_preset_use_and_delete_unknown(config_file: Path) -> None:
    assert runner.invoke(cli.app, ["presets", "use", "ghost", "--config", str(config_file)]).exit_code == 1
    assert runner.invoke(cli.app, ["presets", "delete", "ghost", "--config", str(config_file)]).exit_code == 1


def test_run_with_unknown_preset_is_usage_error(config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")

    result = runner.invoke(cli.app, ["run", str(media), "--preset", "ghost", "--config", str(config_file)])

    assert result.exit_code == 2


def test_run_completes_and_reports_output(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    _patch_engine(monkeypatch, WritingEngine())

    result = runner.invoke(cli.app, ["run", str(media), "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "clip_[restored].mp4").read_bytes() == b"restored"
    assert "completed" in result.output
    assert list((tmp_path / "logs").glob("*.log"))


def test_run_honours_output_dir(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    _patch_engine(monkeypatch, WritingEngine())

    result = runner.invoke(
        cli.app, ["run", str(media), "--output-dir", str(tmp_path / "exports"), "--config", str(config_file)]
    )

    assert result.exit_code == 0, result.output
    assert (tmp_path / "exports" / "clip_[restored].mp4").is_file()


def test_run_failure_exits_with_one(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    _patch_engine(monkeypatch, WritingEngine(EngineStatus.INTERNAL, write=False))

    result = runner.invoke(cli.app, ["run", str(media), "--config", str(config_file)])

    assert result.exit_code == 1
    assert "failed" in result.output
    assert "Error: something broke" in result.output


def test_run_cancelled_by_engine_exits_with_130(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    _patch_engine(monkeypatch, WritingEngine(EngineStatus.CANCELLED, write=False))

    result = runner.invoke(cli.app, ["run", str(media), "--config", str(config_file)])

    assert result.exit_code == 130


def test_run_missing_input_fails(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    _patch_engine(monkeypatch, WritingEngine())

    result = runner.invoke(cli.app, ["run", str(tmp_path / "absent.mkv"), "--config", str(config_file)])

    assert result.exit_code == 1
    assert not (tmp_path / "absent_[restored].mp4").exists()


def test_run_dry_run_prints_command(monkeypatch, config_file: Path, tmp_path: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    monkeypatch.setattr(cli, "FFprobeDurationProbe", DummyProbe)

    result = runner.invoke(cli.app, ["run", str(media), "--dry-run", "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "CMD: " in result.output
    assert "-hide_banner" in result.output


def test_probe_reports_duration(monkeypatch, tmp_path: Path, config_file: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    monkeypatch.setattr(cli.FFmpegTooling, "probe_duration", lambda self, path: 3725.0)

    result = runner.invoke(cli.app, ["probe", str(media), "--config", str(config_file)])

    assert result.exit_code == 0
    assert "clip.mkv: 3725.00s (1:02:05)" in result.output


def test_probe_unknown_duration_fails(monkeypatch, tmp_path: Path, config_file: Path) -> None:
    media = tmp_path / "clip.mkv"
    media.write_bytes(b"stub")
    monkeypatch.setattr(cli.FFmpegTooling, "probe_duration", lambda self, path: 0.0)

    result = runner.invoke(cli.app, ["probe", str(media), "--config", str(config_file)])

    assert result.exit_code == 1
