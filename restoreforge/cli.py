"""Typer CLI entry point exposing the restoreforge commands."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from .encode_settings import EncodeSettings
from .engine import FFprobeDurationProbe, build_engine
from .ffmpeg import FFmpegTooling, is_image
from .logging import RunLogger, get_console
from .params import compile_settings, record_to_json
from .presets import PresetStore
from .progress import format_time
from .runner import CompletionPolicy, JobPhase, JobResult, JobRunner, OutputMode
from .settings import AppSettings, load_settings

app = typer.Typer(add_completion=False, help="Video and image restoration front-end for FFmpeg")
presets_app = typer.Typer(add_completion=False, help="Manage saved encode presets")
app.add_typer(presets_app, name="presets")
console = get_console()

EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _parse_assignments(values: Optional[List[str]]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {item!r}", param_hint="--set")
        pairs.append((key.strip(), value))
    return pairs


def _build_encode_settings(
    store: PresetStore, preset: Optional[str], assignments: Optional[List[str]]
) -> EncodeSettings:
    try:
        settings = store.load(preset) if preset else store.load_active()
    except KeyError as exc:
        raise typer.BadParameter(str(exc.args[0] if exc.args else exc), param_hint="--preset") from exc
    for key, value in _parse_assignments(assignments):
        if key == "x265_params":
            settings.parse_derived_parameter_string(value)
            continue
        try:
            settings.set(key, value)
        except KeyError as exc:
            raise typer.BadParameter(f"Unknown setting: {key}", param_hint="--set") from exc
    return settings


def _store(settings: AppSettings) -> PresetStore:
    return PresetStore(settings.paths.presets_dir)


async def _run_with_progress(runner: JobRunner) -> JobResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runner.cancel)
        handles_sigint = True
    except (NotImplementedError, RuntimeError, ValueError):
        handles_sigint = False

    job = asyncio.create_task(runner.run())
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.fields[detail]}"),
            console=console,
            transient=True,
        ) as progress:
            bar = progress.add_task(Path(runner.input_path).name, total=1.0, detail="")
            while not job.done():
                snapshot = runner.state.snapshot()
                detail = f"fps {snapshot.fps or '-'}  eta {snapshot.eta}"
                progress.update(bar, completed=snapshot.progress, detail=detail)
                await asyncio.wait({job}, timeout=0.2)
            progress.update(bar, completed=runner.state.progress)
        return job.result()
    finally:
        if not job.done():
            runner.cancel()
            await asyncio.gather(job, return_exceptions=True)
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


def _print_summary(result: JobResult, runner: JobRunner, run_logger: Optional[RunLogger]) -> None:
    colours = {
        JobPhase.COMPLETED: "green",
        JobPhase.CANCELLED: "yellow",
        JobPhase.FAILED: "red",
    }
    table = Table(title="restoreforge", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Input", result.input_path or "-")
    table.add_row("Status", f"[{colours.get(result.phase, 'white')}]{result.phase.value}[/]")
    table.add_row("Output", result.output_path or "-")
    if result.error is not None:
        table.add_row("Error", result.error.message)
    if run_logger is not None:
        table.add_row("Log", str(run_logger.path))
    console.print(table)
    if not result.ok:
        tail = runner.state.log_lines[-10:]
        if tail:
            console.rule("Last engine output")
            for line in tail:
                console.print(line, markup=False, highlight=False)


def _exit_code(result: JobResult) -> int:
    if result.phase is JobPhase.COMPLETED:
        return 0
    if result.phase is JobPhase.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


@app.command()
def run(
    input_path: Path = typer.Argument(..., help="Video or image file to restore"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Write the result here instead of next to the input"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset to start from (default: the active preset)"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override one setting, e.g. --set crf=18"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the encoder command without running it"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Restore a single video or image file."""

    app_settings = load_settings(config)
    if dry_run:
        app_settings.engine.dry_run = True
    encode = _build_encode_settings(_store(app_settings), preset, assignments)

    try:
        engine = build_engine(app_settings)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_FAILED) from exc

    policy = CompletionPolicy.from_settings(app_settings.completion)
    if app_settings.engine.dry_run:
        # Nothing is written in a dry run, so one look at the output is enough.
        policy.max_attempts = 1

    run_logger: Optional[RunLogger] = None
    if app_settings.logging.log_to_file:
        run_logger = RunLogger.start(app_settings.paths.logs_dir, app_settings.logging.max_age_hours)

    tooling = FFmpegTooling(app_settings.engine.ffmpeg_bin, app_settings.engine.ffprobe_bin)
    runner = JobRunner(
        engine,
        settings=encode,
        duration_probe=FFprobeDurationProbe(tooling),
        policy=policy,
        run_logger=run_logger,
    )
    runner.input_path = str(input_path)
    target = output_dir or app_settings.paths.output_dir
    if target:
        runner.output_mode = OutputMode.CUSTOM
        runner.custom_output_dir = str(target)

    try:
        result = asyncio.run(_run_with_progress(runner))
    finally:
        if run_logger is not None:
            run_logger.close()

    if app_settings.engine.dry_run:
        for line in runner.state.log_lines:
            if line.startswith("CMD: "):
                typer.echo(line)
    _print_summary(result, runner, run_logger)
    raise typer.Exit(code=_exit_code(result))


@app.command("compile")
def compile_command(
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset to compile (default: the active preset)"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override one setting, e.g. --set crf=18"),
    output_dir: str = typer.Option("", "--output-dir", "-o", help="Value placed in the record's output folder slot"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Print the compiled engine parameter record as JSON."""

    app_settings = load_settings(config)
    encode = _build_encode_settings(_store(app_settings), preset, assignments)
    typer.echo(record_to_json(compile_settings(encode, output_dir)))


@app.command()
def probe(
    input_path: Path = typer.Argument(..., exists=True, help="Media file to inspect"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Print the duration ffprobe reports for a media file."""

    app_settings = load_settings(config)
    tooling = FFmpegTooling(app_settings.engine.ffmpeg_bin, app_settings.engine.ffprobe_bin)
    if is_image(input_path):
        typer.echo(f"{input_path.name}: still image")
        return
    with console.status(f"Probing {input_path.name}", spinner="dots"):
        seconds = tooling.probe_duration(input_path)
    if seconds <= 0:
        console.print(f"[yellow]Duration unknown for[/yellow] {input_path}")
        raise typer.Exit(code=EXIT_FAILED)
    typer.echo(f"{input_path.name}: {seconds:.2f}s ({format_time(seconds)})")


@presets_app.command("list")
def presets_list(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """List saved presets; the active one is marked with ``*``."""

    store = _store(load_settings(config))
    active = store.active
    for name in store.list():
        marker = "*" if name == active else " "
        typer.echo(f"{marker} {name}")


@presets_app.command("save")
def presets_save(
    name: str = typer.Argument(..., help="Preset name"),
    base: Optional[str] = typer.Option(None, "--from", help="Preset to start from (default: the active preset)"),
    assignments: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Override one setting, e.g. --set crf=18"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Save the current settings, with overrides, under ``NAME``."""

    store = _store(load_settings(config))
    encode = _build_encode_settings(store, base, assignments)
    try:
        path = store.save(name, encode)
    except KeyError as exc:
        raise typer.BadParameter(str(exc.args[0] if exc.args else exc), param_hint="NAME") from exc
    console.log(f"[green]Preset saved to[/green] {path}")


@presets_app.command("delete")
def presets_delete(
    name: str = typer.Argument(..., help="Preset name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Delete a saved preset."""

    store = _store(load_settings(config))
    try:
        store.delete(name)
    except KeyError as exc:
        console.print(f"[red]{exc.args[0] if exc.args else exc}[/red]")
        raise typer.Exit(code=EXIT_FAILED) from exc
    console.log(f"Deleted preset {name}")


@presets_app.command("use")
def presets_use(
    name: str = typer.Argument(..., help="Preset name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML configuration file"),
) -> None:
    """Make ``NAME`` the preset used when ``--preset`` is omitted."""

    store = _store(load_settings(config))
    try:
        known = store.exists(name)
    except KeyError as exc:
        raise typer.BadParameter(str(exc.args[0] if exc.args else exc), param_hint="NAME") from exc
    if not known:
        console.print(f"[red]Unknown preset:[/red] {name}")
        raise typer.Exit(code=EXIT_FAILED)
    store.set_active(name)
    console.log(f"Active preset is now {name}")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


__all__ = ["app"]
