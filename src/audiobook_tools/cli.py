"""CLI entry point: batch convert, merge, chapter plans, host info."""

import os
from datetime import timedelta
from pathlib import Path

import click
from loguru import logger

from . import capabilities as caps_mod
from .chapters import ChapterPlanner, output_filename, suggest_book_metadata, total_duration
from .config import ToolsConfig
from .errors import (
    BatchValidationError,
    ChapterPlanError,
    ConfigError,
    EnvironmentValidationError,
    OperationInProgressError,
)
from .ffprobe import duration_to_timestamp
from .library_db import LibraryDB
from .models import AudiobookFile, ProcessingResult, ProcessingUpdate
from .service import BatchHandle, ConversionService

log = logger.bind(stage="cli")

EXIT_FAILURES = 1
EXIT_ENVIRONMENT = 2


def _find_config_file() -> Path | None:
    """Look for .env in cwd or the user config dir."""
    for candidate in [
        Path.cwd() / ".env",
        Path.home() / ".config" / "audiobook-tools" / ".env",
    ]:
        if candidate.is_file():
            return candidate
    return None


def _load_env_file(env_file: Path) -> None:
    """Load a shell-style .env file into os.environ (without overriding)."""
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if (value.startswith('"') and value.endswith('"')) or (
            value.startswith("'") and value.endswith("'")
        ):
            value = value[1:-1]
        # Skip bash variable expansions like ${VAR:-default}
        if "${" in value:
            continue
        # Don't override existing env vars (CLI > env > file)
        if key not in os.environ:
            os.environ[key] = value


def _load_config(config_file: str | None, verbose: bool, **overrides) -> ToolsConfig:
    env_file = Path(config_file) if config_file else _find_config_file()
    if env_file and env_file.is_file():
        _load_env_file(env_file)
    # Unset options and off flags leave .env / environment values alone
    kwargs = {k: v for k, v in overrides.items() if v is not None and v is not False}
    if verbose:
        kwargs["log_level"] = "DEBUG"
    config = ToolsConfig(**kwargs)
    try:
        config.check()
    except ConfigError as e:
        raise click.ClickException(str(e))
    config.setup_logging()
    if env_file:
        log.debug(f"Loaded env from {env_file}")
    return config


def _render(update: ProcessingUpdate) -> None:
    eta = f" eta {duration_to_timestamp(update.eta_seconds)}" if update.eta_seconds is not None else ""
    speed = f" {update.speed}" if update.speed else ""
    status = (
        f"  [{update.progress:6.1%}] active={update.active_workers} "
        f"done={update.completed_files} failed={update.failed_files}"
        f"/{update.total_files}{speed}{eta}"
    )
    click.echo(f"\r{status:<78}", nl=False)


def _follow(handle: BatchHandle) -> ProcessingResult:
    """Render progress until the operation finishes; Ctrl-C cancels."""
    try:
        for update in handle.progress:
            _render(update)
    except KeyboardInterrupt:
        click.echo("\nCancelling -- waiting for running conversions to stop...")
        handle.cancel()
    return handle.wait()


def _display_summary(result: ProcessingResult) -> None:
    click.echo("\n")
    total = result.success_count + result.error_count
    click.echo(
        f"Finished in {duration_to_timestamp(result.total_time)}: "
        f"{result.success_count}/{total} succeeded, {result.error_count} failed"
    )
    if result.cancelled_count:
        click.echo(f"  ({result.cancelled_count} cancelled)")
    for output in result.output_files:
        click.echo(f"  OK    {output}")
    for error in result.errors:
        detail = f" -- {error.details}" if error.details else ""
        click.echo(f"  FAIL  {error.file_path}: {error.message}{detail}", err=True)


def _environment_failure(issues: list[str]) -> None:
    for issue in issues:
        click.echo(f"Error: {issue}", err=True)
    raise SystemExit(EXIT_ENVIRONMENT)


def _require_environment(service: ConversionService) -> None:
    """Exit before any probing when ffmpeg or ffprobe is missing."""
    validation = service.validate_environment()
    if not validation.is_valid:
        _environment_failure(validation.issues)


def _planner(config: ToolsConfig) -> ChapterPlanner:
    return ChapterPlanner(
        default_duration=timedelta(seconds=config.default_chapter_seconds),
        log=log.bind(stage="chapters"),
    )


def _run(start) -> None:
    try:
        handle = start()
    except EnvironmentValidationError as e:
        _environment_failure(e.issues)
    except (OperationInProgressError, ChapterPlanError, BatchValidationError) as e:
        raise click.ClickException(str(e))
    result = _follow(handle)
    _display_summary(result)
    if not result.success:
        raise SystemExit(EXIT_FAILURES)


_config_option = click.option(
    "-c", "--config", "config_file",
    type=click.Path(exists=True), default=None, help="Path to .env file.",
)
_verbose_option = click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
_bitrate_option = click.option("--bitrate", default=None, help='Target bitrate, e.g. "64k", or "copy".')


@click.group()
def main() -> None:
    """Convert MP3 audiobooks to chaptered M4B files."""


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("-j", "--jobs", type=int, default=None, help="Parallel conversions (default: auto).")
@_bitrate_option
@click.option("--preserve-bitrate", is_flag=True, default=None, help="Keep each source's bitrate.")
@click.option("-o", "--output-dir", type=click.Path(file_okay=False), default=None,
              help="Write outputs here instead of next to each source.")
@click.option("--library", type=click.Path(dir_okay=False), default=None,
              help="Library database to update with each new file.")
@click.option("--delete-source", is_flag=True, default=None,
              help="Delete each MP3 once its M4B is in the library.")
@_verbose_option
@_config_option
def convert(
    files: tuple[str, ...],
    jobs: int | None,
    bitrate: str | None,
    preserve_bitrate: bool | None,
    output_dir: str | None,
    library: str | None,
    delete_source: bool | None,
    verbose: bool,
    config_file: str | None,
) -> None:
    """Convert each MP3 in FILES to an M4B."""
    config = _load_config(
        config_file, verbose,
        parallel_jobs=jobs,
        bitrate=bitrate,
        preserve_original_bitrate=preserve_bitrate,
        output_dir=Path(output_dir) if output_dir else None,
        library_db=Path(library) if library else None,
        delete_source=delete_source,
    )
    sources = [Path(f).resolve() for f in files]

    db = LibraryDB(config.library_db) if config.library_db else None
    if db is not None:
        for src in sources:
            if db.read(src) is None:
                db.add(src)

    service = ConversionService(config, library=db)
    log.info(f"Converting {len(sources)} file(s)")
    _run(lambda: service.start_batch([AudiobookFile(path=s) for s in sources]))


@main.command()
@click.argument("folder", type=click.Path(exists=True, file_okay=False))
@click.option("-o", "--output", type=click.Path(dir_okay=False), default=None,
              help='Output file (default: "<Author> - <Title>.m4b" in FOLDER).')
@click.option("--title", default=None, help="Book title (default: album tag or folder name).")
@click.option("--author", "authors", multiple=True, help="Author; repeat for several.")
@click.option("--narrator", default=None)
@click.option("--cover", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Cover image to embed.")
@_bitrate_option
@click.option("--library", type=click.Path(dir_okay=False), default=None,
              help="Library database to add the merged book to.")
@_verbose_option
@_config_option
def merge(
    folder: str,
    output: str | None,
    title: str | None,
    authors: tuple[str, ...],
    narrator: str | None,
    cover: str | None,
    bitrate: str | None,
    library: str | None,
    verbose: bool,
    config_file: str | None,
) -> None:
    """Merge the MP3 chapter files in FOLDER into one M4B."""
    config = _load_config(
        config_file, verbose,
        bitrate=bitrate,
        library_db=Path(library) if library else None,
    )
    source = Path(folder).resolve()
    db = LibraryDB(config.library_db) if config.library_db else None
    service = ConversionService(config, library=db)
    _require_environment(service)
    planner = _planner(config)
    chapters = planner.plan(planner.scan(source))
    if not chapters:
        raise click.ClickException(f"No MP3 files found in {source}")

    metadata = suggest_book_metadata(source, chapters)
    if title:
        metadata.title = title
    if authors:
        metadata.authors = list(authors)
    if narrator:
        metadata.narrator = narrator
    if cover:
        metadata.cover_path = Path(cover)

    output_path = Path(output).resolve() if output else source / output_filename(metadata)
    click.echo(
        f"Merging {len(chapters)} chapters ({total_duration(chapters)}) -> {output_path}"
    )
    _run(lambda: service.start_merge(chapters, output_path, metadata))


@main.command()
@click.argument("folder", type=click.Path(exists=True, file_okay=False))
@_verbose_option
@_config_option
def chapters(folder: str, verbose: bool, config_file: str | None) -> None:
    """Show the chapter plan a merge of FOLDER would use."""
    config = _load_config(config_file, verbose)
    _require_environment(ConversionService(config))

    planner = _planner(config)
    plan = planner.plan(planner.scan(Path(folder)))
    if not plan:
        click.echo("No MP3 files found.")
        return
    for chapter in plan:
        start = duration_to_timestamp(chapter.start_time.total_seconds())
        click.echo(
            f"{chapter.order + 1:>3}. {start}  {chapter.formatted_duration:>8}  {chapter.title}"
        )
    click.echo(f"\nTotal: {duration_to_timestamp(total_duration(plan).total_seconds())}")


@main.command()
@_verbose_option
@_config_option
def info(verbose: bool, config_file: str | None) -> None:
    """Show detected hardware, environment issues and tuning hints."""
    config = _load_config(config_file, verbose)
    caps = caps_mod.detect()
    service = ConversionService(config, capabilities=caps)

    memory = f"{caps.total_memory_mb} MB" if caps.total_memory_mb else "unknown"
    click.echo(f"Platform:        {caps.platform or 'unknown'}")
    click.echo(f"CPU cores:       {caps.cpu_cores}" + (" (fallback)" if caps.is_fallback else ""))
    click.echo(f"Memory:          {memory}")
    click.echo(f"Max parallel:    {caps.max_parallel_jobs}")
    click.echo(f"Default batch:   {service.optimal_config().parallel_jobs} parallel job(s)")

    validation = service.validate_environment()
    for issue in validation.issues:
        click.echo(f"Issue: {issue}", err=True)
    for hint in validation.recommendations:
        click.echo(f"Hint:  {hint}")
    if not validation.is_valid:
        raise SystemExit(EXIT_ENVIRONMENT)
