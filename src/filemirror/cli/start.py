"""Start command for the filemirror CLI.

Commands:
- start: Mirror the configured directory until interrupted
"""

from __future__ import annotations

import dataclasses
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import click

from filemirror.cli.config import LOG_LEVELS, find_config_file, setup_logging
from filemirror.core.config import ConfigurationError, load_config
from filemirror.sync.pipeline import MirrorPipeline
from filemirror.sync.types import PermanentTransferFailure, WatchFailure

if TYPE_CHECKING:
    from filemirror.sync.dispatcher import Dispatcher

# Dead-lettered paths listed individually in the summary
MAX_LISTED_DEAD_LETTERS = 20


def display_summary(dispatcher: Dispatcher, abandoned: int) -> None:
    """Print what the run achieved."""
    stats = dispatcher.stats
    click.echo(
        f"{stats.uploads_completed} uploaded, {stats.deletes_completed} deleted, "
        f"{stats.retries} retries, {stats.superseded} superseded"
    )
    if abandoned:
        click.echo(click.style(f"{abandoned} operations abandoned at shutdown", fg="yellow"))

    dead_letters = dispatcher.dead_letters
    if dead_letters:
        click.echo(click.style(f"\nDead letters ({len(dead_letters)}):", fg="red"))
        for op in dead_letters[:MAX_LISTED_DEAD_LETTERS]:
            click.echo(f"  ✗ {op.op.name.lower()} {op.path}: {op.last_error}")
        if len(dead_letters) > MAX_LISTED_DEAD_LETTERS:
            click.echo(f"  ... and {len(dead_letters) - MAX_LISTED_DEAD_LETTERS} more")


@click.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ./config.json, then ~/.filemirror/config.json).",
)
@click.option(
    "--log-level",
    type=click.Choice(list(LOG_LEVELS), case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Override the configured log file.",
)
@click.option("--no-initial-sync", is_flag=True, help="Do not upload the existing tree at startup.")
def start(
    config_path: Path | None,
    log_level: str | None,
    log_file: Path | None,
    no_initial_sync: bool,
) -> None:
    """Mirror the local directory to the remote until Ctrl+C or SIGTERM."""
    try:
        config = load_config(find_config_file(config_path))
        overrides: dict[str, object] = {}
        if log_level:
            overrides["log_level"] = log_level.lower()
        if log_file:
            overrides["log_file"] = str(log_file)
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    setup_logging(config.log_level, config.log_file)

    try:
        pipeline = MirrorPipeline(config)
        pipeline.start(initial_sync=False if no_initial_sync else None)
    except (ConfigurationError, PermanentTransferFailure, WatchFailure) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Mirroring {config.local_path} -> {config.remote_url}")
    click.echo("Watching for changes... (Ctrl+C to stop)\n")

    stop_requested = threading.Event()
    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: stop_requested.set())
    failure = None
    try:
        while not stop_requested.is_set():
            failure = pipeline.wait(timeout=0.5)
            if failure is not None:
                break
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        abandoned = pipeline.shutdown()

    display_summary(pipeline.dispatcher, abandoned)
    if failure is not None:
        click.echo(f"Error: {failure}", err=True)
        sys.exit(1)
