"""Command-line interface for filemirror.

This module provides the main CLI entry point and assembles all commands.

Commands:
- start: Mirror the local directory to the remote until interrupted
- check-config: Validate the config file
- set-password: Store the remote password in the OS keyring
"""

from __future__ import annotations

import click

from filemirror.cli.check import check_config, set_password
from filemirror.cli.config import find_config_file, get_config_dir, setup_logging
from filemirror.cli.start import start


@click.group()
@click.version_option(package_name="filemirror")
def cli() -> None:
    """filemirror - Mirror a local directory to a remote store."""


cli.add_command(start)
cli.add_command(check_config)
cli.add_command(set_password)


__all__ = [
    "cli",
    "find_config_file",
    "get_config_dir",
    "setup_logging",
]
