"""Configuration commands for the filemirror CLI.

Commands:
- check-config: Validate the config file and show the effective settings
- set-password: Store the remote password in the OS keyring
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from filemirror.cli.config import find_config_file
from filemirror.core.config import ConfigurationError, load_config
from filemirror.credentials import KEYRING_SERVICE, resolve_credentials, store_password

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ./config.json, then ~/.filemirror/config.json).",
)


@click.command("check-config")
@config_option
def check_config(config_path: Path | None) -> None:
    """Validate the config file and print the effective settings."""
    try:
        path = find_config_file(config_path)
        config = load_config(path)
        credentials = resolve_credentials(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Config file: {path}")
    click.echo(f"Remote: {config.remote_url}")
    for key, value in config.to_dict().items():
        click.echo(f"  {key}: {value}")

    if config.use_keyring:
        source = f"keyring ({KEYRING_SERVICE})"
    elif credentials.password:
        source = "config file"
    else:
        source = "none"
    click.echo(f"  password: {source}")
    click.echo(click.style("Configuration OK", fg="green"))


@click.command("set-password")
@config_option
@click.password_option(help="Remote password to store in the OS keyring.")
def set_password(config_path: Path | None, password: str) -> None:
    """Store the remote password for the configured user in the OS keyring."""
    try:
        config = load_config(find_config_file(config_path))
        if not config.username:
            raise ConfigurationError("username is required to store a password")
        store_password(config.username, password)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Password stored for {config.username} (service {KEYRING_SERVICE}).")
    if not config.use_keyring:
        click.echo('Set "use_keyring": true in the config file to use it.')
