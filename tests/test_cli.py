"""Tests for CLI commands - start, check-config, set-password."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from filemirror.cli import cli
from filemirror.cli.config import find_config_file, setup_logging
from filemirror.core.config import ConfigurationError
from filemirror.sync.types import DispatcherStats, PermanentTransferFailure, WatchFailure


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config mirroring into a local directory."""
    local = tmp_path / "local"
    local.mkdir()
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "protocol": "local",
                "local_path": str(local),
                "remote_path": str(tmp_path / "remote"),
                "password": "secret",
            }
        )
    )
    return path


def write_config(path: Path, **values: object) -> Path:
    data = json.loads(path.read_text())
    data.update(values)
    path.write_text(json.dumps(data))
    return path


@pytest.fixture
def pipeline_mock():
    """Patch the pipeline used by the start command."""
    with (
        patch("filemirror.cli.start.MirrorPipeline") as pipeline_class,
        patch("filemirror.cli.start.setup_logging"),
    ):
        pipeline = pipeline_class.return_value
        pipeline.shutdown.return_value = 0
        pipeline.dispatcher.stats = DispatcherStats(uploads_completed=2, deletes_completed=1)
        pipeline.dispatcher.dead_letters = []
        yield pipeline_class


class TestVersion:
    """Tests for the CLI group."""

    def test_version(self, runner: CliRunner) -> None:
        """Should print the package version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output


class TestCheckConfigCommand:
    """Tests for 'filemirror check-config' command."""

    def test_valid_config(self, runner: CliRunner, config_file: Path) -> None:
        """Should print the effective settings."""
        result = runner.invoke(cli, ["check-config", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration OK" in result.output
        assert "password: config file" in result.output
        assert "secret" not in result.output

    def test_invalid_config(self, runner: CliRunner, config_file: Path) -> None:
        """Should report validation errors and exit 1."""
        write_config(config_file, worker_count=0)
        result = runner.invoke(cli, ["check-config", "-c", str(config_file)])
        assert result.exit_code == 1
        assert "worker_count" in result.output

    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        """Should fail when the config file does not exist."""
        result = runner.invoke(cli, ["check-config", "-c", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_keyring_password_missing(self, runner: CliRunner, config_file: Path) -> None:
        """Should fail when the keyring has no password."""
        write_config(config_file, use_keyring=True, username="alice")
        with patch("filemirror.credentials.keyring.get_password", return_value=None):
            result = runner.invoke(cli, ["check-config", "-c", str(config_file)])
        assert result.exit_code == 1
        assert "no password stored" in result.output


class TestSetPasswordCommand:
    """Tests for 'filemirror set-password' command."""

    def test_stores_password(self, runner: CliRunner, config_file: Path) -> None:
        """Should store the prompted password for the configured user."""
        write_config(config_file, username="alice")
        with patch("filemirror.credentials.keyring.set_password") as set_password:
            result = runner.invoke(cli, ["set-password", "-c", str(config_file)], input="pw\npw\n")
        assert result.exit_code == 0
        set_password.assert_called_once_with("filemirror", "alice", "pw")
        assert "use_keyring" in result.output

    def test_requires_username(self, runner: CliRunner, config_file: Path) -> None:
        """Should refuse without a username in the config."""
        with patch("filemirror.credentials.keyring.set_password") as set_password:
            result = runner.invoke(cli, ["set-password", "-c", str(config_file)], input="pw\npw\n")
        assert result.exit_code == 1
        set_password.assert_not_called()


class TestStartCommand:
    """Tests for 'filemirror start' command."""

    def test_runs_until_interrupted(
        self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock
    ) -> None:
        """Should start, stop on Ctrl+C and print a summary."""
        pipeline = pipeline_mock.return_value
        pipeline.wait.side_effect = [None, KeyboardInterrupt()]

        result = runner.invoke(cli, ["start", "-c", str(config_file)])

        assert result.exit_code == 0
        pipeline.start.assert_called_once_with(initial_sync=None)
        pipeline.shutdown.assert_called_once()
        assert "Stopping..." in result.output
        assert "2 uploaded, 1 deleted" in result.output

    def test_overrides(self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock) -> None:
        """Should apply command-line overrides to the config."""
        pipeline_mock.return_value.wait.side_effect = KeyboardInterrupt()

        result = runner.invoke(
            cli, ["start", "-c", str(config_file), "--log-level", "DEBUG", "--no-initial-sync"]
        )

        assert result.exit_code == 0
        config = pipeline_mock.call_args.args[0]
        assert config.log_level == "debug"
        pipeline_mock.return_value.start.assert_called_once_with(initial_sync=False)

    def test_trace_level_accepted(
        self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock
    ) -> None:
        """Should accept --log-level trace."""
        pipeline_mock.return_value.wait.side_effect = KeyboardInterrupt()

        result = runner.invoke(cli, ["start", "-c", str(config_file), "--log-level", "trace"])

        assert result.exit_code == 0
        assert pipeline_mock.call_args.args[0].log_level == "trace"

    def test_watch_failure_exits_nonzero(
        self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock
    ) -> None:
        """Should exit 1 when change detection breaks."""
        pipeline = pipeline_mock.return_value
        pipeline.wait.return_value = WatchFailure(Path("/data"), "watch root was removed")

        result = runner.invoke(cli, ["start", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "watch root was removed" in result.output
        pipeline.shutdown.assert_called_once()

    def test_connection_rejected(
        self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock
    ) -> None:
        """Should exit 1 when the remote rejects the login."""
        pipeline_mock.return_value.start.side_effect = PermanentTransferFailure("authentication failed")

        result = runner.invoke(cli, ["start", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "authentication failed" in result.output

    def test_dead_letters_listed(
        self, runner: CliRunner, config_file: Path, pipeline_mock: MagicMock
    ) -> None:
        """Should list dead-lettered operations in the summary."""
        pipeline = pipeline_mock.return_value
        pipeline.wait.side_effect = KeyboardInterrupt()
        dead = MagicMock()
        dead.op.name = "UPLOAD"
        dead.path = "locked.txt"
        dead.last_error = "permission denied"
        pipeline.dispatcher.dead_letters = [dead]

        result = runner.invoke(cli, ["start", "-c", str(config_file)])

        assert "Dead letters (1)" in result.output
        assert "upload locked.txt: permission denied" in result.output


class TestConfigHelpers:
    """Tests for config discovery and logging setup."""

    def test_find_explicit(self, config_file: Path) -> None:
        """Should return an explicit path that exists."""
        assert find_config_file(config_file) == config_file

    def test_find_in_config_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should fall back to ~/.filemirror/config.json."""
        monkeypatch.chdir(tmp_path)
        config_dir = tmp_path / "home"
        config_dir.mkdir()
        (config_dir / "config.json").write_text("{}")
        with patch("filemirror.cli.config.get_config_dir", return_value=config_dir):
            assert find_config_file() == config_dir / "config.json"

    def test_find_nothing(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should raise when no config exists."""
        monkeypatch.chdir(tmp_path)
        with patch("filemirror.cli.config.get_config_dir", return_value=tmp_path / "home"):
            with pytest.raises(ConfigurationError, match="no config file found"):
                find_config_file()

    def test_setup_logging(self, tmp_path: Path) -> None:
        """Should log to stdout and a rotating file."""
        log_file = tmp_path / "logs" / "filemirror.log"
        logger = setup_logging("debug", log_file)
        try:
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 2
            logger.info("hello")
            for handler in logger.handlers:
                handler.flush()
            assert "hello" in log_file.read_text()

            # A second call replaces the handlers
            setup_logging("info")
            assert len(logger.handlers) == 1
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            logger.setLevel(logging.NOTSET)

    def test_setup_logging_unknown_level(self) -> None:
        """Should fall back to info for an unknown level name."""
        logger = setup_logging("verbose")
        try:
            assert logger.level == logging.INFO
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            logger.setLevel(logging.NOTSET)

    def test_setup_logging_trace(self) -> None:
        """Should treat trace as debug."""
        logger = setup_logging("trace")
        try:
            assert logger.level == logging.DEBUG
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            logger.setLevel(logging.NOTSET)
