"""
Unit tests for the command line interface.
"""

import json
import pytest

from streamwatch.cli.main import EXIT_CONFIG, EXIT_OK, create_parser, main


@pytest.fixture(autouse=True)
def clean_environment(tmp_path, monkeypatch):
    """Run every command from an empty directory without platform settings."""
    monkeypatch.chdir(tmp_path)
    for key in ("YOUTUBE_CREDENTIALS", "YOUTUBE_ENABLED", "TWITCH_ENABLED",
                "YOUTUBE_WEBHOOK_SECRET", "YOUTUBE_CALLBACK_URL"):
        monkeypatch.delenv(key, raising=False)


class TestParser:
    """Test argument parsing."""

    def test_run_options(self):
        """Test run subcommand options."""
        args = create_parser().parse_args(['--config', 'prod.env', 'run', '--log-level', 'DEBUG', '--rich'])

        assert args.command == 'run'
        assert args.config == 'prod.env'
        assert args.log_level == 'DEBUG'
        assert args.rich

    def test_config_show_defaults(self):
        """Test config show defaults to a table."""
        args = create_parser().parse_args(['config', 'show'])

        assert args.config_command == 'show'
        assert args.format == 'table'
        assert not args.show_secrets

    def test_invalid_log_level(self):
        """Test unknown log levels are rejected."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(['run', '--log-level', 'TRACE'])


class TestCommands:
    """Test command results."""

    def test_no_command_prints_help(self, capsys):
        """Test running without a command shows usage."""
        assert main([]) == EXIT_OK
        assert "usage" in capsys.readouterr().out

    def test_validate_missing_credentials(self):
        """Test validation fails when the enabled platform has no keys."""
        assert main(['config', 'validate']) == EXIT_CONFIG

    def test_validate_lenient(self):
        """Test lenient validation reports missing keys as warnings."""
        assert main(['config', 'validate', '--lenient']) == EXIT_OK

    def test_validate_ok(self, monkeypatch):
        """Test validation passes with credentials."""
        monkeypatch.setenv('YOUTUBE_CREDENTIALS', 'key-a,key-b')

        assert main(['config', 'validate']) == EXIT_OK

    def test_validate_from_env_file(self, tmp_path):
        """Test settings are read from an explicit file."""
        env_file = tmp_path / "prod.env"
        env_file.write_text("YOUTUBE_CREDENTIALS=key-a\n")

        assert main(['--config', str(env_file), 'config', 'validate']) == EXIT_OK

    def test_missing_env_file(self):
        """Test a missing config file is a configuration error."""
        assert main(['--config', 'missing.env', 'config', 'validate']) == EXIT_CONFIG

    def test_show_json_masks_secrets(self, monkeypatch, capsys):
        """Test secrets are masked unless asked for."""
        monkeypatch.setenv('YOUTUBE_WEBHOOK_SECRET', 'hunter2')

        assert main(['config', 'show', '--format', 'json']) == EXIT_OK
        data = json.loads(capsys.readouterr().out)

        assert data['config']['YOUTUBE_WEBHOOK_SECRET'] == "********"
        assert data['sources']['YOUTUBE_WEBHOOK_SECRET'] == "environment"
        assert data['config']['REDIS_URL'] == "redis://localhost:6379/0"

    def test_show_secrets(self, monkeypatch, capsys):
        """Test --show-secrets prints raw values."""
        monkeypatch.setenv('YOUTUBE_WEBHOOK_SECRET', 'hunter2')

        main(['config', 'show', '--format', 'json', '--show-secrets'])

        assert json.loads(capsys.readouterr().out)['config']['YOUTUBE_WEBHOOK_SECRET'] == "hunter2"

    def test_run_refuses_invalid_config(self, capsys):
        """Test run exits before starting when configuration is invalid."""
        assert main(['run']) == EXIT_CONFIG
        assert "YOUTUBE_CREDENTIALS" in capsys.readouterr().err
