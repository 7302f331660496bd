"""Tests for the command-line interface."""

from __future__ import annotations

from pathlib import Path

import pytest

from mcp_switchboard.cli import main, parse_args


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "servers.yaml"
    path.write_text(
        f"""
settings:
  oauthDir: {tmp_path / "oauth"}
servers:
  github:
    url: https://api.example.com/mcp
    auth: oauth
  filesystem:
    command: fs-server
"""
    )
    return path


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults(self):
        """Test serve is the default command."""
        args = parse_args([])
        assert args.command == "serve"
        assert args.server is None
        assert args.port is None

    def test_auth_command(self):
        """Test the auth command takes a server name."""
        args = parse_args(["auth", "github", "-c", "servers.yaml", "--log-level", "DEBUG"])
        assert args.command == "auth"
        assert args.server == "github"
        assert args.config == Path("servers.yaml")
        assert args.log_level == "DEBUG"


class TestMain:
    """Tests for the one-shot commands."""

    def test_missing_config_file(self, tmp_path, capsys):
        """Test a missing config file is reported."""
        assert main(["status", "-c", str(tmp_path / "missing.yaml")]) == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_auth_prints_instructions(self, config_file, tmp_path, capsys):
        """Test auth instructions for an OAuth server."""
        assert main(["auth", "github", "-c", str(config_file)]) == 0
        out = capsys.readouterr().out
        assert 'OAuth setup for "github"' in out
        assert str(tmp_path / "oauth" / "github" / "tokens.json") in out

    def test_auth_requires_server(self, config_file, capsys):
        """Test auth without a server name is a usage error."""
        assert main(["auth", "-c", str(config_file)]) == 1
        assert "Usage" in capsys.readouterr().err

    def test_status_without_servers(self, tmp_path, capsys):
        """Test the status command on an empty configuration."""
        path = tmp_path / "empty.yaml"
        path.write_text("servers: {}\n")

        assert main(["status", "-c", str(path)]) == 0
        assert "No MCP servers configured" in capsys.readouterr().out
