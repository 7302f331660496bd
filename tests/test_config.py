"""Tests for configuration module."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from mcp_switchboard import config as config_module
from mcp_switchboard.config import (
    GatewayConfig,
    ServerDefinition,
    apply_imports,
    create_default_config,
    expand_env_vars,
    load_config,
    merge_configs,
    read_import,
)


class TestExpandEnvVars:
    """Tests for environment variable expansion."""

    def test_expand_braces_syntax(self, monkeypatch):
        """Test ${VAR} syntax expansion."""
        monkeypatch.setenv("TEST_VAR", "test_value")
        result = expand_env_vars("prefix_${TEST_VAR}_suffix")
        assert result == "prefix_test_value_suffix"

    def test_expand_dollar_syntax(self, monkeypatch):
        """Test $VAR syntax expansion."""
        monkeypatch.setenv("MYVAR", "my_value")
        result = expand_env_vars("prefix/$MYVAR/suffix")
        assert result == "prefix/my_value/suffix"

    def test_missing_var_preserved(self):
        """Test that missing variables are preserved."""
        result = expand_env_vars("${NONEXISTENT_VAR_12345}")
        assert result == "${NONEXISTENT_VAR_12345}"

    def test_multiple_vars(self, monkeypatch):
        """Test multiple variable expansion."""
        monkeypatch.setenv("VAR1", "one")
        monkeypatch.setenv("VAR2", "two")
        result = expand_env_vars("${VAR1} and ${VAR2}")
        assert result == "one and two"


class TestServerDefinition:
    """Tests for ServerDefinition."""

    def test_stdio_server_creation(self):
        """Test creating a stdio server."""
        definition = ServerDefinition(
            name="test",
            command="npx -y @test/server",
            args=["--root", "/tmp"],
        )
        assert definition.transport_type == "stdio"
        assert definition.command_list == ["npx", "-y", "@test/server", "--root", "/tmp"]

    def test_http_and_sse_transport(self):
        """Test URL based transport selection."""
        assert ServerDefinition(name="a", url="http://localhost/mcp").transport_type == "http"
        assert ServerDefinition(name="b", url="http://localhost/sse").transport_type == "sse"
        assert ServerDefinition(name="c", url="http://localhost/sse/").transport_type == "sse"

    def test_no_transport_raises(self):
        """Test that a missing transport is rejected."""
        with pytest.raises(ValidationError, match="must have either"):
            ServerDefinition(name="invalid")

    def test_both_transports_raise(self):
        """Test that command and url together are rejected."""
        with pytest.raises(ValidationError, match="cannot have both"):
            ServerDefinition(name="invalid", command="echo", url="http://localhost/mcp")

    def test_auth_requires_url(self):
        """Test that bearer/oauth auth needs a remote transport."""
        with pytest.raises(ValidationError, match="has no 'url'"):
            ServerDefinition(name="invalid", command="echo", auth="oauth")

    def test_camel_case_keys(self):
        """Test that third-party camelCase keys are accepted."""
        definition = ServerDefinition(
            **{"name": "gh", "url": "http://x/mcp", "exposeResources": False, "bearerTokenEnv": "GH"}
        )
        assert definition.expose_resources is False
        assert definition.bearer_token_env == "GH"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("keep-alive", "keep-alive"),
            ("keep_alive", "keep-alive"),
            ("keepalive", "keep-alive"),
            ("lazy", "ephemeral"),
            ("ephemeral", "ephemeral"),
        ],
    )
    def test_lifecycle_spellings(self, raw, expected):
        """Test lifecycle normalization."""
        definition = ServerDefinition(name="x", command="echo", lifecycle=raw)
        assert definition.lifecycle == expected
        assert definition.keep_alive is (expected == "keep-alive")

    def test_env_expansion(self, monkeypatch):
        """Test environment variable expansion in definitions."""
        monkeypatch.setenv("API_KEY", "secret123")
        definition = ServerDefinition(
            name="test",
            command="server",
            env={"KEY": "${API_KEY}"},
        )
        assert definition.env["KEY"] == "secret123"

    def test_default_values(self):
        """Test default definition values."""
        definition = ServerDefinition(name="test", command="echo")
        assert definition.enabled is True
        assert definition.auth == "none"
        assert definition.lifecycle == "ephemeral"
        assert definition.expose_resources is True
        assert definition.env == {}

    def test_frozen(self, sample_server_definition):
        """Test that definitions are immutable."""
        with pytest.raises(ValidationError):
            sample_server_definition.command = "other"


class TestGatewayConfig:
    """Tests for GatewayConfig."""

    def test_default_creation(self):
        """Test default gateway configuration."""
        config = GatewayConfig()
        assert config.host == "127.0.0.1"
        assert config.port == 39400
        assert config.servers == {}
        assert config.settings.tool_prefix == "server"
        assert config.settings.connect_concurrency == 10

    def test_from_yaml_minimal(self, minimal_config_yaml):
        """Test loading minimal YAML config."""
        config = GatewayConfig.from_yaml(minimal_config_yaml)
        assert config.port == 39400
        assert config.servers["echo"].name == "echo"

    def test_from_yaml_full(self, full_config_yaml):
        """Test loading comprehensive YAML config."""
        config = GatewayConfig.from_yaml(full_config_yaml)
        assert config.port == 8080
        assert config.host == "0.0.0.0"
        assert config.log_level == "DEBUG"
        assert len(config.servers) == 3
        assert config.settings.tool_prefix == "short"
        assert config.settings.health_check_interval == 10
        assert config.settings.connect_concurrency == 4
        assert config.servers["stdio-server"].keep_alive

    def test_from_json_mcp_servers(self, tmp_path):
        """Test loading a JSON file with an mcpServers section."""
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({"mcpServers": {"fs": {"command": "fs-server"}}}))
        config = GatewayConfig.from_yaml(path)
        assert list(config.servers) == ["fs"]

    def test_from_yaml_missing_file(self, tmp_path):
        """Test error on missing config file."""
        with pytest.raises(FileNotFoundError):
            GatewayConfig.from_yaml(tmp_path / "nonexistent.yaml")

    def test_get_enabled_servers(self, full_config_yaml):
        """Test filtering enabled servers."""
        config = GatewayConfig.from_yaml(full_config_yaml)
        enabled = config.get_enabled_servers()
        assert "sse-server" not in enabled
        assert "stdio-server" in enabled
        assert "http-server" in enabled


class TestMergeConfigs:
    """Tests for configuration merging."""

    def test_merge_basic(self):
        """Test basic config merge."""
        merged = merge_configs(GatewayConfig(port=8080), GatewayConfig(port=9000))
        assert merged.port == 9000

    def test_merge_servers(self, sample_server_definition):
        """Test merging server definitions."""
        base = GatewayConfig(servers={"fs": sample_server_definition})
        override = GatewayConfig(servers={"other": ServerDefinition(name="other", command="echo")})
        merged = merge_configs(base, override)
        assert set(merged.servers) == {"fs", "other"}


class TestImports:
    """Tests for importing other tools' MCP configs."""

    @pytest.fixture
    def cursor_config(self, tmp_path, monkeypatch):
        path = tmp_path / "cursor.json"
        path.write_text(
            json.dumps(
                {
                    "mcpServers": {
                        "shared": {"command": "imported-shared"},
                        "only-imported": {"url": "http://localhost:1/mcp"},
                        "broken": {"description": "no transport"},
                    }
                }
            )
        )
        monkeypatch.setitem(config_module.IMPORT_SOURCES, "cursor", (str(path),))
        return path

    def test_read_import_skips_invalid(self, cursor_config):
        """Test that invalid imported entries are skipped."""
        servers = read_import("cursor")
        assert set(servers) == {"shared", "only-imported"}

    def test_unknown_source(self):
        """Test that unknown import names yield nothing."""
        assert read_import("not-a-tool") == {}

    def test_local_definitions_win(self, cursor_config):
        """Test that locally defined servers take precedence."""
        config = GatewayConfig.from_dict(
            {"imports": ["cursor"], "servers": {"shared": {"command": "local-shared"}}}
        )
        merged = apply_imports(config)
        assert merged.servers["shared"].command == "local-shared"
        assert "only-imported" in merged.servers

    def test_load_config_applies_imports(self, cursor_config, tmp_path):
        """Test that load_config merges imports."""
        path = tmp_path / "servers.yaml"
        path.write_text("imports: [cursor]\nservers: {}\n")
        config = load_config(path)
        assert "shared" in config.servers

    def test_load_config_default_missing(self, tmp_path, monkeypatch):
        """Test that a missing default file yields an empty config."""
        monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "none.yaml")
        config = load_config()
        assert config.servers == {}


class TestCreateDefaultConfig:
    """Tests for default config creation."""

    def test_creates_valid_config(self):
        """Test that default config is valid."""
        config = create_default_config()
        assert isinstance(config, GatewayConfig)
        assert config.port == 39400
