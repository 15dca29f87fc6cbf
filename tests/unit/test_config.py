"""
Unit tests for configuration loading.

Tests cover:
- Duration parsing
- XDG / override data directory resolution
- YAML config file loading
- TOOLGATE_* environment overrides and their validation
"""

from pathlib import Path

import pytest

from toolgate.config import (
    DEFAULT_PARALLELISM,
    DEFAULT_PROBE_TIMEOUT_MS,
    default_config_dir,
    default_data_dir,
    expand_tilde,
    load_settings,
    parse_duration,
)
from toolgate.errors import ConfigError


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("100ms", 100),
            ("2s", 2000),
            ("1.5s", 1500),
            ("5m", 300_000),
            ("1h", 3_600_000),
            ("250", 250),
            (" 3s ", 3000),
            (750, 750),
        ],
    )
    def test_valid(self, text: str | int, expected: int) -> None:
        """Numbers with or without a unit parse to milliseconds."""
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "fast", "10 days", "-5s", "1.2.3s"])
    def test_invalid(self, text: str) -> None:
        """Anything else is a ConfigError."""
        with pytest.raises(ConfigError):
            parse_duration(text)

    def test_bool_rejected(self) -> None:
        """Booleans are not durations even though they are ints."""
        with pytest.raises(ConfigError):
            parse_duration(True)


class TestPaths:
    """Tests for data/config directory resolution."""

    def test_data_dir_override(self, tmp_path: Path) -> None:
        """TOOLGATE_DATA_DIR wins over XDG."""
        env = {"TOOLGATE_DATA_DIR": str(tmp_path / "d"), "XDG_DATA_HOME": "/xdg"}
        assert default_data_dir(env) == (tmp_path / "d").resolve()

    def test_data_dir_xdg(self) -> None:
        """XDG_DATA_HOME is used when set."""
        assert default_data_dir({"XDG_DATA_HOME": "/xdg"}) == Path("/xdg/toolgate")

    def test_data_dir_default(self) -> None:
        """Falls back to ~/.local/share/toolgate."""
        assert default_data_dir({}) == Path.home() / ".local" / "share" / "toolgate"

    def test_config_dir_xdg(self) -> None:
        assert default_config_dir({"XDG_CONFIG_HOME": "/cfg"}) == Path("/cfg/toolgate")

    def test_expand_tilde(self) -> None:
        """Only a leading ~ is expanded."""
        assert expand_tilde("~/bin") == str(Path.home() / "bin")
        assert expand_tilde("/a/~b") == "/a/~b"


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults_without_file(self, tmp_path: Path) -> None:
        """A missing config file yields defaults."""
        settings = load_settings(tmp_path / "missing.yaml", env={})
        assert settings.discovery.probe_timeout_ms == DEFAULT_PROBE_TIMEOUT_MS
        assert settings.discovery.parallelism == DEFAULT_PARALLELISM
        assert "/usr/bin" in settings.discovery.safe_paths
        assert settings.trust.offline is False

    def test_yaml_file(self, tmp_path: Path) -> None:
        """File values are applied, durations included."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "discovery:\n"
            "  safe_paths: [/opt/tools]\n"
            "  skip_list: ['python*']\n"
            "  scan_timeout: 3s\n"
            "  parallelism: 8\n"
            "trust:\n"
            "  offline: true\n"
            "  network_timeout: 5s\n"
            f"data_dir: {tmp_path / 'data'}\n"
        )
        settings = load_settings(path, env={})
        assert settings.discovery.safe_paths == ["/opt/tools"]
        assert settings.discovery.skip_list == ["python*"]
        assert settings.discovery.probe_timeout_ms == 3000
        assert settings.discovery.parallelism == 8
        assert settings.trust.offline is True
        assert settings.trust.network_timeout_ms == 5000
        assert settings.data_dir == tmp_path / "data"

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        """Environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("discovery:\n  parallelism: 8\n")
        env = {
            "TOOLGATE_SAFE_PATHS": "/a:/b::",
            "TOOLGATE_SKIP": "node, python*",
            "TOOLGATE_TIMEOUT": "500ms",
            "TOOLGATE_PARALLEL": "2",
            "TOOLGATE_OFFLINE": "yes",
            "TOOLGATE_DATA_DIR": str(tmp_path / "state"),
        }
        settings = load_settings(path, env=env)
        assert settings.discovery.safe_paths == ["/a", "/b"]
        assert settings.discovery.skip_list == ["node", "python*"]
        assert settings.discovery.probe_timeout_ms == 500
        assert settings.discovery.parallelism == 2
        assert settings.trust.offline is True
        assert settings.data_dir == (tmp_path / "state").resolve()

    def test_config_path_from_env(self, tmp_path: Path) -> None:
        """TOOLGATE_CONFIG selects the file."""
        path = tmp_path / "custom.yaml"
        path.write_text("discovery:\n  parallelism: 3\n")
        settings = load_settings(env={"TOOLGATE_CONFIG": str(path)})
        assert settings.discovery.parallelism == 3

    def test_invalid_parallel_env(self, tmp_path: Path) -> None:
        """A non-integer TOOLGATE_PARALLEL is a ConfigError."""
        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path / "missing.yaml", env={"TOOLGATE_PARALLEL": "many"})
        assert exc_info.value.key == "TOOLGATE_PARALLEL"

    def test_zero_parallel_rejected(self, tmp_path: Path) -> None:
        """Parallelism must be positive."""
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "missing.yaml", env={"TOOLGATE_PARALLEL": "0"})

    def test_invalid_timeout_env(self, tmp_path: Path) -> None:
        """A malformed TOOLGATE_TIMEOUT is a ConfigError."""
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "missing.yaml", env={"TOOLGATE_TIMEOUT": "soon"})

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        """Broken YAML is a ConfigError naming the file."""
        path = tmp_path / "config.yaml"
        path.write_text("discovery: [unclosed\n")
        with pytest.raises(ConfigError) as exc_info:
            load_settings(path, env={})
        assert str(path) in exc_info.value.source

    def test_unknown_key_rejected(self, tmp_path: Path) -> None:
        """Unknown settings are reported with their key."""
        path = tmp_path / "config.yaml"
        path.write_text("discovery:\n  turbo: true\n")
        with pytest.raises(ConfigError) as exc_info:
            load_settings(path, env={})
        assert "turbo" in exc_info.value.key
