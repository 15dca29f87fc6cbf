"""
Integration tests for the toolgate CLI.

Every invocation points TOOLGATE_CONFIG and TOOLGATE_DATA_DIR into the
test's temporary directory so the user's real registry is never touched.
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from toolgate import __version__
from toolgate.cli import app
from toolgate.trust.hashing import hash_file

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, bin_dir: Path) -> dict[str, str]:
    return {
        "TOOLGATE_CONFIG": str(tmp_path / "config.yaml"),
        "TOOLGATE_DATA_DIR": str(tmp_path / "data"),
        "TOOLGATE_SAFE_PATHS": str(bin_dir),
        "TOOLGATE_OFFLINE": "1",
    }


class TestBasics:
    """Version and help."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for name in ("scan", "probe", "trust", "list", "get", "exec", "doctor"):
            assert name in result.stdout


class TestProbeAndTrust:
    """probe and trust commands."""

    def test_probe_json(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool()
        result = runner.invoke(app, ["probe", str(tool), "--json"], env=cli_env)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["name"] == "demo"
        assert "greet" in data["commands"]

    def test_probe_table(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["probe", str(make_agent_tool())], env=cli_env)
        assert result.exit_code == 0
        assert "delete" in result.stdout
        assert "DESTRUCTIVE" in result.stdout

    def test_probe_unsupported(self, plain_tool: Path, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["probe", str(plain_tool), "--json"], env=cli_env)
        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"path": str(plain_tool), "supported": False}

    def test_probe_error_json(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool(name="broken", descriptor={"atip": "0.6", "name": "x"})
        result = runner.invoke(app, ["probe", str(tool), "--json"], env=cli_env)
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "ProbeError"

    def test_trust_compromised_exits_nonzero(self, plain_tool: Path, tmp_path: Path, cli_env: dict[str, str]) -> None:
        metadata = tmp_path / "trust.yaml"
        metadata.write_text("source: user\nintegrity:\n  checksum: sha256:" + "0" * 64 + "\n")
        result = runner.invoke(app, ["trust", str(plain_tool), "--metadata", str(metadata), "--json"], env=cli_env)
        assert result.exit_code == 1
        assert json.loads(result.stdout)["level"] == "COMPROMISED"

    def test_trust_unsigned(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["trust", str(make_agent_tool()), "--json"], env=cli_env)
        assert result.exit_code == 0
        assert json.loads(result.stdout)["recommendation"] == "confirm"


class TestRegistry:
    """scan, list and get."""

    def test_scan_then_list_and_get(self, make_agent_tool, plain_tool: Path, bin_dir: Path, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool()

        scanned = runner.invoke(app, ["scan", "--json"], env=cli_env)
        assert scanned.exit_code == 0
        data = json.loads(scanned.stdout)
        assert data["discovered"] == 1
        assert data["verdicts"][str(tool)]["level"] == "UNSIGNED"

        listed = runner.invoke(app, ["list", "--json"], env=cli_env)
        assert [entry["name"] for entry in json.loads(listed.stdout)] == ["demo"]

        got = runner.invoke(app, ["get", "demo", "--json"], env=cli_env)
        assert got.exit_code == 0
        assert json.loads(got.stdout)["version"] == "1.2.0"

    def test_scan_table(self, make_agent_tool, bin_dir: Path, cli_env: dict[str, str]) -> None:
        make_agent_tool()
        result = runner.invoke(app, ["scan", "--path", str(bin_dir)], env=cli_env)
        assert result.exit_code == 0
        assert "1 discovered" in result.stdout

    def test_get_unknown(self, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["get", "nothing"], env=cli_env)
        assert result.exit_code == 1

    def test_list_empty(self, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["list"], env=cli_env)
        assert result.exit_code == 0
        assert "No tools registered" in result.stdout


class TestExec:
    """exec command."""

    def test_allowed(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool()
        result = runner.invoke(app, ["exec", str(tool), "greet", "--arg", "who=cli", "--json"], env=cli_env)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["stage"] == "run"
        assert data["result"]["stdout"] == "greet\ncli\n"

    def test_flattened_name(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["exec", str(make_agent_tool()), "repo_list"], env=cli_env)
        assert result.exit_code == 0
        assert "repo" in result.stdout

    def test_blocked_without_confirmation(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        """The interactive prompt defaults to no."""
        tool = make_agent_tool()
        result = runner.invoke(
            app, ["exec", str(tool), "repo", "delete", "--arg", "repo=x"], env=cli_env, input="n\n"
        )
        assert result.exit_code == 1
        assert "Confirmation required" in result.stdout

    def test_yes_approves(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool()
        result = runner.invoke(
            app, ["exec", str(tool), "repo", "delete", "--arg", "repo=x", "--yes", "--json"], env=cli_env
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["decision"]["confirmed"] is True

    def test_policy_file(self, make_agent_tool, tmp_path: Path, cli_env: dict[str, str]) -> None:
        policy = tmp_path / "policy.yaml"
        policy.write_text("allow_destructive: true\n")
        tool = make_agent_tool()
        result = runner.invoke(
            app, ["exec", str(tool), "repo", "delete", "--arg", "repo=x", "--policy", str(policy)], env=cli_env
        )
        assert result.exit_code == 0

    def test_bad_arg_pair(self, make_agent_tool, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["exec", str(make_agent_tool()), "greet", "--arg", "novalue"], env=cli_env)
        assert result.exit_code != 0

    def test_unsupported_tool(self, plain_tool: Path, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["exec", str(plain_tool), "run"], env=cli_env)
        assert result.exit_code == 1
        assert "discovery" in result.stdout

    def test_metadata_file_checked(self, make_agent_tool, tmp_path: Path, cli_env: dict[str, str]) -> None:
        tool = make_agent_tool()
        metadata = tmp_path / "trust.yaml"
        metadata.write_text(f"source: vendor\nintegrity:\n  checksum: {hash_file(tool).formatted}\n")
        result = runner.invoke(
            app, ["exec", str(tool), "greet", "--metadata", str(metadata), "--json"], env=cli_env
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["trust"]["checks"]["hash_matched"] is True

    def test_metadata_mismatch_blocks(self, make_agent_tool, tmp_path: Path, cli_env: dict[str, str]) -> None:
        metadata = tmp_path / "trust.yaml"
        metadata.write_text("checksum: sha256:" + "0" * 64 + "\n")
        result = runner.invoke(
            app, ["exec", str(make_agent_tool()), "greet", "--metadata", str(metadata), "--json"], env=cli_env
        )
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "TrustCompromisedError"

    def test_shim_file(self, plain_tool: Path, sample_descriptor_dict, tmp_path: Path, cli_env: dict[str, str]) -> None:
        shim = tmp_path / "plain.json"
        shim.write_text(json.dumps(dict(sample_descriptor_dict, name="plain")))
        result = runner.invoke(app, ["exec", str(plain_tool), "greet", "--shim", str(shim), "--json"], env=cli_env)
        assert result.exit_code == 0
        assert json.loads(result.stdout)["result"]["stdout"] == "plain ran with greet\n"


class TestDoctor:
    """doctor command."""

    def test_json(self, cli_env: dict[str, str]) -> None:
        result = runner.invoke(app, ["doctor", "--json"], env=cli_env)
        data = json.loads(result.stdout)
        names = [check["name"] for check in data["checks"]]
        assert names == ["Python version", "Configuration", "cosign", "Data directory", "Safe paths"]
        assert data["ok"] is True
        assert result.exit_code == 0
