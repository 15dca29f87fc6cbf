"""
Pytest configuration and fixtures for toolgate tests.

This module provides shared fixtures used across unit, integration,
and security tests: executable shell-script factories, a sample
descriptor, a temporary cache and a subprocess spawn counter.
"""

import json
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

import toolgate.execution.process as process_module
from toolgate.schema import ToolDescriptor
from toolgate.store.cache import DiscoveryCache

ScriptFactory = Callable[[str, str], Path]


SAMPLE_DESCRIPTOR: dict[str, Any] = {
    "atip": {"version": "0.6"},
    "name": "demo",
    "version": "1.2.0",
    "description": "Demo tool for tests",
    "effects": {
        "network": False,
        "destructive": False,
        "reversible": True,
        "idempotent": True,
        "filesystem": {"read": True, "write": False, "delete": False},
    },
    "commands": {
        "greet": {
            "description": "Print a greeting",
            "arguments": [{"name": "who", "type": "string", "required": False}],
            "options": [
                {"name": "shout", "flags": ["-s", "--shout"], "type": "boolean"},
                {"name": "times", "flags": ["-n", "--times"], "type": "integer"},
                {"name": "tag", "flags": ["--tag"], "type": "array"},
            ],
        },
        "repo": {
            "description": "Repositories",
            "commands": {
                "list": {"description": "List repositories"},
                "delete": {
                    "description": "Delete a repository",
                    "arguments": [{"name": "repo", "type": "string"}],
                    "effects": {"destructive": True, "reversible": False, "network": True},
                },
            },
        },
        "sleep": {
            "description": "Sleep for a while",
            "effects": {"idempotent": True},
        },
    },
}


@pytest.fixture
def sample_descriptor_dict() -> dict[str, Any]:
    """Return a deep copy of the sample descriptor document."""
    return json.loads(json.dumps(SAMPLE_DESCRIPTOR))


@pytest.fixture
def sample_descriptor(sample_descriptor_dict: dict[str, Any]) -> ToolDescriptor:
    """Return the sample descriptor as a validated model."""
    return ToolDescriptor.model_validate(sample_descriptor_dict)


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    """A private (not world-writable) directory for test executables."""
    directory = tmp_path / "bin"
    directory.mkdir()
    directory.chmod(0o755)
    return directory


@pytest.fixture
def make_script(bin_dir: Path) -> ScriptFactory:
    """
    Factory writing an executable /bin/sh script.

    Usage:
        path = make_script("tool", 'echo "$1"')
    """

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


def agent_script_body(descriptor: dict[str, Any] | None, default_action: str = 'printf "%s\\n" "$@"') -> str:
    """
    Shell body for a tool that documents --agent and prints `descriptor`.

    Any other invocation runs `default_action` (by default it echoes its
    arguments one per line).
    """
    document = json.dumps(descriptor) if descriptor is not None else ""
    return (
        'case "$1" in\n'
        "  --help)\n"
        '    echo "Usage: tool [--agent] <command>"\n'
        '    echo "  --agent    print machine-readable metadata"\n'
        "    ;;\n"
        "  --agent)\n"
        "    cat <<'EOF'\n"
        f"{document}\n"
        "EOF\n"
        "    ;;\n"
        "  *)\n"
        f"    {default_action}\n"
        "    ;;\n"
        "esac"
    )


@pytest.fixture
def agent_body() -> Callable[..., str]:
    """Expose agent_script_body() to tests that edit the generated script."""
    return agent_script_body


@pytest.fixture
def make_agent_tool(make_script: ScriptFactory, sample_descriptor_dict: dict[str, Any]) -> Callable[..., Path]:
    """Factory for a discovery-capable tool (defaults to the sample descriptor)."""

    def _make(
        name: str = "demo",
        descriptor: dict[str, Any] | None = None,
        default_action: str = 'printf "%s\\n" "$@"',
    ) -> Path:
        return make_script(name, agent_script_body(descriptor or sample_descriptor_dict, default_action))

    return _make


@pytest.fixture
def plain_tool(make_script: ScriptFactory) -> Path:
    """A tool whose help text never mentions the discovery flag."""
    return make_script(
        "plain",
        'if [ "$1" = "--help" ]; then echo "Usage: plain [-v] FILE"; exit 0; fi\necho "plain ran with $*"',
    )


@pytest.fixture
def tmp_cache(tmp_path: Path) -> DiscoveryCache:
    """A DiscoveryCache rooted in a temporary data directory."""
    return DiscoveryCache(tmp_path / "data")


class SpawnRecorder:
    """Records every argv handed to the subprocess primitive."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    @property
    def count(self) -> int:
        return len(self.calls)

    def flags(self) -> list[str]:
        return [argv[1] if len(argv) > 1 else "" for argv in self.calls]


@pytest.fixture
def spawn_recorder(monkeypatch: pytest.MonkeyPatch) -> SpawnRecorder:
    """Count subprocess spawns while still running the real processes."""
    recorder = SpawnRecorder()
    real_spawn = process_module.spawn

    async def recording_spawn(argv, cwd=None, env=None):
        recorder.calls.append(list(argv))
        return await real_spawn(argv, cwd=cwd, env=env)

    monkeypatch.setattr(process_module, "spawn", recording_spawn)
    return recorder
