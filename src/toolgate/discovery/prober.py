"""
Two-phase capability probing.

State machine:

    START -> PHASE1_HELP -> NOT_SUPPORTED
                         -> PHASE2_AGENT -> DESCRIPTOR | NOT_SUPPORTED | INVALID

Phase 1 runs `<tool> --help` and looks for evidence that `--agent` is
documented. Phase 2 runs `<tool> --agent` and parses the JSON it prints.

Security Note:
    Phase 2 never runs unless Phase 1 found evidence. The prober never
    executes an unknown flag against a binary that has not documented it.

Outcomes:
    - None: the tool does not support discovery (the common case). Phase 1
      errors, timeouts and non-zero exits all land here, as do Phase 2
      non-zero exits, blank output and output that is plainly not JSON.
    - ProbeError: the tool claimed support but printed broken or oversized
      metadata, or could not be spawned for Phase 2
    - ProbeTimeoutError: Phase 2 exceeded its deadline
"""

import json
import logging
import os
import re
from pathlib import Path

from pydantic import ValidationError

from toolgate.errors import ProbeError, ProbeTimeoutError
from toolgate.execution.process import decode, run_process
from toolgate.schema import ToolDescriptor

logger = logging.getLogger(__name__)

HELP_FLAG = "--help"
AGENT_FLAG = "--agent"
DEFAULT_TIMEOUT_MS = 2000
MIN_HELP_TIMEOUT_MS = 1000
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024

# Evidence that the discovery flag is documented, matched case-folded.
HELP_EVIDENCE = (
    re.compile(r"--agent\b"),
    re.compile(r"\s-agent\b"),
    re.compile(r"\batip\b.*\bagent\b"),
)


def help_mentions_discovery(text: str) -> bool:
    """True if help text documents the discovery flag."""
    folded = text.lower()
    return any(pattern.search(folded) for pattern in HELP_EVIDENCE)


def _summarize_validation(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:5]:
        location = ".".join(str(p) for p in item["loc"]) or "<root>"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def parse_descriptor(text: str, path: Path | str) -> ToolDescriptor | None:
    """
    Parse Phase 2 output into a ToolDescriptor.

    Output that does not look like an attempt at JSON means the help-text
    match was a false positive (None). Output that looks like JSON but
    does not parse or validate is an error.

    Raises:
        ProbeError: malformed JSON or schema violation
    """
    stripped = text.strip()
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        if stripped.startswith(("{", "[")):
            raise ProbeError(path=str(path), reason="malformed", detail=f"invalid JSON: {e}") from e
        logger.debug("%s: --agent output is not JSON, treating as unsupported", path)
        return None

    if not isinstance(data, dict):
        raise ProbeError(path=str(path), reason="invalid", detail="metadata must be a JSON object")

    try:
        return ToolDescriptor.model_validate(data)
    except ValidationError as e:
        raise ProbeError(path=str(path), reason="invalid", detail=_summarize_validation(e)) from e


class Prober:
    """
    Probes one executable at a time for discovery metadata.

    Usage:
        prober = Prober(timeout_ms=2000)
        descriptor = await prober.probe("/usr/local/bin/gh")
        if descriptor is None:
            # tool does not support discovery

    Attributes:
        timeout_ms: Phase 2 deadline (Phase 1 uses at least 1000ms)
        max_output_bytes: Cap on discovery output; exceeding it is an error
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        help_flag: str = HELP_FLAG,
        agent_flag: str = AGENT_FLAG,
    ) -> None:
        if timeout_ms <= 0:
            msg = f"timeout_ms must be positive, got {timeout_ms}"
            raise ValueError(msg)
        self.timeout_ms = timeout_ms
        self.max_output_bytes = max_output_bytes
        self.help_flag = help_flag
        self.agent_flag = agent_flag

    async def probe(self, path: Path | str) -> ToolDescriptor | None:
        """
        Run both phases against `path`.

        Raises:
            ProbeError: path missing/not executable, or broken metadata
            ProbeTimeoutError: Phase 2 deadline exceeded
        """
        path = Path(path)
        self._check_executable(path)

        if not await self.supports_discovery(path):
            logger.debug("%s: no discovery support", path)
            return None

        descriptor = await self.discover(path)
        if descriptor is not None:
            logger.info("Discovered %s %s at %s", descriptor.name, descriptor.version, path)
        return descriptor

    async def supports_discovery(self, path: Path) -> bool:
        """Phase 1. Never raises; any failure means unsupported."""
        timeout_ms = max(MIN_HELP_TIMEOUT_MS, self.timeout_ms)
        try:
            output = await run_process(
                [str(path), self.help_flag],
                timeout_ms=timeout_ms,
                max_output_bytes=self.max_output_bytes,
            )
        except OSError as e:
            logger.debug("%s: %s failed to start: %s", path, self.help_flag, e)
            return False

        if output.timed_out or output.exit_code != 0:
            return False
        return help_mentions_discovery(decode(output.stdout) + "\n" + decode(output.stderr))

    async def discover(self, path: Path) -> ToolDescriptor | None:
        """Phase 2. Only called after supports_discovery() returned True."""
        try:
            output = await run_process(
                [str(path), self.agent_flag],
                timeout_ms=self.timeout_ms,
                max_output_bytes=self.max_output_bytes,
            )
        except OSError as e:
            raise ProbeError(path=str(path), reason="spawn", detail=str(e)) from e

        if output.timed_out:
            raise ProbeTimeoutError(
                path=str(path),
                phase="agent",
                elapsed_ms=output.duration_ms,
                timeout_ms=self.timeout_ms,
            )
        if output.exit_code != 0:
            logger.debug("%s: %s exited %s", path, self.agent_flag, output.exit_code)
            return None
        if output.stdout_truncated:
            raise ProbeError(
                path=str(path),
                reason="oversized",
                detail=f"discovery output exceeds {self.max_output_bytes} bytes",
            )

        text = decode(output.stdout)
        if not text.strip():
            return None
        return parse_descriptor(text, path)

    @staticmethod
    def _check_executable(path: Path) -> None:
        if not path.exists():
            raise ProbeError(path=str(path), reason="not-found", detail="no such file")
        if not path.is_file() or not os.access(path, os.X_OK):
            raise ProbeError(path=str(path), reason="not-executable", detail="not an executable file")


async def probe(
    path: Path | str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    *,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> ToolDescriptor | None:
    """Probe a single executable with default flags."""
    return await Prober(timeout_ms=timeout_ms, max_output_bytes=max_output_bytes).probe(path)
