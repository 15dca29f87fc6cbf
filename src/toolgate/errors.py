"""
Exception hierarchy for toolgate.

All toolgate exceptions inherit from ToolgateError, allowing callers to catch
every toolgate-specific exception with a single except clause.

Exception Categories:
    - ProbeError / ProbeTimeoutError: discovery of a single candidate failed
    - HashError / TrustCompromisedError: binary identity could not be vouched for
    - PolicyViolationError: one or more policy thresholds were exceeded
    - ExecutionError / ExecutionTimeoutError: the approved command misbehaved
    - CacheReadError / CacheWriteError: on-disk registry problems
    - ConfigError: malformed configuration file or environment value

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors carry context (path, command, phase where applicable)
    - Errors meant for humans say exactly which effect, trust gap or
      deadline triggered them
    - Discovery errors are recoverable and aggregated per candidate;
      only truly exceptional conditions are raised from the executor
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Discovery errors: 1xxx
ERROR_PROBE_FAILED = 1001
ERROR_PROBE_TIMEOUT = 1002
ERROR_PROBE_INVALID_OUTPUT = 1003
ERROR_PROBE_OUTPUT_EXCEEDED = 1004
ERROR_PROBE_NOT_EXECUTABLE = 1005

# Trust errors: 2xxx
ERROR_HASH_BINARY_NOT_FOUND = 2001
ERROR_HASH_PERMISSION_DENIED = 2002
ERROR_HASH_COMPUTATION_FAILED = 2003
ERROR_TRUST_COMPROMISED = 2004

# Policy errors: 3xxx
ERROR_POLICY_VIOLATION = 3001

# Execution errors: 4xxx
ERROR_EXECUTION_FAILED = 4001
ERROR_EXECUTION_TIMEOUT = 4002
ERROR_EXECUTION_INVALID_ARGS = 4003
ERROR_COMMAND_NOT_FOUND = 4004

# Storage errors: 5xxx
ERROR_CACHE_READ = 5001
ERROR_CACHE_WRITE = 5002

# Configuration errors: 6xxx
ERROR_CONFIG_INVALID = 6001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class ToolgateError(Exception):
    """
    Base exception for all toolgate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Discovery Errors
# =============================================================================


@dataclass
class ProbeError(ToolgateError):
    """
    Raised when probing a candidate fails in a way the caller should see.

    A tool that simply does not support discovery never raises; this error
    means the tool claimed support and then produced something unusable,
    or could not be spawned at all.

    Attributes:
        path: Path of the candidate executable
        reason: Short machine tag (malformed, oversized, invalid, spawn,
            not-found, not-executable)
        detail: Underlying error text
    """

    path: str = ""
    reason: str = ""
    detail: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Probe of {self.path} failed ({self.reason}): {self.detail}"
        if self.code == 0:
            self.code = {
                "malformed": ERROR_PROBE_INVALID_OUTPUT,
                "invalid": ERROR_PROBE_INVALID_OUTPUT,
                "oversized": ERROR_PROBE_OUTPUT_EXCEEDED,
                "not-executable": ERROR_PROBE_NOT_EXECUTABLE,
                "not-found": ERROR_PROBE_NOT_EXECUTABLE,
            }.get(self.reason, ERROR_PROBE_FAILED)
        self.context.update({
            "path": self.path,
            "reason": self.reason,
            "detail": self.detail,
        })


@dataclass
class ProbeTimeoutError(ToolgateError):
    """Raised when the discovery phase exceeds its deadline."""

    path: str = ""
    phase: str = ""
    elapsed_ms: float = 0.0
    timeout_ms: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Probe of {self.path} timed out in {self.phase} phase "
                f"after {self.elapsed_ms:.0f}ms (limit {self.timeout_ms}ms)"
            )
        if self.code == 0:
            self.code = ERROR_PROBE_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Increase the probe timeout or add the tool to the skip list"
        self.context.update({
            "path": self.path,
            "phase": self.phase,
            "elapsed_ms": self.elapsed_ms,
            "timeout_ms": self.timeout_ms,
        })


# =============================================================================
# Trust Errors
# =============================================================================


@dataclass
class HashError(ToolgateError):
    """
    Raised when a binary cannot be hashed.

    Attributes:
        path: File that was being hashed
        kind: BINARY_NOT_FOUND, PERMISSION_DENIED or HASH_COMPUTATION_FAILED
    """

    path: str = ""
    kind: str = "HASH_COMPUTATION_FAILED"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot hash {self.path}: {self.kind}"
        if self.code == 0:
            self.code = {
                "BINARY_NOT_FOUND": ERROR_HASH_BINARY_NOT_FOUND,
                "PERMISSION_DENIED": ERROR_HASH_PERMISSION_DENIED,
            }.get(self.kind, ERROR_HASH_COMPUTATION_FAILED)
        self.context.update({"path": self.path, "kind": self.kind})


@dataclass
class TrustCompromisedError(ToolgateError):
    """
    Raised when a binary's content hash does not match its metadata.

    Never downgraded and never eligible for confirmation.
    """

    path: str = ""
    expected_hash: str = ""
    actual_hash: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Binary {self.path} is compromised: expected "
                f"{self.expected_hash[:16]}..., got {self.actual_hash[:16]}..."
            )
        if self.code == 0:
            self.code = ERROR_TRUST_COMPROMISED
        if not self.suggestion:
            self.suggestion = "Reinstall the tool from a trusted source; do not run it"
        self.context.update({
            "path": self.path,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
        })


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyViolationError(ToolgateError):
    """
    Raised when a command is blocked by policy.

    Attributes:
        command: The command vector that was blocked
        violations: Violation codes in evaluation order
        reasons: Human-readable explanation per violation
    """

    command: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            joined = "; ".join(self.reasons) or "policy denied"
            self.message = f"Blocked {' '.join(self.command)}: {joined}"
        if self.code == 0:
            self.code = ERROR_POLICY_VIOLATION
        if not self.suggestion:
            self.suggestion = "Relax the matching allow_* setting or configure a confirmation handler"
        self.context.update({
            "command": self.command,
            "violations": self.violations,
            "reasons": self.reasons,
        })


# =============================================================================
# Execution Errors
# =============================================================================


@dataclass
class ExecutionError(ToolgateError):
    """Raised when a subprocess cannot be started."""

    command: list[str] = field(default_factory=list)
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            executable = self.command[0] if self.command else "<empty>"
            self.message = f"Failed to execute {executable}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_EXECUTION_FAILED
        self.context.update({
            "command": self.command,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ExecutionTimeoutError(ExecutionError):
    """
    Raised by the raise-on-timeout variant of the executor.

    The partial result (captured output up to the kill) rides along so
    retry logic can inspect it.
    """

    elapsed_ms: float = 0.0
    timeout_ms: int = 0
    partial_result: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Command {' '.join(self.command)} timed out after "
                f"{self.elapsed_ms:.0f}ms (limit {self.timeout_ms}ms)"
            )
        if self.code == 0:
            self.code = ERROR_EXECUTION_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Increase timeout_ms or run the command in streaming mode"
        super().__post_init__()
        self.context.update({
            "elapsed_ms": self.elapsed_ms,
            "timeout_ms": self.timeout_ms,
        })


@dataclass
class InvalidArgumentsError(ExecutionError):
    """Raised when named arguments do not fit the command's schema."""

    problems: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid arguments for {' '.join(self.command)}: {'; '.join(self.problems)}"
        if self.code == 0:
            self.code = ERROR_EXECUTION_INVALID_ARGS
        super().__post_init__()
        self.context["problems"] = self.problems


@dataclass
class CommandNotFoundError(ExecutionError):
    """Raised when a subcommand path does not exist in a tool's command tree."""

    tool: str = ""
    path: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Command not found: {' '.join([self.tool, *self.path])}"
        if self.code == 0:
            self.code = ERROR_COMMAND_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Run 'toolgate get <tool>' to see the available subcommands"
        super().__post_init__()
        self.context.update({"tool": self.tool, "path": self.path})


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class CacheError(ToolgateError):
    """Base class for on-disk cache errors."""

    cache_path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "cache_path": self.cache_path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class CacheReadError(CacheError):
    """Raised when a cache file exists but cannot be parsed."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cache read failed for {self.cache_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CACHE_READ
        if not self.suggestion:
            self.suggestion = "Delete the file and run 'toolgate scan' again"
        super().__post_init__()


@dataclass
class CacheWriteError(CacheError):
    """Raised when a cache file cannot be written."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cache write failed for {self.cache_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CACHE_WRITE
        if not self.suggestion:
            self.suggestion = "Check that the data directory is writable"
        super().__post_init__()


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(ToolgateError):
    """Raised for malformed configuration files or environment values."""

    source: str = ""
    key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration value for {self.key} in {self.source}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context.update({"source": self.source, "key": self.key})


# Taxonomy names used in the public API.
ProbeTimeout = ProbeTimeoutError
TrustCompromised = TrustCompromisedError
PolicyViolation = PolicyViolationError
ExecutionTimeout = ExecutionTimeoutError
