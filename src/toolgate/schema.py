"""
Schema definitions for toolgate.

This module defines the Pydantic models shared by every stage of the
pipeline:
- ToolDescriptor/CommandNode/Effects: what a tool says about itself
- TrustMetadata/TrustEvaluationResult: how far its bytes can be trusted
- PolicyConfig/PolicyDecision/ConfirmationContext: whether it may run
- ExecutionResult: what happened when it did

Design Decisions:
    - Models we own use strict shapes (extra="forbid")
    - Models describing tool-supplied documents ignore unknown keys, since
      the metadata schema is owned by the tools, not by us
    - Absent effect flags stay None ("unknown"); only the policy layer
      decides how to treat unknown
    - TrustLevel is an IntEnum so the priority chain is a plain ordering
    - Models are immutable (frozen=True)
"""

from datetime import UTC, datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class TrustLevel(IntEnum):
    """
    Verdict of a trust evaluation, most severe first.

    Each level is a hard ceiling over the ones after it: a binary can only
    reach VERIFIED by passing every check that precedes it.
    """

    COMPROMISED = 0
    UNSIGNED = 1
    UNVERIFIED = 2
    PROVENANCE_FAIL = 3
    VERIFIED = 4

    @classmethod
    def parse(cls, value: "TrustLevel | int | str") -> "TrustLevel":
        """Accept a level, its integer value or its (case-insensitive) name."""
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper().replace("-", "_")]
            except KeyError:
                msg = f"Unknown trust level: {value}"
                raise ValueError(msg) from None
        return cls(int(value))


class Recommendation(str, Enum):
    """What the caller should do with a tool at a given trust level."""

    BLOCK = "block"
    CONFIRM = "confirm"
    EXECUTE = "execute"

    @property
    def rank(self) -> int:
        return _RECOMMENDATION_RANK[self]


_RECOMMENDATION_RANK = {
    Recommendation.BLOCK: 0,
    Recommendation.CONFIRM: 1,
    Recommendation.EXECUTE: 2,
}

_RECOMMENDATIONS = {
    TrustLevel.COMPROMISED: Recommendation.BLOCK,
    TrustLevel.UNSIGNED: Recommendation.CONFIRM,
    TrustLevel.UNVERIFIED: Recommendation.CONFIRM,
    TrustLevel.PROVENANCE_FAIL: Recommendation.CONFIRM,
    TrustLevel.VERIFIED: Recommendation.EXECUTE,
}


def recommendation_for(level: TrustLevel) -> Recommendation:
    """Map a trust level onto its recommendation (monotonic in level)."""
    return _RECOMMENDATIONS[TrustLevel(level)]


class TrustSource(str, Enum):
    """How a metadata document was obtained, best first."""

    NATIVE = "native"
    VENDOR = "vendor"
    ORG = "org"
    COMMUNITY = "community"
    USER = "user"
    INFERRED = "inferred"

    @property
    def rank(self) -> int:
        return _SOURCE_RANK[self]


_SOURCE_RANK = {
    TrustSource.NATIVE: 6,
    TrustSource.VENDOR: 5,
    TrustSource.ORG: 4,
    TrustSource.COMMUNITY: 3,
    TrustSource.USER: 2,
    TrustSource.INFERRED: 1,
}


class CostTier(str, Enum):
    """Declared cost estimate of a command."""

    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _COST_RANK[self]


_COST_RANK = {
    CostTier.FREE: 0,
    CostTier.LOW: 1,
    CostTier.MEDIUM: 2,
    CostTier.HIGH: 3,
}


class StdinMode(str, Enum):
    """What a command expects on standard input."""

    NONE = "none"
    OPTIONAL = "optional"
    REQUIRED = "required"
    PASSWORD = "password"


class SignatureType(str, Enum):
    """Detached signature formats a metadata document may reference."""

    COSIGN = "cosign"
    GPG = "gpg"
    MINISIGN = "minisign"


class ProvenanceFormat(str, Enum):
    """Supported provenance attestation formats."""

    SLSA_PROVENANCE_V1 = "slsa-provenance-v1"
    IN_TOTO = "in-toto"


class ViolationCode(str, Enum):
    """Every threshold the policy engine can report as violated."""

    DESTRUCTIVE_BLOCKED = "DESTRUCTIVE_BLOCKED"
    NON_REVERSIBLE_BLOCKED = "NON_REVERSIBLE_BLOCKED"
    BILLABLE_BLOCKED = "BILLABLE_BLOCKED"
    NETWORK_BLOCKED = "NETWORK_BLOCKED"
    FILESYSTEM_WRITE_BLOCKED = "FILESYSTEM_WRITE_BLOCKED"
    FILESYSTEM_DELETE_BLOCKED = "FILESYSTEM_DELETE_BLOCKED"
    INTERACTIVE_BLOCKED = "INTERACTIVE_BLOCKED"
    COST_EXCEEDED = "COST_EXCEEDED"
    TRUST_INSUFFICIENT = "TRUST_INSUFFICIENT"
    TRUST_LEVEL_INSUFFICIENT = "TRUST_LEVEL_INSUFFICIENT"
    TRUST_COMPROMISED = "TRUST_COMPROMISED"


class ConfirmationReason(str, Enum):
    """Short reason tags handed to a confirmation handler."""

    DESTRUCTIVE = "destructive"
    NON_REVERSIBLE = "non-reversible"
    BILLABLE = "billable"
    NETWORK = "network"
    FILESYSTEM_WRITE = "filesystem-write"
    FILESYSTEM_DELETE = "filesystem-delete"
    INTERACTIVE = "interactive"
    COST_HIGH = "cost-high"
    LOW_TRUST = "low-trust"
    COMPROMISED = "compromised"


# =============================================================================
# Tool Metadata Models
# =============================================================================


class InteractiveRequirements(BaseModel):
    """Interaction a command needs from a human or terminal."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    stdin: StdinMode | None = Field(default=None, description="Standard input expectation")
    prompts: bool | None = Field(default=None, description="Whether the command prompts")
    tty: bool | None = Field(default=None, description="Whether a TTY is required")

    @property
    def requires_interaction(self) -> bool:
        """True when the command cannot run unattended."""
        return bool(
            self.stdin in (StdinMode.REQUIRED, StdinMode.PASSWORD)
            or self.prompts
            or self.tty
        )


class Effects(BaseModel):
    """
    Declared side-effect profile of a tool or command.

    Every flag is tri-state: True, False, or None for "not declared".
    Unknown is never the same as False.

    Attributes:
        network: Talks to the network
        destructive: Destroys data
        reversible: Effects can be undone
        idempotent: Safe to repeat
        filesystem_read: Reads local files
        filesystem_write: Writes local files
        filesystem_delete: Deletes local files
        billable: Incurs a charge
        cost: Estimated cost tier
        interactive: Interaction requirements
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    network: bool | None = None
    destructive: bool | None = None
    reversible: bool | None = None
    idempotent: bool | None = None
    filesystem_read: bool | None = None
    filesystem_write: bool | None = None
    filesystem_delete: bool | None = None
    billable: bool | None = None
    cost: CostTier | None = None
    interactive: InteractiveRequirements | None = None

    @model_validator(mode="before")
    @classmethod
    def flatten_document_form(cls, data: Any) -> Any:
        """Accept the nested document form used by tool metadata."""
        if not isinstance(data, dict):
            return data
        data = dict(data)

        filesystem = data.pop("filesystem", None)
        if isinstance(filesystem, dict):
            for key in ("read", "write", "delete"):
                if key in filesystem:
                    data.setdefault(f"filesystem_{key}", filesystem[key])

        cost = data.get("cost")
        if isinstance(cost, dict):
            data["cost"] = cost.get("estimate")
            if "billable" in cost:
                data.setdefault("billable", cost["billable"])

        for camel, snake in (
            ("filesystemRead", "filesystem_read"),
            ("filesystemWrite", "filesystem_write"),
            ("filesystemDelete", "filesystem_delete"),
        ):
            if camel in data:
                data.setdefault(snake, data.pop(camel))
        return data


class ArgumentSpec(BaseModel):
    """A positional argument accepted by a command."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1)
    type: str = Field(default="string", description="Type tag (string, integer, enum, ...)")
    description: str = ""
    required: bool = True
    variadic: bool = False
    enum: list[Any] | None = None
    default: Any = None


class OptionSpec(BaseModel):
    """A flagged option accepted by a command."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1)
    flags: list[str] = Field(..., min_length=1, description="e.g. ['-o', '--output']")
    type: str = Field(default="string", description="Type tag (string, boolean, array, ...)")
    description: str = ""
    required: bool = False
    variadic: bool = False
    enum: list[Any] | None = None
    default: Any = None


class CommandNode(BaseModel):
    """
    One node of a tool's command tree.

    Child names are dictionary keys and therefore unique. Effects may be
    absent, in which case the node inherits from its ancestors.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str = ""
    commands: dict[str, "CommandNode"] = Field(default_factory=dict)
    arguments: list[ArgumentSpec] = Field(default_factory=list)
    options: list[OptionSpec] = Field(default_factory=list)
    effects: Effects | None = None


CommandNode.model_rebuild()


# =============================================================================
# Trust Models
# =============================================================================


class SignatureRef(BaseModel):
    """Reference to a detached signature over the binary."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    type: SignatureType = SignatureType.COSIGN
    identity: str | None = Field(default=None, description="Certificate identity (keyless)")
    issuer: str | None = Field(default=None, description="OIDC issuer (keyless)")
    bundle: str | None = Field(default=None, description="Path to a signature bundle")
    public_key: str | None = Field(default=None, alias="publicKey")
    signature_file: str | None = Field(default=None, alias="signatureFile")


class IntegrityRecord(BaseModel):
    """Expected content hash plus an optional signature reference."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    checksum: str | None = Field(default=None, description="sha256:<hex> or bare hex")
    signature: SignatureRef | None = None


class ProvenanceRecord(BaseModel):
    """Where to fetch a build attestation and what it must prove."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    url: str = Field(..., min_length=1)
    format: ProvenanceFormat = ProvenanceFormat.SLSA_PROVENANCE_V1
    slsa_level: int = Field(default=1, ge=0, alias="slsaLevel")
    builders: list[str] = Field(default_factory=list, description="Allowed builder ids")

    @model_validator(mode="before")
    @classmethod
    def accept_single_builder(cls, data: Any) -> Any:
        """Accept `builder: <id>` as a one-element allow-list."""
        if isinstance(data, dict) and "builder" in data and "builders" not in data:
            data = dict(data)
            builder = data.pop("builder")
            data["builders"] = [builder] if builder else []
        return data


class TrustMetadata(BaseModel):
    """Trust claims that ship with a metadata document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    source: TrustSource = TrustSource.INFERRED
    integrity: IntegrityRecord | None = None
    provenance: ProvenanceRecord | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_flat_checksum(cls, data: Any) -> Any:
        """Accept the short form where `checksum` sits beside `source`."""
        if isinstance(data, dict) and "checksum" in data and "integrity" not in data:
            data = dict(data)
            data["integrity"] = {"checksum": data.pop("checksum")}
        return data


class ToolDescriptor(BaseModel):
    """
    Capability metadata for a single tool.

    Produced by the prober from a tool's discovery output (or loaded from a
    shim file). Immutable once returned.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    atip: str | dict[str, Any] = Field(..., description="Protocol version declaration")
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    description: str
    homepage: str | None = None
    commands: dict[str, CommandNode] = Field(default_factory=dict)
    effects: Effects | None = None
    trust: TrustMetadata | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Tool names become argv[0] lookups; keep them path-free."""
        if "/" in v or v.strip() != v:
            msg = f"Invalid tool name: {v!r}"
            raise ValueError(msg)
        return v

    @field_validator("atip")
    @classmethod
    def validate_atip(cls, v: str | dict[str, Any]) -> str | dict[str, Any]:
        """Object form must carry a version."""
        if isinstance(v, dict) and not v.get("version"):
            msg = "atip declaration object must include 'version'"
            raise ValueError(msg)
        return v


# =============================================================================
# Trust Evaluation Results
# =============================================================================


class CheckResults(BaseModel):
    """
    Per-check outcome of a trust evaluation.

    None means the check was not performed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    hash_matched: bool | None = None
    signature_verified: bool | None = None
    provenance_verified: bool | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    signature_detail: str | None = None
    provenance_detail: str | None = None
    slsa_level: int | None = None
    builder: str | None = None


class TrustEvaluationResult(BaseModel):
    """The verdict for one binary against one TrustMetadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    level: TrustLevel
    reason: str
    checks: CheckResults = Field(default_factory=CheckResults)
    recommendation: Recommendation
    content_hash: str | None = Field(default=None, description="sha256:<hex> of the evaluated bytes")
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("level", mode="before")
    @classmethod
    def parse_level(cls, v: Any) -> TrustLevel:
        return TrustLevel.parse(v)

    @field_serializer("level", when_used="json")
    def serialize_level(self, level: TrustLevel) -> str:
        return level.name

    @classmethod
    def at(
        cls,
        level: TrustLevel,
        reason: str,
        checks: CheckResults | None = None,
        content_hash: str | None = None,
    ) -> "TrustEvaluationResult":
        """Build a result whose recommendation follows from its level."""
        return cls(
            level=level,
            reason=reason,
            checks=checks or CheckResults(),
            recommendation=recommendation_for(level),
            content_hash=content_hash,
        )


# =============================================================================
# Policy Models
# =============================================================================


class PolicyConfig(BaseModel):
    """
    Caller-supplied execution thresholds.

    Defaults are conservative: destructive, billable, deleting and
    interactive commands are blocked unless confirmed.

    Attributes:
        allow_destructive: Permit destructive commands
        allow_non_reversible: Permit commands not declared reversible
        allow_billable: Permit billable commands
        allow_network: Permit network access
        allow_filesystem_write: Permit file writes
        allow_filesystem_delete: Permit file deletion
        allow_interactive: Permit commands needing a prompt or TTY
        min_trust_level: Lowest acceptable trust verdict
        min_trust_source: Lowest acceptable metadata source, if any
        max_cost: Highest acceptable cost tier, if any
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allow_destructive: bool = False
    allow_non_reversible: bool = True
    allow_billable: bool = False
    allow_network: bool = True
    allow_filesystem_write: bool = True
    allow_filesystem_delete: bool = False
    allow_interactive: bool = False
    min_trust_level: TrustLevel = TrustLevel.UNSIGNED
    min_trust_source: TrustSource | None = None
    max_cost: CostTier | None = None

    @field_validator("min_trust_level", mode="before")
    @classmethod
    def parse_trust_level(cls, v: Any) -> TrustLevel:
        """Allow level names in YAML (e.g. 'verified')."""
        return TrustLevel.parse(v)

    @field_serializer("min_trust_level", when_used="json")
    def serialize_min_trust_level(self, level: TrustLevel) -> str:
        return level.name


class Violation(BaseModel):
    """A single threshold the command exceeded."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    code: ViolationCode
    reason: ConfirmationReason
    message: str
    confirmable: bool = True


class PolicyDecision(BaseModel):
    """
    Result of deciding whether a command may run.

    Attributes:
        allowed: Whether the command may run now
        requires_confirmation: Whether any violation needed a confirmation
        violations: Every violated threshold, in evaluation order
        confirmed: Handler answer (None if no handler was asked)
        reason: Human-readable summary
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool
    requires_confirmation: bool = False
    violations: list[Violation] = Field(default_factory=list)
    confirmed: bool | None = None
    reason: str = ""

    @property
    def reasons(self) -> list[ConfirmationReason]:
        """Distinct reason tags, in evaluation order."""
        seen: list[ConfirmationReason] = []
        for violation in self.violations:
            if violation.reason not in seen:
                seen.append(violation.reason)
        return seen

    @property
    def hard_blocked(self) -> bool:
        """True when some violation can never be confirmed away."""
        return any(not v.confirmable for v in self.violations)

    def blocked_messages(self) -> list[str]:
        return [v.message for v in self.violations]


class ConfirmationContext(BaseModel):
    """
    Everything a confirmation handler needs to approve or reject a command.

    Passed once per decision and not retained by the engine afterwards.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: list[str]
    arguments: dict[str, Any] = Field(default_factory=dict)
    effects: Effects
    trust: TrustMetadata | None = None
    verdict: TrustEvaluationResult | None = None
    reasons: list[ConfirmationReason]
    violations: list[Violation]
    summary: str = ""


# =============================================================================
# Execution Models
# =============================================================================


class ExecutionResult(BaseModel):
    """
    Outcome of one executor invocation.

    Attributes:
        command: The exact argument vector that was executed
        exit_code: Process exit status (None if it never exited on its own)
        stdout: Captured standard output (possibly truncated/redacted)
        stderr: Captured standard error (possibly truncated/redacted)
        duration_ms: Wall-clock duration
        timed_out: Whether the deadline expired
        stdout_truncated: Whether stdout hit the byte cap
        stderr_truncated: Whether stderr hit the byte cap
        timeout_ms: Configured deadline
        redacted: Whether secret redaction replaced anything
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: list[str]
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timeout_ms: int = 0
    redacted: bool = False

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


# =============================================================================
# Registry Models
# =============================================================================


class RegistrySource(str, Enum):
    """Where a registry entry's metadata came from."""

    NATIVE = "native"
    SHIM = "shim"


class RegistryEntry(BaseModel):
    """
    Path index record in the on-disk registry.

    Attributes:
        name: Tool name from its descriptor
        version: Tool version from its descriptor
        path: Absolute path of the executable
        source: native (probed) or shim (supplied file)
        discovered_at: First time this path was indexed
        last_verified: Last time mtime/checksum were confirmed
        mod_time: File modification time (ns) when indexed
        checksum: sha256:<hex> of the executable
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    version: str
    path: str
    source: RegistrySource = RegistrySource.NATIVE
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_verified: datetime = Field(default_factory=lambda: datetime.now(UTC))
    mod_time: int
    checksum: str


class ScanError(BaseModel):
    """One candidate (or directory) the scanner could not process."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str
    error_type: str
    message: str


class ScanResult(BaseModel):
    """
    Aggregate outcome of a directory scan.

    Partial success is the normal case: failures are listed in `errors`
    and never abort the scan.

    Attributes:
        discovered: New tools indexed
        updated: Known paths whose content changed and were re-probed
        failed: Candidates that raised a probe or hash error
        skipped: Unchanged candidates reused from the cache
        duration_ms: Wall-clock duration of the scan
        tools: Registry entries written or confirmed during this scan
        verdicts: Trust verdicts by path, when an evaluator was configured
        errors: Per-candidate failures
        cancelled: True if the scan deadline expired before every job ended
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    discovered: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: float = 0.0
    tools: list[RegistryEntry] = Field(default_factory=list)
    verdicts: dict[str, TrustEvaluationResult] = Field(default_factory=dict)
    errors: list[ScanError] = Field(default_factory=list)
    cancelled: bool = False


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _load_yaml(path: Path | str) -> Any:
    path = Path(path)
    with path.open() as f:
        return yaml.safe_load(f)


def load_policy(path: Path | str) -> PolicyConfig:
    """
    Load a policy from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated PolicyConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    return load_policy_from_string(Path(path).read_text())


def load_policy_from_string(content: str) -> PolicyConfig:
    """Load a policy from a YAML string."""
    return PolicyConfig.model_validate(yaml.safe_load(content) or {})


def load_trust_metadata(path: Path | str) -> TrustMetadata:
    """
    Load trust metadata from a YAML or JSON file.

    Accepts either a bare trust record or a full descriptor, in which case
    its `trust` section is used.
    """
    data = _load_yaml(path) or {}
    if isinstance(data, dict) and "trust" in data:
        data = data["trust"] or {}
    return TrustMetadata.model_validate(data)


def load_descriptor(path: Path | str) -> ToolDescriptor:
    """Load a tool descriptor (shim file) from YAML or JSON."""
    return ToolDescriptor.model_validate(_load_yaml(path))
