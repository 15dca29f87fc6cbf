"""
toolgate - Discover, vet and safely run command-line tools for agents.

toolgate sits between an agent and the executables on a machine:
- Two-phase probing: a tool's --agent flag only runs if its --help documents it
- Trust evaluation: hash, signature and provenance folded into one verdict
- Policy decisions: conservative effects merging and a serialized
  confirmation handler; compromised binaries never run
- Bounded execution: no shell, deadlines, output caps, secret redaction

Example usage:
    >>> descriptor = await toolgate.probe("/usr/local/bin/gh")
    >>> verdict = await toolgate.evaluate("/usr/local/bin/gh", descriptor.trust)
    >>> decision = await toolgate.decide(argv, effects, descriptor.trust, policy, verdict=verdict)
    >>> result = await toolgate.run(argv, decision=decision)

    $ toolgate scan
    $ toolgate exec /usr/local/bin/gh pr list --policy policy.yaml
"""

__version__ = "0.1.0"

from toolgate.discovery.prober import probe
from toolgate.errors import (
    CacheReadError,
    CacheWriteError,
    CommandNotFoundError,
    ConfigError,
    ExecutionError,
    ExecutionTimeout,
    ExecutionTimeoutError,
    HashError,
    InvalidArgumentsError,
    PolicyViolation,
    PolicyViolationError,
    ProbeError,
    ProbeTimeout,
    ProbeTimeoutError,
    ToolgateError,
    TrustCompromised,
    TrustCompromisedError,
)
from toolgate.execution.executor import ExecutorOptions, SafeExecutor, run
from toolgate.orchestrator import BatchResult, PipelineResult, discover_and_maybe_run, run_batch
from toolgate.policy.engine import PolicyEngine, decide
from toolgate.schema import (
    ConfirmationContext,
    Effects,
    ExecutionResult,
    PolicyConfig,
    PolicyDecision,
    ToolDescriptor,
    TrustEvaluationResult,
    TrustLevel,
    TrustMetadata,
)
from toolgate.trust.evaluator import EvaluatorOptions, TrustEvaluator, evaluate

__all__ = [
    "__version__",
    # operations
    "decide",
    "discover_and_maybe_run",
    "evaluate",
    "probe",
    "run",
    "run_batch",
    # components
    "EvaluatorOptions",
    "ExecutorOptions",
    "PolicyEngine",
    "SafeExecutor",
    "TrustEvaluator",
    # models
    "BatchResult",
    "ConfirmationContext",
    "Effects",
    "ExecutionResult",
    "PipelineResult",
    "PolicyConfig",
    "PolicyDecision",
    "ToolDescriptor",
    "TrustEvaluationResult",
    "TrustLevel",
    "TrustMetadata",
    # errors
    "CacheReadError",
    "CacheWriteError",
    "CommandNotFoundError",
    "ConfigError",
    "ExecutionError",
    "ExecutionTimeout",
    "ExecutionTimeoutError",
    "HashError",
    "InvalidArgumentsError",
    "PolicyViolation",
    "PolicyViolationError",
    "ProbeError",
    "ProbeTimeout",
    "ProbeTimeoutError",
    "ToolgateError",
    "TrustCompromised",
    "TrustCompromisedError",
]
