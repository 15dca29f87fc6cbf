"""
End-to-end orchestration: probe -> evaluate -> decide -> run.

discover_and_maybe_run() chains the composable operations for one
executable. Each stage only runs if the previous one let it:

    probe     no descriptor                -> stop (stage=probe)
    evaluate  verdict                      -> always continues to decide
    decide    blocked                      -> raise, nothing is executed
    run       ExecutionResult              -> stage=run

run_batch() executes already-approved commands, sequentially by default.
"""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from toolgate.discovery.prober import DEFAULT_TIMEOUT_MS as DEFAULT_PROBE_TIMEOUT_MS
from toolgate.discovery.prober import Prober
from toolgate.errors import ExecutionError
from toolgate.execution.commands import build_command
from toolgate.execution.executor import ExecutorOptions, SafeExecutor
from toolgate.policy.effects import resolve_command
from toolgate.policy.engine import ConfirmHandler, PolicyEngine
from toolgate.schema import (
    ExecutionResult,
    PolicyConfig,
    PolicyDecision,
    RegistrySource,
    ToolDescriptor,
    TrustEvaluationResult,
    TrustMetadata,
)
from toolgate.store.cache import DiscoveryCache
from toolgate.trust.evaluator import EvaluatorOptions, TrustEvaluator
from toolgate.trust.hashing import hash_file

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4


class PipelineStage(str, Enum):
    """Last stage a pipeline run reached."""

    PROBE = "probe"
    RUN = "run"


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of discover_and_maybe_run().

    Attributes:
        path: Executable that was processed
        stage: PROBE if the tool does not support discovery, else RUN
        descriptor: Discovered (or cached) metadata
        verdict: Trust evaluation of the binary
        decision: Policy decision for the built command
        command: The argv that was executed
        result: Execution outcome
    """

    path: str
    stage: PipelineStage
    descriptor: ToolDescriptor | None = None
    verdict: TrustEvaluationResult | None = None
    decision: PolicyDecision | None = None
    command: list[str] = field(default_factory=list)
    result: ExecutionResult | None = None

    @property
    def executed(self) -> bool:
        return self.result is not None


async def _load_descriptor(
    path: Path,
    cache: DiscoveryCache | None,
    probe_timeout_ms: int,
    shim: ToolDescriptor | None = None,
) -> ToolDescriptor | None:
    if shim is not None:
        if cache is not None:
            checksum = hash_file(path).formatted
            cache.store(path, shim, checksum, path.stat().st_mtime_ns, source=RegistrySource.SHIM)
        return shim

    if cache is not None:
        cached = cache.lookup(path)
        if cached is not None:
            logger.debug("%s: using cached descriptor", path)
            return cached

    descriptor = await Prober(timeout_ms=probe_timeout_ms).probe(path)
    if descriptor is not None and cache is not None:
        cache.store(path, descriptor, hash_file(path).formatted, path.stat().st_mtime_ns)
    return descriptor


async def discover_and_maybe_run(
    path: Path | str,
    command_path: Sequence[str] | str,
    arguments: Mapping[str, Any] | None,
    policy: PolicyConfig,
    *,
    confirm: ConfirmHandler | None = None,
    cache: DiscoveryCache | None = None,
    evaluator_options: EvaluatorOptions | None = None,
    executor_options: ExecutorOptions | None = None,
    probe_timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    engine: PolicyEngine | None = None,
    client: httpx.AsyncClient | None = None,
    trust: TrustMetadata | None = None,
    shim: ToolDescriptor | None = None,
) -> PipelineResult:
    """
    Discover a tool, vet it, and run one of its commands if allowed.

    Args:
        path: Executable to probe and run
        command_path: Subcommand path or flattened name ('gh_pr_list')
        arguments: Named arguments for the command
        policy: Thresholds for the decision
        confirm: Confirmation handler (ignored when `engine` is given)
        cache: Discovery cache consulted before probing
        evaluator_options: Trust evaluation options
        executor_options: Execution bounds
        probe_timeout_ms: Probe deadline per phase
        engine: Shared PolicyEngine, so confirmations serialize across calls
        client: Shared httpx client for provenance fetches
        trust: Externally supplied trust record (registry or shim file);
            replaces whatever the tool says about itself
        shim: Descriptor supplied from a file; the tool is not probed

    Returns:
        PipelineResult; stage=PROBE when the tool does not support discovery

    Raises:
        ProbeError, ProbeTimeoutError: The tool claimed support and failed
        CommandNotFoundError, InvalidArgumentsError: Bad command or arguments
        TrustCompromisedError: The binary does not match its checksum
        PolicyViolationError: The command was blocked
        ExecutionError: The command could not be started
    """
    path = Path(path)
    descriptor = await _load_descriptor(path, cache, probe_timeout_ms, shim)
    if descriptor is None:
        logger.info("%s does not support discovery; nothing to run", path)
        return PipelineResult(path=str(path), stage=PipelineStage.PROBE)

    trust = trust if trust is not None else descriptor.trust
    verdict = await TrustEvaluator(evaluator_options, client=client).evaluate(path, trust)

    resolved = resolve_command(descriptor, command_path)
    argv = build_command(resolved, arguments or {}, executable=path)

    engine = engine or PolicyEngine(policy, confirm=confirm)
    decision = await engine.decide(argv, resolved.effects, trust, verdict, dict(arguments or {}))
    engine.enforce(decision, argv, verdict)

    result = await SafeExecutor(executor_options).run(argv)
    return PipelineResult(
        path=str(path),
        stage=PipelineStage.RUN,
        descriptor=descriptor,
        verdict=verdict,
        decision=decision,
        command=argv,
        result=result,
    )


# =============================================================================
# Batch execution
# =============================================================================


@dataclass(frozen=True)
class BatchItem:
    """One command of a batch; exactly one of result/error is set unless skipped."""

    command: list[str]
    result: ExecutionResult | None = None
    error: ExecutionError | None = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


@dataclass(frozen=True)
class BatchResult:
    """Per-command outcomes, in submission order."""

    items: list[BatchItem]
    duration_ms: float

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for item in self.items if not item.success and not item.skipped)


async def _run_item(executor: SafeExecutor, command: Sequence[str]) -> BatchItem:
    try:
        result = await executor.run(command)
    except ExecutionError as e:
        logger.warning("Batch command failed to start: %s", e)
        return BatchItem(command=list(command), error=e)
    return BatchItem(command=list(command), result=result)


async def run_batch(
    commands: Sequence[Sequence[str]],
    options: ExecutorOptions | None = None,
    *,
    parallel: bool = False,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    continue_on_error: bool = True,
) -> BatchResult:
    """
    Execute already-approved commands.

    Sequential mode runs commands in submission order. Parallel mode runs
    at most `max_concurrency` at once; the caller is responsible for the
    commands not conflicting on the filesystem.

    With continue_on_error=False, the first failure (a start error, a
    non-zero exit or a timeout) stops the batch and every command not yet
    started is reported as skipped.
    """
    if max_concurrency <= 0:
        msg = f"max_concurrency must be positive, got {max_concurrency}"
        raise ValueError(msg)

    executor = SafeExecutor(options)
    start = time.monotonic()

    if not parallel:
        items: list[BatchItem] = []
        stopped = False
        for command in commands:
            if stopped:
                items.append(BatchItem(command=list(command), skipped=True))
                continue
            item = await _run_item(executor, command)
            items.append(item)
            stopped = not item.success and not continue_on_error
        return BatchResult(items=items, duration_ms=(time.monotonic() - start) * 1000)

    semaphore = asyncio.Semaphore(max_concurrency)
    stop = asyncio.Event()

    async def bounded(command: Sequence[str]) -> BatchItem:
        async with semaphore:
            if stop.is_set():
                return BatchItem(command=list(command), skipped=True)
            item = await _run_item(executor, command)
            if not item.success and not continue_on_error:
                stop.set()
            return item

    items = list(await asyncio.gather(*(bounded(command) for command in commands)))
    return BatchResult(items=items, duration_ms=(time.monotonic() - start) * 1000)
