"""
Directory scanning on a bounded worker pool.

The Scheduler runs independent jobs (one per candidate executable) with at
most `parallelism` in flight. Jobs share nothing except the on-disk cache,
which serializes its own writers.

Cancellation:
    Cancelling the task awaiting Scheduler.map() cancels every in-flight
    job; each job's subprocess is killed and reaped before map() re-raises.
    A scan deadline does the same for the jobs still running and reports
    them as cancelled instead of raising.
"""

import asyncio
import fnmatch
import logging
import os
import stat
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

from toolgate.config import DEFAULT_PARALLELISM, Settings, expand_tilde
from toolgate.discovery.prober import Prober
from toolgate.errors import ToolgateError
from toolgate.schema import RegistryEntry, ScanError, ScanResult, TrustEvaluationResult
from toolgate.store.cache import DiscoveryCache
from toolgate.trust.evaluator import TrustEvaluator
from toolgate.trust.hashing import hash_file

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# =============================================================================
# Scheduler
# =============================================================================


@dataclass(frozen=True)
class JobOutcome(Generic[T, R]):
    """
    Result of one scheduled job.

    Exactly one of value/error is meaningful unless the job was cancelled.
    """

    item: T
    value: R | None = None
    error: Exception | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class Scheduler:
    """
    Fixed-size asyncio worker pool.

    Usage:
        scheduler = Scheduler(parallelism=4)
        outcomes = await scheduler.map(paths, prober.probe)

    Expected failures (toolgate errors, OS errors, job deadlines) are
    captured per item. Anything else is a bug and propagates.
    """

    def __init__(self, parallelism: int = DEFAULT_PARALLELISM, job_timeout_ms: int | None = None) -> None:
        if parallelism <= 0:
            msg = f"parallelism must be positive, got {parallelism}"
            raise ValueError(msg)
        self.parallelism = parallelism
        self.job_timeout_ms = job_timeout_ms

    async def map(
        self,
        items: Iterable[T],
        job: Callable[[T], Awaitable[R]],
        deadline_ms: int | None = None,
    ) -> list[JobOutcome[T, R]]:
        """
        Run job(item) for every item, at most `parallelism` at a time.

        Args:
            items: Work items; outcomes come back in the same order
            job: Coroutine function applied to each item
            deadline_ms: Overall deadline; unfinished jobs are cancelled
                and reported with cancelled=True

        Returns:
            One JobOutcome per item
        """
        items = list(items)
        if not items:
            return []

        semaphore = asyncio.Semaphore(self.parallelism)

        async def worker(item: T) -> JobOutcome[T, R]:
            async with semaphore:
                try:
                    if self.job_timeout_ms is None:
                        value = await job(item)
                    else:
                        value = await asyncio.wait_for(job(item), timeout=self.job_timeout_ms / 1000)
                except (ToolgateError, OSError, TimeoutError) as e:
                    return JobOutcome(item=item, error=e)
                return JobOutcome(item=item, value=value)

        tasks = [asyncio.create_task(worker(item)) for item in items]
        try:
            _, pending = await asyncio.wait(
                tasks,
                timeout=None if deadline_ms is None else deadline_ms / 1000,
            )
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

        if pending:
            logger.warning("Deadline reached with %d jobs still running; cancelling", len(pending))
            await _cancel_all(pending)

        return [
            JobOutcome(item=item, cancelled=True) if task.cancelled() else task.result()
            for item, task in zip(items, tasks)
        ]


async def _cancel_all(tasks: Iterable[asyncio.Task[Any]]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# =============================================================================
# Candidate enumeration
# =============================================================================


def unsafe_directory_reason(directory: Path) -> str | None:
    """
    Why a directory must not be scanned, or None if it is acceptable.

    Relative paths (including ".") and world-writable directories are
    rejected: anything in them could have been planted by another user.
    """
    if not directory.is_absolute():
        return "relative directories are never scanned"
    mode = directory.stat().st_mode
    if mode & stat.S_IWOTH:
        return "directory is world-writable"
    return None


def is_skipped(name: str, skip_list: Sequence[str]) -> bool:
    """True if an executable name matches any skip-list glob."""
    return any(fnmatch.fnmatch(name, pattern) for pattern in skip_list)


def list_executables(directory: Path, skip_list: Sequence[str] = ()) -> list[Path]:
    """Regular executable files directly inside `directory`, sorted by name."""
    found = []
    for entry in sorted(directory.iterdir()):
        if is_skipped(entry.name, skip_list):
            continue
        if entry.is_file() and os.access(entry, os.X_OK):
            found.append(entry)
    return found


# =============================================================================
# Scanner
# =============================================================================


class CandidateStatus(str, Enum):
    DISCOVERED = "discovered"
    UPDATED = "updated"
    SKIPPED = "skipped"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class CandidateResult:
    status: CandidateStatus
    entry: RegistryEntry | None = None
    verdict: TrustEvaluationResult | None = None


class Scanner:
    """
    Discovers tools in the configured safe directories.

    Usage:
        scanner = Scanner(settings, DiscoveryCache(settings.data_dir))
        result = await scanner.scan()
        print(f"{result.discovered} new, {result.failed} failed")
    """

    def __init__(
        self,
        settings: Settings,
        cache: DiscoveryCache,
        evaluator: TrustEvaluator | None = None,
        prober: Prober | None = None,
    ) -> None:
        """
        Initialize the scanner.

        Args:
            settings: Discovery settings (paths, skip list, timeouts, pool size)
            cache: Shared discovery cache
            evaluator: If given, every newly probed tool also gets a verdict
            prober: Override the default Prober
        """
        self.settings = settings
        self.cache = cache
        self.evaluator = evaluator
        self.prober = prober or Prober(timeout_ms=settings.discovery.probe_timeout_ms)
        self.scheduler = Scheduler(parallelism=settings.discovery.parallelism)

    def candidates(self, directories: Sequence[str] | None = None) -> tuple[list[Path], list[ScanError]]:
        """
        Enumerate candidate executables.

        Missing directories are ignored. Unsafe ones are reported as errors.
        A binary reachable through several directories is listed once.
        """
        discovery = self.settings.discovery
        directories = discovery.scan_paths if directories is None else directories
        seen: set[Path] = set()
        found: list[Path] = []
        errors: list[ScanError] = []

        for raw in directories:
            directory = Path(expand_tilde(raw))
            if not directory.is_absolute():
                errors.append(
                    ScanError(
                        path=raw,
                        error_type="UnsafeDirectory",
                        message="relative directories are never scanned",
                    )
                )
                continue
            if not directory.is_dir():
                logger.debug("Skipping missing directory %s", directory)
                continue
            try:
                reason = unsafe_directory_reason(directory)
                if reason:
                    errors.append(ScanError(path=str(directory), error_type="UnsafeDirectory", message=reason))
                    continue
                executables = list_executables(directory, discovery.skip_list)
            except OSError as e:
                errors.append(ScanError(path=str(directory), error_type=type(e).__name__, message=str(e)))
                continue

            for path in executables:
                real = path.resolve()
                if real in seen:
                    continue
                seen.add(real)
                found.append(path)

        return found, errors

    async def scan(
        self,
        paths: Sequence[str] | None = None,
        incremental: bool = True,
        deadline_ms: int | None = None,
    ) -> ScanResult:
        """
        Probe every candidate and update the registry.

        Args:
            paths: Directories to scan (defaults to the configured safe paths)
            incremental: Reuse cache entries whose mtime and hash are unchanged
            deadline_ms: Optional overall deadline for the scan

        Returns:
            ScanResult with counts, entries and per-candidate errors
        """
        start = time.monotonic()
        candidates, errors = self.candidates(paths)
        logger.info("Scanning %d candidates with %d workers", len(candidates), self.scheduler.parallelism)

        outcomes = await self.scheduler.map(
            candidates,
            lambda path: self._scan_one(path, incremental),
            deadline_ms=deadline_ms,
        )

        counts = {status: 0 for status in CandidateStatus}
        tools: list[RegistryEntry] = []
        verdicts: dict[str, TrustEvaluationResult] = {}
        failed = 0
        cancelled = False

        for outcome in outcomes:
            if outcome.cancelled:
                cancelled = True
                continue
            if outcome.error is not None:
                failed += 1
                logger.warning("%s: %s", outcome.item, outcome.error)
                errors.append(
                    ScanError(
                        path=str(outcome.item),
                        error_type=type(outcome.error).__name__,
                        message=str(outcome.error),
                    )
                )
                continue
            result = outcome.value
            counts[result.status] += 1
            if result.entry is not None:
                tools.append(result.entry)
            if result.verdict is not None and result.entry is not None:
                verdicts[result.entry.path] = result.verdict

        scan_result = ScanResult(
            discovered=counts[CandidateStatus.DISCOVERED],
            updated=counts[CandidateStatus.UPDATED],
            failed=failed,
            skipped=counts[CandidateStatus.SKIPPED],
            duration_ms=(time.monotonic() - start) * 1000,
            tools=tools,
            verdicts=verdicts,
            errors=errors,
            cancelled=cancelled,
        )
        logger.info(
            "Scan finished: %d discovered, %d updated, %d skipped, %d failed",
            scan_result.discovered,
            scan_result.updated,
            scan_result.skipped,
            scan_result.failed,
        )
        return scan_result

    async def _scan_one(self, path: Path, incremental: bool) -> CandidateResult:
        mod_time = path.stat().st_mtime_ns
        existing = self.cache.entry_for_path(path)

        if incremental and existing is not None and existing.mod_time == mod_time:
            if hash_file(path).formatted == existing.checksum:
                return CandidateResult(CandidateStatus.SKIPPED, existing)

        descriptor = await self.prober.probe(path)
        if descriptor is None:
            if existing is not None:
                self.cache.invalidate(path)
            return CandidateResult(CandidateStatus.UNSUPPORTED)

        checksum = hash_file(path).formatted
        entry = self.cache.store(path, descriptor, checksum, mod_time)

        verdict = None
        if self.evaluator is not None:
            verdict = await self.evaluator.evaluate(path, descriptor.trust)

        status = CandidateStatus.DISCOVERED if existing is None else CandidateStatus.UPDATED
        return CandidateResult(status, entry, verdict)
