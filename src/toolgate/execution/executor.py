"""
Safe subprocess execution for approved commands.

Security Note:
    Policy enforcement happens BEFORE this module runs. By the time run()
    is called the command has been decided on; run() re-checks a decision
    passed to it and refuses to spawn anything for a blocked one.

    CRITICAL SECURITY MEASURES:
    - Commands are a list handed to exec directly (no shell by default)
    - Each element is one argument; nothing in a value is re-parsed
    - stdin is /dev/null
    - Wall-clock timeout with SIGTERM, then SIGKILL after a grace period
    - stdout and stderr are capped independently; overflow is reported
      as truncated, never as an error
    - Secrets are redacted from captured and streamed output by default

Results, not exceptions:
    Non-zero exits and timeouts come back as an ExecutionResult. Only a
    process that cannot be started at all raises (ExecutionError), unless
    the caller opts into raise_on_timeout.
"""

import codecs
import inspect
import logging
import os
import re
import shlex
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from toolgate.errors import ExecutionError, ExecutionTimeoutError, InvalidArgumentsError
from toolgate.execution.process import decode, run_process
from toolgate.execution.redaction import DEFAULT_MAX_RESULT_LENGTH, compile_patterns, post_process, redact_secrets
from toolgate.policy.engine import enforce
from toolgate.schema import ExecutionResult, PolicyDecision

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
DEFAULT_KILL_GRACE_MS = 1000
SHELL = "/bin/sh"

# Streamed text is held back until a newline so redaction sees whole
# lines; a line longer than this is flushed as is.
MAX_PENDING_CHARS = 64 * 1024

TextSink = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class ExecutorOptions:
    """
    Bounds and post-processing for one execution.

    Attributes:
        timeout_ms: Wall-clock deadline
        max_output_bytes: Capture cap, per stream
        cwd: Working directory (None = current)
        env: Variables overlaid on the current environment
        shell: Run through /bin/sh -c (explicit opt-in only)
        raise_on_timeout: Raise ExecutionTimeoutError instead of returning
        redact: Apply secret redaction
        redaction_patterns: Extra patterns, added to the built-in ones
        max_result_length: Character cap applied after redaction
        kill_grace_ms: Delay between SIGTERM and SIGKILL
    """

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    cwd: str | None = None
    env: dict[str, str] | None = None
    shell: bool = False
    raise_on_timeout: bool = False
    redact: bool = True
    redaction_patterns: tuple[str | re.Pattern[str], ...] = field(default_factory=tuple)
    max_result_length: int = DEFAULT_MAX_RESULT_LENGTH
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            msg = f"timeout_ms must be positive, got {self.timeout_ms}"
            raise ValueError(msg)
        if self.max_output_bytes <= 0:
            msg = f"max_output_bytes must be positive, got {self.max_output_bytes}"
            raise ValueError(msg)


class _StreamForwarder:
    """Decodes byte chunks incrementally and forwards (redacted) text."""

    def __init__(self, sink: TextSink, redact: bool, patterns: list[re.Pattern[str]]) -> None:
        self._sink = sink
        self._redact = redact
        self._patterns = patterns
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    async def feed(self, chunk: bytes) -> None:
        text = self._pending + self._decoder.decode(chunk)
        if self._redact and len(text) < MAX_PENDING_CHARS:
            head, newline, tail = text.rpartition("\n")
            self._pending = tail
            text = head + newline
        else:
            self._pending = ""
        if text:
            await self._emit(text)

    async def close(self) -> None:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if text:
            await self._emit(text)

    async def _emit(self, text: str) -> None:
        if self._redact:
            text, _ = redact_secrets(text, self._patterns)
        result = self._sink(text)
        if inspect.isawaitable(result):
            await result


class SafeExecutor:
    """
    Runs approved commands as bounded subprocesses.

    Usage:
        executor = SafeExecutor(ExecutorOptions(timeout_ms=5000))
        result = await executor.run(["gh", "pr", "list"])
        if result.timed_out:
            ...

        await executor.stream(["tail", "-n", "20", "app.log"], on_stdout=print)
    """

    def __init__(self, options: ExecutorOptions | None = None) -> None:
        self.options = options or ExecutorOptions()

    async def run(self, command: Sequence[str], options: ExecutorOptions | None = None) -> ExecutionResult:
        """
        Execute a command and capture its output.

        Raises:
            InvalidArgumentsError: Empty command or non-string elements
            ExecutionError: The process could not be started
            ExecutionTimeoutError: Deadline expired and raise_on_timeout is set
        """
        return await self._execute(command, options or self.options)

    async def stream(
        self,
        command: Sequence[str],
        on_stdout: TextSink | None = None,
        on_stderr: TextSink | None = None,
        options: ExecutorOptions | None = None,
    ) -> ExecutionResult:
        """
        Execute a command, handing output to sinks as it arrives.

        Sinks may be plain or async callables. The returned result still
        carries the (capped) captured output.
        """
        return await self._execute(command, options or self.options, on_stdout, on_stderr)

    @staticmethod
    def _argv(command: Sequence[str], opts: ExecutorOptions) -> list[str]:
        if isinstance(command, str):
            raise InvalidArgumentsError(
                command=[command],
                problems=["command must be a list of arguments, not a string"],
            )
        argv = list(command)
        problems = []
        if not argv:
            problems.append("command is empty")
        for i, element in enumerate(argv):
            if not isinstance(element, str):
                problems.append(f"command[{i}] must be a string, got {type(element).__name__}")
        if problems:
            raise InvalidArgumentsError(command=[str(a) for a in argv], problems=problems)
        if opts.shell:
            return [SHELL, "-c", shlex.join(argv)]
        return argv

    async def _execute(
        self,
        command: Sequence[str],
        opts: ExecutorOptions,
        on_stdout: TextSink | None = None,
        on_stderr: TextSink | None = None,
    ) -> ExecutionResult:
        argv = self._argv(command, opts)
        env = None if opts.env is None else {**os.environ, **opts.env}
        patterns = compile_patterns(opts.redaction_patterns)
        out_stream = _StreamForwarder(on_stdout, opts.redact, patterns) if on_stdout else None
        err_stream = _StreamForwarder(on_stderr, opts.redact, patterns) if on_stderr else None

        logger.debug("Executing %s (%d args, timeout %dms)", argv[0], len(argv) - 1, opts.timeout_ms)
        try:
            output = await run_process(
                argv,
                timeout_ms=opts.timeout_ms,
                max_output_bytes=opts.max_output_bytes,
                cwd=opts.cwd,
                env=env,
                stdout_sink=out_stream.feed if out_stream else None,
                stderr_sink=err_stream.feed if err_stream else None,
                kill_grace_ms=opts.kill_grace_ms,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                command=argv,
                underlying_error=f"executable not found: {e}",
                suggestion="Check the path, or re-run discovery if the tool moved",
            ) from e
        except PermissionError as e:
            raise ExecutionError(command=argv, underlying_error=f"permission denied: {e}") from e
        except OSError as e:
            raise ExecutionError(command=argv, underlying_error=str(e)) from e

        for stream in (out_stream, err_stream):
            if stream is not None:
                await stream.close()

        result = post_process(
            ExecutionResult(
                command=argv,
                exit_code=output.exit_code,
                stdout=decode(output.stdout),
                stderr=decode(output.stderr),
                duration_ms=output.duration_ms,
                timed_out=output.timed_out,
                stdout_truncated=output.stdout_truncated,
                stderr_truncated=output.stderr_truncated,
                timeout_ms=opts.timeout_ms,
            ),
            redact=opts.redact,
            patterns=patterns,
            max_length=opts.max_result_length,
        )

        if result.timed_out:
            logger.warning(
                "%s timed out after %.0fms (limit %dms)", argv[0], result.duration_ms, opts.timeout_ms
            )
            if opts.raise_on_timeout:
                raise ExecutionTimeoutError(
                    command=argv,
                    elapsed_ms=result.duration_ms,
                    timeout_ms=opts.timeout_ms,
                    partial_result=result,
                )
        elif result.exit_code != 0:
            logger.info("%s exited with status %s", argv[0], result.exit_code)
        return result


async def run(
    command: Sequence[str],
    options: ExecutorOptions | None = None,
    *,
    decision: PolicyDecision | None = None,
) -> ExecutionResult:
    """
    Execute an approved command.

    If a decision is passed and it does not allow the command, the
    matching error is raised before any process is started.

    Raises:
        PolicyViolationError: Blocked decision
        TrustCompromisedError: Hard-blocked decision
        ExecutionError: The process could not be started
    """
    if decision is not None:
        enforce(decision, command)
    return await SafeExecutor(options).run(command)
