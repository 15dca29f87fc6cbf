"""
Bounded subprocess primitive shared by the prober, the signature verifier
and the executor.

Security Note:
    Commands are always an argument vector handed to exec directly.
    Nothing here ever goes through a shell.

    Every child runs in its own session so that a timeout or cancellation
    can signal the whole process group. A shell script that forks `sleep`
    would otherwise keep our pipes open after the script itself was killed.

Guarantees:
    - Each call carries a deadline; expiry sends SIGTERM, then SIGKILL
      after a grace period
    - Cancelling the awaiting task kills and reaps the child before the
      CancelledError propagates
    - stdout and stderr are capped independently; bytes past the cap are
      drained and discarded so the child never blocks on a full pipe
    - stdin is always /dev/null
"""

import asyncio
import inspect
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

ByteSink = Callable[[bytes], Awaitable[None] | None]


@dataclass(frozen=True)
class ProcessOutput:
    """
    Raw outcome of one bounded subprocess run.

    Attributes:
        argv: The argument vector that was executed
        exit_code: Exit status, None if the child was killed before exiting
        stdout: Captured stdout bytes (at most the configured cap)
        stderr: Captured stderr bytes (at most the configured cap)
        stdout_truncated: True if stdout produced more than the cap
        stderr_truncated: True if stderr produced more than the cap
        timed_out: True if the deadline expired
        duration_ms: Wall-clock time from spawn to reap
    """

    argv: list[str]
    exit_code: int | None
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    duration_ms: float = 0.0


@dataclass
class _Capture:
    limit: int
    buffer: bytearray = field(default_factory=bytearray)
    truncated: bool = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self.buffer)
        if room > 0:
            self.buffer.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True


async def spawn(argv: Sequence[str], cwd: str | None = None, env: dict[str, str] | None = None) -> asyncio.subprocess.Process:
    """Start a child process with piped output and no stdin."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=True,
    )


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        logger.debug("process group %s already gone", proc.pid)


async def terminate(proc: asyncio.subprocess.Process, grace_ms: int = 1000) -> None:
    """SIGTERM the process group, then SIGKILL if it outlives the grace period."""
    if proc.returncode is None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_ms / 1000)
            return
        except TimeoutError:
            logger.debug("pid %s ignored SIGTERM, killing", proc.pid)
    _signal_group(proc, signal.SIGKILL)
    await proc.wait()


async def _pump(stream: asyncio.StreamReader | None, capture: _Capture, sink: ByteSink | None) -> None:
    if stream is None:
        return
    while chunk := await stream.read(READ_CHUNK_SIZE):
        capture.feed(chunk)
        if sink is not None:
            result = sink(chunk)
            if inspect.isawaitable(result):
                await result


async def run_process(
    argv: Sequence[str],
    *,
    timeout_ms: int,
    max_output_bytes: int,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    stdout_sink: ByteSink | None = None,
    stderr_sink: ByteSink | None = None,
    kill_grace_ms: int = 1000,
) -> ProcessOutput:
    """
    Run argv to completion or deadline and capture bounded output.

    Args:
        argv: Literal argument vector; argv[0] is the executable
        timeout_ms: Wall-clock deadline in milliseconds
        max_output_bytes: Cap applied to stdout and stderr independently
        cwd: Working directory
        env: Full environment for the child (None inherits ours)
        stdout_sink: Called with every stdout chunk as it arrives
        stderr_sink: Called with every stderr chunk as it arrives
        kill_grace_ms: Delay between SIGTERM and SIGKILL on timeout

    Returns:
        ProcessOutput; timeouts are reported in it, not raised

    Raises:
        FileNotFoundError, PermissionError, OSError: the child could not start
    """
    argv = list(argv)
    start = time.monotonic()
    proc = await spawn(argv, cwd=cwd, env=env)
    out = _Capture(max_output_bytes)
    err = _Capture(max_output_bytes)

    async def communicate() -> int:
        await asyncio.gather(
            _pump(proc.stdout, out, stdout_sink),
            _pump(proc.stderr, err, stderr_sink),
        )
        return await proc.wait()

    # The pumps keep draining after a timeout so the pipes reach EOF once
    # the process group is dead.
    task = asyncio.ensure_future(communicate())
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        _signal_group(proc, signal.SIGKILL)
        await asyncio.gather(task, return_exceptions=True)
        await proc.wait()
        raise

    timed_out = task not in done
    if timed_out:
        await terminate(proc, kill_grace_ms)
        drained, _ = await asyncio.wait({task}, timeout=kill_grace_ms / 1000)
        if task not in drained:
            logger.debug("pid %s: output pipes still open after kill", proc.pid)
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        exit_code: int | None = None
    elif task.exception() is not None:
        await terminate(proc, kill_grace_ms)
        raise task.exception()
    else:
        exit_code = task.result()

    return ProcessOutput(
        argv=argv,
        exit_code=exit_code,
        stdout=bytes(out.buffer),
        stderr=bytes(err.buffer),
        stdout_truncated=out.truncated,
        stderr_truncated=err.truncated,
        timed_out=timed_out,
        duration_ms=(time.monotonic() - start) * 1000,
    )


def decode(data: bytes) -> str:
    """Decode child output as UTF-8, replacing undecodable bytes."""
    return data.decode("utf-8", errors="replace")
