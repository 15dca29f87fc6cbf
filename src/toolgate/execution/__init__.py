"""
Execution module for toolgate.

Runs approved commands as bounded subprocesses and post-processes their
output (secret redaction, length limits).
"""

from toolgate.execution.commands import build_command, validate_arguments
from toolgate.execution.executor import ExecutorOptions, SafeExecutor, run
from toolgate.execution.process import ProcessOutput, run_process
from toolgate.execution.redaction import format_result, post_process, redact_secrets, truncate_output

__all__ = [
    "ExecutorOptions",
    "ProcessOutput",
    "SafeExecutor",
    "build_command",
    "format_result",
    "post_process",
    "redact_secrets",
    "run",
    "run_process",
    "truncate_output",
    "validate_arguments",
]
