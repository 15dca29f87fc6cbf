"""
Output post-processing: secret redaction and length limits.

Runs after the subprocess has exited and before anything is handed back to
the caller. Redaction is on by default; custom patterns are added to the
built-in ones, never substituted for them.
"""

import re
from collections.abc import Iterable

from toolgate.schema import ExecutionResult

REDACTED = "[REDACTED]"
TRUNCATED_MARKER = "\n[TRUNCATED]"
TIMEOUT_MARKER = "\n[TIMEOUT]"
DEFAULT_MAX_RESULT_LENGTH = 100_000

_TRAILING_TOKEN = re.compile(r"\S+\Z")

BUILTIN_PATTERNS: tuple[re.Pattern[str], ...] = (
    # GitHub tokens
    re.compile(r"gh[pousr]_[A-Za-z0-9]{36,}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{22,}"),
    # OpenAI-style and generic API keys
    re.compile(r"sk-[A-Za-z0-9_-]{20,}"),
    re.compile(r"api[-_]?key\s*[:=]\s*['\"]?[A-Za-z0-9_\-]{16,}['\"]?", re.IGNORECASE),
    # HTTP auth headers
    re.compile(r"bearer\s+[A-Za-z0-9._~+/=-]{20,}", re.IGNORECASE),
    re.compile(r"basic\s+[A-Za-z0-9+/]{16,}={0,2}", re.IGNORECASE),
    # AWS access key ids
    re.compile(r"AKIA[0-9A-Z]{16}"),
    # JWTs
    re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"),
    # FOO_SECRET=..., FOO_TOKEN=... style assignments
    re.compile(
        r"[A-Z_]{3,}_(?:SECRET|KEY|TOKEN|PASSWORD)\s*=\s*['\"]?[A-Za-z0-9+/=._-]{16,}['\"]?",
        re.IGNORECASE,
    ),
    # password=..., secret=..., token=...
    re.compile(r"\b(?:password|passwd|secret|token)\s*[:=]\s*['\"]?[^\s'\"]{8,}['\"]?", re.IGNORECASE),
)


def compile_patterns(patterns: Iterable[str | re.Pattern[str]]) -> list[re.Pattern[str]]:
    """
    Compile caller-supplied patterns.

    Raises:
        re.error: If a pattern string is not a valid regular expression
    """
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def redact_secrets(
    text: str,
    extra_patterns: Iterable[str | re.Pattern[str]] = (),
) -> tuple[str, bool]:
    """
    Replace every secret-looking match with [REDACTED].

    Args:
        text: Output to scrub
        extra_patterns: Caller patterns applied after the built-in ones

    Returns:
        (scrubbed text, whether anything was replaced)
    """
    changed = False
    for pattern in (*BUILTIN_PATTERNS, *compile_patterns(extra_patterns)):
        text, count = pattern.subn(REDACTED, text)
        changed = changed or count > 0
    return text, changed


def truncate_output(text: str, max_length: int = DEFAULT_MAX_RESULT_LENGTH) -> tuple[str, bool]:
    """
    Cut text to at most max_length characters, marker included.

    Returns:
        (possibly shortened text, whether it was cut)
    """
    if len(text) <= max_length:
        return text, False
    keep = max(max_length - len(TRUNCATED_MARKER), 0)
    return text[:keep] + TRUNCATED_MARKER, True


def withhold_partial_tail(text: str) -> tuple[str, bool]:
    """
    Replace the unterminated last token of capped output with [REDACTED].

    A byte cap can cut a secret short enough that no pattern matches what
    is left of it, so the cut token is withheld rather than scanned.

    Returns:
        (text, whether a token was withheld)
    """
    match = _TRAILING_TOKEN.search(text)
    if match is None:
        return text, False
    return text[: match.start()] + REDACTED, True


def post_process(
    result: ExecutionResult,
    *,
    redact: bool = True,
    patterns: Iterable[str | re.Pattern[str]] = (),
    max_length: int = DEFAULT_MAX_RESULT_LENGTH,
) -> ExecutionResult:
    """
    Redact, then truncate, both streams of an ExecutionResult.

    A stream already cut by the byte cap loses its unterminated last token
    first. Redaction then runs before the character truncation, so a secret
    straddling either cut never survives as a prefix.
    """
    patterns = compile_patterns(patterns)
    stdout, stderr = result.stdout, result.stderr
    redacted = result.redacted

    if redact:
        if result.stdout_truncated:
            stdout, out_withheld = withhold_partial_tail(stdout)
            redacted = redacted or out_withheld
        if result.stderr_truncated:
            stderr, err_withheld = withhold_partial_tail(stderr)
            redacted = redacted or err_withheld
        stdout, out_changed = redact_secrets(stdout, patterns)
        stderr, err_changed = redact_secrets(stderr, patterns)
        redacted = redacted or out_changed or err_changed

    stdout, out_cut = truncate_output(stdout, max_length)
    stderr, err_cut = truncate_output(stderr, max_length)

    return result.model_copy(
        update={
            "stdout": stdout,
            "stderr": stderr,
            "stdout_truncated": result.stdout_truncated or out_cut,
            "stderr_truncated": result.stderr_truncated or err_cut,
            "redacted": redacted,
        }
    )


def format_result(
    result: ExecutionResult,
    *,
    max_length: int = DEFAULT_MAX_RESULT_LENGTH,
    include_stderr: bool = True,
    include_exit_code: bool = False,
) -> str:
    """
    Render a (post-processed) result as a single text block for an agent.

    Timeouts end with [TIMEOUT]; anything cut along the way ends with
    [TRUNCATED].
    """
    parts = [result.stdout] if result.stdout else []
    if include_stderr and result.stderr:
        parts.append(result.stderr)
    if include_exit_code:
        parts.append(f"Exit code: {result.exit_code}")
    content = "\n".join(parts)

    if result.timed_out:
        content += TIMEOUT_MARKER
    elif result.truncated and not content.endswith(TRUNCATED_MARKER.strip()):
        content += TRUNCATED_MARKER

    content, _ = truncate_output(content, max_length)
    return content
