"""
Building a literal argument vector from named arguments.

Positional arguments come first, in schema order, followed by options:

    {"title": "Fix bug", "draft": True, "label": ["a", "b"]}
        -> [gh, pr, create, --title, "Fix bug", --draft, --label, a, --label, b]

Values are never interpolated into a string; each one becomes exactly one
argv element, so nothing in a value can start a new command.
Positional values starting with "-" are rejected: a parser would take them
for options. Option values always follow their flag.
"""

import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from toolgate.errors import InvalidArgumentsError
from toolgate.policy.effects import ResolvedCommand
from toolgate.schema import ArgumentSpec, OptionSpec

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def select_flag(flags: list[str]) -> str:
    """Prefer the long form (--flag) over the short one."""
    for flag in flags:
        if flag.startswith("--"):
            return flag
    return flags[0]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce(spec: ArgumentSpec | OptionSpec, value: Any) -> tuple[Any, str | None]:
    """Check one value against its schema; returns (normalized value, problem)."""
    if spec.enum:
        if value not in spec.enum and _stringify(value) not in [_stringify(e) for e in spec.enum]:
            return value, f"'{spec.name}' must be one of: {', '.join(_stringify(e) for e in spec.enum)}"
        return value, None

    kind = spec.type
    if kind == "boolean":
        if isinstance(value, bool):
            return value, None
        if isinstance(value, str) and value.lower() in _TRUE | _FALSE:
            return value.lower() in _TRUE, None
        return value, f"'{spec.name}' expects a boolean"
    if kind == "integer":
        if isinstance(value, int) and not isinstance(value, bool):
            return value, None
        if isinstance(value, str) and value.strip().removeprefix("-").isdigit():
            return int(value), None
        return value, f"'{spec.name}' expects an integer"
    if kind == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value, None
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                return value, f"'{spec.name}' expects a number"
            if math.isfinite(number):
                return number, None
        return value, f"'{spec.name}' expects a number"
    if kind == "array" or spec.variadic:
        if isinstance(value, (list, tuple)):
            return list(value), None
        return [value], None
    return value, None


def validate_arguments(resolved: ResolvedCommand, arguments: Mapping[str, Any]) -> dict[str, Any]:
    """
    Check named arguments against the command's schema.

    Returns:
        Normalized arguments

    Raises:
        InvalidArgumentsError: Missing required or unknown parameters,
            values of the wrong type, or positionals that look like flags
    """
    node = resolved.node
    specs: list[ArgumentSpec | OptionSpec] = [*(node.arguments if node else []), *(node.options if node else [])]
    known = {spec.name for spec in specs}
    problems: list[str] = []
    normalized: dict[str, Any] = {}

    for name in arguments:
        if name not in known:
            problems.append(f"unknown parameter '{name}'")

    positional = {spec.name for spec in node.arguments} if node else set()
    for spec in specs:
        if spec.name not in arguments:
            if spec.required:
                problems.append(f"missing required parameter '{spec.name}'")
            continue
        value = arguments[spec.name]
        if value is None:
            problems.append(f"'{spec.name}' cannot be null")
            continue
        value, problem = _coerce(spec, value)
        if problem is None and spec.name in positional and _looks_like_flag(value):
            problem = f"'{spec.name}' must not start with '-'; the tool would read it as a flag"
        if problem:
            problems.append(problem)
        else:
            normalized[spec.name] = value

    if problems:
        raise InvalidArgumentsError(command=resolved.command, problems=problems)
    return normalized


def build_command(
    resolved: ResolvedCommand,
    arguments: Mapping[str, Any] | None = None,
    executable: Path | str | None = None,
) -> list[str]:
    """
    Build the argv for a resolved command.

    Args:
        resolved: Command located with resolve_command()
        arguments: Named argument values
        executable: Path used as argv[0] instead of the bare tool name, so
            the binary that was evaluated is the one that runs

    Returns:
        Literal argument vector

    Raises:
        InvalidArgumentsError: If the arguments do not fit the schema
    """
    values = validate_arguments(resolved, arguments or {})
    argv = [str(executable) if executable is not None else resolved.tool.name, *resolved.path]
    node = resolved.node
    if node is None:
        return argv

    for spec in node.arguments:
        if spec.name not in values:
            continue
        value = values[spec.name]
        if isinstance(value, list):
            argv.extend(_stringify(v) for v in value)
        else:
            argv.append(_stringify(value))

    for spec in node.options:
        if spec.name not in values:
            continue
        value = values[spec.name]
        flag = select_flag(spec.flags)
        if spec.type == "boolean":
            if value is True:
                argv.append(flag)
        elif isinstance(value, list):
            for item in value:
                argv.extend([flag, _stringify(item)])
        else:
            argv.extend([flag, _stringify(value)])

    return argv
