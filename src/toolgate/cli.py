"""
CLI entry point for toolgate.

This module provides the Typer-based command-line interface for toolgate.

Commands:
    scan        Discover tools in the configured safe directories
    probe       Probe a single executable for discovery metadata
    trust       Evaluate a binary against its trust metadata
    list        List tools in the registry
    get         Show a registered tool and its commands
    exec        Probe, vet and run one command of a tool
    doctor      Check system environment and dependencies

Architecture Note:
    The CLI only parses arguments, installs logging and renders results.
    Everything else lives in the library so it can be used without the CLI.
"""

import asyncio
import json
import os
import sys
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from toolgate import __version__
from toolgate.config import Settings, load_settings
from toolgate.discovery.prober import Prober
from toolgate.discovery.scanner import Scanner
from toolgate.errors import ToolgateError
from toolgate.execution.executor import ExecutorOptions
from toolgate.execution.redaction import format_result
from toolgate.log import configure_logging
from toolgate.orchestrator import PipelineStage, discover_and_maybe_run
from toolgate.policy.effects import resolve_command, summarize_effects
from toolgate.schema import (
    CommandNode,
    ConfirmationContext,
    PolicyConfig,
    Recommendation,
    ToolDescriptor,
    TrustEvaluationResult,
    TrustLevel,
    load_descriptor,
    load_policy,
    load_trust_metadata,
)
from toolgate.store.cache import DiscoveryCache
from toolgate.trust.evaluator import EvaluatorOptions, TrustEvaluator
from toolgate.trust.signature import find_cosign

# Initialize Typer app with metadata
app = typer.Typer(
    name="toolgate",
    help="Discover, vet and safely run command-line tools for agents.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

_LEVEL_STYLES = {
    TrustLevel.COMPROMISED: "bold red",
    TrustLevel.UNSIGNED: "yellow",
    TrustLevel.UNVERIFIED: "yellow",
    TrustLevel.PROVENANCE_FAIL: "yellow",
    TrustLevel.VERIFIED: "green",
}

JsonOption = Annotated[bool, typer.Option("--json", help="Output results in JSON format.")]
VerboseOption = Annotated[bool, typer.Option("--verbose", help="Log progress at INFO level.")]
DebugOption = Annotated[bool, typer.Option("--debug", help="Enable debug logging and full error tracebacks.")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]toolgate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    toolgate - trust-and-safety gate for agent tool execution.

    Tools are probed without running undocumented flags, checked against
    their declared hashes, signatures and provenance, and only executed
    when policy allows it.
    """


# =============================================================================
# Helpers
# =============================================================================


def _output_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _output_json_error(error_type: str, message: str, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
    }
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    _output_json(output)


def _fail(error: Exception, json_output: bool, debug: bool) -> typer.Exit:
    """Report an error and return the Exit to raise."""
    if json_output:
        _output_json_error(type(error).__name__, str(error), debug)
    else:
        console.print(f"[red]Error: {error}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    return typer.Exit(code=1)


def _settings(json_output: bool, debug: bool) -> Settings:
    try:
        return load_settings()
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e


def _level_display(verdict: TrustEvaluationResult) -> str:
    style = _LEVEL_STYLES[verdict.level]
    return f"[{style}]{verdict.level.name}[/{style}]"


def _iter_commands(
    commands: dict[str, CommandNode],
    prefix: list[str] | None = None,
) -> list[list[str]]:
    """Every leaf path of a command tree, depth first."""
    prefix = prefix or []
    paths = []
    for name, node in commands.items():
        path = [*prefix, name]
        if node.commands:
            paths.extend(_iter_commands(node.commands, path))
        else:
            paths.append(path)
    return paths


def _parse_args(pairs: list[str]) -> dict[str, Any]:
    """Turn repeated --arg key=value options into named arguments."""
    arguments: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            msg = f"Expected key=value, got {pair!r}"
            raise typer.BadParameter(msg, param_hint="--arg")
        if key in arguments:
            previous = arguments[key]
            arguments[key] = [*previous, value] if isinstance(previous, list) else [previous, value]
        else:
            arguments[key] = value
    return arguments


def _display_verdict(verdict: TrustEvaluationResult) -> None:
    console.print(f"Trust: {_level_display(verdict)} ({verdict.recommendation.value})")
    console.print(f"  [dim]{verdict.reason}[/dim]")
    if verdict.content_hash:
        console.print(f"  [dim]{verdict.content_hash}[/dim]")


# =============================================================================
# Commands
# =============================================================================


@app.command()
def scan(
    paths: Annotated[
        Optional[list[str]],
        typer.Option("--path", "-p", help="Directory to scan (repeatable). Defaults to the safe paths."),
    ] = None,
    full: Annotated[bool, typer.Option("--full", help="Re-probe every tool, ignoring the cache.")] = False,
    evaluate_trust: Annotated[
        bool, typer.Option("--trust/--no-trust", help="Evaluate trust for newly probed tools.")
    ] = True,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Discover tools in the safe directories and update the registry.

    Example:
        $ toolgate scan --path ~/.local/bin
    """
    configure_logging(verbose=verbose, debug=debug)
    settings = _settings(json_output, debug)
    cache = DiscoveryCache(settings.data_dir)
    evaluator = TrustEvaluator(EvaluatorOptions.from_settings(settings.trust)) if evaluate_trust else None
    scanner = Scanner(settings, cache, evaluator=evaluator)

    try:
        result = asyncio.run(scanner.scan(paths, incremental=not full))
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e

    if json_output:
        _output_json(result.model_dump(mode="json"))
        return

    console.print(
        f"[bold]Scan complete[/bold] in {result.duration_ms:.0f}ms: "
        f"[green]{result.discovered} discovered[/green], {result.updated} updated, "
        f"{result.skipped} unchanged, [red]{result.failed} failed[/red]"
    )
    if result.tools:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Tool", style="cyan")
        table.add_column("Version")
        table.add_column("Path")
        table.add_column("Trust")
        for entry in result.tools:
            verdict = result.verdicts.get(entry.path)
            table.add_row(entry.name, entry.version, entry.path, _level_display(verdict) if verdict else "-")
        console.print(table)
    for error in result.errors:
        console.print(f"[red]✗[/red] {error.path}: [dim]{error.message}[/dim]")
    if result.cancelled:
        console.print("[yellow]Scan deadline reached; some tools were not probed.[/yellow]")


@app.command()
def probe(
    path: Annotated[Path, typer.Argument(help="Executable to probe.", resolve_path=True)],
    timeout_ms: Annotated[
        Optional[int], typer.Option("--timeout", help="Probe timeout in milliseconds.")
    ] = None,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Probe one executable for discovery metadata.

    The discovery flag is only run if the tool's --help documents it.

    Example:
        $ toolgate probe /usr/local/bin/gh
    """
    configure_logging(verbose=verbose, debug=debug)
    settings = _settings(json_output, debug)
    prober = Prober(timeout_ms=timeout_ms or settings.discovery.probe_timeout_ms)

    try:
        descriptor = asyncio.run(prober.probe(path))
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e

    if descriptor is None:
        if json_output:
            _output_json({"path": str(path), "supported": False})
        else:
            console.print(f"[yellow]{path} does not support discovery[/yellow]")
        raise typer.Exit(code=1)

    if json_output:
        _output_json(descriptor.model_dump(mode="json", by_alias=True, exclude_none=True))
        return
    _display_descriptor(descriptor)


@app.command()
def trust(
    path: Annotated[Path, typer.Argument(help="Binary to evaluate.", resolve_path=True)],
    metadata: Annotated[
        Optional[Path],
        typer.Option(
            "--metadata",
            "-m",
            help="Trust metadata (YAML/JSON). Defaults to what the tool itself reports.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    offline: Annotated[bool, typer.Option("--offline", help="Skip checks that need the network.")] = False,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Evaluate a binary against its trust metadata.

    Exits 1 when the recommendation is to block.

    Example:
        $ toolgate trust ./bin/mytool --metadata mytool.trust.yaml
    """
    configure_logging(verbose=verbose, debug=debug)
    settings = _settings(json_output, debug)
    trust_settings = settings.trust.model_copy(update={"offline": True}) if offline else settings.trust
    options = EvaluatorOptions.from_settings(trust_settings)

    async def _evaluate() -> TrustEvaluationResult:
        if metadata is not None:
            trust_metadata = load_trust_metadata(metadata)
        else:
            descriptor = await Prober(timeout_ms=settings.discovery.probe_timeout_ms).probe(path)
            trust_metadata = descriptor.trust if descriptor else None
        return await TrustEvaluator(options).evaluate(path, trust_metadata)

    try:
        verdict = asyncio.run(_evaluate())
    except (ToolgateError, OSError, ValueError) as e:
        raise _fail(e, json_output, debug) from e

    if json_output:
        _output_json(verdict.model_dump(mode="json"))
    else:
        console.print(f"[bold]{path}[/bold]")
        _display_verdict(verdict)
    if verdict.recommendation == Recommendation.BLOCK:
        raise typer.Exit(code=1)


@app.command("list")
def list_tools(
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    List tools in the registry.

    Example:
        $ toolgate list
    """
    configure_logging(debug=debug)
    settings = _settings(json_output, debug)
    try:
        entries = DiscoveryCache(settings.data_dir).list_entries()
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e

    if json_output:
        _output_json([entry.model_dump(mode="json") for entry in entries])
        return
    if not entries:
        console.print("[dim]No tools registered. Run: toolgate scan[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Tool", style="cyan")
    table.add_column("Version")
    table.add_column("Source", width=8)
    table.add_column("Path")
    table.add_column("Last verified")
    for entry in entries:
        table.add_row(
            entry.name,
            entry.version,
            entry.source.value,
            entry.path,
            entry.last_verified.isoformat()[:19],
        )
    console.print(table)


def _display_descriptor(descriptor: ToolDescriptor) -> None:
    console.print(f"[bold]{descriptor.name}[/bold] {descriptor.version}")
    console.print(f"  [dim]{descriptor.description}[/dim]")
    if descriptor.trust is not None:
        console.print(f"  Trust source: {descriptor.trust.source.value}")

    paths = _iter_commands(descriptor.commands)
    if not paths:
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Command", style="cyan")
    table.add_column("Description")
    table.add_column("Effects")
    for path in paths:
        resolved = resolve_command(descriptor, path)
        table.add_row(
            " ".join(path),
            resolved.node.description if resolved.node else "",
            summarize_effects(resolved.effects),
        )
    console.print(table)


@app.command()
def get(
    name: Annotated[str, typer.Argument(help="Tool name.")],
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Show a registered tool and its commands.

    Example:
        $ toolgate get gh
    """
    configure_logging(debug=debug)
    settings = _settings(json_output, debug)
    try:
        descriptor = DiscoveryCache(settings.data_dir).get_descriptor(name)
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e

    if descriptor is None:
        if json_output:
            _output_json_error("NotFound", f"Tool not registered: {name}")
        else:
            console.print(f"[red]Tool not registered: {name}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        _output_json(descriptor.model_dump(mode="json", by_alias=True, exclude_none=True))
        return
    _display_descriptor(descriptor)


def _confirm_prompt(context: ConfirmationContext) -> bool:
    console.print(f"[bold yellow]Confirmation required[/bold yellow] for {' '.join(context.command)}")
    if context.summary:
        console.print(f"  {context.summary}")
    for violation in context.violations:
        console.print(f"  [yellow]•[/yellow] {violation.message}")
    return Confirm.ask("Run it anyway?", default=False, console=console)


@app.command("exec")
def exec_command(
    path: Annotated[Path, typer.Argument(help="Executable to run.", resolve_path=True)],
    command: Annotated[
        Optional[list[str]],
        typer.Argument(help="Subcommand path, e.g. 'pr list', or a flattened name like gh_pr_list."),
    ] = None,
    policy_path: Annotated[
        Optional[Path],
        typer.Option(
            "--policy",
            "-p",
            help="Policy YAML file. Defaults to the configured policy_path, then built-in defaults.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    metadata: Annotated[
        Optional[Path],
        typer.Option(
            "--metadata",
            "-m",
            help="Trust metadata (YAML/JSON) to check the binary against instead of what it reports.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    shim: Annotated[
        Optional[Path],
        typer.Option(
            "--shim",
            help="Descriptor file (YAML/JSON) for a tool without discovery support. The tool is not probed.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    args: Annotated[
        Optional[list[str]],
        typer.Option("--arg", "-a", help="Named argument as key=value (repeatable)."),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Approve every confirmation.")] = False,
    timeout_ms: Annotated[
        int, typer.Option("--timeout", help="Execution timeout in milliseconds.")
    ] = 30_000,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Probe, vet and run one command of a tool.

    Nothing is executed unless the policy allows it (or you confirm it).
    Compromised binaries are never run.

    Example:
        $ toolgate exec /usr/local/bin/gh pr list --arg limit=5 --policy policy.yaml
        $ toolgate exec ./bin/mytool build --metadata mytool.trust.yaml
    """
    configure_logging(verbose=verbose, debug=debug)
    settings = _settings(json_output, debug)
    arguments = _parse_args(args or [])

    try:
        policy_file = policy_path or settings.policy_path
        policy = load_policy(policy_file) if policy_file else PolicyConfig()
        trust_metadata = load_trust_metadata(metadata) if metadata else None
        shim_descriptor = load_descriptor(shim) if shim else None
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise _fail(e, json_output, debug) from e

    command_path: list[str] | str = list(command or [])
    if len(command_path) == 1 and "_" in command_path[0]:
        command_path = command_path[0]

    async def _run():
        return await discover_and_maybe_run(
            path,
            command_path,
            arguments,
            policy,
            confirm=(lambda _: True) if yes else _confirm_prompt,
            cache=DiscoveryCache(settings.data_dir),
            evaluator_options=EvaluatorOptions.from_settings(settings.trust),
            executor_options=ExecutorOptions(timeout_ms=timeout_ms),
            probe_timeout_ms=settings.discovery.probe_timeout_ms,
            trust=trust_metadata,
            shim=shim_descriptor,
        )

    try:
        outcome = asyncio.run(_run())
    except ToolgateError as e:
        raise _fail(e, json_output, debug) from e

    if outcome.stage == PipelineStage.PROBE:
        if json_output:
            _output_json({"path": str(path), "stage": outcome.stage.value, "executed": False})
        else:
            console.print(f"[yellow]{path} does not support discovery; nothing was run[/yellow]")
        raise typer.Exit(code=1)

    result = outcome.result
    if json_output:
        _output_json(
            {
                "path": outcome.path,
                "stage": outcome.stage.value,
                "command": outcome.command,
                "trust": outcome.verdict.model_dump(mode="json") if outcome.verdict else None,
                "decision": outcome.decision.model_dump(mode="json") if outcome.decision else None,
                "result": result.model_dump(mode="json") if result else None,
            }
        )
    else:
        if verbose and outcome.verdict is not None:
            _display_verdict(outcome.verdict)
        output = format_result(result)
        if output:
            console.print(output, markup=False, highlight=False)
        if not result.success:
            status = "timed out" if result.timed_out else f"exited with status {result.exit_code}"
            console.print(f"[red]{' '.join(outcome.command)} {status}[/red]")
    raise typer.Exit(code=0 if result.success else 1)


@app.command()
def doctor(
    json_output: JsonOption = False,
) -> None:
    """
    Check system environment and dependencies.

    Verifies:
    - Python version (3.11+)
    - Configuration file and environment overrides
    - cosign availability (needed for signature verification)
    - Data directory writability
    - Safe directories present on this machine

    Example:
        $ toolgate doctor
    """
    checks = []

    py_version = sys.version_info
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": f"{py_version.major}.{py_version.minor}.{py_version.micro}",
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })

    settings: Settings | None = None
    try:
        settings = load_settings()
        checks.append({"name": "Configuration", "ok": True, "value": "", "message": "OK"})
    except ToolgateError as e:
        checks.append({"name": "Configuration", "ok": False, "value": "", "message": e.message})

    cosign = find_cosign()
    checks.append({
        "name": "cosign",
        "ok": cosign is not None,
        "required": False,
        "value": cosign or "",
        "message": "OK" if cosign else "Not installed; signed tools will be reported as UNVERIFIED",
    })

    if settings is not None:
        data_dir = settings.data_dir
        existing = data_dir if data_dir.exists() else next((p for p in data_dir.parents if p.exists()), None)
        data_ok = existing is not None and existing.is_dir() and os.access(existing, os.W_OK)
        checks.append({
            "name": "Data directory",
            "ok": data_ok,
            "value": str(data_dir),
            "message": "OK" if data_ok else "Not writable",
        })

        present = [p for p in settings.discovery.scan_paths if Path(p).is_dir()]
        checks.append({
            "name": "Safe paths",
            "ok": bool(present),
            "value": ", ".join(present),
            "message": f"{len(present)} of {len(settings.discovery.scan_paths)} directories present",
        })

    all_ok = all(check["ok"] for check in checks if check.get("required", True))
    if json_output:
        _output_json({"ok": all_ok, "version": __version__, "checks": checks})
    else:
        console.print(f"[bold]toolgate doctor[/bold] v{__version__}")
        console.print()
        for check in checks:
            icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
            console.print(f"{icon} {check['name']}: [dim]{check['value']}[/dim] - {check['message']}")
        console.print()
        if all_ok:
            console.print("[green]All checks passed![/green]")
        else:
            console.print("[yellow]Some checks failed. See above for details.[/yellow]")

    raise typer.Exit(code=0 if all_ok else 1)


if __name__ == "__main__":
    app()
