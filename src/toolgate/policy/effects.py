"""
Effects merging and command resolution.

A command's effective side-effect profile is the merge of every node from
the tool root down to the leaf. The merge is conservative:

    risk flags   (destructive, network, filesystem_*, billable)  OR
    safety flags (reversible, idempotent)                         AND
    cost                                                          max tier
    interactive                                                   field-wise worst

Nodes that declare nothing are ignored; a merged flag is None (unknown)
only when no node in the chain declares it.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from toolgate.errors import CommandNotFoundError
from toolgate.schema import (
    CommandNode,
    CostTier,
    Effects,
    InteractiveRequirements,
    StdinMode,
    ToolDescriptor,
)

RISK_FLAGS = (
    "destructive",
    "network",
    "filesystem_read",
    "filesystem_write",
    "filesystem_delete",
    "billable",
)
SAFETY_FLAGS = ("reversible", "idempotent")

DEFAULT_SEPARATOR = "_"

_STDIN_SEVERITY = {
    StdinMode.NONE: 0,
    StdinMode.OPTIONAL: 1,
    StdinMode.REQUIRED: 2,
    StdinMode.PASSWORD: 3,
}


# =============================================================================
# Merging
# =============================================================================


def _any_declared(values: Iterable[bool | None]) -> bool | None:
    declared = [v for v in values if v is not None]
    return any(declared) if declared else None


def _all_declared(values: Iterable[bool | None]) -> bool | None:
    declared = [v for v in values if v is not None]
    return all(declared) if declared else None


def _max_cost(values: Iterable[CostTier | None]) -> CostTier | None:
    declared = [v for v in values if v is not None]
    return max(declared, key=lambda tier: tier.rank) if declared else None


def _merge_interactive(values: Iterable[InteractiveRequirements | None]) -> InteractiveRequirements | None:
    declared = [v for v in values if v is not None]
    if not declared:
        return None
    stdin_modes = [v.stdin for v in declared if v.stdin is not None]
    return InteractiveRequirements(
        stdin=max(stdin_modes, key=_STDIN_SEVERITY.__getitem__) if stdin_modes else None,
        prompts=_any_declared(v.prompts for v in declared),
        tty=_any_declared(v.tty for v in declared),
    )


def merge_effects(*effects: Effects | None) -> Effects:
    """
    Conservatively merge effect declarations.

    Order does not matter. None entries (nodes without an effects block)
    are skipped.

    Example:
        >>> merge_effects(Effects(destructive=True), Effects(reversible=False)).destructive
        True
    """
    declared = [e for e in effects if e is not None]
    merged: dict[str, object] = {}
    for name in RISK_FLAGS:
        merged[name] = _any_declared(getattr(e, name) for e in declared)
    for name in SAFETY_FLAGS:
        merged[name] = _all_declared(getattr(e, name) for e in declared)
    merged["cost"] = _max_cost(e.cost for e in declared)
    merged["interactive"] = _merge_interactive(e.interactive for e in declared)
    return Effects(**merged)


# =============================================================================
# Safety summary
# =============================================================================


def effect_flags(effects: Effects | None) -> list[str]:
    """
    Short warning labels for an effects profile, most critical first.

    READ-ONLY is only claimed when network and filesystem writes are both
    explicitly declared absent.
    """
    if effects is None:
        return []
    flags = []
    if effects.destructive:
        flags.append("DESTRUCTIVE")
    if effects.reversible is False:
        flags.append("NOT REVERSIBLE")
    if effects.idempotent is False:
        flags.append("NOT IDEMPOTENT")
    if effects.filesystem_delete:
        flags.append("DELETES FILES")
    if effects.billable:
        flags.append("BILLABLE")
    if effects.cost in (CostTier.MEDIUM, CostTier.HIGH):
        flags.append(f"COST {effects.cost.value.upper()}")
    if effects.interactive is not None and effects.interactive.requires_interaction:
        flags.append("INTERACTIVE")
    if effects.network is False and effects.filesystem_write is False:
        flags.append("READ-ONLY")
    return flags


def summarize_effects(effects: Effects | None) -> str:
    """Bracketed safety summary such as "[DESTRUCTIVE | NOT REVERSIBLE]"."""
    flags = effect_flags(effects)
    return f"[{' | '.join(flags)}]" if flags else ""


# =============================================================================
# Command resolution
# =============================================================================


@dataclass(frozen=True)
class ResolvedCommand:
    """
    A subcommand located in a tool's command tree.

    Attributes:
        tool: The descriptor the command belongs to
        path: Subcommand names below the tool (empty for the tool itself)
        node: The leaf node (None when the tool itself is invoked)
        chain: Effects of the tool and each node on the path, root first
        effects: Conservative merge of the chain
    """

    tool: ToolDescriptor
    path: list[str]
    node: CommandNode | None
    chain: list[Effects | None] = field(default_factory=list)
    effects: Effects = field(default_factory=Effects)

    @property
    def command(self) -> list[str]:
        """Tool name followed by the subcommand path, e.g. ['gh', 'pr', 'create']."""
        return [self.tool.name, *self.path]

    @property
    def flat_name(self) -> str:
        return DEFAULT_SEPARATOR.join(self.command)


def _split_flat(commands: dict[str, CommandNode], remaining: str, separator: str) -> list[str] | None:
    """Greedy split of a flattened name against the tree (longest key first)."""
    if not remaining:
        return []
    for key in sorted(commands, key=len, reverse=True):
        if remaining == key:
            return [key]
        if remaining.startswith(key + separator):
            rest = _split_flat(commands[key].commands, remaining[len(key) + len(separator):], separator)
            if rest is not None:
                return [key, *rest]
    return None


def resolve_command(
    descriptor: ToolDescriptor,
    command: Sequence[str] | str,
    separator: str = DEFAULT_SEPARATOR,
) -> ResolvedCommand:
    """
    Locate a subcommand and merge the effects along its path.

    Args:
        descriptor: Tool metadata
        command: Subcommand path (['pr', 'create']) or a flattened name
            ('gh_pr_create', with or without the tool-name prefix)
        separator: Separator used in flattened names

    Returns:
        ResolvedCommand

    Raises:
        CommandNotFoundError: If the path does not exist, or the tool has
            subcommands and none was given
    """
    if isinstance(command, str):
        flat = command
        if flat == descriptor.name:
            flat = ""
        elif flat.startswith(descriptor.name + separator):
            flat = flat[len(descriptor.name) + len(separator):]
        path = _split_flat(descriptor.commands, flat, separator)
        if path is None:
            raise CommandNotFoundError(tool=descriptor.name, path=[command])
    else:
        path = list(command)

    if not path:
        if descriptor.commands:
            raise CommandNotFoundError(
                tool=descriptor.name,
                path=[],
                message=f"{descriptor.name} requires a subcommand: {', '.join(sorted(descriptor.commands))}",
            )
        return ResolvedCommand(
            tool=descriptor,
            path=[],
            node=None,
            chain=[descriptor.effects],
            effects=merge_effects(descriptor.effects),
        )

    chain: list[Effects | None] = [descriptor.effects]
    children = descriptor.commands
    node: CommandNode | None = None
    for segment in path:
        node = children.get(segment)
        if node is None:
            raise CommandNotFoundError(tool=descriptor.name, path=path)
        chain.append(node.effects)
        children = node.commands

    return ResolvedCommand(
        tool=descriptor,
        path=path,
        node=node,
        chain=chain,
        effects=merge_effects(*chain),
    )
