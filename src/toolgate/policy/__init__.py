"""
Policy module for toolgate.

Turns (merged effects, trust verdict, caller policy) into an execution
decision. Nothing runs unless the decision allows it.

Key concepts:
    - merge_effects: conservative merge along a command's ancestor chain
    - PolicyEngine.check: pure enumeration of every violated threshold
    - PolicyEngine.decide: check plus at most one serialized confirmation
    - COMPROMISED binaries are a hard block under every policy
"""

from toolgate.policy.effects import (
    ResolvedCommand,
    effect_flags,
    merge_effects,
    resolve_command,
    summarize_effects,
)
from toolgate.policy.engine import ConfirmHandler, PolicyEngine, decide, enforce

__all__ = [
    "ConfirmHandler",
    "PolicyEngine",
    "ResolvedCommand",
    "decide",
    "effect_flags",
    "enforce",
    "merge_effects",
    "resolve_command",
    "summarize_effects",
]
