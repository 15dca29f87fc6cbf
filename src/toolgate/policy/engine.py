"""
Policy Engine for toolgate.

Decides whether a command may run, given its merged effects, its trust
verdict and a caller-supplied PolicyConfig.

Design Principles:
    - Enumerate, don't short-circuit: every violated threshold is reported,
      so a blocked command explains all of its problems at once
    - Unknown is risky: an undeclared destructive/network/filesystem flag
      counts as declared, an undeclared reversible counts as False
    - Fail-closed: no handler, a False answer or a failing handler all block
    - COMPROMISED is never confirmable

How it works:
    1. check() compares effects, trust source and verdict with the policy
    2. decide() returns immediately if nothing was violated
    3. A hard block (COMPROMISED) returns without consulting the handler
    4. Otherwise the confirmation handler is called exactly once, under a
       lock, with every reason; its answer is final

Security Note:
    This module is security-critical. The handler lock guarantees there are
    never two prompts in flight for one engine, even when many workers call
    decide() concurrently.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from toolgate.errors import PolicyViolationError, TrustCompromisedError
from toolgate.policy.effects import summarize_effects
from toolgate.schema import (
    ConfirmationContext,
    ConfirmationReason,
    Effects,
    PolicyConfig,
    PolicyDecision,
    TrustEvaluationResult,
    TrustLevel,
    TrustMetadata,
    TrustSource,
    Violation,
    ViolationCode,
)

logger = logging.getLogger(__name__)

ConfirmHandler = Callable[[ConfirmationContext], Awaitable[bool] | bool]


def _declared(value: bool | None) -> str:
    return "declared" if value is not None else "not declared"


class PolicyEngine:
    """
    Evaluates commands against a PolicyConfig.

    Usage:
        engine = PolicyEngine(policy, confirm=ask_user)
        decision = await engine.decide(["gh", "repo", "delete"], effects, trust, verdict)
        engine.enforce(decision, ["gh", "repo", "delete"], verdict)

    Attributes:
        policy: The thresholds to enforce
        confirm: Optional handler returning True to proceed
    """

    def __init__(self, policy: PolicyConfig | None = None, confirm: ConfirmHandler | None = None) -> None:
        """
        Initialize the policy engine.

        Args:
            policy: Thresholds (defaults to PolicyConfig())
            confirm: Confirmation handler, sync or async
        """
        self.policy = policy or PolicyConfig()
        self.confirm = confirm
        self._confirm_lock = asyncio.Lock()

    # =========================================================================
    # Threshold checks
    # =========================================================================

    def check(
        self,
        command: Sequence[str],
        effects: Effects | None,
        trust: TrustMetadata | None = None,
        verdict: TrustEvaluationResult | None = None,
    ) -> PolicyDecision:
        """
        Compare one command with every threshold. Pure; never prompts.

        Returns:
            PolicyDecision with allowed=True only if nothing was violated
        """
        effects = effects or Effects()
        violations = [
            *self._trust_violations(trust, verdict),
            *self._effect_violations(effects),
        ]

        if not violations:
            return PolicyDecision(allowed=True, reason="All policy checks passed")

        hard = any(not v.confirmable for v in violations)
        return PolicyDecision(
            allowed=False,
            requires_confirmation=not hard,
            violations=violations,
            reason="; ".join(v.message for v in violations),
        )

    def _effect_violations(self, effects: Effects) -> list[Violation]:
        policy = self.policy
        found: list[Violation] = []

        if not policy.allow_destructive and effects.destructive is not False:
            found.append(
                Violation(
                    code=ViolationCode.DESTRUCTIVE_BLOCKED,
                    reason=ConfirmationReason.DESTRUCTIVE,
                    message=f"Command is destructive ({_declared(effects.destructive)})",
                )
            )
        if not policy.allow_non_reversible and effects.reversible is not True:
            found.append(
                Violation(
                    code=ViolationCode.NON_REVERSIBLE_BLOCKED,
                    reason=ConfirmationReason.NON_REVERSIBLE,
                    message=f"Command is not reversible ({_declared(effects.reversible)})",
                )
            )
        if not policy.allow_billable and effects.billable:
            found.append(
                Violation(
                    code=ViolationCode.BILLABLE_BLOCKED,
                    reason=ConfirmationReason.BILLABLE,
                    message="Command incurs charges",
                )
            )
        if not policy.allow_network and effects.network is not False:
            found.append(
                Violation(
                    code=ViolationCode.NETWORK_BLOCKED,
                    reason=ConfirmationReason.NETWORK,
                    message=f"Command uses the network ({_declared(effects.network)})",
                )
            )
        if not policy.allow_filesystem_write and effects.filesystem_write is not False:
            found.append(
                Violation(
                    code=ViolationCode.FILESYSTEM_WRITE_BLOCKED,
                    reason=ConfirmationReason.FILESYSTEM_WRITE,
                    message=f"Command writes files ({_declared(effects.filesystem_write)})",
                )
            )
        if not policy.allow_filesystem_delete and effects.filesystem_delete is not False:
            found.append(
                Violation(
                    code=ViolationCode.FILESYSTEM_DELETE_BLOCKED,
                    reason=ConfirmationReason.FILESYSTEM_DELETE,
                    message=f"Command deletes files ({_declared(effects.filesystem_delete)})",
                )
            )
        if (
            not policy.allow_interactive
            and effects.interactive is not None
            and effects.interactive.requires_interaction
        ):
            found.append(
                Violation(
                    code=ViolationCode.INTERACTIVE_BLOCKED,
                    reason=ConfirmationReason.INTERACTIVE,
                    message="Command requires interactive input",
                )
            )
        if (
            policy.max_cost is not None
            and effects.cost is not None
            and effects.cost.rank > policy.max_cost.rank
        ):
            found.append(
                Violation(
                    code=ViolationCode.COST_EXCEEDED,
                    reason=ConfirmationReason.COST_HIGH,
                    message=f"Cost tier {effects.cost.value} exceeds maximum {policy.max_cost.value}",
                )
            )
        return found

    def _trust_violations(
        self,
        trust: TrustMetadata | None,
        verdict: TrustEvaluationResult | None,
    ) -> list[Violation]:
        policy = self.policy
        found: list[Violation] = []

        if verdict is not None and verdict.level == TrustLevel.COMPROMISED:
            found.append(
                Violation(
                    code=ViolationCode.TRUST_COMPROMISED,
                    reason=ConfirmationReason.COMPROMISED,
                    message=f"Binary is compromised: {verdict.reason}",
                    confirmable=False,
                )
            )
            return found

        level = verdict.level if verdict is not None else TrustLevel.UNSIGNED
        if level < policy.min_trust_level:
            found.append(
                Violation(
                    code=ViolationCode.TRUST_LEVEL_INSUFFICIENT,
                    reason=ConfirmationReason.LOW_TRUST,
                    message=(
                        f"Trust level {level.name} is below minimum {policy.min_trust_level.name}"
                        + ("" if verdict is not None else " (not evaluated)")
                    ),
                )
            )

        if policy.min_trust_source is not None:
            source = trust.source if trust is not None else TrustSource.INFERRED
            if source.rank < policy.min_trust_source.rank:
                found.append(
                    Violation(
                        code=ViolationCode.TRUST_INSUFFICIENT,
                        reason=ConfirmationReason.LOW_TRUST,
                        message=(
                            f"Trust source '{source.value}' is below minimum "
                            f"'{policy.min_trust_source.value}'"
                        ),
                    )
                )
        return found

    # =========================================================================
    # Decision
    # =========================================================================

    async def decide(
        self,
        command: Sequence[str],
        effects: Effects | None,
        trust: TrustMetadata | None = None,
        verdict: TrustEvaluationResult | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        """
        Decide whether a command may run, consulting the handler if needed.

        The handler is called at most once per decision, and calls from
        concurrent decisions are serialized.

        Returns:
            PolicyDecision (confirmed is set only when the handler answered)
        """
        command = list(command)
        decision = self.check(command, effects, trust, verdict)
        if decision.allowed:
            return decision
        name = command[0] if command else "<empty>"

        if decision.hard_blocked:
            logger.warning("Blocked %s: %s", name, decision.reason)
            return decision

        if self.confirm is None:
            logger.info("Blocked %s (no confirmation handler): %s", name, decision.reason)
            return decision.model_copy(
                update={"reason": f"{decision.reason} (no confirmation handler configured)"}
            )

        context = ConfirmationContext(
            command=command,
            arguments=dict(arguments or {}),
            effects=effects or Effects(),
            trust=trust,
            verdict=verdict,
            reasons=decision.reasons,
            violations=decision.violations,
            summary=summarize_effects(effects),
        )

        async with self._confirm_lock:
            approved = await self._ask(context)

        if approved:
            logger.info("Confirmed %s despite: %s", name, decision.reason)
            return decision.model_copy(
                update={"allowed": True, "confirmed": True, "reason": f"Confirmed: {decision.reason}"}
            )
        return decision.model_copy(
            update={"confirmed": False, "reason": f"Rejected by confirmation handler: {decision.reason}"}
        )

    async def _ask(self, context: ConfirmationContext) -> bool:
        try:
            answer = self.confirm(context)
            if inspect.isawaitable(answer):
                answer = await answer
        except Exception as e:
            logger.warning("Confirmation handler failed, treating as rejection: %s", e)
            return False
        return answer is True

    def enforce(
        self,
        decision: PolicyDecision,
        command: Sequence[str],
        verdict: TrustEvaluationResult | None = None,
    ) -> None:
        """
        Raise for a blocked decision; return quietly for an allowed one.

        Raises:
            TrustCompromisedError: The decision was a hard block
            PolicyViolationError: Any other blocked decision
        """
        enforce(decision, command, verdict)


def enforce(
    decision: PolicyDecision,
    command: Sequence[str],
    verdict: TrustEvaluationResult | None = None,
) -> None:
    """Raise the matching error if `decision` does not allow `command`."""
    if decision.allowed:
        return
    command = list(command)
    if decision.hard_blocked:
        checks = verdict.checks if verdict is not None else None
        raise TrustCompromisedError(
            path=command[0] if command else "",
            expected_hash=(checks.expected_hash if checks else None) or "",
            actual_hash=(checks.actual_hash if checks else None) or "",
        )
    raise PolicyViolationError(
        command=command,
        violations=[v.code.value for v in decision.violations],
        reasons=decision.blocked_messages() or [decision.reason],
    )


async def decide(
    command: Sequence[str],
    effects: Effects | None,
    trust: TrustMetadata | None,
    policy: PolicyConfig,
    *,
    verdict: TrustEvaluationResult | None = None,
    confirm: ConfirmHandler | None = None,
    arguments: dict[str, Any] | None = None,
) -> PolicyDecision:
    """
    One-off decision with a fresh engine.

    Callers deciding many commands concurrently should share one
    PolicyEngine so that handler calls are serialized across them.
    """
    engine = PolicyEngine(policy, confirm=confirm)
    return await engine.decide(command, effects, trust, verdict, arguments)
