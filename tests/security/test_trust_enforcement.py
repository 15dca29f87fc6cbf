"""
Security tests for trust enforcement.

Tests cover:
- A compromised binary never executes, whatever the policy or handler says
- Tampering after discovery is caught at execution time
- Cached metadata is never trusted for changed bytes
- Blocked commands never spawn the tool
"""

import pytest

from toolgate.errors import PolicyViolationError, TrustCompromisedError
from toolgate.orchestrator import discover_and_maybe_run
from toolgate.policy.engine import PolicyEngine
from toolgate.schema import ConfirmationContext, Effects, PolicyConfig, TrustEvaluationResult, TrustLevel
from toolgate.store.cache import DiscoveryCache
from toolgate.trust.hashing import hash_file

PERMISSIVE = PolicyConfig(
    allow_destructive=True,
    allow_non_reversible=True,
    allow_billable=True,
    allow_network=True,
    allow_filesystem_write=True,
    allow_filesystem_delete=True,
    allow_interactive=True,
    min_trust_level=TrustLevel.COMPROMISED,
)


def with_checksum(descriptor: dict, checksum: str) -> dict:
    return dict(descriptor, trust={"source": "native", "integrity": {"checksum": checksum}})


class TestCompromisedNeverRuns:
    """Hash mismatches are a hard block."""

    @pytest.mark.parametrize("command", [["greet"], ["repo", "list"], ["repo", "delete"]])
    async def test_permissive_policy_and_approving_handler(
        self, command, make_agent_tool, sample_descriptor_dict, spawn_recorder
    ) -> None:
        asked: list[ConfirmationContext] = []

        def approve(context: ConfirmationContext) -> bool:
            asked.append(context)
            return True

        tool = make_agent_tool(descriptor=with_checksum(sample_descriptor_dict, "sha256:" + "f" * 64))
        arguments = {"repo": "x"} if command[-1] == "delete" else None
        with pytest.raises(TrustCompromisedError):
            await discover_and_maybe_run(tool, command, arguments, PERMISSIVE, confirm=approve)

        assert asked == []
        assert spawn_recorder.flags() == ["--help", "--agent"]

    async def test_checksum_of_previous_bytes(
        self, make_agent_tool, sample_descriptor_dict, tmp_cache: DiscoveryCache, spawn_recorder
    ) -> None:
        """Metadata describing an earlier build of the binary is a mismatch."""
        tool = make_agent_tool()
        good_checksum = hash_file(tool).formatted
        make_agent_tool(descriptor=with_checksum(sample_descriptor_dict, good_checksum))
        with pytest.raises(TrustCompromisedError):
            await discover_and_maybe_run(tool, ["greet"], None, PERMISSIVE, cache=tmp_cache)
        assert "greet" not in spawn_recorder.flags()

    async def test_stale_cache_entry_not_trusted(self, make_agent_tool, tmp_cache: DiscoveryCache) -> None:
        tool = make_agent_tool()
        await discover_and_maybe_run(tool, ["greet"], None, PolicyConfig(), cache=tmp_cache)
        assert tmp_cache.lookup(tool) is not None

        tool.write_text(tool.read_text().replace("Demo tool for tests", "Evil tool"))
        assert tmp_cache.lookup(tool) is None

    async def test_engine_cannot_be_talked_into_it(self) -> None:
        """Even a direct check with an approving handler stays blocked."""
        verdict = TrustEvaluationResult.at(TrustLevel.COMPROMISED, "hash mismatch")
        decision = await PolicyEngine(PERMISSIVE, confirm=lambda c: True).decide(
            ["tool"], Effects(destructive=False), None, verdict
        )
        assert not decision.allowed
        assert decision.confirmed is None


class TestBlockedNeverSpawns:
    """Policy blocks stop before the executor."""

    async def test_destructive_blocked(self, make_agent_tool, spawn_recorder) -> None:
        with pytest.raises(PolicyViolationError):
            await discover_and_maybe_run(make_agent_tool(), ["repo", "delete"], {"repo": "x"}, PolicyConfig())
        assert spawn_recorder.count == 2

    async def test_trust_floor_blocks(self, make_agent_tool, spawn_recorder) -> None:
        """An unsigned tool below the policy's trust floor is not run."""
        policy = PolicyConfig(min_trust_level=TrustLevel.VERIFIED)
        with pytest.raises(PolicyViolationError) as exc_info:
            await discover_and_maybe_run(make_agent_tool(), ["greet"], None, policy)
        assert exc_info.value.violations == ["TRUST_LEVEL_INSUFFICIENT"]
        assert "greet" not in spawn_recorder.flags()

    async def test_failing_handler_blocks(self, make_agent_tool, spawn_recorder) -> None:
        def broken(context: ConfirmationContext) -> bool:
            raise RuntimeError("terminal closed")

        with pytest.raises(PolicyViolationError):
            await discover_and_maybe_run(
                make_agent_tool(), ["repo", "delete"], {"repo": "x"}, PolicyConfig(), confirm=broken
            )
        assert spawn_recorder.count == 2
