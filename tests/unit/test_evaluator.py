"""
Unit tests for the trust evaluator.

Tests cover:
- The priority chain: hash -> signature -> provenance -> verified
- Hash mismatches are COMPROMISED regardless of every later check
- Degraded verification (offline, disabled, cosign missing) is UNVERIFIED
- Provenance failures, fetch timeouts included, are PROVENANCE_FAIL
"""

import asyncio
import base64
import json
from pathlib import Path

import httpx
import pytest

import toolgate.trust.signature as signature_module
from toolgate.config import TrustSettings
from toolgate.errors import HashError
from toolgate.schema import (
    IntegrityRecord,
    ProvenanceRecord,
    Recommendation,
    SignatureRef,
    SignatureType,
    TrustLevel,
    TrustMetadata,
    TrustSource,
)
from toolgate.trust.evaluator import EvaluatorOptions, TrustEvaluator, evaluate
from toolgate.trust.hashing import hash_file

SIGNATURE = SignatureRef(
    type=SignatureType.COSIGN,
    identity="release@example.com",
    issuer="https://token.actions.githubusercontent.com",
)
WRONG_HASH = "sha256:" + "0" * 64


@pytest.fixture
def binary(tmp_path: Path) -> Path:
    path = tmp_path / "tool"
    path.write_bytes(b"#!/bin/sh\necho tool\n")
    return path


@pytest.fixture
def cosign_ok(make_script, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A cosign stand-in that accepts every signature."""
    cosign = make_script("cosign", 'echo "Verified OK"')
    monkeypatch.setattr(signature_module, "find_cosign", lambda: str(cosign))
    return cosign


@pytest.fixture
def cosign_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(signature_module, "find_cosign", lambda: None)


def attestation_file(tmp_path: Path, digest: str, level: int = 3) -> str:
    statement = {
        "_type": "https://in-toto.io/Statement/v1",
        "subject": [{"name": "tool", "digest": {"sha256": digest}}],
        "predicateType": "https://slsa.dev/provenance/v1",
        "predicate": {"slsaLevel": level, "runDetails": {"builder": {"id": "https://github.com/actions/runner"}}},
    }
    envelope = {
        "payloadType": "application/vnd.in-toto+json",
        "payload": base64.b64encode(json.dumps(statement).encode()).decode(),
    }
    path = tmp_path / "provenance.json"
    path.write_text(json.dumps(envelope))
    return str(path)


def metadata(checksum: str | None = None, signature: SignatureRef | None = None, provenance: ProvenanceRecord | None = None) -> TrustMetadata:
    return TrustMetadata(
        source=TrustSource.NATIVE,
        integrity=IntegrityRecord(checksum=checksum, signature=signature),
        provenance=provenance,
    )


class TestHashStep:
    """Step 1: integrity."""

    async def test_no_metadata_is_unsigned(self, binary: Path) -> None:
        result = await evaluate(binary, None)
        assert result.level == TrustLevel.UNSIGNED
        assert result.recommendation == Recommendation.CONFIRM
        assert result.content_hash == hash_file(binary).formatted

    async def test_matching_hash_without_signature(self, binary: Path) -> None:
        result = await evaluate(binary, metadata(checksum=hash_file(binary).formatted))
        assert result.level == TrustLevel.UNSIGNED
        assert result.checks.hash_matched is True

    async def test_mismatch_is_compromised(self, binary: Path, cosign_ok: Path) -> None:
        """Expected H1, actual H2: blocked even with a valid-looking signature."""
        result = await evaluate(binary, metadata(checksum=WRONG_HASH, signature=SIGNATURE))
        assert result.level == TrustLevel.COMPROMISED
        assert result.recommendation == Recommendation.BLOCK
        assert result.checks.hash_matched is False
        assert result.checks.expected_hash == "0" * 64
        assert result.checks.actual_hash == hash_file(binary).digest
        assert result.checks.signature_verified is None

    @pytest.mark.parametrize("with_signature", [True, False])
    @pytest.mark.parametrize("with_provenance", [True, False])
    @pytest.mark.parametrize("offline", [True, False])
    async def test_mismatch_always_wins(
        self,
        binary: Path,
        tmp_path: Path,
        cosign_ok: Path,
        with_signature: bool,
        with_provenance: bool,
        offline: bool,
    ) -> None:
        """No combination of later checks upgrades a hash mismatch."""
        provenance = (
            ProvenanceRecord(url=attestation_file(tmp_path, hash_file(binary).digest)) if with_provenance else None
        )
        trust = metadata(
            checksum=WRONG_HASH,
            signature=SIGNATURE if with_signature else None,
            provenance=provenance,
        )
        result = await evaluate(binary, trust, EvaluatorOptions(offline_mode=offline))
        assert result.level == TrustLevel.COMPROMISED

    async def test_unreadable_binary_with_checksum(self, tmp_path: Path) -> None:
        """A declared checksum that cannot be checked is COMPROMISED."""
        result = await evaluate(tmp_path / "gone", metadata(checksum=WRONG_HASH))
        assert result.level == TrustLevel.COMPROMISED
        assert "BINARY_NOT_FOUND" in result.reason

    async def test_unreadable_binary_without_checksum(self, tmp_path: Path) -> None:
        with pytest.raises(HashError):
            await evaluate(tmp_path / "gone", None)


class TestSignatureStep:
    """Step 2: signature."""

    async def test_offline_is_unverified(self, binary: Path) -> None:
        result = await evaluate(binary, metadata(signature=SIGNATURE), EvaluatorOptions(offline_mode=True))
        assert result.level == TrustLevel.UNVERIFIED
        assert "offline" in result.reason

    async def test_disabled_is_unverified(self, binary: Path) -> None:
        result = await evaluate(binary, metadata(signature=SIGNATURE), EvaluatorOptions(verify_signatures=False))
        assert result.level == TrustLevel.UNVERIFIED

    async def test_cosign_missing_is_unverified(self, binary: Path, cosign_missing: None) -> None:
        result = await evaluate(binary, metadata(signature=SIGNATURE))
        assert result.level == TrustLevel.UNVERIFIED
        assert result.recommendation == Recommendation.CONFIRM

    async def test_unsupported_type_is_unverified(self, binary: Path) -> None:
        result = await evaluate(binary, metadata(signature=SignatureRef(type=SignatureType.MINISIGN)))
        assert result.level == TrustLevel.UNVERIFIED
        assert "not yet supported" in result.reason

    async def test_rejected_signature_is_unsigned(self, binary: Path, make_script, monkeypatch: pytest.MonkeyPatch) -> None:
        cosign = make_script("cosign", "echo 'no matching signatures' >&2; exit 1")
        monkeypatch.setattr(signature_module, "find_cosign", lambda: str(cosign))
        result = await evaluate(binary, metadata(signature=SIGNATURE))
        assert result.level == TrustLevel.UNSIGNED
        assert result.checks.signature_verified is False

    async def test_verified_without_provenance(self, binary: Path, cosign_ok: Path) -> None:
        result = await evaluate(binary, metadata(checksum=hash_file(binary).formatted, signature=SIGNATURE))
        assert result.level == TrustLevel.VERIFIED
        assert result.recommendation == Recommendation.EXECUTE
        assert result.checks.signature_verified is True


class TestProvenanceStep:
    """Step 3: provenance."""

    async def test_full_verification(self, binary: Path, tmp_path: Path, cosign_ok: Path) -> None:
        url = attestation_file(tmp_path, hash_file(binary).digest)
        trust = metadata(signature=SIGNATURE, provenance=ProvenanceRecord(url=url, slsa_level=3))
        result = await evaluate(binary, trust)
        assert result.level == TrustLevel.VERIFIED
        assert result.checks.provenance_verified is True
        assert result.checks.slsa_level == 3

    async def test_subject_mismatch(self, binary: Path, tmp_path: Path, cosign_ok: Path) -> None:
        url = attestation_file(tmp_path, "f" * 64)
        result = await evaluate(binary, metadata(signature=SIGNATURE, provenance=ProvenanceRecord(url=url)))
        assert result.level == TrustLevel.PROVENANCE_FAIL
        assert result.checks.provenance_verified is False

    async def test_minimum_level(self, binary: Path, tmp_path: Path, cosign_ok: Path) -> None:
        url = attestation_file(tmp_path, hash_file(binary).digest, level=1)
        result = await evaluate(
            binary,
            metadata(signature=SIGNATURE, provenance=ProvenanceRecord(url=url)),
            EvaluatorOptions(minimum_slsa_level=3),
        )
        assert result.level == TrustLevel.PROVENANCE_FAIL

    async def test_fetch_timeout_is_provenance_fail(self, binary: Path, cosign_ok: Path) -> None:
        """A fetch that never answers lowers the verdict instead of raising."""

        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        trust = metadata(signature=SIGNATURE, provenance=ProvenanceRecord(url="https://example.com/att.json"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(hang)) as client:
            evaluator = TrustEvaluator(EvaluatorOptions(network_timeout_ms=100), client=client)
            result = await evaluator.evaluate(binary, trust)
        assert result.level == TrustLevel.PROVENANCE_FAIL
        assert "timed out" in result.reason

    async def test_provenance_disabled(self, binary: Path, tmp_path: Path, cosign_ok: Path) -> None:
        url = attestation_file(tmp_path, "f" * 64)
        result = await evaluate(
            binary,
            metadata(signature=SIGNATURE, provenance=ProvenanceRecord(url=url)),
            EvaluatorOptions(verify_provenance=False),
        )
        assert result.level == TrustLevel.VERIFIED
        assert result.checks.provenance_verified is None


class TestOptions:
    """Tests for EvaluatorOptions."""

    def test_from_settings(self) -> None:
        settings = TrustSettings(offline=True, minimum_slsa_level=2, allowed_builders=["gha"])
        options = EvaluatorOptions.from_settings(settings)
        assert options.offline_mode is True
        assert options.minimum_slsa_level == 2
        assert options.allowed_builders == ["gha"]

    async def test_results_are_fresh(self, binary: Path) -> None:
        """Each call re-reads the binary; nothing is cached."""
        evaluator = TrustEvaluator()
        first = await evaluator.evaluate(binary, None)
        binary.write_bytes(b"changed")
        second = await evaluator.evaluate(binary, None)
        assert first.content_hash != second.content_hash
