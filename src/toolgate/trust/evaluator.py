"""
Trust evaluation: hash, signature and provenance folded into one verdict.

Priority chain (each step can only lower the ceiling for the next):

    1. Hash        mismatch                          -> COMPROMISED   (block)
    2. Signature   none / rejected                   -> UNSIGNED      (confirm)
                   not checked (disabled, offline,
                   cosign missing, unsupported type) -> UNVERIFIED    (confirm)
    3. Provenance  any failure, fetch timeouts too   -> PROVENANCE_FAIL (confirm)
    4. Everything passed                             -> VERIFIED      (execute)

Security Note:
    The hash check runs first and unconditionally. A valid signature over
    stale metadata says nothing about different bytes, so a mismatch is
    never upgraded by later checks.

    Network and tooling problems degrade the verdict; they never raise and
    never upgrade it.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from toolgate.config import TrustSettings
from toolgate.errors import HashError
from toolgate.schema import CheckResults, TrustEvaluationResult, TrustLevel, TrustMetadata
from toolgate.trust.hashing import digests_match, hash_file, normalize_digest
from toolgate.trust.provenance import verify_provenance
from toolgate.trust.signature import SignatureStatus, verify_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluatorOptions:
    """
    Knobs for a trust evaluation.

    Attributes:
        verify_signatures: Run signature verification when a signature is declared
        verify_provenance: Fetch and check provenance when it is declared
        minimum_slsa_level: Lowest acceptable SLSA level
        offline_mode: Skip every check that needs the network
        allowed_identities: Accepted signer identities (empty = any)
        allowed_issuers: Accepted OIDC issuers (empty = any)
        allowed_builders: Accepted builder ids, substring match (empty = any)
        network_timeout_ms: Deadline for cosign and attestation fetches
    """

    verify_signatures: bool = True
    verify_provenance: bool = True
    minimum_slsa_level: int = 1
    offline_mode: bool = False
    allowed_identities: list[str] = field(default_factory=list)
    allowed_issuers: list[str] = field(default_factory=list)
    allowed_builders: list[str] = field(default_factory=list)
    network_timeout_ms: int = 30_000

    @classmethod
    def from_settings(cls, settings: TrustSettings) -> "EvaluatorOptions":
        return cls(
            verify_signatures=settings.verify_signatures,
            verify_provenance=settings.verify_provenance,
            minimum_slsa_level=settings.minimum_slsa_level,
            offline_mode=settings.offline,
            allowed_identities=list(settings.allowed_identities),
            allowed_issuers=list(settings.allowed_issuers),
            allowed_builders=list(settings.allowed_builders),
            network_timeout_ms=settings.network_timeout_ms,
        )


class TrustEvaluator:
    """
    Computes a TrustEvaluationResult for a binary and its trust metadata.

    Usage:
        evaluator = TrustEvaluator(EvaluatorOptions(offline_mode=True))
        result = await evaluator.evaluate("/usr/local/bin/gh", descriptor.trust)
        if result.level == TrustLevel.COMPROMISED:
            ...

    Results are produced fresh on every call and are never cached.
    """

    def __init__(
        self,
        options: EvaluatorOptions | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            options: Verification options (defaults to EvaluatorOptions())
            client: Shared httpx client for attestation fetches
        """
        self.options = options or EvaluatorOptions()
        self._client = client

    async def evaluate(
        self,
        binary_path: Path | str,
        trust: TrustMetadata | None,
    ) -> TrustEvaluationResult:
        """
        Evaluate a binary against its trust metadata.

        Raises:
            HashError: If the binary cannot be read and no checksum is
                declared (with a declared checksum this is COMPROMISED)
        """
        result = await self._evaluate(Path(binary_path), trust)
        if result.level == TrustLevel.COMPROMISED:
            logger.warning("%s: %s", binary_path, result.reason)
        else:
            logger.info("%s: %s (%s)", binary_path, result.level.name, result.reason)
        return result

    async def _evaluate(self, path: Path, trust: TrustMetadata | None) -> TrustEvaluationResult:
        opts = self.options
        integrity = trust.integrity if trust else None
        expected = integrity.checksum if integrity else None

        # Step 1: integrity
        try:
            actual = hash_file(path)
        except HashError as e:
            if not expected:
                raise
            return TrustEvaluationResult.at(
                TrustLevel.COMPROMISED,
                f"Binary cannot be hashed against expected checksum: {e.kind}",
                CheckResults(hash_matched=False, expected_hash=normalize_digest(expected)),
            )
        content_hash = actual.formatted

        if expected:
            hash_matched = digests_match(expected, actual.digest)
            checks = CheckResults(
                hash_matched=hash_matched,
                expected_hash=normalize_digest(expected),
                actual_hash=actual.digest,
            )
            if not hash_matched:
                return TrustEvaluationResult.at(
                    TrustLevel.COMPROMISED,
                    "Binary hash mismatch: does not match expected checksum",
                    checks,
                    content_hash,
                )
        else:
            checks = CheckResults(actual_hash=actual.digest)

        # Step 2: signature
        if trust is None:
            return TrustEvaluationResult.at(
                TrustLevel.UNSIGNED, "No trust metadata available", checks, content_hash
            )
        signature = integrity.signature if integrity else None
        if signature is None:
            return TrustEvaluationResult.at(
                TrustLevel.UNSIGNED, "No cryptographic signature available", checks, content_hash
            )
        if not opts.verify_signatures:
            return TrustEvaluationResult.at(
                TrustLevel.UNVERIFIED,
                "Signature verification was skipped (disabled)",
                checks,
                content_hash,
            )
        if opts.offline_mode:
            return TrustEvaluationResult.at(
                TrustLevel.UNVERIFIED,
                "Signature verification skipped (offline mode)",
                checks,
                content_hash,
            )

        sig = await verify_signature(
            path,
            signature,
            timeout_ms=opts.network_timeout_ms,
            allowed_identities=opts.allowed_identities,
            allowed_issuers=opts.allowed_issuers,
        )
        if sig.status in (SignatureStatus.UNAVAILABLE, SignatureStatus.UNSUPPORTED):
            return TrustEvaluationResult.at(
                TrustLevel.UNVERIFIED,
                sig.detail,
                checks.model_copy(update={"signature_detail": sig.detail}),
                content_hash,
            )
        checks = checks.model_copy(
            update={"signature_verified": sig.verified, "signature_detail": sig.detail or None}
        )
        if not sig.verified:
            return TrustEvaluationResult.at(
                TrustLevel.UNSIGNED,
                sig.detail or "Signature verification failed",
                checks,
                content_hash,
            )

        # Step 3: provenance
        if trust.provenance is not None and opts.verify_provenance:
            prov = await verify_provenance(
                trust.provenance,
                content_hash=actual.digest,
                timeout_ms=opts.network_timeout_ms,
                minimum_level=opts.minimum_slsa_level,
                allowed_builders=opts.allowed_builders,
                client=self._client,
            )
            checks = checks.model_copy(
                update={
                    "provenance_verified": prov.verified,
                    "provenance_detail": prov.error,
                    "slsa_level": prov.slsa_level,
                    "builder": prov.builder,
                }
            )
            if not prov.verified:
                return TrustEvaluationResult.at(
                    TrustLevel.PROVENANCE_FAIL,
                    prov.error or "SLSA provenance verification failed",
                    checks,
                    content_hash,
                )
            reason = "Full cryptographic verification passed"
        elif trust.provenance is not None:
            reason = "Signature verified; provenance check disabled by caller"
        else:
            reason = "Signature verified; no provenance required"

        # Step 4
        return TrustEvaluationResult.at(TrustLevel.VERIFIED, reason, checks, content_hash)


async def evaluate(
    binary_path: Path | str,
    trust: TrustMetadata | None,
    options: EvaluatorOptions | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> TrustEvaluationResult:
    """Evaluate `binary_path` against `trust` with one-off options."""
    return await TrustEvaluator(options, client=client).evaluate(binary_path, trust)
