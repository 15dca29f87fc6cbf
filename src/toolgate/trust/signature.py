"""
Detached signature verification via the cosign CLI.

cosign is treated as a black box: its exit status is ground truth. When it
is not installed, times out, or the signature format is something we do
not verify, the result says so instead of raising. A missing verifier is
evidence of absence, not proof of safety.

Verification modes:
    keyless:   cosign verify-blob --certificate-identity I
                   --certificate-oidc-issuer O [--bundle B] <path>
    key-based: cosign verify-blob --key K (--bundle B | --signature S) <path>
"""

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from toolgate.execution.process import decode, run_process
from toolgate.schema import SignatureRef, SignatureType

logger = logging.getLogger(__name__)

COSIGN_BINARY = "cosign"
DEFAULT_TIMEOUT_MS = 30_000
MAX_VERIFIER_OUTPUT = 256 * 1024


class SignatureStatus(str, Enum):
    """Outcome of a signature check."""

    VERIFIED = "verified"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class SignatureResult:
    """
    Result of verifying one signature reference.

    FAILED means the signature was checked and rejected (or could not be
    checked because the reference itself is unusable). UNAVAILABLE and
    UNSUPPORTED mean no check happened at all.
    """

    status: SignatureStatus
    signature_type: SignatureType
    detail: str = ""
    identity: str | None = None

    @property
    def verified(self) -> bool:
        return self.status == SignatureStatus.VERIFIED


def find_cosign() -> str | None:
    """Locate the cosign binary on PATH."""
    return shutil.which(COSIGN_BINARY)


def build_cosign_command(cosign: str, target: Path | str, ref: SignatureRef) -> list[str]:
    """
    Build the cosign verify-blob argument vector for a reference.

    Raises:
        ValueError: If the reference has neither a key nor identity+issuer,
            or a key without a bundle or signature file
    """
    argv = [cosign, "verify-blob"]
    if ref.public_key:
        argv += ["--key", ref.public_key]
        if ref.bundle:
            argv += ["--bundle", ref.bundle]
        elif ref.signature_file:
            argv += ["--signature", ref.signature_file]
        else:
            msg = "key-based verification requires a bundle or signature file"
            raise ValueError(msg)
    elif ref.identity and ref.issuer:
        argv += [
            "--certificate-identity", ref.identity,
            "--certificate-oidc-issuer", ref.issuer,
        ]
        if ref.bundle:
            argv += ["--bundle", ref.bundle]
    else:
        msg = "signature needs either a public key or identity and issuer"
        raise ValueError(msg)
    argv.append(str(target))
    return argv


def _missing_files(ref: SignatureRef) -> list[str]:
    return [
        path
        for path in (ref.public_key, ref.bundle, ref.signature_file)
        if path and not Path(path).exists()
    ]


async def verify_signature(
    path: Path | str,
    ref: SignatureRef,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    allowed_identities: list[str] | None = None,
    allowed_issuers: list[str] | None = None,
) -> SignatureResult:
    """
    Verify a detached signature over `path`.

    Identity and issuer allow-lists are applied before cosign runs; an
    empty or missing list allows any value.

    Never raises: every failure mode maps to a SignatureStatus.
    """
    sig_type = ref.type

    if sig_type != SignatureType.COSIGN:
        return SignatureResult(
            status=SignatureStatus.UNSUPPORTED,
            signature_type=sig_type,
            detail=f"Signature type '{sig_type.value}' not yet supported",
        )

    if allowed_identities and ref.identity not in allowed_identities:
        return SignatureResult(
            status=SignatureStatus.FAILED,
            signature_type=sig_type,
            detail=f"Signer identity {ref.identity!r} is not in the allowed list",
            identity=ref.identity,
        )
    if allowed_issuers and ref.issuer not in allowed_issuers:
        return SignatureResult(
            status=SignatureStatus.FAILED,
            signature_type=sig_type,
            detail=f"OIDC issuer {ref.issuer!r} is not in the allowed list",
            identity=ref.identity,
        )

    cosign = find_cosign()
    if cosign is None:
        logger.warning("cosign not installed; signature for %s left unverified", path)
        return SignatureResult(
            status=SignatureStatus.UNAVAILABLE,
            signature_type=sig_type,
            detail="cosign CLI is not installed (https://docs.sigstore.dev/cosign/installation/)",
        )

    try:
        argv = build_cosign_command(cosign, path, ref)
    except ValueError as e:
        return SignatureResult(status=SignatureStatus.FAILED, signature_type=sig_type, detail=str(e))

    missing = _missing_files(ref)
    if missing:
        return SignatureResult(
            status=SignatureStatus.FAILED,
            signature_type=sig_type,
            detail=f"Signature material not found: {', '.join(missing)}",
        )

    try:
        output = await run_process(argv, timeout_ms=timeout_ms, max_output_bytes=MAX_VERIFIER_OUTPUT)
    except OSError as e:
        logger.warning("cosign could not be started: %s", e)
        return SignatureResult(
            status=SignatureStatus.UNAVAILABLE,
            signature_type=sig_type,
            detail=f"Failed to execute cosign: {e}",
        )

    if output.timed_out:
        return SignatureResult(
            status=SignatureStatus.UNAVAILABLE,
            signature_type=sig_type,
            detail=f"cosign verification timed out after {timeout_ms}ms",
        )

    raw = (decode(output.stdout) + decode(output.stderr)).strip()
    if output.exit_code == 0:
        logger.info("Signature verified for %s (%s)", path, ref.identity or ref.public_key)
        return SignatureResult(
            status=SignatureStatus.VERIFIED,
            signature_type=sig_type,
            detail=raw,
            identity=ref.identity,
        )

    return SignatureResult(
        status=SignatureStatus.FAILED,
        signature_type=sig_type,
        detail=raw or f"cosign exited with status {output.exit_code}",
        identity=ref.identity,
    )
