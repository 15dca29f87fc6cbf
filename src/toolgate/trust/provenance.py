"""
Build-provenance (SLSA / in-toto) attestation verification.

Checks, in order:
    1. The attestation can be fetched within the deadline
    2. It is a DSSE envelope carrying an in-toto statement, or a bare
       in-toto statement
    3. One of its subjects carries the binary's sha256 digest
    4. The declared SLSA level meets the required minimum
    5. The builder id matches an allowed builder (substring match)

Any failure yields verified=False with a reason. Nothing here raises for
network trouble; the evaluator turns a failed result into PROVENANCE_FAIL.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from toolgate.schema import ProvenanceRecord
from toolgate.trust.hashing import normalize_digest

logger = logging.getLogger(__name__)

DSSE_PAYLOAD_TYPE = "application/vnd.in-toto+json"
STATEMENT_TYPES = (
    "https://in-toto.io/Statement/v0.1",
    "https://in-toto.io/Statement/v1",
)
DEFAULT_TIMEOUT_MS = 10_000
MAX_ATTESTATION_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class ProvenanceResult:
    """
    Outcome of a provenance check.

    Attributes:
        verified: All checks passed
        error: Why verification failed
        fetch_failed: The attestation could not be retrieved at all
        slsa_level: Level the attestation claims
        builder: Builder id from the attestation
        predicate_type: in-toto predicate type
    """

    verified: bool
    error: str | None = None
    fetch_failed: bool = False
    slsa_level: int | None = None
    builder: str | None = None
    predicate_type: str | None = None

    @classmethod
    def fail(cls, error: str, **fields: Any) -> "ProvenanceResult":
        return cls(verified=False, error=error, **fields)


class AttestationFormatError(ValueError):
    """The fetched document is not a statement we understand."""


# =============================================================================
# Fetching
# =============================================================================


def _is_local(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("", "file")


def _read_local(url: str) -> bytes:
    parsed = urlparse(url)
    path = Path(parsed.path if parsed.scheme == "file" else url)
    return path.read_bytes()


async def fetch_attestation(
    url: str,
    timeout_ms: int,
    client: httpx.AsyncClient | None = None,
) -> Any:
    """
    Fetch and JSON-decode an attestation.

    http(s) URLs go through httpx; file:// URLs and bare paths are read
    locally. The whole fetch is bounded by timeout_ms.

    Raises:
        TimeoutError: Deadline exceeded
        httpx.HTTPError: Transport failure or HTTP error status
        OSError: Local file unreadable
        ValueError: Body is not JSON or too large
    """
    if _is_local(url):
        raw = _read_local(url)
    else:
        raw = await asyncio.wait_for(_fetch_http(url, timeout_ms, client), timeout=timeout_ms / 1000)

    if len(raw) > MAX_ATTESTATION_BYTES:
        msg = f"attestation larger than {MAX_ATTESTATION_BYTES} bytes"
        raise ValueError(msg)
    return json.loads(raw)


async def _fetch_http(url: str, timeout_ms: int, client: httpx.AsyncClient | None) -> bytes:
    if client is not None:
        response = await client.get(url)
        response.raise_for_status()
        return response.content

    async with httpx.AsyncClient(timeout=timeout_ms / 1000, follow_redirects=True) as owned:
        response = await owned.get(url)
        response.raise_for_status()
        return response.content


# =============================================================================
# Parsing
# =============================================================================


def extract_statement(attestation: Any) -> dict[str, Any]:
    """
    Unwrap a DSSE envelope or accept a bare in-toto statement.

    Raises:
        AttestationFormatError: If neither form is recognised
    """
    if not isinstance(attestation, dict):
        msg = "attestation is not a JSON object"
        raise AttestationFormatError(msg)

    if attestation.get("payloadType") == DSSE_PAYLOAD_TYPE:
        try:
            payload = base64.b64decode(attestation.get("payload", ""), validate=True)
            statement = json.loads(payload)
        except (binascii.Error, ValueError) as e:
            msg = f"DSSE payload is not base64-encoded JSON: {e}"
            raise AttestationFormatError(msg) from e
    elif attestation.get("_type") in STATEMENT_TYPES:
        statement = attestation
    else:
        msg = "Unsupported attestation format"
        raise AttestationFormatError(msg)

    if not isinstance(statement, dict):
        msg = "in-toto statement is not a JSON object"
        raise AttestationFormatError(msg)
    return statement


def find_subject(statement: dict[str, Any], digest: str) -> dict[str, Any] | None:
    """Return the subject whose sha256 digest equals `digest`, if any."""
    wanted = normalize_digest(digest)
    for subject in statement.get("subject") or []:
        if not isinstance(subject, dict):
            continue
        candidate = (subject.get("digest") or {}).get("sha256")
        if isinstance(candidate, str) and normalize_digest(candidate) == wanted:
            return subject
    return None


def builder_id(predicate: dict[str, Any]) -> str | None:
    """Builder id from a SLSA v0.2 or v1 predicate."""
    builder = predicate.get("builder")
    if isinstance(builder, dict) and builder.get("id"):
        return str(builder["id"])
    run_details = predicate.get("runDetails")
    if isinstance(run_details, dict):
        builder = run_details.get("builder")
        if isinstance(builder, dict) and builder.get("id"):
            return str(builder["id"])
    return None


# =============================================================================
# Verification
# =============================================================================


async def verify_provenance(
    record: ProvenanceRecord,
    *,
    content_hash: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    minimum_level: int = 1,
    allowed_builders: list[str] | None = None,
    client: httpx.AsyncClient | None = None,
) -> ProvenanceResult:
    """
    Verify a provenance record against the binary's content hash.

    Args:
        record: Where the attestation lives and what it must prove
        content_hash: sha256 digest of the binary (prefixed or bare)
        timeout_ms: Deadline for the fetch
        minimum_level: Caller's minimum SLSA level (the record's own level
            is also enforced; the stricter one wins)
        allowed_builders: Extra allowed builder ids (unioned with the record's)
        client: Optional shared httpx.AsyncClient

    Returns:
        ProvenanceResult; never raises for fetch or format problems
    """
    try:
        attestation = await fetch_attestation(record.url, timeout_ms, client)
    except (TimeoutError, httpx.TimeoutException):
        logger.warning("Attestation fetch timed out after %sms: %s", timeout_ms, record.url)
        return ProvenanceResult.fail(
            f"Attestation fetch timed out after {timeout_ms}ms",
            fetch_failed=True,
        )
    except httpx.HTTPStatusError as e:
        return ProvenanceResult.fail(
            f"Failed to fetch attestation: HTTP {e.response.status_code}",
            fetch_failed=True,
        )
    except httpx.HTTPError as e:
        return ProvenanceResult.fail(f"Failed to fetch attestation: {e}", fetch_failed=True)
    except OSError as e:
        return ProvenanceResult.fail(f"Failed to read attestation: {e}", fetch_failed=True)
    except ValueError as e:
        return ProvenanceResult.fail(f"Attestation is not valid JSON: {e}")

    try:
        statement = extract_statement(attestation)
    except AttestationFormatError as e:
        return ProvenanceResult.fail(str(e))

    predicate_type = statement.get("predicateType")
    if find_subject(statement, content_hash) is None:
        return ProvenanceResult.fail(
            f"Attestation subject does not match binary hash {normalize_digest(content_hash)}",
            predicate_type=predicate_type,
        )

    predicate = statement.get("predicate") or {}
    if not isinstance(predicate, dict):
        predicate = {}
    builder = builder_id(predicate)

    declared = predicate.get("slsaLevel")
    level = declared if isinstance(declared, int) and not isinstance(declared, bool) else record.slsa_level
    required = max(record.slsa_level, minimum_level)
    if level < required:
        return ProvenanceResult.fail(
            f"SLSA level {level} is below minimum required {required}",
            slsa_level=level,
            builder=builder,
            predicate_type=predicate_type,
        )

    allowed = [*record.builders, *(allowed_builders or [])]
    if allowed and (not builder or not any(a in builder for a in allowed)):
        return ProvenanceResult.fail(
            f"Builder {builder!r} is not in allowed list",
            slsa_level=level,
            builder=builder,
            predicate_type=predicate_type,
        )

    logger.info("Provenance verified: level %s, builder %s", level, builder)
    return ProvenanceResult(
        verified=True,
        slsa_level=level,
        builder=builder,
        predicate_type=predicate_type,
    )
