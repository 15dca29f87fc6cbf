"""
Trust evaluation for toolgate.

Three independent checks feed one ordered verdict:
    - hashing:    content identity and tamper detection
    - signature:  detached signature verification via cosign
    - provenance: SLSA / in-toto build attestation

The evaluator folds them into a TrustLevel, most severe first:
COMPROMISED < UNSIGNED < UNVERIFIED < PROVENANCE_FAIL < VERIFIED.
"""

from toolgate.trust.evaluator import EvaluatorOptions, TrustEvaluator, evaluate
from toolgate.trust.hashing import HashResult, digests_match, hash_file
from toolgate.trust.provenance import ProvenanceResult, verify_provenance
from toolgate.trust.signature import SignatureResult, SignatureStatus, verify_signature

__all__ = [
    "EvaluatorOptions",
    "HashResult",
    "ProvenanceResult",
    "SignatureResult",
    "SignatureStatus",
    "TrustEvaluator",
    "digests_match",
    "evaluate",
    "hash_file",
    "verify_provenance",
    "verify_signature",
]
