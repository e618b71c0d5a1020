"""
Subresource Integrity verification of live script content.
"""
from typing import List, Optional, Tuple

import structlog

from scriptguard.services.hash_engine import HashEngine, SUPPORTED_ALGORITHMS
from scriptguard.services.results import SRIValidationResult

logger = structlog.get_logger()

REASON_MISSING = "no integrity attribute present"
REASON_MISMATCH = "hash mismatch - content may have changed"
REASON_INVALID_FORMAT = "invalid integrity format"
REASON_NO_HASH = "could not generate hash for script"

# Weakest to strongest; browsers only honour the strongest algorithm listed
_ALGORITHM_STRENGTH = {name: rank for rank, name in enumerate(SUPPORTED_ALGORITHMS)}


def parse_integrity(value: str) -> List[Tuple[str, str]]:
    """(algorithm, digest) pairs from an integrity attribute, options dropped."""
    tokens = []
    for token in (value or '').split():
        token = token.split('?', 1)[0]
        algorithm, sep, digest = token.partition('-')
        algorithm = algorithm.lower()
        if sep and digest and algorithm in _ALGORITHM_STRENGTH:
            tokens.append((algorithm, digest))
    return tokens


class IntegrityVerifier:
    """Checks a script's current content against its declared integrity value."""

    def __init__(self, hash_engine: HashEngine):
        self.hash_engine = hash_engine

    def verify(self, script_url: str, declared_integrity: Optional[str]) -> SRIValidationResult:
        """
        Never raises. A missing attribute is a failure, not "not applicable".
        """
        declared_integrity = (declared_integrity or '').strip()
        if not declared_integrity:
            return SRIValidationResult(script_url=script_url, is_valid=False, error=REASON_MISSING)

        try:
            return self._verify(script_url, declared_integrity)
        except Exception as e:
            logger.error("Integrity verification failed", script_url=script_url, error=str(e))
            return SRIValidationResult(
                script_url=script_url,
                is_valid=False,
                expected_hash=declared_integrity,
                error=f"validation failed: {e}"
            )

    def _verify(self, script_url: str, declared_integrity: str) -> SRIValidationResult:
        tokens = parse_integrity(declared_integrity)
        if not tokens:
            return SRIValidationResult(
                script_url=script_url,
                is_valid=False,
                expected_hash=declared_integrity,
                error=REASON_INVALID_FORMAT
            )

        strongest = max(tokens, key=lambda token: _ALGORITHM_STRENGTH[token[0]])[0]
        candidates = [f"{algorithm}-{digest}" for algorithm, digest in tokens if algorithm == strongest]

        outcome = self.hash_engine.fetch_and_hash(script_url, strongest)
        if not outcome.ok:
            return SRIValidationResult(
                script_url=script_url,
                is_valid=False,
                expected_hash=candidates[0],
                error=f"{REASON_NO_HASH}: {outcome.error}"
            )

        current = outcome.sri
        matched = next((candidate for candidate in candidates if candidate.lower() == current.lower()), None)

        if matched is None:
            logger.warning(
                "Script integrity mismatch",
                script_url=script_url,
                expected_hash=candidates[0],
                current_hash=current
            )

        return SRIValidationResult(
            script_url=script_url,
            is_valid=matched is not None,
            current_hash=current,
            expected_hash=matched or candidates[0],
            error=None if matched else REASON_MISMATCH
        )
