"""
Outcome types returned by the scanning components instead of raising for
expected failures (unreachable hosts, bad HTML, unhashable content).
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    TRANSIENT_FETCH = 'transient-fetch'
    PARSE = 'parse'
    HASH_COMPUTE = 'hash-compute'


@dataclass(frozen=True)
class FetchOutcome:
    """Body of a fetched resource, or why it could not be fetched."""

    ok: bool
    content: bytes = b''
    text: str = ''
    headers: Optional[Dict[str, str]] = None
    status_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, content: bytes, text: str, headers: Dict[str, str], status_code: int) -> 'FetchOutcome':
        return cls(ok=True, content=content, text=text, headers=headers, status_code=status_code)

    @classmethod
    def failure(cls, error: str, error_kind: ErrorKind = ErrorKind.TRANSIENT_FETCH,
                status_code: Optional[int] = None) -> 'FetchOutcome':
        return cls(ok=False, error=error, error_kind=error_kind, status_code=status_code)


@dataclass(frozen=True)
class HashOutcome:
    """An SRI string (``alg-base64``) or the reason none is available."""

    ok: bool
    algorithm: str = 'sha384'
    digest: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def sri(self) -> Optional[str]:
        if not self.ok or self.digest is None:
            return None
        return f"{self.algorithm}-{self.digest}"

    @classmethod
    def success(cls, algorithm: str, digest: str) -> 'HashOutcome':
        return cls(ok=True, algorithm=algorithm, digest=digest)

    @classmethod
    def failure(cls, algorithm: str, error: str, error_kind: ErrorKind) -> 'HashOutcome':
        return cls(ok=False, algorithm=algorithm, error=error, error_kind=error_kind)


@dataclass
class ScanResult:
    """Scripts and security headers observed on one page."""

    page_url: str
    scripts: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    # External script URL -> integrity attribute as declared on the page
    integrity: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


@dataclass(frozen=True)
class SRIValidationResult:
    script_url: str
    is_valid: bool
    current_hash: Optional[str] = None
    expected_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'script_url': self.script_url,
            'is_valid': self.is_valid,
            'current_hash': self.current_hash,
            'expected_hash': self.expected_hash,
            'error': self.error
        }


@dataclass(frozen=True)
class SRIIssue:
    """Integrity attribute for one script tag, or why none was issued."""

    script_url: str
    integrity: Optional[str] = None
    crossorigin: Optional[str] = None
    reason: Optional[str] = None

    @property
    def issued(self) -> bool:
        return self.integrity is not None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'scriptUrl': self.script_url,
            'integrity': self.integrity,
            'crossorigin': self.crossorigin,
            'issued': self.issued,
            'reason': self.reason
        }
