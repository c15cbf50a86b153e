"""
Data models for IPK resigning operations.
"""

import hashlib
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple


class CheckPoint(Enum):
    """Where in a run a validation happened."""
    EXISTING = "existing"
    FINAL = "final"


class Stage(Enum):
    """Pipeline stages, used to report where a run failed."""
    DECODE = "decode"
    SIGN = "sign"
    ENCODE = "encode"
    VALIDATE = "validate"


class SignerKind(Enum):
    """How a container was signed."""
    LOCAL = "local"          # SignatureEngine with supplied key material
    DELEGATED = "delegated"  # vendor ares-package tool


@dataclass(frozen=True)
class Section:
    """One gzip member inside a container."""
    index: int
    offset: int
    length: int
    payload: bytes = field(repr=False)
    raw: Optional[bytes] = field(default=None, repr=False)

    @property
    def is_modified(self) -> bool:
        """True when the payload no longer matches the original compressed bytes."""
        return self.raw is None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.payload).hexdigest()

    def with_payload(self, payload: bytes) -> "Section":
        """Return a copy carrying a new payload; it will be recompressed on encode."""
        return replace(self, payload=payload, raw=None)


@dataclass
class Container:
    """A decoded IPK container."""
    header: bytes = field(repr=False)
    sections: List[Section] = field(default_factory=list)
    trailer: bytes = field(default=b"", repr=False)

    @property
    def size(self) -> int:
        return len(self.header) + sum(s.length for s in self.sections) + len(self.trailer)

    @property
    def payloads(self) -> List[bytes]:
        return [s.payload for s in self.sections]


@dataclass
class SigningMaterial:
    """A private key and its certificate, already checked to form a pair."""
    certificate: Any = field(repr=False)  # cryptography x509.Certificate
    private_key: Any = field(repr=False)
    common_name: str = ""
    fingerprint_sha256: str = ""
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    source: Optional[Path] = None

    @property
    def is_valid(self) -> bool:
        """Check if the certificate is inside its validity window."""
        if not self.not_before or not self.not_after:
            return False
        now = datetime.now(timezone.utc)
        return self.not_before <= now <= self.not_after

    @property
    def days_remaining(self) -> int:
        if not self.not_after:
            return 0
        delta = self.not_after - datetime.now(timezone.utc)
        return max(0, delta.days)

    @property
    def display_name(self) -> str:
        return f"{self.common_name} ({self.days_remaining} days remaining)"


@dataclass(frozen=True)
class Signature:
    """A parsed signature block."""
    algorithm: int
    digest_algorithm: int
    digest: bytes
    fingerprint: bytes
    certificate_der: bytes = field(repr=False)
    value: bytes = field(repr=False)
    section_lengths: Tuple[int, ...] = ()

    @property
    def fingerprint_hex(self) -> str:
        return self.fingerprint.hex().upper()


@dataclass
class ValidationResult:
    """Outcome of one validation checkpoint."""
    valid: bool
    reason: str
    checked_at: CheckPoint
    warnings: List[str] = field(default_factory=list)
    signer_fingerprint: Optional[str] = None
    signer_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "checked_at": self.checked_at.value,
            "warnings": self.warnings,
            "signer_fingerprint": self.signer_fingerprint,
            "signer_name": self.signer_name,
        }


@dataclass
class ResignResult:
    """Result of a resign, validate, extract or pack operation."""
    success: bool
    message: str
    stage: Optional[Stage] = None
    input_path: Optional[Path] = None
    output_path: Optional[Path] = None
    signing_time: float = 0.0
    signer: Optional[SignerKind] = None
    certificate_used: Optional[str] = None
    section_count: int = 0
    existing: Optional[ValidationResult] = None
    final: Optional[ValidationResult] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "message": self.message,
            "stage": self.stage.value if self.stage else None,
            "input_path": str(self.input_path) if self.input_path else None,
            "output_path": str(self.output_path) if self.output_path else None,
            "signing_time": self.signing_time,
            "signer": self.signer.value if self.signer else None,
            "certificate_used": self.certificate_used,
            "section_count": self.section_count,
            "existing": self.existing.to_dict() if self.existing else None,
            "final": self.final.to_dict() if self.final else None,
            "warnings": self.warnings,
            "errors": self.errors,
        }


@dataclass
class ResignOptions:
    """Options for a single resign run."""
    timeout_seconds: float = 120.0
    header_size: int = 512
    keep_invalid: bool = False
    expected_fingerprint: Optional[str] = None  # hex SHA-256 of the signer cert
    work_dir: Optional[Path] = None
    cancel_event: Optional[threading.Event] = field(default=None, repr=False)
