"""
Two-checkpoint validation for a resign run.

check_existing() looks at the signature a package arrived with and is
advisory. check_final() re-decodes the written output and is the gate that
decides whether a resign succeeded.
"""

from typing import Callable, List, Optional, Sequence

from cryptography import x509

from .codec import ContainerCodec
from .crypto_utils import certificate_warnings, common_name_of
from .deadline import Deadline
from .engine import SignatureEngine, content_lengths, is_signature_payload, parse_signature
from .errors import (
    FormatError, IPKError, OperationCancelled, OperationTimeout, ValidationFailure,
    STAGE_VALIDATE,
)
from .models import CheckPoint, Section, ValidationResult


class ValidationPipeline:
    """Verify the signature block of a decoded or encoded container."""

    def __init__(
        self,
        codec: Optional[ContainerCodec] = None,
        engine: Optional[SignatureEngine] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self.codec = codec or ContainerCodec()
        self.engine = engine or SignatureEngine()
        self.log_callback = log_callback or self._default_log

    def _default_log(self, message: str, level: str = "info") -> None:
        print(message)

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def check_existing(self, sections: Sequence[Section]) -> ValidationResult:
        """
        Verify the signature a package arrived with.

        Never raises and never stops a resign; a failure is only logged.
        """
        result = self._verify_sections(sections, CheckPoint.EXISTING)
        if result.valid:
            self.log(f"[+] Existing signature valid ({result.signer_name})", "success")
        else:
            self.log(f"[!] Existing signature: {result.reason}", "warning")
        return result

    def check_final(
        self,
        output_bytes: bytes,
        expected_fingerprint: Optional[str] = None,
        delegated: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> ValidationResult:
        """
        Re-decode written output and verify its embedded signature.

        Args:
            output_bytes: the container exactly as written
            expected_fingerprint: hex SHA-256 the signer certificate must have
            delegated: output came from the vendor tool, whose signature
                format cannot be verified locally
        """
        try:
            container = self._decode(output_bytes, deadline)
        except FormatError as e:
            result = ValidationResult(False, f"Output does not decode: {e}", CheckPoint.FINAL)
            self.log(f"[-] Final validation: {result.reason}", "error")
            return result

        if container.trailer:
            result = ValidationResult(
                False,
                f"{len(container.trailer)} unauthenticated trailing bytes after last section",
                CheckPoint.FINAL,
            )
        elif delegated:
            result = ValidationResult(
                bool(container.sections),
                "Signed by external tool; container structure verified"
                if container.sections else "External tool produced no sections",
                CheckPoint.FINAL,
                warnings=["Vendor signature format is not verified locally"],
            )
        else:
            result = self._verify_sections(container.sections, CheckPoint.FINAL, expected_fingerprint)

        if result.valid:
            self.log(f"[+] Final validation passed: {result.reason}", "success")
        else:
            self.log(f"[-] Final validation failed: {result.reason}", "error")
        for warning in result.warnings:
            self.log(f"[!] {warning}", "warning")
        return result

    def validate(self, container_bytes: bytes, expected_fingerprint: Optional[str] = None,
                 deadline: Optional[Deadline] = None) -> ValidationResult:
        """Standalone validation of a container as it is found on disk."""
        try:
            container = self._decode(container_bytes, deadline)
        except FormatError as e:
            return ValidationResult(False, f"Container does not decode: {e}", CheckPoint.EXISTING)

        result = self._verify_sections(container.sections, CheckPoint.EXISTING, expected_fingerprint)
        if result.valid and container.trailer:
            result.valid = False
            result.reason = f"{len(container.trailer)} unauthenticated trailing bytes after last section"
        return result

    @staticmethod
    def require_valid(result: ValidationResult) -> ValidationResult:
        """Raise ValidationFailure unless the result is valid."""
        if not result.valid:
            raise ValidationFailure(result.reason)
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    def _decode(self, data: bytes, deadline: Optional[Deadline]):
        """Decode for validation; running out of time here is a validate-stage failure."""
        try:
            return self.codec.decode(data, deadline=deadline)
        except (OperationTimeout, OperationCancelled) as e:
            raise type(e)(
                e.message, stage=STAGE_VALIDATE,
                offset=e.offset, section_index=e.section_index,
            ) from e

    def _verify_sections(
        self,
        sections: Sequence[Section],
        checked_at: CheckPoint,
        expected_fingerprint: Optional[str] = None,
    ) -> ValidationResult:
        blocks = [s for s in sections if is_signature_payload(s.payload)]

        if not blocks:
            return ValidationResult(False, "No signature block", checked_at)
        if len(blocks) > 1:
            indexes = ", ".join(str(s.index) for s in blocks)
            return ValidationResult(False, f"Multiple signature blocks (sections {indexes})", checked_at)

        block = blocks[0]
        try:
            signature = parse_signature(block.payload, section_index=block.index)
            certificate = x509.load_der_x509_certificate(signature.certificate_der)
        except (IPKError, ValueError) as e:
            return ValidationResult(False, f"Malformed signature block: {e}", checked_at)

        warnings: List[str] = certificate_warnings(certificate)
        name = common_name_of(certificate)

        if expected_fingerprint:
            expected = expected_fingerprint.replace(":", "").upper()
            if signature.fingerprint_hex != expected:
                return ValidationResult(
                    False,
                    f"Signed by {signature.fingerprint_hex}, expected {expected}",
                    checked_at, warnings, signature.fingerprint_hex, name,
                )

        lengths = content_lengths(sections)
        if signature.section_lengths != lengths:
            return ValidationResult(
                False,
                f"Section layout mismatch; signed lengths {list(signature.section_lengths)}, "
                f"found {list(lengths)}",
                checked_at, warnings, signature.fingerprint_hex, name,
            )

        digest = self.engine.compute_digest(sections)
        if digest != signature.digest:
            return ValidationResult(
                False, "Content digest mismatch; package contents changed after signing",
                checked_at, warnings, signature.fingerprint_hex, name,
            )

        if not self.engine.verify(digest, signature, certificate):
            return ValidationResult(
                False, "Signature does not verify against the embedded certificate",
                checked_at, warnings, signature.fingerprint_hex, name,
            )

        return ValidationResult(
            True, f"Signature valid (section {block.index}, signer {name})",
            checked_at, warnings, signature.fingerprint_hex, name,
        )
