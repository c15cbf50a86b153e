"""
Error taxonomy for IPK operations.

Every error records the pipeline stage it came from, and where it applies
the byte offset or section index involved.
"""

from typing import Optional


STAGE_DECODE = "decode"
STAGE_SIGN = "sign"
STAGE_ENCODE = "encode"
STAGE_VALIDATE = "validate"


class IPKError(Exception):
    """Base class for all IPK resigning errors."""

    stage = STAGE_DECODE

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        offset: Optional[int] = None,
        section_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage
        self.offset = offset
        self.section_index = section_index

    def __str__(self) -> str:
        location = []
        if self.section_index is not None:
            location.append(f"section {self.section_index}")
        if self.offset is not None:
            location.append(f"offset {self.offset}")
        where = f" ({', '.join(location)})" if location else ""
        return f"[{self.stage}] {self.message}{where}"


class FormatError(IPKError):
    """Container bytes do not parse."""
    stage = STAGE_DECODE


class InvalidKeyPair(IPKError):
    """Certificate and private key do not belong together."""
    stage = STAGE_SIGN


class SigningFailure(IPKError):
    """Underlying crypto or external tool failure while signing."""
    stage = STAGE_SIGN


class ExternalToolUnavailable(IPKError):
    """No signing material was given and the vendor tool cannot be used."""
    stage = STAGE_SIGN


class ValidationFailure(IPKError):
    """A signature does not verify."""
    stage = STAGE_VALIDATE


class OperationTimeout(IPKError, TimeoutError):
    """The caller-supplied time budget ran out."""


class OperationCancelled(IPKError):
    """The run was cancelled between section boundaries."""
