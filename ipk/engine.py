"""
Signature engine: content digests, signature blocks, sign and verify.

Signature block layout (big-endian), carried as the payload of its own section:

    magic        8   b"WOSIGv1\\0"
    algorithm    1   1=RSA PKCS#1 v1.5, 2=ECDSA, 3=Ed25519
    digest alg   1   1=SHA-256
    reserved     2   zero
    digest      32   content digest
    fingerprint 32   SHA-256 of the signing certificate (DER)
    cert length  4
    certificate  N   DER
    sections     4   number of content sections
    lengths     8*K  decompressed payload length of each content section
    sig length   2
    signature    M   over every preceding byte

The section table binds section boundaries: the content digest alone does
not change when bytes move between adjacent sections.
"""

import hashlib
import hmac
import struct
from typing import Iterable, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, padding

from .crypto_utils import certificate_fingerprint, public_keys_match
from .errors import FormatError, InvalidKeyPair, SigningFailure
from .models import Section, Signature, SigningMaterial


SIGNATURE_MAGIC = b"WOSIGv1\x00"

ALGO_RSA_PKCS1_SHA256 = 1
ALGO_ECDSA_SHA256 = 2
ALGO_ED25519 = 3

DIGEST_SHA256 = 1
DIGEST_SIZE = 32

_PREFIX = struct.Struct(">8sBBH32s32sI")
_SECTION_COUNT = struct.Struct(">I")
_SECTION_LENGTH = struct.Struct(">Q")
_SIG_LEN = struct.Struct(">H")


def is_signature_payload(payload: bytes) -> bool:
    """A section carries a signature block iff its payload starts with the magic."""
    return payload[:len(SIGNATURE_MAGIC)] == SIGNATURE_MAGIC


def content_lengths(sections: Iterable[Union[Section, bytes]]) -> Tuple[int, ...]:
    """Payload lengths of every non-signature section, in order."""
    lengths = []
    for item in sections:
        payload = item.payload if isinstance(item, Section) else item
        if not is_signature_payload(payload):
            lengths.append(len(payload))
    return tuple(lengths)


def _signed_portion(algorithm: int, digest_algorithm: int, digest: bytes,
                    fingerprint: bytes, certificate_der: bytes,
                    section_lengths: Sequence[int] = ()) -> bytes:
    table = _SECTION_COUNT.pack(len(section_lengths)) + b"".join(
        _SECTION_LENGTH.pack(length) for length in section_lengths
    )
    return _PREFIX.pack(
        SIGNATURE_MAGIC, algorithm, digest_algorithm, 0,
        digest, fingerprint, len(certificate_der),
    ) + certificate_der + table


def _message_for(signature: Signature) -> bytes:
    return _signed_portion(
        signature.algorithm, signature.digest_algorithm, signature.digest,
        signature.fingerprint, signature.certificate_der, signature.section_lengths,
    )


def encode_signature(signature: Signature) -> bytes:
    """Serialize a Signature into signature block bytes."""
    if len(signature.value) > 0xFFFF:
        raise SigningFailure(f"Signature too long: {len(signature.value)} bytes")
    return _message_for(signature) + _SIG_LEN.pack(len(signature.value)) + signature.value


def parse_signature(payload: bytes, section_index: Optional[int] = None) -> Signature:
    """
    Parse signature block bytes.

    Raises:
        FormatError: bad magic, truncated fields, or trailing bytes.
    """
    if len(payload) < _PREFIX.size:
        raise FormatError(
            f"Signature block is {len(payload)} bytes, shorter than its "
            f"{_PREFIX.size}-byte fixed part",
            section_index=section_index,
        )

    magic, algorithm, digest_alg, _reserved, digest, fingerprint, cert_len = \
        _PREFIX.unpack_from(payload, 0)
    if magic != SIGNATURE_MAGIC:
        raise FormatError("Bad signature block magic", section_index=section_index)

    cert_end = _PREFIX.size + cert_len
    if cert_end + _SECTION_COUNT.size > len(payload):
        raise FormatError("Signature block certificate is truncated",
                          offset=_PREFIX.size, section_index=section_index)

    (count,) = _SECTION_COUNT.unpack_from(payload, cert_end)
    table_end = cert_end + _SECTION_COUNT.size + count * _SECTION_LENGTH.size
    if table_end + _SIG_LEN.size > len(payload):
        raise FormatError("Signature block section table is truncated",
                          offset=cert_end, section_index=section_index)
    section_lengths = tuple(
        _SECTION_LENGTH.unpack_from(payload, cert_end + _SECTION_COUNT.size + i * _SECTION_LENGTH.size)[0]
        for i in range(count)
    )

    (sig_len,) = _SIG_LEN.unpack_from(payload, table_end)
    sig_start = table_end + _SIG_LEN.size
    if sig_start + sig_len != len(payload):
        raise FormatError(
            f"Signature block length mismatch: expected {sig_start + sig_len} "
            f"bytes, got {len(payload)}",
            offset=table_end, section_index=section_index,
        )

    return Signature(
        algorithm=algorithm,
        digest_algorithm=digest_alg,
        digest=digest,
        fingerprint=fingerprint,
        certificate_der=payload[_PREFIX.size:cert_end],
        value=payload[sig_start:],
        section_lengths=section_lengths,
    )


class SignatureEngine:
    """
    Compute content digests and sign or verify them.

    The content digest is SHA-256 over the payloads of every section that
    is not a signature block, in container order.
    """

    def compute_digest(self, sections: Iterable[Union[Section, bytes]]) -> bytes:
        hasher = hashlib.sha256()
        for item in sections:
            payload = item.payload if isinstance(item, Section) else item
            if is_signature_payload(payload):
                continue
            hasher.update(payload)
        return hasher.digest()

    # =========================================================================
    # Signing
    # =========================================================================

    def sign(self, digest: bytes, material: SigningMaterial,
             section_lengths: Sequence[int] = ()) -> Signature:
        """
        Sign a content digest together with the content section lengths.

        Raises:
            InvalidKeyPair: certificate and key do not correspond.
            SigningFailure: bad digest or crypto backend failure.
        """
        if not public_keys_match(material.certificate, material.private_key):
            raise InvalidKeyPair("Certificate public key does not match the private key")
        if len(digest) != DIGEST_SIZE:
            raise SigningFailure(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")

        key = material.private_key
        algorithm = self._algorithm_for(key)
        certificate_der = material.certificate.public_bytes(serialization.Encoding.DER)
        fingerprint = certificate_fingerprint(material.certificate)
        section_lengths = tuple(section_lengths)
        message = _signed_portion(algorithm, DIGEST_SHA256, digest, fingerprint,
                                  certificate_der, section_lengths)

        try:
            if algorithm == ALGO_RSA_PKCS1_SHA256:
                value = key.sign(message, padding.PKCS1v15(), hashes.SHA256())
            elif algorithm == ALGO_ECDSA_SHA256:
                value = key.sign(message, ec.ECDSA(hashes.SHA256()))
            else:
                value = key.sign(message)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningFailure(f"Signing failed: {e}")

        return Signature(
            algorithm=algorithm,
            digest_algorithm=DIGEST_SHA256,
            digest=digest,
            fingerprint=fingerprint,
            certificate_der=certificate_der,
            value=value,
            section_lengths=section_lengths,
        )

    def _algorithm_for(self, private_key) -> int:
        if isinstance(private_key, rsa.RSAPrivateKey):
            return ALGO_RSA_PKCS1_SHA256
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return ALGO_ECDSA_SHA256
        if isinstance(private_key, ed25519.Ed25519PrivateKey):
            return ALGO_ED25519
        raise InvalidKeyPair(f"Unsupported key type: {type(private_key).__name__}")

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(self, digest: bytes, signature: Signature, certificate=None) -> bool:
        """
        Check a signature against a digest.

        Uses the certificate embedded in the signature when none is given.
        Certificate expiry is not considered here.
        """
        if certificate is None:
            try:
                certificate = x509.load_der_x509_certificate(signature.certificate_der)
            except ValueError:
                return False

        if signature.digest_algorithm != DIGEST_SHA256:
            return False
        if not hmac.compare_digest(signature.digest, digest):
            return False
        if not hmac.compare_digest(signature.fingerprint, certificate_fingerprint(certificate)):
            return False

        message = _message_for(signature)

        try:
            public_key = certificate.public_key()
            if signature.algorithm == ALGO_RSA_PKCS1_SHA256 and isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature.value, message, padding.PKCS1v15(), hashes.SHA256())
            elif signature.algorithm == ALGO_ECDSA_SHA256 and isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature.value, message, ec.ECDSA(hashes.SHA256()))
            elif signature.algorithm == ALGO_ED25519 and isinstance(public_key, ed25519.Ed25519PublicKey):
                public_key.verify(signature.value, message)
            else:
                return False
        except (InvalidSignature, ValueError, UnsupportedAlgorithm):
            return False

        return True
