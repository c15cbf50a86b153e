"""
Certificate and key handling for IPK signing.
Loads PEM, DER and PKCS#12 material and checks that key and certificate pair up.
"""

import datetime as _dt
import hashlib
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .errors import InvalidKeyPair
from .models import SigningMaterial


SUPPORTED_KEY_TYPES = (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey)


def certificate_fingerprint(certificate) -> bytes:
    """SHA-256 over the DER encoding of a certificate."""
    return hashlib.sha256(certificate.public_bytes(serialization.Encoding.DER)).digest()


def _not_before(cert) -> _dt.datetime:
    if hasattr(cert, "not_valid_before_utc"):
        return cert.not_valid_before_utc
    return cert.not_valid_before.replace(tzinfo=_dt.timezone.utc)


def _not_after(cert) -> _dt.datetime:
    if hasattr(cert, "not_valid_after_utc"):
        return cert.not_valid_after_utc
    return cert.not_valid_after.replace(tzinfo=_dt.timezone.utc)


def common_name_of(cert) -> str:
    try:
        return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    except (IndexError, ValueError):
        return cert.subject.rfc4514_string()


def public_keys_match(certificate, private_key) -> bool:
    """True if the certificate carries the public half of private_key."""
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_pub = certificate.public_key().public_bytes(serialization.Encoding.DER, fmt)
    key_pub = private_key.public_key().public_bytes(serialization.Encoding.DER, fmt)
    return cert_pub == key_pub


def certificate_warnings(certificate, now: Optional[_dt.datetime] = None) -> List[str]:
    """
    Non-blocking checks on a certificate.

    Package validity outlives certificate validity windows, so an expired
    certificate is reported here instead of failing verification.
    """
    now = now or _dt.datetime.now(_dt.timezone.utc)
    warnings = []
    name = common_name_of(certificate)
    if now > _not_after(certificate):
        warnings.append(f"Certificate '{name}' expired on {_not_after(certificate)}")
    elif now < _not_before(certificate):
        warnings.append(f"Certificate '{name}' is not valid before {_not_before(certificate)}")
    return warnings


def load_certificate_bytes(data: bytes):
    """Parse a PEM or DER certificate."""
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


class MaterialLoader:
    """
    Load a certificate and private key and check that they form a pair.

    Accepts a PEM/DER certificate plus a PEM/DER private key, or a single
    PKCS#12 bundle.
    """

    def __init__(
        self,
        cert_path: Optional[str] = None,
        key_path: Optional[str] = None,
        p12_path: Optional[str] = None,
        password: str = "",
    ):
        self.cert_path = Path(cert_path) if cert_path else None
        self.key_path = Path(key_path) if key_path else None
        self.p12_path = Path(p12_path) if p12_path else None
        self.password = password.encode() if password else None

    @property
    def has_material(self) -> bool:
        return bool(self.p12_path or self.cert_path or self.key_path)

    def load(self) -> SigningMaterial:
        """
        Load and pair-check the material.

        Raises:
            InvalidKeyPair: missing half of a pair, unreadable files,
                unsupported key type, or a key that does not match the
                certificate.
        """
        if self.p12_path:
            certificate, private_key = self._load_p12()
            source = self.p12_path
        else:
            if not (self.cert_path and self.key_path):
                raise InvalidKeyPair(
                    "Both a certificate and a private key are required"
                )
            certificate = self._load_certificate()
            private_key = self._load_private_key()
            source = self.cert_path

        return build_material(certificate, private_key, source=source)

    def _read(self, path: Path) -> bytes:
        if not path.exists():
            raise InvalidKeyPair(f"File not found: {path}")
        return path.read_bytes()

    def _load_certificate(self):
        data = self._read(self.cert_path)
        try:
            return load_certificate_bytes(data)
        except ValueError as e:
            raise InvalidKeyPair(f"Failed to load certificate {self.cert_path}: {e}")

    def _load_private_key(self):
        data = self._read(self.key_path)
        try:
            if b"-----BEGIN" in data:
                return serialization.load_pem_private_key(data, password=self.password)
            return serialization.load_der_private_key(data, password=self.password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyPair(f"Failed to load private key {self.key_path}: {e}")

    def _load_p12(self) -> Tuple[Any, Any]:
        data = self._read(self.p12_path)
        try:
            private_key, certificate, _ca_certs = pkcs12.load_key_and_certificates(
                data, self.password
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyPair(f"Failed to load P12 {self.p12_path}: {e}")
        if certificate is None or private_key is None:
            raise InvalidKeyPair(f"P12 {self.p12_path} must contain a certificate and a key")
        return certificate, private_key


def build_material(certificate, private_key, source: Optional[Path] = None) -> SigningMaterial:
    """Wrap a certificate and key as SigningMaterial after checking the pair."""
    if not isinstance(private_key, SUPPORTED_KEY_TYPES):
        raise InvalidKeyPair(
            f"Unsupported key type: {type(private_key).__name__}"
        )
    if not public_keys_match(certificate, private_key):
        raise InvalidKeyPair(
            "Certificate public key does not match the private key"
        )

    return SigningMaterial(
        certificate=certificate,
        private_key=private_key,
        common_name=common_name_of(certificate),
        fingerprint_sha256=certificate_fingerprint(certificate).hex().upper(),
        not_before=_not_before(certificate),
        not_after=_not_after(certificate),
        source=source,
    )


def get_certificate_info(certificate) -> Dict[str, Any]:
    """Extract display information from a certificate."""
    def get_oid_value(oid):
        try:
            return certificate.subject.get_attributes_for_oid(oid)[0].value
        except (IndexError, ValueError):
            return None

    cert_der = certificate.public_bytes(serialization.Encoding.DER)
    return {
        "common_name": get_oid_value(NameOID.COMMON_NAME),
        "organization": get_oid_value(NameOID.ORGANIZATION_NAME),
        "serial_number": format(certificate.serial_number, "x").upper(),
        "not_before": _not_before(certificate),
        "not_after": _not_after(certificate),
        "fingerprint_sha1": hashlib.sha1(cert_der).hexdigest().upper(),
        "fingerprint_sha256": hashlib.sha256(cert_der).hexdigest().upper(),
        "issuer": certificate.issuer.rfc4514_string(),
    }


# =========================================================================
# Development certificates
# =========================================================================

def generate_private_key(key_type: str = "rsa"):
    """Generate an RSA 2048 or EC P-256 private key."""
    if key_type == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if key_type == "ec":
        return ec.generate_private_key(ec.SECP256R1())
    raise ValueError(f"Unknown key type: {key_type}")


def generate_self_signed(
    common_name: str = "webOS Developer",
    key_type: str = "rsa",
    days: int = 365,
    private_key=None,
    not_before: Optional[_dt.datetime] = None,
):
    """
    Create a self-signed certificate for development signing.

    Returns:
        Tuple of (certificate, private_key)
    """
    private_key = private_key or generate_private_key(key_type)
    not_before = not_before or _dt.datetime.now(_dt.timezone.utc) - _dt.timedelta(minutes=5)

    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "webOS Developer"),
    ])

    # Ed25519 signs without a separate hash
    algorithm = None if isinstance(private_key, ed25519.Ed25519PrivateKey) else hashes.SHA256()

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + _dt.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False,
                key_encipherment=False, data_encipherment=False,
                key_agreement=False, key_cert_sign=False, crl_sign=False,
                encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(private_key, algorithm)
    )
    return certificate, private_key


def write_pem_pair(certificate, private_key, cert_path: str, key_path: str,
                   password: Optional[bytes] = None) -> Tuple[Path, Path]:
    """Write a certificate and key as PEM files."""
    cert_out = Path(cert_path)
    key_out = Path(key_path)
    cert_out.parent.mkdir(parents=True, exist_ok=True)
    key_out.parent.mkdir(parents=True, exist_ok=True)

    encryption = serialization.NoEncryption()
    if password:
        encryption = serialization.BestAvailableEncryption(password)

    cert_out.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_out.write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    ))
    key_out.chmod(0o600)
    return cert_out, key_out
