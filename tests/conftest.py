"""
Shared fixtures: container builders and fabricated signing material.
"""

import datetime
import gzip
import struct
import zlib

import pytest

from ipk.codec import ContainerCodec
from ipk.crypto_utils import build_material, generate_self_signed, write_pem_pair
from ipk.models import SigningMaterial


HEADER_SIZE = ContainerCodec.HEADER_SIZE


def make_header(size: int = HEADER_SIZE) -> bytes:
    """A recognisable header with no gzip magic in it."""
    prefix = b"WEBOS-IPK\x00\x01\x00"
    return prefix + bytes((i * 7) % 251 for i in range(size - len(prefix)))


def stored_gzip(data: bytes) -> bytes:
    """
    A gzip member holding data in a single stored (uncompressed) deflate
    block. Always exactly 23 + len(data) bytes.
    """
    header = b"\x1f\x8b\x08\x00" + b"\x00\x00\x00\x00" + b"\x00\xff"
    block = b"\x01" + struct.pack("<HH", len(data), len(data) ^ 0xFFFF) + data
    trailer = struct.pack("<II", zlib.crc32(data) & 0xFFFFFFFF, len(data) & 0xFFFFFFFF)
    return header + block + trailer


def build_container(payloads, header: bytes = None, trailer: bytes = b"") -> bytes:
    header = make_header() if header is None else header
    return header + b"".join(gzip.compress(p, mtime=0) for p in payloads) + trailer


@pytest.fixture
def quiet_log():
    return lambda message, level="info": None


@pytest.fixture
def codec(quiet_log):
    return ContainerCodec(log_callback=quiet_log)


@pytest.fixture
def three_payloads():
    return [
        b"Package: com.example.app\nVersion: 1.0.0\nArchitecture: arm\n",
        b"appinfo.json " * 200,
        bytes(range(256)) * 4,
    ]


@pytest.fixture
def three_section_ipk(tmp_path, three_payloads):
    path = tmp_path / "app.ipk"
    path.write_bytes(build_container(three_payloads))
    return path


@pytest.fixture(scope="session")
def rsa_pair():
    return generate_self_signed("Test RSA Developer", "rsa")


@pytest.fixture(scope="session")
def ec_pair():
    return generate_self_signed("Test EC Developer", "ec")


@pytest.fixture
def rsa_material(rsa_pair) -> SigningMaterial:
    certificate, key = rsa_pair
    return build_material(certificate, key)


@pytest.fixture
def ec_material(ec_pair) -> SigningMaterial:
    certificate, key = ec_pair
    return build_material(certificate, key)


@pytest.fixture
def mismatched_material(rsa_pair, ec_pair) -> SigningMaterial:
    """Certificate from one pair, key from another; bypasses the pair check."""
    return SigningMaterial(certificate=rsa_pair[0], private_key=ec_pair[1], common_name="mismatch")


@pytest.fixture
def expired_material():
    not_before = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=30)
    certificate, key = generate_self_signed("Expired Developer", "ec", days=1, not_before=not_before)
    return build_material(certificate, key)


@pytest.fixture
def pem_files(tmp_path, rsa_pair):
    certificate, key = rsa_pair
    cert_path, key_path = write_pem_pair(
        certificate, key, str(tmp_path / "dev.crt"), str(tmp_path / "dev.key")
    )
    return cert_path, key_path
