"""
webOS IPK Resigning Module
==========================

Unpacks a webOS IPK container, replaces its signature block and repacks it,
validating the signature before and after.

Two signing paths:

1. Local signing (certificate + private key)
   - PEM/DER certificate and key, or a PKCS#12 bundle
   - RSA, ECDSA or Ed25519
   - Works completely offline

2. Delegated signing (webOS CLI)
   - Used only when no key material is supplied
   - Requires `ares-package` on PATH

Usage:
    from ipk import ResignCore

    core = ResignCore()
    material = core.load_material("dev.crt", "dev.key")
    result = core.resign("app.ipk", "app_resigned.ipk", material)

Requirements:
    pip install cryptography typer
"""

__version__ = "1.0.0"
__author__ = "webos-resign contributors"

from .codec import ContainerCodec
from .core import ResignCore
from .engine import SignatureEngine
from .errors import (
    IPKError, FormatError, InvalidKeyPair, SigningFailure,
    ExternalToolUnavailable, ValidationFailure, OperationTimeout,
    OperationCancelled,
)
from .models import Container, Section, ResignOptions, ResignResult, ValidationResult
from .validation import ValidationPipeline

__all__ = [
    "ContainerCodec",
    "SignatureEngine",
    "ValidationPipeline",
    "ResignCore",
    "Container",
    "Section",
    "ResignOptions",
    "ResignResult",
    "ValidationResult",
    "IPKError",
    "FormatError",
    "InvalidKeyPair",
    "SigningFailure",
    "ExternalToolUnavailable",
    "ValidationFailure",
    "OperationTimeout",
    "OperationCancelled",
    "get_ipk_info",
]


def get_ipk_info() -> dict:
    """Get module information and signing capability status."""
    from .external import AresPackageAdapter

    adapter = AresPackageAdapter(log_callback=lambda message, level="info": None)
    info = {
        "version": __version__,
        "header_size": ContainerCodec.HEADER_SIZE,
        "dependencies": {
            "cryptography": False,
            "typer": False,
        },
        "methods": {
            "local": "Certificate + private key (RSA / ECDSA / Ed25519)",
            "delegated": f"webOS CLI ({AresPackageAdapter.TOOL_NAME})",
        },
        "external_tool": adapter.find_tool(),
    }

    try:
        import cryptography
        info["dependencies"]["cryptography"] = True
        info["cryptography_version"] = cryptography.__version__
    except ImportError:
        pass

    try:
        import typer  # noqa: F401
        info["dependencies"]["typer"] = True
    except ImportError:
        pass

    return info
