"""
Resign pipeline: decode, check the existing signature, sign, encode,
write atomically, and validate the written output.
"""

import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

from .codec import ContainerCodec
from .crypto_utils import MaterialLoader
from .deadline import Deadline
from .engine import SignatureEngine
from .errors import IPKError, STAGE_DECODE, STAGE_ENCODE, STAGE_SIGN
from .external import AresPackageAdapter
from .models import (
    Container, ResignOptions, ResignResult, SignerKind, SigningMaterial,
    Stage,
)
from .signers import LocalSigner, select_signer
from .tree import ExtractedTree
from .validation import ValidationPipeline
from .workspace import JobWorkspace


READ_CHUNK_SIZE = 1024 * 1024


def read_container_bytes(path: str, deadline: Optional[Deadline] = None) -> bytes:
    """Read a file in chunks, checking the deadline between chunks."""
    deadline = deadline or Deadline.unbounded()
    source = Path(path)
    if not source.is_file():
        raise IPKError(f"IPK file not found: {source}", stage=STAGE_DECODE)

    chunks = []
    try:
        with source.open("rb") as f:
            while True:
                deadline.check(STAGE_DECODE)
                chunk = f.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
    except OSError as e:
        raise IPKError(f"Cannot read {source}: {e}", stage=STAGE_DECODE) from e
    return b"".join(chunks)


def atomic_write(path: str, data: bytes) -> Path:
    """
    Write data so that the final path only ever holds complete output:
    write a temp file in the same directory, fsync, then rename over.
    """
    target = Path(path)
    if target.is_dir():
        raise IPKError(f"Output path is a directory: {target}", stage=STAGE_ENCODE)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=target.parent)
    except OSError as e:
        raise IPKError(f"Cannot write {target}: {e}", stage=STAGE_ENCODE) from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except OSError as e:
        _discard(tmp_name)
        raise IPKError(f"Cannot write {target}: {e}", stage=STAGE_ENCODE) from e
    except BaseException:
        _discard(tmp_name)
        raise
    return target


def _discard(path: str) -> None:
    if os.path.exists(path):
        os.unlink(path)


def default_output_path(input_path: str, suffix: str = "_resigned.ipk") -> Path:
    source = Path(input_path)
    return source.parent / f"{source.stem}{suffix}"


class ResignCore:
    """
    Orchestrates resign, validate, extract and pack.

    Public operations do not raise IPKError; they return a ResignResult
    whose `stage` names where a failure happened.
    """

    def __init__(
        self,
        options: Optional[ResignOptions] = None,
        adapter: Optional[AresPackageAdapter] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self.options = options or ResignOptions()
        self.log_callback = log_callback or self._default_log
        self.codec = ContainerCodec(self.options.header_size, log_callback=self.log_callback)
        self.engine = SignatureEngine()
        self.validator = ValidationPipeline(self.codec, self.engine, log_callback=self.log_callback)
        self.adapter = adapter or AresPackageAdapter(log_callback=self.log_callback)

    def _default_log(self, message: str, level: str = "info") -> None:
        print(message)

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    def _deadline(self) -> Deadline:
        return Deadline(self.options.timeout_seconds, self.options.cancel_event)

    def _fail(self, result: ResignResult, error: IPKError) -> ResignResult:
        result.success = False
        result.stage = Stage(error.stage)
        result.message = str(error)
        result.errors.append(str(error))
        self.log(f"[-] {error}", "error")
        return result

    def _reject_output(self, result: ResignResult) -> None:
        """Remove output that failed final validation unless keep_invalid is set."""
        if result.output_path is None or not result.output_path.exists():
            return
        if self.options.keep_invalid:
            self.log(f"[!] Keeping invalid output: {result.output_path}", "warning")
            return
        try:
            result.output_path.unlink()
        except OSError as e:
            result.warnings.append(f"Could not remove invalid output: {e}")
            self.log(f"[!] Could not remove invalid output {result.output_path}: {e}", "warning")
            return
        self.log(f"[!] Removed invalid output: {result.output_path}", "warning")
        result.output_path = None

    def load(self, input_path: str, deadline: Optional[Deadline] = None) -> Container:
        """Read and decode a container file."""
        deadline = deadline or self._deadline()
        data = read_container_bytes(input_path, deadline)
        self.log(f"[*] Read {len(data)} bytes from {input_path}")
        return self.codec.decode(data, deadline)

    @staticmethod
    def load_material(
        cert_path: Optional[str] = None,
        key_path: Optional[str] = None,
        p12_path: Optional[str] = None,
        password: str = "",
    ) -> Optional[SigningMaterial]:
        """Load signing material, or None when none was supplied."""
        loader = MaterialLoader(cert_path, key_path, p12_path, password)
        if not loader.has_material:
            return None
        return loader.load()

    # =========================================================================
    # Resign
    # =========================================================================

    def resign(
        self,
        input_path: str,
        output_path: Optional[str] = None,
        material: Optional[SigningMaterial] = None,
    ) -> ResignResult:
        """
        Resign a container.

        With material, signs locally. Without, delegates to the vendor tool
        when it is available and fails otherwise.
        """
        start_time = time.time()
        output = Path(output_path) if output_path else default_output_path(input_path)
        result = ResignResult(success=False, message="", input_path=Path(input_path))
        deadline = self._deadline()

        self.log("=" * 50)
        self.log(f"[>] Resigning IPK: {input_path}")
        self.log(f"[>] Output: {output}")

        try:
            workspace = JobWorkspace(str(self.options.work_dir) if self.options.work_dir else None)
        except OSError as e:
            return self._fail(result, IPKError(f"Cannot create job workspace: {e}", stage=STAGE_DECODE))

        with workspace:
            try:
                self.log("[*] Decoding container...")
                container = self.load(input_path, deadline)
                result.section_count = len(container.sections)
                self.log(f"[*] Found {len(container.sections)} sections")
                if container.trailer:
                    result.warnings.append(
                        f"Dropping {len(container.trailer)} unauthenticated trailing bytes"
                    )

                self.log("[*] Validating existing signature...")
                result.existing = self.validator.check_existing(container.sections)
                if not result.existing.valid:
                    result.warnings.append(f"Existing signature: {result.existing.reason}")

                deadline.check(STAGE_SIGN)
                signer = select_signer(
                    material, self.adapter, self.codec, self.engine,
                    log_callback=self.log_callback,
                    probe_timeout=deadline.remaining(),
                )
                result.signer = signer.kind
                result.certificate_used = signer.description
                if signer.kind is SignerKind.DELEGATED:
                    self.log("[!] No certificate supplied, delegating to ares-package", "warning")

                self.log(f"[*] Signing ({signer.kind.value})...")
                signed = signer.sign(container, workspace, deadline)

                deadline.check(STAGE_ENCODE)
                atomic_write(str(output), signed)
                result.output_path = output
                self.log(f"[*] Wrote {len(signed)} bytes")

                self.log("[*] Validating final signature...")
                expected = self.options.expected_fingerprint
                if expected is None and material is not None:
                    expected = material.fingerprint_sha256
                result.final = self.validator.check_final(
                    read_container_bytes(str(output), deadline),
                    expected_fingerprint=expected,
                    delegated=signer.kind is SignerKind.DELEGATED,
                    deadline=deadline,
                )
                result.warnings.extend(result.final.warnings)

            except IPKError as e:
                result.signing_time = time.time() - start_time
                return self._fail(result, e)

        result.signing_time = time.time() - start_time
        if result.final.valid:
            result.success = True
            result.message = "IPK resigned successfully"
            self.log(f"[+] IPK resigned successfully: {output}", "success")
            self.log(f"[+] Time: {result.signing_time:.2f}s", "success")
        else:
            result.stage = Stage.VALIDATE
            result.message = f"Final validation failed: {result.final.reason}"
            result.errors.append(result.final.reason)
            self.log(f"[-] {result.message}", "error")
            self._reject_output(result)

        return result

    # =========================================================================
    # Validate
    # =========================================================================

    def validate(self, input_path: str) -> ResignResult:
        """Validate the signature of a container on disk."""
        result = ResignResult(success=False, message="", input_path=Path(input_path))
        self.log(f"[>] Validating IPK signature: {input_path}")

        deadline = self._deadline()
        try:
            data = read_container_bytes(input_path, deadline)
            self.log(f"[*] File size: {len(data)} bytes")
            validation = self.validator.validate(
                data, expected_fingerprint=self.options.expected_fingerprint,
                deadline=deadline,
            )
        except IPKError as e:
            return self._fail(result, e)

        result.existing = validation
        result.warnings.extend(validation.warnings)
        result.success = validation.valid
        result.message = validation.reason

        if validation.valid:
            self.log(f"[+] {validation.reason}", "success")
        else:
            result.stage = Stage.VALIDATE
            result.errors.append(validation.reason)
            self.log(f"[-] {validation.reason}", "error")
        for warning in validation.warnings:
            self.log(f"[!] {warning}", "warning")
        return result

    # =========================================================================
    # Extract / Pack
    # =========================================================================

    def extract(self, input_path: str, output_dir: Optional[str] = None) -> ResignResult:
        """Decode a container into an ExtractedTree directory."""
        source = Path(input_path)
        target = Path(output_dir) if output_dir else source.parent / f"{source.stem}_extracted"
        result = ResignResult(success=False, message="", input_path=source)
        deadline = self._deadline()

        self.log(f"[>] Extracting IPK: {source}")
        try:
            container = self.load(input_path, deadline)
            ExtractedTree(str(target), log_callback=self.log_callback).write(container, deadline)
            result.existing = self.validator.check_existing(container.sections)
        except IPKError as e:
            return self._fail(result, e)

        result.success = True
        result.output_path = target
        result.section_count = len(container.sections)
        result.message = f"Extracted {len(container.sections)} sections"
        return result

    def pack(
        self,
        tree_dir: str,
        output_path: str,
        material: Optional[SigningMaterial] = None,
    ) -> ResignResult:
        """
        Rebuild a container from an extracted tree. With material the
        output is signed and validated like a resign.
        """
        result = ResignResult(success=False, message="", input_path=Path(tree_dir))
        deadline = self._deadline()
        self.log(f"[>] Packing tree: {tree_dir}")

        try:
            # unsigned packs keep the trailer so extract + pack is byte-exact
            container = ExtractedTree(tree_dir, log_callback=self.log_callback).read(
                include_trailer=material is None,
            )
            if len(container.header) != self.codec.header_size:
                raise IPKError(
                    f"Header is {len(container.header)} bytes, expected {self.codec.header_size}",
                    stage=STAGE_ENCODE,
                )
            sections = self.codec.relayout(container.sections)
            result.section_count = len(sections)

            if material is not None:
                deadline.check(STAGE_SIGN)
                signer = LocalSigner(material, self.codec, self.engine, self.log_callback)
                sections = signer.resign_sections(sections)
                result.signer = SignerKind.LOCAL
                result.certificate_used = signer.description

            data = self.codec.encode(container.header, sections, container.trailer)
            deadline.check(STAGE_ENCODE)
            atomic_write(output_path, data)
            result.output_path = Path(output_path)

            if material is not None:
                result.final = self.validator.check_final(
                    data, expected_fingerprint=material.fingerprint_sha256, deadline=deadline,
                )
                result.warnings.extend(result.final.warnings)
        except IPKError as e:
            return self._fail(result, e)

        if result.final is not None and not result.final.valid:
            result.stage = Stage.VALIDATE
            result.message = f"Final validation failed: {result.final.reason}"
            result.errors.append(result.final.reason)
            self.log(f"[-] {result.message}", "error")
            self._reject_output(result)
            return result

        result.success = True
        result.message = f"Packed {result.section_count} sections"
        self.log(f"[+] Created IPK: {output_path} ({len(data)} bytes)", "success")
        return result

