"""
Signer capability.

Two variants produce a signed container from a decoded one:

- LocalSigner embeds a signature block computed by SignatureEngine.
- DelegatingSigner hands the extracted tree to the vendor tool.

select_signer() picks one by what is available. There is no unsigned or
placeholder fallback: with no key material and no vendor tool, it fails.
"""

from pathlib import Path
from typing import Callable, List, Optional

from .codec import ContainerCodec
from .deadline import Deadline
from .engine import SignatureEngine, content_lengths, encode_signature, is_signature_payload
from .errors import ExternalToolUnavailable, SigningFailure, STAGE_SIGN
from .external import AresPackageAdapter
from .models import Container, Section, SignerKind, SigningMaterial
from .tree import ExtractedTree
from .workspace import JobWorkspace


class Signer:
    """Base class for signing strategies."""

    kind: SignerKind

    def __init__(self, log_callback: Optional[Callable[[str, str], None]] = None):
        self.log_callback = log_callback or self._default_log

    def _default_log(self, message: str, level: str = "info") -> None:
        print(message)

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    @property
    def description(self) -> str:
        return self.kind.value

    def sign(self, container: Container, workspace: JobWorkspace,
             deadline: Optional[Deadline] = None) -> bytes:
        """Return the bytes of a signed container."""
        raise NotImplementedError


class LocalSigner(Signer):
    """Sign with a supplied certificate and private key."""

    kind = SignerKind.LOCAL

    def __init__(
        self,
        material: SigningMaterial,
        codec: Optional[ContainerCodec] = None,
        engine: Optional[SignatureEngine] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        super().__init__(log_callback)
        self.material = material
        self.codec = codec or ContainerCodec()
        self.engine = engine or SignatureEngine()

    @property
    def description(self) -> str:
        return self.material.display_name

    def resign_sections(self, sections: List[Section]) -> List[Section]:
        """
        Replace the signature block, or append one if there is none.

        Content sections keep their order and bytes; only the signature
        block changes.
        """
        content = [s for s in sections if not is_signature_payload(s.payload)]
        digest = self.engine.compute_digest(content)
        signature = self.engine.sign(digest, self.material, content_lengths(content))
        block = self.codec.new_section(encode_signature(signature))

        self.log(f"[*] Content digest: {digest.hex()}")
        self.log(f"[*] Signer: {self.material.common_name} ({signature.fingerprint_hex[:16]}...)")

        replaced = False
        result = []
        for section in sections:
            if is_signature_payload(section.payload):
                if not replaced:
                    result.append(block)
                    replaced = True
                continue
            result.append(section)
        if not replaced:
            result.append(block)

        return self.codec.relayout(result)

    def sign(self, container: Container, workspace: JobWorkspace,
             deadline: Optional[Deadline] = None) -> bytes:
        deadline = deadline or Deadline.unbounded()
        deadline.check(STAGE_SIGN)
        sections = self.resign_sections(container.sections)
        deadline.check(STAGE_SIGN)
        # the trailer is not covered by the digest, so it is dropped
        return self.codec.encode(container.header, sections)


class DelegatingSigner(Signer):
    """Sign by running the vendor tool over an extracted tree."""

    kind = SignerKind.DELEGATED

    def __init__(
        self,
        adapter: AresPackageAdapter,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        super().__init__(log_callback)
        self.adapter = adapter

    @property
    def description(self) -> str:
        return AresPackageAdapter.TOOL_NAME

    def sign(self, container: Container, workspace: JobWorkspace,
             deadline: Optional[Deadline] = None) -> bytes:
        deadline = deadline or Deadline.unbounded()
        try:
            tree_dir = workspace.subdir("package")
            signed_dir = workspace.subdir("signed")
        except OSError as e:
            raise SigningFailure(f"Cannot prepare job directories: {e}") from e
        ExtractedTree(str(tree_dir), log_callback=self.log_callback).write(container, deadline)
        produced = self.adapter.sign(str(tree_dir), str(signed_dir), deadline)
        try:
            return Path(produced).read_bytes()
        except OSError as e:
            raise SigningFailure(f"Cannot read {AresPackageAdapter.TOOL_NAME} output {produced}: {e}") from e


def select_signer(
    material: Optional[SigningMaterial],
    adapter: Optional[AresPackageAdapter] = None,
    codec: Optional[ContainerCodec] = None,
    engine: Optional[SignatureEngine] = None,
    log_callback: Optional[Callable[[str, str], None]] = None,
    probe_timeout: Optional[float] = None,
) -> Signer:
    """
    Choose a signer by availability.

    Raises:
        ExternalToolUnavailable: no key material and no usable vendor tool.
    """
    if material is not None:
        return LocalSigner(material, codec=codec, engine=engine, log_callback=log_callback)

    adapter = adapter or AresPackageAdapter(log_callback=log_callback)
    if adapter.available(timeout=probe_timeout):
        return DelegatingSigner(adapter, log_callback=log_callback)

    raise ExternalToolUnavailable(
        f"No certificate/key supplied and {AresPackageAdapter.TOOL_NAME} is not available"
    )
