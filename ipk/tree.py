"""
On-disk layout of an extracted container.

    <dir>/header.bin
    <dir>/section_<n>/data         decompressed payload
    <dir>/section_<n>/stream.gz    original compressed bytes
    <dir>/trailer.bin              only if the container had a trailer
    <dir>/manifest.json
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .deadline import Deadline
from .engine import is_signature_payload
from .errors import FormatError, IPKError, STAGE_DECODE, STAGE_ENCODE
from .models import Container, Section


class ExtractedTree:
    """Write a decoded container to a directory and read it back."""

    MANIFEST = "manifest.json"
    HEADER = "header.bin"
    TRAILER = "trailer.bin"
    FORMAT = "webos-ipk-tree"
    VERSION = 1

    def __init__(self, root: str, log_callback: Optional[Callable[[str, str], None]] = None):
        self.root = Path(root)
        self.log_callback = log_callback or self._default_log

    def _default_log(self, message: str, level: str = "info") -> None:
        print(message)

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    @staticmethod
    def section_dir_name(index: int) -> str:
        return f"section_{index}"

    def write(self, container: Container, deadline: Optional[Deadline] = None) -> Path:
        """Write every section of container under root."""
        try:
            return self._write(container, deadline or Deadline.unbounded())
        except OSError as e:
            raise IPKError(f"Cannot write extracted tree {self.root}: {e}", stage=STAGE_ENCODE) from e

    def _write(self, container: Container, deadline: Deadline) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / self.HEADER).write_bytes(container.header)

        entries = []
        for section in container.sections:
            deadline.check(STAGE_ENCODE, section_index=section.index)
            section_dir = self.root / self.section_dir_name(section.index)
            section_dir.mkdir(exist_ok=True)
            (section_dir / "data").write_bytes(section.payload)
            if section.raw is not None:
                (section_dir / "stream.gz").write_bytes(section.raw)
            entries.append({
                "index": section.index,
                "offset": section.offset,
                "length": section.length,
                "size": len(section.payload),
                "sha256": section.sha256,
                "signature": is_signature_payload(section.payload),
            })

        if container.trailer:
            (self.root / self.TRAILER).write_bytes(container.trailer)

        manifest: Dict[str, Any] = {
            "format": self.FORMAT,
            "version": self.VERSION,
            "header_size": len(container.header),
            "header_sha256": hashlib.sha256(container.header).hexdigest(),
            "trailer_size": len(container.trailer),
            "sections": entries,
        }
        (self.root / self.MANIFEST).write_text(json.dumps(manifest, indent=2))

        self.log(f"[+] Extracted {len(entries)} sections to: {self.root}", "success")
        return self.root

    def read_manifest(self) -> Dict[str, Any]:
        path = self.root / self.MANIFEST
        if not path.exists():
            raise FormatError(f"Not an extracted IPK tree (no {self.MANIFEST}): {self.root}")
        try:
            manifest = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise FormatError(f"Unreadable {self.MANIFEST}: {e}") from e
        if not isinstance(manifest, dict):
            raise FormatError(f"Malformed {self.MANIFEST}: expected an object")
        if manifest.get("format") != self.FORMAT:
            raise FormatError(f"Unknown tree format: {manifest.get('format')!r}")
        return manifest

    def read(self, include_trailer: bool = False) -> Container:
        """
        Rebuild a container from the tree.

        A section whose data still hashes to the recorded SHA-256 reuses its
        recorded compressed bytes; an edited one is recompressed on encode.
        """
        try:
            return self._read(include_trailer)
        except OSError as e:
            raise FormatError(f"Cannot read extracted tree {self.root}: {e}") from e

    def _read(self, include_trailer: bool) -> Container:
        manifest = self.read_manifest()

        header_path = self.root / self.HEADER
        if not header_path.exists():
            raise FormatError(f"Missing {self.HEADER} in {self.root}", stage=STAGE_DECODE)
        header = header_path.read_bytes()

        entries = manifest.get("sections", [])
        if not isinstance(entries, list):
            raise FormatError(f"Malformed {self.MANIFEST}: sections must be a list")

        sections = []
        for position, entry in enumerate(entries):
            index = entry.get("index") if isinstance(entry, dict) else None
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                raise FormatError(
                    f"Malformed {self.MANIFEST}: entry {position} has invalid index {index!r}"
                )
            section_dir = self.root / self.section_dir_name(index)
            data_path = section_dir / "data"
            if not data_path.exists():
                raise FormatError(f"Missing payload for section {index}", section_index=index)

            payload = data_path.read_bytes()
            raw = None
            stream_path = section_dir / "stream.gz"
            if hashlib.sha256(payload).hexdigest() == entry.get("sha256") and stream_path.exists():
                raw = stream_path.read_bytes()
            else:
                self.log(f"[*] Section {index} changed, will recompress")

            sections.append(Section(
                index=index,
                offset=entry.get("offset", -1),
                length=len(raw) if raw is not None else 0,
                payload=payload,
                raw=raw,
            ))

        trailer = b""
        trailer_path = self.root / self.TRAILER
        if include_trailer and trailer_path.exists():
            trailer = trailer_path.read_bytes()

        return Container(header=header, sections=sections, trailer=trailer)
