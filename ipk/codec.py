"""
IPK container codec.

A webOS IPK is a fixed-size vendor header followed by gzip members laid
out back to back. The header is carried through untouched; each gzip member
becomes one Section.
"""

import gzip
import zlib
from typing import Callable, List, Optional, Sequence, Tuple

from .deadline import Deadline
from .errors import FormatError, STAGE_DECODE, STAGE_ENCODE
from .models import Container, Section


class ContainerCodec:
    """Decode IPK bytes into sections and encode sections back into bytes."""

    HEADER_SIZE = 512
    GZIP_MAGIC = b"\x1f\x8b"

    # 16 + MAX_WBITS: expect a gzip wrapper, verify its CRC32 and size
    GZIP_WBITS = 16 + zlib.MAX_WBITS

    def __init__(
        self,
        header_size: Optional[int] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self.header_size = self.HEADER_SIZE if header_size is None else header_size
        self.log_callback = log_callback or self._default_log

    def _default_log(self, message: str, level: str = "info") -> None:
        pass

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    # =========================================================================
    # Decoding
    # =========================================================================

    def decode(self, data: bytes, deadline: Optional[Deadline] = None) -> Container:
        """
        Decode a container.

        The scan cursor starts right after the header and advances by the
        number of compressed bytes the decompressor actually consumed for
        each member. Bytes after the last member that contain no gzip magic
        are kept as the trailer.

        Raises:
            FormatError: input shorter than the header, bytes between
                members, or a corrupt or truncated member. Decoding aborts
                on the first error; no partial container is returned.
        """
        data = bytes(data)
        deadline = deadline or Deadline.unbounded()

        if len(data) < self.header_size:
            raise FormatError(
                f"Container is {len(data)} bytes, shorter than the "
                f"{self.header_size}-byte header",
                offset=0,
            )

        header = data[:self.header_size]
        sections: List[Section] = []
        cursor = self.header_size

        while cursor < len(data):
            deadline.check(STAGE_DECODE, offset=cursor, section_index=len(sections))

            found = data.find(self.GZIP_MAGIC, cursor)
            if found == -1:
                break
            if found != cursor:
                raise FormatError(
                    f"{found - cursor} unexpected bytes before compressed section",
                    offset=cursor,
                    section_index=len(sections),
                )

            payload, consumed = self._inflate_member(data, cursor, len(sections))
            sections.append(Section(
                index=len(sections),
                offset=cursor,
                length=consumed,
                payload=payload,
                raw=data[cursor:cursor + consumed],
            ))
            self.log(f"[*] Section {len(sections) - 1}: offset={cursor} "
                     f"compressed={consumed} payload={len(payload)}")
            cursor += consumed

        trailer = data[cursor:]
        if trailer:
            self.log(f"[!] {len(trailer)} trailing bytes after last section", "warning")

        return Container(header=header, sections=sections, trailer=trailer)

    def _inflate_member(self, data: bytes, offset: int, index: int) -> Tuple[bytes, int]:
        """Decompress exactly one gzip member starting at offset."""
        inflater = zlib.decompressobj(wbits=self.GZIP_WBITS)
        view = memoryview(data)[offset:]

        try:
            payload = inflater.decompress(view)
            payload += inflater.flush()
        except zlib.error as e:
            raise FormatError(
                f"Corrupt compressed stream: {e}",
                offset=offset,
                section_index=index,
            )

        if not inflater.eof:
            raise FormatError(
                "Truncated compressed stream",
                offset=offset,
                section_index=index,
            )

        consumed = len(view) - len(inflater.unused_data)
        return payload, consumed

    # =========================================================================
    # Encoding
    # =========================================================================

    @staticmethod
    def compress_section(section: Section) -> bytes:
        """Compressed bytes for a section; original bytes when unmodified."""
        if section.raw is not None:
            return section.raw
        return gzip.compress(section.payload, mtime=0)

    def encode(
        self,
        header: bytes,
        sections: Sequence[Section],
        trailer: bytes = b"",
    ) -> bytes:
        """Concatenate header, each section's gzip member, and any trailer."""
        if len(header) != self.header_size:
            raise FormatError(
                f"Header is {len(header)} bytes, expected {self.header_size}",
                stage=STAGE_ENCODE,
                offset=0,
            )

        parts = [bytes(header)]
        parts.extend(self.compress_section(s) for s in sections)
        parts.append(bytes(trailer))
        return b"".join(parts)

    def encode_container(self, container: Container) -> bytes:
        return self.encode(container.header, container.sections, container.trailer)

    def relayout(self, sections: Sequence[Section]) -> List[Section]:
        """
        Renumber sections and recompute their offsets as they will be
        written: contiguous, starting right after the header.
        """
        laid_out = []
        cursor = self.header_size
        for index, section in enumerate(sections):
            raw = self.compress_section(section)
            laid_out.append(Section(
                index=index,
                offset=cursor,
                length=len(raw),
                payload=section.payload,
                raw=raw,
            ))
            cursor += len(raw)
        return laid_out

    def new_section(self, payload: bytes) -> Section:
        """A detached section; relayout() assigns its position."""
        return Section(index=-1, offset=-1, length=0, payload=payload)
