"""Container identification from file signatures.

Only the first HEADER_PROBE_SIZE bytes of a file are inspected. Anything we
cannot positively identify is reported as unsupported rather than guessed.
"""

import struct
from typing import BinaryIO, Optional

from transcoder.core.errors import CorruptHeader
from transcoder.modules.media.boxes import is_streamable, read_top_level_boxes
from transcoder.modules.media.models import ContainerKind

HEADER_PROBE_SIZE = 512

EBML_MAGIC = b"\x1a\x45\xdf\xa3"
EBML_DOCTYPE_ID = 0x4282
TS_SYNC_BYTE = 0x47
TS_PACKET_SIZE = 188

QUICKTIME_BRAND = b"qt  "
QUICKTIME_ATOMS = frozenset({b"moov", b"mdat", b"wide", b"free", b"skip", b"pnot"})


def sniff_container(head: bytes) -> Optional[ContainerKind]:
    """Identify the container format from the leading bytes of a file.

    Args:
        head: Up to HEADER_PROBE_SIZE bytes from the start of the file

    Returns:
        The recognised ContainerKind, or None when no signature matches

    Raises:
        CorruptHeader: The signature matched but the header is malformed
    """
    if len(head) >= 12 and head[4:8] == b"ftyp":
        return ContainerKind.MOV if head[8:12] == QUICKTIME_BRAND else ContainerKind.MP4

    if len(head) >= 8 and head[4:8] in QUICKTIME_ATOMS:
        return ContainerKind.MOV

    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return ContainerKind.AVI

    if head[:4] == EBML_MAGIC:
        doctype = read_ebml_doctype(head)
        # DocType defaults to "matroska" when the element is absent
        if doctype is None or doctype == "matroska":
            return ContainerKind.MKV
        if doctype == "webm":
            return ContainerKind.WEBM
        return None

    if (
        len(head) > TS_PACKET_SIZE
        and head[0] == TS_SYNC_BYTE
        and head[TS_PACKET_SIZE] == TS_SYNC_BYTE
    ):
        return ContainerKind.MPEG_TS

    if head[:3] == b"FLV":
        return ContainerKind.FLV

    if head[:4] == b"OggS":
        return ContainerKind.OGG

    return None


def _read_vint(data: bytes, pos: int, keep_marker: bool = False) -> tuple[int, int]:
    """Decode an EBML variable-length integer starting at *pos*."""
    if pos >= len(data):
        raise CorruptHeader("EBML header truncated")
    first = data[pos]
    if first == 0:
        raise CorruptHeader(f"Invalid EBML length marker at offset {pos}")

    length = 1
    mask = 0x80
    while not first & mask:
        mask >>= 1
        length += 1

    if pos + length > len(data):
        raise CorruptHeader("EBML header truncated")

    value = first if keep_marker else first & (mask - 1)
    for byte in data[pos + 1:pos + length]:
        value = (value << 8) | byte
    return value, pos + length


def read_ebml_doctype(head: bytes) -> Optional[str]:
    """Return the DocType string of an EBML header, or None if absent."""
    header_size, pos = _read_vint(head, len(EBML_MAGIC))
    end = min(len(head), pos + header_size)

    while pos < end:
        element_id, pos = _read_vint(head, pos, keep_marker=True)
        length, pos = _read_vint(head, pos)
        if element_id == EBML_DOCTYPE_ID:
            if pos + length > len(head):
                raise CorruptHeader("EBML DocType element truncated")
            return head[pos:pos + length].rstrip(b"\x00").decode("ascii", errors="replace")
        pos += length

    return None


def check_structure(
    fh: BinaryIO,
    container: ContainerKind,
    file_size: int,
    head: bytes,
) -> bool:
    """Validate the container header before handing the file to ffprobe.

    Returns:
        Whether the file can be demuxed front to back without seeking

    Raises:
        CorruptHeader: The header is inconsistent with the file
    """
    if container.is_iso_bmff:
        boxes = read_top_level_boxes(fh, file_size)
        if not any(box.type == b"moov" for box in boxes):
            raise CorruptHeader("No moov box found")
        return is_streamable(boxes)

    if container is ContainerKind.AVI:
        (riff_size,) = struct.unpack("<I", head[4:8])
        if riff_size < 4:
            raise CorruptHeader(f"Invalid RIFF size {riff_size}")
        if len(head) < 24 or head[12:16] != b"LIST" or head[20:24] != b"hdrl":
            raise CorruptHeader("AVI header list (hdrl) missing")

    return True
