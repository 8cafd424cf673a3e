"""ISO-BMFF (MP4/MOV) box walking and streaming layout.

The codec reads its input from a pipe, so an MP4/MOV whose moov box sits
after the media data cannot be demuxed as-is. plan_streaming_layout
describes the same file with moov moved in front of the first mdat and every
chunk offset adjusted, without rewriting anything on disk.
"""

import struct
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from transcoder.core.errors import CorruptHeader, StageFailure

# Boxes on the path from moov down to the chunk offset tables
CONTAINER_BOXES = frozenset({b"moov", b"trak", b"mdia", b"minf", b"stbl"})

UINT32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class Box:
    """A top-level box located in a file."""
    type: bytes
    offset: int
    size: int
    header_size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class Segment:
    """A run of bytes to emit: a slice of the source, or replacement bytes."""
    offset: int
    length: int
    data: Optional[bytes] = None


def read_top_level_boxes(fh: BinaryIO, file_size: int) -> list[Box]:
    """Walk the top-level boxes of an ISO-BMFF file.

    Raises:
        CorruptHeader: A box header is truncated or its size is inconsistent
    """
    boxes = []
    offset = 0
    while offset < file_size:
        fh.seek(offset)
        header = fh.read(8)
        if len(header) < 8:
            raise CorruptHeader(f"Truncated box header at offset {offset}")

        size, box_type = struct.unpack(">I4s", header)
        header_size = 8
        if size == 1:
            largesize = fh.read(8)
            if len(largesize) < 8:
                raise CorruptHeader(f"Truncated 64-bit box size at offset {offset}")
            (size,) = struct.unpack(">Q", largesize)
            header_size = 16
        elif size == 0:
            size = file_size - offset

        if size < header_size:
            raise CorruptHeader(
                f"Box {box_type!r} at offset {offset} has invalid size {size}"
            )
        if offset + size > file_size:
            raise CorruptHeader(
                f"Box {box_type!r} at offset {offset} extends past end of file"
            )

        boxes.append(Box(type=box_type, offset=offset, size=size, header_size=header_size))
        offset += size

    return boxes


def is_streamable(boxes: list[Box]) -> bool:
    """True when moov precedes the first mdat (or there is no mdat)."""
    for box in boxes:
        if box.type == b"moov":
            return True
        if box.type == b"mdat":
            return False
    return True


def _patch_chunk_offsets(
    buf: bytearray,
    start: int,
    end: int,
    relocate: Callable[[int], int],
) -> None:
    pos = start
    while pos + 8 <= end:
        size, box_type = struct.unpack_from(">I4s", buf, pos)
        header_size = 8
        if size == 1:
            if pos + 16 > end:
                raise CorruptHeader("Truncated 64-bit box size inside moov")
            (size,) = struct.unpack_from(">Q", buf, pos + 8)
            header_size = 16
        elif size == 0:
            size = end - pos
        if size < header_size or pos + size > end:
            raise CorruptHeader(f"Box {box_type!r} inside moov has invalid size {size}")

        body = pos + header_size
        if box_type in CONTAINER_BOXES:
            _patch_chunk_offsets(buf, body, pos + size, relocate)
        elif box_type in (b"stco", b"co64"):
            entry_format = ">I" if box_type == b"stco" else ">Q"
            entry_size = struct.calcsize(entry_format)
            # full box header: version(1) + flags(3), then entry count
            if body + 8 > pos + size:
                raise CorruptHeader(f"{box_type.decode()} box too short for its entry count")
            (count,) = struct.unpack_from(">I", buf, body + 4)
            table = body + 8
            if table + count * entry_size > pos + size:
                raise CorruptHeader(f"{box_type.decode()} table exceeds its box")
            for i in range(count):
                at = table + i * entry_size
                (chunk_offset,) = struct.unpack_from(entry_format, buf, at)
                moved = relocate(chunk_offset)
                if entry_size == 4 and moved > UINT32_MAX:
                    raise StageFailure(
                        "demux",
                        "chunk offset overflows 32 bits after moving moov; "
                        "source needs co64 tables",
                    )
                struct.pack_into(entry_format, buf, at, moved)

        pos += size


def relocate_moov(moov: bytes, relocate: Callable[[int], int]) -> bytes:
    """Return a copy of *moov* with every chunk offset passed through *relocate*."""
    buf = bytearray(moov)
    _patch_chunk_offsets(buf, 0, len(buf), relocate)
    return bytes(buf)


def plan_streaming_layout(fh: BinaryIO, file_size: int) -> list[Segment]:
    """Describe the byte order in which the file should be fed to a demuxer.

    Args:
        fh: Source file opened in binary mode
        file_size: Size of the source in bytes

    Returns:
        Segments covering exactly file_size bytes. A streamable file yields a
        single segment spanning the whole file.
    """
    boxes = read_top_level_boxes(fh, file_size)
    moov = next((box for box in boxes if box.type == b"moov"), None)
    if moov is None:
        raise CorruptHeader("No moov box found")
    if is_streamable(boxes):
        return [Segment(offset=0, length=file_size)]

    first_mdat = next(box for box in boxes if box.type == b"mdat")
    insert_at = first_mdat.offset

    def relocate(chunk_offset: int) -> int:
        # Data between the insertion point and the old moov moves forward
        if insert_at <= chunk_offset < moov.offset:
            return chunk_offset + moov.size
        return chunk_offset

    fh.seek(moov.offset)
    raw = fh.read(moov.size)
    if len(raw) != moov.size:
        raise CorruptHeader("moov box truncated")
    patched = relocate_moov(raw, relocate)

    segments = []
    for box in boxes:
        if box is first_mdat:
            segments.append(Segment(offset=moov.offset, length=moov.size, data=patched))
        if box is moov:
            continue
        segments.append(Segment(offset=box.offset, length=box.size))
    return segments
