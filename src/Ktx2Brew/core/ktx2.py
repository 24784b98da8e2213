"""KTX2 container helpers: header parsing, structural checks, key/value data.

Only the container framing is handled here; the block-compressed payload is
opaque.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Union

logger = logging.getLogger("ktx2_pipeline.ktx2")

KTX2_IDENTIFIER = b"\xabKTX 20\xbb\r\n\x1a\n"
KTX2_MIME_TYPE = "image/ktx2"
BASIS_MIME_TYPE = "image/x-basis"

_HEADER_SIZE = 80
_LEVEL_ENTRY_SIZE = 24
# Shifting trailing sections by a multiple of 16 keeps SGD (8) and level
# (block size, at most 16) alignment intact.
_SECTION_ALIGN = 16

SUPERCOMPRESSION_NAMES = {
    0: "none",
    1: "basislz",
    2: "zstd",
    3: "zlib",
}

KeyValue = Union[str, bytes]


@dataclass
class Ktx2Level:
    byte_offset: int
    byte_length: int
    uncompressed_byte_length: int


@dataclass
class Ktx2Header:
    vk_format: int
    type_size: int
    width: int
    height: int
    depth: int
    layer_count: int
    face_count: int
    level_count: int
    supercompression_scheme: int
    dfd_offset: int
    dfd_length: int
    kvd_offset: int
    kvd_length: int
    sgd_offset: int
    sgd_length: int
    levels: List[Ktx2Level] = field(default_factory=list)

    @property
    def supercompression(self) -> str:
        return SUPERCOMPRESSION_NAMES.get(
            self.supercompression_scheme, f"vendor({self.supercompression_scheme})"
        )


def _u32_le(raw: bytes, offset: int) -> int:
    return struct.unpack_from("<I", raw, offset)[0]


def _u64_le(raw: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", raw, offset)[0]


def is_ktx2(raw: bytes) -> bool:
    return bytes(raw[:12]) == KTX2_IDENTIFIER


def parse_header(raw: bytes) -> Ktx2Header:
    """Parse the fixed header, section index, and level index."""
    if not is_ktx2(raw):
        raise ValueError("Not a KTX2 file (bad identifier)")
    if len(raw) < _HEADER_SIZE:
        raise ValueError(f"KTX2 header truncated (size={len(raw)} bytes)")

    fields = struct.unpack_from("<9I", raw, 12)
    dfd_offset, dfd_length, kvd_offset, kvd_length = struct.unpack_from("<4I", raw, 48)
    sgd_offset, sgd_length = struct.unpack_from("<2Q", raw, 64)
    header = Ktx2Header(
        *fields,
        dfd_offset=dfd_offset, dfd_length=dfd_length,
        kvd_offset=kvd_offset, kvd_length=kvd_length,
        sgd_offset=sgd_offset, sgd_length=sgd_length,
    )

    # levelCount 0 asks the loader to generate mips; one level is stored.
    stored_levels = max(header.level_count, 1)
    index_end = _HEADER_SIZE + _LEVEL_ENTRY_SIZE * stored_levels
    if len(raw) < index_end:
        raise ValueError(
            f"KTX2 level index truncated: requires at least {index_end} bytes, "
            f"got {len(raw)}"
        )
    for level in range(stored_levels):
        offset = _HEADER_SIZE + _LEVEL_ENTRY_SIZE * level
        header.levels.append(Ktx2Level(
            _u64_le(raw, offset), _u64_le(raw, offset + 8), _u64_le(raw, offset + 16),
        ))
    return header


def validate(raw: bytes, require_mips: bool = False) -> List[str]:
    """Return a list of structural problems (empty when the file looks sound)."""
    try:
        header = parse_header(raw)
    except ValueError as exc:
        return [str(exc)]

    issues = []
    if header.width <= 0:
        issues.append(f"Invalid KTX2 pixel width: {header.width}")
    if header.height <= 0:
        issues.append(f"Invalid KTX2 pixel height: {header.height}")
    if header.face_count not in (1, 6):
        issues.append(f"Invalid KTX2 face count: {header.face_count}")
    if require_mips and header.level_count <= 1:
        issues.append("KTX2 output is missing its mip chain (level_count <= 1)")
    size = len(raw)
    for i, level in enumerate(header.levels):
        if level.byte_length == 0:
            issues.append(f"KTX2 level {i} has zero byte length")
        elif level.byte_offset + level.byte_length > size:
            issues.append(
                f"KTX2 level {i} range [{level.byte_offset}, "
                f"{level.byte_offset + level.byte_length}) exceeds file size {size}"
            )
    if header.kvd_length and header.kvd_offset + header.kvd_length > size:
        issues.append("KTX2 key/value data exceeds file size")
    if header.sgd_length and header.sgd_offset + header.sgd_length > size:
        issues.append("KTX2 supercompression global data exceeds file size")
    return issues


def _parse_kvd(block: bytes) -> Dict[str, bytes]:
    entries: Dict[str, bytes] = {}
    pos = 0
    while pos + 4 <= len(block):
        length = _u32_le(block, pos)
        pos += 4
        entry = block[pos:pos + length]
        if len(entry) < length:
            raise ValueError("KTX2 key/value entry truncated")
        key, sep, value = entry.partition(b"\x00")
        if not sep:
            raise ValueError("KTX2 key/value entry has no key terminator")
        entries[key.decode("utf-8")] = value
        pos += (length + 3) & ~3
    return entries


def read_key_values(raw: bytes) -> Dict[str, bytes]:
    """Return the raw key/value pairs stored in the container."""
    header = parse_header(raw)
    if not header.kvd_length:
        return {}
    return _parse_kvd(bytes(raw[header.kvd_offset:header.kvd_offset + header.kvd_length]))


def _encode_value(value: KeyValue) -> bytes:
    if isinstance(value, str):
        # Text values are stored NUL-terminated.
        return value.encode("utf-8") + b"\x00"
    return bytes(value)


def _build_kvd(entries: Mapping[str, bytes]) -> bytes:
    out = bytearray()
    for key in sorted(entries):
        payload = key.encode("utf-8") + b"\x00" + entries[key]
        out += struct.pack("<I", len(payload))
        out += payload
        out += b"\x00" * (-len(payload) % 4)
    return bytes(out)


def set_key_values(raw: bytes, values: Mapping[str, KeyValue]) -> bytes:
    """Return a copy of ``raw`` with ``values`` merged into its key/value data.

    Existing keys are replaced. Sections after the key/value block are moved
    and their offsets patched.
    """
    if not values:
        return bytes(raw)
    header = parse_header(raw)

    entries = read_key_values(raw)
    for key, value in values.items():
        if not key:
            raise ValueError("KTX2 metadata keys must be non-empty")
        entries[str(key)] = _encode_value(value)
    new_kvd = _build_kvd(entries)

    if header.kvd_length:
        start = header.kvd_offset
    else:
        start = header.dfd_offset + header.dfd_length
    old_end = start + header.kvd_length
    delta = len(new_kvd) - header.kvd_length
    shift = -(-delta // _SECTION_ALIGN) * _SECTION_ALIGN
    padding = b"\x00" * (shift - delta)

    out = bytearray(raw[:start])
    out += new_kvd
    out += padding
    out += raw[old_end:]

    struct.pack_into("<II", out, 56, start, len(new_kvd))
    if header.sgd_length and header.sgd_offset >= old_end:
        struct.pack_into("<Q", out, 64, header.sgd_offset + shift)
    for i, level in enumerate(header.levels):
        if level.byte_offset >= old_end:
            struct.pack_into(
                "<Q", out, _HEADER_SIZE + _LEVEL_ENTRY_SIZE * i, level.byte_offset + shift
            )
    logger.debug(
        "Rewrote KTX2 key/value data: %d entries, sections shifted by %d bytes",
        len(entries), shift,
    )
    return bytes(out)
