"""Inject a scale override layer into a USDZ archive.

USDZ is a zip archive with one hard rule enforced by AR Quick Look: the data
of every entry must start at an offset that is a multiple of 64 bytes from
the start of the archive. The patcher prepends a ``root.usda`` layer as the
very first entry, which pushes every existing entry to the right. Two
conditions keep the existing entries aligned:

1. the new local header (30 + name + extra) is a multiple of 64, which the
   extra field pads out, so the new entry's data is itself aligned;
2. header + payload is a multiple of 64, which trailing spaces in the payload
   pad out (spaces are valid USDA whitespace), so the shift applied to all
   existing entries preserves their alignment.

Only the central directory and the end-of-central-directory record are
rewritten; the original file data is copied through untouched.
"""
import logging

from app.utils.binary import align, crc32, read_u16, read_u32, write_u16, write_u32
from app.utils.exceptions import FormatError

logger = logging.getLogger(__name__)

ALIGNMENT = 64

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
EOCD_SIGNATURE = 0x06054B50

LOCAL_HEADER_SIZE = 30
CENTRAL_HEADER_SIZE = 46
EOCD_SIZE = 22

ZIP_VERSION = 20
UTF8_FLAG = 0x0800

OVERRIDE_NAME = "root.usda"
DEFAULT_REFERENCE = "temp.usdc"
USD_LAYER_SUFFIXES = (".usdc", ".usda", ".usd")

OVERRIDE_TEMPLATE = """#usda 1.0
(
    defaultPrim = "Root"
    metersPerUnit = 1
    upAxis = "Y"
)

def Xform "Root"
{{
    def "Model" (
        prepend references = @{reference}@
    )
    {{
        float3 xformOp:scale = ({factor}, {factor}, {factor})
        uniform token[] xformOpOrder = ["xformOp:scale"]
    }}
}}
"""


def build_override_layer(scale_factor: float, reference: str = DEFAULT_REFERENCE) -> str:
    """Return the USDA text that references ``reference`` scaled uniformly."""
    return OVERRIDE_TEMPLATE.format(reference=reference, factor=repr(float(scale_factor)))


def find_eocd(data: bytes) -> int:
    """Scan backwards for the end-of-central-directory signature."""
    for offset in range(len(data) - EOCD_SIZE, -1, -1):
        if read_u32(data, offset) == EOCD_SIGNATURE:
            return offset
    raise FormatError("End of central directory record not found")


def _read_directory(data: bytes) -> tuple[int, int, int, int]:
    eocd_offset = find_eocd(data)
    entry_count = read_u16(data, eocd_offset + 10)
    cd_size = read_u32(data, eocd_offset + 12)
    cd_offset = read_u32(data, eocd_offset + 16)
    if cd_offset + cd_size > eocd_offset:
        raise FormatError("Central directory overlaps end of central directory record")
    return eocd_offset, entry_count, cd_size, cd_offset


def _decode_name(raw: bytes, flags: int) -> str:
    try:
        if flags & UTF8_FLAG:
            return raw.decode("utf-8")
        return raw.decode("cp437")
    except UnicodeDecodeError as exc:
        raise FormatError(f"Undecodable entry name: {exc}") from exc


def _central_entries(central: bytes | bytearray, entry_count: int, base: int = 0):
    """Yield (pos, name) for each record of a central directory.

    ``base`` is the directory's offset in the archive, used in error messages.
    """
    end = len(central)
    pos = 0
    for _ in range(entry_count):
        if pos + CENTRAL_HEADER_SIZE > end:
            raise FormatError(f"Central directory truncated at offset {base + pos}")
        if read_u32(central, pos) != CENTRAL_HEADER_SIGNATURE:
            raise FormatError(f"Bad central directory signature at offset {base + pos}")
        flags = read_u16(central, pos + 8)
        name_len = read_u16(central, pos + 28)
        extra_len = read_u16(central, pos + 30)
        comment_len = read_u16(central, pos + 32)
        start = pos + CENTRAL_HEADER_SIZE
        next_pos = start + name_len + extra_len + comment_len
        if next_pos > end:
            raise FormatError(f"Central directory entry at offset {base + pos} overruns the directory")
        yield pos, _decode_name(bytes(central[start:start + name_len]), flags)
        pos = next_pos


def list_entry_names(data: bytes) -> list[str]:
    """Names of the archive's entries in central-directory order."""
    _, entry_count, cd_size, cd_offset = _read_directory(data)
    central = data[cd_offset:cd_offset + cd_size]
    return [name for _, name in _central_entries(central, entry_count, cd_offset)]


def find_scene_layer(names: list[str]) -> str:
    for name in names:
        if name.lower().endswith(USD_LAYER_SUFFIXES) and name != OVERRIDE_NAME:
            return name
    return DEFAULT_REFERENCE


def _local_header(name: bytes, extra_len: int, checksum: int, size: int) -> bytearray:
    header = bytearray(LOCAL_HEADER_SIZE + len(name) + extra_len)
    write_u32(header, 0, LOCAL_HEADER_SIGNATURE)
    write_u16(header, 4, ZIP_VERSION)  # version needed
    write_u16(header, 6, 0)  # flags
    write_u16(header, 8, 0)  # STORE
    write_u16(header, 10, 0)  # mod time
    write_u16(header, 12, 0)  # mod date
    write_u32(header, 14, checksum)
    write_u32(header, 18, size)  # compressed
    write_u32(header, 22, size)  # uncompressed
    write_u16(header, 26, len(name))
    write_u16(header, 28, extra_len)
    header[LOCAL_HEADER_SIZE:LOCAL_HEADER_SIZE + len(name)] = name
    # extra field stays zero-filled
    return header


def _central_header(name: bytes, checksum: int, size: int) -> bytearray:
    header = bytearray(CENTRAL_HEADER_SIZE + len(name))
    write_u32(header, 0, CENTRAL_HEADER_SIGNATURE)
    write_u16(header, 4, ZIP_VERSION)  # version made by
    write_u16(header, 6, ZIP_VERSION)  # version needed
    write_u16(header, 8, 0)
    write_u16(header, 10, 0)
    write_u16(header, 12, 0)
    write_u16(header, 14, 0)
    write_u32(header, 16, checksum)
    write_u32(header, 20, size)
    write_u32(header, 24, size)
    write_u16(header, 28, len(name))
    write_u16(header, 30, 0)  # extra
    write_u16(header, 32, 0)  # comment
    write_u16(header, 34, 0)  # disk number
    write_u16(header, 36, 0)  # internal attributes
    write_u32(header, 38, 0)  # external attributes
    write_u32(header, 42, 0)  # local header offset: first entry
    header[CENTRAL_HEADER_SIZE:] = name
    return header


def inject_entry(container: bytes, name: str, payload: bytes, pad_byte: bytes = b" ") -> bytes:
    """Prepend a STORE entry to a zip archive, keeping 64-byte data alignment.

    Pure function of its inputs; raises FormatError on a malformed archive
    without producing a partial result.
    """
    data = bytes(container)
    name_bytes = name.encode("ascii")

    header_base = LOCAL_HEADER_SIZE + len(name_bytes)
    extra_len = (ALIGNMENT - header_base % ALIGNMENT) % ALIGNMENT
    header_size = header_base + extra_len

    padded_len = align(len(payload), ALIGNMENT)
    padded = payload + pad_byte * (padded_len - len(payload))
    total_shift = header_size + padded_len

    checksum = crc32(padded)
    new_entry = _local_header(name_bytes, extra_len, checksum, padded_len) + padded

    eocd_offset, entry_count, cd_size, cd_offset = _read_directory(data)

    central = bytearray(data[cd_offset:cd_offset + cd_size])
    for pos, existing in _central_entries(central, entry_count, cd_offset):
        if existing == name:
            raise FormatError(f"Archive already contains {name}")
        write_u32(central, pos + 42, read_u32(central, pos + 42) + total_shift)

    new_central = _central_header(name_bytes, checksum, padded_len) + central

    # Keep the archive comment that trails the fixed-size record.
    eocd = bytearray(data[eocd_offset:])
    write_u16(eocd, 8, entry_count + 1)  # entries on this disk
    write_u16(eocd, 10, entry_count + 1)  # total entries
    write_u32(eocd, 12, len(new_central))
    write_u32(eocd, 16, cd_offset + total_shift)

    return bytes(new_entry) + data[:cd_offset] + bytes(new_central) + bytes(eocd)


def inject(container: bytes, scale_factor: float) -> bytes:
    """Rescale a USDZ by prepending a ``root.usda`` scale override."""
    reference = find_scene_layer(list_entry_names(container))
    layer = build_override_layer(scale_factor, reference).encode("utf-8")
    patched = inject_entry(container, OVERRIDE_NAME, layer)
    logger.info(
        "Injected %s (scale=%s, reference=%s): %d -> %d bytes",
        OVERRIDE_NAME, scale_factor, reference, len(container), len(patched),
    )
    return patched
