"""Little-endian field access and CRC-32 for zip surgery."""
import struct
import zlib


def read_u16(buf: bytes | bytearray, offset: int) -> int:
    return struct.unpack_from("<H", buf, offset)[0]


def read_u32(buf: bytes | bytearray, offset: int) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def write_u16(buf: bytearray, offset: int, value: int) -> None:
    struct.pack_into("<H", buf, offset, value & 0xFFFF)


def write_u32(buf: bytearray, offset: int, value: int) -> None:
    struct.pack_into("<I", buf, offset, value & 0xFFFFFFFF)


def crc32(data: bytes | bytearray) -> int:
    """Unsigned CRC-32 (IEEE 802.3, as used by zip)."""
    return zlib.crc32(data) & 0xFFFFFFFF


def align(value: int, boundary: int) -> int:
    """Round value up to the next multiple of boundary."""
    return value + (boundary - value % boundary) % boundary
