"""Reading, checking and rewriting GPT headers for fail-safe boot updates."""

from __future__ import annotations

import os
import struct
from typing import BinaryIO

from .crc import sparse_crc32
from .layout import (
    GPT_SIGNATURE,
    HEADER_CRC_OFFSET,
    HEADER_SIZE_OFFSET,
    MAX_GPT_NAME_SIZE,
    PARTITION_COUNT_OFFSET,
    PARTITION_CRC_OFFSET,
    PARTITION_NAME_OFFSET,
    PENTRIES_OFFSET,
    PENTRY_SIZE_OFFSET,
    PTN_ENTRY_SIZE,
    PTN_SWAP_LIST,
    PTN_XBL,
    BootChain,
    GptInstance,
    GptState,
)

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None  # type: ignore[assignment]

_BLKSSZGET = 0x1268
_BAK_SUFFIX = b"bak"
# The signature is compared and written together with its terminating NUL.
_SIGNATURE_FIELD = GPT_SIGNATURE + b"\0"


class GptError(Exception):
    """A GPT could not be read, validated or written."""


def _u32(buf: bytes | bytearray, offset: int) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def _u64(buf: bytes | bytearray, offset: int) -> int:
    return struct.unpack_from("<Q", buf, offset)[0]


def _put_u32(buf: bytearray, offset: int, value: int) -> None:
    struct.pack_into("<I", buf, offset, value & 0xFFFFFFFF)


def device_block_size(f: BinaryIO, default: int | None = None) -> int:
    """Return the logical block size of the device behind ``f``.

    When the device cannot be asked (not a block device, no descriptor),
    ``default`` is returned; without a default, :class:`GptError` is raised.
    """
    size = 0
    if fcntl is not None:
        try:
            raw = fcntl.ioctl(f.fileno(), _BLKSSZGET, b"\0" * 4)
            size = struct.unpack("I", raw)[0]
        except (OSError, ValueError, AttributeError, TypeError):
            size = 0
    if size:
        return size
    if default is None:
        raise GptError("failed to get GPT device block size")
    return default


def _resolve_block_size(f: BinaryIO, block_size: int | None) -> int:
    return device_block_size(f) if block_size is None else block_size


def _read(f: BinaryIO, offset: int, length: int) -> bytearray:
    try:
        f.seek(offset)
        data = f.read(length)
    except (OSError, ValueError) as exc:
        raise GptError(f"block dev read at {offset} failed: {exc}") from exc
    if data is None or len(data) != length:
        raise GptError(f"block dev read at {offset} returned short data")
    return bytearray(data)


def _write(f: BinaryIO, offset: int, data: bytes | bytearray) -> None:
    try:
        f.seek(offset)
        f.write(bytes(data))
        f.flush()
    except (OSError, ValueError) as exc:
        raise GptError(f"block dev write at {offset} failed: {exc}") from exc


def _header_offset(f: BinaryIO, instance: GptInstance, block_size: int) -> int:
    if instance == GptInstance.PRIMARY_GPT:
        return block_size
    try:
        end = f.seek(0, os.SEEK_END)
    except (OSError, ValueError) as exc:
        raise GptError(f"seek to end of GPT device failed: {exc}") from exc
    offset = end - block_size
    if offset < 0:
        raise GptError("secondary GPT header offset is negative")
    return offset


def _header_crc(header: bytes | bytearray) -> int:
    """CRC of a header, computed with its own CRC field cleared."""
    size = _u32(header, HEADER_SIZE_OFFSET)
    if size > len(header):
        raise GptError(f"GPT header size {size} exceeds the block")
    scratch = bytearray(header)
    _put_u32(scratch, HEADER_CRC_OFFSET, 0)
    return sparse_crc32(0, scratch[:size])


def _seal_header(header: bytearray) -> None:
    _put_u32(header, HEADER_CRC_OFFSET, 0)
    _put_u32(header, HEADER_CRC_OFFSET, _header_crc(header))


def _entry_name(entries: bytes | bytearray | memoryview, start: int) -> bytes:
    """Entry name as a C string, taking only the low byte of each UTF-16 unit."""
    raw = bytes(entries[start:start + MAX_GPT_NAME_SIZE])[0::2]
    return raw.split(b"\0", 1)[0]


def pentry_seek(
    name: str, entries: bytes | bytearray | memoryview, entry_size: int
) -> int | None:
    """Find the first entry called ``name`` or ``name`` + ``bak``.

    Returns the byte offset of that entry within ``entries``, or ``None``.
    """
    if entry_size <= 0:
        raise GptError(f"invalid partition entry size {entry_size}")
    wanted = name.encode()
    backup = wanted + _BAK_SUFFIX
    for entry_start in range(0, len(entries), entry_size):
        name_start = entry_start + PARTITION_NAME_OFFSET
        if name_start >= len(entries):
            break
        found = _entry_name(entries, name_start)
        if found == wanted or found == backup:
            return entry_start
    return None


def boot_chain_swap(entries: bytearray, entry_size: int, is_ufs: bool = False) -> bool:
    """Swap each boot-critical entry with its backup twin, in place.

    On UFS devices XBL partitions are skipped, as they are switched through
    the boot LUN instead. Returns ``False`` when no backup partition was found.
    """
    swapped = False
    for name in PTN_SWAP_LIST:
        if is_ufs and name.startswith(PTN_XBL):
            continue
        primary = pentry_seek(name, entries, entry_size)
        if primary is None:
            continue
        rest_start = primary + entry_size
        found = pentry_seek(name, memoryview(entries)[rest_start:], entry_size)
        if found is None:
            continue
        backup = rest_start + found
        first = bytes(entries[primary:primary + PTN_ENTRY_SIZE])
        entries[primary:primary + PTN_ENTRY_SIZE] = entries[backup:backup + PTN_ENTRY_SIZE]
        entries[backup:backup + PTN_ENTRY_SIZE] = first
        swapped = True
    return swapped


def get_state(
    f: BinaryIO, instance: GptInstance, block_size: int | None = None
) -> GptState:
    """Check the signature and CRC of one GPT header."""
    block_size = _resolve_block_size(f, block_size)
    offset = _header_offset(f, instance, block_size)
    header = _read(f, offset, block_size)
    state = GptState.GPT_OK
    if bytes(header[:len(_SIGNATURE_FIELD)]) != _SIGNATURE_FIELD:
        state = GptState.GPT_BAD_SIGNATURE
    if _header_crc(header) != _u32(header, HEADER_CRC_OFFSET):
        state = GptState.GPT_BAD_CRC
    return state


def set_state(
    f: BinaryIO, instance: GptInstance, state: GptState, block_size: int | None = None
) -> None:
    """Restore or corrupt a GPT header signature, keeping its CRC valid."""
    block_size = _resolve_block_size(f, block_size)
    offset = _header_offset(f, instance, block_size)
    header = _read(f, offset, block_size)
    if state == GptState.GPT_OK:
        header[:len(_SIGNATURE_FIELD)] = _SIGNATURE_FIELD
    elif state == GptState.GPT_BAD_SIGNATURE:
        header[0] = 0
    else:
        raise GptError(f"invalid state to set: {state!r}")
    _seal_header(header)
    _write(f, offset, header)


def set_boot_chain(
    f: BinaryIO,
    chain: BootChain,
    block_size: int | None = None,
    is_ufs: bool = False,
) -> bool:
    """Point the secondary GPT at the normal or the backup boot chain.

    The secondary entry array is rebuilt from the primary one, swapped when
    ``chain`` is the backup chain. Returns ``False`` without writing anything
    when the backup chain is asked for but no backup partitions exist.
    """
    block_size = _resolve_block_size(f, block_size)
    secondary_offset = _header_offset(f, GptInstance.SECONDARY_GPT, block_size)

    primary = _read(f, block_size, block_size)
    entries_start = _u64(primary, PENTRIES_OFFSET) * block_size
    entry_size = _u32(primary, PENTRY_SIZE_OFFSET)
    array_size = _u32(primary, PARTITION_COUNT_OFFSET) * entry_size
    entries = _read(f, entries_start, array_size)
    if sparse_crc32(0, entries) != _u32(primary, PARTITION_CRC_OFFSET):
        raise GptError("primary GPT partition entries array CRC invalid")

    secondary = _read(f, secondary_offset, block_size)
    secondary_entries_start = _u64(secondary, PENTRIES_OFFSET) * block_size

    if chain == BootChain.BACKUP_BOOT and not boot_chain_swap(entries, entry_size, is_ufs):
        return False

    _put_u32(secondary, PARTITION_CRC_OFFSET, sparse_crc32(0, entries))
    _seal_header(secondary)
    _write(f, secondary_offset, secondary)
    _write(f, secondary_entries_start, entries)
    return True