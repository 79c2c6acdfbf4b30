"""Whole-disk view of a GPT: both headers and both partition entry arrays."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import BinaryIO

from .crc import sparse_crc32
from .gpt import (
    GptError,
    _header_offset,
    _put_u32,
    _read,
    _resolve_block_size,
    _u32,
    _u64,
    _write,
    pentry_seek,
)
from .layout import (
    HEADER_CRC_OFFSET,
    HEADER_SIZE_OFFSET,
    PARTITION_COUNT_OFFSET,
    PARTITION_CRC_OFFSET,
    PENTRIES_OFFSET,
    PENTRY_SIZE_OFFSET,
    GptInstance,
)


def _array_geometry(header: bytes | bytearray, block_size: int) -> tuple[int, int]:
    """Byte offset and byte size of the entry array a header describes."""
    start = _u64(header, PENTRIES_OFFSET) * block_size
    size = _u32(header, PARTITION_COUNT_OFFSET) * _u32(header, PENTRY_SIZE_OFFSET)
    return start, size


def _header_prefix(header: bytes | bytearray, size: int) -> bytes:
    if size > len(header):
        raise GptError(f"GPT header size {size} exceeds the header buffer")
    return bytes(header[:size])


def read_header(
    f: BinaryIO, instance: GptInstance, block_size: int | None = None
) -> bytearray:
    """Read the primary or the secondary GPT header block."""
    block_size = _resolve_block_size(f, block_size)
    offset = _header_offset(f, instance, block_size)
    return _read(f, offset, block_size)


def write_header(
    f: BinaryIO,
    header: bytes | bytearray,
    instance: GptInstance,
    block_size: int | None = None,
) -> None:
    """Write a full header block back to the primary or secondary location."""
    block_size = _resolve_block_size(f, block_size)
    if len(header) < block_size:
        raise GptError(
            f"GPT header buffer of {len(header)} bytes is smaller than a block"
        )
    offset = _header_offset(f, instance, block_size)
    if offset <= 0:
        raise GptError("failed to get GPT header offset")
    _write(f, offset, header[:block_size])


def read_pentry_array(
    f: BinaryIO, header: bytes | bytearray, block_size: int | None = None
) -> bytearray:
    """Read the partition entry array described by ``header``."""
    block_size = _resolve_block_size(f, block_size)
    start, size = _array_geometry(header, block_size)
    return _read(f, start, size)


def write_pentry_array(
    f: BinaryIO,
    header: bytes | bytearray,
    entries: bytes | bytearray,
    block_size: int | None = None,
) -> None:
    """Write ``entries`` to where ``header`` says its entry array lives."""
    block_size = _resolve_block_size(f, block_size)
    start, size = _array_geometry(header, block_size)
    if len(entries) < size:
        raise GptError(
            f"partition entry array of {len(entries)} bytes is shorter than {size}"
        )
    _write(f, start, entries[:size])


@dataclass
class GptDisk:
    """In-memory copy of a disk's GPT, edited and then written back whole."""

    devpath: str
    block_size: int
    hdr: bytearray
    hdr_bak: bytearray
    pentry_arr: bytearray
    pentry_arr_bak: bytearray
    pentry_size: int
    pentry_arr_size: int
    hdr_crc: int = 0
    hdr_bak_crc: int = 0
    pentry_arr_crc: int = 0
    pentry_arr_bak_crc: int = 0

    @classmethod
    def load(cls, devpath: str | os.PathLike[str], block_size: int | None = None) -> GptDisk:
        """Read both headers and both entry arrays of the disk at ``devpath``."""
        path = os.fspath(devpath)
        try:
            f = open(path, "rb")
        except OSError as exc:
            raise GptError(f"failed to open {path}: {exc}") from exc
        with f:
            block_size = _resolve_block_size(f, block_size)
            hdr = read_header(f, GptInstance.PRIMARY_GPT, block_size)
            header_size = _u32(hdr, HEADER_SIZE_OFFSET)
            hdr_bak = read_header(f, GptInstance.SECONDARY_GPT, block_size)
            pentry_arr = read_pentry_array(f, hdr, block_size)
            pentry_arr_bak = read_pentry_array(f, hdr_bak, block_size)

        pentry_size = _u32(hdr, PENTRY_SIZE_OFFSET)
        return cls(
            devpath=path,
            block_size=block_size,
            hdr=hdr,
            hdr_bak=hdr_bak,
            pentry_arr=pentry_arr,
            pentry_arr_bak=pentry_arr_bak,
            pentry_size=pentry_size,
            pentry_arr_size=_u32(hdr, PARTITION_COUNT_OFFSET) * pentry_size,
            hdr_crc=sparse_crc32(0, _header_prefix(hdr, header_size)),
            hdr_bak_crc=sparse_crc32(0, _header_prefix(hdr_bak, header_size)),
            pentry_arr_crc=_u32(hdr, PARTITION_CRC_OFFSET),
            pentry_arr_bak_crc=_u32(hdr_bak, PARTITION_CRC_OFFSET),
        )

    def _array(self, instance: GptInstance) -> bytearray:
        if instance == GptInstance.PRIMARY_GPT:
            return self.pentry_arr
        return self.pentry_arr_bak

    def _locate(self, partname: str, instance: GptInstance) -> int | None:
        entries = memoryview(self._array(instance))[: self.pentry_arr_size]
        try:
            return pentry_seek(partname, entries, self.pentry_size)
        finally:
            entries.release()

    def get_pentry(self, partname: str, instance: GptInstance) -> bytes | None:
        """Return a copy of the entry for ``partname`` (or its backup), or ``None``."""
        offset = self._locate(partname, instance)
        if offset is None:
            return None
        return bytes(self._array(instance)[offset:offset + self.pentry_size])

    def set_pentry(
        self, partname: str, instance: GptInstance, entry: bytes | bytearray
    ) -> None:
        """Replace the entry for ``partname`` in the chosen table."""
        if len(entry) != self.pentry_size:
            raise ValueError(
                f"entry is {len(entry)} bytes, expected {self.pentry_size}"
            )
        offset = self._locate(partname, instance)
        if offset is None:
            raise GptError(f"partition {partname!r} not found")
        self._array(instance)[offset:offset + self.pentry_size] = entry

    def update_crc(self) -> None:
        """Recompute every CRC after the tables were changed."""
        self.pentry_arr_crc = sparse_crc32(0, self.pentry_arr[: self.pentry_arr_size])
        self.pentry_arr_bak_crc = sparse_crc32(
            0, self.pentry_arr_bak[: self.pentry_arr_size]
        )
        _put_u32(self.hdr, PARTITION_CRC_OFFSET, self.pentry_arr_crc)
        _put_u32(self.hdr_bak, PARTITION_CRC_OFFSET, self.pentry_arr_bak_crc)

        header_size = _u32(self.hdr, HEADER_SIZE_OFFSET)
        _put_u32(self.hdr, HEADER_CRC_OFFSET, 0)
        _put_u32(self.hdr_bak, HEADER_CRC_OFFSET, 0)
        self.hdr_crc = sparse_crc32(0, _header_prefix(self.hdr, header_size))
        self.hdr_bak_crc = sparse_crc32(0, _header_prefix(self.hdr_bak, header_size))
        _put_u32(self.hdr, HEADER_CRC_OFFSET, self.hdr_crc)
        _put_u32(self.hdr_bak, HEADER_CRC_OFFSET, self.hdr_bak_crc)

    def commit(self) -> None:
        """Write both headers and both entry arrays back to the disk."""
        try:
            f = open(self.devpath, "r+b")
        except OSError as exc:
            raise GptError(f"failed to open {self.devpath}: {exc}") from exc
        with f:
            write_header(f, self.hdr, GptInstance.PRIMARY_GPT, self.block_size)
            write_pentry_array(f, self.hdr, self.pentry_arr, self.block_size)
            write_header(f, self.hdr_bak, GptInstance.SECONDARY_GPT, self.block_size)
            write_pentry_array(f, self.hdr_bak, self.pentry_arr_bak, self.block_size)
            try:
                os.fsync(f.fileno())
            except OSError:
                pass