import io
import struct
import zlib

import pytest

from gptboot.gpt import (
    GptError,
    boot_chain_swap,
    device_block_size,
    get_state,
    pentry_seek,
    set_boot_chain,
    set_state,
)
from gptboot.layout import BootChain, GptInstance, GptState

BS = 512
ESIZE = 128
COUNT = 8
BLOCKS = 16
PRIMARY_ENTRIES_LBA = 2
SECONDARY_ENTRIES_LBA = 13
SECONDARY_HEADER_LBA = 15


def make_entry(name, marker=0x11):
    entry = bytearray(ESIZE)
    entry[0:16] = bytes([marker]) * 16
    entry[16:32] = bytes([marker + 1]) * 16
    struct.pack_into("<QQQ", entry, 32, 100 + marker, 200 + marker, 0)
    encoded = name.encode("utf-16-le")
    entry[56:56 + len(encoded)] = encoded
    return bytes(entry)


def make_entries(names):
    data = b"".join(make_entry(n, i + 1) for i, n in enumerate(names))
    return data.ljust(COUNT * ESIZE, b"\0")


def make_header(current, backup, entries_lba, entries_crc):
    header = bytearray(BS)
    header[0:8] = b"EFI PART"
    struct.pack_into("<I", header, 8, 0x00010000)
    struct.pack_into("<I", header, 12, 92)
    struct.pack_into("<QQQQ", header, 24, current, backup, 34, BLOCKS - 3)
    struct.pack_into("<QII", header, 72, entries_lba, COUNT, ESIZE)
    struct.pack_into("<I", header, 88, entries_crc)
    struct.pack_into("<I", header, 16, zlib.crc32(bytes(header[:92])))
    return header


def build_image(names):
    entries = make_entries(names)
    crc = zlib.crc32(entries)
    image = bytearray(BS * BLOCKS)
    image[BS:2 * BS] = make_header(1, SECONDARY_HEADER_LBA, PRIMARY_ENTRIES_LBA, crc)
    image[PRIMARY_ENTRIES_LBA * BS:PRIMARY_ENTRIES_LBA * BS + len(entries)] = entries
    image[SECONDARY_ENTRIES_LBA * BS:SECONDARY_ENTRIES_LBA * BS + len(entries)] = entries
    image[SECONDARY_HEADER_LBA * BS:] = make_header(
        SECONDARY_HEADER_LBA, 1, SECONDARY_ENTRIES_LBA, crc
    )
    return io.BytesIO(bytes(image))


def read_at(f, offset, length):
    f.seek(offset)
    return f.read(length)


def secondary_entries(f):
    return read_at(f, SECONDARY_ENTRIES_LBA * BS, COUNT * ESIZE)


def primary_entries(f):
    return read_at(f, PRIMARY_ENTRIES_LBA * BS, COUNT * ESIZE)


def secondary_header(f):
    return read_at(f, SECONDARY_HEADER_LBA * BS, BS)


def header_crc_is_valid(header):
    scratch = bytearray(header[:92])
    stored = struct.unpack_from("<I", scratch, 16)[0]
    struct.pack_into("<I", scratch, 16, 0)
    return zlib.crc32(bytes(scratch)) == stored


def test_device_block_size_falls_back_to_default():
    assert device_block_size(io.BytesIO(b""), 512) == 512


def test_device_block_size_without_default_raises():
    with pytest.raises(GptError):
        device_block_size(io.BytesIO(b""))


def test_pentry_seek_finds_names_and_backups():
    entries = make_entries(["tz", "abl", "tzbak"])
    assert pentry_seek("tz", entries, ESIZE) == 0
    assert pentry_seek("abl", entries, ESIZE) == ESIZE
    assert pentry_seek("tzbak", entries, ESIZE) == 2 * ESIZE


def test_pentry_seek_requires_exact_or_bak_suffix():
    entries = make_entries(["tzfoo", "abl"])
    assert pentry_seek("tz", entries, ESIZE) is None
    assert pentry_seek("ab", entries, ESIZE) is None


def test_pentry_seek_in_tail_finds_backup():
    entries = make_entries(["tz", "abl", "tzbak"])
    tail = memoryview(entries)[ESIZE:]
    assert pentry_seek("tz", tail, ESIZE) == ESIZE


def test_boot_chain_swap_exchanges_entries():
    original = make_entries(["tz", "abl", "tzbak"])
    entries = bytearray(original)
    assert boot_chain_swap(entries, ESIZE) is True
    assert entries[0:ESIZE] == original[2 * ESIZE:3 * ESIZE]
    assert entries[2 * ESIZE:3 * ESIZE] == original[0:ESIZE]
    assert entries[ESIZE:2 * ESIZE] == original[ESIZE:2 * ESIZE]


def test_boot_chain_swap_twice_restores():
    original = make_entries(["rpm", "rpmbak", "hyp", "hypbak"])
    entries = bytearray(original)
    boot_chain_swap(entries, ESIZE)
    boot_chain_swap(entries, ESIZE)
    assert bytes(entries) == original


def test_boot_chain_swap_without_backups():
    original = make_entries(["tz", "boot"])
    entries = bytearray(original)
    assert boot_chain_swap(entries, ESIZE) is False
    assert bytes(entries) == original


def test_boot_chain_swap_skips_xbl_on_ufs():
    original = make_entries(["xbl", "xbl_config", "xblbak", "xbl_configbak"])
    entries = bytearray(original)
    assert boot_chain_swap(entries, ESIZE, is_ufs=True) is False
    assert bytes(entries) == original
    assert boot_chain_swap(entries, ESIZE, is_ufs=False) is True
    assert bytes(entries) != original


def test_get_state_fresh_image():
    f = build_image(["tz", "tzbak"])
    assert get_state(f, GptInstance.PRIMARY_GPT, BS) == GptState.GPT_OK
    assert get_state(f, GptInstance.SECONDARY_GPT, BS) == GptState.GPT_OK


@pytest.mark.parametrize("instance", list(GptInstance))
def test_set_state_round_trip(instance):
    f = build_image(["tz", "tzbak"])
    set_state(f, instance, GptState.GPT_BAD_SIGNATURE, BS)
    assert get_state(f, instance, BS) == GptState.GPT_BAD_SIGNATURE
    set_state(f, instance, GptState.GPT_OK, BS)
    assert get_state(f, instance, BS) == GptState.GPT_OK


def test_set_state_bad_signature_leaves_other_copy():
    f = build_image(["tz"])
    set_state(f, GptInstance.PRIMARY_GPT, GptState.GPT_BAD_SIGNATURE, BS)
    assert read_at(f, BS, 1) == b"\0"
    assert get_state(f, GptInstance.SECONDARY_GPT, BS) == GptState.GPT_OK


def test_get_state_detects_bad_crc():
    f = build_image(["tz"])
    f.seek(BS + 24)
    f.write(b"\x07")
    assert get_state(f, GptInstance.PRIMARY_GPT, BS) == GptState.GPT_BAD_CRC


def test_set_state_rejects_bad_crc_state():
    f = build_image(["tz"])
    with pytest.raises(GptError):
        set_state(f, GptInstance.PRIMARY_GPT, GptState.GPT_BAD_CRC, BS)


def test_get_state_on_empty_device_raises():
    with pytest.raises(GptError):
        get_state(io.BytesIO(b""), GptInstance.PRIMARY_GPT, BS)
    with pytest.raises(GptError):
        get_state(io.BytesIO(b""), GptInstance.SECONDARY_GPT, BS)


def test_set_boot_chain_backup_then_normal():
    f = build_image(["tz", "abl", "tzbak", "ablbak"])
    primary_before = primary_entries(f)

    assert set_boot_chain(f, BootChain.BACKUP_BOOT, BS) is True
    swapped = secondary_entries(f)
    assert swapped[0:ESIZE] == primary_before[2 * ESIZE:3 * ESIZE]
    assert swapped[ESIZE:2 * ESIZE] == primary_before[3 * ESIZE:4 * ESIZE]
    assert primary_entries(f) == primary_before

    header = secondary_header(f)
    assert struct.unpack_from("<I", header, 88)[0] == zlib.crc32(swapped)
    assert header_crc_is_valid(header)
    assert get_state(f, GptInstance.SECONDARY_GPT, BS) == GptState.GPT_OK

    assert set_boot_chain(f, BootChain.NORMAL_BOOT, BS) is True
    assert secondary_entries(f) == primary_before
    assert header_crc_is_valid(secondary_header(f))


def test_set_boot_chain_without_backups_writes_nothing():
    f = build_image(["tz", "boot"])
    before = f.getvalue()
    assert set_boot_chain(f, BootChain.BACKUP_BOOT, BS) is False
    assert f.getvalue() == before


def test_set_boot_chain_rejects_bad_primary_entries_crc():
    f = build_image(["tz", "tzbak"])
    f.seek(PRIMARY_ENTRIES_LBA * BS + 5)
    f.write(b"\xff")
    with pytest.raises(GptError):
        set_boot_chain(f, BootChain.NORMAL_BOOT, BS)