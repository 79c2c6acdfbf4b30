import zlib

import pytest

from gptboot.crc import sparse_crc32


def test_standard_check_value():
    assert sparse_crc32(0, b"123456789") == 0xCBF43926


def test_empty_data_keeps_initial_value():
    assert sparse_crc32(0, b"") == 0
    assert sparse_crc32(0x12345678, b"") == 0x12345678


@pytest.mark.parametrize(
    "data",
    [
        b"a",
        b"EFI PART",
        bytes(range(256)),
        b"\x00" * 128,
        b"\xff" * 92,
        b"The quick brown fox jumps over the lazy dog",
    ],
)
def test_agrees_with_zlib(data):
    assert sparse_crc32(0, data) == zlib.crc32(data)


def test_incremental_equals_whole():
    first = b"partition entries "
    second = b"and a header"
    assert sparse_crc32(sparse_crc32(0, first), second) == sparse_crc32(0, first + second)


def test_accepts_buffer_types():
    raw = bytes(range(64))
    expected = sparse_crc32(0, raw)
    assert sparse_crc32(0, bytearray(raw)) == expected
    assert sparse_crc32(0, memoryview(raw)) == expected


def test_result_fits_in_32_bits():
    for data in (b"\xff" * 17, b"xyz", bytes(range(200))):
        assert 0 <= sparse_crc32(0xFFFFFFFF, data) <= 0xFFFFFFFF


def test_detects_single_bit_change():
    data = bytearray(b"\x00" * 128)
    base = sparse_crc32(0, data)
    data[57] ^= 0x01
    assert sparse_crc32(0, data) != base
    data[57] ^= 0x01
    assert sparse_crc32(0, data) == base