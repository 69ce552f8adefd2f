from __future__ import annotations

import pytest

from tftpsim.errors import (
    IllegalOperation,
    InvalidFilename,
    InvalidMode,
    TrailingData,
    TruncatedPacket,
)
from tftpsim.packet import (
    Ack,
    Data,
    Error,
    ReadRequest,
    WriteRequest,
    decode,
    next_block,
    peek_block,
    peek_opcode,
    split_blocks,
)


def test_request_layout():
    raw = ReadRequest("test.txt", "octet").to_bytes()
    assert raw == b"\x00\x01test.txt\x00octet\x00"
    assert decode(raw) == ReadRequest("test.txt", "octet")


def test_write_request_keeps_mode_case():
    msg = decode(b"\x00\x02a.bin\x00NetASCII\x00")
    assert isinstance(msg, WriteRequest)
    assert msg.mode == "NetASCII"


def test_data_and_ack_layout():
    assert Data(1, b"hi").to_bytes() == b"\x00\x03\x00\x01hi"
    assert Ack(513).to_bytes() == b"\x00\x04\x02\x01"
    p = decode(b"\x00\x03\xff\xff")
    assert p == Data(0xFFFF, b"")
    assert p.final is True


def test_error_text_stops_at_nul():
    msg = decode(b"\x00\x05\x00\x06File exists\x00junk")
    assert msg == Error(6, "File exists")
    assert Error(1, "nope").to_bytes() == b"\x00\x05\x00\x01nope\x00"


def test_oversized_payload_rejected():
    with pytest.raises(ValueError):
        Data(1, b"x" * 513).to_bytes()


@pytest.mark.parametrize(
    "raw, exc",
    [
        (b"", TruncatedPacket),
        (b"\x00", TruncatedPacket),
        (b"\x00\x09\x00\x01", IllegalOperation),
        (b"\x01\x03\x00\x01", IllegalOperation),
        (b"\x00\x00\x00\x01", IllegalOperation),
        (b"\x00\x01test.txt", TruncatedPacket),
        (b"\x00\x01test.txt\x00octet", TruncatedPacket),
        (b"\x00\x01\x00octet\x00", InvalidFilename),
        (b"\x00\x01notAFilename\x00octet\x00", InvalidFilename),
        (b"\x00\x01a\xffb.txt\x00octet\x00", InvalidFilename),
        (b"\x00\x01test.txt\x00invalidMode\x00", InvalidMode),
        (b"\x00\x01test.txt\x00octet\x00x", TrailingData),
        (b"\x00\x03\x00", TruncatedPacket),
        (b"\x00\x04\x00", TruncatedPacket),
        (b"\x00\x05\x00", TruncatedPacket),
    ],
)
def test_malformed_datagrams(raw, exc):
    with pytest.raises(exc) as info:
        decode(raw)
    assert info.value.code == 4


def test_split_blocks_sizes():
    assert split_blocks(b"") == [b""]
    assert [len(b) for b in split_blocks(b"x" * 1025)] == [512, 512, 1]
    assert [len(b) for b in split_blocks(b"x" * 1024)] == [512, 512, 0]
    assert [len(b) for b in split_blocks(b"x" * 511)] == [511]


@pytest.mark.parametrize("size", [0, 1, 511, 512, 513, 1025, 4096])
def test_split_blocks_reassembles(size):
    data = bytes(i % 251 for i in range(size))
    blocks = split_blocks(data)
    assert b"".join(blocks) == data
    assert len(blocks[-1]) < 512
    assert Data(len(blocks), blocks[-1]).final


def test_block_numbers_wrap():
    assert next_block(1) == 2
    assert next_block(0xFFFF) == 0


def test_peek_helpers():
    raw = Data(7, b"abc").to_bytes()
    assert peek_opcode(raw) == 3
    assert peek_block(raw) == 7
    assert peek_opcode(b"\x01\x03") is None
    assert peek_block(b"\x00\x04\x00") is None
