from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from .constants import (
    BLOCK_MODULUS,
    BLOCK_SIZE,
    DEFAULT_MODE,
    HEADER_SIZE,
    MODES,
    OP_ACK,
    OP_DATA,
    OP_ERROR,
    OP_RRQ,
    OP_WRQ,
)
from .errors import (
    IllegalOperation,
    InvalidFilename,
    InvalidMode,
    TrailingData,
    TruncatedPacket,
)

HEADER_FORMAT = "!HH"  # opcode, block number or error code


class Opcode(enum.IntEnum):
    RRQ = OP_RRQ
    WRQ = OP_WRQ
    DATA = OP_DATA
    ACK = OP_ACK
    ERROR = OP_ERROR


def _request_bytes(opcode: Opcode, filename: str, mode: str) -> bytes:
    return (
        struct.pack("!H", opcode)
        + filename.encode("ascii")
        + b"\0"
        + mode.encode("ascii")
        + b"\0"
    )


@dataclass(frozen=True, slots=True)
class ReadRequest:
    filename: str
    mode: str = DEFAULT_MODE

    opcode: ClassVar[Opcode] = Opcode.RRQ

    def to_bytes(self) -> bytes:
        return _request_bytes(self.opcode, self.filename, self.mode)


@dataclass(frozen=True, slots=True)
class WriteRequest:
    filename: str
    mode: str = DEFAULT_MODE

    opcode: ClassVar[Opcode] = Opcode.WRQ

    def to_bytes(self) -> bytes:
        return _request_bytes(self.opcode, self.filename, self.mode)


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    opcode: ClassVar[Opcode] = Opcode.DATA

    @property
    def final(self) -> bool:
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        if len(self.payload) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.payload)}")
        return struct.pack(HEADER_FORMAT, self.opcode, self.block) + self.payload


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    opcode: ClassVar[Opcode] = Opcode.ACK

    def to_bytes(self) -> bytes:
        return struct.pack(HEADER_FORMAT, self.opcode, self.block)


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ""

    opcode: ClassVar[Opcode] = Opcode.ERROR

    def to_bytes(self) -> bytes:
        text = self.message.encode("ascii", "replace")
        return struct.pack(HEADER_FORMAT, self.opcode, self.code) + text + b"\0"


Request = Union[ReadRequest, WriteRequest]
Message = Union[ReadRequest, WriteRequest, Data, Ack, Error]

_OPCODES = frozenset(int(op) for op in Opcode)


def encode(msg: Message) -> bytes:
    return msg.to_bytes()


def _decode_request(opcode: Opcode, body: bytes) -> Request:
    end = body.find(0)
    if end < 0:
        raise TruncatedPacket("filename is not NUL-terminated")
    try:
        filename = body[:end].decode("ascii")
    except UnicodeDecodeError:
        raise InvalidFilename("filename is not ASCII") from None
    if not filename or "." not in filename:
        raise InvalidFilename(f"invalid filename {filename!r}")

    rest = body[end + 1 :]
    end = rest.find(0)
    if end < 0:
        raise TruncatedPacket("mode is not NUL-terminated")
    try:
        mode = rest[:end].decode("ascii")
    except UnicodeDecodeError:
        raise InvalidMode("mode is not ASCII") from None
    if mode.lower() not in MODES:
        raise InvalidMode(f"invalid mode {mode!r}")
    if end + 1 != len(rest):
        raise TrailingData(f"{len(rest) - end - 1} bytes after mode")

    if opcode == Opcode.RRQ:
        return ReadRequest(filename, mode)
    return WriteRequest(filename, mode)


def decode(raw: bytes) -> Message:
    if len(raw) < 2:
        raise TruncatedPacket("datagram too small to carry an opcode")
    if raw[0] != 0 or raw[1] not in _OPCODES:
        raise IllegalOperation(f"unknown opcode 0x{raw[:2].hex()}")
    opcode = Opcode(raw[1])

    if opcode in (Opcode.RRQ, Opcode.WRQ):
        return _decode_request(opcode, raw[2:])

    if len(raw) < HEADER_SIZE:
        raise TruncatedPacket(f"{opcode.name} shorter than {HEADER_SIZE} bytes")
    _, value = struct.unpack_from(HEADER_FORMAT, raw)

    if opcode == Opcode.DATA:
        return Data(value, raw[HEADER_SIZE:])
    if opcode == Opcode.ACK:
        return Ack(value)
    text = raw[HEADER_SIZE:].split(b"\0", 1)[0]
    return Error(value, text.decode("ascii", "replace"))


def peek_opcode(raw: bytes) -> Optional[int]:
    if len(raw) < 2 or raw[0] != 0:
        return None
    return raw[1]


def peek_block(raw: bytes) -> Optional[int]:
    if len(raw) < HEADER_SIZE:
        return None
    return struct.unpack_from("!H", raw, 2)[0]


def next_block(block: int) -> int:
    return (block + 1) % BLOCK_MODULUS


def split_blocks(data: bytes) -> list[bytes]:
    """Cut ``data`` into DATA payloads.

    The last payload is always shorter than BLOCK_SIZE, so a file whose size is
    an exact multiple of the block size ends with an empty payload.
    """
    blocks = [data[i : i + BLOCK_SIZE] for i in range(0, len(data), BLOCK_SIZE)]
    if not blocks or len(blocks[-1]) == BLOCK_SIZE:
        blocks.append(b"")
    return blocks


def describe(msg: Message) -> str:
    if isinstance(msg, (ReadRequest, WriteRequest)):
        return f"{msg.opcode.name} {msg.filename!r} mode={msg.mode}"
    if isinstance(msg, Data):
        return f"DATA block={msg.block} len={len(msg.payload)}"
    if isinstance(msg, Ack):
        return f"ACK block={msg.block}"
    return f"ERROR code={msg.code} {msg.message!r}"
