from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import InvalidCommand
from .packet import Opcode

REQUEST_OPCODES = (Opcode.RRQ, Opcode.WRQ)
TRANSFER_OPCODES = (Opcode.DATA, Opcode.ACK)


class FaultKind(enum.Enum):
    NONE = "normal"
    LOSE = "lose"
    DUPLICATE = "duplicate"
    DELAY = "delay"
    INVALID_OPCODE = "invalid opcode"
    INVALID_MODE = "invalid mode"
    INVALID_FILENAME = "invalid filename"
    INVALID_BLOCK = "invalid block"
    INVALID_TID = "invalid tid"


@dataclass(frozen=True, slots=True)
class FaultPolicy:
    kind: FaultKind = FaultKind.NONE
    opcode: Optional[Opcode] = None
    block: Optional[int] = None  # logical block, DATA/ACK only
    delay_ms: int = 0

    @property
    def active(self) -> bool:
        return self.kind is not FaultKind.NONE

    def matches(self, opcode: Optional[int], block: Optional[int] = None) -> bool:
        if not self.active or opcode != self.opcode:
            return False
        if opcode in REQUEST_OPCODES:
            return True
        return block is not None and block == self.block

    def __str__(self) -> str:
        if not self.active:
            return "normal operation"
        text = f"{self.kind.value} {self.opcode.name}"
        if self.block is not None:
            text += f" block {self.block}"
        if self.kind in (FaultKind.DUPLICATE, FaultKind.DELAY):
            text += f" after {self.delay_ms} ms"
        return text


NORMAL = FaultPolicy()


class FaultSwitch:
    """The relay's armed fault, shared by every conversation.

    Conversations take a snapshot when they start and fire it through
    ``consume``, which clears the switch only if that same policy is still
    armed, so an armed fault fires exactly once.
    """

    def __init__(self, policy: FaultPolicy = NORMAL):
        self._lock = threading.Lock()
        self._policy = policy

    def arm(self, policy: FaultPolicy) -> None:
        with self._lock:
            self._policy = policy

    def snapshot(self) -> FaultPolicy:
        with self._lock:
            return self._policy

    def consume(self, policy: FaultPolicy) -> bool:
        with self._lock:
            if policy is NORMAL or self._policy is not policy:
                return False
            self._policy = NORMAL
            return True


_OPCODE_NAMES = {op.name.lower(): op for op in (*REQUEST_OPCODES, *TRANSFER_OPCODES)}


def _opcode(word: str) -> Opcode:
    try:
        return _OPCODE_NAMES[word.lower()]
    except KeyError:
        raise InvalidCommand(f"unknown packet type {word!r}; use rrq, wrq, data or ack") from None


def _number(word: str, what: str, minimum: int = 0) -> int:
    try:
        value = int(word)
    except ValueError:
        raise InvalidCommand(f"{what} must be a number, got {word!r}") from None
    if value < minimum:
        raise InvalidCommand(f"{what} must be at least {minimum}")
    return value


def _block(opcode: Opcode, words: list[str]) -> Optional[int]:
    """Pop the block number that DATA and ACK targets need."""
    if opcode in REQUEST_OPCODES:
        return None
    if not words:
        raise InvalidCommand(f"{opcode.name} faults need a block number")
    block = _number(words.pop(0), "block number", 1 if opcode == Opcode.DATA else 0)
    if block > 0xFFFF:
        raise InvalidCommand("block number must fit in 16 bits")
    return block


_INVALID_KINDS = {
    "opcode": FaultKind.INVALID_OPCODE,
    "mode": FaultKind.INVALID_MODE,
    "filename": FaultKind.INVALID_FILENAME,
    "block": FaultKind.INVALID_BLOCK,
    "tid": FaultKind.INVALID_TID,
}


def parse_fault_command(words: Sequence[str]) -> FaultPolicy:
    """Turn an operator command such as ``lose data 2`` into a FaultPolicy."""
    if not words:
        raise InvalidCommand("empty command")
    verb, rest = words[0].lower(), list(words[1:])

    if verb == "normal":
        kind, opcode, block, delay_ms = FaultKind.NONE, None, None, 0
    elif verb in ("lose", "duplicate", "delay"):
        if not rest:
            usage = f"usage: {verb} <rrq|wrq|data|ack> [block]"
            raise InvalidCommand(usage if verb == "lose" else usage + " <delayMs>")
        kind = FaultKind(verb)
        opcode = _opcode(rest.pop(0))
        block = _block(opcode, rest)
        delay_ms = 0
        if kind is not FaultKind.LOSE:
            if not rest:
                raise InvalidCommand(f"{verb} needs a delay in milliseconds")
            delay_ms = _number(rest.pop(0), "delay")
    elif verb == "invalid":
        if len(rest) < 2 or rest[0].lower() not in _INVALID_KINDS:
            raise InvalidCommand("usage: invalid <opcode|mode|filename|block|tid> <packet type> [block]")
        kind = _INVALID_KINDS[rest.pop(0).lower()]
        opcode = _opcode(rest.pop(0))
        if kind in (FaultKind.INVALID_MODE, FaultKind.INVALID_FILENAME) and opcode not in REQUEST_OPCODES:
            raise InvalidCommand(f"{kind.value} only applies to rrq or wrq")
        if kind in (FaultKind.INVALID_BLOCK, FaultKind.INVALID_TID) and opcode not in TRANSFER_OPCODES:
            raise InvalidCommand(f"{kind.value} only applies to data or ack")
        block = _block(opcode, rest)
        delay_ms = 0
    else:
        raise InvalidCommand(f"unknown command {verb!r}")

    if rest:
        raise InvalidCommand(f"unexpected arguments: {' '.join(rest)}")
    if kind is FaultKind.NONE:
        return NORMAL
    return FaultPolicy(kind, opcode, block, delay_ms)
