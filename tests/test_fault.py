from __future__ import annotations

import pytest

from tftpsim.errors import InvalidCommand
from tftpsim.fault import NORMAL, FaultKind, FaultPolicy, FaultSwitch, parse_fault_command
from tftpsim.packet import Opcode


def test_parse_lose_data():
    p = parse_fault_command("lose data 2".split())
    assert p == FaultPolicy(FaultKind.LOSE, Opcode.DATA, 2, 0)


def test_parse_delay_request_has_no_block():
    p = parse_fault_command("delay rrq 1500".split())
    assert p == FaultPolicy(FaultKind.DELAY, Opcode.RRQ, None, 1500)


def test_parse_invalid_kinds():
    assert parse_fault_command("invalid opcode wrq".split()).kind is FaultKind.INVALID_OPCODE
    assert parse_fault_command("invalid tid ack 1".split()) == FaultPolicy(
        FaultKind.INVALID_TID, Opcode.ACK, 1, 0
    )
    assert parse_fault_command(["normal"]) is NORMAL


@pytest.mark.parametrize(
    "line",
    [
        "",
        "explode data 1",
        "lose",
        "lose foo 1",
        "lose data",
        "lose data 0",
        "lose data x",
        "lose ack 70000",
        "delay data 1",
        "duplicate ack 2 -5",
        "lose rrq extra",
        "invalid mode data 1",
        "invalid block rrq",
        "invalid tid wrq",
        "invalid nonsense data 1",
    ],
)
def test_rejects_bad_commands(line):
    with pytest.raises(InvalidCommand):
        parse_fault_command(line.split())


def test_matches_requests_by_opcode_only():
    p = parse_fault_command("lose rrq".split())
    assert p.matches(Opcode.RRQ)
    assert not p.matches(Opcode.WRQ)
    assert not NORMAL.matches(Opcode.RRQ)


def test_matches_logical_block():
    p = parse_fault_command("lose ack 0".split())
    assert p.matches(Opcode.ACK, 0)
    assert not p.matches(Opcode.ACK, 1)
    assert not p.matches(Opcode.DATA, 0)
    assert not p.matches(Opcode.ACK, None)


def test_switch_fires_once():
    switch = FaultSwitch()
    p = parse_fault_command("lose data 1".split())
    switch.arm(p)
    assert switch.snapshot() is p
    assert switch.consume(p) is True
    assert switch.consume(p) is False
    assert switch.snapshot() is NORMAL


def test_switch_ignores_replaced_policy():
    switch = FaultSwitch()
    old = parse_fault_command("lose data 1".split())
    new = parse_fault_command("lose data 1".split())
    switch.arm(old)
    switch.arm(new)
    assert switch.consume(old) is False
    assert switch.snapshot() is new
