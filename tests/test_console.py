from __future__ import annotations

import io
import logging

import pytest

from tftpsim.cli import build_parser
from tftpsim.client import TftpClient
from tftpsim.console import ClientConsole, RelayConsole
from tftpsim.fault import NORMAL, FaultKind, FaultSwitch
from tftpsim.storage import FileStore


class StubRelay:
    def __init__(self):
        self.faults = FaultSwitch()
        self.stopped = False

    def shutdown(self, cancel=False, timeout=None):
        self.stopped = True


def run_console(console_cls, target, script):
    out = io.StringIO()
    console_cls(target, stdin=io.StringIO(script), stdout=out).cmdloop()
    return out.getvalue()


def test_relay_console_arms_faults():
    relay = StubRelay()
    text = run_console(RelayConsole, relay, "lose data 2\nstatus\nquit\n")
    policy = relay.faults.snapshot()
    assert policy.kind is FaultKind.LOSE and policy.block == 2
    assert "System set to lose DATA block 2" in text
    assert "armed: lose DATA block 2" in text
    assert relay.stopped


def test_relay_console_rejects_bad_command():
    relay = StubRelay()
    text = run_console(RelayConsole, relay, "delay data 1\ninvalid mode data 1\nfrobnicate\n")
    assert text.count("Invalid command") == 3
    assert relay.faults.snapshot() is NORMAL
    assert relay.stopped  # end of input quits


def test_relay_console_normal_disarms():
    relay = StubRelay()
    run_console(RelayConsole, relay, "duplicate ack 3 200\nnormal\nquit\n")
    assert relay.faults.snapshot() is NORMAL


@pytest.fixture
def root_level():
    root = logging.getLogger()
    level = root.level
    yield root
    root.setLevel(level)


def test_client_console_settings(tmp_path, root_level):
    client = TftpClient(FileStore(tmp_path), server_port=6969)
    text = run_console(ClientConsole, client, "verbose\nconnect local host\nread\nquiet\nquit\n")
    assert client.server == ("127.0.0.1", 6969)
    assert "usage: read <file name>" in text
    assert root_level.level == logging.WARNING


def test_client_console_connect_address(tmp_path, root_level):
    client = TftpClient(FileStore(tmp_path), server_host="10.0.0.1")
    run_console(ClientConsole, client, "connect 127.0.0.1\nquit\n")
    assert client.server_host == "127.0.0.1"


def test_cli_defaults():
    args = build_parser().parse_args(["client"])
    assert args.server_port == 23
    assert args.mode == "octet"
    args = build_parser().parse_args(["--log-level", "DEBUG", "relay", "--server-port", "6969"])
    assert args.log_level == "DEBUG"
    assert args.port == 23 and args.server_port == 6969
    args = build_parser().parse_args(["server", "--timeout-ms", "250"])
    assert args.port == 69 and args.timeout_ms == 250


def test_command_words_ignore_case(tmp_path, root_level):
    relay = StubRelay()
    text = run_console(RelayConsole, relay, "Lose DATA 2\nSTATUS\nQuit\n")
    assert "armed: lose DATA block 2" in text
    assert "Invalid command" not in text
    assert relay.stopped

    client = TftpClient(FileStore(tmp_path))
    text = run_console(ClientConsole, client, "READ\nVERBOSE\n")
    assert "usage: read <file name>" in text
    assert root_level.level == logging.DEBUG
