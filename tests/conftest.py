from __future__ import annotations

import threading

import pytest

from tftpsim.client import TftpClient
from tftpsim.net import UdpEndpoint
from tftpsim.packet import decode
from tftpsim.retry import RetryPolicy
from tftpsim.server import TftpServer
from tftpsim.storage import FileStore

LOCAL = "127.0.0.1"
FAST = RetryPolicy(timeout_ms=300, max_retries=3, poll_ms=20)


class Runner(threading.Thread):
    """Run a call in the background, keeping its result or exception."""

    def __init__(self, fn, *args, **kwargs):
        super().__init__(daemon=True)
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self.fn(*self.args, **self.kwargs)
        except Exception as exc:
            self.error = exc

    def outcome(self, timeout=10.0):
        self.join(timeout)
        assert not self.is_alive(), "background call did not finish"
        return self.result, self.error


def recv_msg(udp, timeout=2.0):
    udp.settimeout(timeout)
    raw, addr = udp.recvfrom()
    return decode(raw), addr


@pytest.fixture
def endpoints():
    opened = []

    def make(name=""):
        udp = UdpEndpoint.ephemeral(LOCAL, name=name)
        opened.append(udp)
        return udp

    yield make
    for udp in opened:
        udp.close()


@pytest.fixture
def server_root(tmp_path):
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def client_root(tmp_path):
    root = tmp_path / "client"
    root.mkdir()
    return root


@pytest.fixture
def server(server_root):
    srv = TftpServer(FileStore(server_root), host=LOCAL, port=0, policy=FAST)
    t = threading.Thread(target=srv.serve_forever, name="server", daemon=True)
    t.start()
    yield srv
    srv.shutdown(cancel=True, timeout=5)


@pytest.fixture
def make_client(client_root):
    clients = []

    def make(port):
        c = TftpClient(FileStore(client_root), server_host=LOCAL, server_port=port, policy=FAST, host=LOCAL)
        clients.append(c)
        return c

    yield make
    for c in clients:
        c.close(cancel=True, timeout=5)
