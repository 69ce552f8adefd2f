from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .constants import DEFAULT_MODE, RELAY_PORT
from .errors import StorageError, TransferError
from .net import Addr, UdpEndpoint
from .packet import ReadRequest, WriteRequest
from .retry import RetryPolicy
from .session import TransferSession, TransferStats
from .storage import FileStore


class TftpClient:
    """Issues read/write requests; every transfer gets its own socket (TID).

    Requests go to ``server_port``, which is the relay's port by default so
    that traffic passes through the error simulator.
    """

    def __init__(
        self,
        store: FileStore,
        server_host: str = "127.0.0.1",
        server_port: int = RELAY_PORT,
        policy: Optional[RetryPolicy] = None,
        mode: str = DEFAULT_MODE,
        host: str = "0.0.0.0",
    ):
        self.store = store
        self.server_host = server_host
        self.server_port = server_port
        self.policy = policy or RetryPolicy()
        self.mode = mode
        self.host = host
        self._cancel = threading.Event()
        self._tasks: list[threading.Thread] = []

    @property
    def server(self) -> Addr:
        return (self.server_host, self.server_port)

    def connect(self, host: str) -> None:
        self.server_host = host
        logging.info("sending requests to %s:%d", *self.server)

    def _session(self, udp: UdpEndpoint, name: str) -> TransferSession:
        return TransferSession(udp, dest=self.server, policy=self.policy, cancel=self._cancel, name=name)

    def read(self, filename: str) -> TransferStats:
        """Fetch ``filename`` from the server into the local store."""
        name = f"read:{filename}"
        with UdpEndpoint.ephemeral(self.host, name=name) as udp:
            session = self._session(udp, name)

            def commit(data: bytes) -> None:
                self.store.write_bytes(filename, data, overwrite=True)

            session.receive_file(ReadRequest(filename, self.mode), commit=commit)
        return session.stats

    def write(self, filename: str) -> TransferStats:
        """Send the local ``filename`` to the server."""
        data = self.store.read_bytes(filename)
        name = f"write:{filename}"
        with UdpEndpoint.ephemeral(self.host, name=name) as udp:
            session = self._session(udp, name)
            session.send_file(data, WriteRequest(filename, self.mode))
        return session.stats

    def run(self, command: str, filename: str) -> bool:
        op: Callable[[str], TransferStats] = self.read if command == "read" else self.write
        try:
            stats = op(filename)
        except (TransferError, StorageError) as exc:
            logging.error("%s %s failed: %s", command, filename, exc)
            return False
        logging.info(
            "%s %s done: %d bytes in %.3fs (%.2f Mbit/s)",
            command,
            filename,
            stats.bytes,
            stats.duration_s,
            stats.throughput_mbps,
        )
        return True

    def start(self, command: str, filename: str) -> threading.Thread:
        """Run one user command as its own task."""
        self._tasks = [t for t in self._tasks if t.is_alive()]
        t = threading.Thread(target=self.run, args=(command, filename), name=f"{command}-{filename}")
        t.start()
        self._tasks.append(t)
        return t

    def close(self, cancel: bool = False, timeout: Optional[float] = None) -> None:
        if cancel:
            self._cancel.set()
        for t in list(self._tasks):
            t.join(timeout)
