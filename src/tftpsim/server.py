from __future__ import annotations

import logging
import threading
from typing import Optional, Union

from .constants import SERVER_PORT
from .errors import ErrorCode, FileExists, FormatError, StorageError, TransferError
from .net import Addr, UdpEndpoint
from .packet import Error, ReadRequest, WriteRequest, decode, describe
from .retry import RetryPolicy
from .session import State, TransferSession
from .storage import FileStore


def serve_request(
    request: Union[ReadRequest, WriteRequest],
    client: Addr,
    store: FileStore,
    *,
    host: str = "0.0.0.0",
    policy: Optional[RetryPolicy] = None,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Carry out one accepted request from a fresh socket (the server's TID)."""
    name = f"{request.opcode.name}:{request.filename}"
    logging.info("[%s] request from %s:%d", name, client[0], client[1])
    with UdpEndpoint.ephemeral(host, name=name) as udp:
        session = TransferSession(udp, peer=client, policy=policy, cancel=cancel, name=name)
        try:
            if isinstance(request, ReadRequest):
                session.send_file(store.read_bytes(request.filename))
            else:
                if store.exists(request.filename):
                    raise FileExists(f"{request.filename} already exists")

                def commit(data: bytes) -> None:
                    store.write_bytes(request.filename, data)

                session.receive_file(commit=commit)
        except StorageError as exc:
            if session.state is State.START:
                logging.warning("[%s] refused: %s", name, exc)
                udp.send(Error(exc.code, str(exc)), client)
            return False
        except TransferError as exc:
            logging.info("[%s] abandoned (%s)", name, type(exc).__name__)
            return False
    return True


class TftpServer:
    """Accepts requests on the well-known port, one session thread per request."""

    def __init__(
        self,
        store: FileStore,
        host: str = "0.0.0.0",
        port: int = SERVER_PORT,
        policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.host = host
        self.policy = policy or RetryPolicy()
        self.udp = UdpEndpoint.listening(host, port, name="server")
        self._stopping = threading.Event()
        self._cancel = threading.Event()
        self._serving = threading.Event()
        self._stopped = threading.Event()
        self._sessions: list[threading.Thread] = []

    @property
    def address(self) -> Addr:
        return self.udp.address

    @property
    def active_sessions(self) -> int:
        return sum(1 for t in list(self._sessions) if t.is_alive())

    def serve_forever(self) -> None:
        self._serving.set()
        logging.info("server listening on %s:%d", *self.address)
        try:
            while not self._stopping.is_set():
                self.udp.settimeout(self.policy.poll_s)
                try:
                    raw, addr = self.udp.recvfrom()
                except TimeoutError:
                    continue
                self.dispatch(raw, addr)
        finally:
            self._stopped.set()

    def dispatch(self, raw: bytes, addr: Addr) -> Optional[threading.Thread]:
        self._sessions = [t for t in self._sessions if t.is_alive()]
        try:
            msg = decode(raw)
        except FormatError as exc:
            logging.warning("rejected request from %s:%d: %s", addr[0], addr[1], exc)
            self.udp.send(Error(exc.code, str(exc)), addr)
            return None
        if isinstance(msg, Error):
            logging.warning("ignoring %s from %s:%d", describe(msg), addr[0], addr[1])
            return None
        if not isinstance(msg, (ReadRequest, WriteRequest)):
            logging.warning("%s sent to the request port by %s:%d", describe(msg), addr[0], addr[1])
            self.udp.send(Error(ErrorCode.ILLEGAL_OPERATION, f"{msg.opcode.name} is not a request"), addr)
            return None

        t = threading.Thread(
            target=serve_request,
            args=(msg, addr, self.store),
            kwargs={"host": self.host, "policy": self.policy, "cancel": self._cancel},
            name=f"session-{addr[1]}",
        )
        t.start()
        self._sessions.append(t)
        return t

    def shutdown(self, cancel: bool = False, timeout: Optional[float] = None) -> None:
        """Stop taking requests and wait for the transfers already running.

        With ``cancel`` the running transfers are aborted instead of awaited.
        """
        logging.info("server shutting down; %d transfer(s) in flight", self.active_sessions)
        self._stopping.set()
        if cancel:
            self._cancel.set()
        if self._serving.is_set():
            self._stopped.wait(timeout)
        for t in list(self._sessions):
            t.join(timeout)
        self.udp.close()
