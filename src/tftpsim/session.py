from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, NoReturn, Optional

from .constants import BLOCK_MODULUS
from .errors import (
    ErrorCode,
    FormatError,
    ProtocolError,
    RemoteError,
    RetriesExhausted,
    StorageError,
    TransferCancelled,
    TransferError,
)
from .net import Addr, UdpEndpoint
from .packet import (
    Ack,
    Data,
    Error,
    Message,
    ReadRequest,
    WriteRequest,
    decode,
    describe,
    next_block,
    split_blocks,
)
from .retry import RetryPolicy, await_reply


class Role(enum.Enum):
    READER = "reader"  # sends DATA, waits for ACKs
    WRITER = "writer"  # waits for DATA, sends ACKs


class State(enum.Enum):
    START = "start"
    AWAIT_ACK = "await-ack"
    AWAIT_DATA = "await-data"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class TransferStats:
    blocks: int = 0
    bytes: int = 0
    timeouts: int = 0
    retransmits: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: Optional[float] = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes * 8 / 1_000_000) / self.duration_s


class TransferSession:
    """Stop-and-wait state machine for one file transfer over one socket.

    ``peer`` is the remote TID when it is already known (server side). A
    client passes ``dest`` instead, the address its request goes to, and the
    peer TID is bound from the first packet that comes back.
    """

    def __init__(
        self,
        udp: UdpEndpoint,
        *,
        peer: Optional[Addr] = None,
        dest: Optional[Addr] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
        name: str = "",
    ):
        if peer is None and dest is None:
            raise ValueError("a session needs a peer or a destination")
        self.udp = udp
        self.peer = peer
        self.dest = dest or peer
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self.name = name or udp.name
        self.role: Optional[Role] = None
        self.state = State.START
        self.block = 0
        self.last_packet = b""
        self.stats = TransferStats()

    @property
    def target(self) -> Addr:
        return self.peer if self.peer is not None else self.dest

    def send_file(self, data: bytes, request: Optional[WriteRequest] = None) -> TransferStats:
        """Run the reader role: push ``data`` to the peer block by block.

        With ``request`` the WRQ is sent first and ACK 0 awaited before DATA 1.
        """
        self.role = Role.READER
        logging.info("[%s] sending %d bytes", self.name, len(data))
        try:
            if request is not None:
                self._transmit(request)
                self._await_ack(0)
            for payload in split_blocks(data):
                self.block = next_block(self.block)
                self._transmit(Data(self.block, payload))
                self._await_ack(self.block)
                self.stats.blocks += 1
                self.stats.bytes += len(payload)
        except TransferError as exc:
            self._failed(exc)
            raise
        self._finish()
        return self.stats

    def receive_file(
        self,
        request: Optional[ReadRequest] = None,
        commit: Optional[Callable[[bytes], None]] = None,
    ) -> bytes:
        """Run the writer role and return the assembled file.

        Without ``request`` the transfer opens with ACK 0. ``commit`` receives
        the complete file before the final ACK goes out; a StorageError raised
        by it is reported to the peer in place of that ACK.
        """
        self.role = Role.WRITER
        buf = bytearray()
        try:
            self._transmit(request if request is not None else Ack(0))
            while True:
                data = self._await_data(next_block(self.block))
                buf += data.payload
                self.block = data.block
                self.stats.blocks += 1
                self.stats.bytes += len(data.payload)
                if data.final and commit is not None:
                    self._commit(commit, bytes(buf))
                self._transmit(Ack(self.block))
                if data.final:
                    break
        except (TransferError, StorageError) as exc:
            self._failed(exc)
            raise
        self._finish()
        self._dally()
        return bytes(buf)

    def _transmit(self, msg: Message) -> None:
        self.last_packet = self.udp.send(msg, self.target)

    def _retransmit(self) -> None:
        self.stats.retransmits += 1
        self.udp.sendto(self.last_packet, self.target)

    def _send_error(self, code: int, message: str) -> None:
        self.udp.send(Error(code, message), self.target)

    def _on_timeout(self, retry: int) -> None:
        self.stats.timeouts += 1
        logging.info(
            "[%s] timed out in %s; retransmitting (retry %d/%d)",
            self.name,
            self.state.value,
            retry,
            self.policy.max_retries,
        )
        self._retransmit()

    def _accept_origin(self, addr: Addr) -> bool:
        if self.peer is None:
            self.peer = addr
            logging.debug("[%s] peer TID is %s:%d", self.name, addr[0], addr[1])
            return True
        if addr == self.peer:
            return True
        logging.warning(
            "[%s] packet from unknown TID %s:%d (peer is %s:%d); rejecting",
            self.name,
            addr[0],
            addr[1],
            self.peer[0],
            self.peer[1],
        )
        self.udp.send(Error(ErrorCode.UNKNOWN_TID, "Unknown transfer ID"), addr)
        return False

    def _decode(self, raw: bytes) -> Message:
        try:
            msg = decode(raw)
        except FormatError as exc:
            logging.error("[%s] malformed packet from peer: %s", self.name, exc)
            self._send_error(exc.code, str(exc))
            raise ProtocolError(str(exc), exc.code) from exc
        logging.debug("[%s] <- %s", self.name, describe(msg))
        return msg

    def _unexpected(self, msg: Message, wanted: str) -> NoReturn:
        if isinstance(msg, Error):
            raise RemoteError(f"peer reported error {msg.code}: {msg.message}", msg.code)
        text = f"expected {wanted}, got {describe(msg)}"
        self._send_error(ErrorCode.ILLEGAL_OPERATION, text)
        raise ProtocolError(text, ErrorCode.ILLEGAL_OPERATION)

    def _await_ack(self, expected: int) -> Ack:
        self.state = State.AWAIT_ACK
        # a stray ACK number earns one resend, however often it repeats
        resent_for: set[int] = set()

        def handle(raw: bytes, addr: Addr) -> Optional[Ack]:
            if not self._accept_origin(addr):
                return None
            msg = self._decode(raw)
            if not isinstance(msg, Ack):
                self._unexpected(msg, f"ACK {expected}")
            if msg.block == expected:
                return msg
            if msg.block in resent_for:
                logging.debug("[%s] ignoring repeated ACK %d", self.name, msg.block)
            else:
                resent_for.add(msg.block)
                logging.info(
                    "[%s] got ACK %d while waiting for ACK %d; resending",
                    self.name,
                    msg.block,
                    expected,
                )
                self._retransmit()
            return None

        return await_reply(self.udp, self.policy, handle, self._on_timeout, self.cancel)

    def _await_data(self, expected: int) -> Data:
        self.state = State.AWAIT_DATA

        def handle(raw: bytes, addr: Addr) -> Optional[Data]:
            if not self._accept_origin(addr):
                return None
            msg = self._decode(raw)
            if not isinstance(msg, Data):
                self._unexpected(msg, f"DATA {expected}")
            if msg.block == expected:
                return msg
            behind = (expected - msg.block) % BLOCK_MODULUS
            # exactly half the sequence space away counts as ahead
            if self.stats.blocks and behind < BLOCK_MODULUS // 2:
                if msg.block == self.block:
                    logging.info("[%s] duplicate DATA %d; re-sending ACK", self.name, msg.block)
                    self._retransmit()
                else:
                    logging.debug("[%s] discarding stale DATA %d", self.name, msg.block)
                return None
            text = f"DATA {msg.block} out of sequence, expected {expected}"
            self._send_error(ErrorCode.ILLEGAL_OPERATION, text)
            raise ProtocolError(text, ErrorCode.ILLEGAL_OPERATION)

        return await_reply(self.udp, self.policy, handle, self._on_timeout, self.cancel)

    def _commit(self, commit: Callable[[bytes], None], data: bytes) -> None:
        try:
            commit(data)
        except StorageError as exc:
            logging.error("[%s] could not store file: %s", self.name, exc)
            self._send_error(exc.code, str(exc))
            raise

    def _dally(self) -> None:
        """Linger one timeout so a lost final ACK can be answered again."""
        if not self.policy.dally:
            return
        final = self.block

        def handle(raw: bytes, addr: Addr) -> None:
            if not self._accept_origin(addr):
                return None
            try:
                msg = decode(raw)
            except FormatError as exc:
                logging.debug("[%s] ignoring malformed packet after transfer: %s", self.name, exc)
                return None
            if isinstance(msg, Data) and msg.block == final:
                logging.info("[%s] final DATA %d repeated; re-sending ACK", self.name, final)
                self._retransmit()
            return None

        try:
            await_reply(
                self.udp,
                replace(self.policy, max_retries=0),
                handle,
                lambda _retry: None,
                self.cancel,
            )
        except (RetriesExhausted, TransferCancelled):
            logging.debug("[%s] dally window closed", self.name)

    def _finish(self) -> None:
        self.state = State.DONE
        self.stats.end_ts = time.monotonic()
        logging.info(
            "[%s] %s finished; blocks=%d bytes=%d retransmits=%d",
            self.name,
            self.role.value,
            self.stats.blocks,
            self.stats.bytes,
            self.stats.retransmits,
        )

    def _failed(self, exc: Exception) -> None:
        self.state = State.FAILED
        self.stats.end_ts = time.monotonic()
        logging.warning("[%s] %s failed: %s", self.name, self.role.value, exc)
