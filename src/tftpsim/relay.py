from __future__ import annotations

import collections
import enum
import logging
import struct
import threading
import time
from typing import Optional

from .constants import (
    BLOCK_MODULUS,
    DEFAULT_POLL_MS,
    DEFAULT_RELAY_IDLE_MS,
    DEFAULT_TIMEOUT_MS,
    MAX_PACKET_SIZE,
    OP_ACK,
    OP_DATA,
    OP_ERROR,
    RELAY_PORT,
    SERVER_PORT,
)
from .errors import FormatError, TransferCancelled
from .fault import NORMAL, FaultKind, FaultPolicy, FaultSwitch
from .net import Addr, UdpEndpoint
from .packet import decode, describe, peek_block, peek_opcode
from .retry import receive_before

BAD_MODE = b"invalidMode"
BAD_FILENAME = b"notAFilename"


class RelayState(enum.Enum):
    START = "start"
    FORWARD_REQUEST = "forward-request"
    RELAY_LOOP = "relay-loop"
    FINISHED = "finished"


class Delivery(enum.Enum):
    DELIVERED = "delivered"  # reaches the recipient intact, maybe late or twice
    CORRUPTED = "corrupted"  # reaches the recipient malformed or from a wrong TID
    LOST = "lost"


class BlockCounter:
    """Unwraps 16-bit block numbers into the transfer's running block count."""

    def __init__(self) -> None:
        self.highest = 0

    def logical(self, block: int) -> int:
        delta = (block - self.highest) % BLOCK_MODULUS
        if delta >= BLOCK_MODULUS // 2:
            delta -= BLOCK_MODULUS
        value = self.highest + delta
        self.highest = max(self.highest, value)
        return value


def corrupt_opcode(raw: bytes) -> bytes:
    return raw[:1] + b"\0" + raw[2:]


def corrupt_block(raw: bytes) -> bytes:
    block = peek_block(raw) or 0
    # half the sequence space away: never the current nor the previous block
    return raw[:2] + struct.pack("!H", (block + BLOCK_MODULUS // 2) % BLOCK_MODULUS) + raw[4:]


def rewrite_request(raw: bytes, filename: Optional[bytes] = None, mode: Optional[bytes] = None) -> bytes:
    fields = raw[2:].split(b"\0")
    old_filename = fields[0]
    old_mode = fields[1] if len(fields) > 1 else b""
    return raw[:2] + (filename or old_filename) + b"\0" + (mode or old_mode) + b"\0"


def mutate(kind: FaultKind, raw: bytes) -> bytes:
    if kind is FaultKind.INVALID_OPCODE:
        return corrupt_opcode(raw)
    if kind is FaultKind.INVALID_BLOCK:
        return corrupt_block(raw)
    if kind is FaultKind.INVALID_MODE:
        return rewrite_request(raw, mode=BAD_MODE)
    if kind is FaultKind.INVALID_FILENAME:
        return rewrite_request(raw, filename=BAD_FILENAME)
    raise ValueError(f"{kind} does not rewrite packets")


def send_from_stranger(raw: bytes, dest: Addr, host: str, wait_ms: int) -> None:
    """Send ``raw`` from a never-used socket and log what the receiver answers."""
    with UdpEndpoint.ephemeral(host, name="stranger") as udp:
        udp.sendto(raw, dest)
        logging.info(
            "[stranger] sent %d bytes to %s:%d from %s:%d", len(raw), dest[0], dest[1], *udp.address
        )
        udp.settimeout(wait_ms / 1000.0)
        try:
            reply, _ = udp.recvfrom()
        except TimeoutError:
            logging.warning("[stranger] no answer within %d ms", wait_ms)
            return
    try:
        logging.info("[stranger] answered with %s", describe(decode(reply)))
    except FormatError as exc:
        logging.warning("[stranger] malformed answer: %s", exc)


class RelayConnection:
    """Forwards one client conversation to the server, injecting at most one fault."""

    def __init__(
        self,
        request: bytes,
        client: Addr,
        server: Addr,
        faults: FaultSwitch,
        *,
        host: str = "0.0.0.0",
        idle_timeout_ms: int = DEFAULT_RELAY_IDLE_MS,
        reply_wait_ms: int = DEFAULT_TIMEOUT_MS,
        poll_ms: int = DEFAULT_POLL_MS,
        cancel: Optional[threading.Event] = None,
    ):
        self.request = request
        self.client = client
        self.request_addr = server
        self.server: Optional[Addr] = None
        self.faults = faults
        self.policy = faults.snapshot()
        self.host = host
        self.idle_timeout_ms = idle_timeout_ms
        self.reply_wait_ms = reply_wait_ms
        self.poll_s = max(0.001, poll_ms / 1000.0)
        self.cancel = cancel
        self.udp = UdpEndpoint.ephemeral(host, name=f"relay-{client[1]}")
        self.counter = BlockCounter()
        self.final_block: Optional[int] = None
        self.fired: Optional[FaultPolicy] = None
        self.state = RelayState.START
        self._done = False
        self._pending: list[threading.Thread] = []

    def run(self) -> None:
        name = self.udp.name
        logging.info("[%s] conversation for %s:%d (armed: %s)", name, *self.client, self.policy)
        try:
            self.state = RelayState.FORWARD_REQUEST
            if self._forward_request():
                self.state = RelayState.RELAY_LOOP
                self._relay_loop()
        finally:
            if self.cancel is not None and self.cancel.is_set():
                for t in self._pending:
                    if isinstance(t, threading.Timer):
                        t.cancel()
            for t in self._pending:
                t.join()
            self.udp.close()
            self.state = RelayState.FINISHED
            logging.info("[%s] conversation finished", name)

    def _forward_request(self) -> bool:
        delivery = self._forward(self.request, self.request_addr, peek_opcode(self.request), None)
        return delivery is not Delivery.LOST

    def _relay_loop(self) -> None:
        idle_s = self.idle_timeout_ms / 1000.0
        while not self._done:
            try:
                raw, addr = receive_before(self.udp, time.monotonic() + idle_s, self.poll_s, self.cancel)
            except TimeoutError:
                logging.warning("[%s] no traffic for %d ms; giving up", self.udp.name, self.idle_timeout_ms)
                return
            except TransferCancelled:
                logging.info("[%s] cancelled", self.udp.name)
                return
            self.relay(raw, addr)

    def relay(self, raw: bytes, addr: Addr) -> None:
        """Route one packet received on the conversation socket."""
        if addr == self.client:
            dest = self.server or self.request_addr
        elif self.server is None or addr == self.server:
            self.server = addr
            dest = self.client
        else:
            logging.warning("[%s] dropping packet from unknown TID %s:%d", self.udp.name, *addr)
            return

        opcode = peek_opcode(raw)
        block = None
        if opcode in (OP_DATA, OP_ACK):
            wire_block = peek_block(raw)
            if wire_block is not None:
                block = self.counter.logical(wire_block)
        if opcode == OP_DATA and block is not None and len(raw) < MAX_PACKET_SIZE:
            self.final_block = block

        delivery = self._forward(raw, dest, opcode, block)

        if opcode == OP_ERROR:
            logging.info("[%s] error packet relayed; ending conversation", self.udp.name)
            self._done = True
        elif (
            opcode == OP_ACK
            and block is not None
            and block == self.final_block
            and delivery is Delivery.DELIVERED
        ):
            self._done = True

    def _take_fault(self, opcode: Optional[int], block: Optional[int]) -> Optional[FaultPolicy]:
        if not self.policy.matches(opcode, block):
            return None
        policy, self.policy = self.policy, NORMAL
        if not self.faults.consume(policy):
            logging.info("[%s] fault %s was used or replaced elsewhere", self.udp.name, policy)
            return None
        self.fired = policy
        return policy

    def _forward(self, raw: bytes, dest: Addr, opcode: Optional[int], block: Optional[int]) -> Delivery:
        fault = self._take_fault(opcode, block)
        if fault is None:
            self.udp.sendto(raw, dest)
            return Delivery.DELIVERED

        logging.warning("[%s] injecting fault: %s", self.udp.name, fault)
        kind = fault.kind
        if kind is FaultKind.LOSE:
            return Delivery.LOST
        if kind is FaultKind.DELAY:
            self._send_later(raw, dest, fault.delay_ms)
            return Delivery.DELIVERED
        if kind is FaultKind.DUPLICATE:
            self.udp.sendto(raw, dest)
            self._send_later(raw, dest, fault.delay_ms)
            return Delivery.DELIVERED
        if kind is FaultKind.INVALID_TID:
            t = threading.Thread(
                target=send_from_stranger,
                args=(raw, dest, self.host, self.reply_wait_ms),
                name=f"{self.udp.name}-stranger",
            )
            t.start()
            self._pending.append(t)
            return Delivery.CORRUPTED
        self.udp.sendto(mutate(kind, raw), dest)
        return Delivery.CORRUPTED

    def _send_later(self, raw: bytes, dest: Addr, delay_ms: int) -> None:
        def send() -> None:
            self.udp.sendto(raw, dest)
            logging.info("[%s] sent delayed packet to %s:%d", self.udp.name, *dest)

        t = threading.Timer(delay_ms / 1000.0, send)
        t.name = f"{self.udp.name}-delayed"
        t.start()
        self._pending.append(t)


class ErrorSimulator:
    """Relay listener: one RelayConnection thread per client request."""

    def __init__(
        self,
        faults: Optional[FaultSwitch] = None,
        host: str = "0.0.0.0",
        port: int = RELAY_PORT,
        server: Addr = ("127.0.0.1", SERVER_PORT),
        idle_timeout_ms: int = DEFAULT_RELAY_IDLE_MS,
        reply_wait_ms: int = DEFAULT_TIMEOUT_MS,
        poll_ms: int = DEFAULT_POLL_MS,
    ):
        self.faults = faults or FaultSwitch()
        self.host = host
        self.server = server
        self.idle_timeout_ms = idle_timeout_ms
        self.reply_wait_ms = reply_wait_ms
        self.poll_ms = poll_ms
        self.udp = UdpEndpoint.listening(host, port, name="relay")
        self.recent: collections.deque[RelayConnection] = collections.deque(maxlen=32)
        self._threads: list[threading.Thread] = []
        self._stopping = threading.Event()
        self._cancel = threading.Event()
        self._serving = threading.Event()
        self._stopped = threading.Event()

    @property
    def address(self) -> Addr:
        return self.udp.address

    def serve_forever(self) -> None:
        self._serving.set()
        logging.info(
            "relay listening on %s:%d, forwarding to %s:%d", *self.address, *self.server
        )
        try:
            while not self._stopping.is_set():
                self.udp.settimeout(max(0.001, self.poll_ms / 1000.0))
                try:
                    raw, addr = self.udp.recvfrom()
                except TimeoutError:
                    continue
                self.dispatch(raw, addr)
        finally:
            self._stopped.set()

    def dispatch(self, raw: bytes, addr: Addr) -> RelayConnection:
        self._threads = [t for t in self._threads if t.is_alive()]
        conn = RelayConnection(
            raw,
            addr,
            self.server,
            self.faults,
            host=self.host,
            idle_timeout_ms=self.idle_timeout_ms,
            reply_wait_ms=self.reply_wait_ms,
            poll_ms=self.poll_ms,
            cancel=self._cancel,
        )
        t = threading.Thread(target=conn.run, name=conn.udp.name)
        t.start()
        self.recent.append(conn)
        self._threads.append(t)
        return conn

    def shutdown(self, cancel: bool = False, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        if cancel:
            self._cancel.set()
        if self._serving.is_set():
            self._stopped.wait(timeout)
        for t in list(self._threads):
            t.join(timeout)
        self.udp.close()
