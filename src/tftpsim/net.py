from __future__ import annotations

import logging
import socket
from typing import Tuple

from .packet import Message, describe, encode

Addr = Tuple[str, int]

RECV_BUFSIZE = 65535


class UdpEndpoint:
    """One datagram socket; its bound (address, port) is the TID of its owner."""

    def __init__(self, sock: socket.socket, name: str = ""):
        self.sock = sock
        self.name = name

    @classmethod
    def listening(cls, host: str, port: int, timeout_ms: int = 0, name: str = "") -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, port))
        if timeout_ms > 0:
            sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, name)

    @classmethod
    def ephemeral(cls, host: str = "0.0.0.0", timeout_ms: int = 0, name: str = "") -> "UdpEndpoint":
        return cls.listening(host, 0, timeout_ms=timeout_ms, name=name)

    @property
    def address(self) -> Addr:
        return self.sock.getsockname()[:2]

    def settimeout(self, seconds: float) -> None:
        self.sock.settimeout(seconds)

    def sendto(self, data: bytes, addr: Addr) -> None:
        self.sock.sendto(data, addr)

    def send(self, msg: Message, addr: Addr) -> bytes:
        raw = encode(msg)
        logging.debug("[%s] -> %s:%d %s", self.name, addr[0], addr[1], describe(msg))
        self.sock.sendto(raw, addr)
        return raw

    def recvfrom(self, bufsize: int = RECV_BUFSIZE) -> Tuple[bytes, Addr]:
        data, addr = self.sock.recvfrom(bufsize)
        return data, addr[:2]

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
