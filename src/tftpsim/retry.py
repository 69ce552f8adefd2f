from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_POLL_MS, DEFAULT_TIMEOUT_MS
from .errors import RetriesExhausted, TransferCancelled
from .net import Addr, UdpEndpoint

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    poll_ms: int = DEFAULT_POLL_MS
    dally: bool = True

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def poll_s(self) -> float:
        return max(0.001, self.poll_ms / 1000.0)


def receive_before(
    udp: UdpEndpoint,
    deadline: float,
    poll_s: float,
    cancel: Optional[threading.Event] = None,
) -> Tuple[bytes, Addr]:
    """Receive one datagram before ``deadline`` (a time.monotonic() value).

    Raises TimeoutError when the deadline passes and TransferCancelled as soon
    as ``cancel`` is set.
    """
    while True:
        if cancel is not None and cancel.is_set():
            raise TransferCancelled("transfer cancelled")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError
        udp.settimeout(min(remaining, poll_s))
        try:
            return udp.recvfrom()
        except TimeoutError:
            continue


def await_reply(
    udp: UdpEndpoint,
    policy: RetryPolicy,
    handle: Callable[[bytes, Addr], Optional[T]],
    on_timeout: Callable[[int], None],
    cancel: Optional[threading.Event] = None,
) -> T:
    """Wait until ``handle`` accepts a datagram and return what it returned.

    ``handle`` returns None for packets that do not answer the outstanding
    one; they do not extend the deadline. On each timeout ``on_timeout`` is
    called with the retry number so the caller can retransmit; the timeout
    after ``policy.max_retries`` retries raises RetriesExhausted.
    """
    timeouts = 0
    deadline = time.monotonic() + policy.timeout_s
    while True:
        try:
            raw, addr = receive_before(udp, deadline, policy.poll_s, cancel)
        except TimeoutError:
            timeouts += 1
            if timeouts > policy.max_retries:
                raise RetriesExhausted(
                    f"no reply after {timeouts} timeouts of {policy.timeout_ms} ms"
                ) from None
            on_timeout(timeouts)
            deadline = time.monotonic() + policy.timeout_s
            continue
        result = handle(raw, addr)
        if result is not None:
            return result
