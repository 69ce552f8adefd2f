from __future__ import annotations

OP_RRQ = 1
OP_WRQ = 2
OP_DATA = 3
OP_ACK = 4
OP_ERROR = 5

HEADER_SIZE = 4  # opcode + block number / error code
BLOCK_SIZE = 512
MAX_PACKET_SIZE = HEADER_SIZE + BLOCK_SIZE
BLOCK_MODULUS = 0x10000

MODES = ("netascii", "octet")
DEFAULT_MODE = "octet"

SERVER_PORT = 69
RELAY_PORT = 23

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_RETRIES = 2  # retransmissions; the next timeout fails the session
DEFAULT_POLL_MS = 200
DEFAULT_RELAY_IDLE_MS = 30000
