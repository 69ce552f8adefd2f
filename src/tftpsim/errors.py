from __future__ import annotations

import enum


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


class FormatError(ValueError):
    """A datagram that does not parse as a well-formed message."""

    code = ErrorCode.ILLEGAL_OPERATION


class IllegalOperation(FormatError):
    pass


class InvalidFilename(FormatError):
    pass


class InvalidMode(FormatError):
    pass


class TrailingData(FormatError):
    pass


class TruncatedPacket(FormatError):
    pass


class StorageError(Exception):
    code = ErrorCode.NOT_DEFINED


class FileNotFound(StorageError):
    code = ErrorCode.FILE_NOT_FOUND


class AccessViolation(StorageError):
    code = ErrorCode.ACCESS_VIOLATION


class DiskFull(StorageError):
    code = ErrorCode.DISK_FULL


class FileExists(StorageError):
    code = ErrorCode.FILE_EXISTS


class TransferError(Exception):
    """A transfer ended without delivering the whole file."""

    def __init__(self, message: str, code: int = ErrorCode.NOT_DEFINED):
        super().__init__(message)
        self.code = code


class RemoteError(TransferError):
    """The peer sent an ERROR packet."""


class ProtocolError(TransferError):
    """The peer broke the protocol; an ERROR packet has been sent back."""


class RetriesExhausted(TransferError):
    pass


class TransferCancelled(TransferError):
    pass


class InvalidCommand(ValueError):
    pass
