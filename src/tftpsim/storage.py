from __future__ import annotations

import errno
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from .errors import AccessViolation, DiskFull, FileExists, FileNotFound, StorageError

_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def _storage_error(name: str, exc: OSError) -> StorageError:
    if isinstance(exc, FileExistsError):
        return FileExists(f"{name} already exists")
    if isinstance(exc, FileNotFoundError):
        return FileNotFound(f"{name} not found")
    if isinstance(exc, (PermissionError, IsADirectoryError)):
        return AccessViolation(f"access violation on {name}")
    if exc.errno in _DISK_FULL_ERRNOS:
        return DiskFull(f"disk full while writing {name}")
    return StorageError(f"{name}: {exc.strerror or exc}")


class FileStore:
    """Whole-file access to one directory, failures reported in TFTP terms."""

    def __init__(self, root: Union[str, os.PathLike]):
        self.root = Path(root).resolve()

    def path(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if path.parent != self.root:
            raise AccessViolation(f"{name!r} is outside the file store")
        return path

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def read_bytes(self, name: str) -> bytes:
        path = self.path(name)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as exc:
            raise _storage_error(name, exc) from exc

    def write_bytes(self, name: str, data: bytes, overwrite: bool = False) -> None:
        """Store ``data`` under ``name``. A failed write leaves no partial file."""
        path = self.path(name)
        if overwrite:
            self._replace(name, path, data)
        else:
            self._create(name, path, data)
        logging.info("stored %s (%d bytes)", path, len(data))

    def _create(self, name: str, path: Path, data: bytes) -> None:
        try:
            out = open(path, "xb")
        except OSError as exc:
            raise _storage_error(name, exc) from exc
        try:
            with out:
                out.write(data)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise _storage_error(name, exc) from exc

    def _replace(self, name: str, path: Path, data: bytes) -> None:
        try:
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".partial-")
        except OSError as exc:
            raise _storage_error(name, exc) from exc
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(data)
            os.replace(tmp, path)
        except OSError as exc:
            Path(tmp).unlink(missing_ok=True)
            raise _storage_error(name, exc) from exc
