# Copyright Red Hat
#
# snapmount/manager/_ledger.py - Mount point ledger
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Durable record of the mounts created beneath a snapmount target.

The ledger for a target is a file named from the target fingerprint that
holds the absolute path of every mount made under the target, in the order
the mounts were made, each terminated by a NUL byte. A path is written and
flushed to disk before the corresponding mount is attempted so that a later
``umount`` can always find everything an interrupted ``mount`` left behind.
"""
from contextlib import contextmanager
from stat import S_ISREG
from typing import Iterator, List, Set
import tempfile
import logging
import fcntl
import os.path
import os

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_LEDGER,
    SnapmountBusyError,
    SnapmountLedgerMissingError,
    SnapmountSystemError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_ledger(msg, *args, **kwargs):
    """A wrapper for ledger subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_LEDGER}, **kwargs)


#: Record terminator: NUL cannot occur in a path.
LEDGER_SEP = b"\0"

#: Ledger file name format: fingerprint.
LEDGER_NAME_FORMAT = "snapmount-%s.ledger"

#: Permissions for ledger files
_LEDGER_MODE = 0o600


def _close_quietly(fd: int):
    try:
        os.close(fd)
    except OSError as err:  # pragma: no cover
        _log_debug("Exception closing ledger fd %d: %s", fd, err)


def _decode_entries(data: bytes) -> List[str]:
    """
    Split raw ledger contents into path strings.

    A trailing partial record (no terminator) is kept: it can only be the
    result of an interrupted write and still names a path that may be
    mounted.
    """
    return [os.fsdecode(entry) for entry in data.split(LEDGER_SEP) if entry]


class LedgerWriter:
    """
    Append-only recorder for an open, locked ledger file.
    """

    def __init__(self, path: str, fd: int, entries: List[str]):
        self.path = path
        self._fd = fd
        self._entries: List[str] = list(entries)
        self._known: Set[str] = set(entries)

    @property
    def entries(self) -> List[str]:
        """The paths recorded so far, in write order."""
        return list(self._entries)

    def record(self, path: str) -> bool:
        """
        Record ``path`` in the ledger.

        Recording a path that is already present does nothing and returns
        ``False``. Otherwise the path is appended and synced to stable storage
        before this method returns ``True``.

        :param path: The absolute mount point path to record.
        :returns: ``True`` if the path was added, ``False`` if it was already
                  recorded.
        :rtype: ``bool``
        """
        if path in self._known:
            _log_debug_ledger("Path %s already recorded in %s", path, self.path)
            return False
        data = os.fsencode(path)
        if LEDGER_SEP in data:
            raise ValueError(f"Ledger path contains NUL byte: {path!r}")
        try:
            os.write(self._fd, data + LEDGER_SEP)
            os.fsync(self._fd)
        except OSError as err:
            raise SnapmountSystemError(
                f"Failed to write ledger {self.path}: {err}"
            ) from err
        self._entries.append(path)
        self._known.add(path)
        _log_debug_ledger("Recorded %s in %s", path, self.path)
        return True


class Ledger:
    """
    The mount point ledger for one target fingerprint.
    """

    def __init__(self, fingerprint: str, ledger_dir: str = None):
        """
        Initialise a new ``Ledger``.

        :param fingerprint: The target fingerprint.
        :param ledger_dir: The directory holding ledger files (defaults to
                           the system temporary directory).
        """
        self.fingerprint = fingerprint
        self.ledger_dir = ledger_dir or tempfile.gettempdir()
        self.path = os.path.join(self.ledger_dir, LEDGER_NAME_FORMAT % fingerprint)

    def __str__(self):
        return self.path

    @property
    def exists(self) -> bool:
        """``True`` if the ledger file exists."""
        return os.path.lexists(self.path)

    def _open(self, create: bool) -> int:
        """
        Open and exclusively lock the ledger file.

        :param create: Create the file if it does not exist.
        :returns: A file descriptor open on the locked ledger file.
        """
        flags = os.O_RDWR | os.O_APPEND | os.O_NOFOLLOW | os.O_CLOEXEC
        if create:
            flags |= os.O_CREAT
        try:
            fd = os.open(self.path, flags, _LEDGER_MODE)
        except FileNotFoundError as err:
            raise SnapmountLedgerMissingError(
                f"Ledger {self.path} does not exist"
            ) from err
        except OSError as err:
            raise SnapmountSystemError(
                f"Failed to open ledger {self.path}: {err}"
            ) from err

        try:
            st = os.fstat(fd)
            if not S_ISREG(st.st_mode):
                raise SnapmountSystemError(f"Ledger {self.path} is not a regular file")
            if st.st_uid != os.geteuid():
                raise SnapmountSystemError(
                    f"Ledger {self.path} is not owned by uid {os.geteuid()}"
                )
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as err:
            _close_quietly(fd)
            raise SnapmountBusyError(
                f"Ledger {self.path} is locked by another process: {err}"
            ) from err
        except SnapmountSystemError:
            _close_quietly(fd)
            raise
        except OSError as err:  # pragma: no cover
            _close_quietly(fd)
            raise SnapmountSystemError(
                f"Failed to lock ledger {self.path}: {err}"
            ) from err

        _log_debug_ledger("Locked ledger %s (fd=%d)", self.path, fd)
        return fd

    @staticmethod
    def _read_fd(fd: int) -> bytes:
        os.lseek(fd, 0, os.SEEK_SET)
        chunks = []
        while True:
            chunk = os.read(fd, 65536)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def _close(self, fd: int):
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as err:  # pragma: no cover
            _log_debug("Exception unlocking ledger %s: %s", self.path, err)
        finally:
            _close_quietly(fd)
        _log_debug_ledger("Unlocked ledger %s", self.path)

    @contextmanager
    def writer(self) -> Iterator[LedgerWriter]:
        """
        Open a write session on this ledger.

        The ledger file is created if necessary and exclusively locked until
        the session ends. Paths already present in the file are loaded so
        that ``LedgerWriter.record()`` is idempotent across sessions.

        :returns: A context manager yielding a ``LedgerWriter``.
        :raises: ``SnapmountBusyError`` if the ledger is locked elsewhere.
        """
        fd = self._open(create=True)
        try:
            entries = _decode_entries(self._read_fd(fd))
            yield LedgerWriter(self.path, fd, entries)
        finally:
            self._close(fd)

    def read(self) -> List[str]:
        """
        Return the recorded paths in write order.

        :returns: A list of absolute path strings.
        :raises: ``SnapmountLedgerMissingError`` if no ledger file exists.
        """
        fd = self._open(create=False)
        try:
            entries = _decode_entries(self._read_fd(fd))
        finally:
            self._close(fd)
        _log_debug_ledger("Read %d entries from %s", len(entries), self.path)
        return entries

    def clear(self):
        """
        Delete the ledger file. Only call this after every recorded mount has
        been successfully unmounted.
        """
        fd = self._open(create=False)
        try:
            os.unlink(self.path)
        except OSError as err:
            raise SnapmountSystemError(
                f"Failed to remove ledger {self.path}: {err}"
            ) from err
        finally:
            self._close(fd)
        _log_info("Removed ledger %s", self.path)


__all__ = [
    "LEDGER_SEP",
    "Ledger",
    "LedgerWriter",
]
