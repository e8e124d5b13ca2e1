# Copyright Red Hat
#
# snapmount/manager/_zfs.py - ZFS command interface
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Thin wrappers around the ``zfs`` and ``zpool`` programs.

All queries return parsed rows of the tab-separated ``-H`` output and all
mutating calls raise ``SnapmountCalloutError`` if the program exits with a
non-zero status.
"""
from subprocess import run, CalledProcessError
from typing import List, Tuple
import logging
import os

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_ZFS,
    SnapmountCalloutError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_zfs(msg, *args, **kwargs):
    """A wrapper for zfs subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_ZFS}, **kwargs)


# Main executables
ZFS_CMD = "zfs"
ZPOOL_CMD = "zpool"

# Subcommands
ZFS_LIST = "list"
ZFS_GET = "get"
ZFS_SNAPSHOT = "snapshot"
ZFS_HOLD = "hold"
ZFS_RELEASE = "release"
ZFS_DESTROY = "destroy"
ZPOOL_LIST = "list"

# Common options
ZFS_SCRIPTED = "-H"
ZFS_OPTIONS = "-o"
ZFS_TYPE = "-t"
ZFS_RECURSIVE = "-r"
ZFS_DEFER = "-d"

# Field and type names
ZFS_TYPE_FILESYSTEM = "filesystem"
ZFS_TYPE_SNAPSHOT = "snapshot"
ZFS_FIELD_NAME = "name"
ZFS_FIELD_VALUE = "value"
ZFS_PROP_MOUNTED = "mounted"
ZFS_PROP_CANMOUNT = "canmount"
ZFS_PROP_MOUNTPOINT = "mountpoint"
ZPOOL_PROP_ALTROOT = "altroot"

#: Field separator for ``-H`` output.
ZFS_FIELD_SEP = "\t"

#: Value reported for an unset property.
ZFS_VALUE_NONE = "-"


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    if not err.stderr:
        return ""
    return os.fsdecode(err.stderr).strip()


class Zfs:
    """
    Interface to the ZFS command line tools.

    Instances are stateless; the manager creates one and passes it to each
    component that needs to query or modify ZFS state, which allows tests to
    substitute a scripted replacement.
    """

    def _run(self, cmd_args: List[str]) -> str:
        """
        Run ``cmd_args`` and return its standard output.

        Output is decoded with the file system encoding so that mount point
        values containing undecodable bytes survive the round trip.

        :param cmd_args: The command and its arguments.
        :returns: The standard output of the command.
        :raises: ``SnapmountCalloutError`` if the command fails.
        """
        _log_debug_zfs("Calling %s", " ".join(cmd_args))
        try:
            result = run(cmd_args, capture_output=True, check=True)
        except FileNotFoundError as err:
            raise SnapmountCalloutError(f"{cmd_args[0]} not found: {err}") from err
        except CalledProcessError as err:
            raise SnapmountCalloutError(
                f"Error calling {' '.join(cmd_args[0:2])} for "
                f"'{cmd_args[-1]}': {_decode_stderr(err)}"
            ) from err
        return os.fsdecode(result.stdout)

    def _run_rows(self, cmd_args: List[str]) -> List[List[str]]:
        """
        Run a ``-H`` listing command and split its output into rows of
        fields.
        """
        output = self._run(cmd_args)
        return [line.split(ZFS_FIELD_SEP) for line in output.splitlines() if line]

    def list_pools(self) -> List[Tuple[str, str]]:
        """
        Return a list of ``(name, altroot)`` tuples for all imported pools.
        """
        zpool_cmd = [
            ZPOOL_CMD,
            ZPOOL_LIST,
            ZFS_SCRIPTED,
            ZFS_OPTIONS,
            f"{ZFS_FIELD_NAME},{ZPOOL_PROP_ALTROOT}",
        ]
        return [(row[0], row[1]) for row in self._run_rows(zpool_cmd)]

    def list_filesystems(self) -> List[Tuple[str, str, str]]:
        """
        Return a list of ``(name, mounted, canmount)`` tuples for all file
        system datasets.

        Mount points are not included since they may contain
        characters that break line-oriented parsing. Use
        ``get_mountpoint()`` to fetch each one individually.
        """
        zfs_cmd = [
            ZFS_CMD,
            ZFS_LIST,
            ZFS_SCRIPTED,
            ZFS_OPTIONS,
            f"{ZFS_FIELD_NAME},{ZFS_PROP_MOUNTED},{ZFS_PROP_CANMOUNT}",
            ZFS_TYPE,
            ZFS_TYPE_FILESYSTEM,
        ]
        return [(row[0], row[1], row[2]) for row in self._run_rows(zfs_cmd)]

    def get_mountpoint(self, name: str) -> str:
        """
        Return the raw ``mountpoint`` property value of dataset ``name``.

        Only the single trailing newline printed by ``zfs get`` is removed;
        any other whitespace is part of the value.
        """
        zfs_cmd = [
            ZFS_CMD,
            ZFS_GET,
            ZFS_SCRIPTED,
            ZFS_OPTIONS,
            ZFS_FIELD_VALUE,
            ZFS_PROP_MOUNTPOINT,
            name,
        ]
        output = self._run(zfs_cmd)
        return output[:-1] if output.endswith("\n") else output

    def list_snapshots(self) -> List[str]:
        """
        Return the names of all snapshots on the system.
        """
        zfs_cmd = [
            ZFS_CMD,
            ZFS_LIST,
            ZFS_SCRIPTED,
            ZFS_OPTIONS,
            ZFS_FIELD_NAME,
            ZFS_TYPE,
            ZFS_TYPE_SNAPSHOT,
        ]
        return [row[0] for row in self._run_rows(zfs_cmd)]

    def snapshot(self, snapshot: str):
        """
        Recursively create ``snapshot`` (``<dataset>@<name>``).
        """
        self._run([ZFS_CMD, ZFS_SNAPSHOT, ZFS_RECURSIVE, snapshot])

    def hold(self, tag: str, snapshot: str):
        """
        Recursively place a hold named ``tag`` on ``snapshot``.
        """
        self._run([ZFS_CMD, ZFS_HOLD, ZFS_RECURSIVE, tag, snapshot])

    def release(self, tag: str, snapshot: str):
        """
        Recursively release the hold named ``tag`` from ``snapshot``.
        """
        self._run([ZFS_CMD, ZFS_RELEASE, ZFS_RECURSIVE, tag, snapshot])

    def destroy_deferred(self, snapshot: str):
        """
        Recursively mark ``snapshot`` for deferred destruction: it is
        destroyed automatically when its last hold is released.
        """
        self._run([ZFS_CMD, ZFS_DESTROY, ZFS_RECURSIVE, ZFS_DEFER, snapshot])


__all__ = [
    "Zfs",
]
