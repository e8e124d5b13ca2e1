# Copyright Red Hat
#
# snapmount/_snapmount.py - Snapshot mount global definitions
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level snapmount package.
"""
from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
import hashlib
import logging
import os.path
import os

_log = logging.getLogger("snapmount")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Snapmount debugging subsystem mask
SNAPMOUNT_DEBUG_MANAGER = 1
SNAPMOUNT_DEBUG_COMMAND = 2
SNAPMOUNT_DEBUG_MOUNTS = 4
SNAPMOUNT_DEBUG_LEDGER = 8
SNAPMOUNT_DEBUG_ZFS = 16
SNAPMOUNT_DEBUG_ALL = (
    SNAPMOUNT_DEBUG_MANAGER
    | SNAPMOUNT_DEBUG_COMMAND
    | SNAPMOUNT_DEBUG_MOUNTS
    | SNAPMOUNT_DEBUG_LEDGER
    | SNAPMOUNT_DEBUG_ZFS
)

# Snapmount debugging subsystem names
SNAPMOUNT_SUBSYSTEM_MANAGER = "snapmount.manager"
SNAPMOUNT_SUBSYSTEM_COMMAND = "snapmount.command"
SNAPMOUNT_SUBSYSTEM_MOUNTS = "snapmount.mounts"
SNAPMOUNT_SUBSYSTEM_LEDGER = "snapmount.ledger"
SNAPMOUNT_SUBSYSTEM_ZFS = "snapmount.zfs"

_DEBUG_MASK_TO_SUBSYSTEM = {
    SNAPMOUNT_DEBUG_MANAGER: SNAPMOUNT_SUBSYSTEM_MANAGER,
    SNAPMOUNT_DEBUG_COMMAND: SNAPMOUNT_SUBSYSTEM_COMMAND,
    SNAPMOUNT_DEBUG_MOUNTS: SNAPMOUNT_SUBSYSTEM_MOUNTS,
    SNAPMOUNT_DEBUG_LEDGER: SNAPMOUNT_SUBSYSTEM_LEDGER,
    SNAPMOUNT_DEBUG_ZFS: SNAPMOUNT_SUBSYSTEM_ZFS,
}

_debug_subsystems = set()

#: Number of hex digits of the target path digest used as a fingerprint.
FINGERPRINT_LEN = 16

#: Characters that separate a pool name from the rest of a dataset name.
_POOL_SEPARATORS = ("/", "@")


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``snapmount`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    snapmount_log = logging.getLogger("snapmount")

    for handler in snapmount_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``snapmount`` package.

    :param mask: the logical OR of the ``SNAPMOUNT_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > SNAPMOUNT_DEBUG_ALL:
        raise ValueError(f"Invalid snapmount debug mask: {mask}")

    enabled_subsystems = [
        subsystem_name
        for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items()
        if mask & flag
    ]

    snapmount_log = logging.getLogger("snapmount")
    for handler in snapmount_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Snapmount exception types
#


class SnapmountError(Exception):
    """
    Base class for snapmount errors.
    """


class SnapmountSystemError(SnapmountError):
    """
    An error when calling the operating system.
    """


class SnapmountCalloutError(SnapmountError):
    """
    An error calling out to an external program.
    """


class SnapmountExistsError(SnapmountError):
    """
    A snapshot set for the requested target already exists.
    """


class SnapmountBusyError(SnapmountError):
    """
    A resource needed by the current command is already in use: for e.g.
    the ledger for a target is locked by another snapmount process.
    """


class SnapmountPathError(SnapmountError):
    """
    A stored or computed path escaped the target root, or an invalid
    target path was supplied.
    """


class SnapmountArgumentError(SnapmountError):
    """
    An invalid argument was passed to a snapmount API call.
    """


class SnapmountSnapshotNotFoundError(SnapmountError):
    """
    No snapshot exists for the requested target fingerprint.
    """


class SnapmountLedgerMissingError(SnapmountError):
    """
    No ledger file exists for the requested target fingerprint.
    """


class SnapmountPlatformError(SnapmountError):
    """
    The requested mount type is not supported on this platform.
    """


class SnapmountMountError(SnapmountCalloutError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `SnapmountMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class SnapmountUmountError(SnapmountCalloutError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `SnapmountUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


#
# Path helpers
#


def normalize_path(path: str) -> str:
    """
    Return ``path`` in normalised absolute form without resolving
    symbolic links.

    :param path: The path to normalise.
    :returns: A normalised absolute path string.
    :rtype: ``str``
    """
    return os.path.normpath(os.path.join(os.sep, path))


def path_is_within(path: str, root: str) -> bool:
    """
    Test whether ``path`` is equal to ``root`` or is one of its descendants.

    The comparison is made on whole path components, so ``/home2`` is not
    within ``/home``. Both paths are normalised but not resolved.

    :param path: The path to test.
    :param root: The candidate ancestor path.
    :returns: ``True`` if ``path`` is ``root`` or lies beneath it.
    :rtype: ``bool``
    """
    path = normalize_path(path)
    root = normalize_path(root)
    return os.path.commonpath([path, root]) == root


def path_depth(path: str) -> int:
    """
    Return the number of components in the normalised form of ``path``.

    :param path: An absolute path.
    :returns: The component count, where ``/`` has depth zero.
    :rtype: ``int``
    """
    path = normalize_path(path)
    if path == os.sep:
        return 0
    return path.count(os.sep)


def rebase_path(path: str, old_root: str, new_root: str) -> str:
    """
    Return ``path`` moved from below ``old_root`` to below ``new_root``.

    ``old_root`` itself maps to ``new_root``.

    :param path: An absolute path within ``old_root``.
    :param old_root: The root to strip from ``path``.
    :param new_root: The root to prepend.
    :returns: The rebased absolute path.
    :raises: ``SnapmountPathError`` if ``path`` is not within ``old_root``.
    """
    if not path_is_within(path, old_root):
        raise SnapmountPathError(f"Path {path} is not within {old_root}")
    relpath = os.path.relpath(normalize_path(path), normalize_path(old_root))
    if relpath == os.curdir:
        return normalize_path(new_root)
    return os.path.join(normalize_path(new_root), relpath)


def canonical_target(path: str) -> str:
    """
    Resolve a target directory argument to the canonical path used to
    derive the session fingerprint.

    :param path: A target directory path as given by the user.
    :returns: The absolute path with all symbolic links resolved.
    :rtype: ``str``
    """
    return os.path.realpath(path)


def fingerprint(target: str) -> str:
    """
    Return the fingerprint for the canonicalized target directory
    ``target``: the leading ``FINGERPRINT_LEN`` hex digits of its SHA-256
    digest. The same target always yields the same fingerprint.

    :param target: A canonical target directory path.
    :returns: A hexadecimal fingerprint string.
    :rtype: ``str``
    """
    digest = hashlib.sha256(os.fsencode(target)).hexdigest()
    return digest[:FINGERPRINT_LEN]


#
# Data model
#


def pool_name(name: str) -> str:
    """
    Return the pool part of a dataset or snapshot name: the text preceding
    the first '/' or '@'.

    :param name: A dataset or snapshot name.
    :returns: The pool name.
    :rtype: ``str``
    """
    end = len(name)
    for sep in _POOL_SEPARATORS:
        idx = name.find(sep)
        if idx != -1:
            end = min(end, idx)
    return name[:end]


@dataclass(frozen=True)
class Dataset:
    """
    A mountable ZFS dataset and its current mount point.
    """

    name: str
    mountpoint: Optional[str] = field(default=None, compare=False)

    @property
    def pool(self) -> str:
        """The pool that this dataset belongs to."""
        return pool_name(self.name)

    def __str__(self):
        return f"{self.name} ({self.mountpoint or '-'})"


@dataclass(frozen=True)
class MountPlanEntry:
    """
    One dataset snapshot to be mounted at ``target``.
    """

    dataset: Dataset
    fingerprint: str
    target: str

    @property
    def snapshot(self) -> str:
        """The name of the snapshot to mount."""
        return f"{self.dataset.name}@{self.fingerprint}"


def _path_tuple(paths: Optional[Iterable[str]]) -> Tuple[str, ...]:
    return tuple(normalize_path(path) for path in paths or ())


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class MountOptions:
    """
    Immutable mount-time configuration for a snapmount session.

    :param root: Only mount datasets at or below this mount point; target
                 paths are computed relative to it.
    :param excludes: Mount points whose subtrees are not mounted.
    :param pools: Only mount datasets from these pools (all if empty).
    :param exec: Allow executing binaries (omit ``noexec``).
    :param suid: Honour setuid bits (omit ``nosuid``).
    :param devfs: Mount a device file system at ``<target>/dev``.
    :param tmpfs: Paths relative to the target to mount empty tmpfs at.
    :param passthrough: Host paths bind mounted read-write at the same
                        relative path under the target.
    :param include_altroot: Also snapshot and mount pools imported with an
                            alternate root.
    :param mountable: Select every dataset that can be mounted rather than
                      only the datasets mounted now.
    """

    root: Optional[str] = None
    excludes: Tuple[str, ...] = ()
    pools: Tuple[str, ...] = ()
    exec: bool = False
    suid: bool = False
    devfs: bool = False
    tmpfs: Tuple[str, ...] = ()
    passthrough: Tuple[str, ...] = ()
    include_altroot: bool = False
    mountable: bool = False

    def __post_init__(self):
        # Frozen: normalise through object.__setattr__.
        if self.root is not None:
            object.__setattr__(self, "root", normalize_path(self.root))
        object.__setattr__(self, "excludes", _path_tuple(self.excludes))
        object.__setattr__(self, "pools", tuple(self.pools or ()))
        object.__setattr__(self, "tmpfs", tuple(self.tmpfs or ()))
        object.__setattr__(self, "passthrough", _path_tuple(self.passthrough))

    @property
    def scope_root(self) -> str:
        """The root of the mounted hierarchy: ``root`` or ``/``."""
        return self.root or os.sep

    @classmethod
    def from_cmd_args(cls, cmd_args, pools=(), excludes=()) -> "MountOptions":
        """
        Initialise MountOptions from command line arguments.

        :param cmd_args: The parsed command line arguments.
        :param pools: Additional pools from the configuration file.
        :param excludes: Additional excludes from the configuration file.
        :returns: A new MountOptions instance.
        :rtype: ``MountOptions``
        """

        def _merge(first, second):
            merged: List[str] = []
            for value in list(first or ()) + list(second or ()):
                if value not in merged:
                    merged.append(value)
            return tuple(merged)

        options = cls(
            root=getattr(cmd_args, "root", None),
            excludes=_merge(excludes, getattr(cmd_args, "excludes", None)),
            pools=_merge(pools, getattr(cmd_args, "pools", None)),
            exec=bool(getattr(cmd_args, "exec", False)),
            suid=bool(getattr(cmd_args, "suid", False)),
            devfs=bool(getattr(cmd_args, "devfs", False)),
            tmpfs=_merge((), getattr(cmd_args, "tmpfs", None)),
            passthrough=_merge((), getattr(cmd_args, "passthrough", None)),
            include_altroot=bool(getattr(cmd_args, "include_altroot", False)),
            mountable=bool(getattr(cmd_args, "mountable", False)),
        )
        _log_debug("Initialised %s from arguments", repr(options))
        return options


__all__ = [
    # Debug logging
    "SNAPMOUNT_DEBUG_MANAGER",
    "SNAPMOUNT_DEBUG_COMMAND",
    "SNAPMOUNT_DEBUG_MOUNTS",
    "SNAPMOUNT_DEBUG_LEDGER",
    "SNAPMOUNT_DEBUG_ZFS",
    "SNAPMOUNT_DEBUG_ALL",
    "SNAPMOUNT_SUBSYSTEM_MANAGER",
    "SNAPMOUNT_SUBSYSTEM_COMMAND",
    "SNAPMOUNT_SUBSYSTEM_MOUNTS",
    "SNAPMOUNT_SUBSYSTEM_LEDGER",
    "SNAPMOUNT_SUBSYSTEM_ZFS",
    "SubsystemFilter",
    "get_debug_mask",
    "set_debug_mask",
    # Exceptions
    "SnapmountError",
    "SnapmountSystemError",
    "SnapmountCalloutError",
    "SnapmountExistsError",
    "SnapmountBusyError",
    "SnapmountPathError",
    "SnapmountArgumentError",
    "SnapmountSnapshotNotFoundError",
    "SnapmountLedgerMissingError",
    "SnapmountPlatformError",
    "SnapmountMountError",
    "SnapmountUmountError",
    # Path helpers
    "FINGERPRINT_LEN",
    "normalize_path",
    "path_is_within",
    "path_depth",
    "rebase_path",
    "canonical_target",
    "fingerprint",
    # Data model
    "pool_name",
    "Dataset",
    "MountPlanEntry",
    "MountOptions",
]
