# Copyright Red Hat
#
# snapmount/manager/_mounts.py - Snapshot mount support
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount and unmount orchestration for snapmount targets.
"""
from subprocess import run, CalledProcessError
from typing import Iterable, List, Optional
import collections
import platform
import logging
import os.path
import os

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_MOUNTS,
    SnapmountArgumentError,
    SnapmountCalloutError,
    SnapmountLedgerMissingError,
    SnapmountMountError,
    SnapmountPathError,
    SnapmountPlatformError,
    SnapmountSystemError,
    SnapmountUmountError,
    MountOptions,
    MountPlanEntry,
    normalize_path,
    path_depth,
    path_is_within,
    rebase_path,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_MOUNTS}, **kwargs)


#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: File system type for snapshot mounts.
_ZFS_FSTYPE = "zfs"

#: File system type and options for scratch and shim mounts.
_TMPFS_FSTYPE = "tmpfs"
_TMPFS_OPTIONS = "mode=0755"

#: Mode for directories created beneath shim mounts.
_SHIM_DIR_MODE = 0o755

#: Device file system location relative to the target.
_DEVFS_PATH = "dev"

#: Mount mechanism for an optional, platform-dependent mount.
#: ``what`` of ``None`` means the source path supplied by the caller.
MountMechanism = collections.namedtuple(
    "MountMechanism", ["fstype", "what", "options", "bind"]
)

#: Device file system mechanisms by ``platform.system()`` name.
DEVFS_MECHANISMS = {
    "Linux": MountMechanism(None, "/dev", "", True),
    "FreeBSD": MountMechanism("devfs", "devfs", "", False),
}

#: Read-write passthrough mechanisms by ``platform.system()`` name.
PASSTHROUGH_MECHANISMS = {
    "Linux": MountMechanism(None, None, "rw,exec", True),
    "FreeBSD": MountMechanism("nullfs", None, "rw,exec", False),
}


def _merge_options(opts_a, opts_b):
    """
    Merge two comma-separated mount options strings.

    :param opts_a: The first set of options.
    :param opts_b: The second set of options.
    :returns: Merged "opts_a,opts_b"
    :rtype: ``str``
    """
    return ",".join(filter(None, [opts_a, opts_b]))


def snapshot_mount_options(options: MountOptions) -> str:
    """
    Return the mount options for a dataset snapshot: always read-only, with
    ``noexec`` and ``nosuid`` unless ``exec`` or ``suid`` are requested.
    """
    opts = "ro"
    if not options.exec:
        opts = _merge_options(opts, "noexec")
    if not options.suid:
        opts = _merge_options(opts, "nosuid")
    return opts


def _mount(
    what: str,
    where: str,
    fstype: Optional[str] = None,
    options: str = "",
    bind: bool = False,
):
    """
    Call the mount program to mount a file system.

    :param what: The source for the mount operation.
    :param where: The path to the mount point.
    :param fstype: An optional file system type.
    :param options: Options to pass to the mount program.
    :param bind: Perform a bind mount.
    """
    mount_cmd = ["mount"]

    if fstype:
        mount_cmd.extend(["-t", fstype])
    if bind:
        mount_cmd.append("--bind")
    if options:
        mount_cmd.extend(["-o", options])

    mount_cmd.extend([what, where])
    _log_debug_mounts("Calling %s", " ".join(mount_cmd))

    try:
        run(
            mount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            errors="surrogateescape",
        )
    except FileNotFoundError as err:
        raise SnapmountCalloutError(
            f"mount not found while mounting {what} -> {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise SnapmountMountError(what, where, err.returncode, err.stderr) from err


def _umount(where: str):
    """
    Call the umount program to unmount a file system.

    :param where: The mount point to be unmounted.
    """
    umount_cmd = ["umount", where]
    _log_debug_mounts("Calling %s", " ".join(umount_cmd))
    try:
        run(
            umount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            errors="surrogateescape",
        )
    except FileNotFoundError as err:
        raise SnapmountCalloutError(
            f"umount not found while unmounting {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise SnapmountUmountError(where, err.returncode, err.stderr) from err


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    # Define a named tuple to give structure to each /proc/mounts entry.
    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/mounts')
        """
        self.path = path

    def submounts(self, root):
        """Iterate over mounts at or under the given mount point root.

        :param root: The mount point root (e.g., '/mnt/backup')
        :returns: Yields ``MountsEntry`` objects for mounts under root.
        """
        with open(self.path, "r", encoding="utf8", errors="surrogateescape") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue

                parts = line.split()
                if len(parts) == 6:
                    entry = self.MountsEntry(*parts)
                    entry = entry._replace(where=_unescape_mounts(entry.where))
                    if path_is_within(entry.where, root):
                        yield entry
                else:
                    _log_warn("Skipping malformed %s line: %s", self.path, line)


def _platform_mechanism(table, kind: str, system: str) -> MountMechanism:
    """
    Look up the mount mechanism for ``kind`` on platform ``system``.

    :raises: ``SnapmountPlatformError`` if the platform has no mechanism.
    """
    try:
        return table[system]
    except KeyError as err:
        raise SnapmountPlatformError(
            f"{kind} mounts are not supported on platform '{system}'"
        ) from err


class MountOrchestrator:
    """
    Mounts a snapshot mount plan and its optional extra mounts under a
    target directory, recording every mount point in the ledger before it
    is mounted.
    """

    def __init__(
        self,
        target: str,
        options: MountOptions,
        recorder,
        system: Optional[str] = None,
    ):
        """
        Initialise a new ``MountOrchestrator``.

        :param target: The canonical, existing target directory.
        :param options: The session ``MountOptions``.
        :param recorder: A ``LedgerWriter`` for the target's ledger.
        :param system: The platform name used to select mount mechanisms
                       (defaults to ``platform.system()``).
        """
        if not os.path.isdir(target):
            raise SnapmountPathError(f"Mount path {target} is not a directory.")
        self.target = target
        self.options = options
        self.recorder = recorder
        self.system = system or platform.system()

    def _check_within_target(self, path: str):
        """
        Verify that ``path``, with symbolic links resolved, lies within the
        target directory.

        :raises: ``SnapmountPathError`` if the path escapes the target.
        """
        resolved = os.path.realpath(path)
        if not path_is_within(resolved, self.target):
            raise SnapmountPathError(
                f"Mount point {path} resolves to {resolved} outside of {self.target}"
            )

    def _shim(self, where: str):
        """
        Mount a tmpfs shim at the existing directory ``where`` unless it is
        already recorded in the ledger.
        """
        self._check_within_target(where)
        if not self.recorder.record(where):
            _log_debug_mounts("Shim at %s already recorded, not remounting", where)
            return
        _log_info("Mounting shim tmpfs at %s", where)
        _mount(_TMPFS_FSTYPE, where, fstype=_TMPFS_FSTYPE, options=_TMPFS_OPTIONS)

    def prepare_mount_point(self, where: str):
        """
        Ensure the directory ``where`` exists.

        If it does not, walk up to the nearest existing ancestor, mount a
        shim tmpfs there and create the missing chain of directories inside
        it so that the host file system is never written to.

        :param where: An absolute path within the target.
        """
        if os.path.isdir(where):
            return
        if os.path.lexists(where):
            raise SnapmountPathError(f"Mount point {where} exists but is not a directory")

        ancestor = os.path.dirname(where)
        while not os.path.lexists(ancestor):
            ancestor = os.path.dirname(ancestor)
        if not path_is_within(ancestor, self.target):
            raise SnapmountPathError(
                f"Nearest existing ancestor {ancestor} of {where} is outside {self.target}"
            )
        self._shim(ancestor)

        _log_debug_mounts("Creating mount point %s", where)
        try:
            os.makedirs(where, mode=_SHIM_DIR_MODE, exist_ok=True)
        except OSError as err:
            raise SnapmountSystemError(
                f"Failed to create mount point {where}: {err}"
            ) from err

    def _record_and_mount(self, what: str, where: str, **kwargs):
        """
        Prepare, check and record ``where``, then mount ``what`` on it.

        :raises: ``SnapmountPathError`` if ``where`` is already recorded: a
                 second mount stacked on one ledger entry could not be
                 unmounted.
        """
        self.prepare_mount_point(where)
        self._check_within_target(where)
        if not self.recorder.record(where):
            raise SnapmountPathError(
                f"Mount point {where} already used by this session: not mounting {what}"
            )
        _mount(what, where, **kwargs)

    def mount_snapshots(self, plan: Iterable[MountPlanEntry]):
        """
        Mount each plan entry's snapshot read-only at its target path.

        Entries are mounted in ascending target path order so that every
        parent is mounted before its descendants. The first failure aborts
        the operation: mounts already made stay recorded for ``umount``.

        :param plan: The ``MountPlanEntry`` list to mount.
        """
        opts = snapshot_mount_options(self.options)
        for entry in sorted(plan, key=lambda e: e.target):
            _log_info("Mounting %s at %s", entry.snapshot, entry.target)
            self._record_and_mount(
                entry.snapshot, entry.target, fstype=_ZFS_FSTYPE, options=opts
            )

    def _mount_mechanism(self, mechanism: MountMechanism, source: str, where: str):
        self._record_and_mount(
            mechanism.what or source,
            where,
            fstype=mechanism.fstype,
            options=mechanism.options,
            bind=mechanism.bind,
        )

    def mount_devfs(self):
        """
        Mount a device file system at ``<target>/dev``.
        """
        try:
            mechanism = _platform_mechanism(DEVFS_MECHANISMS, "devfs", self.system)
        except SnapmountPlatformError as err:
            _log_warn("Skipping devfs mount: %s", err)
            return
        where = os.path.join(self.target, _DEVFS_PATH)
        _log_info("Mounting devfs at %s", where)
        self._mount_mechanism(mechanism, "/dev", where)

    def tmpfs_target(self, path: str) -> str:
        """
        Return the absolute location under the target for the relative tmpfs
        path ``path``.

        :raises: ``SnapmountPathError`` if the path escapes the target.
        """
        where = os.path.normpath(os.path.join(self.target, path.lstrip(os.sep)))
        if not path_is_within(where, self.target):
            raise SnapmountPathError(f"tmpfs path {path} escapes {self.target}")
        return where

    def mount_tmpfs(self, path: str):
        """
        Mount an empty tmpfs at ``path`` relative to the target.
        """
        where = self.tmpfs_target(path)
        _log_info("Mounting tmpfs at %s", where)
        self._record_and_mount(
            _TMPFS_FSTYPE, where, fstype=_TMPFS_FSTYPE, options=_TMPFS_OPTIONS
        )

    def passthrough_target(self, path: str) -> str:
        """
        Return the location under the target for host path ``path``.

        :raises: ``SnapmountArgumentError`` if ``path`` is outside the root
                 scope.
        """
        root = self.options.scope_root
        if not path_is_within(path, root):
            raise SnapmountArgumentError(
                f"Passthrough path {path} is outside of root {root}"
            )
        return rebase_path(path, root, self.target)

    def mount_passthrough(self, path: str):
        """
        Bind mount host ``path`` read-write at the same relative location
        under the target.
        """
        try:
            mechanism = _platform_mechanism(
                PASSTHROUGH_MECHANISMS, "passthrough", self.system
            )
        except SnapmountPlatformError as err:
            _log_warn("Skipping passthrough mount of %s: %s", path, err)
            return
        where = self.passthrough_target(path)
        _log_info("Mounting passthrough %s at %s", path, where)
        self._mount_mechanism(mechanism, normalize_path(path), where)

    def mount_extras(self):
        """
        Mount the optional devfs, tmpfs and passthrough file systems.
        """
        if self.options.devfs:
            self.mount_devfs()
        for path in self.options.tmpfs:
            self.mount_tmpfs(path)
        for path in self.options.passthrough:
            self.mount_passthrough(path)

    def mount(self, plan: Iterable[MountPlanEntry]):
        """
        Mount ``plan`` followed by the optional extra mounts.
        """
        self.mount_snapshots(plan)
        self.mount_extras()


def umount_order(paths: Iterable[str]) -> List[str]:
    """
    Return ``paths`` ordered for unmounting: deepest first, so that every
    mount is released before any mount it is stacked on.
    """
    return sorted(paths, key=lambda p: (path_depth(p), p), reverse=True)


class UnmountOrchestrator:
    """
    Reverses the mounts recorded in a target's ledger and releases the
    target's snapshot set.
    """

    def __init__(self, target: str, ledger, snapset, pmr=None):
        """
        Initialise a new ``UnmountOrchestrator``.

        :param target: The canonical target directory.
        :param ledger: The target's ``Ledger``.
        :param snapset: The target's ``SnapshotSet``.
        :param pmr: An optional ``ProcMountsReader`` used to report mounts
                    left under the target.
        """
        self.target = target
        self.ledger = ledger
        self.snapset = snapset
        self.pmr = pmr
        self.had_errors = False

    def _check_within_target(self, path: str):
        resolved = os.path.realpath(path)
        if not path_is_within(resolved, self.target):
            raise SnapmountPathError(
                f"Ledger path {path} resolves to {resolved} outside of {self.target}"
            )

    def sweep(self, paths: Iterable[str]):
        """
        Unmount every active mount point in ``paths``, deepest first.

        Paths that are not mount points are skipped. Unmount failures are
        logged and set ``had_errors`` without stopping the sweep.

        :raises: ``SnapmountPathError`` if a path resolves outside the target.
        """
        for path in umount_order(paths):
            self._check_within_target(path)
            if not os.path.ismount(path):
                _log_debug_mounts("Skipping %s: not a mount point", path)
                continue
            _log_info("Unmounting %s", path)
            try:
                _umount(path)
            except SnapmountCalloutError as err:
                _log_error("%s", err)
                self.had_errors = True

    def _report_leftovers(self):
        if self.pmr is None or not os.path.exists(self.pmr.path):
            return
        for entry in self.pmr.submounts(self.target):
            _log_warn("Mount %s (%s) remains under %s", entry.where, entry.what, self.target)

    def umount(self) -> bool:
        """
        Unmount everything recorded for the target, then release the
        snapshot set.

        The ledger is removed only if every unmount succeeded; otherwise it
        is kept so that a later run retries the remaining entries. The
        snapshot set is released in either case.

        :returns: ``True`` if all unmounts and releases succeeded.
        :raises: ``SnapmountSnapshotNotFoundError`` if the target has no
                 snapshots, ``SnapmountPathError`` if a ledger path escapes
                 the target.
        """
        self.snapset.check_exists()
        self.had_errors = False

        try:
            paths = self.ledger.read()
        except SnapmountLedgerMissingError as err:
            _log_warn("%s: nothing to unmount", err)
            paths = None

        if paths is not None:
            self.sweep(paths)
            if self.had_errors:
                _log_error(
                    "Errors unmounting %s: keeping ledger %s", self.target, self.ledger
                )
            else:
                self.ledger.clear()
                self._report_leftovers()

        released = self.snapset.destroy()
        return released and not self.had_errors


__all__ = [
    "MountMechanism",
    "DEVFS_MECHANISMS",
    "PASSTHROUGH_MECHANISMS",
    "ProcMountsReader",
    "MountOrchestrator",
    "UnmountOrchestrator",
    "snapshot_mount_options",
    "umount_order",
]
