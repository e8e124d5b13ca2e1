# Copyright Red Hat
#
# snapmount/manager/_manager.py - Snapshot mount Manager
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top-level interface for mounting, unmounting and running commands against
snapshot replicas of the mounted ZFS hierarchy.
"""
from subprocess import run
from configparser import ConfigParser
from dataclasses import dataclass, field
from os.path import exists, join
from stat import S_ISDIR, S_ISLNK
from typing import List, Optional
import logging
import os

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_MANAGER,
    SnapmountArgumentError,
    SnapmountError,
    SnapmountPathError,
    SnapmountSystemError,
    MountOptions,
    MountPlanEntry,
    canonical_target,
    fingerprint,
)

from ._inventory import DatasetInventory
from ._ledger import Ledger
from ._mounts import MountOrchestrator, UnmountOrchestrator, ProcMountsReader
from ._select import build_mount_plan, select_pools
from ._snapshots import SnapshotSet
from ._zfs import Zfs

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_MANAGER}, **kwargs)


#: Base directory for snapmount configuration
_SNAPMOUNT_CFG_DIR = "/etc/snapmount"

#: Main configuration file path
SNAPMOUNT_CFG_PATH = join(_SNAPMOUNT_CFG_DIR, "snapmount.conf")

#: Main configuration file section
_SNAPMOUNT_CFG_GLOBAL = "Global"

#: LedgerDir configuration key
_SNAPMOUNT_CFG_LEDGER_DIR = "LedgerDir"

#: Pools configuration key
_SNAPMOUNT_CFG_POOLS = "Pools"

#: Excludes configuration key
_SNAPMOUNT_CFG_EXCLUDES = "Excludes"

#: Permissions for a configured ledger directory
_LEDGER_DIR_MODE = 0o700

#: Exit status for a command that could not be found or executed.
_EXEC_NOT_FOUND = 127
_EXEC_NOT_EXECUTABLE = 126

#: Offset added to a signal number to form an exit status.
_EXIT_SIGNAL_BASE = 128


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class SnapmountConfig:
    """
    Manager configuration.
    """

    ledger_dir: Optional[str] = None
    pools: List[str] = field(default_factory=list)
    excludes: List[str] = field(default_factory=list)

    @classmethod
    def from_file(cls, config_file: str) -> "SnapmountConfig":
        """
        Load ``SnapmountConfig`` from an INI-style configuration file located
        at ``config_file``.

        :param config_file: path to snapmount.conf
        :type config_file: ``str``.
        :returns: A ``SnapmountConfig`` instance initialised from
                  ``config_file``.
        :rtype: ``SnapmountConfig``
        """
        if not exists(config_file):
            return SnapmountConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        cfg.read([config_file])

        ledger_dir = None
        pools = []
        excludes = []
        if cfg.has_section(_SNAPMOUNT_CFG_GLOBAL):
            section = cfg[_SNAPMOUNT_CFG_GLOBAL]
            if cfg.has_option(_SNAPMOUNT_CFG_GLOBAL, _SNAPMOUNT_CFG_LEDGER_DIR):
                ledger_dir = section[_SNAPMOUNT_CFG_LEDGER_DIR].strip() or None
            if cfg.has_option(_SNAPMOUNT_CFG_GLOBAL, _SNAPMOUNT_CFG_POOLS):
                pools = _split_list(section[_SNAPMOUNT_CFG_POOLS])
            if cfg.has_option(_SNAPMOUNT_CFG_GLOBAL, _SNAPMOUNT_CFG_EXCLUDES):
                excludes = _split_list(section[_SNAPMOUNT_CFG_EXCLUDES])

        if ledger_dir and not os.path.isabs(ledger_dir):
            raise SnapmountArgumentError(
                f"{_SNAPMOUNT_CFG_LEDGER_DIR} must be an absolute path: {ledger_dir}"
            )

        return SnapmountConfig(ledger_dir=ledger_dir, pools=pools, excludes=excludes)


def _check_ledger_dir(dirpath: str, mode: int = _LEDGER_DIR_MODE) -> str:
    """
    Check for the presence of a configured ledger directory and create it
    if necessary.

    :param dirpath: Path to the directory
    :param mode: Permissions mode for the directory
    :returns: The directory path
    """
    if os.path.lexists(dirpath):
        try:
            st = os.lstat(dirpath)
        except OSError as err:
            raise SnapmountSystemError(
                f"Failed to stat ledger directory {dirpath}: {err}"
            ) from err
        if S_ISLNK(st.st_mode):
            raise SnapmountSystemError(
                f"Ledger directory {dirpath} is a symlink (not secure)"
            )
        if not S_ISDIR(st.st_mode):
            raise SnapmountSystemError(
                f"Ledger directory {dirpath} exists but is not a directory"
            )
        return dirpath

    try:
        os.makedirs(dirpath, mode=mode, exist_ok=True)
    except OSError as err:
        raise SnapmountSystemError(
            f"Failed to create ledger directory {dirpath}: {err}"
        ) from err
    return dirpath


def _check_target(target: str) -> str:
    """
    Canonicalize ``target`` and verify that it is an existing directory.
    """
    target = canonical_target(target)
    if not os.path.isdir(target):
        raise SnapmountPathError(f"Target {target} is not a directory")
    return target


def _run_child(command: List[str]) -> int:
    """
    Run ``command`` to completion and return its exit status.

    A command terminated by a signal reports ``128 + signum``.
    """
    _log_info("Executing %s", " ".join(command))
    try:
        proc = run(command, check=False)
    except FileNotFoundError as err:
        _log_error("Command not found: %s", err)
        return _EXEC_NOT_FOUND
    except PermissionError as err:
        _log_error("Cannot execute command: %s", err)
        return _EXEC_NOT_EXECUTABLE
    if proc.returncode < 0:
        return _EXIT_SIGNAL_BASE - proc.returncode
    return proc.returncode


class Manager:
    """
    Snapshot mount Manager high-level interface.

    The ``Manager`` ties together dataset discovery, snapshot creation,
    the mount ledger and the mount and unmount orchestrators for one or
    more target directories.
    """

    def __init__(self, config: SnapmountConfig = None, zfs=None, system=None):
        """
        Initialise a new ``Manager``.

        :param config: An optional ``SnapmountConfig``.
        :param zfs: An optional ``Zfs`` interface (for testing).
        :param system: An optional platform name overriding
                       ``platform.system()``.
        """
        self.config = config or SnapmountConfig()
        self.zfs = zfs or Zfs()
        self.inventory = DatasetInventory(self.zfs)
        self.system = system
        self._ledger_dir = None

    def _get_ledger_dir(self) -> Optional[str]:
        if self.config.ledger_dir and not self._ledger_dir:
            self._ledger_dir = _check_ledger_dir(self.config.ledger_dir)
        return self._ledger_dir

    def ledger(self, target: str) -> Ledger:
        """
        Return the ``Ledger`` for canonical target ``target``.
        """
        return Ledger(fingerprint(target), ledger_dir=self._get_ledger_dir())

    def snapshot_set(self, target: str) -> SnapshotSet:
        """
        Return the ``SnapshotSet`` for canonical target ``target``.
        """
        return SnapshotSet(self.zfs, fingerprint(target))

    def _list_pools(self, options: MountOptions) -> List[str]:
        """
        Return the pools eligible for ``options``: pools imported with an
        alternate root are left out unless ``include_altroot`` is set.
        """
        return self.inventory.list_pools(no_altroot=not options.include_altroot)

    def plan(self, target: str, options: MountOptions) -> List[MountPlanEntry]:
        """
        Build the mount plan for ``target`` without changing any state.

        :param target: The target directory.
        :param options: The session ``MountOptions``.
        :returns: A list of ``MountPlanEntry`` objects.
        """
        target = canonical_target(target)
        pools = set(self._list_pools(options))
        datasets = [
            ds
            for ds in self.inventory.list_mounted_datasets(mountable=options.mountable)
            if ds.pool in pools
        ]
        return build_mount_plan(options, datasets, target, fingerprint(target))

    def mount(self, target: str, options: MountOptions) -> List[MountPlanEntry]:
        """
        Snapshot the selected datasets and mount the snapshots under
        ``target``.

        On failure the mounts and snapshots made so far are left in place
        and recorded for a later ``umount()``.

        :param target: The target directory.
        :param options: The session ``MountOptions``.
        :returns: The list of ``MountPlanEntry`` objects that were mounted.
        :raises: ``SnapmountExistsError`` if snapshots for the target already
                 exist, ``SnapmountCalloutError`` if a command fails.
        """
        target = _check_target(target)
        snapset = self.snapshot_set(target)
        snapset.check_create()

        plan = self.plan(target, options)
        if not plan:
            raise SnapmountArgumentError("No datasets selected for mounting")

        plan_pools = {entry.dataset.pool for entry in plan}
        pools = [
            pool
            for pool in select_pools(options, self._list_pools(options))
            if pool in plan_pools
        ]
        _log_debug_manager("Snapshotting pools: %s", ", ".join(pools))

        snapset.create(pools)

        ledger = self.ledger(target)
        with ledger.writer() as recorder:
            orchestrator = MountOrchestrator(
                target, options, recorder, system=self.system
            )
            orchestrator.mount(plan)

        _log_info("Mounted %d datasets at %s", len(plan), target)
        return plan

    def umount(self, target: str) -> bool:
        """
        Unmount everything recorded for ``target`` and release its
        snapshots.

        :param target: The target directory.
        :returns: ``True`` if teardown completed without errors.
        :raises: ``SnapmountSnapshotNotFoundError`` if the target has no
                 snapshots, ``SnapmountPathError`` if the ledger names a path
                 outside the target.
        """
        target = canonical_target(target)
        orchestrator = UnmountOrchestrator(
            target,
            self.ledger(target),
            self.snapshot_set(target),
            pmr=ProcMountsReader(),
        )
        ok = orchestrator.umount()
        if ok:
            _log_info("Unmounted %s", target)
        else:
            _log_error("Unmount of %s completed with errors", target)
        return ok

    def _teardown(self, target: str) -> bool:
        try:
            return self.umount(target)
        except SnapmountError as err:
            _log_error("Failed to tear down %s: %s", target, err)
            return False

    def execute(self, target: str, options: MountOptions, command: List[str]) -> int:
        """
        Mount ``target``, run ``command`` and unmount again.

        Teardown is always attempted once the mount has started and its
        errors are logged without changing the result.

        :param target: The target directory.
        :param options: The session ``MountOptions``.
        :param command: The command and arguments to run.
        :returns: The exit status of ``command``.
        """
        if not command:
            raise SnapmountArgumentError("No command given to execute")

        target = _check_target(target)
        self.snapshot_set(target).check_create()

        try:
            self.mount(target, options)
        except SnapmountError:
            if self.snapshot_set(target).exists():
                _log_error("Mount of %s failed: tearing down", target)
                self._teardown(target)
            raise

        try:
            status = _run_child(command)
        finally:
            self._teardown(target)

        _log_debug_manager("Command exited with status %d", status)
        return status


__all__ = [
    "SNAPMOUNT_CFG_PATH",
    "SnapmountConfig",
    "Manager",
]
