# Copyright Red Hat
#
# snapmount/manager/_snapshots.py - Snapshot set lifecycle
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Creation and teardown of the recursive snapshot set for a target.

Each pool in the set is snapshotted as ``<pool>@<fingerprint>``, held with a
hold tagged ``<fingerprint>`` and marked for deferred destruction. Releasing
the hold is then enough to destroy the snapshots, and a snapshot whose hold
is never released survives a crashed session for later recovery.
"""
from typing import Iterable, List
from enum import Enum
import logging

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_ZFS,
    SnapmountCalloutError,
    SnapmountExistsError,
    SnapmountSnapshotNotFoundError,
)

from ._signals import suspend_signals

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_zfs(msg, *args, **kwargs):
    """A wrapper for zfs subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_ZFS}, **kwargs)


class SnapState(Enum):
    """
    Enum class representing the lifecycle state of a pool snapshot.
    """

    NONE = "None"
    CREATED = "Created"
    HELD = "Held"
    DEFERRED_DESTROY_PENDING = "DeferredDestroyPending"
    RELEASED = "Released"
    GONE = "Gone"

    def __str__(self):
        return self.value


class SnapshotSet:
    """
    The recursive snapshots named ``<pool>@<fingerprint>`` that back one
    snapmount target.
    """

    def __init__(self, zfs, fingerprint: str):
        """
        Initialise a new ``SnapshotSet``.

        :param zfs: The ``Zfs`` interface used to manage snapshots.
        :param fingerprint: The target fingerprint used as the snapshot name
                            and hold tag.
        """
        self._zfs = zfs
        self.fingerprint = fingerprint
        self.states = {}

    def __str__(self):
        return f"@{self.fingerprint}"

    def snapshot_name(self, pool: str) -> str:
        """
        Return the name of the snapshot of ``pool`` in this set.
        """
        return f"{pool}@{self.fingerprint}"

    def find_snapshots(self) -> List[str]:
        """
        Return the names of all snapshots, at any dataset depth, whose
        snapshot name equals this set's fingerprint.
        """
        return [
            name
            for name in self._zfs.list_snapshots()
            if name.split("@", maxsplit=1)[-1] == self.fingerprint
        ]

    def find_pools(self) -> List[str]:
        """
        Return the pools that have a top-level snapshot in this set.
        """
        pools = []
        for name in self.find_snapshots():
            dataset = name.split("@", maxsplit=1)[0]
            if "/" not in dataset:
                pools.append(dataset)
        return sorted(pools)

    def exists(self) -> bool:
        """
        Return ``True`` if any snapshot in this set exists.
        """
        return bool(self.find_snapshots())

    def check_exists(self):
        """
        Raise ``SnapmountSnapshotNotFoundError`` if no snapshot in this set
        exists.
        """
        if not self.exists():
            raise SnapmountSnapshotNotFoundError(
                f"No snapshots found matching @{self.fingerprint}"
            )

    def check_create(self):
        """
        Raise ``SnapmountExistsError`` if snapshots for this set already
        exist: a previous session has not been unmounted.
        """
        existing = sorted(self.find_snapshots())
        if existing:
            raise SnapmountExistsError(
                f"Snapshot set @{self.fingerprint} already exists "
                f"({len(existing)} snapshots, first {existing[0]}): "
                "unmount the target first"
            )

    @suspend_signals
    def _create_pool(self, pool: str):
        """
        Snapshot, hold and defer destruction of the snapshot of ``pool``.
        """
        snapshot = self.snapshot_name(pool)
        steps = (
            ("snapshot", SnapState.CREATED, self._zfs.snapshot, (snapshot,)),
            ("hold", SnapState.HELD, self._zfs.hold, (self.fingerprint, snapshot)),
            (
                "defer destroy",
                SnapState.DEFERRED_DESTROY_PENDING,
                self._zfs.destroy_deferred,
                (snapshot,),
            ),
        )
        for step, state, func, args in steps:
            try:
                func(*args)
            except SnapmountCalloutError as err:
                raise SnapmountCalloutError(
                    f"Failed to {step} {snapshot} in pool {pool}: {err}"
                ) from err
            self.states[pool] = state
            _log_debug_zfs("Pool %s snapshot %s: %s", pool, snapshot, state)

    def create(self, pools: Iterable[str]):
        """
        Create the snapshot set across ``pools``.

        Processing stops at the first failure: pools handled before it keep
        their held, deferred-destroy snapshots for a later ``destroy()``.

        :param pools: The pools to snapshot.
        :raises: ``SnapmountCalloutError`` naming the failing pool.
        """
        for pool in pools:
            self.states[pool] = SnapState.NONE
            self._create_pool(pool)
            _log_info("Created snapshot %s", self.snapshot_name(pool))

    def destroy(self) -> bool:
        """
        Release the holds on every pool snapshot in this set. Since each
        snapshot was marked for deferred destruction at creation time the
        release destroys it.

        A failure for one pool is logged and the remaining pools are still
        processed.

        :returns: ``True`` if every hold was released.
        :rtype: ``bool``
        """
        ok = True
        released = []
        for pool in self.find_pools():
            snapshot = self.snapshot_name(pool)
            try:
                self._zfs.release(self.fingerprint, snapshot)
            except SnapmountCalloutError as err:
                _log_error("Failed to release snapshot %s: %s", snapshot, err)
                ok = False
                continue
            self.states[pool] = SnapState.RELEASED
            released.append(pool)
            _log_info("Released snapshot %s", snapshot)

        remaining = set(self.find_pools()) if released else set()
        for pool in released:
            if pool in remaining:
                _log_warn(
                    "Snapshot %s still exists after release: other holds present?",
                    self.snapshot_name(pool),
                )
                continue
            self.states[pool] = SnapState.GONE
        return ok


__all__ = [
    "SnapState",
    "SnapshotSet",
]
