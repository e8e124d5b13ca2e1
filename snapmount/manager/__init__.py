# Copyright Red Hat
#
# snapmount/manager/__init__.py - Snapshot mount Manager
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the snapshot mount manager.
"""

from ._manager import Manager, SnapmountConfig, SNAPMOUNT_CFG_PATH  # noqa: F401
from ._zfs import Zfs
from ._inventory import DatasetInventory
from ._select import select_dataset, select_datasets, select_pools, build_mount_plan
from ._snapshots import SnapState, SnapshotSet
from ._ledger import Ledger, LedgerWriter
from ._mounts import MountOrchestrator, UnmountOrchestrator, umount_order

__all__ = [
    "Manager",
    "SnapmountConfig",
    "SNAPMOUNT_CFG_PATH",
    "Zfs",
    "DatasetInventory",
    "select_dataset",
    "select_datasets",
    "select_pools",
    "build_mount_plan",
    "SnapState",
    "SnapshotSet",
    "Ledger",
    "LedgerWriter",
    "MountOrchestrator",
    "UnmountOrchestrator",
    "umount_order",
]
