# Copyright Red Hat
#
# snapmount/manager/_inventory.py - Dataset inventory
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Discovery of mounted ZFS datasets and pools.
"""
from typing import List
import logging
import os.path

from snapmount import (
    SNAPMOUNT_SUBSYSTEM_ZFS,
    Dataset,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_zfs(msg, *args, **kwargs):
    """A wrapper for zfs subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_ZFS}, **kwargs)


#: Property value for a mounted dataset.
_MOUNTED_YES = "yes"

#: ``canmount`` values for datasets that may be mounted.
_CANMOUNT_VALUES = ("on", "noauto")

#: ``altroot`` value for pools without an alternate root.
_NO_ALTROOT = "-"


class DatasetInventory:
    """
    Typed view of the datasets and pools reported by a ``Zfs`` instance.
    """

    def __init__(self, zfs):
        """
        Initialise a new ``DatasetInventory``.

        :param zfs: The ``Zfs`` interface used to query the system.
        """
        self._zfs = zfs

    def list_mounted_datasets(self, mountable: bool = False) -> List[Dataset]:
        """
        Return the currently mounted datasets sorted by mount point.

        Each candidate's mount point is fetched with an individual query and
        datasets without an absolute mount point (``legacy``, ``none``) are
        dropped.

        :param mountable: Select datasets that can be mounted (``canmount``
                          is ``on`` or ``noauto``) instead of datasets that
                          are currently mounted.
        :returns: A list of ``Dataset`` objects.
        :raises: ``SnapmountCalloutError`` if a query fails.
        """
        datasets = []
        for name, mounted, canmount in self._zfs.list_filesystems():
            if mountable:
                if canmount not in _CANMOUNT_VALUES:
                    continue
            elif mounted != _MOUNTED_YES:
                continue
            mountpoint = self._zfs.get_mountpoint(name)
            if not os.path.isabs(mountpoint):
                _log_debug_zfs(
                    "Dropping dataset %s with mountpoint '%s'", name, mountpoint
                )
                continue
            datasets.append(Dataset(name, mountpoint))

        datasets.sort(key=lambda ds: ds.mountpoint)
        _log_debug_zfs("Found %d mounted datasets", len(datasets))
        return datasets

    def list_pools(self, no_altroot: bool = False) -> List[str]:
        """
        Return the names of all imported pools.

        :param no_altroot: Exclude pools imported with an alternate root.
        :returns: A list of pool names.
        """
        return [
            name
            for name, altroot in self._zfs.list_pools()
            if not no_altroot or altroot == _NO_ALTROOT
        ]


__all__ = [
    "DatasetInventory",
]
