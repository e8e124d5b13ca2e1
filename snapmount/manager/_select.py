# Copyright Red Hat
#
# snapmount/manager/_select.py - Dataset selection
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Selection of the datasets and pools that take part in a snapmount session.
"""
from typing import Iterable, List
import logging

from snapmount import (
    Dataset,
    MountOptions,
    MountPlanEntry,
    path_is_within,
    rebase_path,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def select_dataset(options: MountOptions, dataset: Dataset) -> bool:
    """
    Test a dataset against the pool, root and exclusion criteria in
    ``options``.

    :param options: The session ``MountOptions``.
    :param dataset: The ``Dataset`` to test.
    :returns: ``True`` if the dataset takes part in the session.
    :rtype: ``bool``
    """
    if options.pools and dataset.pool not in options.pools:
        return False
    if options.root and not path_is_within(dataset.mountpoint, options.root):
        return False
    if any(path_is_within(dataset.mountpoint, exc) for exc in options.excludes):
        return False
    return True


def select_datasets(options: MountOptions, datasets: Iterable[Dataset]) -> List[Dataset]:
    """
    Return the datasets that pass ``select_dataset()``, sorted by mount point.
    """
    selected = [ds for ds in datasets if select_dataset(options, ds)]
    selected.sort(key=lambda ds: ds.mountpoint)
    return selected


def select_pools(options: MountOptions, pools: Iterable[str]) -> List[str]:
    """
    Return the pools to snapshot: the discoverable ``pools`` restricted to
    those named in ``options.pools`` when that is non-empty.

    :param options: The session ``MountOptions``.
    :param pools: The discoverable pool names.
    :returns: A sorted list of pool names.
    """
    pools = set(pools)
    if options.pools:
        missing = set(options.pools) - pools
        for pool in sorted(missing):
            _log_warn("Requested pool %s not found", pool)
        pools &= set(options.pools)
    return sorted(pools)


def build_mount_plan(
    options: MountOptions,
    datasets: Iterable[Dataset],
    target: str,
    fingerprint: str,
) -> List[MountPlanEntry]:
    """
    Build the mount plan for ``datasets`` under ``target``.

    Each selected dataset's mount point is rebased from the root scope to
    ``target``. A dataset whose target path is already claimed by an earlier
    dataset is skipped since two mounts on one path cannot be told apart
    when unmounting.

    :param options: The session ``MountOptions``.
    :param datasets: The inventory of mounted datasets.
    :param target: The canonical target directory.
    :param fingerprint: The session fingerprint.
    :returns: A list of ``MountPlanEntry`` objects in mount point order.
    """
    plan = []
    claimed = {}
    for dataset in select_datasets(options, datasets):
        where = rebase_path(dataset.mountpoint, options.scope_root, target)
        if where in claimed:
            _log_warn(
                "Skipping %s: mount point %s already used by %s",
                dataset.name,
                dataset.mountpoint,
                claimed[where].name,
            )
            continue
        claimed[where] = dataset
        plan.append(MountPlanEntry(dataset, fingerprint, where))
        _log_debug("Planned %s -> %s", dataset.mountpoint, where)
    return plan


__all__ = [
    "select_dataset",
    "select_datasets",
    "select_pools",
    "build_mount_plan",
]
