# Copyright Red Hat
#
# tests/test_manager.py - Manager core unit tests
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
from subprocess import CompletedProcess
import unittest
import unittest.mock
import logging
import tempfile
import os.path
import os

log = logging.getLogger()

import snapmount
import snapmount.manager as manager
from snapmount import (
    MountOptions,
    SnapmountArgumentError,
    SnapmountCalloutError,
    SnapmountExistsError,
    SnapmountMountError,
    SnapmountPathError,
    SnapmountSystemError,
)
from snapmount.manager._manager import _check_ledger_dir

from ._util import FakeMountTable, FakeZfs


class SnapmountConfigTests(unittest.TestCase):
    """Test configuration file loading"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        tmpdir = tempfile.TemporaryDirectory(suffix="_test_config")
        self.addCleanup(tmpdir.cleanup)
        self.tmpdir = tmpdir.name
        self.config_file = os.path.join(self.tmpdir, "snapmount.conf")

    def _write(self, text):
        with open(self.config_file, "w", encoding="utf8") as fp:
            fp.write(text)

    def test_missing_file(self):
        config = manager.SnapmountConfig.from_file(self.config_file)
        self.assertIsNone(config.ledger_dir)
        self.assertEqual(config.pools, [])
        self.assertEqual(config.excludes, [])

    def test_from_file(self):
        self._write(
            "[Global]\n"
            "LedgerDir = /var/lib/snapmount\n"
            "Pools = tank, rpool\n"
            "Excludes = /var/tmp,/home/cache\n"
        )
        config = manager.SnapmountConfig.from_file(self.config_file)
        self.assertEqual(config.ledger_dir, "/var/lib/snapmount")
        self.assertEqual(config.pools, ["tank", "rpool"])
        self.assertEqual(config.excludes, ["/var/tmp", "/home/cache"])

    def test_from_file_no_global_section(self):
        self._write("[Other]\nPools = tank\n")
        config = manager.SnapmountConfig.from_file(self.config_file)
        self.assertEqual(config.pools, [])

    def test_relative_ledger_dir(self):
        self._write("[Global]\nLedgerDir = var/lib/snapmount\n")
        with self.assertRaises(SnapmountArgumentError):
            manager.SnapmountConfig.from_file(self.config_file)

    def test_check_ledger_dir_creates(self):
        path = os.path.join(self.tmpdir, "ledgers")
        self.assertEqual(_check_ledger_dir(path), path)
        self.assertTrue(os.path.isdir(path))
        self.assertEqual(os.stat(path).st_mode & 0o777, 0o700)

    def test_check_ledger_dir_symlink(self):
        path = os.path.join(self.tmpdir, "ledgers")
        os.symlink(self.tmpdir, path)
        with self.assertRaises(SnapmountSystemError):
            _check_ledger_dir(path)

    def test_check_ledger_dir_file(self):
        self._write("")
        with self.assertRaises(SnapmountSystemError):
            _check_ledger_dir(self.config_file)


class ManagerTests(unittest.TestCase):
    """
    Test manager interfaces with mock callouts
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        target_dir = tempfile.TemporaryDirectory(suffix="_test_target")
        self.addCleanup(target_dir.cleanup)
        self.target = os.path.realpath(target_dir.name)

        ledger_dir = tempfile.TemporaryDirectory(suffix="_test_ledger")
        self.addCleanup(ledger_dir.cleanup)
        self.config = manager.SnapmountConfig(ledger_dir=ledger_dir.name)

        self.table = FakeMountTable()
        for name, func in (("_mount", self.table.mount), ("_umount", self.table.umount)):
            patcher = unittest.mock.patch(
                f"snapmount.manager._mounts.{name}", side_effect=func
            )
            patcher.start()
            self.addCleanup(patcher.stop)
        patcher = unittest.mock.patch("os.path.ismount", side_effect=self.table.ismount)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.zfs = FakeZfs(
            datasets=[
                ("tank/root", "/"),
                ("tank/home", "/home"),
            ]
        )
        self.manager = manager.Manager(config=self.config, zfs=self.zfs, system="Linux")

    def _path(self, *parts):
        return os.path.join(self.target, *parts)

    def _ledger(self):
        return self.manager.ledger(self.target)

    def test_mount_root_and_home(self):
        plan = self.manager.mount(self.target, MountOptions())
        self.assertEqual(
            [(e.dataset.mountpoint, e.target) for e in plan],
            [("/", self.target), ("/home", self._path("home"))],
        )
        self.assertEqual(
            [call[1] for call in self.table.mount_calls],
            [self.target, self._path("home")],
        )
        self.assertEqual(self._ledger().read(), [self.target, self._path("home")])
        fp = snapmount.fingerprint(self.target)
        self.assertIn(f"tank@{fp}", self.zfs.snapshots)
        self.assertIn(f"tank/home@{fp}", self.zfs.snapshots)

    def test_mount_then_umount_restores(self):
        self.manager.mount(self.target, MountOptions())
        self.assertTrue(self.manager.umount(self.target))
        self.assertFalse(self._ledger().exists)
        self.assertEqual(self.table.mounted, [])
        self.assertEqual(self.zfs.snapshots, set())

    def test_mount_refuses_existing_set(self):
        self.manager.mount(self.target, MountOptions())
        calls = list(self.table.mount_calls)
        with self.assertRaises(SnapmountExistsError):
            self.manager.mount(self.target, MountOptions())
        self.assertEqual(self.table.mount_calls, calls)

    def test_mount_nothing_selected(self):
        with self.assertRaises(SnapmountArgumentError):
            self.manager.mount(self.target, MountOptions(pools=["rpool"]))
        self.assertEqual(self.zfs.snapshots, set())

    def test_mount_target_not_directory(self):
        with self.assertRaises(SnapmountPathError):
            self.manager.mount(self._path("missing"), MountOptions())

    def test_mount_only_planned_pools(self):
        zfs = FakeZfs(datasets=[("tank/root", "/"), ("rpool/var", "/var")])
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        mgr.mount(self.target, MountOptions(pools=["tank"]))
        self.assertFalse(any(s.startswith("rpool") for s in zfs.snapshots))
        self.assertTrue(any(s.startswith("tank") for s in zfs.snapshots))

    def test_mount_partial_failure_then_umount(self):
        zfs = FakeZfs(datasets=[("tank/a", "/a"), ("tank/b", "/b"), ("tank/c", "/c")])
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        self.table.fail_mount.add(self._path("c"))
        with self.assertRaises(SnapmountMountError):
            mgr.mount(self.target, MountOptions())

        ledger = mgr.ledger(self.target)
        self.assertEqual(
            ledger.read(),
            [self.target, self._path("a"), self._path("b"), self._path("c")],
        )

        self.assertTrue(mgr.umount(self.target))
        self.assertEqual(
            self.table.umount_calls, [self._path("b"), self._path("a"), self.target]
        )
        self.assertEqual(self.table.mounted, [])
        self.assertFalse(ledger.exists)
        self.assertEqual(zfs.snapshots, set())

    def test_mount_snapshot_failure(self):
        zfs = FakeZfs(datasets=[("tank/root", "/"), ("rpool/var", "/var")])
        fp = snapmount.fingerprint(self.target)
        zfs.fail.add(("snapshot", f"rpool@{fp}"))
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        with self.assertRaises(SnapmountCalloutError) as ctx:
            mgr.mount(self.target, MountOptions())
        self.assertIn("rpool", str(ctx.exception))
        self.assertEqual(self.table.mount_calls, [])
        self.assertIn(f"tank@{fp}", zfs.snapshots)
        self.assertIn(f"tank@{fp}", zfs.deferred)

        self.assertTrue(mgr.umount(self.target))
        self.assertEqual(zfs.snapshots, set())

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute(self, run_mock):
        def check_mounted(cmd, **kwargs):
            self.assertEqual(self.table.mounted, [self.target, self._path("home")])
            return CompletedProcess(cmd, 3)

        run_mock.side_effect = check_mounted
        status = self.manager.execute(self.target, MountOptions(), ["backup", "-x"])
        self.assertEqual(status, 3)
        self.assertEqual(run_mock.call_args[0][0], ["backup", "-x"])
        self.assertEqual(self.table.mounted, [])
        self.assertFalse(self._ledger().exists)
        self.assertEqual(self.zfs.snapshots, set())

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_command_not_found(self, run_mock):
        run_mock.side_effect = FileNotFoundError(2, "No such file", "nosuchcmd")
        self.assertEqual(self.manager.execute(self.target, MountOptions(), ["nosuchcmd"]), 127)
        self.assertEqual(self.zfs.snapshots, set())

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_command_killed(self, run_mock):
        run_mock.side_effect = lambda cmd, **kw: CompletedProcess(cmd, -9)
        self.assertEqual(self.manager.execute(self.target, MountOptions(), ["sleep"]), 137)

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_teardown_errors_keep_status(self, run_mock):
        run_mock.side_effect = lambda cmd, **kw: CompletedProcess(cmd, 0)
        self.table.fail_umount.add(self._path("home"))
        self.assertEqual(self.manager.execute(self.target, MountOptions(), ["true"]), 0)
        self.assertTrue(self._ledger().exists)

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_mount_failure_tears_down(self, run_mock):
        self.table.fail_mount.add(self._path("home"))
        with self.assertRaises(SnapmountMountError):
            self.manager.execute(self.target, MountOptions(), ["true"])
        run_mock.assert_not_called()
        self.assertEqual(self.table.mounted, [])
        self.assertEqual(self.zfs.snapshots, set())

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_existing_set_untouched(self, run_mock):
        self.manager.mount(self.target, MountOptions())
        with self.assertRaises(SnapmountExistsError):
            self.manager.execute(self.target, MountOptions(), ["true"])
        run_mock.assert_not_called()
        self.assertEqual(self.table.mounted, [self.target, self._path("home")])
        self.assertTrue(self.zfs.snapshots)

    def test_execute_no_command(self):
        with self.assertRaises(SnapmountArgumentError):
            self.manager.execute(self.target, MountOptions(), [])

    def test_mount_tmpfs_over_dataset_refused(self):
        zfs = FakeZfs(datasets=[("tank/root", "/"), ("tank/tmp", "/tmp")])
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        with self.assertRaises(SnapmountPathError):
            mgr.mount(self.target, MountOptions(tmpfs=["/tmp"]))
        self.assertEqual(self.table.mounted, [self.target, self._path("tmp")])

        self.assertTrue(mgr.umount(self.target))
        self.assertEqual(self.table.mounted, [])
        self.assertFalse(mgr.ledger(self.target).exists)
        self.assertEqual(zfs.snapshots, set())

    def test_mount_passthrough_over_dataset_refused(self):
        zfs = FakeZfs(datasets=[("tank/root", "/"), ("tank/var", "/var")])
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        with self.assertRaises(SnapmountPathError):
            mgr.mount(self.target, MountOptions(passthrough=["/var"]))
        self.assertEqual(self.table.mounted.count(self._path("var")), 1)
        self.assertTrue(mgr.umount(self.target))
        self.assertEqual(self.table.mounted, [])

    def test_altroot_pool_excluded_by_default(self):
        zfs = FakeZfs(
            datasets=[("tank/root", "/"), ("backup/home", "/mnt/alt/home")],
            pools=[("tank", "-"), ("backup", "/mnt/alt")],
        )
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        plan = mgr.mount(self.target, MountOptions())
        self.assertEqual([e.dataset.name for e in plan], ["tank/root"])
        self.assertFalse(any(s.startswith("backup") for s in zfs.snapshots))
        self.assertEqual(self.table.mounted, [self.target])

    def test_altroot_pool_included(self):
        zfs = FakeZfs(
            datasets=[("tank/root", "/"), ("backup/home", "/mnt/alt/home")],
            pools=[("tank", "-"), ("backup", "/mnt/alt")],
        )
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        plan = mgr.mount(self.target, MountOptions(include_altroot=True))
        self.assertEqual(
            [e.dataset.name for e in plan], ["tank/root", "backup/home"]
        )
        fp = snapmount.fingerprint(self.target)
        self.assertIn(f"backup@{fp}", zfs.snapshots)
        self.assertIn(self._path("mnt", "alt", "home"), self.table.mounted)

    def test_plan_mountable(self):
        zfs = FakeZfs(
            datasets=[("tank/root", "/"), ("tank/data", "/data", "no", "noauto")]
        )
        mgr = manager.Manager(config=self.config, zfs=zfs, system="Linux")
        plan = mgr.plan(self.target, MountOptions())
        self.assertEqual([e.dataset.name for e in plan], ["tank/root"])
        plan = mgr.plan(self.target, MountOptions(mountable=True))
        self.assertEqual(
            [(e.dataset.name, e.target) for e in plan],
            [("tank/root", self.target), ("tank/data", self._path("data"))],
        )

    @unittest.mock.patch("snapmount.manager._manager.run")
    def test_execute_nothing_selected_no_teardown(self, run_mock):
        with unittest.mock.patch.object(self.manager, "_teardown") as teardown:
            with self.assertRaises(SnapmountArgumentError):
                self.manager.execute(
                    self.target, MountOptions(pools=["rpool"]), ["true"]
                )
            teardown.assert_not_called()
        run_mock.assert_not_called()
