# Copyright Red Hat
#
# tests/test_command.py - CLI layer tests
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import logging
import os

log = logging.getLogger()

import snapmount
import snapmount.command as command
from snapmount import MountOptions, SnapmountExistsError
from snapmount.manager import SnapmountConfig

from tests import MockArgs


class CommandTestsBase(unittest.TestCase):
    def get_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``snapmount`` command with a configuration file that does not exist.

        :returns: A list of command arguments.
        """
        return [
            os.path.join(os.getcwd(), "bin/snapmount"),
            "-c",
            MockArgs.config,
        ]

    def get_debug_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``snapmount`` command, with verbose logging and debug enabled.

        :returns: A list of command arguments.
        """
        return self.get_main_args() + ["-vv", "--debug=all"]


class CommandTests(CommandTestsBase):
    """
    Test command interfaces
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.addCleanup(snapmount.set_debug_mask, 0)

        patcher = patch("snapmount.command.os.geteuid", return_value=0)
        self.geteuid = patcher.start()
        self.addCleanup(patcher.stop)

        patcher = patch("snapmount.command.Manager")
        self.manager_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.manager = self.manager_class.return_value
        self.manager.config = SnapmountConfig()

    def test_set_debug(self):
        command.set_debug("manager,zfs")
        self.assertEqual(
            snapmount.get_debug_mask(),
            snapmount.SNAPMOUNT_DEBUG_MANAGER | snapmount.SNAPMOUNT_DEBUG_ZFS,
        )
        command.set_debug("all")
        self.assertEqual(snapmount.get_debug_mask(), snapmount.SNAPMOUNT_DEBUG_ALL)

    def test_set_debug_bad_option(self):
        with self.assertRaises(ValueError):
            command.set_debug("manager,quux")

    def test_setup_logging(self):
        args = MockArgs()
        args.verbose = 2
        command.setup_logging(args)
        snapmount_log = logging.getLogger("snapmount")
        self.assertEqual(snapmount_log.level, logging.DEBUG)
        self.assertEqual(len(snapmount_log.handlers), 1)

    def test_main_mount(self):
        self.manager.mount.return_value = []
        args = self.get_main_args() + [
            "mount",
            "-p",
            "tank",
            "-e",
            "/home/cache",
            "--devfs",
            "--tmpfs",
            "tmp",
            "/mnt/backup",
        ]
        self.assertEqual(command.main(args), 0)
        target, options = self.manager.mount.call_args[0]
        self.assertEqual(target, "/mnt/backup")
        self.assertEqual(
            options,
            MountOptions(
                pools=["tank"], excludes=["/home/cache"], devfs=True, tmpfs=["tmp"]
            ),
        )

    def test_main_mount_altroot_mountable(self):
        self.manager.mount.return_value = []
        args = self.get_main_args() + [
            "mount",
            "--include-altroot",
            "--mountable",
            "/mnt/b",
        ]
        self.assertEqual(command.main(args), 0)
        options = self.manager.mount.call_args[0][1]
        self.assertTrue(options.include_altroot)
        self.assertTrue(options.mountable)

    def test_main_mount_config_merged(self):
        self.manager.config = SnapmountConfig(pools=["rpool"], excludes=["/var/tmp"])
        self.manager.mount.return_value = []
        args = self.get_main_args() + ["mount", "--root", "/home", "-p", "tank", "/mnt/b"]
        self.assertEqual(command.main(args), 0)
        options = self.manager.mount.call_args[0][1]
        self.assertEqual(options.root, "/home")
        self.assertEqual(options.pools, ("rpool", "tank"))
        self.assertEqual(options.excludes, ("/var/tmp",))

    def test_main_umount(self):
        self.manager.umount.return_value = True
        self.assertEqual(command.main(self.get_main_args() + ["umount", "/mnt/b"]), 0)
        self.manager.umount.assert_called_once_with("/mnt/b")

    def test_main_umount_errors(self):
        self.manager.umount.return_value = False
        self.assertEqual(command.main(self.get_main_args() + ["umount", "/mnt/b"]), 1)

    def test_main_execute(self):
        self.manager.execute.return_value = 5
        args = self.get_main_args() + ["execute", "--exec", "/mnt/b", "tar", "cf", "x"]
        self.assertEqual(command.main(args), 5)
        target, options, cmd = self.manager.execute.call_args[0]
        self.assertEqual(target, "/mnt/b")
        self.assertTrue(options.exec)
        self.assertEqual(cmd, ["tar", "cf", "x"])

    def test_main_execute_no_command(self):
        args = self.get_main_args() + ["execute", "/mnt/b"]
        self.assertEqual(command.main(args), 1)
        self.manager.execute.assert_not_called()

    def test_main_command_failed(self):
        self.manager.mount.side_effect = SnapmountExistsError("already exists")
        args = self.get_main_args() + ["mount", "/mnt/b"]
        self.assertEqual(command.main(args), 1)

    def test_main_command_failed_debug(self):
        self.manager.mount.side_effect = SnapmountExistsError("already exists")
        args = self.get_debug_main_args() + ["mount", "/mnt/b"]
        with self.assertRaises(SnapmountExistsError):
            command.main(args)

    def test_main_bad_debug(self):
        args = self.get_main_args() + ["--debug", "quux", "umount", "/mnt/b"]
        self.assertEqual(command.main(args), 1)
        self.manager.umount.assert_not_called()

    def test_main_no_command(self):
        self.assertEqual(command.main(self.get_main_args()), 1)

    def test_main_requires_root(self):
        self.geteuid.return_value = 1000
        self.assertEqual(command.main(self.get_main_args() + ["umount", "/mnt/b"]), 1)
        self.manager.umount.assert_not_called()

    def test_main_version(self):
        with self.assertRaises(SystemExit) as ctx:
            command.main(self.get_main_args() + ["--version"])
        self.assertEqual(ctx.exception.code, 0)
