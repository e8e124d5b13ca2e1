# Copyright Red Hat
#
# snapmount/command.py - Snapshot mount command interface
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``snapmount.command`` module provides both the snapmount command line
interface infrastructure, and a simple procedural interface to the
``snapmount`` library modules.

The procedural interface is used by the ``snapmount`` command line tool,
and may be used by application programs, or interactively in the
Python shell by users who do not require all the features present
in the snapmount object API.
"""
from argparse import ArgumentParser, REMAINDER
from os.path import basename
from typing import List
import logging
import sys
import os

from snapmount import (
    SNAPMOUNT_DEBUG_MANAGER,
    SNAPMOUNT_DEBUG_COMMAND,
    SNAPMOUNT_DEBUG_MOUNTS,
    SNAPMOUNT_DEBUG_LEDGER,
    SNAPMOUNT_DEBUG_ZFS,
    SNAPMOUNT_DEBUG_ALL,
    SNAPMOUNT_SUBSYSTEM_COMMAND,
    SubsystemFilter,
    set_debug_mask,
    MountOptions,
    MountPlanEntry,
    __version__,
)
from snapmount.manager import Manager, SnapmountConfig, SNAPMOUNT_CFG_PATH

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def _manager(cmd_args) -> Manager:
    """
    Return a ``Manager`` configured from the ``--config`` file.
    """
    config = SnapmountConfig.from_file(cmd_args.config)
    return Manager(config=config)


def _options(cmd_args, config: SnapmountConfig) -> MountOptions:
    return MountOptions.from_cmd_args(
        cmd_args, pools=config.pools, excludes=config.excludes
    )


def mount_target(manager: Manager, target: str, options: MountOptions) -> List[MountPlanEntry]:
    """
    Mount a snapshot replica of the selected datasets at ``target``.

    :param manager: The manager context to use.
    :param target: The target directory.
    :param options: The ``MountOptions`` for the session.
    :returns: The list of mounted ``MountPlanEntry`` objects.
    """
    return manager.mount(target, options)


def umount_target(manager: Manager, target: str) -> bool:
    """
    Unmount the snapshot replica at ``target`` and release its snapshots.

    :param manager: The manager context to use.
    :param target: The target directory.
    :returns: ``True`` if teardown completed without errors.
    """
    return manager.umount(target)


def execute_target(manager: Manager, target: str, options: MountOptions, command) -> int:
    """
    Run ``command`` with a snapshot replica mounted at ``target``.

    :param manager: The manager context to use.
    :param target: The target directory.
    :param options: The ``MountOptions`` for the session.
    :param command: The command and arguments to run.
    :returns: The exit status of ``command``.
    """
    return manager.execute(target, options, command)


def _mount_cmd(cmd_args):
    """
    Mount command handler.

    Snapshot the selected datasets and mount them under the target
    directory.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = _manager(cmd_args)
    options = _options(cmd_args, manager.config)
    plan = mount_target(manager, cmd_args.target, options)
    for entry in plan:
        _log_info("Mounted %s at %s", entry.snapshot, entry.target)
    return 0


def _umount_cmd(cmd_args):
    """
    Unmount command handler.

    Unmount everything recorded for the target directory and release its
    snapshots.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = _manager(cmd_args)
    return 0 if umount_target(manager, cmd_args.target) else 1


def _execute_cmd(cmd_args):
    """
    Execute command handler.

    Mount the target, run the given command, then unmount the target.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    if not cmd_args.command:
        _log_error("the following arguments are required: COMMAND")
        return 1

    manager = _manager(cmd_args)
    options = _options(cmd_args, manager.config)
    ret = execute_target(manager, cmd_args.target, options, cmd_args.command)
    if ret:
        _log_error(
            "Command '%s' failed in %s: %d",
            " ".join(cmd_args.command),
            cmd_args.target,
            ret,
        )
    return ret


def setup_logging(cmd_args):
    """
    Set up snapmount logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    snapmount_log = logging.getLogger("snapmount")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    snapmount_log.setLevel(level)
    if snapmount_log.hasHandlers():
        snapmount_log.handlers.clear()

    # Subsystem log filtering
    _snapmount_subsystem_filter = SubsystemFilter("snapmount")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_snapmount_subsystem_filter)

    snapmount_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down snapmount logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": SNAPMOUNT_DEBUG_MANAGER,
        "command": SNAPMOUNT_DEBUG_COMMAND,
        "mounts": SNAPMOUNT_DEBUG_MOUNTS,
        "ledger": SNAPMOUNT_DEBUG_LEDGER,
        "zfs": SNAPMOUNT_DEBUG_ZFS,
        "all": SNAPMOUNT_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_target_arg(parser):
    parser.add_argument(
        "target",
        metavar="TARGET",
        type=str,
        help="The directory to mount the snapshot replica at",
    )


def _add_mount_args(parser):
    """
    Add the mount-time selection and option arguments to ``parser``.
    """
    parser.add_argument(
        "-r",
        "--root",
        metavar="PATH",
        type=str,
        help="Only mount datasets at or below PATH, relative to the target",
    )
    parser.add_argument(
        "-e",
        "--exclude",
        dest="excludes",
        metavar="PATH",
        action="append",
        help="Do not mount datasets at or below PATH (may be repeated)",
    )
    parser.add_argument(
        "-p",
        "--pool",
        dest="pools",
        metavar="POOL",
        action="append",
        help="Only mount datasets from POOL (may be repeated)",
    )
    parser.add_argument(
        "--exec",
        action="store_true",
        help="Allow execution of binaries in the mounted snapshots",
    )
    parser.add_argument(
        "--suid",
        action="store_true",
        help="Honour setuid and setgid bits in the mounted snapshots",
    )
    parser.add_argument(
        "--devfs",
        action="store_true",
        help="Mount a device file system at TARGET/dev",
    )
    parser.add_argument(
        "--tmpfs",
        metavar="PATH",
        action="append",
        help="Mount an empty tmpfs at PATH relative to the target (may be repeated)",
    )
    parser.add_argument(
        "--passthrough",
        metavar="PATH",
        action="append",
        help="Bind mount host PATH read-write under the target (may be repeated)",
    )
    parser.add_argument(
        "--include-altroot",
        action="store_true",
        help="Also mount datasets from pools imported with an alternate root",
    )
    parser.add_argument(
        "--mountable",
        action="store_true",
        help="Mount every dataset that can be mounted, not only those mounted now",
    )


def main(args):
    """
    Main entry point for snapmount.
    """
    parser = ArgumentParser(
        description="ZFS snapshot replica mounter", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of snapmount",
        version=__version__,
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        type=str,
        default=SNAPMOUNT_CFG_PATH,
        help="Path to the snapmount configuration file",
    )

    # Subparser for commands
    command_subparser = parser.add_subparsers(dest="command_name", help="Command")

    mount_parser = command_subparser.add_parser(
        "mount", help="Snapshot and mount datasets under a target directory"
    )
    _add_mount_args(mount_parser)
    _add_target_arg(mount_parser)
    mount_parser.set_defaults(func=_mount_cmd)

    umount_parser = command_subparser.add_parser(
        "umount", help="Unmount a target directory and release its snapshots"
    )
    _add_target_arg(umount_parser)
    umount_parser.set_defaults(func=_umount_cmd)

    execute_parser = command_subparser.add_parser(
        "execute", help="Mount a target, run a command and unmount the target"
    )
    _add_mount_args(execute_parser)
    _add_target_arg(execute_parser)
    execute_parser.add_argument(
        "command",
        metavar="COMMAND",
        nargs=REMAINDER,
        help="The command and arguments to run",
    )
    execute_parser.set_defaults(func=_execute_cmd)

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    if os.geteuid() != 0:
        _log_error("snapmount must be run as the root user")
        shutdown_logging()
        return status

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status

    if cmd_args.debug:
        status = cmd_args.func(cmd_args)
    else:
        try:
            status = cmd_args.func(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
