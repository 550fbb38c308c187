# Copyright Red Hat
#
# nilmount/command.py - NILFS2 mount tester command line interface
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
The ``nilmount`` command line interface.

Prepares the NILFS2 device and mount points, then runs the mount lifecycle
scenarios in order, stopping at the first failure.
"""
from argparse import ArgumentParser, ArgumentTypeError
from os.path import basename
import logging
import math
import sys
import os

from nilmount import (
    NILMOUNT_DEBUG_COMMAND,
    NILMOUNT_DEBUG_MOUNTS,
    NILMOUNT_DEBUG_CHECKS,
    NILMOUNT_DEBUG_SCENARIO,
    NILMOUNT_DEBUG_ALL,
    NILMOUNT_SUBSYSTEM_COMMAND,
    NILMOUNT_SETTLE_TIMEOUT,
    NilmountError,
    NilmountScenarioError,
    SubsystemFilter,
    set_debug_mask,
    split_debug_list,
    __version__,
)
from nilmount.context import RunContext
from nilmount.fixture import prepare
from nilmount.scenarios import MountScenarios
from nilmount.system import SysMountOps
from nilmount.util import log_print, fatal_print

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_COMMAND}, **kwargs)


class NilmountArgumentParser(ArgumentParser):
    """
    An ``ArgumentParser`` that exits with status 1 on usage errors.
    """

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _positive_float(value):
    try:
        seconds = float(value)
    except ValueError as err:
        raise ArgumentTypeError(f"invalid timeout: {value}") from err
    if not 0 < seconds < math.inf:
        raise ArgumentTypeError(f"invalid timeout: {value}")
    return seconds


def list_scenarios():
    """
    Print the scenario names and descriptions.
    """
    for scenario in MountScenarios.catalog():
        log_print(f"{scenario.name}: {scenario.description}")
    return 0


def run_tests(cmd_args):
    """
    Prepare the device and run the selected scenarios.

    :param cmd_args: Command line arguments for the run.
    :returns: ``0`` if all selected scenarios succeeded.
    """
    ops = SysMountOps(echo=lambda cmd: log_print(f"- {cmd}"))
    ctx = RunContext(
        cmd_args.mount_point,
        cmd_args.snapshot_mount_point,
        device=cmd_args.device,
        verbose=bool(cmd_args.verbose),
        settle_timeout=cmd_args.settle_timeout,
        ops=ops,
    )
    _log_debug_command("Running with %s", ctx)

    # Validate the selection before touching the system.
    scenarios = MountScenarios(ctx)
    scenarios.select(cmd_args.scenario)

    prepare(ctx)
    scenarios.run(cmd_args.scenario)
    return 0


def setup_logging(cmd_args):
    """
    Set up nilmount logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    nilmount_log = logging.getLogger("nilmount")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    nilmount_log.setLevel(level)
    if nilmount_log.hasHandlers():
        nilmount_log.handlers.clear()

    # Subsystem log filtering
    _nilmount_subsystem_filter = SubsystemFilter("nilmount")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_nilmount_subsystem_filter)

    nilmount_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down nilmount logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "command": NILMOUNT_DEBUG_COMMAND,
        "mounts": NILMOUNT_DEBUG_MOUNTS,
        "checks": NILMOUNT_DEBUG_CHECKS,
        "scenario": NILMOUNT_DEBUG_SCENARIO,
        "all": NILMOUNT_DEBUG_ALL,
    }

    mask = 0
    for name in split_debug_list(debug_arg):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def main(args):
    """
    Main entry point for nilmount.
    """
    parser = NilmountArgumentParser(
        description="NILFS2 mount/umount tester", prog=basename(args[0])
    )

    parser.add_argument(
        "-d",
        "--device",
        metavar="DEVICE",
        type=str,
        help="The NILFS2 block device to test",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        help="Enable verbose output and dump utab after each mount command",
        action="count",
    )
    parser.add_argument(
        "-D",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of nilmount",
        version=__version__,
    )
    parser.add_argument(
        "-l",
        "--list",
        action="store_true",
        help="List the test scenarios and exit",
    )
    parser.add_argument(
        "-s",
        "--scenario",
        metavar="N",
        type=int,
        action="append",
        help="Run only scenario N (may be repeated)",
    )
    parser.add_argument(
        "--settle-timeout",
        metavar="SECONDS",
        type=_positive_float,
        default=NILMOUNT_SETTLE_TIMEOUT,
        help="Maximum time to wait for mount state to settle",
    )
    parser.add_argument(
        "mount_point",
        metavar="MOUNT_POINT",
        nargs="?",
        help="The mount point used for read-write and read-only mounts",
    )
    parser.add_argument(
        "snapshot_mount_point",
        metavar="SNAPSHOT_MOUNT_POINT",
        nargs="?",
        help="The mount point used for snapshot mounts",
    )

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    if cmd_args.list:
        return list_scenarios()

    if not cmd_args.mount_point or not cmd_args.snapshot_mount_point:
        parser.print_usage(sys.stderr)
        return status

    setup_logging(cmd_args)

    if os.geteuid() != 0:
        _log_error("nilmount must be run as the root user")
        shutdown_logging()
        return status

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    try:
        status = run_tests(cmd_args)
    except NilmountScenarioError as err:
        fatal_print(str(err.cause))
        fatal_print(f"{err.name} failed.")
    except NilmountError as err:
        fatal_print(str(err))
    except KeyboardInterrupt:  # pragma: no cover
        _log_info("Exiting on user cancel")

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


__all__ = [
    "main",
    "run",
    "setup_logging",
    "shutdown_logging",
    "set_debug",
]

# vim: set et ts=4 sw=4 :
