# Copyright Red Hat
#
# nilmount/fixture.py - NILFS2 mount tester fixture preparation
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Preparation of the device and mount points before the scenarios run.

After ``prepare()`` returns the device is known, a snapshot checkpoint
exists and is recorded in the context, the random data file exists, and
the primary mount point is unmounted.
"""
import logging
import shutil
import os

from nilmount import (
    NILMOUNT_SUBSYSTEM_SCENARIO,
    RANDFILE_SIZE,
    TESTFILE_NAME,
    NilmountArgumentError,
    NilmountNotFoundError,
    NilmountSystemError,
    NilmountUmountError,
)
from nilmount.context import RunContext
from nilmount.util import log_print

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_scenario(msg, *args, **kwargs):
    """A wrapper for scenario subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_SCENARIO}, **kwargs)


def make_mount_dirs(ctx: RunContext):
    """
    Create the primary and snapshot mount point directories if missing.

    :raises NilmountSystemError: If a directory cannot be created.
    """
    for mount_dir in (ctx.mount_point, ctx.snapshot_mount_point):
        if not os.path.isdir(mount_dir):
            log_print(f"mount directory '{mount_dir}' does not exist - create it.")
            try:
                os.makedirs(mount_dir)
            except OSError as err:
                raise NilmountSystemError(
                    f"Failed to create mount directory '{mount_dir}': {err}"
                ) from err


def mount_or_adopt(ctx: RunContext):
    """
    Make sure NILFS2 is mounted at the primary mount point.

    An existing NILFS2 mount is adopted: its device becomes ``ctx.device``
    unless a different device was given. Otherwise ``ctx.device`` is mounted
    read-write.

    :raises NilmountArgumentError: If the mounted device conflicts with
                                   ``ctx.device``, or nothing is mounted and
                                   no device was given.
    """
    entry = ctx.ops.find_mount(ctx.mount_point)
    if entry:
        if not ctx.device:
            _log_info("Adopting %s mounted on %s", entry.what, ctx.mount_point)
            ctx.device = entry.what
        elif entry.what != ctx.device:
            raise NilmountArgumentError(
                f"{ctx.device} differs from the device mounted on "
                f"{ctx.mount_point}."
            )
    elif not ctx.device:
        raise NilmountArgumentError(
            f"{ctx.mount_point} is not a NILFS mount-point "
            "and no nilfs device given."
        )
    else:
        ctx.ops.mount(ctx.device, ctx.mount_point)


def ensure_randfile(path: str):
    """
    Create a file of random data at ``path`` unless it already exists.

    :raises NilmountSystemError: If the file cannot be written.
    """
    if os.path.exists(path):
        _log_debug_scenario("Reusing random file %s", path)
        return
    log_print(f"create random file '{path}'")
    try:
        with open(path, "wb") as fp:
            fp.write(os.urandom(RANDFILE_SIZE))
    except OSError as err:
        raise NilmountSystemError(
            f"Failed to create random file '{path}': {err}"
        ) from err


def ensure_snapshot(ctx: RunContext):
    """
    Find the newest snapshot of ``ctx.device``, creating one if the device
    has none, and record it as ``ctx.snapshot_cno``.

    :raises NilmountNotFoundError: If no snapshot can be found after
                                   creating one.
    :raises NilmountSystemError: If the test file cannot be written.
    """
    cno = ctx.nilfs.latest_snapshot(ctx.device)
    if cno is None:
        log_print(f"NILFS on {ctx.mount_point} has no snapshots - create it.")
        testfile = os.path.join(ctx.mount_point, TESTFILE_NAME)
        try:
            shutil.copyfile(ctx.randfile, testfile)
        except OSError as err:
            raise NilmountSystemError(
                f"Failed to copy '{ctx.randfile}' to '{testfile}': {err}"
            ) from err
        ctx.nilfs.mkcp(ctx.device, snapshot=True)
        cno = ctx.nilfs.latest_snapshot(ctx.device)
        if cno is None:
            raise NilmountNotFoundError(f"No snapshot found on {ctx.device}")
    _log_info("Using snapshot checkpoint %d of %s", cno, ctx.device)
    ctx.snapshot_cno = cno


def umount_or_kill(ctx: RunContext, where: str):
    """
    Unmount ``where``; if that fails, terminate its cleaner and retry once.

    :raises NilmountUmountError: If the retry also fails.
    """
    try:
        ctx.ops.umount(where)
    except NilmountUmountError as err:
        _log_warn("Unmount of %s failed (%s): killing cleaner", where, err)
        ctx.cleaner.kill(ctx.device, where)
        ctx.ops.umount(where)


def prepare(ctx: RunContext):
    """
    Prepare the device, mount points and test data for a test run and
    leave the primary mount point unmounted.
    """
    if ctx.device:
        ctx.nilfs.check_device(ctx.device)

    make_mount_dirs(ctx)
    mount_or_adopt(ctx)
    ensure_randfile(ctx.randfile)
    ensure_snapshot(ctx)

    log_print(f"Preparation complete - once unmount {ctx.mount_point}")
    umount_or_kill(ctx, ctx.mount_point)


__all__ = [
    "make_mount_dirs",
    "mount_or_adopt",
    "ensure_randfile",
    "ensure_snapshot",
    "umount_or_kill",
    "prepare",
]

# vim: set et ts=4 sw=4 :
