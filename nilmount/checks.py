# Copyright Red Hat
#
# nilmount/checks.py - NILFS2 mount tester state checks
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Assertions on the observable state of a NILFS2 mount.

Each check polls the live system state until it matches the expected state
or the context's settle timeout expires, in which case a
``NilmountCheckError`` describing the mismatch is raised. All checks act on
the primary mount point unless another ``mount_point`` is given.
"""
from typing import Callable, Optional
import logging
import time

from nilmount import (
    NILMOUNT_SUBSYSTEM_CHECKS,
    CLEANERD,
    UTAB_ATTR_GCPID,
    UTAB_ATTR_NOGC,
    UTAB_ATTR_NONE,
    NilmountCheckError,
)
from nilmount.context import RunContext

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_checks(msg, *args, **kwargs):
    """A wrapper for checks subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_CHECKS}, **kwargs)


def wait_for(ctx: RunContext, predicate: Callable[[], bool]) -> bool:
    """
    Poll ``predicate`` until it returns ``True`` or the settle timeout of
    ``ctx`` expires. The predicate is always evaluated at least once.

    :param ctx: The run context supplying the timeout and poll interval.
    :param predicate: A callable returning ``True`` when the expected state
                      has been reached.
    :returns: The last value returned by ``predicate``.
    :rtype: ``bool``
    """
    deadline = time.monotonic() + ctx.settle_timeout
    attempts = 1
    while not predicate():
        if time.monotonic() >= deadline:
            _log_debug_checks("Gave up waiting after %d attempts", attempts)
            return False
        time.sleep(ctx.poll_interval)
        attempts += 1
    _log_debug_checks("State settled after %d attempts", attempts)
    return True


#
# Mount table checks
#


def check_mount(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that NILFS2 on ``ctx.device`` is mounted at ``mount_point``.
    """
    where = ctx.path(mount_point)
    if not wait_for(ctx, lambda: ctx.ops.is_mounted(ctx.device, where)):
        raise NilmountCheckError(
            f"No nilfs2 mount found for {ctx.device} on '{where}'"
        )


def check_no_mount(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that NILFS2 on ``ctx.device`` is not mounted at ``mount_point``.
    """
    where = ctx.path(mount_point)
    if not wait_for(ctx, lambda: not ctx.ops.is_mounted(ctx.device, where)):
        raise NilmountCheckError(
            f"nilfs2 mount unexpectedly found for {ctx.device} on '{where}'"
        )


#
# Utab checks
#


def _check_utab(
    ctx: RunContext,
    expected: Callable[[], Optional[str]],
    mount_point: Optional[str] = None,
):
    """
    Check that the utab record for ``mount_point`` carries the attribute
    returned by ``expected``, evaluated on each poll.
    """
    where = ctx.path(mount_point)
    found = {"exists": False, "attr": None, "attrs": None}

    def _matches():
        utab = ctx.ops.utab()
        entry = utab.lookup(ctx.device, where)
        found["exists"] = utab.exists
        found["attr"] = expected()
        found["attrs"] = entry.attrs if entry else None
        if not found["attr"] or found["attrs"] is None:
            return False
        return found["attr"] in found["attrs"]

    if wait_for(ctx, _matches):
        return
    if not found["exists"]:
        raise NilmountCheckError("utab doesn't exist as expected")
    if found["attrs"] is None:
        raise NilmountCheckError(
            f"utab has no record for {ctx.device} on '{where}' "
            f"(expected ATTRS={found['attr']})"
        )
    raise NilmountCheckError(
        f"utab record for {ctx.device} on '{where}' didn't match the expected "
        f"attribute '{found['attr']}' (ATTRS={','.join(found['attrs'])})"
    )


def check_utab_with_gc(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that the utab record carries the process ID of the running
    cleaner: ``ATTRS=gcpid=<pid>``.
    """
    where = ctx.path(mount_point)

    def _gcpid():
        pids = ctx.cleaner.pids(ctx.device, where)
        if len(pids) != 1:
            _log_debug_checks("Expected one %s, found %s", CLEANERD, pids)
            return None
        return f"{UTAB_ATTR_GCPID}={pids[0]}"

    _check_utab(ctx, _gcpid, mount_point=where)


def check_utab_with_nogc(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that the utab record marks garbage collection as disabled.
    """
    _check_utab(ctx, lambda: UTAB_ATTR_NOGC, mount_point=mount_point)


def check_utab_with_none(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that the utab record carries the ``none`` attribute.
    """
    _check_utab(ctx, lambda: UTAB_ATTR_NONE, mount_point=mount_point)


def check_noutab(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that there is no utab record for ``mount_point``. A missing utab
    file has no records.
    """
    where = ctx.path(mount_point)

    def _absent():
        utab = ctx.ops.utab()
        return not utab.exists or utab.lookup(ctx.device, where) is None

    if not wait_for(ctx, _absent):
        raise NilmountCheckError(
            f"utab unexpectedly exists for '{ctx.device}' on '{where}'"
        )


#
# Cleaner checks
#


def check_cleanerd(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that a cleaner is running for ``mount_point``.
    """
    where = ctx.path(mount_point)
    if not wait_for(ctx, lambda: ctx.cleaner.is_running(ctx.device, where)):
        raise NilmountCheckError(
            f"No cleanerd found as expected for {ctx.device} on '{where}'"
        )


def check_no_cleanerd(ctx: RunContext, mount_point: Optional[str] = None):
    """
    Check that no cleaner is running for ``mount_point``.
    """
    where = ctx.path(mount_point)
    if not wait_for(ctx, lambda: not ctx.cleaner.is_running(ctx.device, where)):
        raise NilmountCheckError(
            f"cleanerd unexpectedly found for {ctx.device} on '{where}'"
        )


__all__ = [
    "wait_for",
    "check_mount",
    "check_no_mount",
    "check_utab_with_gc",
    "check_utab_with_nogc",
    "check_utab_with_none",
    "check_noutab",
    "check_cleanerd",
    "check_no_cleanerd",
]

# vim: set et ts=4 sw=4 :
