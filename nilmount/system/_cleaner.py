# Copyright Red Hat
#
# nilmount/system/_cleaner.py - NILFS2 mount tester cleaner daemon probe
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Detection and termination of the NILFS2 cleaner daemon.

The cleaner (``nilfs_cleanerd``) is started by mount.nilfs2 for read-write
mounts as ``nilfs_cleanerd [options] <device> <mount point>``. It exposes no
status interface, so processes are matched by their command line.
"""
from abc import ABC, abstractmethod
from typing import List
import logging
import os.path

import psutil

from nilmount import (
    NILMOUNT_SUBSYSTEM_CHECKS,
    CLEANERD,
    NilmountSystemError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Time to wait for a terminated cleaner to exit.
_CLEANERD_KILL_TIMEOUT = 5


def _log_debug_checks(msg, *args, **kwargs):
    """A wrapper for checks subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_CHECKS}, **kwargs)


def is_cleanerd_cmdline(cmdline: List[str], device: str, where: str) -> bool:
    """
    Return ``True`` if ``cmdline`` is a cleaner for ``device`` on ``where``.

    :param cmdline: A process argument vector.
    :param device: The NILFS2 device path.
    :param where: The mount point path.
    """
    if len(cmdline) < 3:
        return False
    if os.path.basename(cmdline[0]) != CLEANERD:
        return False
    return cmdline[-2:] == [device, where]


class CleanerProbe(ABC):
    """
    Abstract interface for finding the cleaner process serving a mount.
    """

    @abstractmethod
    def pids(self, device: str, where: str) -> List[int]:
        """
        Return the process IDs of cleaners running for ``device`` mounted at
        ``where``.
        """

    @abstractmethod
    def kill(self, device: str, where: str) -> List[int]:
        """
        Terminate the cleaners running for ``device`` mounted at ``where``.

        :returns: The list of process IDs signalled.
        """

    def is_running(self, device: str, where: str) -> bool:
        """
        Return ``True`` if a cleaner is running for ``device`` on ``where``.
        """
        return bool(self.pids(device, where))


class ProcCleanerProbe(CleanerProbe):
    """
    Cleaner probe that scans the process table using ``psutil``.
    """

    def _procs(self, device, where):
        procs = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info["cmdline"] or []
            if is_cleanerd_cmdline(cmdline, device, where):
                procs.append(proc)
        return procs

    def pids(self, device, where):
        pids = [proc.pid for proc in self._procs(device, where)]
        _log_debug_checks(
            "Found %s pids for %s on %s: %s", CLEANERD, device, where, pids
        )
        return pids

    def kill(self, device, where):
        procs = self._procs(device, where)
        for proc in procs:
            _log_info("Terminating %s (pid=%d)", CLEANERD, proc.pid)
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as err:
                raise NilmountSystemError(
                    f"Permission denied terminating {CLEANERD} (pid={proc.pid})"
                ) from err
        _, alive = psutil.wait_procs(procs, timeout=_CLEANERD_KILL_TIMEOUT)
        for proc in alive:
            _log_warn("%s (pid=%d) still running after SIGTERM", CLEANERD, proc.pid)
        return [proc.pid for proc in procs]


__all__ = [
    "CleanerProbe",
    "ProcCleanerProbe",
    "is_cleanerd_cmdline",
]

# vim: set et ts=4 sw=4 :
