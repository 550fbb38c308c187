# Copyright Red Hat
#
# nilmount/system/_mounts.py - NILFS2 mount tester mount operations
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount, remount and unmount operations and mount state queries.
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from typing import Callable, Iterator, List, Optional
from abc import ABC, abstractmethod
import collections
import logging
import shlex

from nilmount import (
    NILMOUNT_SUBSYSTEM_MOUNTS,
    NILMOUNT_MOUNT_TIMEOUT,
    NILFS2_FSTYPE,
    PROC_MOUNTS,
    UTAB,
    NilmountCalloutError,
    NilmountNotFoundError,
    NilmountSystemError,
    NilmountMountError,
    NilmountUmountError,
    UtabReader,
)
from nilmount._nilmount import _unescape_mounts

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_MOUNTS}, **kwargs)


_MOUNT_CMD = "mount"
_UMOUNT_CMD = "umount"


def _merge_options(opts_a, opts_b):
    """
    Merge two comma-separated mount options strings.

    :param opts_a: The first set of options.
    :param opts_b: The second set of options.
    :returns: Merged "opts_a,opts_b"
    :rtype: ``str``
    """
    return ",".join(filter(None, [opts_a, opts_b]))


def _split_options(options: Optional[str]) -> List[str]:
    return [opt for opt in (options or "").split(",") if opt]


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    # Define a named tuple to give structure to each /proc/mounts entry.
    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/self/mounts')
        """
        self.path = path

    def entries(self, fstype: Optional[str] = None) -> Iterator[MountsEntry]:
        """Iterate over the mount table, optionally filtered by file system
        type.

        :param fstype: Only yield entries of this file system type.
        :returns: Yields ``MountsEntry`` objects with octal escapes decoded.
        """
        try:
            with open(self.path, "r", encoding="utf8") as fp:
                lines = fp.readlines()
        except FileNotFoundError as err:
            raise NilmountNotFoundError(f"Mount table not found: {self.path}") from err
        except OSError as err:
            raise NilmountSystemError(
                f"Error reading mount table {self.path}: {err}"
            ) from err

        for line in lines:
            line = line.strip()
            if not line:
                continue

            parts = line.split()
            if len(parts) != 6:
                _log_warn("Skipping malformed %s line: %s", self.path, line)
                continue

            what, where, mtype, options, freq, passno = parts
            if fstype and mtype != fstype:
                continue
            yield self.MountsEntry(
                _unescape_mounts(what),
                _unescape_mounts(where),
                mtype,
                options,
                freq,
                passno,
            )


class MountOps(ABC):
    """
    An abstract interface to the operating system's mount machinery for
    NILFS2 file systems.

    Commands are built here as mount(8)/umount(8) argument lists and handed
    to the ``_do_mount()`` and ``_do_umount()`` hooks. State queries read
    the mount table and utab files at ``mounts_path`` and ``utab_path``.
    """

    def __init__(
        self,
        mounts_path: str = PROC_MOUNTS,
        utab_path: str = UTAB,
        echo: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialise mount operations state.

        :param mounts_path: Path to the kernel mount table.
        :param utab_path: Path to the libmount user mount options table.
        :param echo: Optional callable notified with the shell form of each
                     command before it is executed.
        """
        self.mounts_path = mounts_path
        self.utab_path = utab_path
        self.echo = echo

    def _echo(self, cmd: List[str]):
        _log_debug_mounts("Calling %s", " ".join(cmd))
        if self.echo:
            self.echo(shlex.join(cmd))

    def mount(
        self,
        what: str,
        where: str,
        options: Optional[str] = None,
        readonly: bool = False,
    ):
        """
        Mount the NILFS2 file system on ``what`` at ``where``.

        :param what: The device to mount.
        :param where: The path to the mount point.
        :param options: Comma-separated options to pass with ``-o``.
        :param readonly: Pass ``-r`` to mount read-only.
        """
        mount_cmd = [_MOUNT_CMD, "-t", NILFS2_FSTYPE]
        if readonly:
            mount_cmd.append("-r")
        if options:
            mount_cmd.extend(["-o", options])
        mount_cmd.extend([what, where])

        self._echo(mount_cmd)
        self._do_mount(mount_cmd, what, where, _split_options(options), readonly)

    def remount(self, what: str, where: str, options: str):
        """
        Remount the file system at ``where`` with new ``options``.

        :param what: The device mounted at ``where``.
        :param where: The path to the mount point.
        :param options: Options to apply, e.g. "ro", "rw" or "nogc".
        """
        self.mount(what, where, options=_merge_options("remount", options))

    def umount(self, where: str):
        """
        Unmount the file system mounted at ``where``.

        :param where: The mount point to be unmounted.
        """
        umount_cmd = [_UMOUNT_CMD, where]
        self._echo(umount_cmd)
        self._do_umount(umount_cmd, where)

    @abstractmethod
    def _do_mount(
        self,
        mount_cmd: List[str],
        what: str,
        where: str,
        options: List[str],
        readonly: bool,
    ):
        """
        Hook invoked to carry out a mount or remount.

        :param mount_cmd: The complete mount(8) argument list.
        :param what: The device.
        :param where: The mount point.
        :param options: The list of ``-o`` options.
        :param readonly: ``True`` if ``-r`` was given.
        """

    @abstractmethod
    def _do_umount(self, umount_cmd: List[str], where: str):
        """
        Hook invoked to carry out an unmount.

        :param umount_cmd: The complete umount(8) argument list.
        :param where: The mount point.
        """

    def mounts(self) -> List[ProcMountsReader.MountsEntry]:
        """
        Return the current NILFS2 entries of the mount table.
        """
        return list(ProcMountsReader(self.mounts_path).entries(NILFS2_FSTYPE))

    def utab(self) -> UtabReader:
        """
        Return a fresh reading of the utab file.
        """
        return UtabReader(self.utab_path)

    def find_mount(self, where: str) -> Optional[ProcMountsReader.MountsEntry]:
        """
        Return the NILFS2 mount table entry mounted at ``where``, or ``None``.

        If several file systems are stacked on ``where`` the topmost (last)
        one is returned.
        """
        found = None
        for entry in self.mounts():
            if entry.where == where:
                found = entry
        return found

    def is_mounted(self, what: str, where: str) -> bool:
        """
        Return ``True`` if NILFS2 on ``what`` is mounted at ``where``.
        """
        return any(
            entry.what == what and entry.where == where for entry in self.mounts()
        )


class SysMountOps(MountOps):
    """
    Mount operations carried out by calling the system mount(8) and
    umount(8) programs.
    """

    def _do_mount(self, mount_cmd, what, where, options, readonly):
        try:
            run(
                mount_cmd,
                check=True,
                capture_output=True,
                encoding="utf8",
                timeout=NILMOUNT_MOUNT_TIMEOUT,
            )
        except FileNotFoundError as err:
            raise NilmountNotFoundError(f"{_MOUNT_CMD} command not found.") from err
        except TimeoutExpired as err:
            raise NilmountCalloutError(
                f"Timed out calling mount for {what} -> {where}: {err}"
            ) from err
        except CalledProcessError as err:
            raise NilmountMountError(
                what, where, err.returncode, (err.stderr or "").strip()
            ) from err

    def _do_umount(self, umount_cmd, where):
        try:
            run(
                umount_cmd,
                check=True,
                capture_output=True,
                encoding="utf8",
                timeout=NILMOUNT_MOUNT_TIMEOUT,
            )
        except FileNotFoundError as err:
            raise NilmountNotFoundError(f"{_UMOUNT_CMD} command not found.") from err
        except TimeoutExpired as err:
            raise NilmountCalloutError(
                f"Timed out calling umount for {where}: {err}"
            ) from err
        except CalledProcessError as err:
            raise NilmountUmountError(
                where, err.returncode, (err.stderr or "").strip()
            ) from err


__all__ = [
    "MountOps",
    "SysMountOps",
    "ProcMountsReader",
]

# vim: set et ts=4 sw=4 :
