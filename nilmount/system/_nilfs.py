# Copyright Red Hat
#
# nilmount/system/_nilfs.py - NILFS2 mount tester checkpoint tools
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Checkpoint and snapshot operations using the nilfs-utils programs.
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from abc import ABC, abstractmethod
from typing import List, Optional
import logging
import os

from nilmount import (
    NILMOUNT_SUBSYSTEM_MOUNTS,
    NILMOUNT_MOUNT_TIMEOUT,
    NILFS2_FSTYPE,
    NilmountCalloutError,
    NilmountNotFoundError,
    NilmountArgumentError,
    NilmountPathError,
    is_block_device,
    get_device_fstype,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": NILMOUNT_SUBSYSTEM_MOUNTS}, **kwargs)


_LSCP_CMD = "lscp"
_MKCP_CMD = "mkcp"

# lscp options: list snapshots only, newest first.
_LSCP_SNAPSHOTS = "-s"
_LSCP_REVERSE = "-r"

# mkcp option: make the new checkpoint a snapshot.
_MKCP_SNAPSHOT = "-s"


def parse_lscp(output: str) -> List[int]:
    """
    Parse the checkpoint numbers from ``lscp`` output.

    The first line is a column heading; each following line begins with a
    checkpoint number::

                         CNO        DATE     TIME  MODE  FLG      BLKCNT       ICNT
                           5  2024-05-01 10:03:11   ss    -          11          4

    :param output: The standard output of ``lscp``.
    :returns: The checkpoint numbers in the order listed.
    :rtype: ``List[int]``
    :raises NilmountCalloutError: If a line does not start with a number.
    """
    cnos = []
    for line in output.splitlines()[1:]:
        fields = line.split()
        if not fields:
            continue
        try:
            cnos.append(int(fields[0]))
        except ValueError as err:
            raise NilmountCalloutError(f"Malformed {_LSCP_CMD} line: {line}") from err
    return cnos


class NilfsTools(ABC):
    """
    Abstract interface to NILFS2 device checks and checkpoint management.
    """

    @abstractmethod
    def check_device(self, device: str):
        """
        Verify that ``device`` is a block device containing NILFS2.

        :raises NilmountPathError: If ``device`` is not a block device.
        :raises NilmountArgumentError: If ``device`` does not contain NILFS2.
        """

    @abstractmethod
    def snapshots(self, device: str) -> List[int]:
        """
        Return the snapshot checkpoint numbers of ``device``, newest first.
        """

    @abstractmethod
    def mkcp(self, device: str, snapshot: bool = False):
        """
        Create a checkpoint on the file system mounted from ``device``.

        :param device: The NILFS2 device.
        :param snapshot: Make the new checkpoint a snapshot.
        """

    def latest_snapshot(self, device: str) -> Optional[int]:
        """
        Return the newest snapshot checkpoint number or ``None``.
        """
        snapshots = self.snapshots(device)
        return snapshots[0] if snapshots else None


class SysNilfsTools(NilfsTools):
    """
    NILFS2 checkpoint management by calling ``lscp`` and ``mkcp``.
    """

    @staticmethod
    def _run(cmd):
        _log_debug_mounts("Calling %s", " ".join(cmd))
        env = dict(os.environ, LC_ALL="C", LANG="C")
        try:
            result = run(
                cmd,
                check=True,
                capture_output=True,
                encoding="utf8",
                timeout=NILMOUNT_MOUNT_TIMEOUT,
                env=env,
            )
        except FileNotFoundError as err:
            raise NilmountNotFoundError(
                f"{cmd[0]} command not found: is nilfs-utils installed?"
            ) from err
        except TimeoutExpired as err:
            raise NilmountCalloutError(f"Timed out calling {cmd[0]}: {err}") from err
        except CalledProcessError as err:
            raise NilmountCalloutError(
                f"{' '.join(cmd)} failed (status={err.returncode}): "
                f"{(err.stderr or '').strip()}"
            ) from err
        return result.stdout

    def check_device(self, device):
        if not is_block_device(device):
            raise NilmountPathError(f"{device} is not a block device")
        fstype = get_device_fstype(device)
        _log_debug_mounts("Device %s has file system type '%s'", device, fstype)
        if fstype != NILFS2_FSTYPE:
            raise NilmountArgumentError(f"{device} is not a nilfs device")

    def snapshots(self, device):
        output = self._run([_LSCP_CMD, _LSCP_SNAPSHOTS, _LSCP_REVERSE, device])
        return parse_lscp(output)

    def mkcp(self, device, snapshot=False):
        mkcp_cmd = [_MKCP_CMD]
        if snapshot:
            mkcp_cmd.append(_MKCP_SNAPSHOT)
        mkcp_cmd.append(device)
        self._run(mkcp_cmd)


__all__ = [
    "NilfsTools",
    "SysNilfsTools",
    "parse_lscp",
]

# vim: set et ts=4 sw=4 :
