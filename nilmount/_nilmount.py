# Copyright Red Hat
#
# nilmount/_nilmount.py - NILFS2 mount tester global definitions
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level nilmount package.
"""
from typing import List, Optional
from stat import S_ISBLK
import collections
import subprocess
import logging
import os

_log = logging.getLogger("nilmount")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Nilmount debugging subsystem mask
NILMOUNT_DEBUG_COMMAND = 1
NILMOUNT_DEBUG_MOUNTS = 2
NILMOUNT_DEBUG_CHECKS = 4
NILMOUNT_DEBUG_SCENARIO = 8
NILMOUNT_DEBUG_ALL = (
    NILMOUNT_DEBUG_COMMAND
    | NILMOUNT_DEBUG_MOUNTS
    | NILMOUNT_DEBUG_CHECKS
    | NILMOUNT_DEBUG_SCENARIO
)

# Nilmount debugging subsystem names
NILMOUNT_SUBSYSTEM_COMMAND = "nilmount.command"
NILMOUNT_SUBSYSTEM_MOUNTS = "nilmount.mounts"
NILMOUNT_SUBSYSTEM_CHECKS = "nilmount.checks"
NILMOUNT_SUBSYSTEM_SCENARIO = "nilmount.scenario"

_DEBUG_MASK_TO_SUBSYSTEM = {
    NILMOUNT_DEBUG_COMMAND: NILMOUNT_SUBSYSTEM_COMMAND,
    NILMOUNT_DEBUG_MOUNTS: NILMOUNT_SUBSYSTEM_MOUNTS,
    NILMOUNT_DEBUG_CHECKS: NILMOUNT_SUBSYSTEM_CHECKS,
    NILMOUNT_DEBUG_SCENARIO: NILMOUNT_SUBSYSTEM_SCENARIO,
}

_debug_subsystems = set()

#: The file system type under test.
NILFS2_FSTYPE = "nilfs2"

#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: Path to the libmount user mount options table.
UTAB = "/run/mount/utab"

#: Random test data file, created once and reused between runs.
RANDFILE = "/tmp/100K.dat"

#: Size of the random test data file in bytes.
RANDFILE_SIZE = 100 * 2**10

#: Name of the data file written when creating the initial snapshot.
TESTFILE_NAME = "test-mount.dat"

#: Name of the NILFS2 garbage collector daemon.
CLEANERD = "nilfs_cleanerd"

#: Timeout for external helper programs (mount, umount, lscp, ...)
NILMOUNT_MOUNT_TIMEOUT = int(os.getenv("NILMOUNT_MOUNT_TIMEOUT", "60"))

#: Default time to wait for system state to settle after an operation.
NILMOUNT_SETTLE_TIMEOUT = float(os.getenv("NILMOUNT_SETTLE_TIMEOUT", "5"))

#: Interval between polls of system state while waiting to settle.
NILMOUNT_POLL_INTERVAL = 0.1

# Utab attribute values
UTAB_ATTR_GCPID = "gcpid"
UTAB_ATTR_NOGC = "nogc"
UTAB_ATTR_NONE = "none"


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``nilmount`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    nilmount_log = logging.getLogger("nilmount")

    for handler in nilmount_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``nilmount`` package.

    :param mask: the logical OR of the ``NILMOUNT_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > NILMOUNT_DEBUG_ALL:
        raise ValueError(f"Invalid nilmount debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    nilmount_log = logging.getLogger("nilmount")
    for handler in nilmount_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Nilmount exception types
#


class NilmountError(Exception):
    """
    Base class for nilmount errors.
    """


class NilmountSystemError(NilmountError):
    """
    An error when calling the operating system.
    """


class NilmountCalloutError(NilmountError):
    """
    An error calling out to an external program.
    """


class NilmountNotFoundError(NilmountError):
    """
    The requested object does not exist.
    """


class NilmountPathError(NilmountError):
    """
    An invalid path was supplied, for example a device argument that is
    not a block device.
    """


class NilmountArgumentError(NilmountError):
    """
    An invalid or conflicting argument was given.
    """


class NilmountCheckError(NilmountError):
    """
    The observed system state does not match the expected state.
    """


class NilmountMountError(NilmountError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `NilmountMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class NilmountUmountError(NilmountError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `NilmountUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


class NilmountScenarioError(NilmountError):
    """
    A test scenario failed.
    """

    def __init__(self, name: str, cause: Exception):
        """
        Initialise a new `NilmountScenarioError` exception.

        :param name: The name of the failed scenario.
        :param cause: The error that caused the scenario to fail.
        """
        self.name, self.cause = name, cause
        super().__init__(f"{name} failed: {cause}")


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts or utab.

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


class UtabReader:
    """
    A class to read and query the libmount user mount options table.

    Each utab line is a space separated list of ``KEY=value`` fields::

        ID=151 SRC=/dev/vdb1 TARGET=/mnt/test ROOT=/ ATTRS=gcpid=1234

    The ``ID`` and ``ATTRS`` fields are optional. A missing utab file is
    treated as an empty table: libmount only creates it on demand.
    """

    UtabEntry = collections.namedtuple(
        "UtabEntry", ["id", "src", "target", "root", "attrs"]
    )

    def __init__(self, path=UTAB):
        """
        Initialise a new UtabReader and read the table at ``path``.

        :param path: The path to the utab file.
        :type path: str
        :raises NilmountSystemError: If the utab file exists but cannot be
                                     read.
        """
        self.path = path
        self.exists = False
        self.entries = []
        self._read_utab()

    @classmethod
    def parse_line(cls, line: str):
        """
        Parse one utab line.

        :param line: The line to parse.
        :returns: A ``UtabEntry`` or ``None`` if the line has no ``SRC`` or
                  ``TARGET`` field.
        """
        fields = {}
        for token in line.split():
            if "=" not in token:
                _log_debug("Ignoring utab token without value: %s", token)
                continue
            key, value = token.split("=", maxsplit=1)
            fields[key] = _unescape_mounts(value)

        if "SRC" not in fields or "TARGET" not in fields:
            return None

        attrs = fields.get("ATTRS")
        return cls.UtabEntry(
            int(fields["ID"]) if fields.get("ID", "").isdigit() else None,
            fields["SRC"],
            fields["TARGET"],
            fields.get("ROOT"),
            attrs.split(",") if attrs else [],
        )

    def _read_utab(self):
        try:
            with open(self.path, "r", encoding="utf8") as fp:
                self.exists = True
                for line in fp:
                    line = line.strip()
                    if not line:
                        continue
                    entry = self.parse_line(line)
                    if not entry:
                        _log_warn("Skipping malformed %s line: %s", self.path, line)
                        continue
                    self.entries.append(entry)
        except FileNotFoundError:
            _log_debug("No utab file at %s", self.path)
        except OSError as err:
            raise NilmountSystemError(
                f"Error reading utab file {self.path}: {err}"
            ) from err

    def __iter__(self):
        yield from self.entries

    def lookup(self, src: str, target: str) -> Optional["UtabReader.UtabEntry"]:
        """
        Return the entry for ``src`` mounted at ``target``, or ``None``.
        """
        for entry in self.entries:
            if entry.src == src and entry.target == target:
                return entry
        return None

    def __repr__(self):
        return f"UtabReader(path='{self.path}')"


def is_block_device(devpath: str) -> bool:
    """
    Return ``True`` if ``devpath`` exists and is a block device.
    """
    try:
        return S_ISBLK(os.stat(devpath).st_mode)
    except FileNotFoundError:
        return False


def get_device_fstype(devpath: str) -> str:
    """
    Determine the file system type for the device at `devpath`.

    :param devpath: The path to the device.
    :returns: The file system type, 'nilfs2', 'ext4', etc., or the empty
              string if blkid reports no type.
    :rtype: str

    :raises NilmountNotFoundError: If the device or blkid is not found.
    :raises NilmountPathError: If the path is not a block device.
    :raises NilmountSystemError: If blkid exits with an unexpected status.
    """
    if not devpath:
        raise ValueError("Device path cannot be an empty string.")
    if not os.path.exists(devpath):
        raise NilmountNotFoundError(f"Unknown device path: {devpath}")
    if not is_block_device(devpath):
        raise NilmountPathError(f"{devpath} is not a block device")

    env = dict(os.environ, LC_ALL="C", LANG="C")
    command = ["blkid", "--match-tag=TYPE", "--output=value", devpath]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=NILMOUNT_MOUNT_TIMEOUT,
            env=env,
        )
        return result.stdout.strip()
    except FileNotFoundError as exc:
        _log_error(
            "Error: 'blkid' command not found. Please install util-linux."
        )
        raise NilmountNotFoundError("blkid command not found.") from exc
    except subprocess.TimeoutExpired as err:
        raise NilmountCalloutError(f"Timed out calling blkid for {devpath}") from err
    except subprocess.CalledProcessError as e:
        # blkid returns 2 if the device has no TYPE tag.
        if e.returncode == 2:
            _log_debug("blkid: no TYPE for %s", devpath)
            return ""
        _log_error(
            "Error executing blkid command (return code %d): %s", e.returncode, e
        )
        _log_error("Stderr: %s", e.stderr.strip())
        raise NilmountSystemError(f"Error executing blkid command: {e}") from e


def split_debug_list(debug_arg: str) -> List[str]:
    """
    Split a comma separated list of debug subsystem names.
    """
    return [name.strip() for name in debug_arg.split(",") if name.strip()]


__all__ = [
    "NILMOUNT_DEBUG_COMMAND",
    "NILMOUNT_DEBUG_MOUNTS",
    "NILMOUNT_DEBUG_CHECKS",
    "NILMOUNT_DEBUG_SCENARIO",
    "NILMOUNT_DEBUG_ALL",
    "NILMOUNT_SUBSYSTEM_COMMAND",
    "NILMOUNT_SUBSYSTEM_MOUNTS",
    "NILMOUNT_SUBSYSTEM_CHECKS",
    "NILMOUNT_SUBSYSTEM_SCENARIO",
    "NILFS2_FSTYPE",
    "PROC_MOUNTS",
    "UTAB",
    "RANDFILE",
    "RANDFILE_SIZE",
    "TESTFILE_NAME",
    "CLEANERD",
    "NILMOUNT_MOUNT_TIMEOUT",
    "NILMOUNT_SETTLE_TIMEOUT",
    "NILMOUNT_POLL_INTERVAL",
    "UTAB_ATTR_GCPID",
    "UTAB_ATTR_NOGC",
    "UTAB_ATTR_NONE",
    # Debug logging
    "SubsystemFilter",
    "set_debug_mask",
    "get_debug_mask",
    "split_debug_list",
    # Exceptions
    "NilmountError",
    "NilmountSystemError",
    "NilmountCalloutError",
    "NilmountNotFoundError",
    "NilmountPathError",
    "NilmountArgumentError",
    "NilmountCheckError",
    "NilmountMountError",
    "NilmountUmountError",
    "NilmountScenarioError",
    # Mount table helpers
    "UtabReader",
    "is_block_device",
    "get_device_fstype",
]

# vim: set et ts=4 sw=4 :
