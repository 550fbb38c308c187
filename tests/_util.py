# Copyright Red Hat
#
# tests/_util.py - NILFS2 mount tester test utilities
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
import copy
import logging
import os

from nilmount import (
    NilmountCalloutError,
    NilmountMountError,
    NilmountPathError,
    NilmountUmountError,
)
from nilmount.context import RunContext
from nilmount.system import MountOps, CleanerProbe, NilfsTools

log = logging.getLogger()

FAKE_DEVICE = "/dev/fakenilfs0"

# mount(8) and umount(8) exit status for a failed operation
_MOUNT_FAILURE = 32

# First process ID handed out to fake cleaners
_FIRST_PID = 4000

#: Known misbehaviours of the fake driver.
#:
#: ``no_gcpid``: rw mounts record no ``gcpid`` attribute in utab.
#: ``no_cleaner``: rw mounts do not start a cleaner.
#: ``keep_cleaner_on_ro``: ro remount leaves the cleaner running.
#: ``nogc_keeps_cleaner``: nogc remount leaves the cleaner running.
#: ``drop_record_on_ro``: ro remount deletes the utab record.
#: ``stale_utab``: umount leaves the utab record behind.
#: ``keep_cleaner_on_umount``: umount leaves the cleaner running.
#: ``ro_mount_record``: fresh ro mounts write a ``none`` utab record.
#: ``snapshot_kills_cleaner``: snapshot mounts stop every cleaner.
#: ``umount_records_others``: umount writes a ``none`` utab record for
#: the other mounts of the same device.
#: ``umount_busy_once``: the next umount fails with "target is busy".
FAULTS = {
    "no_gcpid",
    "no_cleaner",
    "keep_cleaner_on_ro",
    "nogc_keeps_cleaner",
    "drop_record_on_ro",
    "stale_utab",
    "keep_cleaner_on_umount",
    "ro_mount_record",
    "snapshot_kills_cleaner",
    "umount_records_others",
    "umount_busy_once",
}


def _escape(value):
    return value.replace("\\", "\\134").replace(" ", "\\040")


class _FakeState:
    """The observable state of the fake system."""

    def __init__(self):
        # Mount table: list of [what, where, options]
        self.mounts = []
        # utab records: where -> [what, attrs]
        self.utab = {}
        self.utab_exists = False
        # Cleaners: (what, where) -> pid
        self.cleaners = {}


class FakeNilfsSystem:
    """
    An in-memory NILFS2 driver with the observable behaviour of
    mount.nilfs2, umount.nilfs2 and nilfs_cleanerd.

    The mount table and utab are published as real files in ``tmpdir`` so
    that the production readers parse them. When ``lag`` is non-zero each
    change becomes visible only after ``lag`` further state reads.
    """

    def __init__(self, tmpdir, device=FAKE_DEVICE, faults=None, lag=0):
        unknown = set(faults or ()) - FAULTS
        if unknown:
            raise ValueError(f"Unknown faults: {unknown}")
        self.device = device
        self.faults = set(faults or ())
        self.lag = lag
        self.mounts_path = os.path.join(tmpdir, "mounts")
        self.utab_path = os.path.join(tmpdir, "utab")
        self.commands = []
        self.checkpoints = 1
        self.snapshot_cnos = []
        self.killed = []
        self._next_pid = _FIRST_PID
        self._live = _FakeState()
        self._published = None
        self._countdown = 0
        self.echoed = []
        self.ops = FakeMountOps(self, echo=self.echoed.append)
        self.cleaner = FakeCleanerProbe(self)
        self.nilfs = FakeNilfsTools(self)
        self._publish()

    def context(self, mount_point, snapshot_mount_point, randfile, **kwargs):
        """
        Return a ``RunContext`` wired to this fake system.
        """
        kwargs.setdefault("device", self.device)
        kwargs.setdefault("settle_timeout", 1.0)
        kwargs.setdefault("poll_interval", 0.001)
        return RunContext(
            mount_point,
            snapshot_mount_point,
            randfile=randfile,
            ops=self.ops,
            cleaner=self.cleaner,
            nilfs=self.nilfs,
            **kwargs,
        )

    #
    # Publication of live state
    #

    def _publish(self):
        state = self._live
        self._published = copy.deepcopy(state)
        with open(self.mounts_path, "w", encoding="utf8") as fp:
            fp.write("proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n")
            for what, where, options in state.mounts:
                fp.write(f"{_escape(what)} {_escape(where)} nilfs2 {options} 0 0\n")
        if not state.utab_exists:
            if os.path.exists(self.utab_path):
                os.unlink(self.utab_path)
            return
        with open(self.utab_path, "w", encoding="utf8") as fp:
            for number, (where, (what, attrs)) in enumerate(state.utab.items()):
                line = f"ID={100 + number} SRC={_escape(what)} "
                line += f"TARGET={_escape(where)} ROOT=/"
                if attrs:
                    line += f" ATTRS={','.join(attrs)}"
                fp.write(line + "\n")

    def _changed(self):
        if self.lag:
            self._countdown = self.lag
        else:
            self._publish()

    def observe(self):
        """
        Count one state read and publish pending changes when due.
        """
        if self._countdown:
            self._countdown -= 1
            if not self._countdown:
                self._publish()
        return self._published

    #
    # Driver behaviour
    #

    def _mount_entry(self, where):
        for entry in self._live.mounts:
            if entry[1] == where:
                return entry
        return None

    def _start_cleaner(self, what, where):
        if "no_cleaner" in self.faults:
            return None
        pid = self._next_pid
        self._next_pid += 1
        self._live.cleaners[(what, where)] = pid
        return pid

    def _stop_cleaner(self, what, where):
        self._live.cleaners.pop((what, where), None)

    def _record(self, what, where, attrs):
        self._live.utab_exists = True
        self._live.utab[where] = [what, attrs]

    def _record_gc(self, what, where):
        pid = self._start_cleaner(what, where)
        if "no_gcpid" in self.faults or pid is None:
            self._record(what, where, [])
        else:
            self._record(what, where, [f"gcpid={pid}"])

    def do_mount(self, mount_cmd, what, where, options, readonly):
        self.commands.append(mount_cmd)
        if "remount" in options:
            self._remount(what, where, options)
        else:
            self._mount(what, where, options, readonly)
        self._changed()

    def _mount(self, what, where, options, readonly):
        if self._mount_entry(where):
            raise NilmountMountError(
                what, where, _MOUNT_FAILURE, f"{where} already mounted"
            )
        cno = [opt for opt in options if opt.startswith("cp=")]
        if cno and int(cno[0][3:]) not in self.snapshot_cnos:
            raise NilmountMountError(
                what, where, _MOUNT_FAILURE, f"{cno[0]} is not a snapshot"
            )
        if readonly or "ro" in options:
            self._live.mounts.append([what, where, ",".join(["ro"] + cno)])
            if "ro_mount_record" in self.faults and not cno:
                self._record(what, where, ["none"])
            if "snapshot_kills_cleaner" in self.faults and cno:
                self._live.cleaners.clear()
            return
        if "nogc" in options:
            self._live.mounts.append([what, where, "rw,nogc"])
            self._record(what, where, ["nogc"])
            return
        self._live.mounts.append([what, where, "rw"])
        self._record_gc(what, where)

    def _remount(self, what, where, options):
        entry = self._mount_entry(where)
        if not entry:
            raise NilmountMountError(
                what, where, _MOUNT_FAILURE, f"{where} not mounted"
            )
        if "ro" in options:
            entry[2] = "ro"
            if "keep_cleaner_on_ro" not in self.faults:
                self._stop_cleaner(what, where)
            if where in self._live.utab:
                if "drop_record_on_ro" in self.faults:
                    del self._live.utab[where]
                else:
                    self._record(what, where, ["none"])
        elif "nogc" in options:
            entry[2] = "rw,nogc"
            if "nogc_keeps_cleaner" not in self.faults:
                self._stop_cleaner(what, where)
            self._record(what, where, ["nogc"])
        else:
            entry[2] = "rw"
            self._stop_cleaner(what, where)
            self._record_gc(what, where)

    def do_umount(self, umount_cmd, where):
        self.commands.append(umount_cmd)
        entry = self._mount_entry(where)
        if not entry:
            raise NilmountUmountError(where, _MOUNT_FAILURE, f"{where}: not mounted.")
        if "umount_busy_once" in self.faults:
            self.faults.discard("umount_busy_once")
            raise NilmountUmountError(where, _MOUNT_FAILURE, f"{where}: target is busy.")
        self._live.mounts.remove(entry)
        if "keep_cleaner_on_umount" not in self.faults:
            self._stop_cleaner(entry[0], where)
        if "stale_utab" not in self.faults:
            self._live.utab.pop(where, None)
        if "umount_records_others" in self.faults:
            for what, other, _ in self._live.mounts:
                if what == entry[0] and other not in self._live.utab:
                    self._record(what, other, ["none"])
        self._changed()

    def is_rw_mounted(self, device):
        return any(
            what == device and options.startswith("rw")
            for what, _, options in self._live.mounts
        )

    def kill_cleaners(self, device, where):
        pid = self._live.cleaners.pop((device, where), None)
        if pid is None:
            return []
        self.killed.append(pid)
        self._changed()
        return [pid]


class FakeMountOps(MountOps):
    """``MountOps`` backed by a ``FakeNilfsSystem``."""

    def __init__(self, system, echo=None):
        super().__init__(
            mounts_path=system.mounts_path, utab_path=system.utab_path, echo=echo
        )
        self.system = system

    def _do_mount(self, mount_cmd, what, where, options, readonly):
        self.system.do_mount(mount_cmd, what, where, options, readonly)

    def _do_umount(self, umount_cmd, where):
        self.system.do_umount(umount_cmd, where)

    def mounts(self):
        self.system.observe()
        return super().mounts()

    def utab(self):
        self.system.observe()
        return super().utab()


class FakeCleanerProbe(CleanerProbe):
    """``CleanerProbe`` backed by a ``FakeNilfsSystem``."""

    def __init__(self, system):
        self.system = system

    def pids(self, device, where):
        state = self.system.observe()
        pid = state.cleaners.get((device, where))
        return [pid] if pid is not None else []

    def kill(self, device, where):
        return self.system.kill_cleaners(device, where)


class FakeNilfsTools(NilfsTools):
    """``NilfsTools`` backed by a ``FakeNilfsSystem``."""

    def __init__(self, system):
        self.system = system

    def check_device(self, device):
        if device != self.system.device:
            raise NilmountPathError(f"{device} is not a block device")

    def snapshots(self, device):
        return sorted(self.system.snapshot_cnos, reverse=True)

    def mkcp(self, device, snapshot=False):
        if not self.system.is_rw_mounted(device):
            raise NilmountCalloutError(f"mkcp {device} failed: not mounted read-write")
        self.system.checkpoints += 1
        if snapshot:
            self.system.snapshot_cnos.append(self.system.checkpoints)
