# Copyright Red Hat
#
# nilmount/scenarios.py - NILFS2 mount tester scenarios
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
The NILFS2 mount lifecycle scenarios and the sequential scenario runner.

Every scenario is a ``test_<n>`` method of ``MountScenarios`` whose
docstring describes it. Scenarios are composed of steps: a mount command,
the checks that the mount table, utab and cleaner reached the state the
command must produce, and a workload exercising the new mount mode.
"""
from typing import Iterable, List, Optional
import collections
import inspect
import logging
import shutil
import re
import os

from nilmount import (
    NILMOUNT_SUBSYSTEM_SCENARIO,
    NilmountError,
    NilmountArgumentError,
    NilmountCheckError,
    NilmountScenarioError,
)
from nilmount.checks import (
    check_mount,
    check_no_mount,
    check_utab_with_gc,
    check_utab_with_nogc,
    check_utab_with_none,
    check_noutab,
    check_cleanerd,
    check_no_cleanerd,
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


_SCENARIO_RE = re.compile(r"^test_(?P<number>[0-9]+)$")

#: Read size for read-only workloads.
_READ_CHUNK = 2**16

Scenario = collections.namedtuple("Scenario", ["number", "name", "description"])


class MountScenarios:
    """
    Mount, remount and unmount scenarios for one NILFS2 device.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.current: Optional[str] = None

    @classmethod
    def catalog(cls) -> List[Scenario]:
        """
        Return the list of scenarios in execution order.
        """
        scenarios = []
        for name, func in inspect.getmembers(cls, predicate=inspect.isfunction):
            match = _SCENARIO_RE.match(name)
            if not match:
                continue
            doc = inspect.getdoc(func) or ""
            description = doc.splitlines()[0] if doc else ""
            scenarios.append(Scenario(int(match.group("number")), name, description))
        scenarios.sort(key=lambda scenario: scenario.number)
        return scenarios

    def select(self, numbers: Optional[Iterable[int]] = None) -> List[Scenario]:
        """
        Return the scenarios to run: all of them, or those in ``numbers``.

        :raises NilmountArgumentError: If ``numbers`` names an unknown
                                       scenario.
        """
        scenarios = self.catalog()
        if not numbers:
            return scenarios
        wanted = set(numbers)
        unknown = wanted - {scenario.number for scenario in scenarios}
        if unknown:
            raise NilmountArgumentError(
                f"Unknown scenario number(s): {', '.join(map(str, sorted(unknown)))}"
            )
        return [scenario for scenario in scenarios if scenario.number in wanted]

    def run(self, numbers: Optional[Iterable[int]] = None) -> int:
        """
        Run the selected scenarios in order, stopping at the first failure.

        :param numbers: Optional scenario numbers to run; default all.
        :returns: The number of scenarios that succeeded.
        :raises NilmountScenarioError: If a scenario fails.
        """
        passed = 0
        for scenario in self.select(numbers):
            log_print(f"=== Start {scenario.name}: {scenario.description}")
            self.current = scenario.name
            try:
                getattr(self, scenario.name)()
            except NilmountError as err:
                raise NilmountScenarioError(scenario.name, err) from err
            finally:
                self.current = None
            log_print(f"{scenario.name} succeeded.")
            passed += 1

        log_print("Done all tests.")
        return passed

    #
    # Commands
    #

    def _step_debug(self):
        if not self.ctx.verbose:
            return
        try:
            with open(self.ctx.ops.utab_path, "r", encoding="utf8") as fp:
                contents = fp.read()
        except FileNotFoundError:
            log_print("no utab file")
            return
        log_print("utab file:")
        log_print(contents, end="")

    def _mount(
        self,
        options: Optional[str] = None,
        readonly: bool = False,
        mount_point: Optional[str] = None,
    ):
        self.ctx.ops.mount(
            self.ctx.device,
            self.ctx.path(mount_point),
            options=options,
            readonly=readonly,
        )
        self._step_debug()

    def _remount(self, options: str):
        self.ctx.ops.remount(self.ctx.device, self.ctx.mount_point, options)
        self._step_debug()

    def _umount(self, mount_point: Optional[str] = None):
        self.ctx.ops.umount(self.ctx.path(mount_point))
        self._step_debug()

    #
    # Workloads
    #

    def use_rw(self):
        """
        Write a file named after the running scenario and make a checkpoint.
        """
        name = f"{self.current or 'scenario'}.dat"
        dest = os.path.join(self.ctx.mount_point, name)
        _log_debug_scenario("Writing %s", dest)
        try:
            shutil.copyfile(self.ctx.randfile, dest)
        except OSError as err:
            raise NilmountCheckError(f"Failed to write '{dest}': {err}") from err
        self.ctx.nilfs.mkcp(self.ctx.device)

    def _read_any(self, mount_point: str):
        for root, dirs, files in os.walk(mount_point):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(root, name)
                if not os.path.isfile(path):
                    continue
                _log_debug_scenario("Reading %s", path)
                try:
                    with open(path, "rb") as fp:
                        while fp.read(_READ_CHUNK):
                            pass
                except OSError as err:
                    raise NilmountCheckError(
                        f"Failed to read '{path}': {err}"
                    ) from err
                return
        raise NilmountCheckError(f"No file found to read under '{mount_point}'")

    def use_ro(self):
        """
        Read a file from the primary mount point.
        """
        self._read_any(self.ctx.mount_point)

    def use_ss(self):
        """
        Read a file from the snapshot mount point.
        """
        self._read_any(self.ctx.snapshot_mount_point)

    #
    # Steps: a command, its expected resulting state, and a workload
    #

    def expect_rw(self):
        check_mount(self.ctx)
        check_utab_with_gc(self.ctx)
        check_cleanerd(self.ctx)

    def expect_nogc(self):
        check_mount(self.ctx)
        check_utab_with_nogc(self.ctx)
        check_no_cleanerd(self.ctx)

    def expect_remounted_ro(self):
        check_mount(self.ctx)
        check_utab_with_none(self.ctx)
        check_no_cleanerd(self.ctx)

    def expect_unmounted(self, mount_point: Optional[str] = None):
        check_no_mount(self.ctx, mount_point)
        check_noutab(self.ctx, mount_point)
        check_no_cleanerd(self.ctx, mount_point)

    def mount_rw(self):
        self._mount()
        self.expect_rw()
        self.use_rw()

    def mount_ro(self):
        self._mount(readonly=True)
        check_mount(self.ctx)
        check_noutab(self.ctx)
        check_no_cleanerd(self.ctx)
        self.use_ro()

    def mount_nogc(self):
        self._mount(options="nogc")
        self.expect_nogc()
        self.use_rw()

    def remount_rw(self):
        self._remount("rw")
        self.expect_rw()
        self.use_rw()

    def remount_ro(self):
        self._remount("ro")
        self.expect_remounted_ro()
        self.use_ro()

    def remount_nogc(self):
        self._remount("nogc")
        self.expect_nogc()
        self.use_rw()

    def mount_snapshot(self):
        """
        Mount the snapshot checkpoint read-only on the snapshot mount point.
        """
        ssdir = self.ctx.snapshot_mount_point
        self._mount(options=f"ro,cp={self.ctx.snapshot_cno}", mount_point=ssdir)
        check_mount(self.ctx, ssdir)
        check_noutab(self.ctx, ssdir)
        check_no_cleanerd(self.ctx, ssdir)

    def umount(self, mount_point: Optional[str] = None):
        self._umount(mount_point)
        self.expect_unmounted(mount_point)

    #
    # Scenarios
    #

    def test_1(self):
        """mount (rw) & umount"""
        self.mount_rw()
        self.umount()

    def test_2(self):
        """mount (ro) & umount"""
        self.mount_ro()
        self.umount()

    def test_3(self):
        """mount (nogc) & umount"""
        self.mount_nogc()
        self.umount()

    def test_4(self):
        """mount (rw) & ro remount & umount"""
        self.mount_rw()
        self.remount_ro()
        self.umount()

    def test_5(self):
        """mount (rw) & ro remount & rw remount & umount"""
        self.mount_rw()
        self.remount_ro()
        self.remount_rw()
        self.umount()

    def test_6(self):
        """mount (rw) & nogc remount & umount"""
        self.mount_rw()
        self.remount_nogc()
        self.umount()

    def test_7(self):
        """mount (rw) & nogc remount & rw remount & umount"""
        self.mount_rw()
        self.remount_nogc()
        self.remount_rw()
        self.umount()

    def test_8(self):
        """mount (rw) & nogc remount & ro remount & umount"""
        self.mount_rw()
        self.remount_nogc()
        self.remount_ro()
        self.umount()

    def test_9(self):
        """mount (ro) & rw remount & umount"""
        self.mount_ro()
        self.remount_rw()
        self.umount()

    def test_10(self):
        """mount (ro) & rw remount & ro remount & umount"""
        self.mount_ro()
        self.remount_rw()
        self.remount_ro()
        self.umount()

    def test_11(self):
        """mount (ro) & nogc remount & umount"""
        self.mount_ro()
        self.remount_nogc()
        self.umount()

    def test_12(self):
        """mount (ro) & nogc remount & rw remount & umount"""
        self.mount_ro()
        self.remount_nogc()
        self.remount_rw()
        self.umount()

    def test_13(self):
        """mount (ro) & nogc remount & ro remount & umount"""
        self.mount_ro()
        self.remount_nogc()
        self.remount_ro()
        self.umount()

    def test_14(self):
        """mount (nogc) & rw remount & umount"""
        self.mount_nogc()
        self.remount_rw()
        self.umount()

    def test_15(self):
        """mount (nogc) & ro remount & umount"""
        self.mount_nogc()
        self.remount_ro()
        self.umount()

    def test_16(self):
        """mount (rw) & snapshot mount & umount (rw) & umount (snapshot)"""
        ssdir = self.ctx.snapshot_mount_point

        self.mount_rw()

        # The snapshot mount leaves the read-write mount and its cleaner alone.
        self.mount_snapshot()
        self.expect_rw()
        self.use_ss()

        self._umount()
        self.expect_unmounted()
        check_mount(self.ctx, ssdir)
        check_noutab(self.ctx, ssdir)
        check_no_cleanerd(self.ctx, ssdir)
        self.use_ss()

        self.umount(ssdir)
        self.expect_unmounted()

    def test_17(self):
        """mount (snapshot) & mount (rw) & ro remount & umount (snapshot) & umount (ro)"""
        ssdir = self.ctx.snapshot_mount_point

        self.mount_snapshot()
        check_noutab(self.ctx)
        self.use_ss()

        self._mount()
        self.expect_rw()
        check_no_cleanerd(self.ctx, ssdir)
        self.use_rw()

        self._remount("ro")
        self.expect_remounted_ro()
        check_no_cleanerd(self.ctx, ssdir)
        self.use_ro()

        self._umount(ssdir)
        self.expect_unmounted(ssdir)
        self.expect_remounted_ro()

        self.umount()


def run_scenarios(ctx: RunContext, numbers: Optional[Iterable[int]] = None) -> int:
    """
    Run the mount scenarios against the prepared context ``ctx``.

    :param ctx: A ``RunContext`` prepared by ``nilmount.fixture.prepare()``.
    :param numbers: Optional scenario numbers to run; default all.
    :returns: The number of scenarios that succeeded.
    """
    return MountScenarios(ctx).run(numbers)


__all__ = [
    "Scenario",
    "MountScenarios",
    "run_scenarios",
]

# vim: set et ts=4 sw=4 :
