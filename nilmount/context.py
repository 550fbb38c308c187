# Copyright Red Hat
#
# nilmount/context.py - NILFS2 mount tester run context
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
The state shared by fixture preparation, checks and scenarios.
"""
from dataclasses import dataclass, field
from typing import Optional
import os

from nilmount import (
    NILMOUNT_SETTLE_TIMEOUT,
    NILMOUNT_POLL_INTERVAL,
    RANDFILE,
)
from nilmount.system import (
    MountOps,
    SysMountOps,
    CleanerProbe,
    ProcCleanerProbe,
    NilfsTools,
    SysNilfsTools,
)


# pylint: disable=too-many-instance-attributes
@dataclass
class RunContext:
    """
    Everything a test run knows about the system under test.

    ``device`` may be left unset until fixture preparation adopts the
    device mounted at ``mount_point``; ``snapshot_cno`` is filled in by
    fixture preparation.

    Mount points are stored as absolute paths without trailing separators
    so that they compare equal to the mount table and utab entries.
    """

    #: Primary mount point.
    mount_point: str
    #: Mount point for read-only snapshot mounts.
    snapshot_mount_point: str
    #: NILFS2 block device under test.
    device: Optional[str] = None
    #: Snapshot checkpoint number used for snapshot mounts.
    snapshot_cno: Optional[int] = None
    #: Random data file used by read-write workloads.
    randfile: str = RANDFILE
    #: Dump the utab file after each mount command.
    verbose: bool = False
    #: Maximum time to wait for the system to reach an expected state.
    settle_timeout: float = NILMOUNT_SETTLE_TIMEOUT
    #: Interval between state polls while settling.
    poll_interval: float = NILMOUNT_POLL_INTERVAL
    ops: MountOps = field(default_factory=SysMountOps)
    cleaner: CleanerProbe = field(default_factory=ProcCleanerProbe)
    nilfs: NilfsTools = field(default_factory=SysNilfsTools)

    def __post_init__(self):
        self.mount_point = os.path.abspath(self.mount_point)
        self.snapshot_mount_point = os.path.abspath(self.snapshot_mount_point)

    def path(self, mount_point: Optional[str] = None) -> str:
        """
        Return ``mount_point`` as an absolute path or, if unset, the primary
        mount point.
        """
        return os.path.abspath(mount_point) if mount_point else self.mount_point


__all__ = ["RunContext"]

# vim: set et ts=4 sw=4 :
