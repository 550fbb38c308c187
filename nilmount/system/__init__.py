# Copyright Red Hat
#
# nilmount/system/__init__.py - NILFS2 mount tester OS interfaces
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Narrow interfaces to the operating system facilities that nilmount drives
and observes: the mount programs and tables, the NILFS2 cleaner daemon, and
the NILFS2 checkpoint tools.
"""

from ._mounts import MountOps, SysMountOps, ProcMountsReader
from ._cleaner import CleanerProbe, ProcCleanerProbe
from ._nilfs import NilfsTools, SysNilfsTools

__all__ = [
    "MountOps",
    "SysMountOps",
    "ProcMountsReader",
    "CleanerProbe",
    "ProcCleanerProbe",
    "NilfsTools",
    "SysNilfsTools",
]

# vim: set et ts=4 sw=4 :
