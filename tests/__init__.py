# Copyright Red Hat
#
# tests/__init__.py - NILFS2 mount tester test package
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)

#: A scratch NILFS2 block device for tests that drive the real system.
NILMOUNT_TEST_DEVICE = os.getenv("NILMOUNT_TEST_DEVICE")


class MockArgs(object):
    device = None
    debug = None
    verbose = 0
    version = False
    list = False
    scenario = None
    settle_timeout = 1.0
    mount_point = None
    snapshot_mount_point = None


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0


def have_test_device():
    """Return ``True`` if a scratch NILFS2 device was configured with
    ``NILMOUNT_TEST_DEVICE`` and the suite can use it.
    """
    return bool(NILMOUNT_TEST_DEVICE) and have_root()
