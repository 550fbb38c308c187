# Copyright Red Hat
#
# tests/test_mounts.py - Mount operations tests
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
from subprocess import CalledProcessError, TimeoutExpired
import unittest
import unittest.mock
import logging
import tempfile
import os.path

import nilmount
import nilmount.system._mounts as mounts
from nilmount.system import SysMountOps, ProcMountsReader

log = logging.getLogger()

MOUNTS_TEXT = (
    "proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n"
    "/dev/vdb1 /mnt/test nilfs2 rw,relatime 0 0\n"
    "/dev/vdb1 /mnt/snap nilfs2 ro,relatime,cp=3 0 0\n"
    "/dev/vdc1 /mnt/with\\040space nilfs2 rw 0 0\n"
    "malformed line\n"
    "/dev/vdd1 /mnt/test nilfs2 rw 0 0\n"
)


class MountsTestsSimple(unittest.TestCase):
    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tmpdir = tempfile.TemporaryDirectory(suffix="_test_mounts")
        self.mounts_path = os.path.join(self._tmpdir.name, "mounts")
        self.utab_path = os.path.join(self._tmpdir.name, "utab")
        with open(self.mounts_path, "w", encoding="utf8") as fp:
            fp.write(MOUNTS_TEXT)
        self.echoed = []
        self.ops = SysMountOps(
            mounts_path=self.mounts_path,
            utab_path=self.utab_path,
            echo=self.echoed.append,
        )

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)
        self._tmpdir.cleanup()

    def test__merge_options(self):
        self.assertEqual(mounts._merge_options("remount", "ro"), "remount,ro")
        self.assertEqual(mounts._merge_options("remount", ""), "remount")
        self.assertEqual(mounts._merge_options(None, "nogc"), "nogc")

    def test__split_options(self):
        self.assertEqual(mounts._split_options("remount,ro"), ["remount", "ro"])
        self.assertEqual(mounts._split_options(None), [])

    def test_proc_mounts_reader(self):
        reader = ProcMountsReader(self.mounts_path)
        entries = list(reader.entries())
        self.assertEqual(len(entries), 5)
        self.assertEqual(entries[0].fstype, "proc")

        nilfs = list(reader.entries("nilfs2"))
        self.assertEqual(len(nilfs), 4)
        self.assertEqual(nilfs[2].where, "/mnt/with space")
        self.assertEqual(nilfs[1].options, "ro,relatime,cp=3")

    def test_proc_mounts_reader_missing(self):
        reader = ProcMountsReader(os.path.join(self._tmpdir.name, "nonexistent"))
        with self.assertRaises(nilmount.NilmountNotFoundError):
            list(reader.entries())

    def test_proc_mounts_reader_unreadable(self):
        reader = ProcMountsReader(self._tmpdir.name)
        with self.assertRaises(nilmount.NilmountSystemError):
            list(reader.entries())

    def test_find_mount(self):
        # The topmost of the stacked mounts on /mnt/test wins.
        self.assertEqual(self.ops.find_mount("/mnt/test").what, "/dev/vdd1")
        self.assertEqual(self.ops.find_mount("/mnt/snap").what, "/dev/vdb1")
        self.assertIsNone(self.ops.find_mount("/mnt/none"))

    def test_is_mounted(self):
        self.assertTrue(self.ops.is_mounted("/dev/vdb1", "/mnt/test"))
        self.assertTrue(self.ops.is_mounted("/dev/vdc1", "/mnt/with space"))
        self.assertFalse(self.ops.is_mounted("/dev/vdc1", "/mnt/test"))
        self.assertFalse(self.ops.is_mounted("proc", "/proc"))

    def test_utab(self):
        utab = self.ops.utab()
        self.assertFalse(utab.exists)
        self.assertEqual(utab.path, self.utab_path)

    @unittest.mock.patch("nilmount.system._mounts.run")
    def test_mount(self, mock_run):
        self.ops.mount("/dev/vdb1", "/mnt/test")
        self.ops.mount("/dev/vdb1", "/mnt/test", readonly=True)
        self.ops.mount("/dev/vdb1", "/mnt/test", options="nogc")
        self.ops.mount("/dev/vdb1", "/mnt/snap", options="ro,cp=3")
        calls = [call[0][0] for call in mock_run.call_args_list]
        self.assertEqual(
            calls,
            [
                ["mount", "-t", "nilfs2", "/dev/vdb1", "/mnt/test"],
                ["mount", "-t", "nilfs2", "-r", "/dev/vdb1", "/mnt/test"],
                ["mount", "-t", "nilfs2", "-o", "nogc", "/dev/vdb1", "/mnt/test"],
                ["mount", "-t", "nilfs2", "-o", "ro,cp=3", "/dev/vdb1", "/mnt/snap"],
            ],
        )
        self.assertEqual(self.echoed[1], "mount -t nilfs2 -r /dev/vdb1 /mnt/test")
        self.assertTrue(mock_run.call_args[1]["check"])

    @unittest.mock.patch("nilmount.system._mounts.run")
    def test_remount(self, mock_run):
        for options in ("ro", "rw", "nogc"):
            self.ops.remount("/dev/vdb1", "/mnt/test", options)
            self.assertEqual(
                mock_run.call_args[0][0],
                ["mount", "-t", "nilfs2", "-o", f"remount,{options}",
                 "/dev/vdb1", "/mnt/test"],
            )
        self.assertEqual(
            self.echoed,
            [
                "mount -t nilfs2 -o remount,ro /dev/vdb1 /mnt/test",
                "mount -t nilfs2 -o remount,rw /dev/vdb1 /mnt/test",
                "mount -t nilfs2 -o remount,nogc /dev/vdb1 /mnt/test",
            ],
        )

    @unittest.mock.patch("nilmount.system._mounts.run")
    def test_umount(self, mock_run):
        self.ops.umount("/mnt/with space")
        mock_run.assert_called_once()
        self.assertEqual(mock_run.call_args[0][0], ["umount", "/mnt/with space"])
        self.assertEqual(self.echoed, ["umount '/mnt/with space'"])

    @unittest.mock.patch("nilmount.system._mounts.run")
    def test_mount_errors(self, mock_run):
        mock_run.side_effect = CalledProcessError(
            32, "mount", stderr="mount: /mnt/test: wrong fs type.\n"
        )
        with self.assertRaises(nilmount.NilmountMountError) as cm:
            self.ops.mount("/dev/vdb1", "/mnt/test")
        self.assertEqual(cm.exception.status, 32)
        self.assertEqual(cm.exception.stderr, "mount: /mnt/test: wrong fs type.")

        mock_run.side_effect = FileNotFoundError(2, "No such file", "mount")
        with self.assertRaises(nilmount.NilmountNotFoundError):
            self.ops.mount("/dev/vdb1", "/mnt/test")

        mock_run.side_effect = TimeoutExpired("mount", 60)
        with self.assertRaises(nilmount.NilmountCalloutError):
            self.ops.remount("/dev/vdb1", "/mnt/test", "ro")

    @unittest.mock.patch("nilmount.system._mounts.run")
    def test_umount_errors(self, mock_run):
        mock_run.side_effect = CalledProcessError(32, "umount", stderr=None)
        with self.assertRaises(nilmount.NilmountUmountError) as cm:
            self.ops.umount("/mnt/test")
        self.assertEqual(cm.exception.stderr, "")

        mock_run.side_effect = FileNotFoundError(2, "No such file", "umount")
        with self.assertRaises(nilmount.NilmountNotFoundError):
            self.ops.umount("/mnt/test")

        mock_run.side_effect = TimeoutExpired("umount", 60)
        with self.assertRaises(nilmount.NilmountCalloutError):
            self.ops.umount("/mnt/test")
