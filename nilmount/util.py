# Copyright Red Hat
#
# nilmount/util.py - NILFS2 mount tester console utilities.
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Console output helpers for test progress and failures.
"""
import sys

_RED = "\x1b[31m"
_RESET = "\x1b[m"


def log_print(*args, **kwargs):
    kwargs.setdefault("flush", True)
    print(*args, **kwargs)


def err_print(*args, **kwargs):
    kwargs.setdefault("flush", True)
    kwargs.setdefault("file", sys.stderr)
    print(*args, **kwargs)


def fatal_print(msg: str):
    """
    Print a fatal error message to stderr, highlighted in red.
    """
    err_print(f"{_RED}{msg}{_RESET}")


__all__ = ["log_print", "err_print", "fatal_print"]

# vim: set et ts=4 sw=4 :
