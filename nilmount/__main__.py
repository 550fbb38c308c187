# Copyright Red Hat
#
# nilmount/__main__.py - NILFS2 mount tester module entry point
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Run the nilmount command line interface with ``python -m nilmount``.
"""
from nilmount.command import run

if __name__ == "__main__":
    run()

# vim: set et ts=4 sw=4 :
