# Copyright Red Hat
#
# nilmount/__init__.py - NILFS2 mount tester package initialisation
#
# This file is part of the nilmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Nilmount top-level package.
"""
from ._nilmount import *  # noqa: F401, F403
from ._nilmount import __all__  # noqa: F401

__version__ = "0.1.0"

# vim: set et ts=4 sw=4 :
