# Copyright Red Hat
#
# snapmount/__init__.py - Snapshot mount package initialisation
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapmount top-level package.
"""
from ._snapmount import *  # noqa: F401, F403
from ._snapmount import __all__  # noqa: F401

__version__ = "0.1.0"
