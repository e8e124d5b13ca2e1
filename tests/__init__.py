# Copyright Red Hat
#
# tests/__init__.py - Snapshot mount test package
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
import logging

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)


class MockArgs(object):
    debug = None
    verbose = 0
    version = False
    config = "/nonexistent/snapmount.conf"
    target = None
    root = None
    excludes = None
    pools = None
    exec = False
    suid = False
    devfs = False
    tmpfs = None
    passthrough = None
    include_altroot = False
    mountable = False
    command = None

