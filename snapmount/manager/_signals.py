# Copyright Red Hat
#
# snapmount/manager/_signals.py - Snapshot mount signal handling
#
# This file is part of the snapmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Deferral of SIGINT and SIGTERM while a pool snapshot is taken, held and
marked for deferred destruction.

A signal that arrives inside the critical section stays pending and is
delivered once the caller's original signal mask is restored.
"""
from signal import SIG_BLOCK, SIG_SETMASK, SIGINT, SIGTERM, pthread_sigmask
from contextlib import contextmanager
from functools import wraps
import logging

from snapmount import SNAPMOUNT_SUBSYSTEM_ZFS

_log = logging.getLogger(__name__)


def _log_debug_zfs(msg, *args, **kwargs):
    """A wrapper for zfs subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPMOUNT_SUBSYSTEM_ZFS}, **kwargs)


DEFERRED_SIGNALS = frozenset({SIGINT, SIGTERM})


@contextmanager
def signals_deferred(signals=DEFERRED_SIGNALS):
    """
    Context manager that blocks ``signals`` for the duration of the body
    and restores the previous mask on exit, delivering anything pending.

    Nested use is safe: an inner block restores the mask set by the outer
    one, so signals stay blocked until the outermost block exits.
    """
    previous = pthread_sigmask(SIG_BLOCK, signals)
    _log_debug_zfs("Deferring signals %s", sorted(int(s) for s in signals))
    try:
        yield
    finally:
        pthread_sigmask(SIG_SETMASK, previous)
        _log_debug_zfs("Restored signal mask %s", sorted(int(s) for s in previous))


def suspend_signals(func):
    """
    Decorator running ``func`` inside ``signals_deferred()``.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        with signals_deferred():
            return func(*args, **kwargs)

    return wrapper


__all__ = [
    "DEFERRED_SIGNALS",
    "signals_deferred",
    "suspend_signals",
]
