""" Implementation of the top-level :func:`get` method. This is intended to
    be the principal entry point for code that needs a running worker.
"""

import atexit
import logging
import threading

from . import config
from . import transport
from .bus import Bus

logger = logging.getLogger(__name__)


_cache = dict()
_lock = threading.Lock()


def _clear(name):
    """ Remove the cached :class:`Bus` for the named transport. Returns None
        if there was nothing to clear; otherwise the removed instance is
        returned, so that the caller can close it.
    """

    with _lock:
        try:
            existing = _cache[name]
        except KeyError:
            return

        del _cache[name]
        return existing



def get(name=None):
    """ Return a started :class:`Bus` connected to a worker. The *name*
        selects the transport, 'thread' or 'process'; if it is not specified
        the GPKGWORKER_TRANSPORT environment variable decides.

        If the caller always uses :func:`get` they will always receive the
        same :class:`Bus` for a given transport, and thus share one worker.
    """

    if name is None:
        name = config.transport()

    with _lock:
        try:
            return _cache[name]
        except KeyError:
            pass

        bus = Bus(transport.create(name))
        bus.start()
        _cache[name] = bus

    return bus



def shutdown():
    """ Stop every worker started via :func:`get`.
    """

    for name in list(_cache.keys()):
        bus = _clear(name)
        if bus is None:
            continue

        try:
            bus.close()
        except Exception:
            logger.exception("failed to stop the %s worker", name)


atexit.register(shutdown)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
