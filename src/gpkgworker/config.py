""" Runtime configuration for gpkgworker. Every setting can be overridden
    with an environment variable; the values are read each time one of the
    accessor functions is invoked, so that a test (or a parent process
    preparing the environment for a child worker) can adjust them without
    reloading this module.
"""

import os
import tempfile

# Which transport to use when none is explicitly requested: 'thread' runs
# the worker in a background thread of this process, 'process' runs it in
# a child Python process connected via ZeroMQ.

default_transport = 'thread'

# The cross-process transport returns the exported package in slices no
# larger than this; a single message carrying a very large package is
# expensive to frame and to buffer on both ends.

default_chunk_size = 1024 * 1024

# Number of features inserted per database transaction during an export;
# a progress reply is issued after each batch.

default_batch_size = 10000

# Scaling policy applied to every tile table: requests may be satisfied by
# native tiles up to zoom_in levels finer, or zoom_out levels coarser, than
# the requested zoom level.

scaling_zoom_in = 25
scaling_zoom_out = 4

# Seconds to wait for a synchronous reply before giving up.

default_timeout = 60


def _integer(name, default):

    try:
        value = os.environ[name]
    except KeyError:
        return default

    value = int(value)
    if value < 1:
        raise ValueError("%s must be a positive integer, not %d" % (name, value))

    return value


def transport():
    """ Return the name of the transport selected for this process.
    """

    name = os.environ.get('GPKGWORKER_TRANSPORT', default_transport)
    name = name.strip().lower()

    if name not in ('thread', 'process'):
        raise ValueError("unknown GPKGWORKER_TRANSPORT: %r" % (name))

    return name


def chunk_size():
    return _integer('GPKGWORKER_CHUNK_SIZE', default_chunk_size)


def batch_size():
    return _integer('GPKGWORKER_BATCH_SIZE', default_batch_size)


def timeout():
    return _integer('GPKGWORKER_TIMEOUT', default_timeout)


def directory():
    """ Return the directory where temporary package files are kept. The
        directory is created if it does not already exist.
    """

    try:
        directory = os.environ['GPKGWORKER_TMPDIR']
    except KeyError:
        directory = os.path.join(tempfile.gettempdir(), 'gpkgworker')

    os.makedirs(directory, exist_ok=True)
    return directory


def log_level():
    return os.environ.get('GPKGWORKER_LOG_LEVEL', 'WARNING').upper()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
