"""Transport layer implementations."""

from .. import config

from .base import (
    Transport,
    TransportError,
    TransportTimeout,
    TransportConnectionError,
)


def create(name=None, **kwargs):
    """Return a new, unstarted transport. The *name* is 'thread' or
    'process'; if it is not specified the GPKGWORKER_TRANSPORT environment
    variable decides. Keyword arguments are passed to the transport.
    """

    if name is None:
        name = config.transport()

    if name == "thread":
        from .thread import ThreadTransport
        return ThreadTransport(**kwargs)

    if name == "process":
        from .process import ProcessTransport
        return ProcessTransport(**kwargs)

    raise ValueError(f"unknown transport: {name!r}")
