"""
gpkgworker Protocol Layer
=========================

This package defines the transport-agnostic messaging protocol spoken
between a controller and a GeoPackage worker. It provides the message
envelope, construction utilities for replies, and the framing used when a
message has to be turned into bytes.

The protocol layer MUST NOT depend on any transport implementation.

---------------------------------------------------------------------

Layer Architecture Overview
---------------------------

Controller code (provider, tiles, features, exporter)
    │
    ▼
Bus (bus.py)
    send(), request(), listen()
    Correlates replies with outstanding requests

    │
    ▼
Message Model (message.py)
    - Message   the request envelope
    - Response  success/error wrapper around a request
    Defines semantic meaning only

    │
    ▼
Reply construction (factory.py)
    - success(), error(), progress()
    - tile_key() for matching tile replies
    Guarantees large payloads are never echoed back

    │
    ▼
Field Vocabulary (fields.py)
    Canonical names for kinds, commands and status values

---------------------------------------------------------------------

Below the Protocol Layer (for context)
--------------------------------------

Framing (wire.py)
    Maps Message/Response <-> multipart byte frames

Transport Layer
    Moves envelopes between controller and worker
    - background thread (structured objects)
    - child process (ZeroMQ frames)

---------------------------------------------------------------------
"""

from . import fields
from . import message
from . import factory
from . import wire

from .message import Message, Response, PROTOCOL_VERSION


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
