"""Transport interface.

This is the (small) contract that transport implementations should follow.
It lives outside :mod:`gpkgworker.protocol` so the protocol remains
transport-agnostic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..protocol.message import Message, Response


# Transport agnostic exceptions

class TransportError(Exception):
    """Base class for all transport-layer errors."""


class TransportTimeout(TransportError):
    """A request did not receive a timely response."""


class TransportConnectionError(TransportError):
    """The transport could not establish or maintain its worker."""


class Transport(ABC):
    """Moves :class:`Message` objects to a worker, and hands the worker's
    :class:`Response` objects to the receiver callable, on a thread owned
    by the transport.
    """

    def __init__(self):
        self.receiver: Optional[Callable[[Response], None]] = None
        self.lost_handler: Optional[Callable[[str], None]] = None

    def set_receiver(self, receiver: Callable[[Response], None]) -> None:
        """Establish where inbound responses are delivered."""
        self.receiver = receiver

    def set_lost_handler(self, handler: Callable[[str], None]) -> None:
        """Establish who is told when the worker goes away on its own."""
        self.lost_handler = handler

    def lost(self, reason: str) -> None:
        handler = self.lost_handler
        if handler is not None:
            handler(reason)

    def deliver(self, response: Response) -> None:
        receiver = self.receiver
        if receiver is not None:
            receiver(response)

    @abstractmethod
    def start(self) -> None:
        """Start the worker and bootstrap it with an open-library message."""

    @abstractmethod
    def close(self) -> None:
        """Stop the worker; any open packages are closed."""

    @abstractmethod
    def send(self, msg: Message) -> None:
        """Send a protocol Message without waiting for a response."""

    @property
    def is_open(self) -> bool:
        """Whether the worker is currently running."""
        return False
