"""Request/response message bus between a controller and a worker.

The controller side is the :class:`Bus`: it sends :class:`Message` requests
through a transport, fans inbound :class:`Response` objects out to its
listeners, and correlates replies with outstanding :class:`PendingRequest`
instances. The worker side is the :class:`Dispatcher`, which routes each
inbound message to the handler registered for its kind and guarantees that
a handler failure becomes an error reply instead of a dead worker.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Callable, Dict, List, Optional, Tuple

from .protocol import factory
from .protocol.message import Message, Response
from .transport.base import Transport, TransportConnectionError

logger = logging.getLogger(__name__)


def _reference(callback):
    """Return a weak reference to *callback*, regardless of whether it is a
    plain function or a bound method.
    """

    try:
        callback.__func__
        callback.__self__
    except AttributeError:
        return weakref.ref(callback)
    else:
        return weakref.WeakMethod(callback)


def correlation(message: Message) -> Tuple:
    """Return the key used to match a reply to the request it answers."""
    return (message.id, message.kind, message.command, message.table)


class PendingRequest:
    """Controller-side helper that waits for the reply to one request."""

    def __init__(self, message: Message):
        self.message = message
        self.response: Optional[Response] = None
        self.event = threading.Event()
        self._callbacks: List[Callable] = []
        self._lock = threading.Lock()

    @property
    def key(self) -> Tuple:
        return correlation(self.message)

    @property
    def done(self) -> bool:
        return self.event.is_set()

    def add_callback(self, callback: Callable[[Response], None]) -> None:
        """Invoke *callback* with the response once it arrives. If it already
        has, the callback is invoked immediately.
        """

        with self._lock:
            if not self.event.is_set():
                self._callbacks.append(callback)
                return

        callback(self.response)

    def wait(self, timeout: Optional[float] = 60) -> Optional[Response]:
        self.event.wait(timeout)
        return self.response

    def _complete(self, response: Optional[Response]) -> None:
        with self._lock:
            self.response = response
            self.event.set()
            callbacks = self._callbacks
            self._callbacks = []

        for callback in callbacks:
            try:
                callback(response)
            except Exception:
                logger.exception("reply callback failed for %r", self.message)


class Bus:
    """Controller end of the message bus.

    Responses are delivered on the transport's receiving thread, first to
    any matching :class:`PendingRequest` and then to every listener. A reply
    that matches nothing is simply ignored by the requests; it is still
    offered to listeners, which are expected to check for themselves whether
    the reply is one they are waiting for.

    If the worker goes away on its own, every outstanding request completes
    with an error reply, and every watcher is invoked with the reason.
    """

    def __init__(self, transport: Transport):
        self.transport = transport
        self._listeners: List = []
        self._watchers: List = []
        self._pending: Dict[Tuple, List[PendingRequest]] = {}
        self._lock = threading.Lock()

        transport.set_receiver(self._receive)
        transport.set_lost_handler(self._lost)

    def start(self) -> None:
        self.transport.start()

    def close(self) -> None:
        self.transport.close()

        for request in self._release():
            request._complete(None)

    def _release(self) -> List[PendingRequest]:
        with self._lock:
            pending = self._pending
            self._pending = {}

        return [request for waiting in pending.values() for request in waiting]

    def _lost(self, reason: str) -> None:
        logger.error("lost the worker: %s", reason)

        for request in self._release():
            request._complete(factory.error(request.message, reason))

        with self._lock:
            watchers = list(self._watchers)

        for reference in watchers:
            callback = reference()
            if callback is None:
                continue

            try:
                callback(reason)
            except Exception:
                logger.exception("watcher %r failed", callback)

    def watch(self, callback: Callable[[str], None]) -> None:
        """Register *callback* to be invoked with the reason if the worker
        goes away. Only a weak reference to the callback is retained.
        """

        reference = _reference(callback)

        with self._lock:
            self._watchers.append(reference)

    def unwatch(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            for reference in list(self._watchers):
                target = reference()
                if target is None or target == callback:
                    self._watchers.remove(reference)

    @property
    def is_open(self) -> bool:
        return self.transport.is_open

    def send(self, message: Message) -> None:
        """Transmit *message* without waiting for anything to come back."""

        if not self.transport.is_open:
            raise TransportConnectionError("the worker transport is not running")

        logger.debug("send %r", message)
        self.transport.send(message)

    def request(self, message: Message) -> PendingRequest:
        """Send *message* and return a :class:`PendingRequest` that completes
        with the first reply matching its correlation key.
        """

        pending = PendingRequest(message)
        key = pending.key

        with self._lock:
            self._pending.setdefault(key, []).append(pending)

        try:
            self.send(message)
        except Exception:
            self._forget(pending)
            raise

        return pending

    def _forget(self, pending: PendingRequest) -> None:
        key = pending.key

        with self._lock:
            try:
                waiting = self._pending[key]
            except KeyError:
                return

            if pending in waiting:
                waiting.remove(pending)
            if not waiting:
                del self._pending[key]

    def listen(self, callback: Callable[[Response], None]) -> None:
        """Register *callback* to receive every inbound response. Only a weak
        reference to the callback is retained.
        """

        reference = _reference(callback)

        with self._lock:
            self._listeners.append(reference)

    def unlisten(self, callback: Callable[[Response], None]) -> None:
        with self._lock:
            for reference in list(self._listeners):
                target = reference()
                if target is None or target == callback:
                    self._listeners.remove(reference)

    def _receive(self, response: Response) -> None:
        logger.debug("receive %r", response)

        key = correlation(response.message)
        pending = None

        with self._lock:
            try:
                waiting = self._pending[key]
            except KeyError:
                waiting = None

            if waiting:
                pending = waiting.pop(0)
                if not waiting:
                    del self._pending[key]

            listeners = list(self._listeners)

        if pending is not None:
            pending._complete(response)

        invalid = []

        for reference in listeners:
            callback = reference()
            if callback is None:
                invalid.append(reference)
                continue

            try:
                callback(response)
            except Exception:
                logger.exception("listener %r failed on %r", callback, response)

        if invalid:
            with self._lock:
                for reference in invalid:
                    if reference in self._listeners:
                        self._listeners.remove(reference)


class Dispatcher:
    """Worker end of the message bus.

    Subclasses populate :attr:`commands`, mapping a message kind to the
    handler for it. Replies are handed to the *post* callable supplied by
    the transport.
    """

    def __init__(self, post: Callable[[Response], None]):
        self.post = post
        self.commands: Dict[str, Callable[[Message], None]] = {}

    def dispatch(self, message: Message) -> None:
        try:
            handler = self.commands[message.kind]
        except KeyError:
            self.reply_error(message, "unknown message kind")
            return

        try:
            handler(message)
        except Exception as e:
            logger.error("%s failed: %s", message.kind, e)
            logger.debug("traceback for %r", message, exc_info=True)
            self.reply_error(message, e)

    def reply_success(self, original: Message, result=None, **fields) -> None:
        self.post(factory.success(original, result, **fields))

    def reply_error(self, original: Message, reason) -> None:
        self.post(factory.error(original, reason))
