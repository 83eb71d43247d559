"""In-process transport: the worker runs on a background thread.

Messages travel as structured objects through a pair of queues. One thread
runs the worker, handling messages strictly in arrival order; a second
thread delivers the worker's responses to the receiver, so that a slow
listener never stalls the worker.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from ..protocol import fields
from ..protocol.message import Message
from .base import Transport, TransportConnectionError

logger = logging.getLogger(__name__)


class ThreadTransport(Transport):
    """Run a :class:`gpkgworker.worker.Worker` on a background thread.

    The exported package is returned in one piece: the in-process channel
    does not copy the buffer, so there is nothing to gain from chunking it.
    """

    def __init__(self, chunk_size: Optional[int] = None, batch_size: Optional[int] = None):
        Transport.__init__(self)

        self.chunk_size = chunk_size
        self.batch_size = batch_size

        self._inbox = queue.SimpleQueue()
        self._outbox = queue.SimpleQueue()
        self._worker_thread: Optional[threading.Thread] = None
        self._delivery_thread: Optional[threading.Thread] = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def start(self) -> None:
        if self._open:
            return

        from ..worker import Worker

        worker = Worker(self._outbox.put, chunk_size=self.chunk_size, batch_size=self.batch_size)

        self._worker_thread = threading.Thread(target=self._run_worker, args=(worker,),
                                               name="gpkgworker", daemon=True)
        self._delivery_thread = threading.Thread(target=self._run_delivery,
                                                 name="gpkgworker-delivery", daemon=True)
        self._open = True
        self._worker_thread.start()
        self._delivery_thread.start()

        logger.info("started worker thread")
        self.send(Message(fields.OPEN_LIBRARY))

    def close(self) -> None:
        if not self._open:
            return

        self._open = False
        self._inbox.put(None)

        current = threading.current_thread()
        for thread in (self._worker_thread, self._delivery_thread):
            if thread is not None and thread is not current:
                thread.join(10)

        logger.info("stopped worker thread")

    def send(self, msg: Message) -> None:
        if not self._open:
            raise TransportConnectionError("the worker thread is not running")

        self._inbox.put(msg)

    def _run_worker(self, worker) -> None:
        try:
            while True:
                message = self._inbox.get()
                if message is None:
                    break

                worker.dispatch(message)
        finally:
            worker.close_all()
            self._outbox.put(None)

    def _run_delivery(self) -> None:
        while True:
            response = self._outbox.get()
            if response is None:
                break

            try:
                self.deliver(response)
            except Exception:
                logger.exception("failed to deliver %r", response)
