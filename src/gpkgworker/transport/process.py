"""Cross-process transport: the worker runs in a child Python process.

The parent binds a ZeroMQ PAIR socket to a random loopback port and starts
``python -m gpkgworker.worker tcp://127.0.0.1:<port>``; the child connects
back to it. Envelopes travel as multipart frames (see
:mod:`gpkgworker.protocol.wire`), so package bytes, tile images and export
chunks move as raw binary frames instead of being embedded in JSON.

Only the background thread ever touches the PAIR socket. Outbound messages
are queued, and the thread is woken up via an inproc signal socket.
"""

from __future__ import annotations

import itertools
import logging
import os
import queue
import subprocess
import sys
import threading
from typing import Optional

import zmq

from ..protocol import factory
from ..protocol import fields
from ..protocol import wire
from ..protocol.message import Message, Response
from .base import Transport, TransportConnectionError

logger = logging.getLogger(__name__)

zmq_context = zmq.Context.instance()
_instances = itertools.count()


class ProcessTransport(Transport):
    """Run a :class:`gpkgworker.worker.Worker` in a child process.

    The exported package is returned in slices of at most *chunk_size*
    bytes; if not specified the GPKGWORKER_CHUNK_SIZE environment variable
    (or its default) applies in the child.
    """

    poll_interval = 1000  # milliseconds
    send_timeout = 30000  # milliseconds
    shutdown_timeout = 10

    def __init__(self, chunk_size: Optional[int] = None, batch_size: Optional[int] = None,
                 executable: Optional[str] = None):
        Transport.__init__(self)

        self.chunk_size = chunk_size
        self.batch_size = batch_size
        self.executable = executable or sys.executable

        self.address: Optional[str] = None
        self.process: Optional[subprocess.Popen] = None
        self.socket = None

        self._outbox = queue.SimpleQueue()
        self._signal_rx = None
        self._signal_tx = None
        self._signal_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._open = False
        self.shutdown = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _environment(self) -> dict:
        environment = dict(os.environ)

        if self.chunk_size is not None:
            environment["GPKGWORKER_CHUNK_SIZE"] = str(self.chunk_size)
        if self.batch_size is not None:
            environment["GPKGWORKER_BATCH_SIZE"] = str(self.batch_size)

        # The child must be able to import this package even when it is
        # not installed, for example when running from a source checkout.

        package = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        existing = environment.get("PYTHONPATH")
        if existing:
            environment["PYTHONPATH"] = package + os.pathsep + existing
        else:
            environment["PYTHONPATH"] = package

        return environment

    def start(self) -> None:
        if self._open:
            return

        self.socket = zmq_context.socket(zmq.PAIR)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.setsockopt(zmq.SNDTIMEO, self.send_timeout)
        port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        self.address = f"tcp://127.0.0.1:{port}"

        internal = f"inproc://gpkgworker.ProcessTransport:signal:{next(_instances)}"
        self._signal_rx = zmq_context.socket(zmq.PAIR)
        self._signal_rx.bind(internal)
        self._signal_tx = zmq_context.socket(zmq.PAIR)
        self._signal_tx.connect(internal)

        command = [self.executable, "-m", "gpkgworker.worker", self.address]

        try:
            self.process = subprocess.Popen(command, env=self._environment())
        except OSError as e:
            self._close_sockets()
            raise TransportConnectionError(f"cannot start worker process: {e}") from e

        self.shutdown = False
        self._open = True
        self._thread = threading.Thread(target=self.run, name="gpkgworker-process", daemon=True)
        self._thread.start()

        logger.info("started worker process %d on %s", self.process.pid, self.address)
        self.send(Message(fields.OPEN_LIBRARY))

    def close(self) -> None:
        if self.socket is None:
            return

        self._open = False
        self.shutdown = True
        self._signal()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(self.shutdown_timeout)

        process = self.process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(self.shutdown_timeout)
            except subprocess.TimeoutExpired:
                logger.error("worker process %d did not exit, killing it", process.pid)
                process.kill()
                process.wait()

        self._close_sockets()
        logger.info("stopped worker process")

    def _close_sockets(self) -> None:
        for socket in (self.socket, self._signal_rx, self._signal_tx):
            if socket is not None:
                socket.close(linger=0)

        self.socket = None
        self._signal_rx = None
        self._signal_tx = None

    def send(self, msg: Message) -> None:
        if not self._open:
            raise TransportConnectionError("the worker process is not running")

        self._outbox.put(msg)
        self._signal()

    def _signal(self) -> None:
        with self._signal_lock:
            if self._signal_tx is not None:
                self._signal_tx.send(b"")

    def _handle_outgoing(self) -> None:
        # Clear one signal and send one message.
        self._signal_rx.recv(flags=zmq.NOBLOCK)

        try:
            message = self._outbox.get(block=False)
        except queue.Empty:
            return

        try:
            frames = wire.pack(message)
        except TypeError as e:
            logger.error("cannot send %r: %s", message, e)
            self.deliver(factory.error(message, e))
            return

        try:
            self.socket.send_multipart(frames)
        except zmq.Again:
            logger.error("cannot send %r: the worker process is not connected", message)
            self.deliver(factory.error(message, "the worker process is not connected"))

    def _handle_incoming(self, parts) -> None:
        try:
            response = wire.unpack(parts)
        except (wire.FramingError, ValueError, KeyError) as e:
            logger.error("discarding malformed reply from the worker: %s", e)
            return

        if not isinstance(response, Response):
            logger.error("discarding unexpected %r from the worker", response)
            return

        self.deliver(response)

    def run(self) -> None:
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self._signal_rx, zmq.POLLIN)

        while not self.shutdown:
            events = poller.poll(self.poll_interval)

            for active, _flag in events:
                if self.shutdown:
                    break

                if active == self._signal_rx:
                    self._handle_outgoing()
                elif active == self.socket:
                    parts = self.socket.recv_multipart()
                    try:
                        self._handle_incoming(parts)
                    except Exception:
                        logger.exception("failed to deliver a reply from the worker")

            if not events and self.process.poll() is not None:
                code = self.process.returncode
                logger.error("worker process exited with status %d", code)
                self._open = False
                self.lost("worker process exited with status %d" % (code))
                break
