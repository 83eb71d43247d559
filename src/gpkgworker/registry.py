""" The session registry tracks the open GeoPackage handles of a worker,
    keyed by the correlation id the controller assigned when it opened them.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """ Raised when a request refers to a session that is not open.
    """


class SessionRegistry:
    """ At most one handle is live for any given id. Registering a new
        handle under an id that is already in use closes the previous handle
        first; closing an id that is not registered is not an error.

        Every access is serialized with a lock, so that a close or re-open
        has fully released the prior handle before anything else can look
        up the same id.
    """

    def __init__(self):

        self._lock = threading.Lock()
        self._sessions = dict()


    def __contains__(self, id):

        with self._lock:
            return id in self._sessions


    def __len__(self):

        with self._lock:
            return len(self._sessions)


    def ids(self):

        with self._lock:
            return list(self._sessions.keys())


    def open(self, id, handle):
        """ Register *handle* under *id*, closing any handle previously
            registered with the same *id*.
        """

        if not id:
            raise SessionError('id property must be set')

        with self._lock:
            try:
                previous = self._sessions.pop(id)
            except KeyError:
                previous = None

            if previous is not None and previous is not handle:
                logger.debug("replacing open session %s", id)
                previous.close()

            self._sessions[id] = handle


    def get(self, id):

        if not id:
            raise SessionError('id property must be set')

        with self._lock:
            try:
                return self._sessions[id]
            except KeyError:
                raise SessionError('No open GeoPackage exists for the given ID')


    def close(self, id):
        """ Close and forget the handle registered under *id*, if any.
            Returns True if a handle was closed.
        """

        with self._lock:
            try:
                handle = self._sessions.pop(id)
            except KeyError:
                return False

            handle.close()

        logger.debug("closed session %s", id)
        return True


    def close_all(self):

        with self._lock:
            sessions = self._sessions
            self._sessions = dict()

            for id, handle in sessions.items():
                try:
                    handle.close()
                except Exception:
                    logger.exception("failed to close session %s", id)


# end of class SessionRegistry


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
