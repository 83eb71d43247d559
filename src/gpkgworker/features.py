""" Controller side of feature retrieval: stream every feature of a package
    feature table back from the worker.
"""

import logging
import threading
import urllib.parse

from .protocol import factory
from .protocol import fields

logger = logging.getLogger(__name__)


scheme = 'gpkg'


def feature_url(session_id, table):
    """ Return the gpkg:// URL addressing *table* in the package opened
        under *session_id*.
    """

    return '%s://%s/%s' % (scheme, session_id, urllib.parse.quote(table))



def parse_url(url):
    """ Split a gpkg:// URL into (session_id, table).
    """

    parsed = urllib.parse.urlparse(url)

    if parsed.scheme != scheme:
        raise ValueError('not a %s:// URL: %s' % (scheme, url))

    return (parsed.netloc, urllib.parse.unquote(parsed.path[1:]))



class FeatureRequest:
    """ Retrieve the features of *table* from the package opened under
        *session_id*. The worker sends one reply per feature followed by a
        terminating reply with data 0; the features accumulate in
        :attr:`features` until then. On failure :attr:`errors` holds the
        reason and :attr:`status_code` is 500.
    """

    def __init__(self, bus, session_id, table):

        self.bus = bus
        self.session_id = session_id
        self.table = table

        self.features = list()
        self.errors = list()
        self.status_code = -1
        self._event = threading.Event()


    @classmethod
    def from_url(cls, bus, url):

        session_id, table = parse_url(url)
        return cls(bus, session_id, table)


    @property
    def done(self):
        return self._event.is_set()


    def execute(self):

        self.bus.listen(self.receive)
        self.bus.watch(self.fail)

        message = factory.request(fields.GET_FEATURES, self.session_id, tableName=self.table)

        try:
            self.bus.send(message)
        except Exception:
            self._stop()
            raise


    def wait(self, timeout=None):
        """ Wait for the last feature to arrive. Returns the features, or
            None if the request failed or did not finish in time.
        """

        if not self._event.wait(timeout):
            return None

        if self.errors:
            return None

        return self.features


    def receive(self, response):

        if self._event.is_set():
            return

        if response.kind != fields.GET_FEATURES:
            return

        if response.id != self.session_id or response.table != self.table:
            return

        if not response.ok:
            self.fail(response.reason)
            return

        feature = response.data

        if feature == 0:
            self._stop()
            self.status_code = 200
            self._event.set()
            return

        if feature:
            properties = feature.get('properties')

            # A property named geometry would clobber the feature geometry.

            if properties and 'geometry' in properties:
                del properties['geometry']

            self.features.append(feature)


    def fail(self, reason):
        """ Abandon the request, recording *reason* as the error.
        """

        if self._event.is_set():
            return

        self._stop()
        self.errors.append(str(reason))
        self.status_code = 500
        logger.error("Error querying features of %s from GeoPackage: %s", self.table, reason)
        self._event.set()


    def _stop(self):

        self.bus.unlisten(self.receive)
        self.bus.unwatch(self.fail)


# end of class FeatureRequest


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
