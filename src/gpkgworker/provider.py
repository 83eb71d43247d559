""" A :class:`Provider` opens one GeoPackage in the worker and lists the
    layers it offers. The package may be given as bytes, as a local path or
    file:// URL, or as a remote URL whose bytes are fetched first.
"""

import logging
import re

import requests

from . import config
from . import grid
from .features import feature_url
from .gpkg import schema
from .protocol import factory
from .protocol import fields
from .transport import TransportTimeout

logger = logging.getLogger(__name__)


delimiter = '#'


class FetchError(Exception):
    """ Raised when the bytes of a remote package cannot be retrieved.
    """


def is_geopackage(data):
    """ Return True if *data* begins like a GeoPackage: that is to say, like
        any other SQLite database.
    """

    header = schema.sqlite_header[:-1]
    return data is not None and len(data) > len(header) and bytes(data[:len(header)]) == header



def fetch(url, timeout=60):
    """ Retrieve the bytes at *url* over HTTP.
    """

    try:
        response = requests.get(url, headers={'Accept': '*/*'}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise FetchError('Request failed for GeoPackage %s: %s' % (url, e)) from e

    return response.content



def _is_local(url):

    if url.startswith('file://'):
        return True

    return '://' not in url



def _natural_key(text):

    key = list()
    for part in re.split(r'(\d+)', (text or '').lower()):
        if part.isdigit():
            key.append((0, int(part), ''))
        else:
            key.append((1, 0, part))

    return key



class Provider:
    """ The *id* identifies the package for as long as it is open; it is
        the correlation id of every request made against it. Exactly one of
        *url* or *data* should be specified. The *fetch* callable retrieves
        the bytes of a remote *url*, and may raise :class:`FetchError`.

        :func:`load` returns the table descriptors, post-processed for
        display. If the worker reports an error, :attr:`error` records it
        and :func:`load` returns None.
    """

    def __init__(self, bus, id, url=None, data=None, label=None, fetch=fetch, timeout=None):

        if url is None and data is None:
            raise ValueError('a provider requires a url or data')

        if timeout is None:
            timeout = config.timeout()

        self.bus = bus
        self.id = id
        self.url = url
        self.data = data
        self.label = label or id
        self.fetch = fetch
        self.timeout = timeout

        self.descriptors = list()
        self.error = None
        self.loaded = False


    def __repr__(self):
        return 'Provider(%r)' % (self.id)


    def _request(self, kind, data=None, **kwargs):

        message = factory.request(kind, self.id, data, **kwargs)
        pending = self.bus.request(message)
        response = pending.wait(self.timeout)

        if response is None:
            raise TransportTimeout('%s %s: no response in %s sec' % (self.id, kind, self.timeout))

        return response


    def _fail(self, kind, reason):

        text = '%s %s failed! %s' % (self.id, kind, reason)

        if self.error is None:
            logger.error("Server [%s]: %s", self.label, text)
            self.error = text

        return None


    def load(self):

        self.error = None
        self.loaded = False

        data = self.data
        url = None

        if data is None:
            if _is_local(self.url):
                url = self.url
            else:
                data = self.fetch(self.url)

        if data is not None and not is_geopackage(data):
            return self._fail(fields.OPEN, 'the data is not a GeoPackage')

        # Close any previously opened version.

        self._request(fields.CLOSE)

        response = self._request(fields.OPEN, data, url=url)
        if not response.ok:
            return self._fail(fields.OPEN, response.reason)

        response = self._request(fields.LIST_TABLES)
        if not response.ok:
            return self._fail(fields.LIST_TABLES, response.reason)

        descriptors = [self.describe(descriptor) for descriptor in response.data or ()]
        descriptors.sort(key=lambda descriptor: _natural_key(descriptor.get('title')))

        self.descriptors = descriptors
        self.loaded = True
        return descriptors


    def describe(self, descriptor):
        """ Post-process a table descriptor from the worker for display:
            repair its resolutions, and give it an id unique across
            providers.
        """

        descriptor = dict(descriptor)
        descriptor['id'] = self.id + delimiter + descriptor['tableName']
        descriptor['provider'] = self.label

        if isinstance(descriptor.get('resolutions'), list):
            grid.fix_resolutions(descriptor['resolutions'])

        if descriptor['type'] == fields.TILE:

            # The display covers its full zoom range regardless of what the
            # package defines; tiles beyond it are scaled or blank.

            descriptor['layerMinZoom'] = 0
            descriptor['layerMaxZoom'] = grid.display_max_zoom

        elif descriptor['type'] == fields.FEATURE:
            columns = descriptor.get('columns') or ()
            animate = any(column['type'] == 'datetime' for column in columns)

            descriptor['animate'] = animate
            descriptor['url'] = feature_url(self.id, descriptor['tableName'])

        return descriptor


    def dispose(self):
        """ Close the package in the worker. No reply is awaited.
        """

        if self.bus.is_open:
            self.bus.send(factory.request(fields.CLOSE, self.id))


# end of class Provider


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
