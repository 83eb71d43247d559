""" Controller side of tile retrieval. A :class:`TileLoader` maps tiles of
    the display pyramid (256 pixel spherical mercator tiles) onto requests
    for the native tiles of one package tile table, and fills in a
    :class:`Tile` placeholder when the worker replies.
"""

import io
import logging
import threading

from PIL import Image

from . import grid
from .protocol import factory
from .protocol import fields

logger = logging.getLogger(__name__)


IDLE = 'idle'
LOADING = 'loading'
LOADED = 'loaded'
ERROR = 'error'


def blank_image(width, height):
    """ Return a fully transparent image. An empty reply from the worker
        means there is nothing to draw, which is not the same as a tile
        that is missing and should be covered by its parent.
    """

    return Image.new('RGBA', (width, height), (0, 0, 0, 0))



class Tile:
    """ A display tile whose image is being retrieved from a worker. The
        :attr:`state` starts as 'loading', and becomes either 'loaded' or
        'error' when the reply arrives; :func:`wait` blocks until then.
        Callbacks registered with :func:`add_callback` are invoked with the
        tile once it is no longer loading.
    """

    def __init__(self, coordinate, width=grid.display_tile_size, height=grid.display_tile_size):

        self.coordinate = tuple(coordinate)
        self.width = width
        self.height = height
        self.state = IDLE
        self.image = None
        self.data = None
        self.reason = None

        self._event = threading.Event()
        self._callbacks = list()
        self._lock = threading.Lock()


    def __repr__(self):
        return 'Tile(%r, %s)' % (self.coordinate, self.state)


    @property
    def done(self):
        return self._event.is_set()


    def add_callback(self, callback):

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return

        callback(self)


    def wait(self, timeout=None):
        return self._event.wait(timeout)


    def load(self, data):
        """ Populate the tile from the PNG bytes in *data*; no data at all
            produces a blank tile.
        """

        if data:
            image = Image.open(io.BytesIO(data))
            image.load()
            self.data = data
        else:
            image = blank_image(self.width, self.height)

        self.image = image
        self._finish(LOADED)


    def fail(self, reason):

        self.reason = reason
        self._finish(ERROR)


    def _finish(self, state):

        with self._lock:
            self.state = state
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = list()

        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("tile callback failed for %r", self)


# end of class Tile



class TileLoader:
    """ Load display tiles for the tile table described by *descriptor*
        from the package opened under *session_id*. The descriptor must
        already have its resolutions repaired, as the provider does.

        Any number of tiles may be in flight at once. Each is tracked under
        its tile request key until the reply arrives or :func:`cancel` is
        called for it; replies for tiles that are no longer tracked are
        discarded. If the worker goes away, every tracked tile fails.
    """

    def __init__(self, bus, session_id, descriptor):

        self.bus = bus
        self.session_id = session_id
        self.table = descriptor['tableName']
        self.grid = grid.TileGrid.from_descriptor(descriptor)

        self.pending = dict()
        self._lock = threading.Lock()

        bus.listen(self.receive)
        bus.watch(self.fail)


    def close(self):

        self.bus.unlisten(self.receive)
        self.bus.unwatch(self.fail)

        with self._lock:
            self.pending.clear()


    def request(self, z, x, y):
        """ Return the get-tile :class:`Message` for the display tile at
            *z*, *x*, *y*.
        """

        extent = grid.display_extent(z, x, y)
        zoom = self.grid.z_for_resolution(grid.display_resolution(z))

        return factory.request(fields.GET_TILE, self.session_id,
                               tableName=self.table,
                               tileCoord=[z, x, y],
                               extent=extent,
                               zoom=zoom,
                               width=grid.display_tile_size,
                               height=grid.display_tile_size)


    def load(self, z, x, y):
        """ Request the display tile at *z*, *x*, *y*. Returns the
            :class:`Tile` placeholder that will receive the image.
        """

        message = self.request(z, x, y)
        key = factory.tile_key(message)

        tile = Tile((z, x, y), message['width'], message['height'])
        tile.state = LOADING

        with self._lock:
            self.pending[key] = tile

        try:
            self.bus.send(message)
        except Exception:
            with self._lock:
                self.pending.pop(key, None)
            raise

        return tile


    def cancel(self, z, x, y):
        """ Stop tracking the display tile at *z*, *x*, *y*. Returns the
            abandoned :class:`Tile`, or None if it was not being tracked.
        """

        key = factory.tile_key(self.request(z, x, y))

        with self._lock:
            return self.pending.pop(key, None)


    def fail(self, reason):
        """ Fail every tile still being tracked.
        """

        with self._lock:
            tiles = list(self.pending.values())
            self.pending.clear()

        for tile in tiles:
            tile.fail(reason)


    def receive(self, response):

        if response.kind != fields.GET_TILE:
            return

        if response.id != self.session_id or response.table != self.table:
            return

        key = factory.tile_key(response.message)

        with self._lock:
            tile = self.pending.pop(key, None)

        if tile is None:
            return

        if response.ok:
            try:
                tile.load(response.data)
            except OSError as e:
                logger.error("Error decoding tile %r from GeoPackage: %s", tile.coordinate, e)
                tile.fail(str(e))
        else:
            logger.error("Error querying tile from GeoPackage: %s", response.reason)
            tile.fail(response.reason)


# end of class TileLoader


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
