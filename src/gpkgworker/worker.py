""" The GeoPackage worker. A :class:`Worker` owns every open package, the
    tile scaling policy of each tile table it has listed, and the state of
    every export in progress; it handles one :class:`Message` at a time, in
    arrival order, and posts one or more :class:`Response` objects for each.

    Running this module as a script starts a worker in a child process,
    connected to its parent via the ZeroMQ address given on the command
    line; see :mod:`gpkgworker.transport.process`.
"""

import argparse
import datetime
import logging
import os
import signal
import sqlite3
import sys

import pyogrio
import zmq

from . import config
from . import gpkg
from . import grid
from .bus import Dispatcher
from .protocol import factory
from .protocol import fields
from .protocol import wire
from .protocol.message import Message
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class ExportJob:
    """ The serialized form of a package being exported, and how much of
        it has already been handed back to the controller.
    """

    def __init__(self, id, data):

        self.id = id
        self.data = data
        self.cursor = 0


    @property
    def size(self):
        return len(self.data)


    def next_chunk(self, size):
        """ Return the next slice of at most *size* bytes, advancing the
            cursor. An empty slice means the whole buffer has been returned.
        """

        start = self.cursor
        chunk = self.data[start:start + size]
        self.cursor = start + len(chunk)
        return chunk


# end of class ExportJob



def tile_resolution(matrix, matrix_set):
    """ Return the ground resolution of a tile *matrix*, computing it from
        the matrix set bounds if the package does not record one.
    """

    if matrix['pixel_x_size']:
        return matrix['pixel_x_size']

    return (matrix_set['max_x'] - matrix_set['min_x']) / (matrix['matrix_width'] * matrix['tile_width'])



def tile_size(matrix):
    """ Return the tile size of a tile *matrix*: a single number for square
        tiles, otherwise [width, height].
    """

    width = matrix['tile_width']
    height = matrix['tile_height']

    if width == height:
        return width

    return [width, height]



def export_columns(columns):
    """ Translate the column list of an export request into the columns of
        a new feature table. Every table gets an integer primary key named
        'id' and a geometry column named 'geometry'; the record time field
        becomes a pair of TIME_START and TIME_STOP datetime columns.
    """

    result = list()
    result.append(gpkg.Column('id', gpkg.schema.INTEGER, primary_key=True))
    result.append(gpkg.Column('geometry', gpkg.schema.GEOMETRY))

    seen = set()

    for column in columns:
        name = column.get('field') or column.get('name')

        if not name or name in seen:
            continue

        if name.lower() in ('id', 'geometry'):
            continue

        if name in (fields.TIME_START, fields.TIME_STOP):
            continue

        seen.add(name)

        if name == fields.RECORD_TIME:
            result.append(gpkg.Column(fields.TIME_START, gpkg.schema.DATETIME))
            result.append(gpkg.Column(fields.TIME_STOP, gpkg.schema.DATETIME))
            continue

        kind = (column.get('type') or '').lower()

        if kind in ('decimal', 'real'):
            result.append(gpkg.Column(name, gpkg.schema.REAL))
        elif kind == 'integer':
            result.append(gpkg.Column(name, gpkg.schema.INTEGER))
        elif kind == 'datetime':
            result.append(gpkg.Column(name, gpkg.schema.TEXT))
        else:
            result.append(gpkg.Column(name, gpkg.schema.TEXT, default=''))

    return result



def parse_time(value):
    """ Parse an ISO-8601 timestamp, as stamped on exported features, into
        a timezone-aware datetime.
    """

    if value.endswith('Z') or value.endswith('z'):
        value = value[:-1] + '+00:00'

    parsed = datetime.datetime.fromisoformat(value)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)

    return parsed



class Worker(Dispatcher):
    """ Handle protocol messages against the GeoPackages this worker has
        open. Replies are handed to *post*. If *chunk_size* is set, an
        exported package is returned in slices of at most that many bytes;
        otherwise it is returned in a single reply. Features are inserted
        into exported tables *batch_size* at a time.
    """

    def __init__(self, post, chunk_size=None, batch_size=None):

        Dispatcher.__init__(self, post)

        if batch_size is None:
            batch_size = config.batch_size()

        self.chunk_size = chunk_size
        self.batch_size = batch_size
        self.library = False

        self.registry = SessionRegistry()
        self.scaling = dict()
        self.exports = dict()

        self.commands[fields.OPEN_LIBRARY] = self.req_open_library
        self.commands[fields.OPEN] = self.req_open
        self.commands[fields.CLOSE] = self.req_close
        self.commands[fields.LIST_TABLES] = self.req_list_tables
        self.commands[fields.GET_TILE] = self.req_get_tile
        self.commands[fields.GET_FEATURES] = self.req_get_features
        self.commands[fields.EXPORT] = self.req_export

        self.export_commands = dict()
        self.export_commands[fields.CREATE] = self.export_create
        self.export_commands[fields.CREATE_TABLE] = self.export_create_table
        self.export_commands[fields.FEATURE_BATCH] = self.export_feature_batch
        self.export_commands[fields.WRITE] = self.export_write
        self.export_commands[fields.GET_CHUNK] = self.export_get_chunk
        self.export_commands[fields.WRITE_FINISH] = self.export_write_finish


    def close_all(self):
        """ Release every open package and discard all export state. This
            is invoked when the worker is shutting down.
        """

        self.registry.close_all()
        self.exports.clear()
        self.scaling.clear()


    def _forget(self, id):

        self.exports.pop(id, None)

        for key in list(self.scaling.keys()):
            if key[0] == id:
                del self.scaling[key]


    def req_open_library(self, msg):
        """ Bootstrap the GeoPackage adapter. There is nothing to load for
            the SQLite and GDAL backed adapter beyond reporting what it
            runs on; no reply is sent either way.
        """

        self.library = True
        logger.info("GeoPackage adapter ready (SQLite %s, GDAL %s)",
                    sqlite3.sqlite_version, pyogrio.__gdal_version_string__)


    def req_open(self, msg):

        url = msg.get('url') or msg.get('path')

        if msg.data is None and not url:
            self.reply_error(msg, 'url or data property must exist')
            return

        if not msg.id:
            self.reply_error(msg, 'id property must exist')
            return

        if msg.data is not None:
            if not isinstance(msg.data, (bytes, bytearray, memoryview)):
                self.reply_error(msg, 'data must be bytes')
                return

            source = msg.data
        else:
            if '://' in url and not url.startswith('file://'):
                self.reply_error(msg, 'data or url property must exist')
                return

            source = url

        package = gpkg.open(source)
        self.registry.open(msg.id, package)
        self._forget(msg.id)

        logger.info("opened %s as %s", package.path, msg.id)
        self.reply_success(msg)


    def req_close(self, msg):

        if self.registry.close(msg.id):
            logger.info("closed %s", msg.id)

        self._forget(msg.id)
        self.reply_success(msg)


    def req_list_tables(self, msg):

        package = self.registry.get(msg.id)
        descriptors = list()

        for table in package.tile_tables():
            descriptors.append(self.tile_descriptor(msg.id, package, table))

        for table in package.feature_tables():
            descriptors.append(self.feature_descriptor(package, table))

        self.reply_success(msg, descriptors)


    def tile_descriptor(self, id, package, table):
        """ Describe a tile table, and establish its tile scaling policy.
        """

        matrix_set = package.tile_matrix_set(table)
        matrices = package.zoom_level_matrices(table)
        zooms = [matrix['zoom_level'] for matrix in matrices if matrix is not None]

        resolutions = list()
        sizes = list()

        for matrix in matrices:
            if matrix is None:
                resolutions.append(None)
                sizes.append(None)
            else:
                resolutions.append(tile_resolution(matrix, matrix_set))
                sizes.append(tile_size(matrix))

        descriptor = dict()
        descriptor['type'] = fields.TILE
        descriptor['tableName'] = table
        descriptor['title'] = table
        descriptor['minZoom'] = int(round(min(zooms))) if zooms else 0
        descriptor['maxZoom'] = int(round(max(zooms))) if zooms else 0
        descriptor['resolutions'] = resolutions
        descriptor['tileSizes'] = grid.fix_sizes(sizes)

        scaling = gpkg.TileScaling(gpkg.retriever.IN_OUT, config.scaling_zoom_in, config.scaling_zoom_out)

        try:
            package.set_tile_scaling(table, scaling.scaling_type, scaling.zoom_in, scaling.zoom_out)
        except sqlite3.OperationalError as e:
            logger.debug("tile scaling for %s kept in memory only: %s", table, e)

        self.scaling[(id, table)] = scaling

        contents = package.contents(table)
        descriptor['title'] = contents['identifier'] or table

        if contents['description']:
            descriptor['description'] = contents['description']

        projection = package.projection(contents['srs_id'])
        if projection is not None:
            descriptor['projection'] = projection

        descriptor['extent'] = [matrix_set['min_x'], matrix_set['min_y'],
                                matrix_set['max_x'], matrix_set['max_y']]
        descriptor['extentProjection'] = projection or 'EPSG:%d' % (matrix_set['srs_id'])

        return descriptor


    def feature_descriptor(self, package, table):

        geometry = package.geometry_column(table)
        if geometry is None:
            geometry_name = None
        else:
            geometry_name = geometry['column_name']

        columns = list()

        for column in package.columns(table):
            if column['name'] == geometry_name:
                continue

            columns.append({'name': column['display_name'],
                            'type': gpkg.schema.semantic_type(column['type'])})

        contents = package.contents(table)

        descriptor = dict()
        descriptor['type'] = fields.FEATURE
        descriptor['tableName'] = table
        descriptor['title'] = contents['identifier'] or table
        descriptor['columns'] = columns
        descriptor['geometryColumn'] = geometry_name

        if contents['description']:
            descriptor['description'] = contents['description']

        return descriptor


    def req_get_tile(self, msg):

        table = msg.table

        if not table:
            self.reply_error(msg, 'tableName property must be set')
            return

        zoom = msg.get('zoom')
        if zoom is None:
            self.reply_error(msg, 'zoom property must be set')
            return

        width = msg.get('width')
        if not width or width <= 0:
            self.reply_error(msg, 'width property must be set')
            return

        height = msg.get('height')
        if not height or height <= 0:
            self.reply_error(msg, 'height property must be set')
            return

        extent = msg.get('extent')
        if not extent or len(extent) != 4:
            self.reply_error(msg, 'extent (in EPSG:4326) property must be set')
            return

        package = self.registry.get(msg.id)

        # The original request keeps the extent it asked for; it is part of
        # the key the controller uses to match this reply.

        extent = grid.normalize_tile_extent(list(extent))

        retriever = gpkg.TileRetriever(package, table, width, height)

        try:
            scaling = self.scaling[(msg.id, table)]
        except KeyError:
            row = package.tile_scaling(table)
            scaling = gpkg.TileScaling.from_row(row) if row else None

        if scaling is not None:
            retriever.set_scaling(scaling)

        data = retriever.get_tile(extent, int(zoom))
        self.reply_success(msg, data)


    def req_get_features(self, msg):

        if not msg.table:
            self.reply_error(msg, 'tableName property must be set')
            return

        package = self.registry.get(msg.id)

        for feature in package.iter_features(msg.table):
            self.reply_success(msg, feature)

        self.reply_success(msg, 0)


    def req_export(self, msg):

        if not msg.command:
            self.reply_error(msg, 'command property must be set')
            return

        try:
            handler = self.export_commands[msg.command]
        except KeyError:
            self.reply_error(msg, 'Unknown command type')
            return

        handler(msg)


    def export_create(self, msg):

        if not msg.id:
            self.reply_error(msg, 'id property must be set')
            return

        path = msg.get('path') or msg.get('url')
        package = gpkg.create(path)

        self.registry.open(msg.id, package)
        self._forget(msg.id)

        logger.info("export %s: created %s", msg.id, package.path)
        self.reply_success(msg)


    def export_create_table(self, msg):

        if not msg.table:
            self.reply_error(msg, 'tableName property must be set')
            return

        columns = msg.get('columns')
        if columns is None:
            self.reply_error(msg, 'columns property must be set')
            return

        package = self.registry.get(msg.id)
        package.create_feature_table(msg.table, export_columns(columns),
                                     geometry_column='geometry',
                                     geometry_type=gpkg.schema.GEOMETRY, srs_id=4326)
        self.reply_success(msg)


    def export_feature_batch(self, msg):

        if not msg.table:
            self.reply_error(msg, 'tableName property must be set')
            return

        collection = msg.data
        if not isinstance(collection, dict) or not isinstance(collection.get('features'), list):
            self.reply_error(msg, 'GeoJSON feature not found on msg.data')
            return

        package = self.registry.get(msg.id)
        features = collection['features']

        for feature in features:
            properties = feature.get('properties')
            if not properties:
                continue

            for name in (fields.TIME_START, fields.TIME_STOP):
                value = properties.get(name)
                if isinstance(value, str):
                    properties[name] = parse_time(value)

        def progress(count):
            self.post(factory.progress(msg, count))

        count = package.add_features(msg.table, features, self.batch_size, progress)

        logger.debug("export %s: %d features added to %s", msg.id, count, msg.table)
        self.reply_success(msg, count=count)


    def export_write(self, msg):

        package = self.registry.get(msg.id)
        data = package.export()

        self.exports[msg.id] = ExportJob(msg.id, data)

        logger.info("export %s: %d bytes ready", msg.id, len(data))
        self.reply_success(msg, size=len(data))


    def export_get_chunk(self, msg):

        if not msg.id:
            self.reply_error(msg, 'id property must be set')
            return

        try:
            job = self.exports[msg.id]
        except KeyError:
            self.reply_error(msg, 'an export for the id has not been started')
            return

        if self.chunk_size is None:
            job.cursor = job.size
            self.reply_success(msg, job.data, complete=True)
            return

        offset = job.cursor
        chunk = job.next_chunk(self.chunk_size)
        self.reply_success(msg, chunk, offset=offset)


    def export_write_finish(self, msg):

        self.registry.close(msg.id)
        self._forget(msg.id)

        logger.info("export %s: finished", msg.id)
        self.reply_success(msg)


# end of class Worker



def _terminate(signum, frame):
    raise SystemExit(0)



def serve(address):
    """ Connect to the parent process at *address* and handle messages
        until the parent goes away or this process is told to stop.
    """

    context = zmq.Context.instance()
    socket = context.socket(zmq.PAIR)
    socket.setsockopt(zmq.LINGER, 0)
    socket.connect(address)

    def post(response):
        try:
            frames = wire.pack(response)
        except TypeError as e:
            logger.error("cannot send %r: %s", response, e)
            frames = wire.pack(factory.error(response.message, e))

        socket.send_multipart(frames)

    worker = Worker(post, chunk_size=config.chunk_size())
    parent = os.getppid()

    poller = zmq.Poller()
    poller.register(socket, zmq.POLLIN)

    logger.info("worker %d connected to %s", os.getpid(), address)

    try:
        while True:
            events = poller.poll(1000)

            if not events:
                if os.getppid() != parent:
                    logger.info("parent process went away, exiting")
                    break
                continue

            parts = socket.recv_multipart()

            try:
                message = wire.unpack(parts)
            except (wire.FramingError, ValueError, KeyError) as e:
                logger.error("discarding malformed message: %s", e)
                continue

            if not isinstance(message, Message):
                logger.error("discarding unexpected %r", message)
                continue

            worker.dispatch(message)
    finally:
        worker.close_all()
        socket.close(linger=0)
        logger.info("worker %d exiting", os.getpid())



def main(arguments=None):

    parser = argparse.ArgumentParser(description='GeoPackage worker process.')
    parser.add_argument('address', help='ZeroMQ address of the controlling process')
    arguments = parser.parse_args(arguments)

    logging.basicConfig(level=config.log_level(),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
                        handlers=[logging.StreamHandler(sys.stderr)])

    signal.signal(signal.SIGTERM, _terminate)

    try:
        serve(arguments.address)
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == '__main__':
    sys.exit(main())


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
