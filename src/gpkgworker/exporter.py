""" Controller side of the export pipeline. An :class:`Exporter` drives one
    export job through the worker: it creates a package, creates one
    feature table per data source, streams each table's features, has the
    worker serialize the package, and pulls the result back in chunks.

    The job advances strictly by counting acknowledgments. Every reply for
    the job arrives through :func:`Exporter.receive`; replies for anything
    else are ignored.
"""

import datetime
import logging
import threading

import pyproj
import shapely.ops

from .gpkg import geometry
from .protocol import factory
from .protocol import fields
from .protocol.message import next_id

logger = logging.getLogger(__name__)


IDLE = 'idle'
CREATED = 'created'
TABLES_PENDING = 'tables-pending'
STREAMING = 'streaming'
WRITING = 'writing'
CHUNKING_OUT = 'chunking-out'
FINISHED = 'finished'
ERRORED = 'errored'

TERMINAL = (FINISHED, ERRORED)

label = 'GeoPackage'


class Source:
    """ A data source whose features are exported to a table named after
        its *title*. The *columns* are dictionaries with a 'field' and a
        'type', such as {'field': 'speed', 'type': 'decimal'}.
    """

    def __init__(self, id, title, columns=()):

        self.id = id
        self.title = title
        self.columns = list(columns)


    def __repr__(self):
        return 'Source(%r, %r)' % (self.id, self.title)


# end of class Source



class Item:
    """ One feature to export. The *geometry* is a shapely geometry or a
        GeoJSON-like mapping; *time* is either a datetime for an instant,
        or a (start, stop) pair for a range.
    """

    def __init__(self, source_id, geometry=None, properties=None, time=None, id=None):

        self.source_id = source_id
        self.geometry = geometry
        self.properties = properties or dict()
        self.time = time
        self.id = id


# end of class Item



def iso_time(value):
    """ Render *value* the way a JavaScript Date renders itself as ISO-8601:
        UTC, millisecond precision, and a trailing 'Z'. Naive datetimes are
        assumed to already be in UTC.
    """

    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)

    return value.strftime('%Y-%m-%dT%H:%M:%S.') + '%03dZ' % (value.microsecond // 1000)



class Exporter:
    """ Export *items* belonging to *sources* into a new GeoPackage.

        If *path* is specified the worker writes the package there;
        otherwise it uses a temporary file that is removed once the bytes
        have been retrieved. Feature geometries are in *projection* and are
        transformed to EPSG:4326 on the way out. If *include* is specified,
        only those properties are exported.

        The job starts when :func:`start` is invoked; :func:`wait` blocks
        until it finishes or fails. The exported bytes are then available
        as :attr:`result`, or the failure as :attr:`reason`.
    """

    def __init__(self, bus, sources, items, path=None, projection='EPSG:4326', include=None):

        self.bus = bus
        self.id = next_id('export')
        self.path = path
        self.include = include

        self.sources = dict()
        for source in sources:
            self.sources[source.id] = source

        self.items = list(items)
        self.state = IDLE
        self.reason = None
        self.result = None
        self.size = None

        self.tables = dict()
        self.created = set()
        self.completed = set()
        self.counts = dict()
        self.chunks = list()
        self.commands = list()

        self._progress = list()
        self._event = threading.Event()
        self._lock = threading.RLock()

        if projection and projection.upper() not in ('EPSG:4326', 'OGC:CRS84'):
            transformer = pyproj.Transformer.from_crs(projection, 'EPSG:4326', always_xy=True)
            self._transform = transformer.transform
        else:
            self._transform = None


    def __repr__(self):
        return 'Exporter(%r, %s)' % (self.id, self.state)


    @property
    def total(self):
        return len(self.items)


    @property
    def exported(self):
        return sum(self.counts.values())


    @property
    def done(self):
        return self._event.is_set()


    def on_progress(self, callback):
        """ Register a *callback* to be invoked as callback(exported, total)
            whenever the number of exported features changes.
        """

        self._progress.append(callback)


    def start(self):

        with self._lock:
            if self.state != IDLE:
                raise RuntimeError('export %s already started' % (self.id))

            self.bus.listen(self.receive)
            self.bus.watch(self.fail)
            self.state = CREATED
            self.send(fields.CREATE, path=self.path)


    def wait(self, timeout=None):
        """ Wait for the export to finish. Returns True if it succeeded.
        """

        self._event.wait(timeout)
        return self.state == FINISHED


    def send(self, command, data=None, **kwargs):

        self.commands.append((command, kwargs.get('tableName')))
        self.bus.send(factory.export(self.id, command, data, **kwargs))


    def fail(self, reason):
        """ Abandon the export. Nothing further is sent for this job.
        """

        with self._lock:
            if self.state in TERMINAL:
                return

            self.reason = str(reason)
            self.state = ERRORED

        logger.error("Error creating %s file: %s", label, reason)
        self._finish()


    def _finish(self):

        self.bus.unlisten(self.receive)
        self.bus.unwatch(self.fail)
        self._event.set()


    def _notify(self):

        exported = self.exported
        total = self.total

        for callback in self._progress:
            try:
                callback(exported, total)
            except Exception:
                logger.exception("progress callback failed")


    def receive(self, response):

        if response.id != self.id or response.kind != fields.EXPORT:
            return

        with self._lock:
            if self.state in TERMINAL:
                return

            if not response.ok:
                self.fail('%s creation failed! %s' % (label, response.reason))
                return

            try:
                self.advance(response)
            except Exception as e:
                logger.debug("export %s failed", self.id, exc_info=True)
                self.fail(e)


    def advance(self, response):
        """ Move the job along in reaction to a successful *response*.
        """

        command = response.command

        if command == fields.CREATE:
            self.create_tables()

        elif command == fields.CREATE_TABLE:
            self.created.add(response.table)
            self.stream(response.table)

        elif command == fields.PROGRESS:
            self.counts[response.table] = response.get('count', 0)
            self._notify()

        elif command == fields.FEATURE_BATCH:
            table = response.table
            self.completed.add(table)
            self.counts[table] = response.get('count', len(self.tables[table]))
            self._notify()

            if self.completed >= set(self.tables):
                self.write()

        elif command == fields.WRITE:
            self.size = response.get('size')
            self.state = CHUNKING_OUT
            self.chunks = list()
            self.send(fields.GET_CHUNK)

        elif command == fields.GET_CHUNK:
            data = response.data

            if response.get('complete'):
                self.chunks = [bytes(data or b'')]
                self.send(fields.WRITE_FINISH)
            elif data:
                self.chunks.append(bytes(data))
                self.send(fields.GET_CHUNK)
            else:
                self.send(fields.WRITE_FINISH)

        elif command == fields.WRITE_FINISH:
            self.result = b''.join(self.chunks)
            self.chunks = list()
            self.state = FINISHED

            logger.info("export %s finished: %d bytes", self.id, len(self.result))
            self._finish()


    def create_tables(self):
        """ Partition the items by destination table and request the
            creation of each table.
        """

        tables = dict()
        columns = dict()

        for item in self.items:
            try:
                source = self.sources[item.source_id]
            except KeyError:
                raise ValueError('Could not determine source for %s' % (item.id or item.source_id))

            table = source.title
            if not table:
                raise ValueError('Could not determine table name for %s' % (item.id or item.source_id))

            tables.setdefault(table, list()).append(item)
            columns.setdefault(table, source.columns)

        self.tables = tables

        if not tables:
            self.write()
            return

        self.state = TABLES_PENDING

        for table in tables:
            definitions = [{'field': column['field'], 'type': column['type']} for column in columns[table]]
            self.send(fields.CREATE_TABLE, columns=definitions, tableName=table)


    def stream(self, table):
        """ Send the features of *table* to the worker.
        """

        self.state = STREAMING
        self.counts.setdefault(table, 0)

        collection = self.collection(self.tables[table])
        self.send(fields.FEATURE_BATCH, collection, tableName=table)


    def write(self):

        self.state = WRITING
        self.send(fields.WRITE)


    def collection(self, items):
        """ Return a GeoJSON-like feature collection for *items*, stamped
            with TIME_START and TIME_STOP.
        """

        features = list()

        for item in items:
            shape = geometry.from_geojson(item.geometry)

            if shape is not None and self._transform is not None:
                shape = shapely.ops.transform(self._transform, shape)

            if self.include is None:
                properties = dict(item.properties)
            else:
                properties = dict()
                for name in self.include:
                    if name in item.properties:
                        properties[name] = item.properties[name]

            for name, value in properties.items():
                if isinstance(value, datetime.datetime):
                    properties[name] = iso_time(value)

            time = item.time

            if isinstance(time, (tuple, list)):
                start, stop = time
                properties[fields.TIME_START] = iso_time(start)
                properties[fields.TIME_STOP] = iso_time(stop)
            elif time is not None:
                properties[fields.TIME_START] = iso_time(time)

            feature = dict()
            feature['type'] = 'Feature'
            if item.id is not None:
                feature['id'] = item.id
            feature['geometry'] = geometry.to_geojson(shape)
            feature['properties'] = properties

            features.append(feature)

        return {'type': 'FeatureCollection', 'features': features}


# end of class Exporter


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
