""" The :class:`GeoPackage` class wraps a single GeoPackage file: a SQLite
    database with a handful of well-known metadata tables describing the
    tile and feature tables it contains. Metadata and tiles are handled
    directly through SQLite; feature tables are read and written as
    GeoDataFrames through GDAL.
"""

import datetime
import logging
import os
import sqlite3
import tempfile
import urllib.parse

import geopandas
import pandas

from .. import config
from . import geometry
from . import schema

logger = logging.getLogger(__name__)


# Geometry type names as declared in gpkg_geometry_columns, and the name
# GDAL uses for the same type when creating a layer.

layer_geometry_types = {
    'GEOMETRY': 'Unknown',
    'POINT': 'Point',
    'LINESTRING': 'LineString',
    'POLYGON': 'Polygon',
    'MULTIPOINT': 'MultiPoint',
    'MULTILINESTRING': 'MultiLineString',
    'MULTIPOLYGON': 'MultiPolygon',
    'GEOMETRYCOLLECTION': 'GeometryCollection',
}


class GeoPackageError(Exception):
    """ Raised for anything that makes a file unusable as a GeoPackage, or
        for a request that does not make sense against its contents.
    """


def quote(identifier):
    """ Quote a table or column name for inclusion in a SQL statement.
    """

    return '"' + str(identifier).replace('"', '""') + '"'



def format_datetime(value):
    """ Render a datetime as the ISO-8601 text a GeoPackage stores, in UTC
        with millisecond precision. Naive datetimes are assumed to be UTC.
    """

    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)

    return value.strftime('%Y-%m-%dT%H:%M:%S.') + '%03dZ' % (value.microsecond // 1000)



def path_from_url(url):
    """ Translate a file:// URL into a local path. Anything else is assumed
        to already be a local path and is returned unchanged.
    """

    if not url.startswith('file://'):
        return url

    path = urllib.parse.unquote(urllib.parse.urlparse(url).path)

    # file:///C:/some/where.gpkg
    if os.name == 'nt' and path.startswith('/') and path[2:3] == ':':
        path = path[1:]

    return path



class Column:
    """ Definition of one column of a feature table to be created. The
        *default* is stored in place of a missing property value when
        features are added to the table through the same package.
    """

    def __init__(self, name, data_type, primary_key=False, default=None):

        self.name = name
        self.data_type = data_type
        self.primary_key = primary_key
        self.default = default


    def __repr__(self):
        return 'Column(%r, %r)' % (self.name, self.data_type)


# end of class Column



class GeoPackage:
    """ An open GeoPackage. Use :func:`open` or :func:`create` rather than
        instantiating this class directly. A package opened from bytes, or
        created without a destination path, lives in a temporary file that
        is removed when the package is closed.

        The underlying SQLite connection may only be used from the thread
        that opened the package.
    """

    def __init__(self, path, connection, temporary=False):

        self.path = path
        self.connection = connection
        self.temporary = temporary
        self.defaults = dict()
        self.connection.row_factory = sqlite3.Row


    @classmethod
    def open(cls, source):
        """ Open an existing GeoPackage. The *source* is either the raw bytes
            of a package, or the path (or file:// URL) of one on disk.
        """

        if isinstance(source, (bytes, bytearray, memoryview)):
            source = bytes(source)
            _check_header(source[:len(schema.sqlite_header)])

            descriptor, path = tempfile.mkstemp(suffix='.gpkg', dir=config.directory())
            with os.fdopen(descriptor, 'wb') as handle:
                handle.write(source)

            temporary = True

        elif isinstance(source, (str, os.PathLike)):
            path = path_from_url(os.fspath(source))

            if not os.path.isfile(path):
                raise GeoPackageError('no such file: ' + path)

            with open(path, 'rb') as handle:
                _check_header(handle.read(len(schema.sqlite_header)))

            temporary = False

        else:
            raise GeoPackageError('data must be bytes or a path, not ' + type(source).__name__)

        try:
            connection = sqlite3.connect(path)
            package = cls(path, connection, temporary)
            package._check_contents()
        except (sqlite3.Error, GeoPackageError):
            if temporary:
                _remove(path)
            raise

        logger.debug('opened GeoPackage %s', path)
        return package


    @classmethod
    def create(cls, path=None):
        """ Create a new, empty GeoPackage at *path*, replacing any file
            already there. If *path* is not specified the package is created
            as a temporary file.
        """

        if path:
            path = path_from_url(os.fspath(path))
            _remove(path)
            temporary = False
        else:
            descriptor, path = tempfile.mkstemp(suffix='.gpkg', dir=config.directory())
            os.close(descriptor)
            os.remove(path)
            temporary = True

        connection = sqlite3.connect(path)
        package = cls(path, connection, temporary)

        with connection:
            connection.execute('PRAGMA application_id = %d' % (schema.application_id))
            connection.execute('PRAGMA user_version = %d' % (schema.user_version))

            for statement in schema.core:
                connection.execute(statement)

            connection.executemany(
                'INSERT OR IGNORE INTO gpkg_spatial_ref_sys '
                '(srs_name, srs_id, organization, organization_coordsys_id, definition, description) '
                'VALUES (?, ?, ?, ?, ?, ?)', schema.default_spatial_refs)

        logger.debug('created GeoPackage %s', path)
        return package


    @property
    def closed(self):
        return self.connection is None


    def close(self):
        """ Close the package. Closing an already closed package is a no-op.
        """

        connection = self.connection
        if connection is None:
            return

        self.connection = None
        connection.close()

        if self.temporary:
            _remove(self.path)

        logger.debug('closed GeoPackage %s', self.path)


    def _check_contents(self):

        if not self._has_table('gpkg_contents'):
            raise GeoPackageError('not a GeoPackage: gpkg_contents table is missing')


    def _cursor(self):

        if self.connection is None:
            raise GeoPackageError('the GeoPackage is closed')

        return self.connection.cursor()


    def _has_table(self, table):

        cursor = self._cursor()
        cursor.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,))
        return cursor.fetchone() is not None


    # Metadata

    def tables(self, data_type):
        """ Return the names of all tables of the given *data_type*
            ('tiles' or 'features') listed in the package contents.
        """

        cursor = self._cursor()
        cursor.execute('SELECT table_name FROM gpkg_contents WHERE data_type = ? ORDER BY table_name', (data_type,))
        return [row['table_name'] for row in cursor.fetchall()]


    def tile_tables(self):
        return self.tables('tiles')


    def feature_tables(self):
        return self.tables('features')


    def contents(self, table):

        cursor = self._cursor()
        cursor.execute('SELECT * FROM gpkg_contents WHERE table_name = ?', (table,))
        row = cursor.fetchone()

        if row is None:
            raise GeoPackageError('no such table in the package contents: ' + str(table))

        return dict(row)


    def spatial_ref(self, srs_id):

        cursor = self._cursor()
        cursor.execute('SELECT * FROM gpkg_spatial_ref_sys WHERE srs_id = ?', (srs_id,))
        row = cursor.fetchone()

        if row is None:
            return None

        return dict(row)


    def projection(self, srs_id):
        """ Return the 'ORGANIZATION:code' identifier for *srs_id*, or None
            if the spatial reference is undefined.
        """

        srs = self.spatial_ref(srs_id)
        if srs is None:
            return None

        organization = srs['organization'].upper()
        if organization == 'NONE':
            return None

        code = srs['organization_coordsys_id']
        if code is None:
            code = srs['srs_id']

        return '%s:%s' % (organization, code)


    def tile_matrix_set(self, table):

        cursor = self._cursor()
        cursor.execute('SELECT * FROM gpkg_tile_matrix_set WHERE table_name = ?', (table,))
        row = cursor.fetchone()

        if row is None:
            raise GeoPackageError('no tile matrix set for table: ' + str(table))

        return dict(row)


    def tile_matrices(self, table):

        cursor = self._cursor()
        cursor.execute('SELECT * FROM gpkg_tile_matrix WHERE table_name = ? ORDER BY zoom_level', (table,))
        return [dict(row) for row in cursor.fetchall()]


    def zoom_level_matrices(self, table):
        """ Return a list of tile matrices indexed by zoom level, from zero
            up to the highest zoom level of *table*. Zoom levels the package
            does not define are None.
        """

        matrices = self.tile_matrices(table)
        if not matrices:
            return list()

        by_zoom = [None] * (matrices[-1]['zoom_level'] + 1)
        for matrix in matrices:
            by_zoom[matrix['zoom_level']] = matrix

        return by_zoom


    def geometry_column(self, table):

        cursor = self._cursor()
        cursor.execute('SELECT * FROM gpkg_geometry_columns WHERE table_name = ?', (table,))
        row = cursor.fetchone()

        if row is None:
            return None

        return dict(row)


    def columns(self, table):
        """ Return the columns of *table* as dictionaries with the keys
            'name', 'type' (as declared), 'display_name', and 'primary_key'.
            The display name comes from gpkg_data_columns when the package
            defines one, and is otherwise the column name.
        """

        display = dict()

        if self._has_table('gpkg_data_columns'):
            cursor = self._cursor()
            cursor.execute('SELECT column_name, name FROM gpkg_data_columns WHERE table_name = ?', (table,))
            for row in cursor.fetchall():
                if row['name']:
                    display[row['column_name']] = row['name']

        cursor = self._cursor()
        cursor.execute('PRAGMA table_info(%s)' % (quote(table)))

        columns = list()
        for row in cursor.fetchall():
            name = row['name']
            column = dict()
            column['name'] = name
            column['type'] = row['type']
            column['display_name'] = display.get(name, name)
            column['primary_key'] = bool(row['pk'])
            columns.append(column)

        if not columns:
            raise GeoPackageError('no such table: ' + str(table))

        return columns


    # Tile scaling extension

    def tile_scaling(self, table):
        """ Return the scaling row recorded for *table* as a dictionary, or
            None if there isn't one.
        """

        if not self._has_table('nga_tile_scaling'):
            return None

        cursor = self._cursor()
        cursor.execute('SELECT * FROM nga_tile_scaling WHERE table_name = ?', (table,))
        row = cursor.fetchone()

        if row is None:
            return None

        return dict(row)


    def set_tile_scaling(self, table, scaling_type, zoom_in, zoom_out):
        """ Create or update the scaling row for *table*, registering the
            tile scaling extension if the package does not already use it.
        """

        connection = self.connection
        if connection is None:
            raise GeoPackageError('the GeoPackage is closed')

        with connection:
            connection.execute(schema.extensions)
            connection.execute(schema.tile_scaling)

            # The unique constraint does not apply when column_name is NULL.

            cursor = connection.execute(
                'SELECT 1 FROM gpkg_extensions WHERE table_name = ? AND extension_name = ?',
                (table, schema.tile_scaling_extension))

            if cursor.fetchone() is None:
                connection.execute(
                    'INSERT INTO gpkg_extensions '
                    '(table_name, column_name, extension_name, definition, scope) '
                    "VALUES (?, NULL, ?, ?, 'read-write')",
                    (table, schema.tile_scaling_extension, schema.tile_scaling_definition))
            connection.execute(
                'INSERT OR REPLACE INTO nga_tile_scaling (table_name, scaling_type, zoom_in, zoom_out) '
                'VALUES (?, ?, ?, ?)', (table, scaling_type, zoom_in, zoom_out))


    # Tiles

    def create_tile_table(self, table, srs_id, bounds, identifier=None, description=''):
        """ Create an empty tile table covering *bounds* (min_x, min_y,
            max_x, max_y) in the spatial reference *srs_id*.
        """

        min_x, min_y, max_x, max_y = bounds
        connection = self.connection

        with connection:
            connection.execute(
                'CREATE TABLE %s ('
                'id INTEGER PRIMARY KEY AUTOINCREMENT, '
                'zoom_level INTEGER NOT NULL, '
                'tile_column INTEGER NOT NULL, '
                'tile_row INTEGER NOT NULL, '
                'tile_data BLOB NOT NULL, '
                'UNIQUE (zoom_level, tile_column, tile_row))' % (quote(table)))

            connection.execute(
                'INSERT INTO gpkg_contents '
                '(table_name, data_type, identifier, description, min_x, min_y, max_x, max_y, srs_id) '
                "VALUES (?, 'tiles', ?, ?, ?, ?, ?, ?, ?)",
                (table, identifier or table, description, min_x, min_y, max_x, max_y, srs_id))

            connection.execute(
                'INSERT INTO gpkg_tile_matrix_set (table_name, srs_id, min_x, min_y, max_x, max_y) '
                'VALUES (?, ?, ?, ?, ?, ?)', (table, srs_id, min_x, min_y, max_x, max_y))


    def add_tile_matrix(self, table, zoom, matrix_width, matrix_height,
                        tile_width=256, tile_height=256, pixel_x_size=None, pixel_y_size=None):

        if pixel_x_size is None or pixel_y_size is None:
            matrix_set = self.tile_matrix_set(table)

            if pixel_x_size is None:
                pixel_x_size = (matrix_set['max_x'] - matrix_set['min_x']) / (matrix_width * tile_width)
            if pixel_y_size is None:
                pixel_y_size = (matrix_set['max_y'] - matrix_set['min_y']) / (matrix_height * tile_height)

        with self.connection:
            self.connection.execute(
                'INSERT INTO gpkg_tile_matrix '
                '(table_name, zoom_level, matrix_width, matrix_height, tile_width, tile_height, pixel_x_size, pixel_y_size) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?)',
                (table, zoom, matrix_width, matrix_height, tile_width, tile_height, pixel_x_size, pixel_y_size))


    def add_tile(self, table, zoom, column, row, data):

        with self.connection:
            self.connection.execute(
                'INSERT OR REPLACE INTO %s (zoom_level, tile_column, tile_row, tile_data) '
                'VALUES (?, ?, ?, ?)' % (quote(table)), (zoom, column, row, data))


    def tiles(self, table, zoom, columns, rows):
        """ Yield (column, row, tile_data) for every stored tile of *table*
            at *zoom* within the inclusive (first, last) *columns* and
            *rows* ranges.
        """

        cursor = self._cursor()
        cursor.execute(
            'SELECT tile_column, tile_row, tile_data FROM %s '
            'WHERE zoom_level = ? AND tile_column BETWEEN ? AND ? AND tile_row BETWEEN ? AND ?' % (quote(table)),
            (zoom, columns[0], columns[1], rows[0], rows[1]))

        for row in cursor:
            yield (row['tile_column'], row['tile_row'], row['tile_data'])


    # Features

    def create_feature_table(self, table, columns, geometry_column='geometry',
                             geometry_type='GEOMETRY', srs_id=4326, identifier=None, description=''):
        """ Create an empty feature table with the given list of
            :class:`Column` definitions. The primary key column becomes the
            feature id, and the column named *geometry_column* is registered
            in gpkg_geometry_columns with the given *geometry_type*.
        """

        if self._has_table(table):
            raise GeoPackageError('table already exists: ' + str(table))

        options = dict()
        options['GEOMETRY_NAME'] = geometry_column
        options['IDENTIFIER'] = identifier or table

        if description:
            options['DESCRIPTION'] = description

        fields = list()
        defaults = dict()

        for column in columns:
            if column.primary_key:
                options['FID'] = column.name
            elif column.name != geometry_column:
                fields.append((column.name, schema.semantic_type(column.data_type)))

            if column.default is not None:
                defaults[column.name] = column.default

        frame = _frame(fields, list(), list(), srs_id)
        kind = layer_geometry_types.get(geometry_type.upper(), 'Unknown')

        self._write(frame, table, geometry_type=kind, layer_options=options)
        self.defaults[table] = defaults


    def add_features(self, table, features, batch_size=1000, progress=None):
        """ Append the GeoJSON-like *features* to *table*. Each feature is
            a dictionary with 'geometry' and 'properties'; properties that
            do not correspond to a column are ignored. Rows are written in
            batches of *batch_size*, and the optional *progress* callable
            is invoked with the running count after each batch. Returns the
            number of features added.
        """

        geometry_info = self.geometry_column(table)
        if geometry_info is None:
            raise GeoPackageError('not a feature table: ' + str(table))

        geometry_name = geometry_info['column_name']
        srs_id = geometry_info['srs_id']
        defaults = self.defaults.get(table, dict())

        fields = list()
        for column in self.columns(table):
            if column['primary_key'] or column['name'] == geometry_name:
                continue
            fields.append((column['name'], schema.semantic_type(column['type'])))

        records = list()
        shapes = list()
        count = 0

        for feature in features:
            properties = feature.get('properties') or dict()

            record = dict()
            for name, kind in fields:
                value = properties.get(name)
                if value is None:
                    value = defaults.get(name)
                record[name] = value

            records.append(record)
            shapes.append(geometry.from_geojson(feature.get('geometry')))

            if len(records) >= batch_size:
                count += self._append(table, fields, records, shapes, srs_id)
                records = list()
                shapes = list()
                if progress is not None:
                    progress(count)

        if records or count == 0:
            count += self._append(table, fields, records, shapes, srs_id)
            if progress is not None:
                progress(count)

        return count


    def _append(self, table, fields, records, shapes, srs_id):

        if records:
            self._write(_frame(fields, records, shapes, srs_id), table, mode='a')

        return len(records)


    def _write(self, frame, table, mode='w', **options):

        if self.connection is None:
            raise GeoPackageError('the GeoPackage is closed')

        # Nothing may hold a lock on the file while GDAL writes to it.

        self.connection.commit()

        frame.to_file(self.path, layer=table, driver='GPKG', engine='pyogrio',
                      mode=mode, index=False, **options)


    def read_features(self, table):
        """ Return the feature *table* as a GeoDataFrame indexed by feature
            id, with the stored column names.
        """

        if self.geometry_column(table) is None:
            raise GeoPackageError('not a feature table: ' + str(table))

        self.connection.commit()
        return geopandas.read_file(self.path, layer=table, engine='pyogrio', fid_as_index=True)


    def iter_features(self, table):
        """ Yield every row of the feature *table* as a GeoJSON-like
            dictionary. Properties are keyed by column display name; the
            primary key becomes the feature id, and binary values (which do
            not survive the trip to a controller) are left out.
        """

        frame = self.read_features(table)

        display = dict()
        for column in self.columns(table):
            display[column['name']] = column['display_name']

        names = [name for name in frame.columns if name != frame.geometry.name]
        values = frame[names].astype(object)
        values = values.where(frame[names].notna(), None)

        for fid, shape, record in zip(frame.index, frame.geometry, values.to_dict('records')):
            feature = dict()
            feature['type'] = 'Feature'
            feature['id'] = int(fid)
            feature['geometry'] = geometry.to_geojson(shape)

            properties = dict()

            for name, value in record.items():
                if isinstance(value, (bytes, bytearray, memoryview)):
                    continue
                if isinstance(value, datetime.datetime):
                    value = format_datetime(value)

                properties[display.get(name, name)] = value

            feature['properties'] = properties
            yield feature


    def export(self):
        """ Return the complete contents of the package file as bytes.
        """

        if self.connection is None:
            raise GeoPackageError('the GeoPackage is closed')

        self.connection.commit()

        with open(self.path, 'rb') as handle:
            return handle.read()


# end of class GeoPackage



def _check_header(header):

    if header != schema.sqlite_header:
        raise GeoPackageError('not a GeoPackage: missing SQLite header')



def _frame(fields, records, shapes, srs_id):
    """ Build a GeoDataFrame holding *records*, one column per (name,
        semantic type) pair in *fields*, with *shapes* as the geometry.
    """

    index = pandas.RangeIndex(len(shapes))
    data = dict()

    for name, kind in fields:
        values = [record.get(name) for record in records]
        data[name] = _series(values, kind, index)

    crs = 'EPSG:%d' % (srs_id) if srs_id > 0 else None
    shapes = geopandas.GeoSeries(shapes, index=index, crs=crs)

    return geopandas.GeoDataFrame(pandas.DataFrame(data, index=index), geometry=shapes, crs=crs)



def _series(values, kind, index):

    if kind == 'integer':
        return pandas.Series(values, index=index, dtype='Int64')

    if kind == 'real':
        series = pandas.Series(values, index=index, dtype=object)
        return pandas.to_numeric(series, errors='coerce').astype('float64')

    if kind == 'boolean':
        return pandas.Series(values, index=index, dtype='boolean')

    if kind == 'datetime':
        series = pandas.Series(values, index=index, dtype=object)
        return pandas.to_datetime(series, utc=True)

    if kind == 'blob':
        return pandas.Series(values, index=index, dtype=object)

    return pandas.Series([_text(value) for value in values], index=index, dtype=object)



def _text(value):

    if value is None or isinstance(value, str):
        return value

    if isinstance(value, datetime.datetime):
        return format_datetime(value)

    return str(value)



def _remove(path):

    try:
        os.remove(path)
    except FileNotFoundError:
        pass


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
