import datetime
import io
import os
import sqlite3
import pytest

from PIL import Image
from shapely.geometry import Point, Polygon

import gpkgworker
from gpkgworker.gpkg import geometry


def test_open_bytes(sample_bytes, scratch_directory):

    package = gpkgworker.gpkg.open(sample_bytes)

    assert package.temporary == True
    assert os.path.dirname(package.path) == str(scratch_directory)
    assert os.path.isfile(package.path)

    assert package.tile_tables() == ['imagery']
    assert package.feature_tables() == ['observations']

    package.close()
    assert package.closed == True
    assert os.path.exists(package.path) == False

    # Closing twice is harmless.

    package.close()


def test_open_path(sample_path):

    for source in (sample_path, 'file://' + sample_path):
        package = gpkgworker.gpkg.open(source)

        assert package.temporary == False
        assert package.path == sample_path
        assert package.feature_tables() == ['observations']

        package.close()
        assert os.path.isfile(sample_path)


def test_open_invalid(tmp_path, scratch_directory):

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        gpkgworker.gpkg.open(b'this is certainly not a GeoPackage')

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        gpkgworker.gpkg.open(str(tmp_path / 'missing.gpkg'))

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        gpkgworker.gpkg.open(42)

    # A SQLite database that is not a GeoPackage.

    path = str(tmp_path / 'plain.sqlite')
    connection = sqlite3.connect(path)
    connection.execute('CREATE TABLE things (name TEXT)')
    connection.commit()
    connection.close()

    with open(path, 'rb') as handle:
        data = handle.read()

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        gpkgworker.gpkg.open(path)

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        gpkgworker.gpkg.open(data)

    # The temporary copy of the rejected bytes does not linger.

    assert os.listdir(str(scratch_directory)) == []


def test_metadata(sample_path):

    package = gpkgworker.gpkg.open(sample_path)

    contents = package.contents('imagery')
    assert contents['identifier'] == 'Imagery'
    assert contents['description'] == 'Sample imagery'
    assert package.projection(contents['srs_id']) == 'EPSG:3857'
    assert package.projection(0) == None
    assert package.projection(12345) == None

    matrices = package.zoom_level_matrices('imagery')
    assert len(matrices) == 5
    assert matrices[0] == None
    assert matrices[1] == None
    assert matrices[2]['matrix_width'] == 4
    assert matrices[4]['zoom_level'] == 4

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.contents('nothing')

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.tile_matrix_set('observations')

    package.close()

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.tile_tables()


def test_columns(sample_path):

    package = gpkgworker.gpkg.open(sample_path)

    columns = package.columns('observations')
    names = [column['name'] for column in columns]
    assert names == ['id', 'geometry', 'name', 'speed', 'seen']
    assert columns[0]['primary_key'] == True
    assert columns[4]['type'] == 'DATETIME'
    assert columns[4]['display_name'] == 'seen'

    assert package.geometry_column('observations')['column_name'] == 'geometry'
    assert package.geometry_column('imagery') == None

    # Display names come from gpkg_data_columns when there is one.

    package.connection.execute('CREATE TABLE gpkg_data_columns (table_name TEXT NOT NULL, column_name TEXT NOT NULL, '
                               'name TEXT, title TEXT, description TEXT, mime_type TEXT, constraint_name TEXT)')
    package.connection.execute("INSERT INTO gpkg_data_columns (table_name, column_name, name) "
                               "VALUES ('observations', 'speed', 'Speed (m/s)')")
    package.connection.commit()

    columns = package.columns('observations')
    assert columns[3]['display_name'] == 'Speed (m/s)'

    features = list(package.iter_features('observations'))
    assert 'Speed (m/s)' in features[0]['properties']
    assert 'speed' not in features[0]['properties']

    package.close()


def test_semantic_type():

    semantic_type = gpkgworker.gpkg.schema.semantic_type

    assert semantic_type('TEXT(32)') == 'text'
    assert semantic_type('integer') == 'integer'
    assert semantic_type('DOUBLE') == 'real'
    assert semantic_type('DATETIME') == 'datetime'
    assert semantic_type('DATE') == 'datetime'
    assert semantic_type('POINT') == 'text'
    assert semantic_type(None) == 'text'


def test_iter_features(sample_path):

    package = gpkgworker.gpkg.open(sample_path)
    features = list(package.iter_features('observations'))

    assert len(features) == 3

    first = features[0]
    assert first['type'] == 'Feature'
    assert first['id'] == 1
    assert first['geometry'] == {'type': 'Point', 'coordinates': [-100.0, 40.0]}
    assert first['properties'] == {'name': 'point 0', 'speed': 0.0, 'seen': '2024-05-01T12:30:00.000Z'}

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        list(package.iter_features('imagery'))

    package.close()


def test_add_features(tmp_path):

    package = gpkgworker.gpkg.create(str(tmp_path / 'created.gpkg'))

    columns = list()
    columns.append(gpkgworker.gpkg.Column('id', 'INTEGER', primary_key=True))
    columns.append(gpkgworker.gpkg.Column('geometry', 'GEOMETRY'))
    columns.append(gpkgworker.gpkg.Column('label', 'TEXT', default=''))

    package.create_feature_table('places', columns)

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.create_feature_table('places', columns)

    features = list()
    for index in range(5):
        feature = dict()
        feature['geometry'] = {'type': 'Point', 'coordinates': [index, index * 2]}
        feature['properties'] = {'label': 'place %d' % (index), 'ignored': True}
        features.append(feature)

    progress = list()
    count = package.add_features('places', features, batch_size=2, progress=progress.append)

    assert count == 5
    assert progress == [2, 4, 5]

    contents = package.contents('places')
    assert (contents['min_x'], contents['min_y'], contents['max_x'], contents['max_y']) == (0, 0, 4, 8)

    labels = [feature['properties']['label'] for feature in package.iter_features('places')]
    assert labels == ['place 0', 'place 1', 'place 2', 'place 3', 'place 4']

    # An empty batch still reports progress once.

    progress = list()
    count = package.add_features('places', [], batch_size=2, progress=progress.append)
    assert count == 0
    assert progress == [0]

    # Features without a geometry are stored without one.

    package.add_features('places', [{'geometry': None, 'properties': {'label': 'nowhere'}}])
    last = list(package.iter_features('places'))[-1]
    assert last['geometry'] == None
    assert last['properties']['label'] == 'nowhere'

    # Missing values take the column default.

    package.add_features('places', [{'geometry': {'type': 'Point', 'coordinates': [1, 1]}, 'properties': {}}])
    last = list(package.iter_features('places'))[-1]
    assert last['properties']['label'] == ''

    # The table is an ordinary layer to anything else reading the file.

    frame = package.read_features('places')
    assert len(frame) == 7
    assert list(frame.index[:3]) == [1, 2, 3]
    assert frame.crs.to_epsg() == 4326
    assert frame.geometry.iloc[4].equals(Point(4, 8))

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.add_features('missing', features)

    package.close()


def test_export(scratch_directory):

    package = gpkgworker.gpkg.create()
    assert package.temporary == True

    data = package.export()
    assert data.startswith(gpkgworker.gpkg.schema.sqlite_header)

    path = package.path
    package.close()
    assert os.path.exists(path) == False

    with pytest.raises(gpkgworker.gpkg.GeoPackageError):
        package.export()

    reopened = gpkgworker.gpkg.open(data)
    assert reopened.tile_tables() == []
    assert reopened.projection(4326) == 'EPSG:4326'
    reopened.close()


def test_format_datetime():

    format_datetime = gpkgworker.gpkg.package.format_datetime

    value = datetime.datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=datetime.timezone.utc)
    assert format_datetime(value) == '2024-05-01T12:30:15.123Z'

    eastern = datetime.timezone(datetime.timedelta(hours=-5))
    value = datetime.datetime(2024, 5, 1, 7, 30, 15, tzinfo=eastern)
    assert format_datetime(value) == '2024-05-01T12:30:15.000Z'

    value = datetime.datetime(2024, 5, 1, 12, 30, 15)
    assert format_datetime(value) == '2024-05-01T12:30:15.000Z'


def test_geometry():

    polygon = Polygon([(0, 0), (4, 0), (4, 3), (0, 0)])
    converted = geometry.to_geojson(polygon)

    assert converted['type'] == 'Polygon'
    assert converted['coordinates'] == [[[0.0, 0.0], [4.0, 0.0], [4.0, 3.0], [0.0, 0.0]]]
    assert geometry.from_geojson(converted).equals(polygon)
    assert geometry.from_geojson(polygon) is polygon

    assert geometry.to_geojson(None) == None
    assert geometry.to_geojson(Point()) == None
    assert geometry.from_geojson(None) == None

    assert geometry.to_geojson(Point(1, 2)) == {'type': 'Point', 'coordinates': [1.0, 2.0]}
    assert geometry.from_geojson({'type': 'Point', 'coordinates': [1, 2]}).equals(Point(1, 2))


def test_tile_scaling(sample_path):

    package = gpkgworker.gpkg.open(sample_path)
    assert package.tile_scaling('imagery') == None

    package.set_tile_scaling('imagery', 'in_out', 25, 4)
    package.set_tile_scaling('imagery', 'in_out', 3, 1)

    row = package.tile_scaling('imagery')
    assert row['scaling_type'] == 'in_out'
    assert row['zoom_in'] == 3
    assert row['zoom_out'] == 1

    cursor = package.connection.execute("SELECT COUNT(*) FROM gpkg_extensions WHERE extension_name = 'nga_tile_scaling'")
    assert cursor.fetchone()[0] == 1

    scaling = gpkgworker.gpkg.TileScaling.from_row(row)
    assert scaling.zoom_levels(5) == [5, 6, 7, 8, 4]

    package.close()


def test_zoom_levels():

    TileScaling = gpkgworker.gpkg.TileScaling

    # Zooming in searches higher zoom levels, zooming out lower ones.

    assert TileScaling('in_out', 2, 1).zoom_levels(3) == [3, 4, 5, 2]
    assert TileScaling('out_in', 2, 1).zoom_levels(3) == [3, 2, 4, 5]
    assert TileScaling('in', 2, 5).zoom_levels(2) == [2, 3, 4]
    assert TileScaling('out', 5, 2).zoom_levels(3) == [3, 2, 1]
    assert TileScaling('out', 5, 5).zoom_levels(2) == [2, 1, 0]
    assert TileScaling('in_out', None, 2).zoom_levels(0) == [0]
    assert TileScaling('in_out', 2, None).zoom_levels(0) == [0, 1, 2]

    with pytest.raises(ValueError):
        TileScaling('sideways')


def test_retriever(sample_path):

    package = gpkgworker.gpkg.open(sample_path)
    retriever = gpkgworker.gpkg.TileRetriever(package, 'imagery', 256, 256)

    data = retriever.get_tile([-100, 30, -90, 40], 3)
    image = Image.open(io.BytesIO(data))

    assert image.size == (256, 256)
    assert image.getpixel((128, 128)) == (200, 30, 30, 255)

    # Without a scaling policy only the requested zoom level is searched.

    assert retriever.get_tile([-100, 30, -90, 40], 6) == None

    retriever.set_scaling(gpkgworker.gpkg.TileScaling('in_out', 25, 4))
    assert retriever.zoom_levels(6) == [4, 3, 2]
    assert retriever.zoom_levels(0) == [2, 3, 4]
    assert retriever.get_tile([-100, 30, -90, 40], 6) is not None
    assert retriever.get_tile([-100, 30, -90, 40], 0) is not None

    # Native tiles are upscaled by at most four zoom levels.

    assert retriever.zoom_levels(8) == [4]
    assert retriever.zoom_levels(9) == []
    assert retriever.get_tile([-100, 30, -90, 40], 8) is not None
    assert retriever.get_tile([-100, 30, -90, 40], 9) == None

    # Only the western hemisphere has tiles.

    assert retriever.get_tile([10, 10, 20, 20], 3) == None

    package.close()


def test_retriever_partial(sample_path):

    package = gpkgworker.gpkg.open(sample_path)
    retriever = gpkgworker.gpkg.TileRetriever(package, 'imagery', 100, 50)

    # Half of this extent is in the western hemisphere; the other half
    # stays transparent.

    image = Image.open(io.BytesIO(retriever.get_tile([-40, -10, 40, 10], 2)))

    assert image.size == (100, 50)
    assert image.getpixel((10, 10)) == (200, 30, 30, 255)
    assert image.getpixel((90, 10))[3] == 0

    package.close()


def test_retriever_geographic(tmp_path):

    package = gpkgworker.gpkg.create(str(tmp_path / 'plate.gpkg'))
    package.create_tile_table('plate', 4326, (-180, -90, 180, 90))
    package.add_tile_matrix('plate', 0, 2, 1, 256, 256)

    # Red north of about 30 degrees latitude, blue south of it.

    tile = Image.new('RGBA', (256, 256), (0, 0, 255, 255))
    tile.paste((255, 0, 0, 255), (0, 0, 256, 85))

    buffer = io.BytesIO()
    tile.save(buffer, format='PNG')

    for column in range(2):
        package.add_tile('plate', 0, column, 0, buffer.getvalue())

    retriever = gpkgworker.gpkg.TileRetriever(package, 'plate', 256, 256)
    assert retriever.warped == True

    image = Image.open(io.BytesIO(retriever.get_tile([-90, 0, 0, 60], 0))).convert('RGBA')

    assert image.size == (256, 256)
    assert image.getpixel((128, 10)) == (255, 0, 0, 255)
    assert image.getpixel((128, 250)) == (0, 0, 255, 255)

    # In web mercator 30 degrees north sits about 149 pixels down this
    # extent, not halfway down as it would when stretched linearly.

    assert image.getpixel((128, 138))[:3] == (255, 0, 0)
    assert image.getpixel((128, 160))[:3] == (0, 0, 255)

    package.close()


def test_project_extent():

    project_extent = gpkgworker.gpkg.retriever.project_extent

    assert project_extent([1, 2, 3, 4], 'EPSG:4326') == (1, 2, 3, 4)
    assert project_extent([1, 2, 3, 4], None) == (1, 2, 3, 4)

    west, south, east, north = project_extent([-180, -90, 180, 90], 'EPSG:3857')
    assert west == pytest.approx(-20037508.342789244)
    assert north == pytest.approx(20037508.342789244, rel=1e-6)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
