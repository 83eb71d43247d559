import datetime
import io
import pytest

from PIL import Image
from shapely.geometry import Point

import gpkgworker
import gpkgworker.worker


# Spherical mercator world bounds; the sample tile table only has data in
# the western hemisphere, at zoom levels 2 through 4.

half_world = 20037508.342789244
world = (-half_world, -half_world, half_world, half_world)
tile_zooms = (2, 3, 4)


def tile_png(color=(200, 30, 30, 255), size=256):

    buffer = io.BytesIO()
    Image.new('RGBA', (size, size), color).save(buffer, format='PNG')
    return buffer.getvalue()



def build_sample(path):
    """ Build a package with one tile table ('imagery') and one feature
        table ('observations', which has a datetime column).
    """

    package = gpkgworker.gpkg.create(path)

    package.create_tile_table('imagery', 3857, world, identifier='Imagery', description='Sample imagery')
    data = tile_png()

    for zoom in tile_zooms:
        count = 2 ** zoom
        package.add_tile_matrix('imagery', zoom, count, count, 256, 256)

        for column in range(count // 2):
            for row in range(count):
                package.add_tile('imagery', zoom, column, row, data)

    columns = list()
    columns.append(gpkgworker.gpkg.Column('id', 'INTEGER', primary_key=True))
    columns.append(gpkgworker.gpkg.Column('geometry', 'GEOMETRY'))
    columns.append(gpkgworker.gpkg.Column('name', 'TEXT'))
    columns.append(gpkgworker.gpkg.Column('speed', 'REAL'))
    columns.append(gpkgworker.gpkg.Column('seen', 'DATETIME'))

    package.create_feature_table('observations', columns, identifier='Observations')

    seen = datetime.datetime(2024, 5, 1, 12, 30, tzinfo=datetime.timezone.utc)
    features = list()

    for index in range(3):
        feature = dict()
        feature['geometry'] = Point(-100 + index, 40 + index)
        feature['properties'] = {'name': 'point %d' % (index), 'speed': 1.5 * index, 'seen': seen}
        features.append(feature)

    package.add_features('observations', features)
    package.close()

    return path



class LoopbackTransport(gpkgworker.transport.Transport):
    """ Record every message sent; replies are delivered by hand.
    """

    def __init__(self):
        gpkgworker.transport.Transport.__init__(self)
        self.sent = list()
        self.running = False

    def start(self):
        self.running = True

    def close(self):
        self.running = False

    def send(self, msg):
        self.sent.append(msg)

    @property
    def is_open(self):
        return self.running

    def reply(self, command, table=None, data=None, **fields):
        """ Answer the most recent message sent for *command* (and
            *table*, if specified) with a success reply.
        """

        for message in reversed(self.sent):
            if message.command == command and (table is None or message.table == table):
                self.deliver(gpkgworker.protocol.factory.success(message, data, **fields))
                return message

        raise LookupError('nothing was sent for %s %s' % (command, table))



@pytest.fixture(autouse=True)
def scratch_directory(tmp_path, monkeypatch):

    directory = tmp_path / 'scratch'
    monkeypatch.setenv('GPKGWORKER_TMPDIR', str(directory))
    return directory


@pytest.fixture
def sample_path(tmp_path):
    return build_sample(str(tmp_path / 'sample.gpkg'))


@pytest.fixture
def sample_bytes(sample_path):

    with open(sample_path, 'rb') as handle:
        return handle.read()


@pytest.fixture
def replies():
    return list()


@pytest.fixture
def worker(replies):

    worker = gpkgworker.worker.Worker(replies.append)
    yield worker
    worker.close_all()


@pytest.fixture
def loopback():

    transport = LoopbackTransport()
    bus = gpkgworker.Bus(transport)
    bus.start()
    return (bus, transport)


@pytest.fixture
def bus():

    bus = gpkgworker.Bus(gpkgworker.transport.create('thread'))
    bus.start()
    yield bus
    bus.close()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
