import gpkgworker
import pytest
import threading

from gpkgworker import exporter
from gpkgworker import tiles
from gpkgworker.protocol import fields


@pytest.fixture
def process_bus():

    transport = gpkgworker.transport.create('process', chunk_size=8192)
    bus = gpkgworker.Bus(transport)
    bus.start()
    yield bus
    bus.close()

    assert transport.process.poll() is not None


def test_round_trip(process_bus, sample_bytes):

    source = gpkgworker.Provider(process_bus, 'sample', data=sample_bytes, timeout=30)
    descriptors = source.load()

    assert source.error == None
    assert [descriptor['tableName'] for descriptor in descriptors] == ['imagery', 'observations']

    loader = tiles.TileLoader(process_bus, 'sample', descriptors[0])
    tile = loader.load(3, 1, 3)

    assert tile.wait(30) == True
    assert tile.state == tiles.LOADED
    assert tile.data.startswith(b'\x89PNG')

    request = gpkgworker.FeatureRequest.from_url(process_bus, descriptors[1]['url'])
    request.execute()

    result = request.wait(30)
    assert len(result) == 3
    assert result[0]['properties']['seen'] == '2024-05-01T12:30:00.000Z'

    loader.close()
    source.dispose()


def test_export(process_bus):

    source = exporter.Source('alpha', 'Alpha', [{'field': 'name', 'type': 'text'}])
    items = list()

    for index in range(2000):
        geometry = {'type': 'Point', 'coordinates': [index % 180, index % 90]}
        items.append(exporter.Item('alpha', geometry, {'name': 'item %d' % (index)}))

    job = exporter.Exporter(process_bus, [source], items)
    job.start()

    assert job.wait(60) == True, job.reason
    assert len(job.result) == job.size

    chunks = [command for command, table in job.commands if command == fields.GET_CHUNK]
    assert len(chunks) > 1

    package = gpkgworker.gpkg.open(job.result)
    assert len(list(package.iter_features('Alpha'))) == 2000
    package.close()


def test_worker_exit(process_bus):

    lost = threading.Event()
    reasons = list()

    def watcher(reason):
        reasons.append(reason)
        lost.set()

    process_bus.watch(watcher)

    process_bus.transport.process.kill()

    assert lost.wait(30) == True
    assert reasons[0].startswith('worker process exited with status')
    assert process_bus.is_open == False

    with pytest.raises(gpkgworker.transport.TransportConnectionError):
        process_bus.send(gpkgworker.protocol.factory.request(fields.LIST_TABLES, 'sample'))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
