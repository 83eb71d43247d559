import gpkgworker
import pytest

from gpkgworker.protocol import factory
from gpkgworker.protocol import fields
from gpkgworker import features


class RecordingBus:

    def __init__(self):
        self.sent = list()
        self.listeners = list()
        self.watchers = list()

    def listen(self, callback):
        self.listeners.append(callback)

    def unlisten(self, callback):
        self.listeners.remove(callback)

    def watch(self, callback):
        self.watchers.append(callback)

    def unwatch(self, callback):
        self.watchers.remove(callback)

    def lose(self, reason):
        for callback in list(self.watchers):
            callback(reason)

    def send(self, message):
        self.sent.append(message)


def test_url():

    url = features.feature_url('sample', 'my table')
    assert url == 'gpkg://sample/my%20table'
    assert features.parse_url(url) == ('sample', 'my table')

    with pytest.raises(ValueError):
        features.parse_url('https://sample/table')


def test_stream():

    bus = RecordingBus()
    request = features.FeatureRequest.from_url(bus, 'gpkg://sample/observations')
    request.execute()

    message = bus.sent[0]
    assert message.kind == fields.GET_FEATURES
    assert message.id == 'sample'
    assert message.table == 'observations'

    feature = {'type': 'Feature', 'geometry': None, 'properties': {'name': 'one', 'geometry': 'POINT (1 2)'}}
    request.receive(factory.success(message, feature))

    # Replies for other tables are not part of this stream.

    other = factory.request(fields.GET_FEATURES, 'sample', tableName='elsewhere')
    request.receive(factory.success(other, {'type': 'Feature', 'properties': {}}))
    request.receive(factory.success(other, 0))

    assert request.done == False
    assert request.wait(0) == None

    request.receive(factory.success(message, 0))

    assert request.done == True
    assert request.status_code == 200
    assert bus.listeners == []

    result = request.wait(0)
    assert len(result) == 1
    assert result[0]['properties'] == {'name': 'one'}


def test_error():

    bus = RecordingBus()
    request = features.FeatureRequest(bus, 'sample', 'observations')
    request.execute()

    request.receive(factory.error(bus.sent[0], 'No open GeoPackage exists for the given ID'))

    assert request.done == True
    assert request.status_code == 500
    assert request.errors == ['No open GeoPackage exists for the given ID']
    assert request.wait(0) == None
    assert bus.listeners == []


def test_lost():

    bus = RecordingBus()
    request = features.FeatureRequest(bus, 'sample', 'observations')
    request.execute()

    request.receive(factory.success(bus.sent[0], {'type': 'Feature', 'properties': {'name': 'one'}}))
    bus.lose('worker process exited with status 9')

    assert request.done == True
    assert request.status_code == 500
    assert request.errors == ['worker process exited with status 9']
    assert request.wait(0) == None
    assert bus.listeners == []
    assert bus.watchers == []


def test_worker(bus, sample_bytes):

    provider = gpkgworker.Provider(bus, 'sample', data=sample_bytes)
    descriptors = provider.load()
    observations = descriptors[1]

    assert observations['url'] == 'gpkg://sample/observations'

    request = features.FeatureRequest.from_url(bus, observations['url'])
    request.execute()

    result = request.wait(30)
    assert result is not None
    assert len(result) == 3
    assert result[1]['properties']['name'] == 'point 1'
    assert result[1]['properties']['speed'] == 1.5
    assert result[1]['geometry'] == {'type': 'Point', 'coordinates': [-99.0, 41.0]}

    # Once the package is closed the request fails.

    provider.dispose()

    request = features.FeatureRequest(bus, 'sample', 'observations')
    request.execute()

    assert request.wait(30) == None
    assert request.status_code == 500


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
