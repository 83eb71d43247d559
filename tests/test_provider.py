import gpkgworker
import pytest
import requests

from gpkgworker import provider
from gpkgworker.protocol import fields


def test_is_geopackage(sample_bytes):

    assert provider.is_geopackage(sample_bytes) == True
    assert provider.is_geopackage(b'<html>Not found</html>') == False
    assert provider.is_geopackage(b'') == False
    assert provider.is_geopackage(None) == False


def test_bytes(bus, sample_bytes):

    source = gpkgworker.Provider(bus, 'sample', data=sample_bytes, label='Sample server')
    descriptors = source.load()

    assert source.loaded == True
    assert source.error == None
    assert [descriptor['title'] for descriptor in descriptors] == ['Imagery', 'Observations']

    imagery, observations = descriptors

    assert imagery['id'] == 'sample#imagery'
    assert imagery['provider'] == 'Sample server'
    assert imagery['layerMinZoom'] == 0
    assert imagery['layerMaxZoom'] == gpkgworker.grid.display_max_zoom
    assert None not in imagery['resolutions']
    assert imagery['resolutions'][0] == pytest.approx(gpkgworker.grid.display_resolution(0))

    assert observations['id'] == 'sample#observations'
    assert observations['animate'] == True
    assert observations['url'] == 'gpkg://sample/observations'

    source.dispose()


def test_path(bus, sample_path):

    for url in (sample_path, 'file://' + sample_path):
        source = gpkgworker.Provider(bus, 'sample', url=url)
        descriptors = source.load()

        assert source.error == None
        assert len(descriptors) == 2

    source.dispose()


def test_fetch(bus, sample_bytes):

    fetched = list()

    def fetch(url):
        fetched.append(url)
        return sample_bytes

    source = gpkgworker.Provider(bus, 'remote', url='https://example.com/sample.gpkg', fetch=fetch)
    descriptors = source.load()

    assert fetched == ['https://example.com/sample.gpkg']
    assert len(descriptors) == 2

    source.dispose()


def test_fetch_failure(bus):

    def fetch(url):
        raise provider.FetchError('Request failed for GeoPackage ' + url)

    source = gpkgworker.Provider(bus, 'remote', url='https://example.com/sample.gpkg', fetch=fetch)

    with pytest.raises(provider.FetchError):
        source.load()

    assert source.loaded == False


def test_fetch_requests(monkeypatch):

    def get(url, headers=None, timeout=None):
        raise requests.ConnectionError('connection refused')

    monkeypatch.setattr(requests, 'get', get)

    with pytest.raises(provider.FetchError):
        provider.fetch('https://example.com/sample.gpkg')


def test_not_geopackage(bus):

    def fetch(url):
        return b'<html>Not found</html>'

    source = gpkgworker.Provider(bus, 'remote', url='https://example.com/sample.gpkg', fetch=fetch)

    assert source.load() == None
    assert source.loaded == False
    assert 'not a GeoPackage' in source.error


def test_open_failure(bus, tmp_path):

    source = gpkgworker.Provider(bus, 'missing', url=str(tmp_path / 'missing.gpkg'))

    assert source.load() == None
    assert source.error.startswith('missing %s failed!' % (fields.OPEN))


def test_requires_source(bus):

    with pytest.raises(ValueError):
        gpkgworker.Provider(bus, 'nothing')


def test_timeout(sample_bytes):

    class SilentTransport(gpkgworker.transport.Transport):

        def start(self):
            pass

        def close(self):
            pass

        def send(self, msg):
            pass

        @property
        def is_open(self):
            return True

    silent = gpkgworker.Bus(SilentTransport())
    source = gpkgworker.Provider(silent, 'sample', data=sample_bytes, timeout=0.05)

    with pytest.raises(gpkgworker.transport.TransportTimeout):
        source.load()


def test_natural_order():

    titles = ['Layer 10', 'layer 2', 'Layer 1', None]
    titles.sort(key=provider._natural_key)

    assert titles == [None, 'Layer 1', 'layer 2', 'Layer 10']


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
