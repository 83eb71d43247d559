""" Conversion between shapely geometries and the GeoJSON-like mappings
    exchanged with a controller.
"""

from shapely.geometry import mapping, shape


def from_geojson(geometry):
    """ Return a shapely geometry for a GeoJSON-like *geometry* mapping,
        passing shapely geometries (and None) through unchanged.
    """

    if geometry is None:
        return None

    if hasattr(geometry, 'geom_type'):
        return geometry

    return shape(geometry)



def to_geojson(geometry):
    """ Return a GeoJSON-like dictionary for a shapely *geometry*, with
        lists instead of tuples so it survives a JSON round trip unchanged.
    """

    if geometry is None or geometry.is_empty:
        return None

    return _listify(mapping(geometry))



def _listify(value):

    if isinstance(value, (list, tuple)):
        return [_listify(item) for item in value]

    if isinstance(value, dict):
        return {key: _listify(item) for key,item in value.items()}

    return value


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
