""" Helpers for reconciling the tile pyramid defined in a GeoPackage with the
    pyramid a display expects. A package rarely defines every zoom level; the
    display, on the other hand, needs a resolution and a tile size for every
    level, and it will happily ask for tiles whose bounds wander outside the
    +/- 180 degree longitude range.
"""

import math

import mercantile


# Cesium (and, on occasion, OpenLayers) generates tile bounds a hair outside
# +/- 180 degrees. Anything within this slack is treated as in-range.

tile_left_boundary = -180 - 1e-12
tile_right_boundary = 180 + 1e-12

default_zoom_factor = 2

# The display pyramid is the usual spherical mercator grid of 256 pixel tiles.

display_tile_size = 256
display_max_zoom = 42
earth_circumference = 2 * math.pi * 6378137


def fix_resolutions(resolutions):
    """ Fill in any missing (None) entries in a per-zoom-level *resolutions*
        list. The list is modified in place and also returned.

        The first two defined entries establish the zoom factor between
        adjacent levels; if only one entry is defined, each level is assumed
        to be half the ground resolution of the previous one. Missing entries
        are extrapolated from the first defined entry, including those ahead
        of it. Defined entries are left untouched, so repairing an already
        complete list is a no-op.
    """

    first = None
    second = None

    for index, resolution in enumerate(resolutions):
        if resolution is None:
            continue

        if first is None:
            first = index
        else:
            second = index
            break

    if first is None:
        return resolutions

    known = resolutions[first]

    if second is None:
        factor = default_zoom_factor
    else:
        gap = second - first
        factor = (known / resolutions[second]) ** (1.0 / gap)

    for index in range(len(resolutions)):
        if resolutions[index] is not None:
            continue

        distance = index - first

        # Divide rather than multiply by a fractional power; the exact
        # values matter when a factor is a whole number.

        if distance > 0:
            resolutions[index] = known / factor ** distance
        else:
            resolutions[index] = known * factor ** -distance

    return resolutions



def fix_sizes(sizes):
    """ A display requires a full tile pyramid, so leading gaps in the list
        of tile *sizes* are filled with the first defined size. The tiles at
        those levels will be blank anyway. The list is modified in place and
        also returned.
    """

    first = None
    for index, size in enumerate(sizes):
        if size is not None:
            first = size
            break
    else:
        return sizes

    for previous in range(index):
        sizes[previous] = first

    return sizes



def normalize_tile_extent(extent):
    """ Rewrite the longitude values of *extent* (west, south, east, north)
        in place so that the range lies within +/- 180 degrees, give or take
        floating point slack. A range spanning the whole world collapses to
        exactly [-180, 180]. The extent is also returned.
    """

    left = min(extent[0], extent[2])
    right = max(extent[0], extent[2])

    if right - left >= 360:
        left = -180
        right = 180

    elif left < tile_left_boundary:
        while left < tile_left_boundary:
            left += 360
            right += 360

    elif right > tile_right_boundary:
        while right > tile_right_boundary:
            left -= 360
            right -= 360

    extent[0] = left
    extent[2] = right

    return extent



def display_resolution(zoom):
    """ Return the ground resolution, in meters per pixel, of the display
        pyramid at the requested *zoom* level.
    """

    return earth_circumference / (display_tile_size * 2 ** zoom)



def display_extent(z, x, y):
    """ Return the WGS84 extent (west, south, east, north) of the display
        tile at *z*, *x*, *y*. Column numbers outside the world are not
        wrapped; the resulting longitudes are left for
        :func:`normalize_tile_extent` to deal with.
    """

    bounds = mercantile.bounds(x, y, z)
    return [bounds.west, bounds.south, bounds.east, bounds.north]



class TileGrid:
    """ The native tile pyramid of a package tile table, as described by a
        (repaired) tile table descriptor. Only the pieces needed to map a
        display resolution onto a package zoom level are retained.
    """

    def __init__(self, resolutions, min_zoom=0):

        if not resolutions:
            raise ValueError('a tile grid requires at least one resolution')

        if None in resolutions:
            raise ValueError('tile grid resolutions must be repaired before use')

        self.resolutions = list(resolutions)
        self.min_zoom = max(0, int(round(min_zoom)))
        self.max_zoom = len(self.resolutions) - 1

        if self.min_zoom > self.max_zoom:
            self.min_zoom = self.max_zoom


    @classmethod
    def from_descriptor(cls, descriptor):
        return cls(descriptor['resolutions'],
                   descriptor.get('minZoom', 0))


    def z_for_resolution(self, resolution):
        """ Return the zoom level whose resolution is nearest to the
            requested *resolution*, constrained to the zoom range of this
            grid.
        """

        nearest = None
        nearest_delta = None

        for zoom in range(self.min_zoom, self.max_zoom + 1):
            delta = abs(self.resolutions[zoom] - resolution)

            if nearest_delta is None or delta < nearest_delta:
                nearest = zoom
                nearest_delta = delta

        return nearest


# end of class TileGrid


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
