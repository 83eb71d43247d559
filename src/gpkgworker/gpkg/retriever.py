""" Rendering of arbitrary WGS84 extents from the native tiles of a package
    tile table. The :class:`TileRetriever` finds the stored tiles covering the
    requested extent, crops and scales each of them onto a canvas of the
    requested size, and returns the result as a PNG image in web mercator
    pixel space, warping tiles stored in any other coordinate system.
"""

import functools
import io
import logging
import math

import pyproj
from PIL import Image

logger = logging.getLogger(__name__)


# Spherical mercator is undefined at the poles; latitudes are clamped to
# the extent of the usual square web mercator world before reprojecting.

mercator_latitude = 85.0511287798066
mercator_projections = ('EPSG:3857', 'EPSG:900913', 'EPSG:3785', 'EPSG:102100')
display_projection = 'EPSG:3857'

# Non-mercator tiles are warped one cell at a time, with a grid of this
# many cells along each side of the output image.

mesh_cells = 16

IN = 'in'
OUT = 'out'
IN_OUT = 'in_out'
OUT_IN = 'out_in'


class TileScaling:
    """ The tile scaling extension describes how far a retriever may look
        outside the requested zoom level for native tiles: up to *zoom_in*
        levels in, to higher zoom levels whose finer tiles are scaled down,
        and up to *zoom_out* levels out, to lower zoom levels whose coarser
        tiles are scaled up. The *scaling_type* selects which directions are
        searched, and in which order.
    """

    def __init__(self, scaling_type=IN_OUT, zoom_in=None, zoom_out=None):

        if scaling_type not in (IN, OUT, IN_OUT, OUT_IN):
            raise ValueError('unknown tile scaling type: ' + repr(scaling_type))

        self.scaling_type = scaling_type
        self.zoom_in = zoom_in
        self.zoom_out = zoom_out


    def __repr__(self):
        return 'TileScaling(%r, zoom_in=%r, zoom_out=%r)' % (self.scaling_type, self.zoom_in, self.zoom_out)


    @classmethod
    def from_row(cls, row):
        return cls(row['scaling_type'], row['zoom_in'], row['zoom_out'])


    def zoom_levels(self, zoom):
        """ Return the zoom levels to search for tiles when *zoom* is
            requested, in the order the scaling type searches them.
        """

        finer = list()
        coarser = list()

        if self.scaling_type != OUT and self.zoom_in:
            finer = list(range(zoom + 1, zoom + self.zoom_in + 1))

        if self.scaling_type != IN and self.zoom_out:
            coarser = list(range(zoom - 1, zoom - self.zoom_out - 1, -1))
            coarser = [level for level in coarser if level >= 0]

        if self.scaling_type == OUT_IN:
            return [zoom] + coarser + finer

        return [zoom] + finer + coarser


# end of class TileScaling



@functools.lru_cache(maxsize=16)
def _transformer(projection, source='EPSG:4326'):
    return pyproj.Transformer.from_crs(source, projection, always_xy=True)



def project_extent(extent, projection):
    """ Reproject a WGS84 *extent* (west, south, east, north) into the
        coordinate system named by *projection*, such as 'EPSG:3857'. A
        projection of None, or of WGS84 itself, returns the extent as-is.
    """

    west, south, east, north = extent

    if projection is None or projection.upper() in ('EPSG:4326', 'OGC:CRS84'):
        return (west, south, east, north)

    if projection.upper() in mercator_projections:
        south = max(south, -mercator_latitude)
        north = min(north, mercator_latitude)

    bounds = _transformer(projection).transform_bounds(west, south, east, north, densify_pts=21)

    if not all(math.isfinite(value) for value in bounds):
        raise ValueError('extent %r cannot be expressed in %s' % (list(extent), projection))

    return bounds



class TileRetriever:
    """ Retrieve images of the tile *table* in *package* at a fixed output
        size of *width* by *height* pixels.
    """

    def __init__(self, package, table, width, height):

        self.package = package
        self.table = table
        self.width = int(width)
        self.height = int(height)
        self.scaling = None

        self.matrix_set = package.tile_matrix_set(table)
        self.projection = package.projection(self.matrix_set['srs_id'])

        if self.projection is None:
            self.warped = False
        else:
            self.warped = self.projection.upper() not in mercator_projections

        self.matrices = dict()
        for matrix in package.tile_matrices(table):
            self.matrices[matrix['zoom_level']] = matrix


    def set_scaling(self, scaling):
        self.scaling = scaling


    def zoom_levels(self, zoom):

        if self.scaling is None:
            levels = [zoom]
        else:
            levels = self.scaling.zoom_levels(zoom)

        return [level for level in levels if level in self.matrices]


    def get_tile(self, extent, zoom):
        """ Return PNG bytes for the WGS84 *extent* at *zoom*, or None if
            the package has no tile data covering that extent at any of the
            zoom levels allowed by the scaling policy.
        """

        bounds = project_extent(extent, self.projection)

        for level in self.zoom_levels(zoom):
            image = self.draw(level, bounds)

            if image is not None:
                if level != zoom:
                    logger.debug("%s: zoom %d drawn from native zoom %d", self.table, zoom, level)

                if self.warped:
                    image = self.warp(image, extent, bounds)

                buffer = io.BytesIO()
                image.save(buffer, format='PNG')
                return buffer.getvalue()

        return None


    def draw(self, level, bounds):
        """ Compose the stored tiles at zoom *level* that intersect the
            projected *bounds* onto a new RGBA canvas. Returns None if no
            stored tile contributes to the canvas.
        """

        min_x, min_y, max_x, max_y = bounds

        if max_x <= min_x or max_y <= min_y:
            return None

        matrix = self.matrices[level]
        matrix_set = self.matrix_set

        tile_span_x = (matrix_set['max_x'] - matrix_set['min_x']) / matrix['matrix_width']
        tile_span_y = (matrix_set['max_y'] - matrix_set['min_y']) / matrix['matrix_height']

        if max_x <= matrix_set['min_x'] or min_x >= matrix_set['max_x']:
            return None
        if max_y <= matrix_set['min_y'] or min_y >= matrix_set['max_y']:
            return None

        first_column = max(0, int(math.floor((min_x - matrix_set['min_x']) / tile_span_x)))
        last_column = min(matrix['matrix_width'] - 1, int(math.floor((max_x - matrix_set['min_x']) / tile_span_x)))
        first_row = max(0, int(math.floor((matrix_set['max_y'] - max_y) / tile_span_y)))
        last_row = min(matrix['matrix_height'] - 1, int(math.floor((matrix_set['max_y'] - min_y) / tile_span_y)))

        scale_x = self.width / (max_x - min_x)
        scale_y = self.height / (max_y - min_y)

        canvas = None
        tiles = self.package.tiles(self.table, level, (first_column, last_column), (first_row, last_row))

        for column, row, data in tiles:
            tile_min_x = matrix_set['min_x'] + column * tile_span_x
            tile_max_x = tile_min_x + tile_span_x
            tile_max_y = matrix_set['max_y'] - row * tile_span_y
            tile_min_y = tile_max_y - tile_span_y

            left = max(tile_min_x, min_x)
            right = min(tile_max_x, max_x)
            bottom = max(tile_min_y, min_y)
            top = min(tile_max_y, max_y)

            if right <= left or top <= bottom:
                continue

            destination = (int(round((left - min_x) * scale_x)),
                           int(round((max_y - top) * scale_y)),
                           int(round((right - min_x) * scale_x)),
                           int(round((max_y - bottom) * scale_y)))

            width = destination[2] - destination[0]
            height = destination[3] - destination[1]

            if width <= 0 or height <= 0:
                continue

            image = Image.open(io.BytesIO(data)).convert('RGBA')

            # Only the overlapping part of the source tile is resampled.

            source = ((left - tile_min_x) / tile_span_x * image.width,
                      (tile_max_y - top) / tile_span_y * image.height,
                      (right - tile_min_x) / tile_span_x * image.width,
                      (tile_max_y - bottom) / tile_span_y * image.height)

            piece = image.resize((width, height), Image.Resampling.BILINEAR, box=source)

            if canvas is None:
                canvas = Image.new('RGBA', (self.width, self.height), (0, 0, 0, 0))

            canvas.alpha_composite(piece, dest=destination[:2])

        return canvas


    def warp(self, image, extent, bounds):
        """ Resample *image*, drawn linearly over the native *bounds*, into
            web mercator pixel space over the WGS84 *extent*. Each cell of
            the output grid is mapped from the quadrilateral its corners
            project to in the native image.
        """

        min_x, min_y, max_x, max_y = project_extent(extent, display_projection)
        native_x, native_y, native_max_x, native_max_y = bounds

        transformer = _transformer(self.projection, display_projection)

        xs = [int(round(index * self.width / mesh_cells)) for index in range(mesh_cells + 1)]
        ys = [int(round(index * self.height / mesh_cells)) for index in range(mesh_cells + 1)]

        def source(x, y):
            mercator_x = min_x + x * (max_x - min_x) / self.width
            mercator_y = max_y - y * (max_y - min_y) / self.height
            x, y = transformer.transform(mercator_x, mercator_y)

            column = (x - native_x) / (native_max_x - native_x) * image.width
            row = (native_max_y - y) / (native_max_y - native_y) * image.height
            return (column, row)

        mesh = list()

        for left, right in zip(xs, xs[1:]):
            for top, bottom in zip(ys, ys[1:]):
                if right <= left or bottom <= top:
                    continue

                quad = source(left, top) + source(left, bottom) + source(right, bottom) + source(right, top)
                mesh.append(((left, top, right, bottom), quad))

        return image.transform((self.width, self.height), Image.Transform.MESH, mesh, Image.Resampling.BILINEAR)


# end of class TileRetriever


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
