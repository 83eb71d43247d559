""" A compact GeoPackage adapter: just enough of the GeoPackage standard to
    list, read and render the tile and feature tables of an existing package,
    and to create new feature packages for export.
"""

from .package import GeoPackage, GeoPackageError, Column
from .retriever import TileRetriever, TileScaling
from . import geometry
from . import schema

open = GeoPackage.open
create = GeoPackage.create

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
