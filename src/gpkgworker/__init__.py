""" Asynchronous access to GeoPackages. Every operation against a package
    runs in a worker, either a background thread or a child process, which
    the controller talks to exclusively through correlated messages.
"""

# Utility components.

from . import json
from . import config
from . import grid

# Submodules used by multiple other components.

from . import protocol
from . import gpkg
from . import transport
from . import registry
from . import bus

# Primary public-facing interfaces.

from . import begin
get = begin.get

from .bus import Bus
from .provider import Provider, FetchError
from .tiles import TileLoader, Tile
from .features import FeatureRequest
from .exporter import Exporter, Source, Item

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
