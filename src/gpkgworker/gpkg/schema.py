""" SQL definitions for the GeoPackage core tables, plus the NGA tile scaling
    extension. Only what the worker reads or writes is defined here.
"""

# 'GPKG' in ASCII, and version 1.2.0 of the standard.

application_id = 0x47504B47
user_version = 10200

sqlite_header = b'SQLite format 3\x00'


spatial_ref_sys = """
CREATE TABLE IF NOT EXISTS gpkg_spatial_ref_sys (
    srs_name TEXT NOT NULL,
    srs_id INTEGER PRIMARY KEY,
    organization TEXT NOT NULL,
    organization_coordsys_id INTEGER NOT NULL,
    definition TEXT NOT NULL,
    description TEXT
)
"""

contents = """
CREATE TABLE IF NOT EXISTS gpkg_contents (
    table_name TEXT NOT NULL PRIMARY KEY,
    data_type TEXT NOT NULL,
    identifier TEXT UNIQUE,
    description TEXT DEFAULT '',
    last_change DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
    min_x DOUBLE,
    min_y DOUBLE,
    max_x DOUBLE,
    max_y DOUBLE,
    srs_id INTEGER,
    CONSTRAINT fk_gc_r_srs_id FOREIGN KEY (srs_id) REFERENCES gpkg_spatial_ref_sys(srs_id)
)
"""

geometry_columns = """
CREATE TABLE IF NOT EXISTS gpkg_geometry_columns (
    table_name TEXT NOT NULL,
    column_name TEXT NOT NULL,
    geometry_type_name TEXT NOT NULL,
    srs_id INTEGER NOT NULL,
    z TINYINT NOT NULL,
    m TINYINT NOT NULL,
    CONSTRAINT pk_geom_cols PRIMARY KEY (table_name, column_name),
    CONSTRAINT fk_gc_tn FOREIGN KEY (table_name) REFERENCES gpkg_contents(table_name),
    CONSTRAINT fk_gc_srs FOREIGN KEY (srs_id) REFERENCES gpkg_spatial_ref_sys (srs_id)
)
"""

tile_matrix_set = """
CREATE TABLE IF NOT EXISTS gpkg_tile_matrix_set (
    table_name TEXT NOT NULL PRIMARY KEY,
    srs_id INTEGER NOT NULL,
    min_x DOUBLE NOT NULL,
    min_y DOUBLE NOT NULL,
    max_x DOUBLE NOT NULL,
    max_y DOUBLE NOT NULL,
    CONSTRAINT fk_gtms_table_name FOREIGN KEY (table_name) REFERENCES gpkg_contents(table_name),
    CONSTRAINT fk_gtms_srs FOREIGN KEY (srs_id) REFERENCES gpkg_spatial_ref_sys (srs_id)
)
"""

tile_matrix = """
CREATE TABLE IF NOT EXISTS gpkg_tile_matrix (
    table_name TEXT NOT NULL,
    zoom_level INTEGER NOT NULL,
    matrix_width INTEGER NOT NULL,
    matrix_height INTEGER NOT NULL,
    tile_width INTEGER NOT NULL,
    tile_height INTEGER NOT NULL,
    pixel_x_size DOUBLE NOT NULL,
    pixel_y_size DOUBLE NOT NULL,
    CONSTRAINT pk_ttm PRIMARY KEY (table_name, zoom_level),
    CONSTRAINT fk_tmm_table_name FOREIGN KEY (table_name) REFERENCES gpkg_contents(table_name)
)
"""

extensions = """
CREATE TABLE IF NOT EXISTS gpkg_extensions (
    table_name TEXT,
    column_name TEXT,
    extension_name TEXT NOT NULL,
    definition TEXT NOT NULL,
    scope TEXT NOT NULL,
    CONSTRAINT ge_tce UNIQUE (table_name, column_name, extension_name)
)
"""

tile_scaling = """
CREATE TABLE IF NOT EXISTS nga_tile_scaling (
    table_name TEXT PRIMARY KEY NOT NULL,
    scaling_type TEXT NOT NULL,
    zoom_in INTEGER,
    zoom_out INTEGER,
    CONSTRAINT fk_nts_table_name FOREIGN KEY (table_name) REFERENCES gpkg_tile_matrix_set(table_name)
)
"""

tile_scaling_extension = 'nga_tile_scaling'
tile_scaling_definition = 'http://ngageoint.github.io/GeoPackage/docs/extensions/tile-scaling.html'

core = (spatial_ref_sys, contents, geometry_columns, tile_matrix_set, tile_matrix, extensions)


# The spatial reference systems every GeoPackage is required to carry, plus
# spherical mercator, which nearly every tile table uses.

wgs84_definition = ('GEOGCS["WGS 84",DATUM["WGS_1984",SPHEROID["WGS 84",6378137,298.257223563,'
    'AUTHORITY["EPSG","7030"]],AUTHORITY["EPSG","6326"]],PRIMEM["Greenwich",0,AUTHORITY["EPSG","8901"]],'
    'UNIT["degree",0.0174532925199433,AUTHORITY["EPSG","9122"]],AUTHORITY["EPSG","4326"]]')

mercator_definition = ('PROJCS["WGS 84 / Pseudo-Mercator",GEOGCS["WGS 84",DATUM["WGS_1984",'
    'SPHEROID["WGS 84",6378137,298.257223563,AUTHORITY["EPSG","7030"]],AUTHORITY["EPSG","6326"]],'
    'PRIMEM["Greenwich",0,AUTHORITY["EPSG","8901"]],UNIT["degree",0.0174532925199433,'
    'AUTHORITY["EPSG","9122"]],AUTHORITY["EPSG","4326"]],PROJECTION["Mercator_1SP"],'
    'PARAMETER["central_meridian",0],PARAMETER["scale_factor",1],PARAMETER["false_easting",0],'
    'PARAMETER["false_northing",0],UNIT["metre",1,AUTHORITY["EPSG","9001"]],AXIS["X",EAST],'
    'AXIS["Y",NORTH],EXTENSION["PROJ4","+proj=merc +a=6378137 +b=6378137 +lat_ts=0.0 +lon_0=0.0 '
    '+x_0=0.0 +y_0=0 +k=1.0 +units=m +nadgrids=@null +wktext +no_defs"],AUTHORITY["EPSG","3857"]]')

default_spatial_refs = (
    ('Undefined cartesian SRS', -1, 'NONE', -1, 'undefined', 'undefined cartesian coordinate reference system'),
    ('Undefined geographic SRS', 0, 'NONE', 0, 'undefined', 'undefined geographic coordinate reference system'),
    ('WGS 84 geodetic', 4326, 'EPSG', 4326, wgs84_definition, 'longitude/latitude coordinates in decimal degrees on the WGS 84 spheroid'),
    ('WGS 84 / Pseudo-Mercator', 3857, 'EPSG', 3857, mercator_definition, 'spherical mercator'),
)


# GeoPackage column data types, and the semantic type reported to a
# controller for each of them.

TEXT = 'TEXT'
INTEGER = 'INTEGER'
REAL = 'REAL'
DATETIME = 'DATETIME'
GEOMETRY = 'GEOMETRY'

semantic_types = {
    'BOOLEAN': 'boolean',
    'TINYINT': 'integer',
    'SMALLINT': 'integer',
    'MEDIUMINT': 'integer',
    'INT': 'integer',
    'INTEGER': 'integer',
    'BIGINT': 'integer',
    'FLOAT': 'real',
    'DOUBLE': 'real',
    'REAL': 'real',
    'TEXT': 'text',
    'BLOB': 'blob',
    'DATE': 'datetime',
    'DATETIME': 'datetime',
}


def semantic_type(declared):
    """ Map a declared SQLite column type, such as 'TEXT(32)', to one of
        the semantic types reported in a feature table descriptor.
    """

    if not declared:
        return 'text'

    base = declared.split('(', 1)[0].strip().upper()
    return semantic_types.get(base, 'text')


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
