"""Protocol constants.

Keep these in one place to avoid stringly-typed message handling.
"""

# Message kinds (controller -> worker)

OPEN_LIBRARY = "open-library"
OPEN = "open"
CLOSE = "close"
LIST_TABLES = "list-tables"
GET_TILE = "get-tile"
GET_FEATURES = "get-features"
EXPORT = "export"

# Export sub-commands. PROGRESS only ever travels worker -> controller.

CREATE = "create"
CREATE_TABLE = "create-table"
FEATURE_BATCH = "feature-batch"
PROGRESS = "progress"
WRITE = "write"
GET_CHUNK = "get-chunk"
WRITE_FINISH = "write-finish"

# Response status

SUCCESS = "success"
ERROR = "error"

# Table descriptor types

TILE = "tile"
FEATURE = "feature"

# Record time handling for exported features

RECORD_TIME = "recordTime"
TIME_START = "TIME_START"
TIME_STOP = "TIME_STOP"
