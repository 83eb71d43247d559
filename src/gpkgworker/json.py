""" Wrapper module around :mod:`orjson` providing the equivalent of
    :func:`json.loads` and :func:`json.dumps`. Encoded output is always
    bytes, which is what goes out on the wire.
"""

import orjson


def dumps(value):
    """ Return the JSON encoding of *value* as bytes. Datetime instances are
        rendered as ISO-8601 strings; dictionary keys that are not strings
        are coerced, matching what a JSON decoder would produce anyway.
    """

    return orjson.dumps(value, option=orjson.OPT_NON_STR_KEYS)


def loads(encoded):
    """ Decode the JSON byte string (or str) *encoded*.
    """

    return orjson.loads(encoded)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
