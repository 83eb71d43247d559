""" A class representation of a gpkgworker message: the :class:`Message`
    envelope sent by a controller, and the :class:`Response` the worker
    sends back for it.
"""

import copy
import itertools
import threading

from . import fields


# This is the version of the on-the-wire protocol implemented here. It is
# only checked when messages are framed as bytes, which is to say only when
# the worker runs in a separate process.

PROTOCOL_VERSION = 'a'


class Message:
    """ The :class:`Message` is the envelope for every request sent to a
        worker. The *kind* selects the worker command; the *id* is the
        caller-assigned correlation id, which for long-lived sessions also
        identifies the open package the request operates on.

        The *data* field is reserved for large payloads: the raw bytes of a
        package being opened, or a feature collection being exported. It is
        kept apart from the remaining fields so that it can be moved as a
        separate binary frame, and so that it can be dropped from any reply
        that references this message.

        Any additional keyword arguments become named fields of the message,
        and must be JSON serializable: for example *tableName*, *zoom*,
        *extent*, or *command* for export sub-commands.
    """

    def __init__(self, kind, id=None, data=None, **kwargs):

        if kind is None or kind == '':
            raise ValueError('a message must have a kind')

        self.kind = kind
        self.id = id
        self.data = data
        self.fields = dict()

        for key,value in kwargs.items():
            if value is not None:
                self.fields[key] = value


    def __contains__(self, key):
        return key in self.fields


    def __getitem__(self, key):
        return self.fields[key]


    def __setitem__(self, key, value):
        self.fields[key] = value


    def __repr__(self):
        if self.data is None:
            data = ''
        else:
            data = ', data=<%s>' % (type(self.data).__name__)

        return 'Message(%r, id=%r%s, %r)' % (self.kind, self.id, data, self.fields)


    def get(self, key, default=None):
        return self.fields.get(key, default)


    @property
    def command(self):
        return self.fields.get('command')


    @property
    def table(self):
        return self.fields.get('tableName')


    def stripped(self):
        """ Return a copy of this message without its *data* payload. This
            is the form of the message that is referenced by a reply.
        """

        duplicate = Message(self.kind, self.id)
        duplicate.fields = copy.deepcopy(self.fields)
        return duplicate


    def to_dict(self):
        """ Return the non-data portion of this message as a dictionary.
        """

        encoded = dict(self.fields)
        encoded['kind'] = self.kind
        encoded['id'] = self.id
        return encoded


    @classmethod
    def from_dict(cls, encoded, data=None):

        encoded = dict(encoded)
        kind = encoded.pop('kind')
        id = encoded.pop('id', None)
        return cls(kind, id, data, **encoded)


# end of class Message



class Response:
    """ A :class:`Response` is what a worker sends back for a
        :class:`Message`. The *status* is either 'success' or 'error'; the
        *message* is the original request (minus its data payload). A
        successful response may carry result *data*; an error response
        carries a human-readable *reason*. Small JSON-serializable facts
        about a result (a byte count, whether a chunk is the complete
        buffer) go in the keyword arguments, and are available via
        :func:`get`.
    """

    def __init__(self, status, message, data=None, reason=None, **kwargs):

        if status not in (fields.SUCCESS, fields.ERROR):
            raise ValueError('invalid response status: ' + repr(status))

        self.status = status
        self.message = message
        self.data = data
        self.reason = reason
        self.fields = dict(kwargs)


    def __repr__(self):
        if self.status == fields.ERROR:
            return 'Response(error, %r, reason=%r)' % (self.message, self.reason)

        return 'Response(success, %r)' % (self.message)


    def get(self, key, default=None):
        return self.fields.get(key, default)


    @property
    def ok(self):
        return self.status == fields.SUCCESS


    @property
    def id(self):
        return self.message.id


    @property
    def kind(self):
        return self.message.kind


    @property
    def command(self):
        return self.message.command


    @property
    def table(self):
        return self.message.table


# end of class Response


_id_lock = threading.Lock()
_id_ticker = itertools.count(1)


def next_id(prefix):
    """ Return a locally unique correlation id starting with *prefix*, for
        callers that do not have a natural identifier of their own.
    """

    with _id_lock:
        number = next(_id_ticker)

    return '%s%d' % (prefix, number)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
