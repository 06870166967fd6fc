"""
Encodes and decodes the envelopes exchanged with a TryCP server.

There are three envelope shapes:

- call: a request from the client, carrying a request id and the encoded command.
- response: the outcome for a previous call, carrying the same request id.
- signal: an unsolicited notification pushed to an app interface port. It has no id.

The command inside a call envelope is encoded separately (see encode_payload) so
the envelope does not need to understand the command's schema.

On the wire, each envelope is a frame: a 4-byte big-endian length followed by the CBOR bytes.
"""
import logging
import struct

import cbor2

from trycp.errors import ConnectionClosed, MalformedFrame
from trycp.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct('>I')

# the largest frame accepted from the remote
max_frame_size = 64 * 1024 * 1024

# keys of the response outcome map
SUCCESS = 0
FAILURE = 1


class Envelope(CommonEqualityMixin, StringerMixin):
    """ base class for the three envelope shapes. """
    type = None

    def to_message(self) -> dict:
        raise NotImplementedError()


class CallEnvelope(Envelope):
    """
    :param id: the request id
    :param request: the encoded command bytes
    """
    type = 'call'

    def __init__(self, id, request: bytes):
        self.id = id
        self.request = request

    def to_message(self):
        return {'type': self.type, 'id': self.id, 'request': self.request}


class ResponseEnvelope(Envelope):
    """
    The outcome of a call. Exactly one of value or reason is meaningful, depending on ok.
    """
    type = 'response'

    def __init__(self, id, ok=True, value=None, reason=None):
        self.id = id
        self.ok = ok
        self.value = value
        self.reason = reason

    @classmethod
    def success(cls, id, value=None):
        return cls(id, True, value=value)

    @classmethod
    def failure(cls, id, reason):
        return cls(id, False, reason=reason)

    def to_message(self):
        outcome = {SUCCESS: self.value} if self.ok else {FAILURE: self.reason}
        return {'type': self.type, 'id': self.id, 'response': outcome}


class SignalEnvelope(Envelope):
    """
    :param port: the app interface port the signal was emitted on
    :param data: the opaque signal payload
    """
    type = 'signal'

    def __init__(self, port, data: bytes):
        self.port = port
        self.data = data

    def to_message(self):
        return {'type': self.type, 'port': self.port, 'data': self.data}


def encode(envelope: Envelope) -> bytes:
    return cbor2.dumps(envelope.to_message())


def decode(data: bytes) -> Envelope:
    """
    Decodes an envelope.
    :raises MalformedFrame: if the data is not one of the three envelope shapes.
    """
    message = decode_payload(data)
    if not isinstance(message, dict):
        raise MalformedFrame("expected a map, got %s" % type(message).__name__)
    envelope_type = message.get('type')
    decoder = _decoders.get(envelope_type) if isinstance(envelope_type, str) else None
    if decoder is None:
        raise MalformedFrame("unknown envelope type %r" % (envelope_type,))
    try:
        return decoder(message)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedFrame("invalid %s envelope: %s" % (envelope_type, e)) from e


def _require_int(value, name):
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError("%s must be an integer" % name)
    return value


def _require_bytes(value, name):
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError("%s must be bytes" % name)
    return bytes(value)


def _decode_call(message):
    return CallEnvelope(_require_int(message['id'], 'id'), _require_bytes(message['request'], 'request'))


def _decode_response(message):
    request_id = _require_int(message['id'], 'id')
    outcome = message['response']
    if not isinstance(outcome, dict) or len(outcome) != 1:
        raise ValueError("response must hold exactly one outcome")
    for key in (SUCCESS, str(SUCCESS)):
        if key in outcome:
            return ResponseEnvelope.success(request_id, outcome[key])
    for key in (FAILURE, str(FAILURE)):
        if key in outcome:
            return ResponseEnvelope.failure(request_id, outcome[key])
    raise ValueError("unknown outcome %r" % list(outcome))


def _decode_signal(message):
    return SignalEnvelope(_require_int(message['port'], 'port'), _require_bytes(message['data'], 'data'))


_decoders = {
    CallEnvelope.type: _decode_call,
    ResponseEnvelope.type: _decode_response,
    SignalEnvelope.type: _decode_signal,
}


def encode_payload(value) -> bytes:
    """ encodes a nested payload, such as a command or a zome call argument. """
    return cbor2.dumps(value)


def decode_payload(data):
    """
    decodes a nested payload.
    :raises MalformedFrame: if the data is not valid CBOR.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedFrame("expected bytes, got %s" % type(data).__name__)
    try:
        return cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as e:
        raise MalformedFrame("undecodable payload: %s" % e) from e


def write_frame(stream, data: bytes):
    """ writes a single length-prefixed frame to the stream and flushes it. """
    stream.write(FRAME_HEADER.pack(len(data)) + data)
    stream.flush()


def _read_exactly(stream, size):
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def read_frame(stream):
    """
    Reads the next frame. Blocks until a complete frame is available.
    :return: the frame bytes, or None if the stream ended cleanly at a frame boundary.
    :raises ConnectionClosed: if the stream ended part way through a frame.
    :raises MalformedFrame: if the declared length exceeds max_frame_size. The stream cannot be
        resynchronized after this.
    """
    header = _read_exactly(stream, FRAME_HEADER.size)
    if not header:
        return None
    if len(header) < FRAME_HEADER.size:
        raise ConnectionClosed("stream ended inside a frame header")
    size, = FRAME_HEADER.unpack(header)
    if size > max_frame_size:
        raise MalformedFrame("frame of %d bytes exceeds the limit of %d" % (size, max_frame_size))
    data = _read_exactly(stream, size)
    if len(data) < size:
        raise ConnectionClosed("stream ended after %d of %d frame bytes" % (len(data), size))
    return data
