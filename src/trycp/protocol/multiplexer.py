"""
Multiplexes concurrent TryCP calls and app interface signals over one connection.

Each call is given the next request id and a pending future. The background thread reads frames
and either settles the pending future with the matching id, or hands a signal to the handler
registered for its port.
"""
import logging
import threading

from trycp.commands import TryCpCommand
from trycp.conduit.base import Conduit
from trycp.errors import ConnectionClosed, MalformedFrame, RemoteError
from trycp.protocol import codec
from trycp.protocol.asynchronous import BaseAsyncProtocolHandler, FutureResponse, Request, ResponseSupport
from trycp.support.events import GuardedEventSource

logger = logging.getLogger(__name__)


class CallRequest(Request):
    """ A TryCP command sent with a request id. """

    def __init__(self, id, command: TryCpCommand):
        self.id = id
        self.command = command

    def to_stream(self, file):
        codec.write_frame(file, codec.encode(codec.CallEnvelope(self.id, self.command.encode())))

    @property
    def response_key(self):
        return self.id


class EnvelopeResponse(ResponseSupport):
    """
    Wraps a decoded envelope. Responses are keyed by request id; signals have no key.
    The value of a failure outcome is a RemoteError, which FutureValue.value() raises.
    """

    def __init__(self, envelope):
        key = envelope.id if isinstance(envelope, codec.ResponseEnvelope) else None
        super().__init__(key, envelope)

    @property
    def envelope(self):
        return self._value

    @property
    def value(self):
        envelope = self._value
        return envelope.value if envelope.ok else RemoteError(envelope.reason)


class TryCpProtocol(BaseAsyncProtocolHandler):
    """
    The client side of a TryCP connection.

    :param conduit: the connected conduit. The protocol closes it when the connection is closed.
    """

    def __init__(self, conduit: Conduit):
        super().__init__(conduit)
        self._next_id = 0
        self._id_lock = threading.Lock()
        self._signal_handlers = dict()      # port -> callable
        self._closed = False
        self._close_lock = threading.Lock()
        self.closed_handlers = GuardedEventSource()
        self.add_unmatched_response_handler(self._handle_unmatched)

    @property
    def closed(self):
        return self._closed

    def call(self, command: TryCpCommand) -> FutureResponse:
        """
        Sends a command and returns the future for its outcome. Any number of calls may be outstanding.
        The future's value() raises RemoteError for a failure outcome and ConnectionClosed if the connection
        closes first.
        :raises ConnectionClosed: if the connection is already closed.
        """
        if self._closed:
            raise ConnectionClosed("connection is closed")
        with self._id_lock:
            request_id = self._next_id
            self._next_id += 1
        logger.debug("request %d: %s" % (request_id, command.type))
        try:
            future = self.async_request(CallRequest(request_id, command))
        except (OSError, ValueError) as e:
            self._connection_lost(e)
            raise ConnectionClosed("could not send request %d: %s" % (request_id, e)) from e
        if self._closed and self._unregister_future(future):
            # the connection closed between registering and sending
            self._reject(future)
        return future

    def discard(self, future: FutureResponse):
        """ stops waiting for a call. A late response for it is dropped as an unknown id. """
        return self.discard_future(future)

    def set_signal_handler(self, port, handler):
        """ registers the handler for signals on the given app interface port, replacing any previous handler. """
        if handler is None:
            self.clear_signal_handler(port)
        else:
            self._signal_handlers[port] = handler

    def clear_signal_handler(self, port):
        self._signal_handlers.pop(port, None)

    def signal_handler(self, port):
        return self._signal_handlers.get(port)

    def _decode_response(self):
        try:
            frame = codec.read_frame(self._conduit.input)
        except (OSError, ValueError, ConnectionClosed, MalformedFrame) as e:
            # ValueError from reading a closed stream. An oversized frame cannot be skipped.
            self._connection_lost(e)
            return None
        if frame is None:
            self._connection_lost(None)
            return None
        try:
            envelope = codec.decode(frame)
        except MalformedFrame as e:
            logger.warning("dropping malformed frame: %s" % e)
            return None
        if isinstance(envelope, codec.CallEnvelope):
            logger.warning("dropping call envelope %d sent by the server" % envelope.id)
            return None
        return EnvelopeResponse(envelope)

    def _handle_unmatched(self, response: EnvelopeResponse):
        envelope = response.envelope
        if isinstance(envelope, codec.SignalEnvelope):
            self._deliver_signal(envelope)
        else:
            logger.warning("dropping response for unknown request id %s" % envelope.id)

    def _deliver_signal(self, signal: codec.SignalEnvelope):
        handler = self._signal_handlers.get(signal.port)
        if handler is None:
            logger.warning("dropping signal for port %d: no handler registered" % signal.port)
            return
        try:
            handler(signal.data)
        except Exception as e:
            logger.exception("signal handler for port %d failed: %s" % (signal.port, e))

    def _connection_lost(self, cause):
        if not self._closed:
            if cause is None:
                logger.info("connection closed by the server")
            else:
                logger.warning("connection lost: %s" % cause)
        self.close()

    def close(self):
        """
        Closes the connection. Every pending call is rejected with ConnectionClosed, in the order the calls
        were made. Closing again has no effect.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._conduit.close()
        self.stop_background_thread()
        pending = self._take_pending()
        if pending:
            logger.info("rejecting %d pending requests" % len(pending))
        for future in pending:
            self._reject(future)
        self._signal_handlers.clear()
        self.closed_handlers.fire(self)

    shutdown = close

    @staticmethod
    def _reject(future):
        if not future.done():
            future.set_exception(ConnectionClosed("connection closed before request %d was answered"
                                                  % future.request.id))
