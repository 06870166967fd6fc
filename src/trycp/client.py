import logging

from trycp.commands import TryCpCommand
from trycp.connector.base import ConnectorError, ProtocolConnector
from trycp.connector.socketconn import SocketConnector, TCPServerEndpoint
from trycp.errors import ConnectionClosed
from trycp.protocol.asynchronous import FutureResponse
from trycp.protocol.multiplexer import TryCpProtocol

logger = logging.getLogger(__name__)


def start_protocol(conduit):
    """ builds the multiplexer for a freshly connected conduit and starts reading from it. """
    protocol = TryCpProtocol(conduit)
    protocol.start_background_thread()
    return protocol


class TryCpClient:
    """
    A connection to one TryCP server. Conductor handles share the client and hold a reference to it;
    whoever created the client owns it and closes it.

    Use TryCpClient.create(url) to connect.
    """

    def __init__(self, connector: ProtocolConnector):
        self.connector = connector
        self.protocol = connector.protocol   # type: TryCpProtocol

    @classmethod
    def create(cls, url, connect_timeout=5):
        """
        Connects to a TryCP server.
        :param url: the server address, such as ws://localhost:9000 or localhost:9000
        :raises ConnectionClosed: if the server cannot be reached.
        """
        endpoint = url if isinstance(url, TCPServerEndpoint) else TCPServerEndpoint.from_url(url)
        connector = ProtocolConnector(SocketConnector(endpoint, connect_timeout), start_protocol)
        try:
            connector.connect()
        except ConnectorError as e:
            raise ConnectionClosed("could not connect to TryCP server at %s: %s" % (endpoint, e)) from e
        logger.info("connected to TryCP server at %s" % endpoint)
        return cls(connector)

    @property
    def endpoint(self):
        return self.connector.endpoint

    @property
    def closed(self):
        return self.protocol.closed

    @property
    def closed_handlers(self):
        """ fired with the protocol once the connection has closed, whether closed locally or lost. """
        return self.protocol.closed_handlers

    @property
    def pending_count(self):
        return self.protocol.pending_count

    def call(self, command: TryCpCommand) -> FutureResponse:
        return self.protocol.call(command)

    def discard(self, future: FutureResponse):
        return self.protocol.discard(future)

    def set_signal_handler(self, port, handler):
        self.protocol.set_signal_handler(port, handler)

    def clear_signal_handler(self, port):
        self.protocol.clear_signal_handler(port)

    def close(self):
        """ closes the connection, rejecting any pending calls. """
        if not self.protocol.closed:
            logger.info("closing connection to TryCP server at %s" % self.endpoint)
        self.connector.disconnect()
        self.protocol.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
