import logging
import socket
from urllib.parse import urlsplit

from trycp.conduit.base import Conduit
from trycp.conduit.socket_conduit import SocketConduit
from trycp.connector.base import AbstractConnector, ConnectorError

logger = logging.getLogger(__name__)

# the port a TryCP server listens on unless told otherwise
DEFAULT_PORT = 9000


class TCPServerEndpoint:
    """
    Describes a TCP server endpoint.
    At least one of name or ip_address should be given. If both are given, the ip_address is used
    to connect.
    """
    def __init__(self, hostname, ip_address, port):
        self.hostname = hostname
        self.ip_address = ip_address
        self.port = port

    def key(self):
        """
        >>> TCPServerEndpoint(None, 'ipaddr', 55).key()
        'ipaddr:55'
        >>> TCPServerEndpoint('name', 'ipaddr', 55).key()
        'name:55'
        """
        return str(self.hostname or self.ip_address) + ':' + str(self.port)

    @property
    def address(self):
        return self.ip_address or self.hostname, self.port

    @classmethod
    def from_url(cls, url):
        """
        Parses a server url. The scheme is optional.
        >>> TCPServerEndpoint.from_url('ws://localhost:9000').key()
        'localhost:9000'
        >>> TCPServerEndpoint.from_url('10.0.0.2:9001').address
        ('10.0.0.2', 9001)
        """
        parts = urlsplit(url if '//' in url else '//' + url)
        if not parts.hostname:
            raise ValueError("no host in server url %r" % url)
        return cls(parts.hostname, None, parts.port or DEFAULT_PORT)

    def __str__(self):
        return self.key()


class SocketConnector(AbstractConnector):
    """
    A connector that communicates data via a socket
    """
    def __init__(self, endpoint: TCPServerEndpoint, connect_timeout=5, report_errors=True):
        """
        Creates a new socket connector.
        :param endpoint the server to connect to.
        :param connect_timeout seconds to wait for the connection to be established.
        """
        super().__init__()
        self._endpoint = endpoint
        self._connect_timeout = connect_timeout
        self._report_errors = report_errors

    @property
    def endpoint(self):
        return self._endpoint

    def _connect(self) -> Conduit:
        try:
            sock = socket.create_connection(self._endpoint.address, timeout=self._connect_timeout)
            sock.settimeout(None)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            logger.info("opened socket to %s" % self._endpoint)
            return SocketConduit(sock)
        except OSError as e:
            method = logger.warning if self._report_errors else logger.debug
            method("error opening socket to %s: %s" % (self._endpoint, e))
            raise ConnectorError("cannot connect to %s: %s" % (self._endpoint, e)) from e

    def _disconnect(self):
        pass

    def _try_available(self):
        # could try pinging the host?
        return True
