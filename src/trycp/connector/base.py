import logging
from abc import abstractmethod

from trycp.conduit.base import Conduit
from trycp.support.events import EventSource

logger = logging.getLogger(__name__)


class ConnectorError(Exception):
    """ Indicates an error condition with a connection. """


class ConnectionNotConnectedError(ConnectorError):
    """ Indicates a connection is in the disconnected state when a connection is required. """


class ConnectionNotAvailableError(ConnectorError):
    """ Indicates the connection is not available. """


class ConnectorEvent:
    """ base class for connector events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectorConnectedEvent(ConnectorEvent):
    """ The connector was connected. """


class ConnectorDisconnectedEvent(ConnectorEvent):
    """ The connector was disconnected. """


class Connector():
    """ A connector describes an endpoint to which a conduit can be established. """

    def __init__(self):
        self.events = EventSource()

    @property
    @abstractmethod
    def endpoint(self):
        """ the endpoint that this connector reaches out to """
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        """
        Determines if this connector is connected to its underlying resource.
        :return: True if this connector is connected to it's underlying resource. False otherwise.
        :rtype: bool
        """
        raise NotImplementedError

    @property
    @abstractmethod
    def conduit(self) -> Conduit:
        """
        Retrieves the conduit for this connection.
        If the connection is not connected, raises ConnectionNotConnectedError
        """
        raise NotImplementedError

    @property
    @abstractmethod
    def available(self) -> bool:
        """ Determines if the underlying resource for this connector is available.
        :return: True if the resource is available and can be connected to.
        :rtype: bool
        """
        raise NotImplementedError

    @abstractmethod
    def connect(self):
        """
        Connects this connector to the underlying resource.
        If the connection is already connected, this method returns silently.
        Raises ConnectorError if the connection cannot be established.
        """
        raise NotImplementedError

    @abstractmethod
    def disconnect(self):
        raise NotImplementedError


class AbstractConnector(Connector):
    """ Manages the connection cycle to an endpoint."""

    def __init__(self):
        super().__init__()
        self._conduit = None

    @property
    def available(self):
        return False if self.connected else self._try_available()

    @property
    def connected(self):
        return self._connected()

    def connect(self):
        if self.connected:
            return

        if not self.available:
            raise ConnectionNotAvailableError("%s is not available" % (self.endpoint,))

        try:
            self._conduit = self._connect()
            self.events.fire(ConnectorConnectedEvent(self))
        finally:
            if not self._conduit:
                self.disconnect()

    def disconnect(self):
        if self._conduit is None:
            return
        self._disconnect()
        self._conduit.close()
        self._conduit = None
        self.events.fire(ConnectorDisconnectedEvent(self))

    @abstractmethod
    def _connect(self) -> Conduit:
        """ Template method for subclasses to perform the connection.
            If connection is not possible, an exception should be thrown
        """
        raise NotImplementedError

    @abstractmethod
    def _try_available(self):
        """ Determine if this connection is available. This method is only called when
            the connection is disconnected.
        :return: True if the connection is available or False otherwise.
        :rtype: bool
        """
        raise NotImplementedError

    @abstractmethod
    def _disconnect(self):
        """ perform any actions needed on disconnection.
        The base class takes care of disposing the conduit, which happens
        after this method has been called.
        """
        raise NotImplementedError

    def _connected(self):
        return self._conduit is not None and self._conduit.open

    @property
    def conduit(self) -> Conduit:
        """
        Retrieves the conduit for this connection.
        raises ConnectionNotConnectedError if not connected
        """
        self.check_connected()
        return self._conduit

    def check_connected(self):
        if not self.connected:
            raise ConnectionNotConnectedError("%s is not connected" % (self.endpoint,))


class DelegateConnector(Connector):
    """
    Delegates methods to the delegate connector, unless they are overridden
    """
    def __init__(self, delegate):
        super().__init__()
        self.delegate = delegate

    @property
    def available(self) -> bool:
        return self.delegate.available

    @property
    def conduit(self) -> Conduit:
        return self.delegate.conduit

    @property
    def endpoint(self):
        return self.delegate.endpoint

    @property
    def connected(self) -> bool:
        return self.delegate.connected

    def connect(self):
        return self.delegate.connect()

    def disconnect(self):
        return self.delegate.disconnect()


class ProtocolConnector(DelegateConnector):
    """
    A connection that runs a protocol over the delegate's conduit once connected.
    :param protocol_factory: a callable that builds the protocol from a conduit.
    """
    def __init__(self, delegate, protocol_factory):
        super().__init__(delegate)
        self._factory = protocol_factory
        self._protocol = None
        delegate.events.add(self._delegate_events)

    def _delegate_events(self, event):
        """ closes this connector when the wrapped connector closes. """
        if isinstance(event, ConnectorDisconnectedEvent):
            self.disconnect()

    def connect(self):
        if self._protocol is None:
            super().connect()
            try:
                self._protocol = self._factory(self.conduit)
                if self._protocol is None:
                    raise ConnectorError("protocol factory did not return a protocol")
                self.events.fire(ConnectorConnectedEvent(self))
            finally:  # cleanup connection on protocol error
                if not self._protocol:
                    super().disconnect()

    @property
    def connected(self):
        return self._protocol is not None and super().connected

    def disconnect(self):
        protocol = self._protocol
        self._protocol = None
        if protocol is not None:
            if hasattr(protocol, 'shutdown'):
                protocol.shutdown()
            self.events.fire(ConnectorDisconnectedEvent(self))
        super().disconnect()

    @property
    def protocol(self):
        return self._protocol
