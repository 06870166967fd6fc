"""
Errors raised by the TryCP connector.

Codec errors, responses for unknown request ids and signals for unknown ports are
recovered locally by the multiplexer. Everything else reaches the caller that issued
the operation; nothing is retried.
"""


class TryCpError(Exception):
    """ base class for all errors raised by this package. """


class MalformedFrame(TryCpError):
    """ A frame could not be decoded as one of the known envelope shapes. """


class ConnectionClosed(TryCpError):
    """ The connection closed while a request was outstanding, or before it was sent. """


class Timeout(TryCpError):
    """ No response arrived within the client-side timeout. The remote may still be processing. """


class RemoteError(TryCpError):
    """
    The remote peer answered with a failure outcome.
    :param reason: the failure as sent by the remote, unmodified.
    """

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason

    def __str__(self):
        return str(self.reason)


class InvalidState(TryCpError):
    """ The conductor or cell is not in a lifecycle state that permits the operation. """


class UnknownCell(TryCpError):
    """ The clone cell was never created, or has been deleted. """


class CellNotCallable(TryCpError):
    """ The cell exists but is not enabled, so it cannot serve zome calls. """


class InterfaceAlreadyAttached(TryCpError):
    """ The conductor already has an app interface attached. """


class ConsistencyTimeout(TryCpError):
    """ The conductors did not become consistent before the timeout elapsed. """
