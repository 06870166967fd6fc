"""
Provides building blocks for implementing asynchronous protocols. They are represented abstractly as two message queues.
"""
import logging
import threading
import time
from abc import abstractmethod
from concurrent.futures import Future
from io import IOBase
from typing import Callable

from trycp.conduit.base import Conduit

logger = logging.getLogger(__name__)


class FutureValue(Future):
    """ describes a value that may have not yet been computed. Callers can check if the value has arrived, or chose to
        wait until the value has arrived.
        If an exception is encountered computing the value, it is set."""

    def _value_extractor(self, value):
        """
        The value extractor allows processing of the result to arrive at the
        value returned in `value`.
        """
        return value

    def set_result_or_exception(self, value):
        """sets the result, or the exception if the value is an exception."""
        if isinstance(value, BaseException):
            self.set_exception(value)
        else:
            self.set_result(value)

    def value(self, timeout=None):
        """ allows the provider to set the result value but provide a different (derived) value to callers.
        :raises concurrent.futures.TimeoutError: if the value did not arrive in time.
        """
        value = self._value_extractor(self.result(timeout))
        if isinstance(value, BaseException):
            raise value
        return value


class Request:
    """ Encapsulates the request data.  A request is a message sent from the client to the server. """

    @abstractmethod
    def to_stream(self, file: IOBase):
        """ Encodes the request as bytes in a stream.
        :param file: the file-like instance to stream this request to.
        """
        raise NotImplementedError()

    @property
    def response_key(self):
        """ retrieves the key used to correlate this request with its response. """
        raise NotImplementedError()


class Response:
    """Represents a response, which can be decoded from a stream and has a value.

    A response is a message sent from the server to the client.
    Some responses may be unsolicited - have no originating request from a known client.
    """

    @property
    def response_key(self):
        """
        :return: a key that can be used to pair this response with a previously sent request.
        Will be None if this response is unsolicited.
        """
        raise NotImplementedError()

    @property
    def value(self):
        """
        The decoded representation of the response value.
        """
        raise NotImplementedError()


class FutureResponse(FutureValue):
    """ Relates a request and it's future response."""

    def __init__(self, request: Request):
        """
        :param request: The request this response is for.
        """
        super().__init__()
        self._request = request

    def _value_extractor(self, r):
        return r.value

    @property
    def request(self):
        return self._request

    @property
    def response(self) -> Response:
        """ blocking fetch of the response. Note that this retrieves
            the entire response instance, and not just the response value. """
        return self.result()

    @response.setter
    def response(self, result: Response):
        """
        Sets the successful completion of this future result.
        :param result: The response associated with this future's request.
        """
        self.set_result(result)


class ResponseSupport(Response):
    """ A simple implementation of Response that
        stores the value attribute and request_key.
    """

    def __init__(self, request_key=None, value=None):
        """
        :param request_key the unique key that is used to identify the request.
        :param value the value of the response.  The value is defined by the protocol.
        """
        self._request_key = request_key
        self._value = value

    @property
    def value(self):
        return self._value

    @property
    def response_key(self):
        return self._request_key


class AsyncLoop:
    """ Continually runs a given function on a background thread.
        Exceptions are logged and posted to a given handler
        The background thread is registered as a daemon.
    """

    def __init__(self, fn: Callable = None, args=(), log=logger, name=None):
        """
        :param fn the function to run
        :param args arguments to pass to fn
        """
        self.fn = fn
        self.args = args
        self.name = name
        self.stop_event = threading.Event()
        self.background_thread = None
        self.logger = log

    def start(self):
        if self.background_thread is None:
            t = threading.Thread(target=self._run, name=self.name, daemon=True)
            self.background_thread = t
            t.start()

    def exception_handler(self, e):
        self.logger.exception(e)

    def _run(self):
        """ The processing loop for the background thread.
             Invokes the callable for as long as the stop signal is not received.
        """
        self._do(self.startup)
        while self.running():
            self._do(self.loop)
        self._do(self.shutdown)
        self.logger.debug("background thread exiting")

    def _do(self, callme):
        """ runs a function and captures any exceptions """
        try:
            time.sleep(0)
            callme()
        except Exception as e:
            time.sleep(0)
            self.exception_handler(e)

    def startup(self):
        """ template method called when the thread starts"""
        pass

    def loop(self):
        self.fn(*self.args)

    def shutdown(self):
        """ template method called when the thread exits """
        pass

    def running(self):
        return not self.stop_event.is_set()

    def stop(self):
        self.stop_event.set()
        thread = self.background_thread
        self.background_thread = None
        if thread and thread is not threading.current_thread():
            thread.join()


class BaseAsyncProtocolHandler:
    """
    Wraps a conduit in an asynchronous request/response handler. The format for the requests and responses is not
    defined at this level, but the class takes care of registering requests sent along with a future response and
    associating incoming responses with the originating request.

    The primary method to use is async_request(r:Request) which asynchronously sends the request and fetches the
    response. The returned FutureResponse can be used by the caller to check if the response has arrived or wait
    for the response.

    To handle unsolicited responses (with no originating request, or whose request is no longer pending),
    use add_unmatched_response_handler().

    Requests may be sent from any thread. Responses are read on the background thread.

     :param conduit: The conduit over which the protocol is conducted
    """

    def __init__(self, conduit: Conduit):
        self._conduit = conduit
        self._requests = dict()     # response key -> FutureResponse, in registration order
        self._requests_lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._unmatched = []
        self.async_thread = AsyncLoop(self.background_loop, name=self._thread_name())

    def _thread_name(self):
        return "%s-reader" % type(self).__name__

    def start_background_thread(self):
        self.async_thread.start()

    def stop_background_thread(self):
        self.async_thread.stop()

    def add_unmatched_response_handler(self, fn):
        """add a function that is called with unsolicited responses.

        :param fn: A callable that takes a single argument. This function is called with any responses that did not
                originate from a pending request.
        """
        if fn not in self._unmatched:
            self._unmatched.append(fn)

    def remove_unmatched_response_handler(self, fn):
        self._unmatched.remove(fn)

    def async_request(self, request: Request) -> FutureResponse:
        """ Asynchronously sends a request to the conduit.
        :param request: The request to send.
        :return: A FutureResponse where the corresponding response to the request can be retrieved when it arrives.
        """
        future = FutureResponse(request)
        self._register_future(future)
        try:
            self._stream_request(request)
        except Exception:
            self._unregister_future(future)
            raise
        return future

    def discard_future(self, future: FutureResponse):
        """ stops tracking a future. A response that arrives later for it is treated as unmatched.
        :return: True if the future was pending.
        """
        return self._unregister_future(future)

    @property
    def pending_count(self):
        with self._requests_lock:
            return len(self._requests)

    def _stream_request(self, request):
        """ streams the request to the conduit. Writes from concurrent callers are serialized. """
        with self._write_lock:
            request.to_stream(self._conduit.output)
        self._stream_request_sent(request)

    def _register_future(self, future: FutureResponse):
        """
        registers a FutureResponse so that it can be later retrieved when the corresponding response arrives.
        """
        key = future.request.response_key
        with self._requests_lock:
            if key in self._requests:
                raise ValueError("a request with key %r is already pending" % (key,))
            self._requests[key] = future

    def _unregister_future(self, future: FutureResponse):
        key = future.request.response_key
        with self._requests_lock:
            if self._requests.get(key) is future:
                del self._requests[key]
                return True
        return False

    def _take_pending(self):
        """ removes and returns all pending futures, in the order they were registered. """
        with self._requests_lock:
            futures = list(self._requests.values())
            self._requests.clear()
        return futures

    @abstractmethod
    def _decode_response(self) -> Response:
        """  Template method for subclasses. reads/decodes the next response from the conduit. """
        raise NotImplementedError()

    def background_loop(self):
        """
        the primary function that pumps messages from the conduit.
        When the conduit is closed, the background thread is terminated.
        """
        return self.read_response_async()

    def read_response_async(self):
        """called on the background thread to process responses from the conduit.
        If the conduit is closed, the background thread is stopped. Otherwise the read_response() method is called. """
        if not self._conduit.open:
            self.async_thread.stop()
            return None
        else:
            return self.read_response()

    def read_response(self):
        """ synchronously reads the next response from the conduit and processes it. """
        response = self._decode_response()
        return self.process_response(response)

    def process_response(self, response: Response) -> Response:
        """
        Handles the response by settling the pending request it answers, or notifying unmatched response
        listeners.
        """
        if response is not None:
            future = self._matching_future(response)
            if future is not None:
                self._set_future_response(future, response)
            else:
                for callback in self._unmatched:
                    callback(response)
        return response

    def _set_future_response(self, future: FutureResponse, response):
        """ sets the response on the given future. The request is no longer pending. """
        future.response = response

    def _matching_future(self, response):
        """ finds and removes the pending future for the given response """
        key = response.response_key
        if key is None:
            return None
        with self._requests_lock:
            return self._requests.pop(key, None)

    def _stream_request_sent(self, request):
        """ template method for subclasses to handle when a request has been sent """
        pass
