"""

Remote control of conductors through TryCP servers

- Conduit: abstraction of a bi-directional channel. Combines 2 streams for reading and writing.
  SocketConduit is the only one needed: a TryCP server is reached over TCP.
- Connector: binds a conduit and a protocol to an endpoint. SocketConnector opens the socket,
  ProtocolConnector wraps it and starts the multiplexer on the connected conduit.
- Codec: the three envelope shapes (call, response, signal), framed with a 4-byte length.
  The command inside a call is encoded separately from the envelope.
- Multiplexer (TryCpProtocol): any number of calls outstanding on one connection. Responses are
  matched to calls by request id, signals are handed to the handler registered for their app
  interface port.
- TryCpClient: one connection to one TryCP server, owned by whoever created it.
- TryCpConductor: a handle for one conductor on a server. Enforces the conductor lifecycle, and
  the clone cell lifecycle for the cells it creates.
- Orchestrator: the conductors and connections of one test run. Introduces agents to each
  other and waits for the conductors to agree on the DHT.


## Threading

Each connection has a background thread that reads frames and settles futures. Callers block on
concurrent.futures futures, with a timeout. When a call times out, its future is discarded so a
late response is dropped as an unknown id. The remote conductor may still act on the call.

Signal handlers run on the connection's background thread. A handler that blocks delays every
response on that connection.

When a connection closes, for whatever reason, pending calls are rejected with ConnectionClosed
and the conductor handles using the connection are shut down.

"""
