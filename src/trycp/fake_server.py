"""
An in-process TryCP server that hosts simulated conductors, for testing without a conductor binary.

The server speaks the real wire protocol over TCP. Each conductor keeps its apps, cells, capability grants
and the agents it has been told about. Conductors on any number of servers can share one FakeNetwork, which
stands in for the DHT: an entry is visible to a conductor once the conductor knows the agent that authored it,
either because the agent is its own or because the agent's info was added to it.

Every cell has the same zome functions, regardless of its DNA. See FakeTryCpServer.zome_functions.
"""
import hashlib
import json
import logging
import os
import socket
import threading

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from trycp.commands import ERROR_RESPONSE, admin_responses, app_responses
from trycp.conduit.socket_conduit import SocketConduit
from trycp.errors import ConnectionClosed, MalformedFrame
from trycp.protocol import codec
from trycp.protocol.asynchronous import AsyncLoop
from trycp.signing import agent_pub_key, location_bytes, verify_zome_call

logger = logging.getLogger(__name__)

DNA_PREFIX = bytes([0x84, 0x2d, 0x24])
ENTRY_PREFIX = bytes([0x84, 0x21, 0x24])

# returned by a handler that leaves the call unanswered
NO_RESPONSE = object()


def make_hash(prefix, value) -> bytes:
    core = hashlib.blake2b(codec.encode_payload(value), digest_size=32).digest()
    return prefix + core + location_bytes(core)


def new_agent_pub_key():
    return agent_pub_key(Ed25519PrivateKey.generate().public_key())


class FakeServerError(Exception):
    """ a command the server rejects. The message is sent to the client as the failure reason. """


class FakeNetwork:
    """ The entries published by the conductors of one or more fake servers. """

    def __init__(self):
        self._ops = dict()      # dna hash -> list of ops
        self._lock = threading.Lock()

    def publish(self, dna_hash, author, content):
        with self._lock:
            ops = self._ops.setdefault(dna_hash, [])
            entry_hash = make_hash(ENTRY_PREFIX, [dna_hash, author, content, len(ops)])
            ops.append({'hash': entry_hash, 'author': author, 'content': content})
        return entry_hash

    def ops(self, dna_hash, authors):
        """ the ops for the DNA authored by any of the given agents, in publication order. """
        with self._lock:
            return [op for op in self._ops.get(dna_hash, []) if op['author'] in authors]


class FakeApp:

    def __init__(self, app_id, agent_key, roles):
        self.app_id = app_id
        self.agent_key = agent_key
        self.roles = roles          # role name -> dna hash
        self.clones = dict()        # clone id -> clone dict
        self.enabled = False

    def cell_id(self, role_name):
        return [self.roles[role_name], self.agent_key]

    def info(self):
        cell_info = {}
        for role_name in self.roles:
            cell_info[role_name] = [{'provisioned': {'cell_id': self.cell_id(role_name), 'name': role_name}}]
        for clone in self.clones.values():
            if not clone['deleted']:
                cell_info[clone['role_name']].append({'cloned': self._clone_info(clone)})
        return {
            'installed_app_id': self.app_id,
            'agent_pub_key': self.agent_key,
            'cell_info': cell_info,
            'status': 'running' if self.enabled else 'disabled',
        }

    @staticmethod
    def _clone_info(clone):
        return {key: clone[key] for key in ('cell_id', 'clone_id', 'original_dna_hash', 'name', 'enabled')}

    def find_cell(self, cell_id):
        """ :return: (role name, clone or None) for a cell of the app, or None """
        for role_name in self.roles:
            if self.cell_id(role_name) == cell_id:
                return role_name, None
        for clone in self.clones.values():
            if clone['cell_id'] == cell_id and not clone['deleted']:
                return clone['role_name'], clone
        return None

    def clone(self, clone_cell_id):
        for clone in self.clones.values():
            if clone_cell_id in (clone['clone_id'], clone['cell_id']) and not clone['deleted']:
                return clone
        raise FakeServerError("no clone cell %s in app %s" % (clone_cell_id, self.app_id))


class FakeConductor:

    def __init__(self, conductor_id, partial_config):
        self.id = conductor_id
        self.partial_config = partial_config
        self.running = False
        self.log_level = None
        self.apps = dict()              # app id -> FakeApp
        self.dnas = dict()              # dna hash -> registration
        self.grants = []                # (cell id, cap grant)
        self.known_agents = set()
        self.app_interfaces = set()

    def own_agents(self):
        return {app.agent_key for app in self.apps.values()}

    def visible_agents(self):
        return self.own_agents() | self.known_agents

    def cells(self):
        for app in self.apps.values():
            for role_name in app.roles:
                yield app, app.cell_id(role_name)
            for clone in app.clones.values():
                if not clone['deleted']:
                    yield app, clone['cell_id']

    def find_cell(self, cell_id):
        for app in self.apps.values():
            found = app.find_cell(cell_id)
            if found is not None:
                return app, found[0], found[1]
        raise FakeServerError("cell %s not found" % (cell_id,))

    def app(self, app_id):
        app = self.apps.get(app_id)
        if app is None:
            raise FakeServerError("app %s not installed" % app_id)
        return app

    def is_authorized(self, call, cell_id):
        if 'signature' not in call:
            return call.get('provenance') == cell_id[1]
        if not verify_zome_call(call):
            return False
        for granted_cell, grant in self.grants:
            assigned = grant.get('access', {}).get('assigned', {})
            if granted_cell == cell_id and assigned.get('secret') == call.get('cap_secret') \
                    and call.get('provenance') in assigned.get('assignees', []):
                return True
        return False


class ZomeCall:
    """ what a zome function sees of the call it serves. """

    def __init__(self, server, conductor: FakeConductor, cell_id, provenance, connection):
        self.server = server
        self.conductor = conductor
        self.cell_id = cell_id
        self.provenance = provenance
        self.connection = connection


def zome_create(call: ZomeCall, payload):
    return call.server.network.publish(call.cell_id[0], call.cell_id[1], payload)


def zome_read(call: ZomeCall, payload):
    for op in call.server.network.ops(call.cell_id[0], call.conductor.visible_agents()):
        if op['hash'] == payload:
            return op['content']
    return None


def zome_never_respond(call: ZomeCall, payload):
    return NO_RESPONSE


def zome_emit_signal(call: ZomeCall, payload):
    for port in call.conductor.app_interfaces:
        call.server.send_signal(port, payload)
    return None


def zome_whoami(call: ZomeCall, payload):
    return call.provenance


def zome_fail(call: ZomeCall, payload):
    raise FakeServerError(payload or "zome function failed")


class ServerConnection(AsyncLoop):
    """ one client connection: reads call envelopes and answers them in the order they arrive. """

    def __init__(self, server, conduit: SocketConduit):
        super().__init__(name='fake-trycp-connection')
        self.server = server
        self.conduit = conduit
        self._write_lock = threading.Lock()

    def loop(self):
        try:
            frame = codec.read_frame(self.conduit.input)
        except (OSError, ValueError, ConnectionClosed, MalformedFrame):
            frame = None
        if frame is None:
            self.close()
            return
        try:
            envelope = codec.decode(frame)
        except MalformedFrame as e:
            logger.warning("fake server dropping malformed frame: %s" % e)
            return
        if isinstance(envelope, codec.CallEnvelope):
            self.server.handle_call(self, envelope)

    def send(self, envelope):
        with self._write_lock:
            try:
                codec.write_frame(self.conduit.output, codec.encode(envelope))
            except (OSError, ValueError) as e:
                logger.debug("fake server could not send to a closed connection: %s" % e)

    def close(self):
        self.stop_event.set()
        self.conduit.close()
        self.server.connection_closed(self)


class FakeTryCpServer:
    """
    A TryCP server listening on localhost.

    >>> with FakeTryCpServer() as server:     # doctest: +SKIP
    ...     client = TryCpClient.create(server.url)

    :param network: the network shared with other fake servers. A private network is used when not given.
    """

    def __init__(self, network: FakeNetwork = None, host='127.0.0.1', port=0):
        self.network = network or FakeNetwork()
        self.host = host
        self.port = port
        self.conductors = dict()            # conductor id -> FakeConductor
        self.connections = []
        self.app_interface_connections = dict()     # port -> ServerConnection
        self.enable_app_errors = []
        self.zome_functions = {
            'create': zome_create,
            'read': zome_read,
            'never_respond': zome_never_respond,
            'emit_signal': zome_emit_signal,
            'whoami': zome_whoami,
            'fail': zome_fail,
        }
        self._lock = threading.RLock()
        self._listener = None
        self._accept_thread = None
        self._trycp_handlers = {
            'configure_player': self._configure_player,
            'startup': self._startup,
            'shutdown': self._shutdown,
            'reset': self._reset,
            'connect_app_interface': self._connect_app_interface,
            'disconnect_app_interface': self._disconnect_app_interface,
            'call_admin_interface': self._call_admin_interface,
            'call_app_interface': self._call_app_interface,
        }

    @property
    def url(self):
        return 'ws://%s:%d' % (self.host, self.port)

    def start(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self.host, self.port))
        listener.listen(8)
        self.port = listener.getsockname()[1]
        self._listener = listener
        self._accept_thread = threading.Thread(target=self._accept, name='fake-trycp-accept', daemon=True)
        self._accept_thread.start()
        logger.info("fake TryCP server listening on %s" % self.url)
        return self

    def _accept(self):
        while True:
            try:
                sock, _ = self._listener.accept()
            except OSError:
                return
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            connection = ServerConnection(self, SocketConduit(sock))
            with self._lock:
                self.connections.append(connection)
            connection.start()

    def stop(self):
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        self.drop_connections()

    def drop_connections(self):
        """ closes every client connection, as if the server had gone away. """
        with self._lock:
            connections = list(self.connections)
        for connection in connections:
            connection.close()

    def connection_closed(self, connection):
        with self._lock:
            if connection in self.connections:
                self.connections.remove(connection)
            for port, c in list(self.app_interface_connections.items()):
                if c is connection:
                    del self.app_interface_connections[port]

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def send_signal(self, port, payload):
        connection = self.app_interface_connections.get(port)
        if connection is not None:
            connection.send(codec.SignalEnvelope(port, codec.encode_payload(payload)))

    # dispatch

    def handle_call(self, connection, envelope: codec.CallEnvelope):
        try:
            request = codec.decode_payload(envelope.request)
            handler = self._trycp_handlers.get(request.get('type')) if isinstance(request, dict) else None
            if handler is None:
                raise FakeServerError("unknown request %r" % (request,))
            with self._lock:
                result = handler(connection, request)
        except (FakeServerError, MalformedFrame) as e:
            connection.send(codec.ResponseEnvelope.failure(envelope.id, str(e)))
            return
        if result is not NO_RESPONSE:
            connection.send(codec.ResponseEnvelope.success(envelope.id, result))

    def _conductor(self, request, running=True):
        conductor = self.conductors.get(request.get('id'))
        if conductor is None:
            raise FakeServerError("conductor %s does not exist" % request.get('id'))
        if running and not conductor.running:
            raise FakeServerError("conductor %s is not running" % conductor.id)
        return conductor

    def _configure_player(self, connection, request):
        conductor_id = request['id']
        if conductor_id in self.conductors:
            raise FakeServerError("conductor %s is already configured" % conductor_id)
        self.conductors[conductor_id] = FakeConductor(conductor_id, request.get('partial_config'))
        return None

    def _startup(self, connection, request):
        conductor = self._conductor(request, running=False)
        if conductor.running:
            raise FakeServerError("conductor %s is already running" % conductor.id)
        conductor.running = True
        conductor.log_level = request.get('log_level')
        return None

    def _shutdown(self, connection, request):
        conductor = self._conductor(request)
        conductor.running = False
        return None

    def _reset(self, connection, request):
        self.conductors.clear()
        self.app_interface_connections.clear()
        return None

    def _interface_owner(self, port):
        for conductor in self.conductors.values():
            if port in conductor.app_interfaces:
                return conductor
        raise FakeServerError("no app interface on port %s" % port)

    def _connect_app_interface(self, connection, request):
        port = request['port']
        self._interface_owner(port)
        self.app_interface_connections[port] = connection
        return None

    def _disconnect_app_interface(self, connection, request):
        port = request['port']
        if self.app_interface_connections.get(port) is not connection:
            raise FakeServerError("app interface on port %s is not connected" % port)
        del self.app_interface_connections[port]
        return None

    def _call_admin_interface(self, connection, request):
        conductor = self._conductor(request)
        message = codec.decode_payload(request['message'])
        return self._api_call(admin_responses, self._admin_handler, conductor, connection, message)

    def _call_app_interface(self, connection, request):
        port = request['port']
        if self.app_interface_connections.get(port) is not connection:
            raise FakeServerError("app interface on port %s is not connected" % port)
        conductor = self._interface_owner(port)
        if not conductor.running:
            raise FakeServerError("conductor %s is not running" % conductor.id)
        message = codec.decode_payload(request['message'])
        return self._api_call(app_responses, self._app_handler, conductor, connection, message)

    def _api_call(self, responses, find_handler, conductor, connection, message):
        command_type = message.get('type')
        if command_type not in responses:
            response = {'type': ERROR_RESPONSE, 'data': "unknown command %s" % command_type}
        else:
            try:
                data = find_handler(command_type)(conductor, connection, message.get('data'))
            except FakeServerError as e:
                data = e
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                data = FakeServerError("bad %s request: %s" % (command_type, e))
            if data is NO_RESPONSE:
                return NO_RESPONSE
            if isinstance(data, FakeServerError):
                response = {'type': ERROR_RESPONSE, 'data': str(data)}
            else:
                response = {'type': responses[command_type], 'data': data}
        return codec.encode_payload(response)

    def _admin_handler(self, command_type):
        return getattr(self, '_admin_' + command_type)

    def _app_handler(self, command_type):
        return getattr(self, '_app_' + command_type)

    # admin api

    def _admin_register_dna(self, conductor, connection, data):
        source = data.get('bundle', data.get('path'))
        dna_hash = make_hash(DNA_PREFIX, [source, data.get('modifiers')])
        conductor.dnas[dna_hash] = data
        return dna_hash

    def _admin_get_dna_definition(self, conductor, connection, dna_hash):
        if dna_hash not in conductor.dnas:
            raise FakeServerError("DNA %s is not registered" % dna_hash.hex())
        registration = conductor.dnas[dna_hash]
        return {'name': registration.get('path', 'bundle'), 'modifiers': registration.get('modifiers')}

    def _admin_grant_zome_call_capability(self, conductor, connection, data):
        cell_id = data['cell_id']
        conductor.find_cell(cell_id)
        conductor.grants.append((cell_id, data['cap_grant']))
        return None

    def _admin_generate_agent_pub_key(self, conductor, connection, data):
        return new_agent_pub_key()

    def _admin_install_app(self, conductor, connection, data):
        app_id = data['installed_app_id']
        if app_id in conductor.apps:
            raise FakeServerError("app %s is already installed" % app_id)
        if 'bundle' in data:
            source = data['bundle']
            roles = [r['name'] for r in source.get('manifest', {}).get('roles', [])] or ['default']
        else:
            source = data['path']
            roles = [os.path.splitext(os.path.basename(source))[0]]
        network_seed = data.get('network_seed')
        dnas = {role: make_hash(DNA_PREFIX, [source, role, network_seed]) for role in roles}
        app = FakeApp(app_id, data['agent_key'], dnas)
        conductor.apps[app_id] = app
        for dna_hash in dnas.values():
            conductor.dnas.setdefault(dna_hash, {'bundle': source})
        return app.info()

    def _admin_enable_app(self, conductor, connection, data):
        app = conductor.app(data['installed_app_id'])
        errors = list(self.enable_app_errors)
        app.enabled = not errors
        return {'app': app.info(), 'errors': errors}

    def _admin_disable_app(self, conductor, connection, data):
        conductor.app(data['installed_app_id']).enabled = False
        return None

    def _admin_start_app(self, conductor, connection, data):
        return conductor.app(data['installed_app_id']).enabled

    def _admin_uninstall_app(self, conductor, connection, data):
        app = conductor.app(data['installed_app_id'])
        del conductor.apps[app.app_id]
        return None

    def _admin_list_apps(self, conductor, connection, data):
        return [app.info() for app in conductor.apps.values()]

    def _admin_list_cell_ids(self, conductor, connection, data):
        return [cell_id for app, cell_id in conductor.cells() if app.enabled]

    def _admin_list_dnas(self, conductor, connection, data):
        return list(conductor.dnas)

    def _admin_attach_app_interface(self, conductor, connection, data):
        port = data.get('port')
        for other in self.conductors.values():
            if port in other.app_interfaces:
                raise FakeServerError("port %s is already in use" % port)
        conductor.app_interfaces.add(port)
        return {'port': port}

    def _admin_list_app_interfaces(self, conductor, connection, data):
        return sorted(conductor.app_interfaces)

    def _admin_agent_info(self, conductor, connection, data):
        cell_id = (data or {}).get('cell_id')
        return [{'agent': c[1], 'space': c[0], 'url': 'fake://%s/%s' % (self.url, conductor.id)}
                for app, c in conductor.cells() if cell_id is None or c == cell_id]

    def _admin_add_agent_info(self, conductor, connection, data):
        for info in data['agent_infos']:
            conductor.known_agents.add(info['agent'])
        return None

    def _admin_delete_clone_cell(self, conductor, connection, data):
        clone = conductor.app(data['app_id']).clone(data['clone_cell_id'])
        if clone['enabled']:
            raise FakeServerError("clone cell %s must be disabled before it is deleted" % clone['clone_id'])
        clone['deleted'] = True
        return None

    def _admin_dump_state(self, conductor, connection, data):
        cell_id = data['cell_id']
        conductor.find_cell(cell_id)
        ops = self.network.ops(cell_id[0], conductor.visible_agents())
        return json.dumps([{'integrated_ops': len(ops)}, "%d ops integrated" % len(ops)])

    def _admin_dump_full_state(self, conductor, connection, data):
        cell_id = data['cell_id']
        conductor.find_cell(cell_id)
        ops = self.network.ops(cell_id[0], conductor.visible_agents())
        return {
            'peer_dump': {'peers': sorted(conductor.visible_agents())},
            'source_chain_dump': {'records': [op['hash'] for op in ops if op['author'] == cell_id[1]]},
            'integration_dump': {
                'validation_limbo': [],
                'integration_limbo': [],
                'integrated': [{'hash': op['hash'], 'author': op['author']} for op in ops],
            },
        }

    # app api

    def _app_app_info(self, conductor, connection, data):
        app = conductor.apps.get(data['installed_app_id'])
        return None if app is None else app.info()

    def _app_call_zome(self, conductor, connection, data):
        cell_id = data['cell_id']
        app, role_name, clone = conductor.find_cell(cell_id)
        if not app.enabled:
            raise FakeServerError("app %s is not enabled" % app.app_id)
        if clone is not None and not clone['enabled']:
            raise FakeServerError("clone cell %s is disabled" % clone['clone_id'])
        if not conductor.is_authorized(data, cell_id):
            raise FakeServerError("unauthorized zome call to %s/%s" % (data['zome_name'], data['fn_name']))
        fn = self.zome_functions.get(data['fn_name'])
        if fn is None:
            raise FakeServerError("zome function %s/%s not found" % (data['zome_name'], data['fn_name']))
        payload = codec.decode_payload(data['payload'])
        result = fn(ZomeCall(self, conductor, cell_id, data.get('provenance'), connection), payload)
        return result if result is NO_RESPONSE else codec.encode_payload(result)

    def _app_create_clone_cell(self, conductor, connection, data):
        app = conductor.app(data['app_id'])
        role_name = data['role_name']
        if role_name not in app.roles:
            raise FakeServerError("no role %s in app %s" % (role_name, app.app_id))
        index = len([c for c in app.clones.values() if c['role_name'] == role_name])
        network_seed = (data.get('modifiers') or {}).get('network_seed')
        original = app.roles[role_name]
        dna_hash = make_hash(DNA_PREFIX, [original, network_seed, index])
        clone = {
            'cell_id': [dna_hash, app.agent_key],
            'clone_id': '%s.%d' % (role_name, index),
            'original_dna_hash': original,
            'name': data.get('name') or '%s.%d' % (role_name, index),
            'enabled': False,
            'deleted': False,
            'role_name': role_name,
        }
        app.clones[clone['clone_id']] = clone
        return FakeApp._clone_info(clone)

    def _app_enable_clone_cell(self, conductor, connection, data):
        clone = conductor.app(data['app_id']).clone(data['clone_cell_id'])
        clone['enabled'] = True
        return FakeApp._clone_info(clone)

    def _app_disable_clone_cell(self, conductor, connection, data):
        clone = conductor.app(data['app_id']).clone(data['clone_cell_id'])
        clone['enabled'] = False
        return None
