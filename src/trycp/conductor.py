"""
Handles for conductors hosted by a TryCP server.

A TryCpConductor drives one conductor through its lifecycle:

    UNCONFIGURED --configure--> CONFIGURED --start_up--> RUNNING --shut_down--> SHUT_DOWN

Admin and app calls require a running conductor. Once shut down, a handle is dead: every operation fails
with InvalidState without contacting the server. Losing the connection to the server shuts down every
handle that uses it.

Admin calls go to the conductor's admin interface. App calls go to the single app interface attached to
the conductor, which must be attached and connected first.
"""
import logging
import socket
import threading
import uuid
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum

from trycp.cells import CellId, CellKind, CloneState, CloneTransitions, CloneCellRegistry, InstalledCell, \
    to_cell_id
from trycp.client import TryCpClient
from trycp.commands import AdminCommand, AdminCommands, AppCommand, AppCommands, CallAdminInterface, \
    CallAppInterface, ConfigurePlayer, ConnectAppInterface, DisconnectAppInterface, ERROR_RESPONSE, Reset, \
    Shutdown, Startup, TryCpCommand
from trycp.errors import InterfaceAlreadyAttached, InvalidState, MalformedFrame, RemoteError, Timeout, \
    TryCpError, UnknownCell
from trycp.protocol.asynchronous import FutureResponse
from trycp.protocol.codec import decode_payload, encode_payload
from trycp.settings import Settings, load_settings
from trycp.signing import SigningCredentials
from trycp.support.mixins import StringerMixin

logger = logging.getLogger(__name__)

# the conductor configuration used when none is given
DEFAULT_PARTIAL_CONFIG = """signing_service_uri: ~
encryption_service_uri: ~
decryption_service_uri: ~
dpki: ~
network: ~"""


class ConductorState(Enum):
    UNCONFIGURED = 'unconfigured'
    CONFIGURED = 'configured'
    RUNNING = 'running'
    SHUT_DOWN = 'shut down'


def wait_for(client: TryCpClient, future: FutureResponse, timeout):
    """
    Waits for the outcome of a call.
    :raises Timeout: if there is no outcome within the timeout. The call is no longer pending.
    :raises RemoteError: if the server answered with a failure.
    :raises ConnectionClosed: if the connection closed first.
    """
    try:
        return future.value(timeout)
    except FutureTimeoutError:
        if not client.discard(future) and future.done():
            # answered while timing out
            return future.value()
        raise Timeout("no response to request %d within %ss" % (future.request.id, timeout)) from None


def reset_server(client: TryCpClient, timeout=None):
    """ asks the server to shut down and remove every conductor it hosts. """
    logger.info("resetting TryCP server %s" % client.endpoint)
    return wait_for(client, client.call(Reset()), timeout)


def create_conductor(client: TryCpClient, conductor_id=None, partial_config=None, startup=True, log_level=None,
                     settings: Settings = None):
    """
    Creates a handle for a new conductor on the client's server. By default the conductor is configured and
    started.
    """
    conductor = TryCpConductor(client, conductor_id, settings)
    if startup:
        conductor.configure(partial_config)
        conductor.start_up(log_level)
    return conductor


class TryCpConductor(StringerMixin):
    """
    A conductor hosted by a TryCP server.
    :param client: the connection to the server. The handle uses the connection, but does not own it.
    :param conductor_id: identifies the conductor on the server. Generated when not given.
    :param settings: timeouts and defaults. Loaded from the configuration files when not given.
    """

    def __init__(self, client: TryCpClient, conductor_id=None, settings: Settings = None):
        self.client = client
        self.id = conductor_id or 'conductor-%s' % uuid.uuid4()
        self.settings = settings or load_settings()
        self.app_interface_port = None
        self.app_interface_connected = False
        self.signal_handler = None
        self.clones = CloneCellRegistry()
        self.cells = []                 # InstalledCell, in the order they were installed or created
        self._signing_credentials = dict()      # CellId -> SigningCredentials
        self._state = ConductorState.UNCONFIGURED
        self._state_lock = threading.RLock()
        client.closed_handlers.add(self._connection_closed)
        if client.closed:
            self._state = ConductorState.SHUT_DOWN

    def __str__(self):
        return "%s(%s)" % (type(self).__name__, self.id)

    @property
    def state(self) -> ConductorState:
        return self._state

    def _connection_closed(self, protocol):
        with self._state_lock:
            if self._state is not ConductorState.SHUT_DOWN:
                logger.info("conductor %s shut down: connection closed" % self.id)
                self._state = ConductorState.SHUT_DOWN
                self.app_interface_connected = False

    def _require(self, *states):
        state = self._state
        if state not in states:
            raise InvalidState("conductor %s is %s, and must be %s"
                               % (self.id, state.value, ' or '.join(s.value for s in states)))

    def _require_running(self):
        self._require(ConductorState.RUNNING)

    def _call(self, command: TryCpCommand, timeout=None):
        """ sends a command to the server and waits for the outcome. """
        if timeout is None:
            timeout = self.settings.request_timeout
        return wait_for(self.client, self.client.call(command), timeout)

    # lifecycle

    def configure(self, partial_config=None):
        """
        Creates the conductor's configuration on the server.
        :param partial_config: conductor configuration to merge into the server's defaults.
        """
        with self._state_lock:
            if self._state in (ConductorState.CONFIGURED, ConductorState.RUNNING):
                raise InvalidState("conductor %s is already configured" % self.id)
            self._require(ConductorState.UNCONFIGURED)
            config = partial_config or self.settings.default_partial_config or DEFAULT_PARTIAL_CONFIG
            self._call(ConfigurePlayer(self.id, config))
            self._state = ConductorState.CONFIGURED
            logger.info("conductor %s configured" % self.id)

    def start_up(self, log_level=None):
        with self._state_lock:
            self._require(ConductorState.CONFIGURED)
            self._call(Startup(self.id, log_level or self.settings.log_level))
            self._state = ConductorState.RUNNING
            logger.info("conductor %s started" % self.id)

    def shut_down(self):
        """
        Disconnects the app interface and shuts the conductor down. Shutting down a handle that is already shut
        down has no effect.
        """
        with self._state_lock:
            if self._state is ConductorState.SHUT_DOWN:
                return
            try:
                if self._state is ConductorState.RUNNING:
                    if self.app_interface_port is not None:
                        try:
                            self.disconnect_app_interface()
                        except TryCpError as e:
                            logger.warning("could not disconnect app interface of conductor %s: %s" % (self.id, e))
                    self._call(Shutdown(self.id))
            finally:
                self._state = ConductorState.SHUT_DOWN
                self.app_interface_connected = False
                self.client.closed_handlers.remove(self._connection_closed)
            logger.info("conductor %s shut down" % self.id)

    def reset(self):
        """
        Removes every conductor hosted by the server, including this one, which leaves this handle shut down.
        Other handles for conductors on the same server are not notified.
        """
        with self._state_lock:
            self._require(ConductorState.UNCONFIGURED, ConductorState.CONFIGURED, ConductorState.RUNNING)
            reset_server(self.client, self.settings.request_timeout)
            self._state = ConductorState.SHUT_DOWN
            self.app_interface_connected = False
            self.client.closed_handlers.remove(self._connection_closed)

    def disconnect_client(self):
        """ closes the connection to the server, which shuts down every conductor handle using it. """
        self.client.close()

    # app interface

    def attach_app_interface(self, port=None):
        """
        Attaches an app interface to the conductor.
        :param port: the port for the interface. A free port from the configured range is used when not given.
        :return: the port
        """
        self._require_running()
        if self.app_interface_port is not None:
            raise InterfaceAlreadyAttached("conductor %s already has an app interface on port %d"
                                           % (self.id, self.app_interface_port))
        if port is None:
            port = self._free_port()
        elif not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
            raise ValueError("invalid app interface port %r" % (port,))
        data = self.call_admin_api(AdminCommands.attach_app_interface, {'port': port})
        self.app_interface_port = data.get('port', port) if isinstance(data, dict) else port
        logger.info("conductor %s attached app interface on port %d" % (self.id, self.app_interface_port))
        return self.app_interface_port

    def _free_port(self):
        for port in self.settings.app_port_range:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                try:
                    s.bind(('', port))
                except OSError:
                    continue
            return port
        raise InvalidState("no free port in range %d-%d" % (self.settings.app_port_min,
                                                             self.settings.app_port_max))

    def connect_app_interface(self, signal_handler=None):
        """
        Connects the server to the attached app interface, so that app calls can be made and signals received.
        :param signal_handler: called with each decoded signal emitted on the interface.
        """
        self._require_running()
        port = self._require_app_interface()
        self._call(ConnectAppInterface(port))
        self.app_interface_connected = True
        self.on(signal_handler)

    def disconnect_app_interface(self):
        self._require_running()
        port = self._require_app_interface()
        self.client.clear_signal_handler(port)
        self.app_interface_connected = False
        return self._call(DisconnectAppInterface(port))

    def _require_app_interface(self):
        if self.app_interface_port is None:
            raise InvalidState("no app interface attached to conductor %s" % self.id)
        return self.app_interface_port

    def on(self, signal_handler):
        """ sets the handler for signals emitted on the app interface, replacing any previous handler. """
        self.signal_handler = signal_handler
        if self.app_interface_port is not None:
            if signal_handler is None:
                self.client.clear_signal_handler(self.app_interface_port)
            else:
                self.client.set_signal_handler(self.app_interface_port, self._deliver_signal)

    def off(self):
        self.on(None)

    def _deliver_signal(self, data):
        handler = self.signal_handler
        if handler is None:
            return
        try:
            signal = decode_payload(data)
        except MalformedFrame as e:
            logger.warning("dropping signal for conductor %s: %s" % (self.id, e))
            return
        handler(signal)

    # admin and app apis

    def call_admin_api(self, command_type, data=None, timeout=None):
        """
        Sends a command to the conductor's admin interface.
        :return: the data of the conductor's response
        :raises RemoteError: if the conductor answers with an error, or with an unexpected response.
        """
        self._require_running()
        command = AdminCommand(command_type, data)
        return self._api_response(command, self._call(CallAdminInterface(self.id, command), timeout))

    def call_app_api(self, command_type, data=None, timeout=None):
        """ Sends a command to the conductor's app interface. """
        self._require_running()
        command = AppCommand(command_type, data)
        port = self._require_app_interface()
        return self._api_response(command, self._call(CallAppInterface(port, command), timeout))

    def _api_response(self, command, encoded):
        response = decode_payload(encoded) if isinstance(encoded, bytes) else encoded
        if not isinstance(response, dict):
            raise RemoteError("unexpected response to %s: %r" % (command.type, response))
        response_type = response.get('type')
        if response_type == ERROR_RESPONSE:
            raise RemoteError(response.get('data'))
        if response_type != command.expected_response:
            raise RemoteError("expected response %s to %s, not %s"
                              % (command.expected_response, command.type, response_type))
        return response.get('data')

    def register_dna(self, source, modifiers=None):
        """
        :param source: {'path': ...} or {'bundle': ...}
        :return: the DNA hash
        """
        data = dict(source)
        if modifiers is not None:
            data['modifiers'] = modifiers
        return self.call_admin_api(AdminCommands.register_dna, data)

    def get_dna_definition(self, dna_hash):
        return self.call_admin_api(AdminCommands.get_dna_definition, dna_hash)

    def grant_zome_call_capability(self, cell_id: CellId, cap_grant):
        return self.call_admin_api(AdminCommands.grant_zome_call_capability,
                                   {'cell_id': list(cell_id), 'cap_grant': cap_grant})

    def generate_agent_pub_key(self):
        return self.call_admin_api(AdminCommands.generate_agent_pub_key)

    def install_app_raw(self, request):
        """ installs an app without enabling it. :return: the app info """
        return self.call_admin_api(AdminCommands.install_app, request)

    def enable_app(self, installed_app_id):
        """ :return: {'app': app info, 'errors': [...]} """
        return self.call_admin_api(AdminCommands.enable_app, {'installed_app_id': installed_app_id})

    def disable_app(self, installed_app_id):
        return self.call_admin_api(AdminCommands.disable_app, {'installed_app_id': installed_app_id})

    def start_app(self, installed_app_id):
        return self.call_admin_api(AdminCommands.start_app, {'installed_app_id': installed_app_id})

    def uninstall_app(self, installed_app_id):
        return self.call_admin_api(AdminCommands.uninstall_app, {'installed_app_id': installed_app_id})

    def list_apps(self, status_filter=None):
        return self.call_admin_api(AdminCommands.list_apps, {'status_filter': status_filter})

    def list_cell_ids(self, timeout=None):
        return [to_cell_id(c) for c in self.call_admin_api(AdminCommands.list_cell_ids, timeout=timeout)]

    def list_dnas(self):
        return self.call_admin_api(AdminCommands.list_dnas)

    def list_app_interfaces(self):
        return self.call_admin_api(AdminCommands.list_app_interfaces)

    def agent_info(self, cell_id: CellId = None):
        """ :return: the agent discovery records known to the conductor """
        return self.call_admin_api(AdminCommands.agent_info,
                                   {'cell_id': None if cell_id is None else list(cell_id)})

    def add_agent_info(self, agent_infos):
        return self.call_admin_api(AdminCommands.add_agent_info, {'agent_infos': list(agent_infos)})

    def dump_state(self, cell_id: CellId):
        return self.call_admin_api(AdminCommands.dump_state, {'cell_id': list(cell_id)})

    def dump_full_state(self, cell_id: CellId, dht_ops_cursor=None, timeout=None):
        return self.call_admin_api(AdminCommands.dump_full_state,
                                   {'cell_id': list(cell_id), 'dht_ops_cursor': dht_ops_cursor}, timeout)

    def app_info(self, installed_app_id):
        return self.call_app_api(AppCommands.app_info, {'installed_app_id': installed_app_id})

    # apps

    def install_app(self, app_bundle_source, agent_pub_key=None, installed_app_id=None, network_seed=None,
                    membrane_proofs=None):
        """
        Installs and enables an app for an agent.

        Installing and enabling are two separate requests. If the second fails, or is never sent, the app
        stays installed but disabled on the conductor and is not cleaned up here.

        :param app_bundle_source: {'path': ...} or {'bundle': ...}
        :param agent_pub_key: the agent to install the app for. A new agent is generated when not given.
        :return: an AgentApp with a callable cell for each cell in the app
        :raises RemoteError: if the conductor rejects the install, or reports errors enabling the app.
        :raises ValueError: if the app has stem cells.
        """
        self._require_running()
        if agent_pub_key is None:
            agent_pub_key = self.generate_agent_pub_key()
        request = dict(app_bundle_source)
        request.update({
            'agent_key': agent_pub_key,
            'installed_app_id': installed_app_id or 'app-%s' % uuid.uuid4(),
            'membrane_proofs': membrane_proofs or {},
            'network_seed': network_seed,
        })
        logger.debug("installing app %s on conductor %s" % (request['installed_app_id'], self.id))
        app_info = self.install_app_raw(request)
        return self._enable_and_get_agent_app(agent_pub_key, app_info)

    def install_agents_apps(self, agents_apps, installed_app_id=None, network_seed=None):
        """
        Installs apps for several agents, one after the other.
        :param agents_apps: dicts with an 'app' source, and optionally 'agent_pub_key' and 'membrane_proofs'
        :return: an AgentApp per entry
        """
        return [self.install_app(entry['app'], entry.get('agent_pub_key'), installed_app_id, network_seed,
                                 entry.get('membrane_proofs'))
                for entry in agents_apps]

    def _enable_and_get_agent_app(self, agent_pub_key, app_info):
        app_id = app_info['installed_app_id']
        enabled = self.enable_app(app_id)
        errors = enabled.get('errors') if isinstance(enabled, dict) else None
        if errors:
            raise RemoteError("failed to enable app %s: %s" % (app_id, errors))
        agent_app = AgentApp(app_id, agent_pub_key)
        for role_name, cell_infos in app_info['cell_info'].items():
            for cell_info in cell_infos:
                cell = InstalledCell.from_cell_info(role_name, cell_info)
                if cell.is_clone:
                    enabled = cell_info[CellKind.CLONED.value].get('enabled', True)
                    self.clones.add(cell.clone_id, cell.cell_id,
                                    CloneState.ENABLED if enabled else CloneState.DISABLED)
                self.cells.append(cell)
                agent_app.add(CallableCell(self, cell, agent_pub_key))
        logger.info("installed app %s on conductor %s" % (app_id, self.id))
        return agent_app

    # zome calls

    def authorize_signing_credentials(self, cell_id: CellId, functions=None):
        """
        Generates a signing key pair for calls to the cell, and grants it a capability on the conductor.
        Later zome calls to the cell are signed with it.
        :param functions: (zome name, function name) pairs to authorize, or None for all functions.
        """
        credentials = SigningCredentials.generate()
        self.grant_zome_call_capability(cell_id, credentials.cap_grant(functions))
        self._signing_credentials[CellId(*cell_id)] = credentials
        return credentials

    def signing_credentials(self, cell_id: CellId):
        return self._signing_credentials.get(CellId(*cell_id))

    def call_zome(self, request, timeout=None):
        """
        Calls a zome function.
        :param request: a dict with cell_id, zome_name, fn_name and optionally payload and provenance.
        :param timeout: seconds to wait for the result. The configured zome call timeout when not given.
        :return: the decoded result of the function
        :raises Timeout: if there is no result in time. The function may still run on the conductor.
        :raises CellNotCallable: if the cell is a clone that is not enabled.
        """
        self._require_running()
        cell_id = CellId(*request['cell_id'])
        self.clones.check_cell_callable(cell_id)
        call = {
            'cell_id': list(cell_id),
            'zome_name': request['zome_name'],
            'fn_name': request['fn_name'],
            'payload': encode_payload(request.get('payload')),
            'provenance': request.get('provenance') or cell_id.agent_pub_key,
            'cap_secret': None,
        }
        credentials = self.signing_credentials(cell_id)
        if credentials is not None:
            call = credentials.sign_zome_call(call)
        if timeout is None:
            timeout = self.settings.zome_call_timeout
        result = self.call_app_api(AppCommands.call_zome, call, timeout)
        return decode_payload(result)

    # clone cells

    def create_clone_cell(self, app_id, role_name, network_seed=None, name=None, agent_pub_key=None):
        """
        Creates a clone of a provisioned cell. The clone must be enabled before it can be called.
        :return: a CallableCell for the clone
        """
        self._require_running()
        data = self.call_app_api(AppCommands.create_clone_cell, {
            'app_id': app_id,
            'role_name': role_name,
            'modifiers': {'network_seed': network_seed},
            'name': name,
        })
        cell = InstalledCell(to_cell_id(data['cell_id']), role_name, CellKind.CLONED, data['clone_id'],
                             data.get('name', name))
        self.clones.add(cell.clone_id, cell.cell_id)
        self.cells.append(cell)
        logger.info("created clone cell %s on conductor %s" % (cell.clone_id, self.id))
        return CallableCell(self, cell, agent_pub_key or cell.cell_id.agent_pub_key)

    def _clone_id(self, clone_cell_id):
        """ resolves a clone id or a cell id to the clone id. """
        if isinstance(clone_cell_id, (tuple, list)):
            clone_id = self.clones.clone_id_for(CellId(*clone_cell_id))
            if clone_id is None:
                raise UnknownCell("unknown clone cell %s" % (clone_cell_id,))
            return clone_id
        return clone_cell_id

    def _transition_clone(self, transition, send, app_id, clone_cell_id):
        self._require_running()
        clone_id = self._clone_id(clone_cell_id)
        self.clones.check_transition(clone_id, transition)
        result = send({'app_id': app_id, 'clone_cell_id': clone_id})
        self.clones.apply(clone_id, transition)
        logger.info("%s clone cell %s on conductor %s" % (transition, clone_id, self.id))
        return result

    def enable_clone_cell(self, app_id, clone_cell_id):
        """ :param clone_cell_id: the clone id, or the clone's cell id """
        return self._transition_clone(CloneTransitions.enable,
                                      lambda data: self.call_app_api(AppCommands.enable_clone_cell, data),
                                      app_id, clone_cell_id)

    def disable_clone_cell(self, app_id, clone_cell_id):
        return self._transition_clone(CloneTransitions.disable,
                                      lambda data: self.call_app_api(AppCommands.disable_clone_cell, data),
                                      app_id, clone_cell_id)

    def delete_clone_cell(self, app_id, clone_cell_id):
        """ deletes a disabled clone. This cannot be undone. """
        return self._transition_clone(CloneTransitions.delete,
                                      lambda data: self.call_admin_api(AdminCommands.delete_clone_cell, data),
                                      app_id, clone_cell_id)

    def cell_for_dna(self, dna_hash):
        """ finds a cell of this conductor with the given DNA, preferring provisioned cells. """
        matching = [c for c in self.cells if c.cell_id.dna_hash == dna_hash]
        matching.sort(key=lambda c: c.is_clone)
        return matching[0] if matching else None


class CallableCell(StringerMixin):
    """
    A cell of an installed app, bound to the conductor it runs in.
    """

    def __init__(self, conductor: TryCpConductor, cell: InstalledCell, agent_pub_key):
        self.conductor = conductor
        self.cell = cell
        self.agent_pub_key = agent_pub_key

    def __str__(self):
        return "%s(%s, %s)" % (type(self).__name__, self.cell.role_name, self.cell.clone_id or 'provisioned')

    @property
    def cell_id(self) -> CellId:
        return self.cell.cell_id

    @property
    def clone_id(self):
        return self.cell.clone_id

    @property
    def role_name(self):
        return self.cell.role_name

    def call_zome(self, zome_name, fn_name, payload=None, timeout=None, provenance=None):
        """
        :raises CellNotCallable: if the cell is a clone that is not enabled.
        """
        return self.conductor.call_zome({
            'cell_id': self.cell_id,
            'zome_name': zome_name,
            'fn_name': fn_name,
            'payload': payload,
            'provenance': provenance or self.agent_pub_key,
        }, timeout)


class AgentApp(StringerMixin):
    """
    An app installed for one agent.
    :param app_id: the installed app id
    :param agent_pub_key: the agent the app was installed for
    """

    def __init__(self, app_id, agent_pub_key):
        self.app_id = app_id
        self.agent_pub_key = agent_pub_key
        self.cells = []
        self.named_cells = dict()   # role name or clone id -> CallableCell

    def add(self, cell: CallableCell):
        self.cells.append(cell)
        self.named_cells[cell.clone_id or cell.role_name] = cell

    def __getitem__(self, name) -> CallableCell:
        return self.named_cells[name]


def get_zome_caller(cell: CallableCell, zome_name):
    """
    Builds a shorthand for calling the functions of one zome.
    >>> caller = get_zome_caller(cell, 'posts')     # doctest: +SKIP
    >>> caller('create_post', 'hello')              # doctest: +SKIP
    """
    def call(fn_name, payload=None, timeout=None):
        return cell.call_zome(zome_name, fn_name, payload, timeout)
    return call
