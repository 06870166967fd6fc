"""
The commands understood by a TryCP server, as a closed set of tagged variants.

There are three families:

- TryCP commands, addressed to the server itself (configure, start and stop conductors, manage app interface
  connections, and forward admin and app calls).
- Admin commands, forwarded to a conductor's admin interface.
- App commands, forwarded to an app interface.

Admin and app commands are dispatched by name. Each name maps to the tag of the response the conductor
answers with, so an unexpected answer can be detected.
"""
from trycp.protocol.codec import encode_payload
from trycp.support.mixins import CommonEqualityMixin, StringerMixin


class AdminCommands(object):
    register_dna = 'register_dna'
    get_dna_definition = 'get_dna_definition'
    grant_zome_call_capability = 'grant_zome_call_capability'
    generate_agent_pub_key = 'generate_agent_pub_key'
    install_app = 'install_app'
    enable_app = 'enable_app'
    disable_app = 'disable_app'
    start_app = 'start_app'
    uninstall_app = 'uninstall_app'
    list_apps = 'list_apps'
    list_cell_ids = 'list_cell_ids'
    list_dnas = 'list_dnas'
    attach_app_interface = 'attach_app_interface'
    list_app_interfaces = 'list_app_interfaces'
    agent_info = 'agent_info'
    add_agent_info = 'add_agent_info'
    delete_clone_cell = 'delete_clone_cell'
    dump_state = 'dump_state'
    dump_full_state = 'dump_full_state'


class AppCommands(object):
    app_info = 'app_info'
    call_zome = 'call_zome'
    create_clone_cell = 'create_clone_cell'
    enable_clone_cell = 'enable_clone_cell'
    disable_clone_cell = 'disable_clone_cell'


# the tag of the conductor response expected for each command
admin_responses = {
    AdminCommands.register_dna: 'dna_registered',
    AdminCommands.get_dna_definition: 'dna_definition_returned',
    AdminCommands.grant_zome_call_capability: 'zome_call_capability_granted',
    AdminCommands.generate_agent_pub_key: 'agent_pub_key_generated',
    AdminCommands.install_app: 'app_installed',
    AdminCommands.enable_app: 'app_enabled',
    AdminCommands.disable_app: 'app_disabled',
    AdminCommands.start_app: 'app_started',
    AdminCommands.uninstall_app: 'app_uninstalled',
    AdminCommands.list_apps: 'apps_listed',
    AdminCommands.list_cell_ids: 'cell_ids_listed',
    AdminCommands.list_dnas: 'dnas_listed',
    AdminCommands.attach_app_interface: 'app_interface_attached',
    AdminCommands.list_app_interfaces: 'app_interfaces_listed',
    AdminCommands.agent_info: 'agent_info',
    AdminCommands.add_agent_info: 'agent_info_added',
    AdminCommands.delete_clone_cell: 'clone_cell_deleted',
    AdminCommands.dump_state: 'state_dumped',
    AdminCommands.dump_full_state: 'full_state_dumped',
}

app_responses = {
    AppCommands.app_info: 'app_info',
    AppCommands.call_zome: 'zome_called',
    AppCommands.create_clone_cell: 'clone_cell_created',
    AppCommands.enable_clone_cell: 'clone_cell_enabled',
    AppCommands.disable_clone_cell: 'clone_cell_disabled',
}

# the tag a conductor uses for a failed api call
ERROR_RESPONSE = 'error'


class ApiCommand(CommonEqualityMixin, StringerMixin):
    """
    A command for a conductor api. The name must be one of the family's known commands.
    :param type: the command name
    :param data: the command arguments, if any
    """
    responses = {}
    family = 'api'

    def __init__(self, type, data=None):
        if type not in self.responses:
            raise ValueError("unknown %s command %r" % (self.family, type))
        self.type = type
        self.data = data

    @property
    def expected_response(self):
        return self.responses[self.type]

    def to_message(self):
        message = {'type': self.type}
        if self.data is not None:
            message['data'] = self.data
        return message


class AdminCommand(ApiCommand):
    responses = admin_responses
    family = 'admin'


class AppCommand(ApiCommand):
    responses = app_responses
    family = 'app'


class TryCpCommand(CommonEqualityMixin, StringerMixin):
    """ base class for the commands sent to the TryCP server. """
    type = None

    def to_message(self) -> dict:
        message = {'type': self.type}
        message.update(self._fields())
        return message

    def _fields(self):
        return {}

    def encode(self) -> bytes:
        return encode_payload(self.to_message())


class ConfigurePlayer(TryCpCommand):
    type = 'configure_player'

    def __init__(self, conductor_id, partial_config):
        self.conductor_id = conductor_id
        self.partial_config = partial_config

    def _fields(self):
        return {'id': self.conductor_id, 'partial_config': self.partial_config}


class Startup(TryCpCommand):
    type = 'startup'

    def __init__(self, conductor_id, log_level=None):
        self.conductor_id = conductor_id
        self.log_level = log_level

    def _fields(self):
        fields = {'id': self.conductor_id}
        if self.log_level is not None:
            fields['log_level'] = self.log_level
        return fields


class Shutdown(TryCpCommand):
    type = 'shutdown'

    def __init__(self, conductor_id, signal=None):
        self.conductor_id = conductor_id
        self.signal = signal

    def _fields(self):
        fields = {'id': self.conductor_id}
        if self.signal is not None:
            fields['signal'] = self.signal
        return fields


class Reset(TryCpCommand):
    type = 'reset'


class ConnectAppInterface(TryCpCommand):
    type = 'connect_app_interface'

    def __init__(self, port):
        self.port = port

    def _fields(self):
        return {'port': self.port}


class DisconnectAppInterface(ConnectAppInterface):
    type = 'disconnect_app_interface'


class CallAppInterface(TryCpCommand):
    """ forwards an app command to the app interface on the given port. The command is encoded separately. """
    type = 'call_app_interface'

    def __init__(self, port, message: AppCommand):
        self.port = port
        self.message = message

    def _fields(self):
        return {'port': self.port, 'message': encode_payload(self.message.to_message())}


class CallAdminInterface(TryCpCommand):
    """ forwards an admin command to the admin interface of the given conductor. """
    type = 'call_admin_interface'

    def __init__(self, conductor_id, message: AdminCommand):
        self.conductor_id = conductor_id
        self.message = message

    def _fields(self):
        return {'id': self.conductor_id, 'message': encode_payload(self.message.to_message())}


# every TryCP command the server understands, by name
trycp_commands = {c.type: c for c in (ConfigurePlayer, Startup, Shutdown, Reset, ConnectAppInterface,
                                      DisconnectAppInterface, CallAppInterface, CallAdminInterface)}
