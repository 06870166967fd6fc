import os
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

import timeout_decorator
from hamcrest import assert_that, calling, contains_exactly, empty, has_entries, has_item, has_length, \
    instance_of, is_, is_not, none, raises

from trycp.cells import CellId, CloneState
from trycp.client import TryCpClient
from trycp.conductor import AgentApp, CallableCell, ConductorState, TryCpConductor, create_conductor, \
    get_zome_caller, wait_for
from trycp.errors import CellNotCallable, InterfaceAlreadyAttached, InvalidState, RemoteError, Timeout, \
    UnknownCell
from trycp.fake_server import FakeTryCpServer
from trycp.protocol.codec_test import debug_timeout
from trycp.settings import Settings

happ = {'path': '/happs/posts.happ'}


def wait_until(condition, timeout=5):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


class ConductorTestCase(unittest.TestCase):
    """ a fake server, a connection to it, and a running conductor. """

    def setUp(self):
        self.server = FakeTryCpServer().start()
        self.client = TryCpClient.create(self.server.url)
        self.settings = Settings(request_timeout=5, zome_call_timeout=5)
        self.sut = create_conductor(self.client, 'alice', settings=self.settings)

    def tearDown(self):
        self.client.close()
        self.server.stop()

    def fake(self):
        return self.server.conductors[self.sut.id]

    def install(self, **kwargs):
        self.sut.attach_app_interface()
        self.sut.connect_app_interface()
        return self.sut.install_app(happ, **kwargs)


class ConductorLifecycleTest(ConductorTestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_created_running(self):
        assert_that(self.sut.state, is_(ConductorState.RUNNING))
        assert_that(self.fake().running, is_(True))
        assert_that(self.fake().log_level, is_('error'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_generated_id(self):
        sut = TryCpConductor(self.client)
        assert_that(sut.id.startswith('conductor-'), is_(True))
        assert_that(sut.state, is_(ConductorState.UNCONFIGURED))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_lifecycle_order(self):
        sut = TryCpConductor(self.client, 'bob', self.settings)
        assert_that(calling(sut.start_up), raises(InvalidState))
        assert_that(calling(sut.list_apps), raises(InvalidState, 'unconfigured'))
        sut.configure()
        assert_that(sut.state, is_(ConductorState.CONFIGURED))
        assert_that(calling(sut.configure), raises(InvalidState, 'already configured'))
        assert_that(calling(sut.list_apps), raises(InvalidState))
        sut.start_up('debug')
        assert_that(sut.state, is_(ConductorState.RUNNING))
        assert_that(self.server.conductors['bob'].log_level, is_('debug'))
        assert_that(calling(sut.configure), raises(InvalidState, 'already configured'))
        assert_that(calling(sut.start_up), raises(InvalidState))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_settings_from_user_configuration(self):
        with tempfile.TemporaryDirectory() as directory:
            user_file = os.path.join(directory, 'trycp.cfg')
            with open(user_file, 'w') as f:
                f.write("[trycp]\nrequest_timeout = 2.5\nzome_call_timeout = 7\nlog_level = debug\n")
            with patch('trycp.config.config.user_config_file', return_value=user_file):
                sut = create_conductor(self.client, 'bob')
        assert_that(sut.settings.request_timeout, is_(2.5))
        assert_that(sut.settings.zome_call_timeout, is_(7.0))
        assert_that(self.server.conductors['bob'].log_level, is_('debug'))
        with patch('trycp.conductor.wait_for', wraps=wait_for) as waited:
            sut.list_apps()
        assert_that(waited.call_args[0][2], is_(2.5))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_default_partial_config(self):
        sut = TryCpConductor(self.client, 'bob', Settings(default_partial_config='network: {}'))
        sut.configure()
        assert_that(self.server.conductors['bob'].partial_config, is_('network: {}'))
        other = TryCpConductor(self.client, 'carol')
        other.configure('dpki: ~')
        assert_that(self.server.conductors['carol'].partial_config, is_('dpki: ~'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_configure_rejected_by_server(self):
        sut = TryCpConductor(self.client, 'alice', self.settings)
        assert_that(calling(sut.configure), raises(RemoteError, '^conductor alice is already configured$'))
        assert_that(sut.state, is_(ConductorState.UNCONFIGURED))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_shut_down(self):
        self.sut.shut_down()
        assert_that(self.sut.state, is_(ConductorState.SHUT_DOWN))
        assert_that(self.fake().running, is_(False))
        # shutting down again is a no-op
        self.sut.shut_down()
        assert_that(self.sut.state, is_(ConductorState.SHUT_DOWN))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_shut_down_is_terminal(self):
        self.sut.shut_down()
        with patch.object(self.client, 'call') as call:
            assert_that(calling(self.sut.list_apps), raises(InvalidState, 'shut down'))
            assert_that(calling(self.sut.configure), raises(InvalidState))
            assert_that(calling(self.sut.start_up), raises(InvalidState))
            assert_that(calling(self.sut.attach_app_interface), raises(InvalidState))
            assert_that(calling(self.sut.reset), raises(InvalidState))
            call.assert_not_called()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_shut_down_unstarted(self):
        sut = TryCpConductor(self.client, 'bob', self.settings)
        sut.configure()
        with patch.object(self.client, 'call') as call:
            sut.shut_down()
            call.assert_not_called()
        assert_that(sut.state, is_(ConductorState.SHUT_DOWN))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_shut_down_disconnects_app_interface(self):
        port = self.sut.attach_app_interface()
        self.sut.connect_app_interface()
        assert_that(self.server.app_interface_connections, has_item(port))
        self.sut.shut_down()
        assert_that(self.server.app_interface_connections, is_(empty()))
        assert_that(self.sut.app_interface_connected, is_(False))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_shut_down_disconnects_attached_app_interface(self):
        port = self.sut.attach_app_interface()
        with patch.object(self.client, 'call', wraps=self.client.call) as call:
            # the server reports the unconnected interface, which does not stop the shutdown
            with self.assertLogs('trycp.conductor', 'WARNING'):
                self.sut.shut_down()
        sent = [c[0][0] for c in call.call_args_list]
        assert_that([command.type for command in sent], contains_exactly('disconnect_app_interface', 'shutdown'))
        assert_that(sent[0].port, is_(port))
        assert_that(self.fake().running, is_(False))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_reset(self):
        other = create_conductor(self.client, 'bob', settings=self.settings)
        self.sut.reset()
        assert_that(self.sut.state, is_(ConductorState.SHUT_DOWN))
        assert_that(self.server.conductors, is_(empty()))
        # other handles on the server are not told
        assert_that(other.state, is_(ConductorState.RUNNING))
        assert_that(calling(other.list_apps), raises(RemoteError, 'does not exist'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disconnect_client(self):
        other = create_conductor(self.client, 'bob', settings=self.settings)
        self.sut.disconnect_client()
        assert_that(self.client.closed, is_(True))
        assert_that(self.sut.state, is_(ConductorState.SHUT_DOWN))
        assert_that(other.state, is_(ConductorState.SHUT_DOWN))
        assert_that(calling(self.sut.list_apps), raises(InvalidState))
        # shut down after losing the connection makes no call
        self.sut.shut_down()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_connection_lost(self):
        with self.assertLogs('trycp.conductor', 'INFO'):
            self.server.drop_connections()
            assert_that(wait_until(lambda: self.sut.state is ConductorState.SHUT_DOWN), is_(True))
        assert_that(calling(self.sut.list_dnas), raises(InvalidState))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_handle_for_closed_client(self):
        self.client.close()
        sut = TryCpConductor(self.client, 'bob')
        assert_that(sut.state, is_(ConductorState.SHUT_DOWN))


class ConductorAdminTest(ConductorTestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_register_dna(self):
        dna_hash = self.sut.register_dna({'path': '/dnas/posts.dna'}, {'network_seed': 'abc'})
        assert_that(dna_hash, has_length(39))
        assert_that(self.sut.list_dnas(), contains_exactly(dna_hash))
        definition = self.sut.get_dna_definition(dna_hash)
        assert_that(definition, has_entries(name='/dnas/posts.dna', modifiers={'network_seed': 'abc'}))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_remote_error_is_verbatim(self):
        assert_that(calling(self.sut.get_dna_definition).with_args(b'\x01\x02'),
                    raises(RemoteError, '^DNA 0102 is not registered$'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_generate_agent_pub_key(self):
        key = self.sut.generate_agent_pub_key()
        assert_that(key, has_length(39))
        assert_that(self.sut.generate_agent_pub_key(), is_not(key))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_install_app(self):
        agent = self.sut.generate_agent_pub_key()
        app = self.sut.install_app(happ, agent, installed_app_id='posts-app')
        assert_that(app, is_(instance_of(AgentApp)))
        assert_that(app.app_id, is_('posts-app'))
        assert_that(app.agent_pub_key, is_(agent))
        cell = app['posts']
        assert_that(cell, is_(instance_of(CallableCell)))
        assert_that(cell.cell_id.agent_pub_key, is_(agent))
        assert_that(cell.clone_id, is_(none()))
        assert_that(self.sut.list_cell_ids(), contains_exactly(cell.cell_id))
        assert_that(self.sut.list_apps(), contains_exactly(has_entries(installed_app_id='posts-app',
                                                                      status='running')))
        assert_that(self.sut.cell_for_dna(cell.cell_id.dna_hash).cell_id, is_(cell.cell_id))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_install_bundle_with_roles(self):
        bundle = {'bundle': {'manifest': {'roles': [{'name': 'posts'}, {'name': 'comments'}]}}}
        app = self.sut.install_app(bundle)
        assert_that(sorted(app.named_cells), is_(['comments', 'posts']))
        assert_that(app['posts'].cell_id.dna_hash, is_not(app['comments'].cell_id.dna_hash))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_install_agents_apps(self):
        apps = self.sut.install_agents_apps([{'app': happ}, {'app': happ}])
        assert_that(apps, has_length(2))
        assert_that(apps[0].agent_pub_key, is_not(apps[1].agent_pub_key))
        assert_that(apps[0]['posts'].cell_id.dna_hash, is_(apps[1]['posts'].cell_id.dna_hash))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_install_app_enable_errors(self):
        self.server.enable_app_errors = ['posts: validation failed']
        assert_that(calling(self.sut.install_app).with_args(happ, installed_app_id='broken'),
                    raises(RemoteError, 'failed to enable app broken'))
        # the app stays installed, disabled
        assert_that(self.sut.list_apps(), contains_exactly(has_entries(installed_app_id='broken',
                                                                      status='disabled')))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disable_and_uninstall(self):
        app = self.sut.install_app(happ)
        self.sut.disable_app(app.app_id)
        assert_that(self.sut.list_cell_ids(), is_(empty()))
        assert_that(self.sut.start_app(app.app_id), is_(False))
        self.sut.uninstall_app(app.app_id)
        assert_that(self.sut.list_apps(), is_(empty()))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_agent_info(self):
        app = self.sut.install_app(happ)
        infos = self.sut.agent_info()
        assert_that(infos, contains_exactly(has_entries(agent=app.agent_pub_key)))
        assert_that(self.sut.agent_info(app['posts'].cell_id), has_length(1))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_dump_state(self):
        app = self.install()
        cell = app['posts']
        cell.call_zome('posts', 'create', 'hello')
        full = self.sut.dump_full_state(cell.cell_id)
        assert_that(full['integration_dump']['integrated'], has_length(1))
        assert_that(self.sut.dump_state(cell.cell_id), is_(instance_of(str)))


class AppInterfaceTest(ConductorTestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_attach(self):
        port = self.sut.attach_app_interface()
        assert_that(port in self.settings.app_port_range, is_(True))
        assert_that(self.sut.list_app_interfaces(), contains_exactly(port))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_attach_given_port(self):
        assert_that(self.sut.attach_app_interface(31234), is_(31234))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_attach_twice(self):
        self.sut.attach_app_interface()
        assert_that(calling(self.sut.attach_app_interface), raises(InterfaceAlreadyAttached))

    def test_attach_invalid_port(self):
        for port in (0, 70000, '30001', True):
            assert_that(calling(self.sut.attach_app_interface).with_args(port), raises(ValueError))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_app_call_needs_interface(self):
        assert_that(calling(self.sut.app_info).with_args('x'), raises(InvalidState, 'no app interface'))
        assert_that(calling(self.sut.connect_app_interface), raises(InvalidState))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_app_call_needs_connection(self):
        self.sut.attach_app_interface()
        assert_that(calling(self.sut.app_info).with_args('x'), raises(RemoteError, 'is not connected'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_app_info(self):
        app = self.install()
        info = self.sut.app_info(app.app_id)
        assert_that(info, has_entries(installed_app_id=app.app_id, agent_pub_key=app.agent_pub_key))
        assert_that(self.sut.app_info('missing'), is_(none()))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disconnect(self):
        self.sut.attach_app_interface()
        self.sut.connect_app_interface()
        self.sut.disconnect_app_interface()
        assert_that(self.sut.app_interface_connected, is_(False))
        assert_that(self.server.app_interface_connections, is_(empty()))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_signals(self):
        received = []
        arrived = threading.Event()

        def on_signal(signal):
            received.append(signal)
            arrived.set()

        self.sut.attach_app_interface()
        self.sut.connect_app_interface(on_signal)
        cell = self.sut.install_app(happ)['posts']
        cell.call_zome('posts', 'emit_signal', {'count': 1})
        assert_that(arrived.wait(5), is_(True))
        assert_that(received, contains_exactly({'count': 1}))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_signals_replaced_and_off(self):
        first, second = [], []
        self.sut.attach_app_interface()
        self.sut.connect_app_interface(first.append)
        cell = self.sut.install_app(happ)['posts']
        self.sut.on(second.append)
        cell.call_zome('posts', 'emit_signal', 'a')
        # the signal is sent before the response, on the same connection
        assert_that(second, contains_exactly('a'))
        assert_that(first, is_(empty()))
        self.sut.off()
        with self.assertLogs('trycp.protocol.multiplexer', 'WARNING'):
            cell.call_zome('posts', 'emit_signal', 'b')
        assert_that(second, contains_exactly('a'))


class ZomeCallTest(ConductorTestCase):

    def setUp(self):
        super().setUp()
        self.app = self.install()
        self.cell = self.app['posts']

    @timeout_decorator.timeout(debug_timeout(5))
    def test_create_and_read(self):
        entry_hash = self.cell.call_zome('posts', 'create', 'hello')
        assert_that(entry_hash, has_length(39))
        assert_that(self.cell.call_zome('posts', 'read', entry_hash), is_('hello'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_zome_caller(self):
        posts = get_zome_caller(self.cell, 'posts')
        entry_hash = posts('create', {'title': 'hi', 'tags': [1, 2]})
        assert_that(posts('read', entry_hash), is_({'title': 'hi', 'tags': [1, 2]}))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_call_by_request(self):
        result = self.sut.call_zome({'cell_id': self.cell.cell_id, 'zome_name': 'posts', 'fn_name': 'whoami'})
        assert_that(result, is_(self.app.agent_pub_key))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_zome_error_is_verbatim(self):
        assert_that(calling(self.cell.call_zome).with_args('posts', 'fail', 'entry too large'),
                    raises(RemoteError, '^entry too large$'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_unauthorized_provenance(self):
        other = self.sut.generate_agent_pub_key()
        assert_that(calling(self.cell.call_zome).with_args('posts', 'whoami', provenance=other),
                    raises(RemoteError, 'unauthorized'))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_timeout(self):
        pending = self.client.pending_count
        assert_that(calling(self.cell.call_zome).with_args('posts', 'never_respond', timeout=0.001),
                    raises(Timeout))
        assert_that(self.client.pending_count, is_(pending))
        # the connection is still usable
        assert_that(self.cell.call_zome('posts', 'whoami'), is_(self.app.agent_pub_key))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_signed_call(self):
        credentials = self.sut.authorize_signing_credentials(self.cell.cell_id)
        assert_that(self.sut.signing_credentials(self.cell.cell_id), is_(credentials))
        assert_that(self.cell.call_zome('posts', 'whoami'), is_(credentials.signing_key))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_signed_call_needs_grant(self):
        credentials = self.sut.authorize_signing_credentials(self.cell.cell_id)
        self.fake().grants.clear()
        assert_that(calling(self.cell.call_zome).with_args('posts', 'whoami'), raises(RemoteError, 'unauthorized'))
        assert_that(credentials.signing_key, is_not(self.app.agent_pub_key))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_concurrent_calls(self):
        results = [None] * 10

        def create(i):
            results[i] = self.cell.call_zome('posts', 'create', 'entry %d' % i)

        threads = [threading.Thread(target=create, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        contents = [self.cell.call_zome('posts', 'read', h) for h in results]
        assert_that(contents, is_(['entry %d' % i for i in range(10)]))


class CloneCellTest(ConductorTestCase):

    def setUp(self):
        super().setUp()
        self.app = self.install()
        self.clone = self.sut.create_clone_cell(self.app.app_id, 'posts', network_seed='clone-1')

    @timeout_decorator.timeout(debug_timeout(5))
    def test_created(self):
        assert_that(self.clone.clone_id, is_('posts.0'))
        assert_that(self.clone.role_name, is_('posts'))
        assert_that(self.clone.cell_id.dna_hash, is_not(self.app['posts'].cell_id.dna_hash))
        assert_that(self.sut.clones.state('posts.0'), is_(CloneState.CREATED))
        assert_that(self.sut.cell_for_dna(self.clone.cell_id.dna_hash).clone_id, is_('posts.0'))
        assert_that(self.sut.cell_for_dna(self.app['posts'].cell_id.dna_hash).clone_id, is_(none()))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_created_clone_is_not_callable(self):
        with patch.object(self.client, 'call') as call:
            assert_that(calling(self.clone.call_zome).with_args('posts', 'whoami'), raises(CellNotCallable))
            call.assert_not_called()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_lifecycle(self):
        self.sut.enable_clone_cell(self.app.app_id, 'posts.0')
        entry_hash = self.clone.call_zome('posts', 'create', 'in the clone')
        assert_that(self.clone.call_zome('posts', 'read', entry_hash), is_('in the clone'))

        self.sut.disable_clone_cell(self.app.app_id, self.clone.cell_id)
        assert_that(calling(self.clone.call_zome).with_args('posts', 'read', entry_hash),
                    raises(CellNotCallable))

        self.sut.delete_clone_cell(self.app.app_id, 'posts.0')
        assert_that(self.sut.clones.state('posts.0'), is_(CloneState.DELETED))
        assert_that(calling(self.sut.enable_clone_cell).with_args(self.app.app_id, 'posts.0'),
                    raises(UnknownCell))
        assert_that(calling(self.clone.call_zome).with_args('posts', 'whoami'), raises(CellNotCallable))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_delete_enabled_clone(self):
        self.sut.enable_clone_cell(self.app.app_id, 'posts.0')
        with patch.object(self.client, 'call') as call:
            assert_that(calling(self.sut.delete_clone_cell).with_args(self.app.app_id, 'posts.0'),
                        raises(InvalidState))
            call.assert_not_called()
        assert_that(self.sut.clones.state('posts.0'), is_(CloneState.ENABLED))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disable_created_clone(self):
        assert_that(calling(self.sut.disable_clone_cell).with_args(self.app.app_id, 'posts.0'),
                    raises(InvalidState))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_unknown_clone(self):
        assert_that(calling(self.sut.enable_clone_cell).with_args(self.app.app_id, 'posts.7'),
                    raises(UnknownCell))
        assert_that(calling(self.sut.enable_clone_cell).with_args(self.app.app_id, CellId(b'x', b'y')),
                    raises(UnknownCell))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_rejected_transition_keeps_state(self):
        self.fake().apps[self.app.app_id].clones.clear()
        assert_that(calling(self.sut.enable_clone_cell).with_args(self.app.app_id, 'posts.0'),
                    raises(RemoteError, 'no clone cell posts.0'))
        assert_that(self.sut.clones.state('posts.0'), is_(CloneState.CREATED))
