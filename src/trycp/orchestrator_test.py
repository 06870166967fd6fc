import time
import unittest
from unittest.mock import Mock, patch

import timeout_decorator
from hamcrest import assert_that, calling, contains_exactly, empty, has_length, instance_of, is_, less_than, none, \
    raises

from trycp.cells import CellId
from trycp.conductor import ConductorState
from trycp.errors import ConsistencyTimeout, InvalidState, RemoteError, Timeout, UnknownCell
from trycp.fake_server import NO_RESPONSE, FakeNetwork, FakeTryCpServer
from trycp.orchestrator import Orchestrator, add_all_agents_to_all_conductors, await_consistency, cell_in
from trycp.protocol.codec_test import debug_timeout
from trycp.settings import Settings

happ = {'path': '/happs/posts.happ'}


class OrchestratorTest(unittest.TestCase):
    """ two conductors on two servers, sharing one network. """

    def setUp(self):
        network = FakeNetwork()
        self.server_a = FakeTryCpServer(network).start()
        self.server_b = FakeTryCpServer(network).start()
        self.sut = Orchestrator(Settings(request_timeout=5, zome_call_timeout=5, consistency_poll_interval=0.02))
        self.alice = self.sut.add_conductor(self.server_a.url, conductor_id='alice')
        self.bob = self.sut.add_conductor(self.server_b.url, conductor_id='bob')
        self.alice_cell = self.install(self.alice)
        self.bob_cell = self.install(self.bob)

    def tearDown(self):
        self.sut.clean_up()
        self.server_a.stop()
        self.server_b.stop()

    @staticmethod
    def install(conductor):
        conductor.attach_app_interface()
        conductor.connect_app_interface()
        return conductor.install_app(happ)['posts']

    @timeout_decorator.timeout(debug_timeout(10))
    def test_one_client_per_server(self):
        assert_that(self.sut.clients, has_length(2))
        carol = self.sut.add_conductor(self.server_a.url, startup=False)
        assert_that(carol.client, is_(self.alice.client))
        assert_that(carol.state, is_(ConductorState.UNCONFIGURED))
        assert_that(self.sut.conductors, contains_exactly(self.alice, self.bob, carol))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_entries_shared_once_agents_known(self):
        entry_hash = self.alice_cell.call_zome('posts', 'create', 'hello')
        assert_that(self.bob_cell.call_zome('posts', 'read', entry_hash), is_(none()))

        self.sut.add_all_agents_to_all_conductors()
        self.sut.await_consistency(self.alice_cell.cell_id, timeout=5)
        assert_that(self.bob_cell.call_zome('posts', 'read', entry_hash), is_('hello'))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_inconsistent_without_agents(self):
        self.alice_cell.call_zome('posts', 'create', 'hello')
        assert_that(calling(self.sut.await_consistency).with_args(self.alice_cell.cell_id, timeout=0.2),
                    raises(ConsistencyTimeout))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_custom_condition(self):
        checked = []

        def condition(conductor, cell_id):
            checked.append((conductor.id, cell_id))
            return True

        await_consistency([self.alice, self.bob], self.alice_cell.cell_id, timeout=1, condition=condition)
        assert_that(checked, contains_exactly(('alice', self.alice_cell.cell_id), ('bob', self.bob_cell.cell_id)))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_consistency_timeout_after_disconnect(self):
        self.sut.add_all_agents_to_all_conductors()
        self.alice_cell.call_zome('posts', 'create', 'hello')
        self.sut.await_consistency(self.alice_cell.cell_id, timeout=5)
        self.bob.disconnect_client()
        assert_that(self.bob.state, is_(ConductorState.SHUT_DOWN))
        with self.assertRaises(ConsistencyTimeout) as raised:
            self.sut.await_consistency(self.alice_cell.cell_id, timeout=0.2)
        assert_that(raised.exception.__cause__, is_(instance_of(InvalidState)))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_consistency_timeout_with_unresponsive_conductor(self):
        with patch.object(self.server_b, '_admin_dump_full_state', return_value=NO_RESPONSE):
            started = time.monotonic()
            with self.assertRaises(ConsistencyTimeout) as raised:
                self.sut.await_consistency(self.alice_cell.cell_id, timeout=0.2)
            elapsed = time.monotonic() - started
        # well within the 5s request timeout
        assert_that(elapsed, is_(less_than(2)))
        assert_that(raised.exception.__cause__, is_(instance_of(Timeout)))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_cell_in(self):
        assert_that(cell_in(self.bob, self.alice_cell.cell_id), is_(self.bob_cell.cell_id))
        assert_that(cell_in(self.alice, self.alice_cell.cell_id), is_(self.alice_cell.cell_id))
        assert_that(calling(cell_in).with_args(self.bob, CellId(b'other dna', b'agent')), raises(UnknownCell))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_shut_down(self):
        self.sut.shut_down()
        assert_that(self.alice.state, is_(ConductorState.SHUT_DOWN))
        assert_that(self.bob.state, is_(ConductorState.SHUT_DOWN))
        assert_that(self.server_a.conductors['alice'].running, is_(False))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_shut_down_reports_first_error(self):
        self.server_a.conductors['alice'].running = False
        with self.assertLogs('trycp.orchestrator', 'WARNING'):
            assert_that(calling(self.sut.shut_down), raises(RemoteError, 'not running'))
        # every conductor was shut down
        assert_that(self.bob.state, is_(ConductorState.SHUT_DOWN))
        assert_that(self.server_b.conductors['bob'].running, is_(False))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_clean_up(self):
        clients = list(self.sut.clients.values())
        self.sut.clean_up()
        assert_that(self.server_a.conductors, is_(empty()))
        assert_that(self.server_b.conductors, is_(empty()))
        assert_that([c.closed for c in clients], contains_exactly(True, True))
        assert_that(self.sut.conductors, is_(empty()))

    def test_settings_loaded_when_not_given(self):
        with patch('trycp.orchestrator.load_settings', return_value=Settings(consistency_timeout=3)) as load:
            sut = Orchestrator()
        load.assert_called_once_with()
        assert_that(sut.settings.consistency_timeout, is_(3))

    def test_context_manager(self):
        with Orchestrator() as sut:
            sut.clean_up = Mock(wraps=sut.clean_up)
        sut.clean_up.assert_called_once()


class AddAllAgentsTest(unittest.TestCase):
    def conductor(self, name):
        conductor = Mock()
        conductor.agent_info.return_value = [{'agent': name}]
        return conductor

    def test_exchange(self):
        a, b, c = self.conductor('a'), self.conductor('b'), self.conductor('c')
        add_all_agents_to_all_conductors([a, b, c])
        for conductor in (a, b, c):
            conductor.agent_info.assert_called_once_with()
        pushed = sorted(call[0][0][0]['agent'] for call in a.add_agent_info.call_args_list)
        assert_that(pushed, is_(['b', 'c']))
        assert_that(b.add_agent_info.call_count, is_(2))

    def test_single_conductor(self):
        a = self.conductor('a')
        add_all_agents_to_all_conductors([a])
        a.agent_info.assert_not_called()

    def test_failure(self):
        a, b = self.conductor('a'), self.conductor('b')
        b.add_agent_info.side_effect = RemoteError('refused')
        assert_that(calling(add_all_agents_to_all_conductors).with_args([a, b]), raises(RemoteError, 'refused'))
        a.add_agent_info.assert_called_once_with([{'agent': 'b'}])
