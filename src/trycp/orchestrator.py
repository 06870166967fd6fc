"""
Runs groups of conductors for a test: connects to TryCP servers, introduces the conductors' agents to each
other, and waits for the conductors to agree on the DHT.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from itertools import permutations

from trycp.cells import CellId
from trycp.client import TryCpClient
from trycp.conductor import TryCpConductor, create_conductor, reset_server
from trycp.connector.socketconn import TCPServerEndpoint
from trycp.errors import ConsistencyTimeout, TryCpError, UnknownCell
from trycp.protocol.codec import encode_payload
from trycp.settings import Settings, load_settings
from trycp.support.retry_strategy import Deadline, PeriodRetryStrategy

logger = logging.getLogger(__name__)


def add_all_agents_to_all_conductors(conductors):
    """
    Shares the agents of every conductor with every other conductor, so they can find each other without
    waiting for peer discovery. Each conductor's agent info is fetched once and then pushed to the others.
    :raises TryCpError: the first failure, once every exchange has finished.
    """
    conductors = list(conductors)
    if len(conductors) < 2:
        return
    with ThreadPoolExecutor(max_workers=len(conductors) * (len(conductors) - 1)) as pool:
        agent_infos = list(pool.map(lambda c: c.agent_info(), conductors))
        infos_by_conductor = {id(c): infos for c, infos in zip(conductors, agent_infos)}
        pushes = [pool.submit(to_conductor.add_agent_info, infos_by_conductor[id(from_conductor)])
                  for from_conductor, to_conductor in permutations(conductors, 2)]
        errors = [f.exception() for f in pushes if f.exception() is not None]
    if errors:
        raise errors[0]
    logger.info("shared agents between %d conductors" % len(conductors))


def integrated_ops(conductor: TryCpConductor, cell_id: CellId, timeout=None):
    """ the DHT ops the conductor has integrated for the cell, as a set of encoded ops. """
    state = conductor.dump_full_state(cell_id, timeout=timeout)
    ops = state.get('integration_dump', {}).get('integrated', [])
    return frozenset(encode_payload(op) for op in ops)


def cell_in(conductor: TryCpConductor, cell_id: CellId, timeout=None) -> CellId:
    """
    Finds the conductor's own cell for the DNA of the given cell.
    :raises UnknownCell: if the conductor has no cell with that DNA.
    """
    cell_id = CellId(*cell_id)
    if any(c.cell_id == cell_id for c in conductor.cells):
        return cell_id
    cell = conductor.cell_for_dna(cell_id.dna_hash)
    if cell is not None:
        return cell.cell_id
    for candidate in conductor.list_cell_ids(timeout):
        if candidate.dna_hash == cell_id.dna_hash:
            return candidate
    raise UnknownCell("conductor %s has no cell for DNA %s" % (conductor.id, cell_id.dna_hash.hex()))


def same_integrated_ops(conductors, cell_id: CellId, timeout=None):
    """ true when every conductor has integrated the same DHT ops for the DNA of the cell. """
    op_sets = [integrated_ops(c, cell_in(c, cell_id, timeout), timeout) for c in conductors]
    return all(ops == op_sets[0] for ops in op_sets[1:])


def await_consistency(conductors, cell_id: CellId, timeout=None, condition=None, interval=None,
                      settings: Settings = None):
    """
    Waits until the conductors are consistent for the DNA of a cell.
    Each request made by a check waits no longer than the time left before the timeout.

    :param cell_id: a cell whose DNA to check. Each conductor is checked for its own cell with the same DNA.
    :param condition: called as condition(conductor, cell_id) with each conductor's own cell id, and must hold
        for every conductor. When not given, the conductors must have integrated the same DHT ops.
    :param timeout: seconds to wait, the configured consistency timeout when not given.
    :param interval: seconds between checks, the configured poll interval when not given.
    :raises ConsistencyTimeout: if the conductors are not consistent in time. A check that fails with an
        error counts as not yet consistent; the last such error is chained.
    """
    settings = settings or load_settings()
    conductors = list(conductors)
    timeout = settings.consistency_timeout if timeout is None else timeout
    interval = settings.consistency_poll_interval if interval is None else interval
    deadline = Deadline(timeout)
    if condition is None:
        def check():
            return same_integrated_ops(conductors, cell_id, deadline.remaining)
    else:
        def check():
            return all(condition(c, cell_in(c, cell_id, deadline.remaining)) for c in conductors)

    retry = PeriodRetryStrategy(interval)
    last_error = None
    attempts = 0
    while True:
        retry()
        attempts += 1
        try:
            if check():
                logger.info("conductors consistent after %d checks" % attempts)
                return
        except TryCpError as e:
            logger.debug("consistency check failed: %s" % e)
            last_error = e
        if deadline.expired:
            break
        time.sleep(min(max(retry(dry_run=True), 0), deadline.remaining))
    raise ConsistencyTimeout("conductors not consistent after %ss (%d checks)" % (timeout, attempts)) \
        from last_error


class Orchestrator:
    """
    Holds the conductors of one test run, and the connections to the servers hosting them.
    The orchestrator owns every connection it opens.
    """

    def __init__(self, settings: Settings = None):
        self.settings = settings or load_settings()
        self.clients = dict()       # endpoint key -> TryCpClient
        self.conductors = []

    def client(self, url) -> TryCpClient:
        """ the connection to a server, opened on first use. """
        endpoint = url if isinstance(url, TCPServerEndpoint) else TCPServerEndpoint.from_url(url)
        client = self.clients.get(endpoint.key())
        if client is None or client.closed:
            client = TryCpClient.create(endpoint, self.settings.connect_timeout)
            self.clients[endpoint.key()] = client
        return client

    def add_conductor(self, url, partial_config=None, startup=True, log_level=None, conductor_id=None):
        """
        Creates a conductor on the server at the url. By default it is configured and started.
        """
        conductor = create_conductor(self.client(url), conductor_id, partial_config, startup, log_level,
                                     self.settings)
        self.conductors.append(conductor)
        return conductor

    def add_all_agents_to_all_conductors(self, conductors=None):
        add_all_agents_to_all_conductors(self.conductors if conductors is None else conductors)

    def await_consistency(self, cell_id, conductors=None, timeout=None, condition=None, interval=None):
        await_consistency(self.conductors if conductors is None else conductors, cell_id, timeout, condition,
                          interval, self.settings)

    def shut_down(self):
        """
        Shuts down every conductor.
        :raises TryCpError: the first failure, after every conductor has been shut down.
        """
        errors = []
        for conductor in self.conductors:
            try:
                conductor.shut_down()
            except TryCpError as e:
                logger.warning("failed to shut down conductor %s: %s" % (conductor.id, e))
                errors.append(e)
        if errors:
            raise errors[0]

    def clean_up(self):
        """ removes every conductor from the servers, and closes the connections. """
        for key, client in self.clients.items():
            if not client.closed:
                try:
                    reset_server(client, self.settings.request_timeout)
                except TryCpError as e:
                    logger.warning("failed to reset TryCP server %s: %s" % (key, e))
            client.close()
        self.clients.clear()
        self.conductors.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.clean_up()
