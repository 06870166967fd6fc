"""
Cells installed in a conductor, and the lifecycle of clone cells.

A provisioned cell is created when an app is installed and lives as long as the app.
A clone cell is created later from a provisioned cell's DNA and can be enabled, disabled and deleted
independently:

    CREATED  --enable-->  ENABLED
    ENABLED  --disable--> DISABLED
    DISABLED --enable-->  ENABLED
    DISABLED --delete-->  DELETED

Only enabled clones serve zome calls. A deleted clone is kept as a tombstone so that later
transitions fail with UnknownCell and calls fail with CellNotCallable.
"""
import threading
from collections import namedtuple
from enum import Enum

from trycp.errors import CellNotCallable, InvalidState, UnknownCell
from trycp.support.mixins import CommonEqualityMixin, StringerMixin

CellId = namedtuple('CellId', ['dna_hash', 'agent_pub_key'])


def to_cell_id(value) -> CellId:
    """ converts a decoded [dna_hash, agent_pub_key] pair to a CellId. """
    dna_hash, agent_pub_key = value
    return CellId(bytes(dna_hash), bytes(agent_pub_key))


class CellKind(Enum):
    PROVISIONED = 'provisioned'
    CLONED = 'cloned'


class CloneState(Enum):
    CREATED = 'created'
    ENABLED = 'enabled'
    DISABLED = 'disabled'
    DELETED = 'deleted'


class CloneTransitions(object):
    enable = 'enable'
    disable = 'disable'
    delete = 'delete'


# transition -> (permitted source states, target state)
clone_transitions = {
    CloneTransitions.enable: ((CloneState.CREATED, CloneState.DISABLED), CloneState.ENABLED),
    CloneTransitions.disable: ((CloneState.ENABLED,), CloneState.DISABLED),
    CloneTransitions.delete: ((CloneState.DISABLED,), CloneState.DELETED),
}


class InstalledCell(CommonEqualityMixin, StringerMixin):
    """
    :param cell_id: the (dna hash, agent key) pair identifying the cell
    :param role_name: the role the cell was installed for
    :param kind: provisioned or cloned
    :param clone_id: the clone id, for cloned cells
    """

    def __init__(self, cell_id: CellId, role_name, kind=CellKind.PROVISIONED, clone_id=None, name=None):
        self.cell_id = cell_id
        self.role_name = role_name
        self.kind = kind
        self.clone_id = clone_id
        self.name = name

    @property
    def is_clone(self):
        return self.kind is CellKind.CLONED

    @classmethod
    def from_cell_info(cls, role_name, cell_info: dict):
        """
        Builds an installed cell from one entry of an app info's cell_info list.
        :raises ValueError: for stem cells, which are not supported.
        """
        if CellKind.PROVISIONED.value in cell_info:
            info = cell_info[CellKind.PROVISIONED.value]
            return cls(to_cell_id(info['cell_id']), role_name, CellKind.PROVISIONED, name=info.get('name'))
        if CellKind.CLONED.value in cell_info:
            info = cell_info[CellKind.CLONED.value]
            return cls(to_cell_id(info['cell_id']), role_name, CellKind.CLONED, info.get('clone_id'),
                       info.get('name'))
        raise ValueError("unsupported cell type %s" % list(cell_info))


class CloneCellRegistry:
    """
    Tracks the lifecycle state of the clone cells created through one conductor.
    Clones are identified by their clone id. State changes are recorded only after the remote
    conductor has confirmed them.
    """

    def __init__(self):
        self._states = dict()       # clone id -> CloneState
        self._cells = dict()        # cell id -> clone id
        self._retired = set()       # cell ids of deleted clones whose clone id was reused
        self._lock = threading.Lock()

    def add(self, clone_id, cell_id: CellId, state=CloneState.CREATED):
        with self._lock:
            if clone_id in self._states and self._states[clone_id] is not CloneState.DELETED:
                raise InvalidState("clone %s already exists" % clone_id)
            for stale in [c for c, existing in self._cells.items() if existing == clone_id]:
                del self._cells[stale]
                self._retired.add(stale)
            self._retired.discard(cell_id)
            self._states[clone_id] = state
            self._cells[cell_id] = clone_id

    def state(self, clone_id) -> CloneState:
        """
        :raises UnknownCell: if the clone was never created.
        """
        state = self._states.get(clone_id)
        if state is None:
            raise UnknownCell("unknown clone cell %s" % clone_id)
        return state

    def clone_id_for(self, cell_id: CellId):
        return self._cells.get(cell_id)

    def check_transition(self, clone_id, transition):
        """
        Verifies that the transition is permitted from the clone's current state.
        :return: the target state.
        :raises UnknownCell: if the clone was never created or has been deleted.
        :raises InvalidState: if the clone is not in a permitted source state.
        """
        sources, target = clone_transitions[transition]
        state = self.state(clone_id)
        if state is CloneState.DELETED:
            raise UnknownCell("clone cell %s has been deleted" % clone_id)
        if state not in sources:
            raise InvalidState("cannot %s clone cell %s: it is %s, and must be %s"
                               % (transition, clone_id, state.value, ' or '.join(s.value for s in sources)))
        return target

    def apply(self, clone_id, transition):
        """ records a confirmed transition. """
        with self._lock:
            target = self.check_transition(clone_id, transition)
            self._states[clone_id] = target
        return target

    def check_cell_callable(self, cell_id: CellId):
        """
        :raises CellNotCallable: if the cell is a clone that is not enabled, or a deleted clone.
        """
        if cell_id in self._retired:
            raise CellNotCallable("clone cell %s has been deleted" % (cell_id,))
        clone_id = self.clone_id_for(cell_id)
        if clone_id is not None:
            self.check_callable(clone_id)

    def check_callable(self, clone_id):
        """
        :raises CellNotCallable: unless the clone is enabled.
        """
        state = self.state(clone_id)
        if state is not CloneState.ENABLED:
            raise CellNotCallable("clone cell %s is %s" % (clone_id, state.value))
