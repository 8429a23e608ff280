# tendermint_sim/node.py
"""
Validator registry and availability model.

Validators are immutable records. Every round produces new Validator objects
(copy-on-write) so a driver can keep earlier snapshots for step-mode undo.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import ByzantineType, PartitionType, SimulationConfig
from .rng import RandomSource
from .topology import Edge, calculate_circular_layout, get_neighbors

logger = logging.getLogger(__name__)


class NodeState(Enum):
    """Per-round display state of a validator"""
    IDLE = "Idle"
    PROPOSING = "Proposing"
    VOTING = "Voting"
    PREVOTED = "Prevoted"
    PRECOMMITTED = "Precommitted"
    COMMITTED = "Committed"
    PARTITIONED = "Partitioned"
    OFFLINE = "Offline"
    TIMEOUT = "Timeout"
    FAILED = "Failed"


@dataclass(frozen=True)
class Validator:
    """A validator in the simulated network"""
    id: int
    is_byzantine: bool = False
    byzantine_type: ByzantineType = ByzantineType.FAULTY
    is_online: bool = True
    is_partitioned: bool = False
    neighbors: Tuple[int, ...] = ()
    position: Tuple[float, float] = (0.0, 0.0)
    state: NodeState = NodeState.IDLE

    @property
    def can_vote(self) -> bool:
        """Only online, non-partitioned validators take part in a round"""
        return self.is_online and not self.is_partitioned

    def with_state(self, state: NodeState) -> "Validator":
        return replace(self, state=state)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "isByzantine": self.is_byzantine,
            "byzantineType": self.byzantine_type.value,
            "isOnline": self.is_online,
            "isPartitioned": self.is_partitioned,
            "neighbors": list(self.neighbors),
            "position": {"x": self.position[0], "y": self.position[1]},
            "state": self.state.value,
        }


def initialize_network(node_count: int, config: Optional[SimulationConfig] = None,
                       edges: Optional[Sequence[Edge]] = None) -> List[Validator]:
    """Create validators 1..node_count; the first byzantine_count are Byzantine"""
    config = config or SimulationConfig()
    byzantine_count = config.node_behavior.byzantine_count
    byzantine_type = config.node_behavior.byzantine_type
    positions = calculate_circular_layout(node_count)

    nodes = []
    for i in range(node_count):
        node_id = i + 1
        nodes.append(Validator(
            id=node_id,
            is_byzantine=i < byzantine_count,
            byzantine_type=byzantine_type,
            neighbors=tuple(get_neighbors(node_id, edges)) if edges is not None else (),
            position=positions[node_id],
        ))

    logger.info("Initialized network with %d validators (%d Byzantine, type=%s)",
                node_count, min(byzantine_count, node_count), byzantine_type.value)
    return nodes


def attach_neighbors(nodes: Iterable[Validator], edges: Sequence[Edge]) -> List[Validator]:
    """Refresh neighbor lists after the topology changed"""
    return [replace(n, neighbors=tuple(get_neighbors(n.id, edges))) for n in nodes]


def compute_partition(nodes: Sequence[Validator], partition_type, rng: Optional[RandomSource] = None) -> List[int]:
    """
    Node ids isolated by a partition of the given type.

    single  -> the first node in list order
    split   -> the first floor(N/2) nodes
    gradual -> a random ~30% (at least one) sampled without replacement
    """
    kind = partition_type if isinstance(partition_type, PartitionType) else PartitionType(partition_type)
    if not nodes:
        return []

    if kind == PartitionType.SINGLE:
        return [nodes[0].id]
    if kind == PartitionType.SPLIT:
        return [n.id for n in nodes[:len(nodes) // 2]]

    rng = rng or RandomSource()
    count = max(1, int(len(nodes) * 0.3))
    return [n.id for n in rng.sample(nodes, count)]


def update_availability(nodes: Sequence[Validator], config: SimulationConfig,
                        partitioned_ids: Iterable[int] = (), partition_active: bool = False,
                        synchronous: bool = True, rng: Optional[RandomSource] = None) -> List[Validator]:
    """
    Recompute each node's transient availability for a new round.

    A node is offline when a downtime draw marks it down (never in synchronous
    mode) or when it sits in the active partition.
    """
    rng = rng or RandomSource()
    downtime = config.node_behavior.downtime_percentage
    isolated = set(partitioned_ids) if partition_active else set()

    updated = []
    for node in nodes:
        is_down = not synchronous and rng.random() * 100 < downtime
        is_partitioned = node.id in isolated
        is_online = not is_down and not is_partitioned

        if is_partitioned:
            state = NodeState.PARTITIONED
        elif not is_online:
            state = NodeState.OFFLINE
        else:
            state = NodeState.VOTING

        updated.append(replace(node, is_online=is_online, is_partitioned=is_partitioned, state=state))
    return updated


def reset_round_state(nodes: Iterable[Validator]) -> List[Validator]:
    """Clear per-round display state"""
    return [n.with_state(NodeState.IDLE) for n in nodes]


def mark_byzantine(nodes: Sequence[Validator], node_id: int,
                   byzantine_type: ByzantineType = ByzantineType.EQUIVOCATOR) -> List[Validator]:
    """Escalate a node to Byzantine after evidence of misbehavior"""
    return [replace(n, is_byzantine=True, byzantine_type=byzantine_type) if n.id == node_id else n
            for n in nodes]


def count_byzantine(nodes: Iterable[Validator]) -> int:
    return sum(1 for n in nodes if n.is_byzantine)


def find_node(nodes: Iterable[Validator], node_id: int) -> Optional[Validator]:
    for node in nodes:
        if node.id == node_id:
            return node
    return None
