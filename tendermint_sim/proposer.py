# tendermint_sim/proposer.py
"""
Round-robin proposer selection
"""

import logging
import math
from typing import Optional, Sequence

from .node import Validator
from .topology import Edge, get_reachable_nodes

logger = logging.getLogger(__name__)


def quorum_size(count: int, vote_threshold: float = 2 / 3) -> int:
    """Votes needed out of count: ceil(count * threshold)"""
    # round() first so 4 * 0.75 does not become 3.0000000000000004
    return int(math.ceil(round(count * vote_threshold, 9)))


def can_reach_quorum(candidate: Validator, nodes: Sequence[Validator], edges: Sequence[Edge],
                     vote_threshold: float = 2 / 3) -> bool:
    """True if the candidate's reachable set covers a quorum of the online nodes"""
    online = [n for n in nodes if n.is_online]
    reachable = get_reachable_nodes(candidate.id, edges)
    reached_online = sum(1 for n in online if n.id in reachable)
    return reached_online >= quorum_size(len(online), vote_threshold)


def get_next_proposer(nodes: Sequence[Validator], round_number: int, edges: Optional[Sequence[Edge]] = None,
                      use_graph_routing: bool = False, vote_threshold: float = 2 / 3,
                      exclude_byzantine: bool = False) -> Optional[Validator]:
    """
    Deterministic round-robin over eligible validators.

    Eligible means online (and honest, when exclude_byzantine is set). With graph
    routing the pick must also reach a quorum of online nodes; if it does not,
    the next eligible validator in round-robin order that does is used instead,
    falling back to the plain pick when none qualifies.
    """
    if not nodes:
        return None

    eligible = [n for n in nodes if n.is_online and not (exclude_byzantine and n.is_byzantine)]
    if not eligible:
        # Fall back to all nodes if no eligible ones
        return nodes[round_number % len(nodes)]

    start = round_number % len(eligible)
    pick = eligible[start]
    if not use_graph_routing or edges is None:
        return pick

    for offset in range(len(eligible)):
        candidate = eligible[(start + offset) % len(eligible)]
        if can_reach_quorum(candidate, nodes, edges, vote_threshold):
            if offset:
                logger.info("Proposer %s cannot reach quorum, using node %s", pick.id, candidate.id)
            return candidate

    logger.warning("No proposer can reach quorum over the current topology; keeping node %s", pick.id)
    return pick
