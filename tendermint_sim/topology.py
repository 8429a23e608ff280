# tendermint_sim/topology.py
"""
Graph topology for partially connected validator networks.

Edges are plain records; neighbor, reachability and shortest-path queries are
breadth-first searches over them. Aggregate statistics and the spring layout go
through networkx.
"""

import collections
import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import networkx as nx

from .config import TopologyType
from .rng import RandomSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """Link between two validators. None latency/loss means use the global value."""
    source: int
    target: int
    latency: Optional[float] = None
    packet_loss: Optional[float] = None
    bidirectional: bool = True

    def connects(self, sender: int, receiver: int) -> bool:
        """True if a message can travel sender -> receiver over this edge"""
        if self.source == sender and self.target == receiver:
            return True
        return self.bidirectional and self.source == receiver and self.target == sender

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "latency": self.latency,
            "packetLoss": self.packet_loss,
            "bidirectional": self.bidirectional,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        packet_loss = data.get("packet_loss", data.get("packetLoss"))
        bidirectional = data.get("bidirectional")
        return cls(
            source=data.get("source", data.get("from")),
            target=data.get("target", data.get("to")),
            latency=data.get("latency"),
            packet_loss=packet_loss,
            bidirectional=True if bidirectional is None else bool(bidirectional),
        )


def build_topology(topology_type, node_count: int, options: Optional[Dict[str, Any]] = None,
                   rng: Optional[RandomSource] = None) -> List[Edge]:
    """
    Build the edge set for a topology over nodes 1..node_count.

    Options: edge_probability (random), node_degree (random-degree),
    custom_edges (custom; dicts or Edge objects).
    """
    options = options or {}
    rng = rng or RandomSource()
    edge_probability = options.get("edge_probability", 0.3)
    node_degree = options.get("node_degree", 2)
    custom_edges = options.get("custom_edges") or []

    try:
        kind = TopologyType(topology_type.value if isinstance(topology_type, TopologyType) else topology_type)
    except ValueError:
        logger.warning("Unknown topology type: %s, defaulting to full-mesh", topology_type)
        kind = TopologyType.FULL_MESH

    nodes = range(1, node_count + 1)
    all_pairs = [(i, j) for i in nodes for j in range(i + 1, node_count + 1)]

    if kind == TopologyType.FULL_MESH:
        return [Edge(i, j) for i, j in all_pairs]

    if kind == TopologyType.RING:
        # Each node linked to the next, closing the loop
        return [Edge(i, (i % node_count) + 1) for i in nodes]

    if kind == TopologyType.STAR:
        hub = 1
        return [Edge(hub, i) for i in range(2, node_count + 1)]

    if kind == TopologyType.LINE:
        return [Edge(i, i + 1) for i in range(1, node_count)]

    if kind == TopologyType.RANDOM:
        return [Edge(i, j) for i, j in all_pairs if rng.random() < edge_probability]

    if kind == TopologyType.RANDOM_DEGREE:
        target_edges = (node_count * node_degree) // 2
        return [Edge(i, j) for i, j in rng.shuffle(all_pairs)[:target_edges]]

    # custom
    return [edge if isinstance(edge, Edge) else Edge.from_dict(edge) for edge in custom_edges]


def get_neighbors(node_id: int, edges: Iterable[Edge]) -> List[int]:
    """Nodes directly reachable from node_id. Unidirectional edges only count for the source."""
    neighbors = []
    seen = set()
    for edge in edges:
        if edge.source == node_id:
            candidate = edge.target
        elif edge.bidirectional and edge.target == node_id:
            candidate = edge.source
        else:
            continue
        if candidate not in seen:
            seen.add(candidate)
            neighbors.append(candidate)
    return neighbors


def _adjacency(edges: Iterable[Edge]) -> Dict[int, List[int]]:
    adj = collections.defaultdict(list)
    for edge in edges:
        adj[edge.source].append(edge.target)
        if edge.bidirectional:
            adj[edge.target].append(edge.source)
    return adj


def is_reachable(source_id: int, target_id: int, edges: Iterable[Edge]) -> bool:
    """BFS reachability test"""
    if source_id == target_id:
        return True
    return target_id in get_reachable_nodes(source_id, edges)


def get_reachable_nodes(node_id: int, edges: Iterable[Edge]) -> Set[int]:
    """All nodes reachable from node_id, including itself"""
    adj = _adjacency(edges)
    reachable = {node_id}
    queue = collections.deque([node_id])
    while queue:
        current = queue.popleft()
        for neighbor in adj.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)
    return reachable


def find_shortest_path(source_id: int, target_id: int, edges: Iterable[Edge]) -> Optional[List[int]]:
    """Shortest path as a list of node ids, or None if target is unreachable"""
    if source_id == target_id:
        return [source_id]

    adj = _adjacency(edges)
    parents = {source_id: None}
    queue = collections.deque([source_id])
    while queue:
        current = queue.popleft()
        for neighbor in adj.get(current, []):
            if neighbor in parents:
                continue
            parents[neighbor] = current
            if neighbor == target_id:
                path = [neighbor]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(neighbor)
    return None


def to_networkx(node_count: int, edges: Iterable[Edge]) -> nx.DiGraph:
    """Directed view of the topology; bidirectional edges become two arcs"""
    graph = nx.DiGraph()
    graph.add_nodes_from(range(1, node_count + 1))
    for edge in edges:
        graph.add_edge(edge.source, edge.target)
        if edge.bidirectional:
            graph.add_edge(edge.target, edge.source)
    return graph


def get_graph_statistics(node_count: int, edges: Sequence[Edge]) -> Dict[str, Any]:
    """Degree, connectivity, diameter and density of the topology"""
    if node_count <= 0:
        return {
            "node_count": 0, "edge_count": len(edges), "avg_degree": 0.0, "max_degree": 0,
            "min_degree": 0, "is_connected": False, "diameter": math.inf, "density": 0.0,
        }

    degrees = {i: 0 for i in range(1, node_count + 1)}
    for edge in edges:
        degrees[edge.source] = degrees.get(edge.source, 0) + 1
        if edge.bidirectional:
            degrees[edge.target] = degrees.get(edge.target, 0) + 1
    node_degrees = [degrees[i] for i in range(1, node_count + 1)]

    graph = to_networkx(node_count, edges)
    # Connectivity is judged from node 1, as a broadcast from the first validator
    is_connected = len(nx.descendants(graph, 1)) + 1 == node_count

    diameter = math.inf
    if is_connected:
        diameter = 0
        for source, lengths in nx.all_pairs_shortest_path_length(graph):
            for target, length in lengths.items():
                if target > source:
                    diameter = max(diameter, length)

    pairs = node_count * (node_count - 1)
    return {
        "node_count": node_count,
        "edge_count": len(edges),
        "avg_degree": round(sum(node_degrees) / node_count, 2),
        "max_degree": max(node_degrees),
        "min_degree": min(node_degrees),
        "is_connected": is_connected,
        "diameter": diameter,
        "density": round(2 * len(edges) / pairs, 3) if pairs else 0.0,
    }


def add_edge(edges: Sequence[Edge], source: int, target: int, latency: Optional[float] = None,
             packet_loss: Optional[float] = None, bidirectional: bool = True) -> List[Edge]:
    """Return a new edge list with source-target added, unless it already exists"""
    if any(edge.connects(source, target) for edge in edges):
        logger.warning("Edge already exists between nodes %s and %s", source, target)
        return list(edges)
    return list(edges) + [Edge(source, target, latency, packet_loss, bidirectional)]


def remove_edge(edges: Sequence[Edge], source: int, target: int) -> List[Edge]:
    """Return a new edge list without the source-target edge"""
    return [edge for edge in edges if not edge.connects(source, target)]


def toggle_edge_bidirectional(edges: Sequence[Edge], source: int, target: int) -> List[Edge]:
    toggled = []
    for edge in edges:
        if {edge.source, edge.target} == {source, target}:
            edge = replace(edge, bidirectional=not edge.bidirectional)
        toggled.append(edge)
    return toggled


def calculate_circular_layout(node_count: int, center_x: float = 400, center_y: float = 300,
                              radius: float = 200) -> Dict[int, Tuple[float, float]]:
    """Evenly spaced positions on a circle, starting at the top"""
    positions = {}
    for i in range(node_count):
        angle = (2 * math.pi * i) / node_count - math.pi / 2
        positions[i + 1] = (center_x + radius * math.cos(angle), center_y + radius * math.sin(angle))
    return positions


def calculate_force_directed_layout(node_count: int, edges: Sequence[Edge], width: float = 800,
                                    height: float = 600, iterations: int = 100,
                                    seed: Optional[int] = None) -> Dict[int, Tuple[float, float]]:
    """Spring layout scaled into a width x height canvas with a 50px margin"""
    graph = to_networkx(node_count, edges).to_undirected()
    raw = nx.spring_layout(graph, iterations=iterations, seed=seed)

    margin = 50
    positions = {}
    for node_id, (x, y) in raw.items():
        # spring_layout returns coordinates in [-1, 1]
        px = margin + (float(x) + 1) / 2 * (width - 2 * margin)
        py = margin + (float(y) + 1) / 2 * (height - 2 * margin)
        positions[int(node_id)] = (min(max(px, margin), width - margin), min(max(py, margin), height - margin))
    return positions
