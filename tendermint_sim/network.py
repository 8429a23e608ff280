# tendermint_sim/network.py
"""
Message delivery model.

Decides which deliveries succeed for a sender and a set of targets given
latency, packet loss, partition membership and, in graph-routing mode, the
edges of the topology. Delivery is synchronous: a send either succeeds with a
latency attached or fails with a reason.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .messages import Message, MessageType
from .node import Validator, find_node
from .rng import RandomSource
from .topology import Edge

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of a single send"""
    delivered: bool
    receiver: int
    message: Optional[Message] = None
    latency: float = 0.0
    reason: Optional[str] = None  # 'packet-loss', 'offline', 'partitioned', 'no-edge', 'sender-offline'


@dataclass
class BroadcastResult:
    """Outcome of sending one message to many targets"""
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    messages: List[Message] = field(default_factory=list)
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def receivers(self) -> List[int]:
        return [m.receiver for m in self.messages]


@dataclass
class FloodResult:
    """Outcome of a multi-hop flood from an origin"""
    origin: int
    total_sent: int = 0
    total_delivered: int = 1  # origin already has the message
    total_failed: int = 0
    max_hops: int = 0
    delivery_map: Dict[int, int] = field(default_factory=dict)  # node_id -> hop count
    node_count: int = 0

    @property
    def reached_nodes(self) -> List[int]:
        return list(self.delivery_map)

    @property
    def reach_percentage(self) -> float:
        if not self.node_count:
            return 0.0
        return round(len(self.delivery_map) / self.node_count * 100, 1)


class DeliveryModel:
    """Simulated network for delivering consensus messages"""

    def __init__(self, latency: float = 0.0, packet_loss: float = 0.0,
                 rng: Optional[RandomSource] = None, response_variance: float = 0.0):
        self.latency = latency  # ms, global fallback
        self.packet_loss = packet_loss  # percentage, global fallback
        self.response_variance = response_variance  # ms of jitter added to each delivery
        self.rng = rng or RandomSource()
        self.message_history = []  # (timestamp, sender, receiver, type)
        self.dropped_messages = 0
        self.delays = defaultdict(float)  # (sender, receiver) -> fixed delay

    def set_delay(self, sender: int, receiver: int, delay: float):
        """Set fixed delay for messages between nodes"""
        self.delays[(sender, receiver)] = delay

    def _latency_for(self, sender: int, receiver: int, edge_latency: Optional[float] = None) -> float:
        key = (sender, receiver)
        if key in self.delays:
            return self.delays[key]
        base = self.latency if edge_latency is None else edge_latency
        if self.response_variance:
            base += self.rng.uniform(0, self.response_variance)
        return base

    def _attempt(self, sender: int, receiver: int, msg_type: MessageType, content: Any,
                 now: float, packet_loss: float, latency: float, path: Optional[List[int]] = None) -> DeliveryResult:
        # Simulate packet loss
        if packet_loss and self.rng.random() * 100 < packet_loss:
            self.dropped_messages += 1
            return DeliveryResult(False, receiver, reason="packet-loss")

        message = Message(msg_type=msg_type, sender=sender, receiver=receiver, content=content,
                          timestamp=now, latency=latency, path=list(path or [sender]))
        message.sign()
        self.message_history.append((now, sender, receiver, msg_type.value))
        return DeliveryResult(True, receiver, message=message, latency=latency)

    def send(self, sender: int, receiver: int, msg_type: MessageType, content: Any,
             edges: Sequence[Edge], now: float = 0.0) -> Optional[DeliveryResult]:
        """Send over a direct edge. Returns None when the two nodes are not connected."""
        edge = next((e for e in edges if e.connects(sender, receiver)), None)
        if edge is None:
            return None

        packet_loss = self.packet_loss if edge.packet_loss is None else edge.packet_loss
        latency = self._latency_for(sender, receiver, edge.latency)
        return self._attempt(sender, receiver, msg_type, content, now, packet_loss, latency)

    def broadcast(self, sender: Validator, targets: Iterable[Validator], msg_type: MessageType,
                  content: Any, now: float = 0.0) -> BroadcastResult:
        """Full broadcast: every target is one hop away, subject to availability and loss"""
        result = BroadcastResult()
        for target in targets:
            if target.id == sender.id:
                continue
            result.sent += 1

            reason = None
            if not sender.can_vote:
                reason = "sender-offline"
            elif target.is_partitioned:
                reason = "partitioned"
            elif not target.is_online:
                reason = "offline"

            if reason is None:
                outcome = self._attempt(sender.id, target.id, msg_type, content, now,
                                        self.packet_loss, self._latency_for(sender.id, target.id))
                if outcome.delivered:
                    result.delivered += 1
                    result.messages.append(outcome.message)
                    continue
                reason = outcome.reason

            result.failed += 1
            result.failures[target.id] = reason
        return result

    def broadcast_to_neighbors(self, sender_id: int, neighbors: Iterable[int], msg_type: MessageType,
                               content: Any, edges: Sequence[Edge], now: float = 0.0) -> BroadcastResult:
        """Send to each direct neighbor over its edge"""
        result = BroadcastResult()
        for neighbor_id in neighbors:
            result.sent += 1
            outcome = self.send(sender_id, neighbor_id, msg_type, content, edges, now)
            if outcome is not None and outcome.delivered:
                result.delivered += 1
                result.messages.append(outcome.message)
            else:
                result.failed += 1
                result.failures[neighbor_id] = outcome.reason if outcome else "no-edge"
        return result

    def flood(self, origin_id: int, msg_type: MessageType, content: Any, nodes: Sequence[Validator],
              edges: Sequence[Edge], now: float = 0.0) -> FloodResult:
        """
        Multi-hop gossip from origin_id: every node that receives the message
        rebroadcasts it to its neighbors. Offline or partitioned neighbors never
        receive it.
        """
        result = FloodResult(origin=origin_id, delivery_map={origin_id: 0}, node_count=len(nodes))
        origin = find_node(nodes, origin_id)
        if origin is None or not origin.can_vote:
            result.total_delivered = 0
            result.delivery_map = {}
            return result

        pending = [(origin_id, 0, [origin_id])]
        while pending:
            node_id, hops, path = pending.pop(0)
            node = find_node(nodes, node_id)
            if node is None:
                continue
            result.max_hops = max(result.max_hops, hops)

            for neighbor_id in node.neighbors:
                if neighbor_id in result.delivery_map:
                    continue
                neighbor = find_node(nodes, neighbor_id)
                if neighbor is None or not neighbor.can_vote:
                    result.total_failed += 1
                    continue

                result.total_sent += 1
                outcome = self.send(node_id, neighbor_id, msg_type, content, edges, now)
                if outcome is not None and outcome.delivered:
                    outcome.message.path = path + [neighbor_id]
                    outcome.message.sign()
                    result.total_delivered += 1
                    result.delivery_map[neighbor_id] = hops + 1
                    pending.append((neighbor_id, hops + 1, path + [neighbor_id]))
                else:
                    result.total_failed += 1

        logger.debug("Flood from %s reached %d/%d nodes in %d hops",
                     origin_id, len(result.delivery_map), len(nodes), result.max_hops)
        return result

    def get_stats(self):
        """Get network statistics"""
        return {
            'total_messages': len(self.message_history),
            'dropped_messages': self.dropped_messages,
        }
