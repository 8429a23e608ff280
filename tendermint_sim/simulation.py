# tendermint_sim/simulation.py
"""
Simulation orchestrator.

ConsensusSimulation owns everything that persists between rounds: nodes, the
committed chain, voting/QC/timeout history, the evidence pool, partition and
network-mode settings, a simulated clock and a bounded log. It drives the round
engine in continuous mode (one whole round per tick) or step mode (one step per
call, with back/forward navigation inside the current round).
"""

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

from .block import Block, EvidencePool
from .config import PartitionType, SimulationConfig
from .consensus import (
    RoundContext,
    RoundResult,
    StepState,
    advance_round,
    execute_step,
    is_round_timed_out,
    result_from_state,
    timeout_round,
)
from .detectors import (
    ConsistencyReport,
    LivenessReport,
    SafetyReport,
    assess_liveness,
    assess_safety,
    detect_consistency_violations,
)
from .node import (
    Validator,
    attach_neighbors,
    compute_partition,
    count_byzantine,
    initialize_network,
)
from .proposer import get_next_proposer
from .rng import RandomSource
from .timeout import TimeoutController
from .voting import VoteOutcome
from . import topology

logger = logging.getLogger(__name__)

LOG_LIMIT = 200


@dataclass(frozen=True)
class LogEntry:
    message: str
    level: str
    timestamp: float
    round: int


class ConsensusSimulation:
    """Runs consensus rounds over a simulated validator network"""

    def __init__(self, config: Optional[SimulationConfig] = None, rng: Optional[RandomSource] = None):
        self.config = (config or SimulationConfig()).check()
        self.rng = rng or RandomSource(self.config.random_seed)
        self.speed = self.config.simulation.auto_play_delay  # ms of simulated time per tick
        self.logs = deque(maxlen=LOG_LIMIT)
        self._initialize()

    def _initialize(self):
        config = self.config
        self.running = False
        self.clock = 0.0
        self.round = 0

        self.edges = topology.build_topology(
            config.network.topology.type,
            config.network.node_count,
            {
                "edge_probability": config.network.topology.edge_probability,
                "node_degree": config.network.topology.node_degree,
                "custom_edges": config.network.topology.custom_edges,
            },
            self.rng,
        )
        self.nodes: List[Validator] = initialize_network(config.network.node_count, config, self.edges)
        self.blocks: List[Block] = []
        self.voting_history = []
        self.qc_history = []
        self.timeout_history = []
        self.current_voting_round = None
        self.evidence = EvidencePool()
        self.timing = TimeoutController(config.consensus).initial_context(self.clock)

        self.synchronous = config.network.is_synchronous
        self.use_graph_routing = config.network.topology.use_graph_routing
        self.partition_active = False
        self.partition_type = PartitionType.SINGLE
        self.partitioned_ids: List[int] = []

        self.network_stats = {"sent": 0, "delivered": 0, "lost": 0}
        self.step_mode = False
        self.step_state: Optional[StepState] = None
        self._step_context: Optional[RoundContext] = None
        self._step_history = deque(maxlen=config.simulation.step_history_limit)
        self._step_redo: List[StepState] = []

        self.current_proposer = self._next_proposer(0)
        self.liveness = True
        self.safety = True
        self.consistency = ConsistencyReport(safety=True)
        self.safety_report: Optional[SafetyReport] = None
        self.liveness_report: Optional[LivenessReport] = None
        self._refresh_status(True)

    # ------------------------------------------------------------------
    # Logging

    def _log(self, message: str, level: str = "info", echo: bool = True):
        self.logs.append(LogEntry(message, level, self.clock, self.round))
        if echo:
            logger.log(logging.WARNING if level == "warning" else
                       logging.ERROR if level == "error" else logging.INFO, message)

    def clear_logs(self):
        self.logs.clear()

    # ------------------------------------------------------------------
    # Controls

    def start(self):
        if self.step_mode:
            self._log("Leave step mode before starting continuous play", "warning")
            return
        self.running = True
        self._log("Simulation started")

    def stop(self):
        self.running = False
        self._log("Simulation paused")

    def reset(self):
        """Rebuild the network from the current configuration"""
        self._initialize()
        self._log("Simulation reset")

    def set_speed(self, speed_ms: int):
        self.speed = speed_ms

    def tick(self, elapsed: Optional[float] = None) -> Optional[RoundResult]:
        """Advance the clock and run one round, if the simulation is running"""
        if not self.running:
            logger.debug("tick() ignored: simulation is not running")
            return None
        return self.run_round(elapsed)

    def run_round(self, elapsed: Optional[float] = None) -> RoundResult:
        """Advance the simulated clock and run one whole round"""
        self.clock += self.speed if elapsed is None else elapsed
        result = advance_round(self.nodes, self.blocks, self.config, self.context(), self.rng)
        self._apply_result(result)
        return result

    def run(self, rounds: int, elapsed: Optional[float] = None) -> List[RoundResult]:
        return [self.run_round(elapsed) for _ in range(rounds)]

    def context(self) -> RoundContext:
        """Round context for the next round"""
        return RoundContext(
            timing=self.timing,
            current_round=self.round,
            synchronous=self.synchronous,
            partition_active=self.partition_active,
            partitioned_ids=tuple(self.partitioned_ids),
            edges=tuple(self.edges),
            use_graph_routing=self.use_graph_routing,
            evidence=self.evidence,
            now=self.clock,
        )

    def _next_proposer(self, round_number: int) -> Optional[Validator]:
        return get_next_proposer(
            self.nodes, round_number, self.edges, self.use_graph_routing,
            self.config.consensus.vote_threshold, self.config.consensus.exclude_byzantine_proposers,
        )

    def _apply_result(self, result: RoundResult, log_events: bool = True):
        self.nodes = list(result.updated_nodes)
        self.timing = result.timing
        self.evidence = result.evidence

        if result.new_block is not None:
            self.blocks.append(result.new_block)
        if result.voting_round is not None:
            self.voting_history.append(result.voting_round)
            self.qc_history.extend(result.qcs)
        if result.timeout_event is not None:
            self.timeout_history.append(result.timeout_event)

        self.network_stats["sent"] += result.delivery.sent
        self.network_stats["delivered"] += result.delivery.delivered
        self.network_stats["lost"] += result.delivery.lost

        if log_events:
            for event in result.events:
                self._log(event.message, event.level, echo=False)

        self.round += 1
        self.current_voting_round = result.voting_round
        self.current_proposer = result.new_proposer

        if result.new_liveness != self.liveness:
            self._log(f"Liveness {'confirmed' if result.new_liveness else 'violated'}",
                      "success" if result.new_liveness else "error")
        self._refresh_status(result.new_liveness)

    def _refresh_status(self, round_live: bool):
        """Re-run the detectors over the chain and voting history"""
        self.consistency = detect_consistency_violations(self.blocks, self.voting_history)
        self.safety_report = assess_safety(self.nodes, self.consistency)
        self.liveness_report = assess_liveness(
            rounds=self.round,
            committed_blocks=len(self.blocks),
            total_timeouts=self.timing.total_timeouts,
            consecutive_timeouts=self.timing.consecutive_timeouts,
            node_count=len(self.nodes),
            partitioned_count=len(self.partitioned_ids) if self.partition_active else 0,
            byzantine_count=count_byzantine(self.nodes),
            round_live=round_live,
        )
        if self.safety and not self.safety_report.safe:
            self._log("Safety violated: " + "; ".join(self.safety_report.reasons), "error")
        self.liveness = round_live
        self.safety = self.safety_report.safe

    def add_block(self, block: Block):
        """Append a block to the committed chain directly (fork injection)"""
        self.blocks.append(block)
        self._refresh_status(self.liveness)

    # ------------------------------------------------------------------
    # Step mode

    def toggle_step_mode(self) -> bool:
        self.step_mode = not self.step_mode
        if self.step_mode:
            self.running = False
            self._log("Step mode enabled")
        else:
            if self.step_state is not None and not self.step_state.is_complete:
                self._log(f"Discarded round {self.step_state.round_number} at {self.step_state.step.label}",
                          "warning")
            self._log("Step mode disabled")
        self._clear_steps()
        return self.step_mode

    def _clear_steps(self):
        self.step_state = None
        self._step_context = None
        self._step_history.clear()
        self._step_redo = []

    def next_step(self) -> Optional[StepState]:
        """Run (or replay) the next step of the current round"""
        if not self.step_mode:
            logger.debug("next_step() ignored outside step mode")
            return None

        if self._step_redo:
            self._step_history.append(self.step_state)
            self.step_state = self._step_redo.pop()
            return self.step_state

        if self.step_state is None or self.step_state.is_complete:
            context = self.context()
            if is_round_timed_out(self.config, context):
                self._apply_result(timeout_round(self.nodes, self.blocks, self.config, context, self.rng))
                self._clear_steps()
                return None
            self._clear_steps()
            self._step_context = context
            state = execute_step(0, self.nodes, self.blocks, self.config, None, context, self.rng)
        else:
            self._step_history.append(self.step_state)
            state = execute_step(self.step_state.step.value + 1, self.nodes, self.blocks, self.config,
                                 self.step_state, self._step_context, self.rng)

        self.step_state = state
        for event in state.events:
            self._log(event.message, event.level, echo=False)
        if state.voting_round is not None:
            self.current_voting_round = state.voting_round

        if state.is_complete:
            self._apply_result(result_from_state(state), log_events=False)
            self._step_history.clear()
        return state

    def previous_step(self) -> Optional[StepState]:
        """Restore the state before the last step of the current round"""
        if not self._step_history:
            logger.debug("previous_step() ignored: no step history")
            return None
        self._step_redo.append(self.step_state)
        self.step_state = self._step_history.pop()
        self.current_voting_round = self.step_state.voting_round
        return self.step_state

    def go_to_round_start(self) -> Optional[StepState]:
        while self._step_history:
            self.previous_step()
        return self.step_state

    @property
    def can_go_back(self) -> bool:
        return bool(self._step_history)

    # ------------------------------------------------------------------
    # Network controls

    def toggle_partition(self) -> bool:
        self.partition_active = not self.partition_active
        if self.partition_active:
            self.partitioned_ids = compute_partition(self.nodes, self.partition_type, self.rng)
            self._log(f"Network partition activated ({self.partition_type.value}): nodes {self.partitioned_ids}",
                      "warning")
        else:
            self.partitioned_ids = []
            self._log("Network partition resolved", "success")
        self._refresh_status(self.liveness)
        return self.partition_active

    def set_partition_type(self, partition_type):
        self.partition_type = PartitionType(partition_type)
        if self.partition_active:
            self.partitioned_ids = compute_partition(self.nodes, self.partition_type, self.rng)
            self._log(f"Partition changed to {self.partition_type.value}: nodes {self.partitioned_ids}", "warning")
            self._refresh_status(self.liveness)

    def toggle_network_mode(self) -> bool:
        """Switch between synchronous and partially synchronous timing"""
        self.synchronous = not self.synchronous
        mode = "synchronous" if self.synchronous else "partially synchronous"
        self._log(f"Network mode: {mode}")
        return self.synchronous

    def load_config(self, config: SimulationConfig):
        """Validate and apply a new configuration, then reset"""
        self.config = config.check()
        self.speed = config.simulation.auto_play_delay
        self._initialize()
        self._log(f"Configuration '{config.name}' loaded")

    def update_timeout_settings(self, round_timeout: Optional[int] = None, multiplier: Optional[float] = None,
                                escalation_enabled: Optional[bool] = None, min_timeout: Optional[int] = None,
                                max_timeout: Optional[int] = None):
        changes = {
            "round_timeout": round_timeout,
            "timeout_multiplier": multiplier,
            "timeout_escalation_enabled": escalation_enabled,
            "min_timeout": min_timeout,
            "max_timeout": max_timeout,
        }
        changes = {key: value for key, value in changes.items() if value is not None}
        consensus = replace(self.config.consensus, **changes)
        self.config = replace(self.config, consensus=consensus).check()

        base = float(consensus.round_timeout)
        self.timing = replace(self.timing, base_timeout_duration=base, timeout_duration=base)
        self._log(f"Timeout settings updated: base {consensus.round_timeout}ms, "
                  f"multiplier {consensus.timeout_multiplier}")

    def set_edges(self, edges: Sequence[topology.Edge]):
        self.edges = list(edges)
        self.nodes = attach_neighbors(self.nodes, self.edges)
        self.current_proposer = self._next_proposer(self.round)

    def set_topology(self, topology_type, **options):
        self.set_edges(topology.build_topology(topology_type, len(self.nodes), options, self.rng))
        self._log(f"Topology set to {topology_type}: {len(self.edges)} edges")

    def add_edge(self, source: int, target: int, **kwargs):
        self.set_edges(topology.add_edge(self.edges, source, target, **kwargs))

    def remove_edge(self, source: int, target: int):
        self.set_edges(topology.remove_edge(self.edges, source, target))

    def toggle_graph_routing(self) -> bool:
        self.use_graph_routing = not self.use_graph_routing
        self.current_proposer = self._next_proposer(self.round)
        self._log(f"Graph routing {'enabled' if self.use_graph_routing else 'disabled'}")
        return self.use_graph_routing

    # ------------------------------------------------------------------
    # Reporting

    def get_graph_statistics(self) -> Dict[str, Any]:
        return topology.get_graph_statistics(len(self.nodes), self.edges)

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics for the run so far"""
        approved = sum(1 for vr in self.voting_history if vr.result == VoteOutcome.APPROVED)
        return {
            "rounds": self.round,
            "committed_blocks": len(self.blocks),
            "approved_rounds": approved,
            "rejected_rounds": len(self.voting_history) - approved,
            "total_timeouts": self.timing.total_timeouts,
            "consecutive_timeouts": self.timing.consecutive_timeouts,
            "timeout_duration": self.timing.timeout_duration,
            "qcs_generated": len(self.qc_history),
            "byzantine_nodes": count_byzantine(self.nodes),
            "equivocators": list(self.evidence.equivocators()),
            "network": dict(self.network_stats),
        }

    def get_state(self) -> Dict[str, Any]:
        """Snapshot of the current state for display"""
        return {
            "round": self.round,
            "clock": self.clock,
            "running": self.running,
            "step_mode": self.step_mode,
            "step": self.step_state.step.name if self.step_state else None,
            "synchronous": self.synchronous,
            "partition_active": self.partition_active,
            "partitioned_nodes": list(self.partitioned_ids),
            "proposer": self.current_proposer.id if self.current_proposer else None,
            "nodes": [n.to_dict() for n in self.nodes],
            "blocks": [b.to_dict() for b in self.blocks],
            "liveness": self.liveness,
            "liveness_status": self.liveness_report.status.value,
            "safety": self.safety,
            "consistency_violations": [v.to_dict() for v in self.consistency.violations],
        }
