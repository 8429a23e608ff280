# tendermint_sim/consensus.py
"""
Tendermint-style round state machine.

A round runs eight steps in strict order:
ROUND_START → BLOCK_PROPOSAL → PREVOTE → PREVOTE_TALLY → PRECOMMIT →
PRECOMMIT_TALLY → COMMIT → ROUND_COMPLETE

execute_step() runs one step and returns an immutable StepState; the step
driver feeds each state back in to run the next one. advance_round() checks the
round timer and then drives execute_step() through all eight steps, so both
drivers produce the same round for the same inputs and random draws.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .block import Block, EvidencePool, create_block
from .config import ByzantineType, SimulationConfig
from .detectors import SafetyReport, assess_safety, detect_consistency_violations
from .messages import MessageType
from .network import DeliveryModel
from .node import (
    NodeState,
    Validator,
    attach_neighbors,
    find_node,
    mark_byzantine,
    reset_round_state,
    update_availability,
)
from .proposer import get_next_proposer
from .qc import QuorumCertificate
from .rng import RandomSource
from .timeout import TimeoutController, TimeoutEvent, TimingContext
from .topology import Edge, get_reachable_nodes
from .voting import (
    VoteResult,
    VotingRound,
    create_voting_round,
    finalize_voting_round,
    update_precommits,
    update_prevotes,
    vote_on_block,
)

logger = logging.getLogger(__name__)


class RoundStep(Enum):
    ROUND_START = 0
    BLOCK_PROPOSAL = 1
    PREVOTE = 2
    PREVOTE_TALLY = 3
    PRECOMMIT = 4
    PRECOMMIT_TALLY = 5
    COMMIT = 6
    ROUND_COMPLETE = 7

    @property
    def description(self) -> str:
        return STEP_DESCRIPTIONS[self]

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


STEP_DESCRIPTIONS = {
    RoundStep.ROUND_START: "Node availability is refreshed and the proposer for this round is selected",
    RoundStep.BLOCK_PROPOSAL: "The proposer builds a block and sends it to the other validators",
    RoundStep.PREVOTE: "Validators that received the proposal validate it and broadcast prevotes",
    RoundStep.PREVOTE_TALLY: "Prevotes are counted against the vote threshold",
    RoundStep.PRECOMMIT: "If the prevote threshold was met, validators broadcast precommits",
    RoundStep.PRECOMMIT_TALLY: "Precommits are counted against the vote threshold",
    RoundStep.COMMIT: "The block is committed if the precommit threshold was met",
    RoundStep.ROUND_COMPLETE: "Round state is cleared and the next proposer is chosen",
}


@dataclass(frozen=True)
class RoundEvent:
    """Advisory event raised while running a round"""
    level: str  # 'info', 'success', 'warning', 'error'
    message: str


@dataclass(frozen=True)
class DeliveryStats:
    """Proposal messages for one round"""
    sent: int = 0
    delivered: int = 0
    lost: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "delivered": self.delivered, "lost": self.lost}


@dataclass(frozen=True)
class RoundContext:
    """Everything a round needs besides nodes, blocks and config"""
    timing: TimingContext
    current_round: int = 0  # rounds already run
    synchronous: bool = True
    partition_active: bool = False
    partitioned_ids: Tuple[int, ...] = ()
    edges: Optional[Tuple[Edge, ...]] = None
    use_graph_routing: bool = False
    evidence: EvidencePool = field(default_factory=EvidencePool)
    now: float = 0.0

    @classmethod
    def initial(cls, config: SimulationConfig, now: float = 0.0,
                edges: Optional[Sequence[Edge]] = None) -> "RoundContext":
        return cls(
            timing=TimeoutController(config.consensus).initial_context(now),
            synchronous=config.network.is_synchronous,
            edges=tuple(edges) if edges is not None else None,
            use_graph_routing=config.network.topology.use_graph_routing,
            now=now,
        )


@dataclass(frozen=True)
class StepState:
    """Snapshot of a round after one step"""
    step: RoundStep
    round_number: int
    height: int
    nodes: Tuple[Validator, ...]
    evidence: EvidencePool
    timing: TimingContext
    proposer: Optional[Validator] = None
    block: Optional[Block] = None
    voting_round: Optional[VotingRound] = None
    prevote_result: Optional[VoteResult] = None
    precommit_result: Optional[VoteResult] = None
    committed_block: Optional[Block] = None
    delivery: DeliveryStats = DeliveryStats()
    receivers: Tuple[int, ...] = ()
    denominator: Optional[int] = None  # reachable-set size under graph routing
    new_liveness: Optional[bool] = None
    safety: Optional[SafetyReport] = None
    new_proposer: Optional[Validator] = None
    events: Tuple[RoundEvent, ...] = ()  # raised by this step only
    highlighted: Tuple[int, ...] = ()

    @property
    def description(self) -> str:
        return self.step.description

    @property
    def is_complete(self) -> bool:
        return self.step == RoundStep.ROUND_COMPLETE


@dataclass(frozen=True)
class RoundResult:
    """Outcome of one full round (or of a timed-out round)"""
    updated_nodes: Tuple[Validator, ...]
    new_block: Optional[Block]
    voting_round: Optional[VotingRound]
    new_liveness: bool
    new_safety: bool
    timed_out: bool
    new_proposer: Optional[Validator]
    timing: TimingContext
    evidence: EvidencePool
    events: Tuple[RoundEvent, ...] = ()
    delivery: DeliveryStats = DeliveryStats()
    qcs: Tuple[QuorumCertificate, ...] = ()
    safety: Optional[SafetyReport] = None
    timeout_event: Optional[TimeoutEvent] = None
    final_state: Optional[StepState] = None


def next_height(blocks: Sequence[Block]) -> int:
    return blocks[-1].height + 1 if blocks else 1


def _set_state(nodes: Iterable[Validator], node_ids, state: NodeState) -> Tuple[Validator, ...]:
    node_ids = set(node_ids)
    return tuple(n.with_state(state) if n.id in node_ids else n for n in nodes)


def _active_ids(nodes: Iterable[Validator]) -> List[int]:
    return [n.id for n in nodes if n.can_vote]


def _proposer_for(nodes: Sequence[Validator], round_number: int, config: SimulationConfig,
                  context: RoundContext) -> Optional[Validator]:
    return get_next_proposer(
        nodes, round_number,
        edges=context.edges,
        use_graph_routing=context.use_graph_routing,
        vote_threshold=config.consensus.vote_threshold,
        exclude_byzantine=config.consensus.exclude_byzantine_proposers,
    )


def _refresh_nodes(nodes: Sequence[Validator], config: SimulationConfig, context: RoundContext,
                   rng: RandomSource) -> List[Validator]:
    updated = update_availability(nodes, config, context.partitioned_ids, context.partition_active,
                                  context.synchronous, rng)
    if context.edges is not None:
        updated = attach_neighbors(updated, context.edges)
    return updated


def _deliver_proposal(proposer: Validator, block: Block, nodes: Sequence[Validator],
                      config: SimulationConfig, context: RoundContext, rng: RandomSource):
    """Send the proposal; returns (stats, receiver ids, reachable-set size or None)"""
    packet_loss = 0 if context.synchronous else config.network.packet_loss
    model = DeliveryModel(config.network.latency, packet_loss, rng, config.node_behavior.response_variance)
    content = {"height": block.height, "round": block.round, "hash": block.hash, "proposer": block.proposer}

    if context.use_graph_routing and context.edges is not None:
        flood = model.flood(proposer.id, MessageType.PROPOSAL, content, nodes, context.edges, context.now)
        delivered = max(len(flood.delivery_map) - 1, 0)
        stats = DeliveryStats(sent=flood.total_sent, delivered=delivered, lost=flood.total_failed)
        reachable = len(get_reachable_nodes(proposer.id, context.edges))
        return stats, set(flood.delivery_map), reachable

    result = model.broadcast(proposer, nodes, MessageType.PROPOSAL, content, context.now)
    receivers = set(result.receivers)
    if proposer.can_vote:
        receivers.add(proposer.id)
    return DeliveryStats(result.sent, result.delivered, result.failed), receivers, None


def _round_start(state, nodes, blocks, config, context, rng) -> StepState:
    if not nodes:
        raise ValueError("Cannot run a round without validators")

    updated = _refresh_nodes(nodes, config, context, rng)
    round_number = context.current_round + 1
    events = []

    proposer = _proposer_for(updated, context.current_round, config, context)
    updated = _set_state(updated, [proposer.id], NodeState.PROPOSING)
    proposer = find_node(updated, proposer.id)
    events.append(RoundEvent("info", f"Round {round_number}: node {proposer.id} selected as proposer"))

    isolated = [n.id for n in updated if n.is_partitioned]
    if isolated:
        events.append(RoundEvent("warning", f"{len(isolated)} nodes partitioned: {isolated}"))

    return StepState(
        step=RoundStep.ROUND_START,
        round_number=round_number,
        height=next_height(blocks),
        nodes=updated,
        evidence=context.evidence,
        timing=context.timing,
        proposer=proposer,
        events=tuple(events),
        highlighted=(proposer.id,),
    )


def _block_proposal(state, nodes, blocks, config, context, rng) -> StepState:
    proposer = state.proposer
    block = create_block(proposer.id, state.height, config, proposer, rng, context.now, state.round_number)
    evidence, proof = state.evidence.record_block(block)
    updated = list(state.nodes)
    events = []

    if proof.equivocates:
        updated = mark_byzantine(updated, proposer.id, ByzantineType.EQUIVOCATOR)
        events.append(RoundEvent("error", f"EVIDENCE: proposer {proposer.id} equivocated at height "
                                          f"{block.height} (hashes: {', '.join(proof.hashes)})"))
    if proposer.is_byzantine and block.is_malicious:
        events.append(RoundEvent("warning", f"Byzantine node {proposer.id} ({proposer.byzantine_type.value}) "
                                            f"proposed a malicious block"))
    elif proposer.is_byzantine:
        events.append(RoundEvent("info", f"Byzantine node {proposer.id} is proposer (block appears valid)"))

    proposer = find_node(updated, proposer.id)
    delivery, receivers, denominator = _deliver_proposal(proposer, block, updated, config, context, rng)
    if delivery.lost:
        events.append(RoundEvent("warning", f"Proposal reached {delivery.delivered}/{delivery.sent} validators"))

    voting_round = create_voting_round(state.round_number, state.height, proposer.id, updated,
                                       context.now, block.hash)
    return replace(
        state,
        step=RoundStep.BLOCK_PROPOSAL,
        nodes=tuple(updated),
        proposer=proposer,
        block=block,
        evidence=evidence,
        voting_round=voting_round,
        delivery=delivery,
        receivers=tuple(sorted(receivers)),
        denominator=denominator,
        events=tuple(events),
        highlighted=tuple(sorted(receivers)),
    )


def _votable(state: StepState) -> List[Validator]:
    return [n for n in state.nodes if n.can_vote and n.id in state.receivers]


def _cast(state: StepState, config: SimulationConfig, context: RoundContext, rng: RandomSource,
          total_validators: int) -> VoteResult:
    return vote_on_block(
        _votable(state), state.block, config, total_validators, rng,
        reachable_count=state.denominator,
        use_graph_routing=context.use_graph_routing and state.denominator is not None,
    )


def _prevote(state, nodes, blocks, config, context, rng) -> StepState:
    voting_round = state.voting_round
    result = _cast(state, config, context, rng, len(voting_round.prevotes_received))
    voting_round = update_prevotes(voting_round, result.votes, config.consensus.vote_threshold,
                                   state.block, context.now, denominator=result.denominator)
    voters = [v.node_id for v in result.votes if v.vote is not None]

    events = []
    if state.block.is_malicious and not voting_round.prevote_threshold_met:
        events.append(RoundEvent("success", "Malicious block rejected by honest nodes in prevote"))
    partitioned = sum(1 for n in state.nodes if n.is_partitioned)
    if partitioned:
        events.append(RoundEvent("warning", f"{partitioned} partitioned nodes unable to vote in prevote"))

    return replace(
        state,
        step=RoundStep.PREVOTE,
        nodes=_set_state(state.nodes, voters, NodeState.PREVOTED),
        voting_round=voting_round,
        prevote_result=result,
        events=tuple(events),
        highlighted=tuple(voters),
    )


def _tally_event(stage: str, count: int, denominator: int, met: bool) -> RoundEvent:
    return RoundEvent("success" if met else "warning",
                      f"{stage}: {count}/{denominator} (Threshold {'MET' if met else 'NOT MET'})")


def _prevote_tally(state, nodes, blocks, config, context, rng) -> StepState:
    voting_round = state.voting_round
    yes_voters = [node_id for node_id, vote in voting_round.prevotes_received.items() if vote is True]
    event = _tally_event("Prevotes", voting_round.prevote_count, voting_round.denominator,
                         voting_round.prevote_threshold_met)
    return replace(state, step=RoundStep.PREVOTE_TALLY, events=(event,), highlighted=tuple(yes_voters))


def _precommit(state, nodes, blocks, config, context, rng) -> StepState:
    voting_round = state.voting_round
    if not voting_round.prevote_threshold_met:
        event = RoundEvent("warning", "Prevote threshold not met, precommit phase skipped")
        return replace(state, step=RoundStep.PRECOMMIT, events=(event,), highlighted=())

    result = _cast(state, config, context, rng, len(voting_round.precommits_received))
    voting_round = update_precommits(voting_round, result.votes, config.consensus.vote_threshold,
                                     state.block, context.now, denominator=result.denominator)
    voters = [v.node_id for v in result.votes if v.vote is not None]
    return replace(
        state,
        step=RoundStep.PRECOMMIT,
        nodes=_set_state(state.nodes, voters, NodeState.PRECOMMITTED),
        voting_round=voting_round,
        precommit_result=result,
        events=(),
        highlighted=tuple(voters),
    )


def _precommit_tally(state, nodes, blocks, config, context, rng) -> StepState:
    voting_round = state.voting_round
    yes_voters = [node_id for node_id, vote in voting_round.precommits_received.items() if vote is True]
    event = _tally_event("Precommits", voting_round.precommit_count, voting_round.denominator,
                         voting_round.precommit_threshold_met)
    return replace(state, step=RoundStep.PRECOMMIT_TALLY, events=(event,), highlighted=tuple(yes_voters))


def _commit(state, nodes, blocks, config, context, rng) -> StepState:
    voting_round = state.voting_round
    active = _active_ids(state.nodes)

    if voting_round.precommit_threshold_met:
        committed = state.block.with_commit_proof(voting_round.precommit_qc)
        event = RoundEvent("success", f"Block {committed.height} committed by node {committed.proposer} "
                                      f"({committed.hash})")
        return replace(
            state,
            step=RoundStep.COMMIT,
            nodes=_set_state(state.nodes, active, NodeState.COMMITTED),
            voting_round=finalize_voting_round(voting_round, True),
            committed_block=committed,
            events=(event,),
            highlighted=tuple(active),
        )

    partitioned = sum(1 for n in state.nodes if n.is_partitioned)
    if partitioned:
        message = f"Consensus failed: {partitioned} nodes partitioned, threshold not met"
    else:
        message = f"Consensus failed: block {state.height} not committed in round {state.round_number}"
    failed_state = NodeState.FAILED if context.synchronous else NodeState.TIMEOUT
    return replace(
        state,
        step=RoundStep.COMMIT,
        nodes=_set_state(state.nodes, active, failed_state),
        voting_round=finalize_voting_round(voting_round, False),
        events=(RoundEvent("error", message),),
        highlighted=(),
    )


def _round_complete(state, nodes, blocks, config, context, rng) -> StepState:
    controller = TimeoutController(config.consensus)
    timing = state.timing
    if state.committed_block is not None:
        timing = controller.on_commit(timing)
    timing = controller.on_round_complete(timing, context.now)

    chain = list(blocks)
    if state.committed_block is not None:
        chain.append(state.committed_block)
    consistency = detect_consistency_violations(chain, [state.voting_round])
    safety = assess_safety(state.nodes, consistency)

    events = []
    if not safety.safe:
        events.extend(RoundEvent("error", f"Safety violated: {reason}") for reason in safety.reasons)
    if state.committed_block is None:
        events.append(RoundEvent("info", f"Round {state.round_number} finished (no commit). "
                                         f"Timer reset for next round."))

    updated = tuple(reset_round_state(state.nodes))
    new_proposer = _proposer_for(updated, context.current_round + 1, config, context)
    return replace(
        state,
        step=RoundStep.ROUND_COMPLETE,
        nodes=updated,
        timing=timing,
        new_liveness=state.committed_block is not None,
        safety=safety,
        new_proposer=new_proposer,
        events=tuple(events),
        highlighted=(new_proposer.id,) if new_proposer else (),
    )


_STEP_HANDLERS = {
    RoundStep.ROUND_START: _round_start,
    RoundStep.BLOCK_PROPOSAL: _block_proposal,
    RoundStep.PREVOTE: _prevote,
    RoundStep.PREVOTE_TALLY: _prevote_tally,
    RoundStep.PRECOMMIT: _precommit,
    RoundStep.PRECOMMIT_TALLY: _precommit_tally,
    RoundStep.COMMIT: _commit,
    RoundStep.ROUND_COMPLETE: _round_complete,
}


def execute_step(step_index: int, nodes: Sequence[Validator], blocks: Sequence[Block],
                 config: SimulationConfig, previous_step_state: Optional[StepState] = None,
                 context: Optional[RoundContext] = None, rng: Optional[RandomSource] = None) -> StepState:
    """
    Run one step of the current round.

    Step 0 starts from nodes; every later step continues from
    previous_step_state, which must be the state of the step just before it.
    """
    step = RoundStep(step_index)
    context = context or RoundContext.initial(config)
    rng = rng or RandomSource(config.random_seed)

    if step != RoundStep.ROUND_START:
        if previous_step_state is None or previous_step_state.step.value != step.value - 1:
            raise ValueError(f"{step.name} must follow {RoundStep(step.value - 1).name}")

    state = _STEP_HANDLERS[step](previous_step_state, nodes, blocks, config, context, rng)
    for event in state.events:
        logger.log(_LOG_LEVELS.get(event.level, logging.INFO), event.message)
    return state


_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def is_round_timed_out(config: SimulationConfig, context: RoundContext) -> bool:
    return TimeoutController(config.consensus).is_timed_out(context.timing, context.now, context.synchronous)


def timeout_round(nodes: Sequence[Validator], blocks: Sequence[Block], config: SimulationConfig,
                  context: RoundContext, rng: RandomSource) -> RoundResult:
    """Abandon the current round: nothing is proposed or committed"""
    updated = _refresh_nodes(nodes, config, context, rng)
    updated = _set_state(updated, _active_ids(updated), NodeState.TIMEOUT)
    round_number = context.current_round + 1

    timing, timeout_event = TimeoutController(config.consensus).on_timeout(
        context.timing, context.now, round_number, next_height(blocks))
    safety = assess_safety(updated, detect_consistency_violations(blocks))

    events = [RoundEvent("warning", f"Round {round_number} timed out after {timeout_event.elapsed:.0f}ms")]
    partitioned = sum(1 for n in updated if n.is_partitioned)
    if partitioned:
        events.append(RoundEvent("warning", f"Round {round_number} timeout due to network partition "
                                            f"({partitioned} nodes affected)"))
    events.extend(RoundEvent("error", f"Safety violated: {reason}") for reason in safety.reasons)

    return RoundResult(
        updated_nodes=updated,
        new_block=None,
        voting_round=None,
        new_liveness=False,
        new_safety=safety.safe,
        timed_out=True,
        new_proposer=_proposer_for(updated, context.current_round + 1, config, context),
        timing=timing,
        evidence=context.evidence,
        events=tuple(events),
        safety=safety,
        timeout_event=timeout_event,
    )


def result_from_state(state: StepState) -> RoundResult:
    """Summarise a completed round"""
    if not state.is_complete:
        raise ValueError(f"Round is still at {state.step.name}")
    voting_round = state.voting_round
    qcs = tuple(qc for qc in (voting_round.prevote_qc, voting_round.precommit_qc) if qc is not None)
    return RoundResult(
        updated_nodes=state.nodes,
        new_block=state.committed_block,
        voting_round=voting_round,
        new_liveness=state.new_liveness,
        new_safety=state.safety.safe,
        timed_out=False,
        new_proposer=state.new_proposer,
        timing=state.timing,
        evidence=state.evidence,
        delivery=state.delivery,
        qcs=qcs,
        safety=state.safety,
        final_state=state,
    )


def advance_round(nodes: Sequence[Validator], blocks: Sequence[Block], config: SimulationConfig,
                  context: Optional[RoundContext] = None, rng: Optional[RandomSource] = None) -> RoundResult:
    """Run one whole round (continuous mode)"""
    context = context or RoundContext.initial(config)
    rng = rng or RandomSource(config.random_seed)

    if is_round_timed_out(config, context):
        result = timeout_round(nodes, blocks, config, context, rng)
        for event in result.events:
            logger.log(_LOG_LEVELS.get(event.level, logging.INFO), event.message)
        return result

    state = None
    events = []
    for step in RoundStep:
        state = execute_step(step.value, nodes, blocks, config, state, context, rng)
        events.extend(state.events)
    return replace(result_from_state(state), events=tuple(events))
