# tendermint_sim/voting.py
"""
Voting engine and per-round vote tracking.

vote_on_block decides each validator's vote for a proposed block. VotingRound
records the prevote and precommit maps of one round; every update returns a
new VotingRound with counts recomputed from the maps, and generates the phase's
quorum certificate the first time its threshold is met.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .block import Block
from .config import ByzantineType, SimulationConfig
from .node import Validator
from .qc import QuorumCertificate, Stage, generate_qc
from .rng import RandomSource
from .validator import BlockValidator

logger = logging.getLogger(__name__)


class VoteOutcome(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Vote:
    node_id: int
    vote: Optional[bool]  # None = no vote
    is_byzantine: bool = False


@dataclass(frozen=True)
class VoteResult:
    """Votes of one phase and whether they reach the threshold"""
    votes: Tuple[Vote, ...]
    yes_votes: int
    total_votes: int  # non-null votes
    denominator: int
    approved: bool
    byzantine_detected: bool = False


def threshold_met(yes_votes: int, denominator: int, vote_threshold: float) -> bool:
    """yes / denominator >= threshold, never met with an empty denominator"""
    return denominator > 0 and yes_votes / denominator >= vote_threshold


def cast_vote(node: Validator, block: Block, validator: BlockValidator, rng: RandomSource) -> Optional[bool]:
    """The vote a single validator casts for block"""
    if not node.can_vote:
        return None

    # Shown the other variant of an equivocating proposal: no vote for block.hash
    if block.hash_for(node.id) != block.hash:
        return None

    if node.is_byzantine:
        if node.byzantine_type == ByzantineType.SILENT:
            return None
        if node.byzantine_type == ByzantineType.EQUIVOCATOR:
            # Unpredictable voter, leaning towards yes
            return rng.random() > 0.3
        return rng.random() > 0.5

    # Honest nodes reject invalid content and approve valid content
    return validator.is_valid_value(block)


def vote_on_block(votable_nodes: Sequence[Validator], block: Block, config: SimulationConfig,
                  total_validators: int, rng: Optional[RandomSource] = None,
                  reachable_count: Optional[int] = None, use_graph_routing: bool = False,
                  validator: Optional[BlockValidator] = None) -> VoteResult:
    """
    Collect one phase of votes and evaluate the threshold.

    The denominator is the number of nodes reachable from the proposer under
    graph routing, otherwise total_validators (every registered validator, so
    silent and offline nodes count against the majority).
    """
    rng = rng or RandomSource()
    validator = validator or BlockValidator(config.consensus.block_size)

    votes = []
    byzantine_detected = False
    for node in votable_nodes:
        if node.is_byzantine and node.can_vote:
            byzantine_detected = True
        votes.append(Vote(node.id, cast_vote(node, block, validator, rng), node.is_byzantine))

    yes_votes = sum(1 for v in votes if v.vote is True)
    total_votes = sum(1 for v in votes if v.vote is not None)
    if use_graph_routing and reachable_count is not None:
        denominator = reachable_count
    else:
        denominator = total_validators

    return VoteResult(
        votes=tuple(votes),
        yes_votes=yes_votes,
        total_votes=total_votes,
        denominator=denominator,
        approved=threshold_met(yes_votes, denominator, config.consensus.vote_threshold),
        byzantine_detected=byzantine_detected,
    )


@dataclass(frozen=True)
class VotingRound:
    """Vote tracking for one consensus round"""
    round_number: int
    round_height: int
    proposer_id: int
    prevotes_received: Dict[int, Optional[bool]]
    precommits_received: Dict[int, Optional[bool]]
    timestamp: float
    result: VoteOutcome = VoteOutcome.PENDING
    prevote_count: int = 0
    precommit_count: int = 0
    prevote_threshold_met: bool = False
    precommit_threshold_met: bool = False
    prevote_qc: Optional[QuorumCertificate] = None
    precommit_qc: Optional[QuorumCertificate] = None
    block_hash: Optional[str] = None
    denominator: Optional[int] = None

    @property
    def is_final(self) -> bool:
        return self.result != VoteOutcome.PENDING

    def vote_of(self, node_id: int, stage: Stage = Stage.PREVOTE) -> Optional[bool]:
        """A node's vote; ids missing from the map count as no vote"""
        votes = self.prevotes_received if stage == Stage.PREVOTE else self.precommits_received
        return votes.get(node_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roundNumber": self.round_number,
            "roundHeight": self.round_height,
            "proposerId": self.proposer_id,
            "prevotesReceived": dict(self.prevotes_received),
            "precommitsReceived": dict(self.precommits_received),
            "prevoteCount": self.prevote_count,
            "precommitCount": self.precommit_count,
            "prevoteThresholdMet": self.prevote_threshold_met,
            "precommitThresholdMet": self.precommit_threshold_met,
            "prevoteQC": self.prevote_qc.to_dict() if self.prevote_qc else None,
            "precommitQC": self.precommit_qc.to_dict() if self.precommit_qc else None,
            "result": self.result.value,
            "timestamp": self.timestamp,
            "blockHash": self.block_hash,
        }


def create_voting_round(round_number: int, round_height: int, proposer_id: int,
                        nodes: Iterable[Validator], now: float = 0.0,
                        block_hash: Optional[str] = None) -> VotingRound:
    """New round with every node registered as not having voted"""
    node_ids = [n.id for n in nodes]
    return VotingRound(
        round_number=round_number,
        round_height=round_height,
        proposer_id=proposer_id,
        prevotes_received={node_id: None for node_id in node_ids},
        precommits_received={node_id: None for node_id in node_ids},
        timestamp=now,
        block_hash=block_hash,
    )


VotesInput = Union[Iterable[Vote], Mapping[int, Optional[bool]]]


def _vote_pairs(votes: VotesInput):
    if isinstance(votes, Mapping):
        return list(votes.items())
    return [(v.node_id, v.vote) for v in votes]


def _update_stage(voting_round: VotingRound, stage: Stage, votes: VotesInput, vote_threshold: float,
                  block: Optional[Block], now: float, denominator: Optional[int]) -> VotingRound:
    if stage == Stage.PREVOTE:
        received = dict(voting_round.prevotes_received)
        existing_qc = voting_round.prevote_qc
    else:
        received = dict(voting_round.precommits_received)
        existing_qc = voting_round.precommit_qc

    for node_id, vote in _vote_pairs(votes):
        received[node_id] = vote

    yes_votes = sum(1 for v in received.values() if v is True)
    if denominator is None:
        denominator = voting_round.denominator if voting_round.denominator is not None else len(received)
    met = threshold_met(yes_votes, denominator, vote_threshold)

    qc = existing_qc
    if met and qc is None and block is not None:
        # Only validators shown block.hash can sign for it
        signable = {node_id: vote if block.hash_for(node_id) == block.hash else None
                    for node_id, vote in received.items()}
        qc = generate_qc(signable, stage, voting_round.round_height, voting_round.round_number,
                         block.hash, voting_round.proposer_id, vote_threshold, now,
                         block_reference={"height": block.height, "hash": block.hash,
                                          "proposer": block.proposer, "txCount": block.tx_count})
        logger.info("%s QC generated for round %s: %d/%d signatures",
                    stage.value.capitalize(), voting_round.round_number, qc.signature_count,
                    qc.total_validators)

    if stage == Stage.PREVOTE:
        return replace(voting_round, prevotes_received=received, prevote_count=yes_votes,
                       prevote_threshold_met=met, prevote_qc=qc, denominator=denominator)
    return replace(voting_round, precommits_received=received, precommit_count=yes_votes,
                   precommit_threshold_met=met, precommit_qc=qc, denominator=denominator)


def update_prevotes(voting_round: VotingRound, votes: VotesInput, vote_threshold: float,
                    block: Optional[Block] = None, now: float = 0.0,
                    denominator: Optional[int] = None) -> VotingRound:
    """Merge prevotes and recompute the prevote tally"""
    return _update_stage(voting_round, Stage.PREVOTE, votes, vote_threshold, block, now, denominator)


def update_precommits(voting_round: VotingRound, votes: VotesInput, vote_threshold: float,
                      block: Optional[Block] = None, now: float = 0.0,
                      denominator: Optional[int] = None) -> VotingRound:
    """Merge precommits and recompute the precommit tally"""
    return _update_stage(voting_round, Stage.PRECOMMIT, votes, vote_threshold, block, now, denominator)


def finalize_voting_round(voting_round: VotingRound, approved: bool) -> VotingRound:
    """Set the round's result. A finalized round is never changed again."""
    if voting_round.is_final:
        logger.warning("Round %s already finalized as %s", voting_round.round_number,
                       voting_round.result.value)
        return voting_round
    return replace(voting_round, result=VoteOutcome.APPROVED if approved else VoteOutcome.REJECTED)
