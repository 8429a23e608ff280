# tendermint_sim/block.py
"""
Block/proposal factory and proposal evidence.

Byzantine proposers may build malicious blocks (content the validity predicate
rejects) or, as equivocators, show different validators different hashes for
the same (height, round). Every proposal hash is recorded in an EvidencePool so
that a second hash for the same key exposes the proposer.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from .config import ByzantineType, SimulationConfig
from .crypto import block_hash
from .node import Validator
from .rng import RandomSource

logger = logging.getLogger(__name__)

# Chance that a Byzantine proposer's block carries invalid content
MALICIOUS_PROPOSAL_PROBABILITY = 0.5


@dataclass(frozen=True)
class HashVariants:
    """The two hashes an equivocating proposer shows to different validators"""
    variant_a: str
    variant_b: str


@dataclass(frozen=True)
class Block:
    """Candidate block for one round. Immutable once created."""
    height: int
    proposer: int
    tx_count: int
    hash: str
    timestamp: float
    round: int = 0
    is_malicious: bool = False
    byzantine_type: Optional[ByzantineType] = None
    hash_per_target: Optional[HashVariants] = None
    commit_qc: Optional[Any] = None  # QuorumCertificate once committed

    @property
    def is_equivocating(self) -> bool:
        return self.hash_per_target is not None

    def hash_for(self, node_id: int) -> str:
        """Hash shown to a particular validator"""
        if self.hash_per_target is None:
            return self.hash
        # odd ids see variant A, even ids variant B
        return self.hash_per_target.variant_a if node_id % 2 else self.hash_per_target.variant_b

    def with_commit_proof(self, qc) -> "Block":
        return replace(self, commit_qc=qc)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "height": self.height,
            "proposer": self.proposer,
            "txCount": self.tx_count,
            "hash": self.hash,
            "timestamp": self.timestamp,
            "round": self.round,
            "isMalicious": self.is_malicious,
            "byzantineType": self.byzantine_type.value if self.byzantine_type else None,
        }
        if self.hash_per_target:
            data["hashPerTarget"] = {
                "variantA": self.hash_per_target.variant_a,
                "variantB": self.hash_per_target.variant_b,
            }
        if self.commit_qc is not None:
            data["commitQC"] = self.commit_qc.to_dict()
        return data


def create_block(proposer_id: int, height: int, config: SimulationConfig,
                 proposer_node: Optional[Validator] = None, rng: Optional[RandomSource] = None,
                 now: Optional[float] = None, round_number: int = 0) -> Block:
    """Build the candidate block a proposer offers for this round"""
    rng = rng or RandomSource()
    now = time.time() * 1000 if now is None else now
    block_size = config.consensus.block_size or 10
    tx_count = rng.randint(1, block_size)

    is_byzantine = proposer_node is not None and proposer_node.is_byzantine
    if not is_byzantine:
        return Block(height=height, proposer=proposer_id, tx_count=tx_count,
                     hash=block_hash(height, proposer_id, tx_count, rng.token()),
                     timestamp=now, round=round_number)

    byzantine_type = proposer_node.byzantine_type
    if byzantine_type == ByzantineType.EQUIVOCATOR:
        variants = HashVariants(
            variant_a=block_hash(height, proposer_id, tx_count, rng.token()),
            variant_b=block_hash(height, proposer_id, tx_count, rng.token()),
        )
        logger.debug("Node %s built equivocating proposal %s / %s at height %s",
                     proposer_id, variants.variant_a, variants.variant_b, height)
        return Block(height=height, proposer=proposer_id, tx_count=tx_count, hash=variants.variant_a,
                     timestamp=now, round=round_number, byzantine_type=byzantine_type,
                     hash_per_target=variants)

    is_malicious = rng.random() < MALICIOUS_PROPOSAL_PROBABILITY
    if is_malicious:
        # Inflated transaction count: more than the block can hold
        tx_count = block_size + rng.randint(1, block_size)
    return Block(height=height, proposer=proposer_id, tx_count=tx_count,
                 hash=block_hash(height, proposer_id, tx_count, rng.token()),
                 timestamp=now, round=round_number, is_malicious=is_malicious,
                 byzantine_type=byzantine_type)


@dataclass(frozen=True)
class ProposalEvidence:
    """What the pool knows about one (height, round, proposer) key"""
    height: int
    round: int
    proposer: int
    hashes: Tuple[str, ...]

    @property
    def equivocates(self) -> bool:
        return len(self.hashes) > 1


@dataclass(frozen=True)
class EvidencePool:
    """
    Proposal hashes seen per (height, round, proposer).

    Immutable: record() returns a new pool, so independent simulations never
    share evidence and step-mode history can restore an earlier pool.
    """
    proposals: Dict[Tuple[int, int, int], Tuple[str, ...]] = field(default_factory=dict)

    def record(self, height: int, round_number: int, proposer: int, hash_value: str) -> Tuple["EvidencePool", ProposalEvidence]:
        key = (height, round_number, proposer)
        hashes = self.proposals.get(key, ())
        if hash_value not in hashes:
            hashes = hashes + (hash_value,)
        proposals = dict(self.proposals)
        proposals[key] = hashes
        evidence = ProposalEvidence(height, round_number, proposer, hashes)
        if evidence.equivocates:
            logger.debug("EVIDENCE: proposer %s equivocated at height %s round %s (hashes: %s)",
                         proposer, height, round_number, ", ".join(hashes))
        return EvidencePool(proposals), evidence

    def record_block(self, block: Block) -> Tuple["EvidencePool", ProposalEvidence]:
        """Record every hash a block was shown with"""
        pool, evidence = self.record(block.height, block.round, block.proposer, block.hash)
        if block.hash_per_target is not None:
            pool, evidence = pool.record(block.height, block.round, block.proposer,
                                         block.hash_per_target.variant_b)
        return pool, evidence

    def equivocators(self) -> Tuple[int, ...]:
        return tuple(sorted({key[2] for key, hashes in self.proposals.items() if len(hashes) > 1}))
