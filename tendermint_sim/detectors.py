# tendermint_sim/detectors.py
"""
Advisory liveness, safety and consistency checks.

None of these raise: they summarise the state of a run so that a driver can
surface warnings while the simulation keeps going.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from .block import Block
from .config import ConsensusConfig
from .node import Validator, count_byzantine
from .voting import VoteOutcome

logger = logging.getLogger(__name__)

HIGH_TIMEOUT_RATE = 40.0  # percent of rounds
MAX_CONSECUTIVE_TIMEOUTS = 3
SIGNIFICANT_PARTITION_RATIO = 0.3
MIN_ROUNDS_FOR_PROGRESS = 5
MIN_COMMIT_RATE = 20.0  # percent of rounds


class LivenessStatus(Enum):
    MAINTAINED = "Maintained"
    DEGRADED = "Degraded"
    VIOLATED = "Violated"


@dataclass(frozen=True)
class LivenessReport:
    status: LivenessStatus
    reasons: Tuple[str, ...] = ()
    timeout_rate: float = 0.0
    commit_rate: float = 0.0
    partition_ratio: float = 0.0

    @property
    def is_live(self) -> bool:
        return self.status == LivenessStatus.MAINTAINED


def assess_liveness(rounds: int, committed_blocks: int, total_timeouts: int = 0,
                    consecutive_timeouts: int = 0, node_count: int = 0, partitioned_count: int = 0,
                    byzantine_count: int = 0, round_live: bool = True) -> LivenessReport:
    """
    Classify progress over the rounds run so far.

    Maintained: the last round made progress and none of the degrading
    conditions hold (high timeout rate, large partition, no progress, too many
    Byzantine nodes). Degraded: any of those, or a run of consecutive timeouts.
    Violated: the last round failed with none of the above to explain it.
    """
    timeout_rate = total_timeouts / rounds * 100 if rounds > 0 else 0.0
    commit_rate = committed_blocks / rounds * 100 if rounds > 0 else 0.0
    partition_ratio = partitioned_count / node_count if node_count > 0 else 0.0
    max_byzantine = ConsensusConfig.max_faulty(node_count)

    high_timeout_rate = timeout_rate > HIGH_TIMEOUT_RATE
    consecutive = consecutive_timeouts > MAX_CONSECUTIVE_TIMEOUTS
    significant_partition = partition_ratio > SIGNIFICANT_PARTITION_RATIO
    no_progress = rounds > MIN_ROUNDS_FOR_PROGRESS and commit_rate < MIN_COMMIT_RATE
    byzantine_exceeded = byzantine_count > max_byzantine

    reasons = []
    if byzantine_exceeded:
        reasons.append(f"Byzantine nodes ({byzantine_count}) exceed threshold ({max_byzantine})")
    if high_timeout_rate:
        reasons.append(f"High timeout rate ({timeout_rate:.1f}%)")
    if consecutive:
        reasons.append(f"{consecutive_timeouts} consecutive timeouts")
    if significant_partition:
        reasons.append(f"{partitioned_count} nodes partitioned ({partition_ratio * 100:.0f}%)")
    if no_progress:
        reasons.append(f"Low block commit rate ({commit_rate:.1f}%)")

    if round_live and not (high_timeout_rate or significant_partition or no_progress or byzantine_exceeded):
        status = LivenessStatus.MAINTAINED
    elif reasons:
        status = LivenessStatus.DEGRADED
    else:
        status = LivenessStatus.VIOLATED

    return LivenessReport(status=status, reasons=tuple(reasons), timeout_rate=timeout_rate,
                          commit_rate=commit_rate, partition_ratio=partition_ratio)


@dataclass(frozen=True)
class ConsistencyViolation:
    """More than one hash committed at the same height"""
    height: int
    hashes: Tuple[str, ...]
    sources: Tuple[str, ...]  # 'blocks' and/or 'voting_history'
    blocks: Tuple[Block, ...] = ()
    rounds: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "height": self.height,
            "hashes": list(self.hashes),
            "sources": list(self.sources),
            "blocks": [b.to_dict() for b in self.blocks],
            "rounds": list(self.rounds),
        }


@dataclass(frozen=True)
class ConsistencyReport:
    safety: bool
    violations: Tuple[ConsistencyViolation, ...] = ()


def detect_consistency_violations(blocks: Iterable[Block], voting_history: Iterable = ()) -> ConsistencyReport:
    """
    Group committed blocks and approved voting rounds by height and report
    every height where more than one distinct hash was committed.
    """
    hashes_by_height = defaultdict(list)
    sources_by_height = defaultdict(list)
    blocks_by_height = defaultdict(list)
    rounds_by_height = defaultdict(list)

    def note(height, hash_value, source):
        if hash_value not in hashes_by_height[height]:
            hashes_by_height[height].append(hash_value)
        if source not in sources_by_height[height]:
            sources_by_height[height].append(source)

    for block in blocks:
        note(block.height, block.hash, "blocks")
        blocks_by_height[block.height].append(block)

    for voting_round in voting_history:
        if voting_round.result != VoteOutcome.APPROVED or not voting_round.block_hash:
            continue
        note(voting_round.round_height, voting_round.block_hash, "voting_history")
        rounds_by_height[voting_round.round_height].append(voting_round.round_number)

    violations = []
    for height in sorted(hashes_by_height):
        hashes = hashes_by_height[height]
        if len(hashes) < 2:
            continue
        violation = ConsistencyViolation(
            height=height,
            hashes=tuple(sorted(hashes)),
            sources=tuple(sources_by_height[height]),
            blocks=tuple(blocks_by_height[height]),
            rounds=tuple(rounds_by_height[height]),
        )
        logger.error("Consistency violation at height %s: conflicting hashes %s",
                     height, ", ".join(violation.hashes))
        violations.append(violation)

    return ConsistencyReport(safety=not violations, violations=tuple(violations))


@dataclass(frozen=True)
class SafetyReport:
    safe: bool
    byzantine_count: int
    max_byzantine: int
    reasons: Tuple[str, ...] = ()


def assess_safety(nodes: Sequence[Validator], consistency: Optional[ConsistencyReport] = None,
                  byzantine_count: Optional[int] = None) -> SafetyReport:
    """
    Safety is violated when Byzantine nodes exceed floor(N/3), whether or not a
    fork has been observed, or when a conflicting commit exists.
    """
    if byzantine_count is None:
        byzantine_count = count_byzantine(nodes)
    max_byzantine = ConsensusConfig.max_faulty(len(nodes))

    reasons = []
    if byzantine_count > max_byzantine:
        reasons.append(f"Byzantine nodes ({byzantine_count}) exceed safe threshold ({max_byzantine})")
    if consistency is not None and not consistency.safety:
        heights = ", ".join(str(v.height) for v in consistency.violations)
        reasons.append(f"Conflicting commits at height {heights}")

    return SafetyReport(safe=not reasons, byzantine_count=byzantine_count,
                        max_byzantine=max_byzantine, reasons=tuple(reasons))
