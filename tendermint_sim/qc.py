# tendermint_sim/qc.py
"""
Quorum certificates: aggregated proof that a supermajority voted yes in one
phase of one round.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .crypto import sign, vote_message


class Stage(Enum):
    PREVOTE = "prevote"
    PRECOMMIT = "precommit"


@dataclass(frozen=True)
class Signature:
    node_id: int
    vote: bool
    signature: str
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {"nodeId": self.node_id, "vote": self.vote, "signature": self.signature,
                "timestamp": self.timestamp}


@dataclass(frozen=True)
class QuorumCertificate:
    """Generated once per (round, stage) when the threshold is first met"""
    height: int
    round: int
    stage: Stage
    block_hash: str
    signatures: tuple
    total_validators: int
    threshold: float
    proposer: int
    created_at: float
    threshold_met: bool = True
    block_reference: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def signature_count(self) -> int:
        return len(self.signatures)

    @property
    def signers(self) -> List[int]:
        return [s.node_id for s in self.signatures]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "height": self.height,
            "round": self.round,
            "stage": self.stage.value,
            "blockHash": self.block_hash,
            "signatures": [s.to_dict() for s in self.signatures],
            "totalValidators": self.total_validators,
            "signatureCount": self.signature_count,
            "thresholdMet": self.threshold_met,
            "threshold": self.threshold,
            "proposer": self.proposer,
            "createdAt": self.created_at,
            "blockReference": self.block_reference,
        }


def generate_qc(votes: Dict[int, Optional[bool]], stage: Stage, height: int, round_number: int,
                block_hash: str, proposer: int, threshold: float, now: float,
                block_reference: Optional[Dict[str, Any]] = None) -> QuorumCertificate:
    """Collect every yes-voter of a vote map into a certificate"""
    message = vote_message(stage.value, height, round_number, block_hash)
    signatures = tuple(
        Signature(node_id=node_id, vote=True, signature=sign(node_id, message), timestamp=now)
        for node_id, vote in sorted(votes.items())
        if vote is True
    )
    return QuorumCertificate(
        height=height,
        round=round_number,
        stage=stage,
        block_hash=block_hash,
        signatures=signatures,
        total_validators=len(votes),
        threshold=threshold,
        proposer=proposer,
        created_at=now,
        block_reference=block_reference,
    )
