# tendermint_sim/__init__.py
"""
Tendermint-style BFT consensus simulator

This package simulates rounds of a Tendermint-like protocol with:
- Round-robin proposer selection, optionally checked against the topology
- Two voting phases (PREVOTE, PRECOMMIT) with quorum certificates
- Byzantine validators (faulty, equivocator, silent) and equivocation evidence
- Network partitions, packet loss, downtime and escalating round timeouts
- Liveness, safety and fork (consistency) detection
- Continuous and step-by-step drivers with identical round semantics
"""

__version__ = "1.0.0"

from .block import Block, EvidencePool, create_block
from .config import ConfigurationError, SimulationConfig, configure_logging
from .consensus import RoundContext, RoundResult, RoundStep, StepState, advance_round, execute_step
from .detectors import assess_liveness, assess_safety, detect_consistency_violations
from .node import NodeState, Validator, initialize_network
from .qc import QuorumCertificate, generate_qc
from .rng import RandomSource, ScriptedRandom
from .simulation import ConsensusSimulation
from .topology import Edge, build_topology
from .voting import VotingRound, vote_on_block

__all__ = [
    'Block',
    'EvidencePool',
    'create_block',
    'ConfigurationError',
    'SimulationConfig',
    'configure_logging',
    'RoundContext',
    'RoundResult',
    'RoundStep',
    'StepState',
    'advance_round',
    'execute_step',
    'assess_liveness',
    'assess_safety',
    'detect_consistency_violations',
    'NodeState',
    'Validator',
    'initialize_network',
    'QuorumCertificate',
    'generate_qc',
    'RandomSource',
    'ScriptedRandom',
    'ConsensusSimulation',
    'Edge',
    'build_topology',
    'VotingRound',
    'vote_on_block',
]
