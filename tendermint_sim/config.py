# tendermint_sim/config.py
"""
Configuration management for the consensus simulator
"""

import copy
import json
import logging
import logging.handlers
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class NetworkMode(Enum):
    """Network timing assumptions"""
    SYNCHRONOUS = "synchronous"
    PARTIALLY_SYNCHRONOUS = "partially_synchronous"


class ByzantineType(Enum):
    """Byzantine fault models"""
    FAULTY = "faulty"
    EQUIVOCATOR = "equivocator"
    SILENT = "silent"


class PartitionType(Enum):
    """Which nodes an active partition isolates"""
    SINGLE = "single"
    SPLIT = "split"
    GRADUAL = "gradual"


class TopologyType(Enum):
    FULL_MESH = "full-mesh"
    RING = "ring"
    STAR = "star"
    LINE = "line"
    RANDOM = "random"
    RANDOM_DEGREE = "random-degree"
    CUSTOM = "custom"


# Timeout limits (milliseconds)
TIMEOUT_LIMITS = {
    "max_timeout": 30000,
    "min_timeout": 1000,
}

TRANSACTION_RATES = ("low", "medium", "high")
LOG_LEVELS = ("minimal", "normal", "verbose")


class ConfigurationError(ValueError):
    """Raised when a configuration fails validation"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


@dataclass
class TopologyConfig:
    """Validator connectivity"""
    type: TopologyType = TopologyType.FULL_MESH
    edge_probability: float = 0.3  # random
    node_degree: int = 2  # random-degree
    use_graph_routing: bool = False
    custom_edges: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class NetworkConfig:
    """Network configuration"""
    node_count: int = 4
    latency: float = 100  # ms
    packet_loss: float = 0  # percentage 0-100
    message_timeout: int = 5000  # ms
    mode: NetworkMode = NetworkMode.SYNCHRONOUS
    topology: TopologyConfig = field(default_factory=TopologyConfig)

    @property
    def is_synchronous(self) -> bool:
        return self.mode == NetworkMode.SYNCHRONOUS


@dataclass
class ConsensusConfig:
    """Consensus algorithm configuration"""
    round_timeout: int = 15000  # ms, base timeout duration
    vote_threshold: float = 0.67  # 2/3+ majority
    block_size: int = 10  # max transactions per block
    proposal_delay: int = 100  # ms
    timeout_multiplier: float = 1.5  # exponential backoff
    timeout_escalation_enabled: bool = True
    min_timeout: int = TIMEOUT_LIMITS["min_timeout"]
    max_timeout: int = TIMEOUT_LIMITS["max_timeout"]
    exclude_byzantine_proposers: bool = False

    @staticmethod
    def max_faulty(node_count: int) -> int:
        """Largest Byzantine count the BFT assumption tolerates: floor(n/3)"""
        return node_count // 3


@dataclass
class NodeBehaviorConfig:
    """Fault injection for validators"""
    byzantine_count: int = 0
    byzantine_type: ByzantineType = ByzantineType.FAULTY
    downtime_percentage: float = 0  # percentage 0-100
    response_variance: float = 50  # ms


@dataclass
class SimulationSettings:
    """Driver settings"""
    transaction_rate: str = "medium"
    transaction_pool_size: int = 50
    log_level: str = "normal"
    step_history_limit: int = 50
    auto_play_delay: int = 2000  # ms between auto-played steps


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_file_size_mb: int = 100
    backup_count: int = 5


@dataclass
class SimulationConfig:
    """Complete simulator configuration"""
    name: str = "Default"
    network: NetworkConfig = field(default_factory=NetworkConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    node_behavior: NodeBehaviorConfig = field(default_factory=NodeBehaviorConfig)
    simulation: SimulationSettings = field(default_factory=SimulationSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Runtime settings
    random_seed: Optional[int] = None

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []
        network, consensus, behavior = self.network, self.consensus, self.node_behavior

        # Network
        if network.node_count < 3 or network.node_count > 20:
            errors.append("Number of nodes must be between 3 and 20")
        if network.latency < 0 or network.latency > 5000:
            errors.append("Network latency must be between 0 and 5000ms")
        if network.packet_loss < 0 or network.packet_loss > 100:
            errors.append("Packet loss rate must be between 0% and 100%")
        if network.message_timeout < 1000 or network.message_timeout > 10000:
            errors.append("Message timeout must be between 1000 and 10000ms")
        if not 0 <= network.topology.edge_probability <= 1:
            errors.append("Edge probability must be between 0 and 1")
        if network.topology.node_degree < 0:
            errors.append("Node degree must not be negative")

        # Consensus
        if consensus.round_timeout < 1000 or consensus.round_timeout > 20000:
            errors.append("Round timeout must be between 1000 and 20000ms")
        if consensus.vote_threshold < 0.5 or consensus.vote_threshold > 1:
            errors.append("Vote threshold must be between 0.5 and 1")
        if consensus.block_size < 1 or consensus.block_size > 100:
            errors.append("Block size must be between 1 and 100 transactions")
        if consensus.proposal_delay < 0 or consensus.proposal_delay > 1000:
            errors.append("Proposal delay must be between 0 and 1000ms")
        if consensus.timeout_multiplier < 1.0 or consensus.timeout_multiplier > 3.0:
            errors.append("Timeout multiplier must be between 1.0 and 3.0")
        if consensus.min_timeout > consensus.max_timeout:
            errors.append(
                f"Minimum timeout ({consensus.min_timeout}) exceeds maximum ({consensus.max_timeout})"
            )

        # Node behavior. Byzantine nodes may exceed n/3 to demonstrate failure.
        if behavior.byzantine_count < 0 or behavior.byzantine_count >= network.node_count:
            errors.append(f"Byzantine nodes must be between 0 and {network.node_count - 1}")
        if behavior.downtime_percentage < 0 or behavior.downtime_percentage > 100:
            errors.append("Node downtime must be between 0% and 100%")
        if behavior.response_variance < 0 or behavior.response_variance > 1000:
            errors.append("Response variance must be between 0 and 1000ms")

        # Simulation
        if self.simulation.transaction_rate not in TRANSACTION_RATES:
            errors.append("Invalid transaction rate")
        if self.simulation.transaction_pool_size < 10 or self.simulation.transaction_pool_size > 1000:
            errors.append("Transaction pool size must be between 10 and 1000")
        if self.simulation.log_level not in LOG_LEVELS:
            errors.append("Invalid log level")

        return errors

    def check(self) -> "SimulationConfig":
        """Raise ConfigurationError if the configuration is invalid"""
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self

    def is_byzantine_over_threshold(self) -> bool:
        return self.node_behavior.byzantine_count > ConsensusConfig.max_faulty(self.network.node_count)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary with enum values unwrapped"""
        return _unwrap_enums(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        """Build a configuration from a (possibly partial) dictionary"""
        data = dict(data or {})
        network_data = dict(data.get("network", {}))
        topology = _build(TopologyConfig, network_data.pop("topology", {}), {"type": TopologyType})
        network = _build(NetworkConfig, network_data, {"mode": NetworkMode})
        network.topology = topology

        return cls(
            name=data.get("name", "Default"),
            network=network,
            consensus=_build(ConsensusConfig, data.get("consensus", {})),
            node_behavior=_build(NodeBehaviorConfig, data.get("node_behavior", {}),
                                 {"byzantine_type": ByzantineType}),
            simulation=_build(SimulationSettings, data.get("simulation", {})),
            logging=_build(LoggingConfig, data.get("logging", {})),
            random_seed=data.get("random_seed"),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "SimulationConfig":
        """Load configuration from a YAML file"""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_json(cls, path: str) -> "SimulationConfig":
        """Load configuration from a JSON file"""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_file(cls, path: str) -> "SimulationConfig":
        """Load configuration, picking the parser from the file extension"""
        _, ext = os.path.splitext(path)
        if ext.lower() == ".json":
            return cls.from_json(path)
        return cls.from_yaml(path)

    @classmethod
    def preset(cls, name: str) -> "SimulationConfig":
        """Return a fresh copy of a named preset"""
        if name not in PRESET_CONFIGS:
            raise KeyError(f"Unknown preset '{name}'. Available: {', '.join(sorted(PRESET_CONFIGS))}")
        return cls.from_dict(copy.deepcopy(PRESET_CONFIGS[name]))


def _build(cls, data: Dict[str, Any], enums: Optional[Dict[str, type]] = None):
    """Instantiate a section dataclass, ignoring unknown keys and coercing enums"""
    enums = enums or {}
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in (data or {}).items():
        if key not in known:
            logger.warning("Ignoring unknown %s option '%s'", cls.__name__, key)
            continue
        if key in enums and not isinstance(value, enums[key]):
            value = enums[key](value)
        kwargs[key] = value
    return cls(**kwargs)


def _unwrap_enums(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _unwrap_enums(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_unwrap_enums(v) for v in value]
    return value


# Preset configurations
PRESET_CONFIGS: Dict[str, Dict[str, Any]] = {
    "default": {"name": "Default"},
    "small_network": {
        "name": "Small Network",
        "network": {"node_count": 4, "latency": 50, "packet_loss": 0, "message_timeout": 3000},
        "consensus": {"round_timeout": 3000, "block_size": 5, "proposal_delay": 50,
                      "timeout_multiplier": 1.4},
        "node_behavior": {"response_variance": 25},
        "simulation": {"transaction_rate": "low", "transaction_pool_size": 20},
    },
    "large_network": {
        "name": "Large Network",
        "network": {"node_count": 16, "latency": 200, "packet_loss": 0, "message_timeout": 8000},
        "consensus": {"round_timeout": 8000, "block_size": 20, "proposal_delay": 150,
                      "timeout_multiplier": 1.6},
        "node_behavior": {"response_variance": 100},
        "simulation": {"transaction_rate": "high", "transaction_pool_size": 200},
    },
    "byzantine_test": {
        "name": "Byzantine Test",
        "network": {"node_count": 7, "latency": 100, "packet_loss": 5, "message_timeout": 5000},
        "consensus": {"round_timeout": 5000, "timeout_multiplier": 1.8},
        "node_behavior": {"byzantine_count": 2, "byzantine_type": "faulty"},
        "simulation": {"log_level": "verbose"},
    },
    "partition_test": {
        "name": "Partition Test",
        "network": {"node_count": 6, "latency": 150, "packet_loss": 30, "message_timeout": 6000,
                    "mode": "partially_synchronous"},
        "consensus": {"round_timeout": 6000},
        "node_behavior": {"byzantine_type": "silent", "downtime_percentage": 20,
                          "response_variance": 100},
        "simulation": {"log_level": "verbose"},
    },
}


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Configure the package logger from a LoggingConfig"""
    config = config or LoggingConfig()
    root = logging.getLogger("tendermint_sim")
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(config.format)
    if config.console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    if config.file:
        file_handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    return root
