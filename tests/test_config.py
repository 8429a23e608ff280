# tests/test_config.py
import logging
import logging.handlers
import os
import tempfile
import unittest

from tendermint_sim.config import (
    PRESET_CONFIGS,
    TIMEOUT_LIMITS,
    ByzantineType,
    ConfigurationError,
    LoggingConfig,
    NetworkMode,
    SimulationConfig,
    TopologyType,
    configure_logging,
)


class TestSimulationConfig(unittest.TestCase):

    def test_defaults_are_valid(self):
        config = SimulationConfig()
        self.assertEqual(config.validate(), [])
        self.assertEqual(config.network.node_count, 4)
        self.assertAlmostEqual(config.consensus.vote_threshold, 0.67)
        self.assertTrue(config.network.is_synchronous)

    def test_timeout_limits_seed_partial_settings(self):
        config = SimulationConfig.from_dict({"consensus": {"round_timeout": 2000}})
        self.assertEqual(set(TIMEOUT_LIMITS), {"min_timeout", "max_timeout"})
        self.assertEqual(config.consensus.min_timeout, TIMEOUT_LIMITS["min_timeout"])
        self.assertEqual(config.consensus.max_timeout, TIMEOUT_LIMITS["max_timeout"])
        self.assertEqual(config.consensus.timeout_multiplier, 1.5)

    def test_validation_ranges(self):
        config = SimulationConfig()
        config.network.node_count = 2
        config.consensus.vote_threshold = 0.4
        errors = config.validate()
        self.assertIn("Number of nodes must be between 3 and 20", errors)
        self.assertIn("Vote threshold must be between 0.5 and 1", errors)

    def test_byzantine_count_must_be_below_node_count(self):
        config = SimulationConfig()
        config.node_behavior.byzantine_count = 4
        self.assertIn("Byzantine nodes must be between 0 and 3", config.validate())

        # More than n/3 Byzantine nodes is allowed, to demonstrate failures
        config.node_behavior.byzantine_count = 2
        self.assertEqual(config.validate(), [])
        self.assertTrue(config.is_byzantine_over_threshold())

    def test_check_raises_with_all_errors(self):
        config = SimulationConfig()
        config.consensus.block_size = 0
        config.consensus.min_timeout = 40000
        with self.assertRaises(ConfigurationError) as ctx:
            config.check()
        self.assertEqual(len(ctx.exception.errors), 2)
        self.assertIsInstance(ctx.exception, ValueError)

    def test_from_dict_coerces_enums(self):
        config = SimulationConfig.from_dict({
            "name": "Custom",
            "network": {"node_count": 7, "mode": "partially_synchronous",
                        "topology": {"type": "ring", "use_graph_routing": True}},
            "node_behavior": {"byzantine_count": 2, "byzantine_type": "silent"},
        })
        self.assertEqual(config.name, "Custom")
        self.assertEqual(config.network.mode, NetworkMode.PARTIALLY_SYNCHRONOUS)
        self.assertEqual(config.network.topology.type, TopologyType.RING)
        self.assertTrue(config.network.topology.use_graph_routing)
        self.assertEqual(config.node_behavior.byzantine_type, ByzantineType.SILENT)
        self.assertEqual(config.consensus.block_size, 10)

    def test_from_dict_rejects_unknown_enum_value(self):
        with self.assertRaises(ValueError):
            SimulationConfig.from_dict({"node_behavior": {"byzantine_type": "sneaky"}})

    def test_unknown_keys_are_ignored_with_warning(self):
        with self.assertLogs("tendermint_sim.config", level="WARNING") as logs:
            config = SimulationConfig.from_dict({"consensus": {"vote_threshold": 0.75, "colour": "red"}})
        self.assertAlmostEqual(config.consensus.vote_threshold, 0.75)
        self.assertTrue(any("colour" in line for line in logs.output))

    def test_to_dict_unwraps_enums(self):
        config = SimulationConfig.preset("partition_test")
        data = config.to_dict()
        self.assertEqual(data["network"]["mode"], "partially_synchronous")
        self.assertEqual(data["node_behavior"]["byzantine_type"], "silent")
        self.assertEqual(SimulationConfig.from_dict(data), config)

    def test_from_yaml(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sim.yaml")
            with open(path, "w") as f:
                f.write("name: From YAML\n"
                        "network:\n"
                        "  node_count: 5\n"
                        "  topology:\n"
                        "    type: star\n"
                        "consensus:\n"
                        "  round_timeout: 4000\n")
            config = SimulationConfig.from_file(path)
        self.assertEqual(config.name, "From YAML")
        self.assertEqual(config.network.node_count, 5)
        self.assertEqual(config.network.topology.type, TopologyType.STAR)
        self.assertEqual(config.consensus.round_timeout, 4000)

    def test_from_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sim.json")
            with open(path, "w") as f:
                f.write('{"network": {"node_count": 6}, "random_seed": 11}')
            config = SimulationConfig.from_file(path)
        self.assertEqual(config.network.node_count, 6)
        self.assertEqual(config.random_seed, 11)

    def test_presets_are_valid(self):
        for name in PRESET_CONFIGS:
            with self.subTest(preset=name):
                self.assertEqual(SimulationConfig.preset(name).validate(), [])

    def test_presets_are_independent_copies(self):
        first = SimulationConfig.preset("byzantine_test")
        first.network.node_count = 20
        self.assertEqual(SimulationConfig.preset("byzantine_test").network.node_count, 7)

    def test_unknown_preset(self):
        with self.assertRaises(KeyError):
            SimulationConfig.preset("mainnet")


class TestConfigureLogging(unittest.TestCase):

    def tearDown(self):
        root = logging.getLogger("tendermint_sim")
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        root.setLevel(logging.NOTSET)

    def test_file_handler_rotates(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sim.log")
            root = configure_logging(LoggingConfig(level="DEBUG", file=path, console=False, backup_count=2))
            self.assertEqual(root.level, logging.DEBUG)
            self.assertEqual(len(root.handlers), 1)
            handler = root.handlers[0]
            self.assertIsInstance(handler, logging.handlers.RotatingFileHandler)
            self.assertEqual(handler.backupCount, 2)
            handler.close()
            root.removeHandler(handler)

    def test_reconfiguring_replaces_handlers(self):
        configure_logging(LoggingConfig())
        root = configure_logging(LoggingConfig(level="warning"))
        self.assertEqual(len(root.handlers), 1)
        self.assertEqual(root.level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
