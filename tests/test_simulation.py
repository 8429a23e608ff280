# tests/test_simulation.py
import unittest

from tendermint_sim.block import Block
from tendermint_sim.config import ConfigurationError, NetworkMode, SimulationConfig
from tendermint_sim.consensus import RoundStep
from tendermint_sim.detectors import LivenessStatus
from tendermint_sim.simulation import ConsensusSimulation, LogEntry


def make_config(seed=1, **network):
    config = SimulationConfig()
    config.random_seed = seed
    for key, value in network.items():
        setattr(config.network, key, value)
    return config


class TestContinuousMode(unittest.TestCase):

    def test_run_commits_one_block_per_round(self):
        sim = ConsensusSimulation(make_config())
        results = sim.run(3)
        self.assertEqual([b.height for b in sim.blocks], [1, 2, 3])
        self.assertEqual([b.proposer for b in sim.blocks], [1, 2, 3])
        self.assertEqual(len(sim.qc_history), 6)
        self.assertEqual(len(sim.voting_history), 3)
        self.assertTrue(all(r.new_liveness for r in results))

        stats = sim.get_stats()
        self.assertEqual(stats["rounds"], 3)
        self.assertEqual(stats["committed_blocks"], 3)
        self.assertEqual(stats["approved_rounds"], 3)
        self.assertEqual(stats["rejected_rounds"], 0)
        self.assertEqual(stats["qcs_generated"], 6)
        self.assertEqual(stats["network"]["delivered"], 9)
        self.assertTrue(sim.liveness)
        self.assertTrue(sim.safety)
        self.assertEqual(sim.liveness_report.status, LivenessStatus.MAINTAINED)

    def test_invalid_config_is_rejected(self):
        config = make_config(node_count=2)
        with self.assertRaises(ConfigurationError):
            ConsensusSimulation(config)

    def test_tick_requires_start(self):
        sim = ConsensusSimulation(make_config())
        self.assertIsNone(sim.tick())
        sim.start()
        self.assertIsNotNone(sim.tick())
        self.assertEqual(sim.clock, sim.config.simulation.auto_play_delay)
        sim.stop()
        self.assertIsNone(sim.tick())
        self.assertEqual(sim.round, 1)

    def test_logs_are_recorded(self):
        sim = ConsensusSimulation(make_config())
        sim.start()
        sim.run(1)
        self.assertIsInstance(sim.logs[0], LogEntry)
        self.assertTrue(any("committed" in entry.message for entry in sim.logs))
        sim.clear_logs()
        self.assertEqual(len(sim.logs), 0)

    def test_reset_rebuilds_state(self):
        sim = ConsensusSimulation(make_config())
        sim.run(2)
        sim.reset()
        self.assertEqual(sim.round, 0)
        self.assertEqual(sim.blocks, [])
        self.assertEqual(sim.current_proposer.id, 1)


class TestStepMode(unittest.TestCase):

    def setUp(self):
        self.sim = ConsensusSimulation(make_config())
        self.sim.toggle_step_mode()

    def test_eight_steps_commit_a_block(self):
        states = [self.sim.next_step() for _ in range(8)]
        self.assertEqual([s.step for s in states], list(RoundStep))
        self.assertEqual(len(self.sim.blocks), 1)
        self.assertEqual(self.sim.round, 1)
        self.assertFalse(self.sim.can_go_back)

        following = self.sim.next_step()
        self.assertEqual(following.step, RoundStep.ROUND_START)
        self.assertEqual(following.round_number, 2)

    def test_back_and_forward_replay_the_same_states(self):
        first = self.sim.next_step()
        second = self.sim.next_step()
        third = self.sim.next_step()

        self.assertIs(self.sim.previous_step(), second)
        self.assertIs(self.sim.next_step(), third)

        self.assertIs(self.sim.go_to_round_start(), first)
        self.assertFalse(self.sim.can_go_back)
        self.assertIs(self.sim.next_step(), second)
        self.assertIs(self.sim.next_step(), third)

    def test_start_is_refused_in_step_mode(self):
        self.sim.start()
        self.assertFalse(self.sim.running)

    def test_next_step_outside_step_mode(self):
        self.sim.toggle_step_mode()
        self.assertIsNone(self.sim.next_step())

    def test_step_mode_matches_continuous_mode(self):
        continuous = ConsensusSimulation(make_config(seed=5, packet_loss=20, mode=NetworkMode.PARTIALLY_SYNCHRONOUS))
        continuous.set_speed(0)
        continuous.run(3)

        stepped = ConsensusSimulation(make_config(seed=5, packet_loss=20, mode=NetworkMode.PARTIALLY_SYNCHRONOUS))
        stepped.toggle_step_mode()
        for _ in range(24):
            stepped.next_step()

        self.assertEqual(stepped.round, 3)
        self.assertEqual(stepped.blocks, continuous.blocks)
        self.assertEqual(stepped.voting_history, continuous.voting_history)
        self.assertEqual(stepped.nodes, continuous.nodes)
        self.assertEqual(stepped.network_stats, continuous.network_stats)


class TestNetworkControls(unittest.TestCase):

    def test_split_partition_blocks_progress_until_healed(self):
        sim = ConsensusSimulation(make_config())
        sim.set_partition_type("split")
        self.assertTrue(sim.toggle_partition())
        self.assertEqual(sim.partitioned_ids, [1, 2])

        result = sim.run_round()
        self.assertIsNone(result.new_block)
        self.assertFalse(sim.liveness)

        self.assertFalse(sim.toggle_partition())
        result = sim.run_round()
        self.assertIsNotNone(result.new_block)
        self.assertEqual(result.new_block.height, 1)
        self.assertTrue(sim.liveness)

    def test_timeouts_escalate_and_reset_on_commit(self):
        config = make_config(mode=NetworkMode.PARTIALLY_SYNCHRONOUS)
        config.consensus.round_timeout = 1000
        sim = ConsensusSimulation(config)

        first = sim.run_round(elapsed=1500)
        self.assertTrue(first.timed_out)
        self.assertEqual(sim.timing.timeout_duration, 1500)

        second = sim.run_round(elapsed=1500)
        self.assertTrue(second.timed_out)
        self.assertEqual(sim.timing.timeout_duration, 2250)
        self.assertEqual(len(sim.timeout_history), 2)
        self.assertEqual(sim.round, 2)

        self.assertTrue(sim.toggle_network_mode())
        result = sim.run_round(elapsed=1500)
        self.assertIsNotNone(result.new_block)
        self.assertEqual(sim.timing.timeout_duration, 1000)
        self.assertEqual(sim.timing.consecutive_timeouts, 0)
        self.assertEqual(sim.get_stats()["total_timeouts"], 2)

    def test_injected_fork_breaks_safety(self):
        sim = ConsensusSimulation(make_config())
        sim.run(1)
        forked = Block(height=1, proposer=4, tx_count=3, hash="forked", timestamp=0.0)
        with self.assertLogs("tendermint_sim", level="ERROR"):
            sim.add_block(forked)
        self.assertFalse(sim.safety)
        self.assertEqual(len(sim.consistency.violations), 1)
        self.assertEqual(sim.get_state()["consistency_violations"][0]["height"], 1)

    def test_update_timeout_settings(self):
        sim = ConsensusSimulation(make_config())
        sim.update_timeout_settings(round_timeout=5000, multiplier=2.0)
        self.assertEqual(sim.config.consensus.round_timeout, 5000)
        self.assertEqual(sim.timing.timeout_duration, 5000)
        self.assertEqual(sim.timing.base_timeout_duration, 5000)

        with self.assertRaises(ConfigurationError):
            sim.update_timeout_settings(multiplier=5.0)
        self.assertEqual(sim.config.consensus.timeout_multiplier, 2.0)

    def test_load_config(self):
        sim = ConsensusSimulation(make_config())
        sim.run(1)
        sim.load_config(SimulationConfig.preset("byzantine_test"))
        self.assertEqual(len(sim.nodes), 7)
        self.assertEqual(sim.round, 0)
        self.assertEqual(sim.blocks, [])

    def test_topology_controls(self):
        sim = ConsensusSimulation(make_config())
        sim.set_topology("line")
        self.assertEqual(len(sim.edges), 3)
        self.assertEqual(sim.nodes[0].neighbors, (2,))
        self.assertEqual(sim.get_graph_statistics()["edge_count"], 3)

        sim.add_edge(1, 4)
        self.assertEqual(sim.nodes[0].neighbors, (2, 4))
        sim.remove_edge(1, 2)
        self.assertEqual(sim.nodes[0].neighbors, (4,))

        self.assertTrue(sim.toggle_graph_routing())
        self.assertTrue(sim.get_state()["nodes"][0]["neighbors"] == [4])

    def test_byzantine_majority_is_unsafe_from_the_start(self):
        config = make_config(node_count=9)
        config.node_behavior.byzantine_count = 4
        sim = ConsensusSimulation(config)
        self.assertFalse(sim.safety)
        self.assertEqual(sim.safety_report.max_byzantine, 3)


if __name__ == "__main__":
    unittest.main()
