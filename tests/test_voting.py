# tests/test_voting.py
import unittest
from dataclasses import replace

from tendermint_sim.block import Block, EvidencePool, HashVariants, create_block
from tendermint_sim.config import ByzantineType, SimulationConfig
from tendermint_sim.crypto import verify_signature, vote_message
from tendermint_sim.node import initialize_network
from tendermint_sim.qc import Stage
from tendermint_sim.rng import RandomSource, ScriptedRandom
from tendermint_sim.validator import BlockValidator
from tendermint_sim.voting import (
    Vote,
    VoteOutcome,
    cast_vote,
    create_voting_round,
    finalize_voting_round,
    threshold_met,
    update_precommits,
    update_prevotes,
    vote_on_block,
)


def make_block(**overrides):
    fields = dict(height=1, proposer=1, tx_count=5, hash="abc123", timestamp=0.0)
    fields.update(overrides)
    return Block(**fields)


def byzantine_config(count, byzantine_type):
    config = SimulationConfig()
    config.node_behavior.byzantine_count = count
    config.node_behavior.byzantine_type = byzantine_type
    return config


class TestCreateBlock(unittest.TestCase):

    def test_honest_block(self):
        config = SimulationConfig()
        block = create_block(2, 3, config, rng=RandomSource(1), now=500.0, round_number=4)
        self.assertEqual((block.height, block.proposer, block.round), (3, 2, 4))
        self.assertTrue(1 <= block.tx_count <= 10)
        self.assertEqual(len(block.hash), 12)
        self.assertFalse(block.is_malicious)
        self.assertFalse(block.is_equivocating)
        self.assertEqual(block.timestamp, 500.0)

    def test_faulty_proposer_builds_malicious_block(self):
        config = byzantine_config(1, ByzantineType.FAULTY)
        proposer = initialize_network(4, config)[0]
        block = create_block(1, 1, config, proposer, ScriptedRandom([0.0, 0.1, 0.0]), now=0.0)
        self.assertTrue(block.is_malicious)
        self.assertEqual(block.tx_count, 11)
        self.assertEqual(block.byzantine_type, ByzantineType.FAULTY)

    def test_faulty_proposer_may_build_valid_block(self):
        config = byzantine_config(1, ByzantineType.FAULTY)
        proposer = initialize_network(4, config)[0]
        block = create_block(1, 1, config, proposer, ScriptedRandom([0.0, 0.9]), now=0.0)
        self.assertFalse(block.is_malicious)
        self.assertEqual(block.tx_count, 1)

    def test_equivocator_shows_two_hashes(self):
        config = byzantine_config(1, ByzantineType.EQUIVOCATOR)
        proposer = initialize_network(4, config)[0]
        block = create_block(1, 1, config, proposer, RandomSource(3), now=0.0)
        self.assertTrue(block.is_equivocating)
        variants = block.hash_per_target
        self.assertNotEqual(variants.variant_a, variants.variant_b)
        self.assertEqual(block.hash, variants.variant_a)
        self.assertEqual(block.hash_for(3), variants.variant_a)
        self.assertEqual(block.hash_for(4), variants.variant_b)
        self.assertIn("hashPerTarget", block.to_dict())


class TestEvidencePool(unittest.TestCase):

    def test_second_hash_is_equivocation(self):
        pool = EvidencePool()
        first, evidence = pool.record(5, 2, 3, "aaa")
        self.assertFalse(evidence.equivocates)

        same, evidence = first.record(5, 2, 3, "aaa")
        self.assertFalse(evidence.equivocates)

        with self.assertLogs("tendermint_sim.block", level="DEBUG") as logs:
            second, evidence = same.record(5, 2, 3, "bbb")
        self.assertTrue(evidence.equivocates)
        self.assertIn("EVIDENCE", logs.output[0])

        third, evidence = second.record(5, 2, 3, "ccc")
        self.assertEqual(evidence.hashes, ("aaa", "bbb", "ccc"))
        self.assertEqual(third.equivocators(), (3,))

    def test_pools_are_immutable(self):
        pool = EvidencePool()
        updated, _ = pool.record(1, 0, 1, "aaa")
        self.assertEqual(pool.proposals, {})
        self.assertEqual(updated.proposals, {(1, 0, 1): ("aaa",)})
        self.assertEqual(EvidencePool().equivocators(), ())

    def test_keys_are_independent(self):
        pool, _ = EvidencePool().record(1, 0, 1, "aaa")
        pool, evidence = pool.record(1, 1, 1, "bbb")
        self.assertFalse(evidence.equivocates)
        self.assertEqual(pool.equivocators(), ())

    def test_record_block_with_variants(self):
        config = byzantine_config(1, ByzantineType.EQUIVOCATOR)
        proposer = initialize_network(4, config)[0]
        block = create_block(1, 1, config, proposer, RandomSource(8), now=0.0)
        pool, evidence = EvidencePool().record_block(block)
        self.assertTrue(evidence.equivocates)
        self.assertEqual(pool.equivocators(), (1,))


class TestBlockValidator(unittest.TestCase):

    def setUp(self):
        self.validator = BlockValidator(max_block_size=10)

    def test_valid_block(self):
        self.assertTrue(self.validator.is_valid_value(make_block()))

    def test_invalid_blocks(self):
        self.assertFalse(self.validator.is_valid_value(None))
        self.assertFalse(self.validator.is_valid_value(make_block(is_malicious=True)))
        self.assertFalse(self.validator.is_valid_value(make_block(tx_count=0)))
        self.assertFalse(self.validator.is_valid_value(make_block(tx_count=11)))
        self.assertFalse(self.validator.is_valid_value(make_block(height=0)))
        self.assertFalse(self.validator.is_valid_value(make_block(hash="")))

    def test_custom_validator(self):
        self.validator.register_custom_validator(lambda block: block.proposer != 1)
        self.assertFalse(self.validator.is_valid_value(make_block()))
        self.assertTrue(self.validator.is_valid_value(make_block(proposer=2)))

    def test_validate_chain(self):
        chain = [make_block(height=1), make_block(height=2), make_block(height=4, tx_count=50)]
        results = self.validator.validate_chain(chain)
        self.assertEqual(results["height_gaps"], 1)
        self.assertEqual(results["non_monotonic"], 0)
        self.assertEqual(results["valid_blocks"], 2)
        self.assertEqual(results["invalid_blocks"], 1)

        results = self.validator.validate_chain([make_block(height=2), make_block(height=2)])
        self.assertEqual(results["non_monotonic"], 1)


class TestVoting(unittest.TestCase):

    def test_threshold(self):
        self.assertTrue(threshold_met(5, 7, 0.67))
        self.assertFalse(threshold_met(4, 7, 0.67))
        self.assertTrue(threshold_met(3, 4, 0.75))
        self.assertFalse(threshold_met(0, 0, 0.5))

    def test_silent_nodes_count_against_majority(self):
        config = byzantine_config(2, ByzantineType.SILENT)
        nodes = initialize_network(7, config)
        result = vote_on_block(nodes, make_block(proposer=3), config, len(nodes), RandomSource(1))
        self.assertEqual(result.yes_votes, 5)
        self.assertEqual(result.total_votes, 5)
        self.assertEqual(result.denominator, 7)
        self.assertTrue(result.approved)
        self.assertTrue(result.byzantine_detected)

        config = byzantine_config(3, ByzantineType.SILENT)
        nodes = initialize_network(7, config)
        result = vote_on_block(nodes, make_block(proposer=4), config, len(nodes), RandomSource(1))
        self.assertEqual(result.yes_votes, 4)
        self.assertFalse(result.approved)

    def test_graph_routing_uses_reachable_count(self):
        config = SimulationConfig()
        nodes = initialize_network(6)[:3]
        result = vote_on_block(nodes, make_block(), config, 6, reachable_count=3, use_graph_routing=True)
        self.assertEqual(result.denominator, 3)
        self.assertTrue(result.approved)

        result = vote_on_block(nodes, make_block(), config, 6, reachable_count=3)
        self.assertEqual(result.denominator, 6)
        self.assertFalse(result.approved)

    def test_honest_nodes_reject_malicious_blocks(self):
        config = SimulationConfig()
        result = vote_on_block(initialize_network(4), make_block(is_malicious=True), config, 4)
        self.assertEqual(result.yes_votes, 0)
        self.assertEqual(result.total_votes, 4)
        self.assertFalse(result.approved)

    def test_byzantine_vote_draws(self):
        validator = BlockValidator()
        block = make_block()
        faulty = initialize_network(4, byzantine_config(1, ByzantineType.FAULTY))[0]
        self.assertTrue(cast_vote(faulty, block, validator, ScriptedRandom([0.6])))
        self.assertFalse(cast_vote(faulty, block, validator, ScriptedRandom([0.4])))

        equivocator = replace(faulty, byzantine_type=ByzantineType.EQUIVOCATOR)
        self.assertTrue(cast_vote(equivocator, block, validator, ScriptedRandom([0.4])))
        self.assertFalse(cast_vote(equivocator, block, validator, ScriptedRandom([0.2])))

        silent = replace(faulty, byzantine_type=ByzantineType.SILENT)
        self.assertIsNone(cast_vote(silent, block, validator, ScriptedRandom([0.9])))

    def test_nodes_shown_the_other_variant_do_not_vote(self):
        block = make_block(hash="aaa", hash_per_target=HashVariants("aaa", "bbb"))
        nodes = initialize_network(4)
        self.assertTrue(cast_vote(nodes[2], block, BlockValidator(), RandomSource(0)))
        self.assertIsNone(cast_vote(nodes[1], block, BlockValidator(), RandomSource(0)))

        result = vote_on_block(nodes, block, SimulationConfig(), 4)
        self.assertEqual([v.vote for v in result.votes], [True, None, True, None])
        self.assertEqual(result.yes_votes, 2)
        self.assertFalse(result.approved)

    def test_unavailable_nodes_do_not_vote(self):
        node = replace(initialize_network(3)[1], is_online=False)
        self.assertIsNone(cast_vote(node, make_block(), BlockValidator(), RandomSource(0)))


class TestVotingRound(unittest.TestCase):

    def setUp(self):
        self.nodes = initialize_network(4)
        self.block = make_block(height=2, proposer=3)
        self.round = create_voting_round(5, 2, 3, self.nodes, now=100.0, block_hash=self.block.hash)

    def test_every_node_is_registered(self):
        self.assertEqual(self.round.prevotes_received, {1: None, 2: None, 3: None, 4: None})
        self.assertEqual(self.round.precommits_received, {1: None, 2: None, 3: None, 4: None})
        self.assertEqual(self.round.result, VoteOutcome.PENDING)
        self.assertIsNone(self.round.vote_of(99))
        self.assertIsNone(self.round.vote_of(99, Stage.PRECOMMIT))

    def test_counts_are_recomputed_from_the_map(self):
        votes = [Vote(1, True), Vote(2, False), Vote(3, True)]
        vr = update_prevotes(self.round, votes, 0.67)
        self.assertEqual(vr.prevote_count, 2)
        self.assertFalse(vr.prevote_threshold_met)
        self.assertEqual(vr.denominator, 4)

        # A changed vote replaces the earlier one instead of adding to it
        vr = update_prevotes(vr, {2: True}, 0.67)
        self.assertEqual(vr.prevote_count, 3)
        self.assertTrue(vr.prevote_threshold_met)
        self.assertEqual(vr.vote_of(2), True)
        self.assertEqual(self.round.prevote_count, 0)

    def test_qc_is_generated_once(self):
        votes = [Vote(1, True), Vote(2, True), Vote(3, True)]
        with self.assertLogs("tendermint_sim.voting", level="INFO"):
            vr = update_prevotes(self.round, votes, 0.67, self.block, now=200.0)
        qc = vr.prevote_qc
        self.assertIsNotNone(qc)
        self.assertEqual(qc.signers, [1, 2, 3])
        self.assertEqual(qc.total_validators, 4)
        self.assertEqual(qc.created_at, 200.0)

        vr = update_prevotes(vr, {4: True}, 0.67, self.block, now=900.0)
        self.assertIs(vr.prevote_qc, qc)
        self.assertEqual(vr.prevote_qc.created_at, 200.0)
        self.assertEqual(vr.prevote_count, 4)

    def test_qc_signers_saw_the_certified_hash(self):
        block = make_block(height=2, proposer=3, hash="aaa", hash_per_target=HashVariants("aaa", "bbb"))
        vr = update_prevotes(self.round, {1: True, 2: True, 3: True, 4: True}, 0.5, block, now=1.0)
        qc = vr.prevote_qc
        self.assertEqual(qc.block_hash, "aaa")
        self.assertEqual(qc.signers, [1, 3])
        self.assertEqual(qc.total_validators, 4)

    def test_no_qc_without_a_block(self):
        vr = update_prevotes(self.round, {1: True, 2: True, 3: True}, 0.67)
        self.assertTrue(vr.prevote_threshold_met)
        self.assertIsNone(vr.prevote_qc)

    def test_qc_signatures_verify(self):
        vr = update_precommits(self.round, {1: True, 2: True, 3: True, 4: False}, 0.67, self.block, now=1.0)
        qc = vr.precommit_qc
        self.assertEqual(qc.stage, Stage.PRECOMMIT)
        message = vote_message("precommit", 2, 5, self.block.hash)
        for signature in qc.signatures:
            self.assertTrue(verify_signature(signature.node_id, message, signature.signature))
        self.assertEqual(qc.block_reference["hash"], self.block.hash)

    def test_explicit_denominator_carries_over(self):
        vr = update_prevotes(self.round, {1: True, 2: True}, 0.67, denominator=3)
        self.assertEqual(vr.denominator, 3)
        self.assertFalse(vr.prevote_threshold_met)
        vr = update_precommits(vr, {1: True, 2: True, 3: True}, 0.67)
        self.assertEqual(vr.denominator, 3)
        self.assertTrue(vr.precommit_threshold_met)

    def test_finalize_once(self):
        vr = finalize_voting_round(self.round, True)
        self.assertEqual(vr.result, VoteOutcome.APPROVED)
        self.assertTrue(vr.is_final)
        with self.assertLogs("tendermint_sim.voting", level="WARNING"):
            again = finalize_voting_round(vr, False)
        self.assertIs(again, vr)
        self.assertEqual(finalize_voting_round(self.round, False).result, VoteOutcome.REJECTED)


if __name__ == "__main__":
    unittest.main()
