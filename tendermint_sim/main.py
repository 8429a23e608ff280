# tendermint_sim/main.py
import argparse
import sys

from .config import (
    PRESET_CONFIGS,
    ByzantineType,
    ConfigurationError,
    NetworkMode,
    SimulationConfig,
    configure_logging,
)
from .simulation import ConsensusSimulation


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a Tendermint-style consensus simulation.")
    parser.add_argument("--preset", choices=sorted(PRESET_CONFIGS), default="default", help="Preset configuration")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML or JSON configuration file (overrides --preset)")
    parser.add_argument("--rounds", type=int, default=10, help="Number of rounds to run")
    parser.add_argument("--nodes", type=int, default=None, help="Override the number of validators")
    parser.add_argument("--byzantine", type=int, default=None, help="Override the number of Byzantine validators")
    parser.add_argument("--byzantine-type", choices=["faulty", "equivocator", "silent"], default=None, help="Override the Byzantine behavior")
    parser.add_argument("--partition", choices=["single", "split", "gradual"], default=None, help="Activate a network partition of this type")
    parser.add_argument("--async", dest="partially_synchronous", action="store_true", help="Run in partially synchronous mode (timeouts and downtime enabled)")
    parser.add_argument("--tick", type=float, default=None, help="Simulated milliseconds between rounds")
    parser.add_argument("--step", action="store_true", help="Drive rounds step by step and print every step")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def build_config(args) -> SimulationConfig:
    config = SimulationConfig.from_file(args.config) if args.config else SimulationConfig.preset(args.preset)
    if args.nodes is not None:
        config.network.node_count = args.nodes
    if args.byzantine is not None:
        config.node_behavior.byzantine_count = args.byzantine
    if args.byzantine_type is not None:
        config.node_behavior.byzantine_type = ByzantineType(args.byzantine_type)
    if args.partially_synchronous:
        config.network.mode = NetworkMode.PARTIALLY_SYNCHRONOUS
    if args.seed is not None:
        config.random_seed = args.seed
    config.logging.level = args.log_level
    return config


def print_round(result):
    if result.timed_out:
        print(f"  timed out, next timeout {result.timing.timeout_duration:.0f}ms")
        return
    vr = result.voting_round
    outcome = f"committed block {result.new_block.height} ({result.new_block.hash})" if result.new_block else "no commit"
    print(f"  proposer={vr.proposer_id} prevotes={vr.prevote_count}/{vr.denominator} "
          f"precommits={vr.precommit_count}/{vr.denominator} -> {outcome}")


def print_statistics(sim: ConsensusSimulation):
    """Print run statistics"""
    print("\n" + "=" * 60)
    print("SIMULATION STATISTICS")
    print("=" * 60)

    for node in sim.nodes:
        role = f"byzantine ({node.byzantine_type.value})" if node.is_byzantine else "honest"
        print(f"Node {node.id}: {role}, online={node.is_online}, partitioned={node.is_partitioned}")

    stats = sim.get_stats()
    print(f"\nRounds: {stats['rounds']}")
    print(f"  Committed blocks: {stats['committed_blocks']}")
    print(f"  Rejected rounds: {stats['rejected_rounds']}")
    print(f"  Timeouts: {stats['total_timeouts']} (consecutive: {stats['consecutive_timeouts']})")
    print(f"  QCs generated: {stats['qcs_generated']}")

    net = stats["network"]
    print(f"\nNetwork Statistics:")
    print(f"  Proposals sent: {net['sent']}")
    print(f"  Delivered: {net['delivered']}")
    print(f"  Lost: {net['lost']}")

    print(f"\nLiveness: {sim.liveness_report.status.value}")
    for reason in sim.liveness_report.reasons:
        print(f"  - {reason}")
    if sim.safety:
        print("✓ Safety: no conflicting commits, Byzantine nodes within threshold")
    else:
        print("✗ Safety VIOLATION:")
        for reason in sim.safety_report.reasons:
            print(f"  - {reason}")


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    try:
        config = build_config(args)
        configure_logging(config.logging)
        sim = ConsensusSimulation(config)
    except ConfigurationError as e:
        for error in e.errors:
            print(f"Configuration error: {error}", file=sys.stderr)
        return 2

    print(f"Tendermint consensus simulation: {config.name}")
    print(f"{config.network.node_count} validators, {config.node_behavior.byzantine_count} Byzantine, "
          f"threshold {config.consensus.vote_threshold}, {'synchronous' if sim.synchronous else 'partially synchronous'}")

    if args.partition:
        sim.set_partition_type(args.partition)
        sim.toggle_partition()
    if args.tick is not None:
        sim.set_speed(args.tick)

    if args.step:
        sim.toggle_step_mode()
        for _ in range(args.rounds):
            state = sim.next_step()
            if state is None:
                print(f"Round {sim.round}: timed out")
                continue
            print(f"\nRound {state.round_number}")
            while True:
                print(f"  [{state.step.value}] {state.step.label}: {state.description}")
                for event in state.events:
                    print(f"      {event.level}: {event.message}")
                if state.is_complete:
                    break
                state = sim.next_step()
    else:
        sim.start()
        for _ in range(args.rounds):
            result = sim.tick()
            print(f"Round {sim.round}:")
            print_round(result)
        sim.stop()

    print_statistics(sim)
    return 0


if __name__ == "__main__":
    sys.exit(main())
