# tendermint_sim/validator.py
"""
External validity predicate for proposed blocks.

Honest validators prevote and precommit for a block only when this predicate
accepts it. Malicious proposals (content flagged invalid, transaction count
past the block size) are always rejected.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .block import Block

logger = logging.getLogger(__name__)


class BlockValidator:
    """
    Validity validator for proposed blocks.
    Custom checks can be registered on top of the built-in rules.
    """

    def __init__(self, max_block_size: int = 10):
        self.max_block_size = max_block_size
        self.custom_validators: List[Callable[[Block], bool]] = []

    def is_valid_value(self, block: Optional[Block]) -> bool:
        """Main validation function: True if honest nodes should accept the block"""
        if block is None:
            return False

        if block.is_malicious:
            logger.debug("Block %s from node %s flagged malicious", block.hash, block.proposer)
            return False

        if not isinstance(block.height, int) or block.height < 1:
            logger.debug("Invalid block height: %s", block.height)
            return False

        if block.tx_count < 1 or block.tx_count > self.max_block_size:
            logger.debug("Block tx count %s outside limits [1, %s]", block.tx_count, self.max_block_size)
            return False

        if not block.hash:
            return False

        for validator_func in self.custom_validators:
            if not validator_func(block):
                return False

        return True

    def register_custom_validator(self, validator_func: Callable[[Block], bool]):
        """Register an extra check; it receives the block and returns bool"""
        self.custom_validators.append(validator_func)

    def validate_chain(self, blocks: Sequence[Block]) -> Dict[str, Any]:
        """
        Validate a committed chain: every block valid, heights contiguous and
        strictly increasing.
        """
        results = {
            'total_blocks': len(blocks),
            'valid_blocks': 0,
            'invalid_blocks': 0,
            'height_gaps': 0,
            'non_monotonic': 0,
            'details': {},
        }

        for previous, current in zip(blocks, blocks[1:]):
            if current.height <= previous.height:
                results['non_monotonic'] += 1
            elif current.height != previous.height + 1:
                results['height_gaps'] += 1

        for block in blocks:
            is_valid = self.is_valid_value(block)
            results['details'][block.height] = {'valid': is_valid, 'hash': block.hash}
            if is_valid:
                results['valid_blocks'] += 1
            else:
                results['invalid_blocks'] += 1

        return results
