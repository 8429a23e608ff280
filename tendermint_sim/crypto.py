# tendermint_sim/crypto.py
import hashlib
import json
from typing import Any

# Simulated cryptography for teaching purposes.
# Signatures are reproducible digests, not real signatures.


class SimpleCrypto:
    """Simple hash-based signatures and block hashes"""

    @staticmethod
    def digest(payload: Any) -> str:
        """SHA-256 of the canonical JSON form of payload"""
        data = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def sign(node_id: int, message: str) -> str:
        """Sign a message on behalf of a validator"""
        # Same (node, message) pair always yields the same token
        combined = f"validator-{node_id}:{message}"
        return "sig_" + hashlib.sha256(combined.encode()).hexdigest()[:16]

    @staticmethod
    def verify_signature(node_id: int, message: str, signature: str) -> bool:
        """Verify a simulated signature"""
        return signature == SimpleCrypto.sign(node_id, message)

    @staticmethod
    def block_hash(height: int, proposer: int, tx_count: int, nonce: str) -> str:
        """Short block hash; the nonce makes every proposal distinct"""
        payload = {"height": height, "proposer": proposer, "tx_count": tx_count, "nonce": nonce}
        return SimpleCrypto.digest(payload)[:12]

    @staticmethod
    def vote_message(stage: str, height: int, round_number: int, block_hash: str) -> str:
        """Canonical message a validator signs when voting"""
        return f"{stage}:{height}:{round_number}:{block_hash}"


# Use these functions
sign = SimpleCrypto.sign
verify_signature = SimpleCrypto.verify_signature
block_hash = SimpleCrypto.block_hash
vote_message = SimpleCrypto.vote_message
