# tendermint_sim/messages.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import itertools
import json
import hashlib

from .crypto import sign, verify_signature

_message_ids = itertools.count(1)


class MessageType(Enum):
    PROPOSAL = "proposal"
    PREVOTE = "prevote"
    PRECOMMIT = "precommit"
    DECISION = "decision"


@dataclass
class Message:
    """Point-to-point message between two validators"""
    msg_type: MessageType
    sender: int
    receiver: int
    content: Optional[Any] = None
    timestamp: float = 0.0  # ms
    ttl: int = 10  # hops remaining
    path: List[int] = field(default_factory=list)
    latency: float = 0.0  # ms
    signature: Optional[str] = None
    id: str = ""

    def __post_init__(self):
        if not self.path:
            self.path = [self.sender]
        if not self.id:
            self.id = f"{self.sender}-{self.receiver}-{self.msg_type.value}-{next(_message_ids)}"

    @property
    def delivery_time(self) -> float:
        return self.timestamp + self.latency

    def to_dict(self):
        """Convert message to dictionary for serialization"""
        return {
            'id': self.id,
            'type': self.msg_type.value,
            'sender': self.sender,
            'receiver': self.receiver,
            'content': self.content,
            'timestamp': self.timestamp,
            'ttl': self.ttl,
            'path': list(self.path),
            'latency': self.latency,
            'signature': self.signature,
        }

    def to_json(self):
        """Serialize to JSON"""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    def hash(self):
        """Create hash of message (excluding signature and id)"""
        data = self.to_dict().copy()
        data.pop('signature', None)
        data.pop('id', None)
        return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()

    def sign(self):
        """Sign the message as its sender"""
        self.signature = sign(self.sender, self.hash())
        return self.signature

    def verify(self):
        """Verify message signature"""
        if not self.signature:
            return False
        return verify_signature(self.sender, self.hash(), self.signature)

    @classmethod
    def from_json(cls, json_str):
        """Deserialize from JSON"""
        data = json.loads(json_str)
        return cls(
            msg_type=MessageType(data.pop('type')),
            sender=data['sender'],
            receiver=data['receiver'],
            content=data.get('content'),
            timestamp=data.get('timestamp', 0.0),
            ttl=data.get('ttl', 10),
            path=data.get('path') or [],
            latency=data.get('latency', 0.0),
            signature=data.get('signature'),
            id=data.get('id', ''),
        )


def process_inbox(node_id: int, messages: List[Message]) -> Dict[str, Any]:
    """Pick out the messages addressed to node_id, grouped by type"""
    processed = [m for m in messages if m.receiver == node_id]
    by_type: Dict[str, List[Message]] = {t.value: [] for t in MessageType}
    for message in processed:
        by_type[message.msg_type.value].append(message)
    return {'processed': processed, 'by_type': by_type, 'count': len(processed)}


def get_ready_messages(messages: List[Message], current_time: float) -> List[Message]:
    """Messages whose latency has elapsed by current_time"""
    return [m for m in messages if m.delivery_time <= current_time]
