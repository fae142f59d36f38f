"""
Shared data models and utilities for the vote-purchase services.

This module contains:
- Contestant: a competitor and its live vote tally
- VoteTransaction: one ledger entry per payment attempt
- Status enums for ledger entries
- Timestamp helpers and Redis key layout
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum


class TransactionStatus(str, Enum):
    """Status of a ledger entry. pending -> completed | failed, once."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def get_current_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        str: ISO format timestamp with Z suffix
    """
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + 'Z'


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp produced by get_current_timestamp (timezone-aware, UTC)."""
    return datetime.fromisoformat(value.rstrip('Z')).replace(tzinfo=timezone.utc)


@dataclass
class Contestant:
    """
    A contestant and its tally.

    Attributes:
        id: Stable identifier assigned at creation
        name, bio, category, location, age, image_url: Display metadata
        vote_count: Current tally, only ever increased by credits
        evicted: Excluded from ranking and voting, history retained
    """
    id: str
    name: str
    bio: str = ""
    category: str = ""
    location: str = ""
    age: Optional[int] = None
    image_url: str = ""
    vote_count: int = 0
    evicted: bool = False
    created_at: str = field(default_factory=get_current_timestamp)
    updated_at: str = field(default_factory=get_current_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contestant':
        """Create Contestant from dictionary."""
        return cls(**data)


@dataclass
class VoteTransaction:
    """
    Ledger entry for one vote purchase.

    Attributes:
        reference: Our transaction reference, generated before payment
        contestant_id: Contestant being voted for
        contestant_name: Denormalized so the audit trail survives renames/deletes
        vote_count: Votes purchased
        amount: vote_count * price per vote, smallest currency unit
        email: Purchaser contact
        status: pending, completed or failed
        provider_reference: Payment provider's transaction id (set on completion)
        created_at: Creation timestamp
        settled_at: When the entry left pending
    """
    reference: str
    contestant_id: str
    contestant_name: str
    vote_count: int
    amount: int
    email: str
    status: str = TransactionStatus.PENDING.value
    provider_reference: Optional[str] = None
    created_at: str = field(default_factory=get_current_timestamp)
    settled_at: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VoteTransaction':
        """Create VoteTransaction from dictionary."""
        return cls(**data)


# Redis key layout for the document store
REDIS_KEYS = {
    'contestant': 'contestant:{}',                       # HASH per contestant
    'contestant_ids': 'contestants',                     # LIST, creation order
    'transaction': 'vote_tx:{}',                         # HASH per ledger entry
    'pending_transactions': 'vote_tx:pending',           # ZSET reference -> created epoch
    'contestant_transactions': 'vote_tx:contestant:{}',  # SET of references
}


def get_redis_key(key_type: str, *args) -> str:
    """
    Get formatted Redis key.

    Args:
        key_type: Type of key from REDIS_KEYS
        *args: Arguments to format into key

    Returns:
        str: Formatted Redis key
    """
    key_template = REDIS_KEYS.get(key_type)
    if key_template and '{}' in key_template:
        return key_template.format(*args)
    return key_template
