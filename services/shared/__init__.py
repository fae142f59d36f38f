"""
Shared utilities and models for the vote-purchase services.

This package contains common code used across all services:
- Data models (Contestant, VoteTransaction, TransactionStatus)
- Pricing and transaction reference generation
- The error taxonomy
- Redis key layout
"""

from .models import (
    Contestant,
    VoteTransaction,
    TransactionStatus,
    get_current_timestamp,
    parse_timestamp,
    get_redis_key,
    REDIS_KEYS,
)
from .pricing import (
    PRICE_PER_VOTE,
    CURRENCY,
    price,
    format_price,
    generate_reference,
    is_valid_email,
    payment_intent_errors,
)

__all__ = [
    'Contestant',
    'VoteTransaction',
    'TransactionStatus',
    'get_current_timestamp',
    'parse_timestamp',
    'get_redis_key',
    'REDIS_KEYS',
    'PRICE_PER_VOTE',
    'CURRENCY',
    'price',
    'format_price',
    'generate_reference',
    'is_valid_email',
    'payment_intent_errors',
]

__version__ = '1.0.0'
