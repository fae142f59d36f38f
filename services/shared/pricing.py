"""Vote pricing, currency formatting and transaction reference generation."""
import re
import secrets
import string
import time
from typing import List, Optional

from .errors import InvalidQuantity

# Price in the smallest currency unit (kobo): 10000 = NGN 100.00
PRICE_PER_VOTE = 10000
CURRENCY = "NGN"

REFERENCE_PREFIX = "VOTE"
REFERENCE_RANDOM_LENGTH = 12
_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CURRENCY_SYMBOLS = {
    "NGN": "₦",
    "GHS": "GH₵",
    "KES": "KSh",
    "ZAR": "R",
    "USD": "$",
}


def price(vote_count: int, price_per_vote: int = PRICE_PER_VOTE) -> int:
    """
    Total charge for a number of votes.

    Args:
        vote_count: Number of votes being purchased
        price_per_vote: Unit price in the smallest currency unit

    Returns:
        int: vote_count * price_per_vote

    Raises:
        InvalidQuantity: If vote_count is not an integer of at least 1
    """
    if isinstance(vote_count, bool) or not isinstance(vote_count, int) or vote_count < 1:
        raise InvalidQuantity(vote_count)
    return vote_count * price_per_vote


def format_price(amount: int, currency: str = CURRENCY) -> str:
    """
    Render an amount in the smallest currency unit for display.

    format_price(50000) -> "₦500.00"
    """
    major, minor = divmod(amount, 100)
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{major:,}.{minor:02d}"


def generate_reference(prefix: str = REFERENCE_PREFIX) -> str:
    """
    Generate a globally unique transaction reference.

    Millisecond timestamp plus 12 random alphanumerics (about 62 bits of
    entropy per millisecond), uppercased, e.g. VOTE_1718000000000_K3J9Q2ZP7XWA.
    """
    random_part = "".join(
        secrets.choice(_REFERENCE_ALPHABET) for _ in range(REFERENCE_RANDOM_LENGTH)
    )
    return f"{prefix}_{time.time_ns() // 1_000_000}_{random_part}".upper()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def payment_intent_errors(email: Optional[str], amount: Optional[int], reference: Optional[str]) -> List[str]:
    """
    Collect every violated payment-intent constraint.

    Does not stop at the first failure so the caller can report them all.
    """
    errors = []

    if not email:
        errors.append("Email is required")
    elif not is_valid_email(email):
        errors.append("Invalid email format")

    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        errors.append("Amount must be greater than 0")

    if not reference:
        errors.append("Transaction reference is required")

    return errors
