"""
Error taxonomy for the vote-purchase workflow.

Four families, each with its own propagation policy:
- PurchaseValidationError: detected before any external call, shown to the user.
- PaymentBoundaryError: recoverable by restarting the purchase with a new reference.
- ConsistencyError: protocol violations (replayed callbacks, lost entries);
  logged as anomalies, never credited.
- CreditingFailed: the money has moved but the tally was not updated; the
  ledger entry stays pending for reconciliation.
"""
from typing import Any, Dict, List, Optional


class VotingError(Exception):
    """Base class for every error raised by the voting services."""

    code = "voting_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


# Validation errors

class PurchaseValidationError(VotingError):
    code = "validation_error"
    status_code = 400


class InvalidQuantity(PurchaseValidationError):
    code = "invalid_quantity"

    def __init__(self, vote_count: Any):
        super().__init__(
            f"Vote quantity must be a whole number of at least 1 (got {vote_count!r})",
            {"vote_count": vote_count},
        )


class QuantityTooLarge(PurchaseValidationError):
    code = "quantity_too_large"

    def __init__(self, vote_count: int, limit: int):
        super().__init__(
            f"A single purchase is limited to {limit} votes (got {vote_count})",
            {"vote_count": vote_count, "limit": limit},
        )


class InvalidPaymentIntent(PurchaseValidationError):
    code = "invalid_payment_intent"

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors), {"errors": list(errors)})
        self.errors = list(errors)


class ContestantNotFound(PurchaseValidationError):
    code = "contestant_not_found"
    status_code = 404

    def __init__(self, contestant_id: str):
        super().__init__(f"Contestant {contestant_id} not found", {"contestant_id": contestant_id})


class ContestantNotVotable(PurchaseValidationError):
    code = "contestant_not_votable"
    status_code = 409

    def __init__(self, contestant_id: str):
        super().__init__(
            f"Contestant {contestant_id} has been evicted and cannot receive votes",
            {"contestant_id": contestant_id},
        )


# Payment-boundary errors

class PaymentBoundaryError(VotingError):
    code = "payment_error"
    status_code = 503


class PaymentSystemUnavailable(PaymentBoundaryError):
    code = "payment_system_unavailable"

    def __init__(self, message: str = "Payment system unavailable. Please try again later."):
        super().__init__(message)


class PaymentCancelled(PaymentBoundaryError):
    code = "payment_cancelled"
    status_code = 409

    def __init__(self, reference: str):
        super().__init__("Payment cancelled", {"reference": reference})


# Consistency errors

class ConsistencyError(VotingError):
    code = "consistency_error"
    status_code = 409


class DuplicateCompletion(ConsistencyError):
    code = "duplicate_completion"

    def __init__(self, reference: str):
        super().__init__(f"Transaction {reference} is already completed", {"reference": reference})


class LedgerEntryMissing(ConsistencyError):
    code = "ledger_entry_missing"
    status_code = 404

    def __init__(self, reference: str):
        super().__init__(f"No ledger entry for reference {reference}", {"reference": reference})


class ReferenceCollision(ConsistencyError):
    code = "reference_collision"

    def __init__(self, reference: str):
        super().__init__(f"Transaction reference {reference} already exists", {"reference": reference})


class PaymentAfterCancellation(ConsistencyError):
    code = "payment_after_cancellation"

    def __init__(self, reference: str):
        super().__init__(
            f"Payment confirmation received for failed transaction {reference}",
            {"reference": reference},
        )


class AmountMismatch(ConsistencyError):
    code = "amount_mismatch"

    def __init__(self, reference: str, expected: int, paid: int):
        super().__init__(
            f"Provider reports {paid} paid for {reference}, ledger expects {expected}",
            {"reference": reference, "expected": expected, "paid": paid},
        )


# Credit-step and storage errors

class CreditingFailed(VotingError):
    code = "crediting_failed"
    status_code = 502

    def __init__(self, reference: str, attempts: int):
        super().__init__(
            "Payment received but the vote count could not be updated yet. "
            "It will be applied automatically.",
            {"reference": reference, "attempts": attempts},
        )


class StoreUnavailable(VotingError):
    """Raised by storage backends on transport failures; retryable."""

    code = "store_unavailable"
    status_code = 503


class InvalidTransition(VotingError):
    code = "invalid_transition"

    def __init__(self, reference: str, current: str, target: str):
        super().__init__(
            f"Purchase {reference} cannot move from {current} to {target}",
            {"reference": reference, "from": current, "to": target},
        )


class ContestantInUse(VotingError):
    """Deleting a contestant that ledger entries still point at."""

    code = "contestant_in_use"
    status_code = 409

    def __init__(self, contestant_id: str):
        super().__init__(
            f"Contestant {contestant_id} has vote transactions; evict instead of deleting",
            {"contestant_id": contestant_id},
        )
