"""
Vote purchase orchestration.

Each purchase attempt is an explicit state machine:

    Draft -> AwaitingPayment -> Crediting -> Completed
      |             |               |
      v             v               v
    ValidationFailed PaymentCancelled CreditingFailed

A pending ledger entry is written before the payment provider is involved,
so every attempt leaves an audit trace even if its callback is lost. The
success path credits through a single conditional write (pending ->
completed plus tally increment), which is what makes replayed callbacks
harmless. Credit failures leave the entry pending for reconciliation.
A success whose provider-reported amount differs from the ledger amount is
an anomaly and credits nothing.

Purchaser notification goes through the ``notifier`` hook passed to
VoteOrchestrator: an async callable ``(email, CreditResult)`` awaited after
the credit is durable. The default, log_notifier, only logs; deployments
plug in mail or SMS delivery there. Notifier errors are logged and never
undo a credit.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter

from services.shared.errors import (
    AmountMismatch,
    ConsistencyError,
    ContestantNotFound,
    ContestantNotVotable,
    CreditingFailed,
    InvalidTransition,
    LedgerEntryMissing,
    PaymentCancelled,
    PaymentSystemUnavailable,
    PurchaseValidationError,
    QuantityTooLarge,
    ReferenceCollision,
    StoreUnavailable,
)
from services.shared.models import VoteTransaction, get_current_timestamp
from services.shared.pricing import PRICE_PER_VOTE, generate_reference, price

from .gateway import PaymentGateway, PaymentIntent, PaymentSession
from .ledger import VoteLedger
from .tally import TallyStore

logger = logging.getLogger(__name__)

purchases_total = Counter(
    "vote_purchases_total",
    "Vote purchase attempts by final outcome",
    ["outcome"]
)
votes_credited_total = Counter(
    "votes_credited_total",
    "Total number of votes credited to contestants"
)
credit_retries_total = Counter(
    "credit_retries_total",
    "Credit step retries after storage failures"
)
ledger_anomalies_total = Counter(
    "ledger_anomalies_total",
    "Consistency anomalies seen on the ledger",
    ["kind"]
)


class PurchaseState(str, Enum):
    DRAFT = "draft"
    AWAITING_PAYMENT = "awaiting_payment"
    CREDITING = "crediting"
    COMPLETED = "completed"
    VALIDATION_FAILED = "validation_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    CREDITING_FAILED = "crediting_failed"


TRANSITIONS = {
    PurchaseState.DRAFT: {PurchaseState.AWAITING_PAYMENT, PurchaseState.VALIDATION_FAILED},
    PurchaseState.AWAITING_PAYMENT: {PurchaseState.CREDITING, PurchaseState.PAYMENT_CANCELLED},
    PurchaseState.CREDITING: {PurchaseState.COMPLETED, PurchaseState.CREDITING_FAILED},
    PurchaseState.COMPLETED: set(),
    PurchaseState.VALIDATION_FAILED: set(),
    PurchaseState.PAYMENT_CANCELLED: set(),
    PurchaseState.CREDITING_FAILED: set(),
}


@dataclass
class PurchaseAttempt:
    """In-flight state of one vote purchase."""
    contestant_id: str
    email: str
    vote_count: int
    reference: Optional[str] = None
    contestant_name: str = ""
    amount: int = 0
    state: PurchaseState = PurchaseState.DRAFT
    provider_reference: Optional[str] = None
    session: Optional[PaymentSession] = None
    history: List[Tuple[PurchaseState, str]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, target: PurchaseState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.reference or "-", self.state.value, target.value)
        self.history.append((self.state, get_current_timestamp()))
        self.state = target

    @classmethod
    def from_entry(cls, entry: VoteTransaction) -> 'PurchaseAttempt':
        """Rebuild an AwaitingPayment attempt from a pending ledger entry."""
        return cls(
            contestant_id=entry.contestant_id,
            email=entry.email,
            vote_count=entry.vote_count,
            reference=entry.reference,
            contestant_name=entry.contestant_name,
            amount=entry.amount,
            state=PurchaseState.AWAITING_PAYMENT,
        )


@dataclass
class CreditResult:
    reference: str
    contestant_id: str
    contestant_name: str
    votes_added: int
    vote_count: int
    provider_reference: str


Notifier = Callable[[str, CreditResult], Awaitable[None]]


async def log_notifier(email: str, result: CreditResult) -> None:
    logger.info(
        f"Purchase confirmed for {email}: {result.votes_added} votes for "
        f"{result.contestant_name} (ref={result.reference})"
    )


class VoteOrchestrator:
    """Sequences payment confirmation, ledger completion and tally credit."""

    def __init__(
        self,
        tally: TallyStore,
        ledger: VoteLedger,
        gateway: PaymentGateway,
        price_per_vote: int = PRICE_PER_VOTE,
        max_votes: int = 1000,
        credit_max_attempts: int = 3,
        credit_retry_base_delay: float = 0.2,
        reference_max_attempts: int = 3,
        notifier: Optional[Notifier] = None,
    ):
        self.tally = tally
        self.ledger = ledger
        self.gateway = gateway
        self.price_per_vote = price_per_vote
        self.max_votes = max_votes
        self.credit_max_attempts = credit_max_attempts
        self.credit_retry_base_delay = credit_retry_base_delay
        self.reference_max_attempts = reference_max_attempts
        self.notifier = notifier or log_notifier
        self._attempts: Dict[str, PurchaseAttempt] = {}

    # Draft -> AwaitingPayment

    async def start_purchase(self, contestant_id: str, email: str, vote_count: int) -> PurchaseAttempt:
        """
        Validate a purchase request, open its pending ledger entry and start checkout.

        Raises:
            PurchaseValidationError: Any validation failure, nothing is written
            PaymentSystemUnavailable: The gateway cannot take payments right now
        """
        attempt = PurchaseAttempt(contestant_id=contestant_id, email=email, vote_count=vote_count)
        try:
            await self._validate(attempt)
        except PurchaseValidationError as e:
            attempt.advance(PurchaseState.VALIDATION_FAILED)
            purchases_total.labels(outcome="validation_failed").inc()
            logger.info(f"Purchase rejected for contestant {contestant_id}: {e.message}")
            raise

        if not self.gateway.is_available():
            purchases_total.labels(outcome="payment_unavailable").inc()
            raise PaymentSystemUnavailable()

        entry = await self._open_entry(attempt)
        attempt.reference = entry.reference

        try:
            session = await self.gateway.initiate(
                PaymentIntent(email=attempt.email, amount=attempt.amount, reference=entry.reference),
                self.handle_success,
                self.handle_cancel,
            )
        except PaymentSystemUnavailable:
            await self.ledger.mark_failed(entry.reference)
            purchases_total.labels(outcome="payment_unavailable").inc()
            raise

        attempt.session = session
        attempt.advance(PurchaseState.AWAITING_PAYMENT)
        self._prune_attempts()
        self._attempts[entry.reference] = attempt
        logger.info(
            f"Awaiting payment: ref={entry.reference}, contestant={attempt.contestant_id}, "
            f"votes={attempt.vote_count}, amount={attempt.amount}"
        )
        return attempt

    async def _validate(self, attempt: PurchaseAttempt) -> None:
        attempt.amount = price(attempt.vote_count, self.price_per_vote)
        if attempt.vote_count > self.max_votes:
            raise QuantityTooLarge(attempt.vote_count, self.max_votes)

        # Reference is checked once generated; email and amount are checked now
        PaymentIntent(email=attempt.email, amount=attempt.amount, reference="-").validate()

        contestant = await self.tally.get(attempt.contestant_id)
        if contestant is None:
            raise ContestantNotFound(attempt.contestant_id)
        if contestant.evicted:
            raise ContestantNotVotable(attempt.contestant_id)
        attempt.contestant_name = contestant.name

    async def _open_entry(self, attempt: PurchaseAttempt) -> VoteTransaction:
        for n in range(1, self.reference_max_attempts + 1):
            entry = VoteTransaction(
                reference=generate_reference(),
                contestant_id=attempt.contestant_id,
                contestant_name=attempt.contestant_name,
                vote_count=attempt.vote_count,
                amount=attempt.amount,
                email=attempt.email,
            )
            try:
                return await self.ledger.open(entry)
            except ReferenceCollision as e:
                ledger_anomalies_total.labels(kind=e.code).inc()
                logger.warning(f"Reference collision on {entry.reference} (attempt {n})")
                if n == self.reference_max_attempts:
                    raise

    # Outcome dispatch

    async def confirm_payment(
        self,
        reference: str,
        provider_reference: str,
        amount: Optional[int] = None,
    ) -> CreditResult:
        """
        Route a success notification for a reference.

        Goes through the live payment session when this process opened it,
        otherwise straight to the ledger-guarded success step. amount is
        what the provider says was charged, when it says.
        """
        session = self.gateway.claim_session(reference)
        if session is not None:
            return await session.succeed(provider_reference, amount)
        return await self.handle_success(reference, provider_reference, amount)

    async def cancel_payment(self, reference: str) -> VoteTransaction:
        """Route a cancel notification for a reference."""
        session = self.gateway.claim_session(reference)
        if session is not None:
            return await session.cancel()
        return await self.handle_cancel(reference)

    async def purchase(
        self,
        contestant_id: str,
        email: str,
        vote_count: int,
        timeout: Optional[float] = None,
    ) -> CreditResult:
        """
        Run a whole purchase in-process and wait for its outcome.

        Raises:
            PaymentCancelled: The purchaser closed the checkout
            asyncio.TimeoutError: No callback within timeout; the entry stays pending
        """
        attempt = await self.start_purchase(contestant_id, email, vote_count)
        try:
            outcome = await asyncio.wait_for(attempt.session.outcome(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No payment callback for {attempt.reference} within {timeout}s; left pending")
            raise
        if isinstance(outcome, CreditResult):
            return outcome
        raise PaymentCancelled(attempt.reference)

    # AwaitingPayment -> Crediting -> Completed | CreditingFailed

    async def handle_success(
        self,
        reference: str,
        provider_reference: str,
        amount: Optional[int] = None,
    ) -> CreditResult:
        """
        Success callback: credit the purchase exactly once.

        Raises:
            LedgerEntryMissing, DuplicateCompletion, PaymentAfterCancellation:
                Protocol violations, nothing is credited
            AmountMismatch: The provider charged a different amount; the
                entry stays pending for manual review
            CreditingFailed: Storage kept failing, the entry stays pending
        """
        try:
            entry = await self.ledger.get(reference)
            if entry is None:
                raise LedgerEntryMissing(reference)
            if not entry.is_pending:
                self.ledger.raise_for_settled(entry)
            if amount is not None and amount != entry.amount:
                raise AmountMismatch(reference, entry.amount, amount)
        except ConsistencyError as e:
            self._record_anomaly(e, provider_reference)
            raise

        attempt = self._attempts.pop(reference, None) or PurchaseAttempt.from_entry(entry)
        attempt.advance(PurchaseState.CREDITING)
        attempt.provider_reference = provider_reference

        try:
            vote_count = await self._credit_with_retry(attempt)
        except ConsistencyError as e:
            # Lost a race with a concurrent settle of the same entry
            self._record_anomaly(e, provider_reference)
            raise
        except (CreditingFailed, ContestantNotFound):
            attempt.advance(PurchaseState.CREDITING_FAILED)
            purchases_total.labels(outcome="crediting_failed").inc()
            raise

        attempt.advance(PurchaseState.COMPLETED)
        purchases_total.labels(outcome="completed").inc()
        votes_credited_total.inc(attempt.vote_count)

        result = CreditResult(
            reference=reference,
            contestant_id=attempt.contestant_id,
            contestant_name=attempt.contestant_name,
            votes_added=attempt.vote_count,
            vote_count=vote_count,
            provider_reference=provider_reference,
        )
        logger.info(
            f"Credited {attempt.vote_count} votes to {attempt.contestant_id} "
            f"(ref={reference}, provider_ref={provider_reference}, tally={vote_count})"
        )
        await self._notify(attempt.email, result)
        return result

    async def _credit_with_retry(self, attempt: PurchaseAttempt) -> int:
        for n in range(1, self.credit_max_attempts + 1):
            try:
                return await self.ledger.complete_and_credit(attempt.reference, attempt.provider_reference)
            except StoreUnavailable as e:
                if n == self.credit_max_attempts:
                    logger.error(
                        f"Credit for {attempt.reference} failed after {n} attempts: {e.message}; "
                        f"entry left pending for reconciliation"
                    )
                    raise CreditingFailed(attempt.reference, n)
                delay = self.credit_retry_base_delay * 2 ** (n - 1)
                credit_retries_total.inc()
                logger.warning(
                    f"Credit attempt {n}/{self.credit_max_attempts} for {attempt.reference} "
                    f"failed: {e.message}; retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            except ContestantNotFound:
                ledger_anomalies_total.labels(kind="contestant_missing").inc()
                logger.error(
                    f"Paid transaction {attempt.reference} targets missing contestant "
                    f"{attempt.contestant_id}; entry left pending for reconciliation"
                )
                raise

    async def _notify(self, email: str, result: CreditResult) -> None:
        try:
            await self.notifier(email, result)
        except Exception as e:
            # The credit is already durable
            logger.error(f"Failed to notify {email} for {result.reference}: {e}", exc_info=True)

    # AwaitingPayment -> PaymentCancelled

    async def handle_cancel(self, reference: str) -> VoteTransaction:
        """
        Cancel callback: mark the entry failed. The tally is untouched.

        A repeated cancel of an already failed entry is a no-op.
        """
        attempt = self._attempts.pop(reference, None)
        try:
            changed = await self.ledger.mark_failed(reference)
        except ConsistencyError as e:
            self._record_anomaly(e)
            raise

        if changed:
            if attempt is not None:
                attempt.advance(PurchaseState.PAYMENT_CANCELLED)
            purchases_total.labels(outcome="cancelled").inc()
            logger.info(f"Payment cancelled: ref={reference}")
        else:
            logger.info(f"Repeated cancel for {reference} ignored")
        return await self.ledger.get(reference)

    @property
    def in_flight(self) -> int:
        """Attempts awaiting a payment callback in this process."""
        return len(self._attempts)

    def _prune_attempts(self) -> None:
        """Forget attempts whose checkout outlived the gateway session TTL."""
        cutoff = time.monotonic() - self.gateway.session_ttl_seconds
        expired = [
            ref for ref, a in self._attempts.items()
            if a.session is None or a.session.opened_at < cutoff
        ]
        for reference in expired:
            del self._attempts[reference]
        if expired:
            logger.info(f"Dropped {len(expired)} unsettled purchase attempts past TTL; entries stay pending")

    def _record_anomaly(self, error: ConsistencyError, provider_reference: Optional[str] = None) -> None:
        ledger_anomalies_total.labels(kind=error.code).inc()
        # Money moved without votes; needs a person
        level = logging.ERROR if isinstance(error, AmountMismatch) else logging.WARNING
        logger.log(
            level,
            f"Ledger anomaly {error.code}: {error.message}"
            + (f" (provider_ref={provider_reference})" if provider_reference else "")
        )
