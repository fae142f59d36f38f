"""Vote ledger: one append-mostly record per payment attempt."""
import logging
import time
from typing import List, Optional

from services.shared.models import TransactionStatus, VoteTransaction

from .database import raise_for_settled

logger = logging.getLogger(__name__)


class VoteLedger:
    """
    Audit trail of vote purchases.

    Entries are created pending and leave pending exactly once, either to
    completed (together with the tally credit) or to failed. Nothing here
    ever rewrites a settled entry.
    """

    def __init__(self, store):
        self.store = store

    async def open(self, entry: VoteTransaction) -> VoteTransaction:
        """
        Record a new pending entry.

        Raises:
            ReferenceCollision: If the reference is already in the ledger
        """
        if entry.status != TransactionStatus.PENDING:
            raise ValueError("Ledger entries must be opened as pending")
        await self.store.insert_transaction(entry)
        logger.info(f"Ledger entry opened: ref={entry.reference}, contestant={entry.contestant_id}")
        return entry

    async def get(self, reference: str) -> Optional[VoteTransaction]:
        return await self.store.get_transaction(reference)

    async def complete_and_credit(self, reference: str, provider_reference: str) -> int:
        """Complete a pending entry and credit its votes in one step. Returns the new tally."""
        return await self.store.complete_and_credit(reference, provider_reference)

    async def mark_failed(self, reference: str) -> bool:
        """Fail a pending entry. Returns False if it had already failed."""
        return await self.store.fail_transaction(reference)

    @staticmethod
    def raise_for_settled(entry: VoteTransaction) -> None:
        raise_for_settled(entry.reference, entry.status)

    async def entries_for(self, contestant_id: str) -> List[VoteTransaction]:
        return await self.store.list_transactions_for(contestant_id)

    async def stale_pending(self, older_than_seconds: float, now: Optional[float] = None) -> List[VoteTransaction]:
        """Pending entries created more than older_than_seconds ago."""
        cutoff = (now if now is not None else time.time()) - older_than_seconds
        return await self.store.list_pending(cutoff)

    async def completed_votes(self, contestant_id: str) -> int:
        """Sum of vote_count over a contestant's completed entries."""
        entries = await self.entries_for(contestant_id)
        return sum(e.vote_count for e in entries if e.status == TransactionStatus.COMPLETED)
