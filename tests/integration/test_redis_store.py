"""Store guarantees against a live Redis.

Usage:
    pytest tests/integration/ -v -m docker
"""

import asyncio
import time

import pytest

from services.shared.errors import (
    ContestantInUse,
    ContestantNotFound,
    DuplicateCompletion,
    LedgerEntryMissing,
    PaymentAfterCancellation,
    ReferenceCollision,
)
from services.shared.models import Contestant, VoteTransaction
from services.vote_api.seed import DEFAULT_CONTESTANTS

pytestmark = [pytest.mark.docker, pytest.mark.asyncio]


def pending(reference: str, contestant_id: str, votes: int = 5) -> VoteTransaction:
    return VoteTransaction(
        reference=reference,
        contestant_id=contestant_id,
        contestant_name="Adaeze",
        vote_count=votes,
        amount=votes * 10000,
        email="fan@example.com",
    )


class TestContestants:

    async def test_create_and_list_in_order(self, tally):
        first = await tally.create(name="First")
        second = await tally.create(name="Second", age=30)

        contestants = await tally.snapshot()

        assert [c.id for c in contestants] == [first.id, second.id]
        assert contestants[1].age == 30
        assert contestants[1].vote_count == 0

    async def test_increment_is_atomic(self, tally, make_contestant):
        contestant = await make_contestant("Adaeze")

        await asyncio.gather(*[tally.increment(contestant.id, 1) for _ in range(50)])

        assert (await tally.get(contestant.id)).vote_count == 50

    async def test_increment_missing_contestant(self, tally):
        with pytest.raises(ContestantNotFound):
            await tally.increment("nope", 1)

    async def test_eviction_keeps_votes(self, tally, make_contestant):
        contestant = await make_contestant("Adaeze", votes=12)

        evicted = await tally.set_evicted(contestant.id, True)

        assert evicted.evicted is True
        assert evicted.vote_count == 12
        assert await tally.set_evicted("nope", True) is None

    async def test_delete(self, tally, make_contestant):
        contestant = await make_contestant("Adaeze")

        assert await tally.delete(contestant.id)
        assert await tally.get(contestant.id) is None
        assert await tally.snapshot() == []
        assert not await tally.delete(contestant.id)

    async def test_delete_refused_while_referenced(self, tally, ledger, make_contestant):
        contestant = await make_contestant("Adaeze")
        await ledger.open(pending("VOTE_1", contestant.id))

        with pytest.raises(ContestantInUse):
            await tally.delete(contestant.id)

        assert await tally.get(contestant.id) is not None
        assert [c.id for c in await tally.snapshot()] == [contestant.id]

    async def test_concurrent_seed_inserts_once(self, tally):
        results = await asyncio.gather(*[tally.seed(DEFAULT_CONTESTANTS) for _ in range(5)])

        assert sorted(results) == [0, 0, 0, 0, len(DEFAULT_CONTESTANTS)]
        assert len(await tally.snapshot()) == len(DEFAULT_CONTESTANTS)

    async def test_seed_round_trips_fields(self, store):
        contestant = Contestant(id="c1", name="Adaeze", bio="Singer", age=24, image_url="https://example.com/a.jpg")

        await store.seed_if_empty([contestant])

        stored = await store.get_contestant("c1")
        assert stored.name == "Adaeze"
        assert stored.age == 24
        assert stored.evicted is False


class TestLedger:

    async def test_reference_is_unique(self, ledger, make_contestant):
        contestant = await make_contestant("Adaeze")
        await ledger.open(pending("VOTE_1", contestant.id))

        with pytest.raises(ReferenceCollision):
            await ledger.open(pending("VOTE_1", contestant.id))

    async def test_complete_and_credit_once(self, ledger, tally, make_contestant):
        contestant = await make_contestant("Adaeze", votes=1)
        await ledger.open(pending("VOTE_1", contestant.id, votes=5))

        assert await ledger.complete_and_credit("VOTE_1", "PSK_1") == 6
        with pytest.raises(DuplicateCompletion):
            await ledger.complete_and_credit("VOTE_1", "PSK_1")

        entry = await ledger.get("VOTE_1")
        assert entry.status == "completed"
        assert entry.provider_reference == "PSK_1"
        assert entry.settled_at is not None
        assert (await tally.get(contestant.id)).vote_count == 6

    async def test_concurrent_completion_credits_once(self, ledger, tally, make_contestant):
        contestant = await make_contestant("Adaeze")
        await ledger.open(pending("VOTE_1", contestant.id, votes=5))

        results = await asyncio.gather(
            *[ledger.complete_and_credit("VOTE_1", "PSK_1") for _ in range(10)],
            return_exceptions=True
        )

        assert len([r for r in results if r == 5]) == 1
        assert all(isinstance(r, DuplicateCompletion) for r in results if r != 5)
        assert (await tally.get(contestant.id)).vote_count == 5

    async def test_fifty_concurrent_purchases(self, ledger, tally, make_contestant):
        contestant = await make_contestant("Adaeze")
        for n in range(50):
            await ledger.open(pending(f"VOTE_{n}", contestant.id, votes=1))

        await asyncio.gather(*[ledger.complete_and_credit(f"VOTE_{n}", f"PSK_{n}") for n in range(50)])

        assert (await tally.get(contestant.id)).vote_count == 50
        assert await ledger.completed_votes(contestant.id) == 50

    async def test_missing_entry(self, ledger):
        with pytest.raises(LedgerEntryMissing):
            await ledger.complete_and_credit("VOTE_NOPE", "PSK_1")

    async def test_completion_after_cancel(self, ledger, tally, make_contestant):
        contestant = await make_contestant("Adaeze")
        await ledger.open(pending("VOTE_1", contestant.id))

        assert await ledger.mark_failed("VOTE_1")
        assert not await ledger.mark_failed("VOTE_1")
        with pytest.raises(PaymentAfterCancellation):
            await ledger.complete_and_credit("VOTE_1", "PSK_1")

        assert (await tally.get(contestant.id)).vote_count == 0

    async def test_credit_to_deleted_contestant_stays_pending(self, ledger, tally, make_contestant):
        contestant = await make_contestant("Adaeze")
        await tally.delete(contestant.id)
        await ledger.open(pending("VOTE_1", contestant.id))

        with pytest.raises(ContestantNotFound):
            await ledger.complete_and_credit("VOTE_1", "PSK_1")

        assert (await ledger.get("VOTE_1")).is_pending

    async def test_stale_pending(self, ledger, make_contestant):
        contestant = await make_contestant("Adaeze")
        await ledger.open(pending("VOTE_OLD", contestant.id))
        await ledger.open(pending("VOTE_DONE", contestant.id))
        await ledger.complete_and_credit("VOTE_DONE", "PSK_1")

        assert await ledger.stale_pending(1800) == []
        stale = await ledger.stale_pending(1800, now=time.time() + 3600)
        assert [e.reference for e in stale] == ["VOTE_OLD"]

    async def test_entries_for_contestant(self, ledger, make_contestant):
        contestant = await make_contestant("Adaeze")
        other = await make_contestant("Bola")
        await ledger.open(pending("VOTE_1", contestant.id))

        assert [e.reference for e in await ledger.entries_for(contestant.id)] == ["VOTE_1"]
        assert await ledger.entries_for(other.id) == []


class TestPurchaseFlow:

    async def test_purchase_end_to_end(self, orchestrator, gateway, tally, ledger, make_contestant):
        contestant = await make_contestant("Adaeze")
        gateway.auto_settle = "success"

        result = await orchestrator.purchase(contestant.id, "fan@example.com", 5, timeout=5)

        assert result.vote_count == 5
        assert (await ledger.get(result.reference)).status == "completed"
        assert (await tally.get(contestant.id)).vote_count == 5
