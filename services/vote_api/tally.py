"""Contestant tally store."""
import logging
import uuid
from typing import Dict, List, Optional

from services.shared.errors import InvalidQuantity
from services.shared.models import Contestant

logger = logging.getLogger(__name__)


class TallyStore:
    """
    Contestant records addressed by stable id.

    vote_count only ever changes through increment() (or the ledger's
    complete_and_credit), both atomic add-N operations in the store.
    """

    def __init__(self, store):
        self.store = store

    async def get(self, contestant_id: str) -> Optional[Contestant]:
        return await self.store.get_contestant(contestant_id)

    async def snapshot(self) -> List[Contestant]:
        """All contestants in the store's stable (creation) order."""
        return await self.store.list_contestants()

    async def increment(self, contestant_id: str, votes: int) -> int:
        """Atomically add votes to a contestant. Returns the new count."""
        if isinstance(votes, bool) or not isinstance(votes, int) or votes < 1:
            raise InvalidQuantity(votes)
        return await self.store.increment_vote_count(contestant_id, votes)

    async def create(
        self,
        name: str,
        bio: str = "",
        category: str = "",
        location: str = "",
        age: Optional[int] = None,
        image_url: str = "",
    ) -> Contestant:
        """Add a contestant with no votes, not evicted."""
        contestant = Contestant(
            id=uuid.uuid4().hex,
            name=name,
            bio=bio,
            category=category,
            location=location,
            age=age,
            image_url=image_url,
        )
        await self.store.insert_contestant(contestant)
        logger.info(f"Contestant created: id={contestant.id}, name={name}")
        return contestant

    async def set_evicted(self, contestant_id: str, evicted: bool) -> Optional[Contestant]:
        contestant = await self.store.update_contestant(contestant_id, {"evicted": evicted})
        if contestant is not None:
            logger.info(f"Contestant {contestant_id} {'evicted' if evicted else 'reinstated'}")
        return contestant

    async def delete(self, contestant_id: str) -> bool:
        """
        Delete a contestant. Returns False if it does not exist.

        Raises:
            ContestantInUse: Ledger entries reference the contestant
        """
        deleted = await self.store.delete_contestant(contestant_id)
        if deleted:
            logger.warning(f"Contestant {contestant_id} deleted")
        return deleted

    async def seed(self, contestants: List[Dict]) -> int:
        """
        Insert contestants only if the store holds none.

        Safe to run from several processes at once: the emptiness check and
        the inserts happen in one atomic store operation.
        """
        records = [
            Contestant(id=uuid.uuid4().hex, vote_count=0, evicted=False, **data)
            for data in contestants
        ]
        inserted = await self.store.seed_if_empty(records)
        if inserted:
            logger.info(f"Seeded {inserted} contestants")
        else:
            logger.info("Contestants already present, seeding skipped")
        return inserted
