"""
Ranking view over a tally snapshot.

Active contestants are ranked by vote count, highest first. Ties keep the
snapshot's order (the store's creation order) since sorted() is stable;
there is no secondary key. Evicted contestants are listed after every active
one, also by vote count, and never get a rank or badge.
"""
from dataclasses import dataclass
from typing import List, Optional

from services.shared.models import Contestant

BADGES = ("gold", "silver", "bronze")


@dataclass
class RankedContestant:
    contestant: Contestant
    rank: Optional[int] = None
    badge: Optional[str] = None


@dataclass
class Standings:
    active: List[RankedContestant]
    evicted: List[RankedContestant]

    @property
    def display_order(self) -> List[RankedContestant]:
        return self.active + self.evicted

    @property
    def total_votes(self) -> int:
        return sum(r.contestant.vote_count for r in self.display_order)


def _by_votes(contestants: List[Contestant]) -> List[Contestant]:
    return sorted(contestants, key=lambda c: c.vote_count, reverse=True)


def rank_contestants(contestants: List[Contestant]) -> Standings:
    """Partition, sort and place a snapshot. Does not modify its input."""
    active = _by_votes([c for c in contestants if not c.evicted])
    evicted = _by_votes([c for c in contestants if c.evicted])

    ranked = [
        RankedContestant(
            contestant=c,
            rank=position,
            badge=BADGES[position - 1] if position <= len(BADGES) else None,
        )
        for position, c in enumerate(active, start=1)
    ]
    return Standings(active=ranked, evicted=[RankedContestant(contestant=c) for c in evicted])
