"""Ledger audit: stale pending entries and tally drift."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from services.shared.models import Contestant, VoteTransaction, get_current_timestamp

from .ledger import VoteLedger
from .tally import TallyStore

logger = logging.getLogger(__name__)


@dataclass
class Drift:
    """A contestant whose tally differs from its completed ledger votes."""
    contestant_id: str
    name: str
    tally: int
    ledger_votes: int

    @property
    def difference(self) -> int:
        return self.tally - self.ledger_votes

    def to_dict(self):
        return {
            "contestant_id": self.contestant_id,
            "name": self.name,
            "tally": self.tally,
            "ledger_votes": self.ledger_votes,
            "difference": self.difference,
        }


@dataclass
class AuditReport:
    stale_pending: List[VoteTransaction] = field(default_factory=list)
    drift: List[Drift] = field(default_factory=list)
    checked_contestants: int = 0
    generated_at: str = field(default_factory=get_current_timestamp)

    @property
    def clean(self) -> bool:
        return not self.stale_pending and not self.drift


async def find_drift(contestants: List[Contestant], ledger: VoteLedger) -> List[Drift]:
    """
    Compare every tally with the sum of its completed ledger entries.

    Drift is reported, never corrected: a non-zero difference may also come
    from an administrative correction.
    """
    drift = []
    for contestant in contestants:
        ledger_votes = await ledger.completed_votes(contestant.id)
        if ledger_votes != contestant.vote_count:
            drift.append(Drift(contestant.id, contestant.name, contestant.vote_count, ledger_votes))
    return drift


async def audit_ledger(
    tally: TallyStore,
    ledger: VoteLedger,
    stale_after_seconds: float,
    now: Optional[float] = None,
) -> AuditReport:
    stale = await ledger.stale_pending(stale_after_seconds, now=now)
    for entry in stale:
        logger.warning(
            f"Stale pending entry {entry.reference}: contestant={entry.contestant_id}, "
            f"votes={entry.vote_count}, created_at={entry.created_at}"
        )

    snapshot = await tally.snapshot()
    drift = await find_drift(snapshot, ledger)
    for d in drift:
        logger.warning(
            f"Tally drift for {d.contestant_id} ({d.name}): tally={d.tally}, "
            f"ledger={d.ledger_votes}, difference={d.difference:+d}"
        )

    return AuditReport(stale_pending=stale, drift=drift, checked_contestants=len(snapshot))
