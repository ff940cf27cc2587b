"""Priority-based conflict resolution for overlapping reservations."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import CalendarEvent, ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class ConflictCandidate:
    """An event competing for a resource time slot."""

    event: CalendarEvent
    resource_id: str
    priority_level: int
    mapping_id: Optional[int] = None

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def start(self) -> datetime:
        return ensure_utc(self.event.start)

    @property
    def end(self) -> datetime:
        return ensure_utc(self.event.end)

    def overlaps(self, other: 'ConflictCandidate') -> bool:
        return self.resource_id == other.resource_id and self.event.overlaps(other.event)

    def describe(self) -> Dict[str, object]:
        return {
            'event_id': self.event_id,
            'kind': self.event.kind.value if self.event.kind else None,
            'subject': self.event.subject,
            'priority_level': self.priority_level,
            'mapping_id': self.mapping_id,
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None,
        }


@dataclass
class ConflictDecision:
    """Outcome of arbitrating one conflict group."""

    resource_id: str
    winners: List[ConflictCandidate]
    losers: List[Tuple[ConflictCandidate, ConflictCandidate]] = field(default_factory=list)  # (loser, beaten by)

    def reason_for(self, loser: ConflictCandidate, winner: ConflictCandidate) -> str:
        if loser.priority_level != winner.priority_level:
            return (
                f"Overlaps {winner.event_id} with higher priority "
                f"({winner.priority_level} < {loser.priority_level})"
            )
        if ensure_utc(loser.event.last_modified) != ensure_utc(winner.event.last_modified):
            return (
                f"Overlaps {winner.event_id} with equal priority {winner.priority_level}; "
                f"{winner.event_id} was modified later"
            )
        return f"Overlaps {winner.event_id} with equal priority and modification time; tie broken by id"

    def to_dict(self) -> Dict[str, object]:
        return {
            'resource_id': self.resource_id,
            'winners': [w.describe() for w in self.winners],
            'losers': [
                {**loser.describe(), 'winner_id': winner.event_id, 'reason': self.reason_for(loser, winner)}
                for loser, winner in self.losers
            ],
        }


class ConflictResolver:
    """Arbitrates overlapping events on the same resource.

    Candidates are ranked by priority level (lower wins), then by the latest
    modification, then by event id so the result never depends on input
    order. Within a group every candidate that overlaps a better-ranked
    winner loses.
    """

    def __init__(self):
        self.logger = logger.getChild('conflict_resolver')

    @staticmethod
    def rank_key(candidate: ConflictCandidate) -> Tuple[int, float, str]:
        modified = ensure_utc(candidate.event.last_modified)
        return (candidate.priority_level, -modified.timestamp(), str(candidate.event_id))

    def find_conflict_groups(self, candidates: List[ConflictCandidate]) -> List[List[ConflictCandidate]]:
        """Split candidates into connected overlap components per resource.

        Returns:
            Groups with more than one member, in (resource, start) order
        """
        by_resource: Dict[str, List[ConflictCandidate]] = {}
        for candidate in candidates:
            if candidate.event.start is None or candidate.event.end is None:
                continue
            by_resource.setdefault(str(candidate.resource_id), []).append(candidate)

        groups = []
        for resource_id in sorted(by_resource):
            ordered = sorted(by_resource[resource_id], key=lambda c: (c.start, c.end, str(c.event_id)))
            current: List[ConflictCandidate] = []
            current_end: Optional[datetime] = None
            for candidate in ordered:
                if current and candidate.start < current_end:
                    current.append(candidate)
                    current_end = max(current_end, candidate.end)
                    continue
                if len(current) > 1:
                    groups.append(current)
                current = [candidate]
                current_end = candidate.end
            if len(current) > 1:
                groups.append(current)
        return groups

    def resolve_group(self, group: List[ConflictCandidate]) -> ConflictDecision:
        """Pick winners for one overlap group."""
        ranked = sorted(group, key=self.rank_key)
        decision = ConflictDecision(resource_id=str(ranked[0].resource_id), winners=[])
        for candidate in ranked:
            beaten_by = next((w for w in decision.winners if w.overlaps(candidate)), None)
            if beaten_by is None:
                decision.winners.append(candidate)
            else:
                decision.losers.append((candidate, beaten_by))
        return decision

    def resolve(self, candidates: List[ConflictCandidate]) -> List[ConflictDecision]:
        """Resolve every conflict group among the candidates.

        Args:
            candidates: Events competing for resource time slots

        Returns:
            One decision per group of overlapping candidates
        """
        decisions = []
        for group in self.find_conflict_groups(candidates):
            decision = self.resolve_group(group)
            for loser, winner in decision.losers:
                self.logger.info(
                    f"Resolved time conflict on resource {decision.resource_id}: "
                    f"{winner.event_id} wins over {loser.event_id}"
                )
            decisions.append(decision)
        return decisions

    def losing_ids(self, decisions: List[ConflictDecision]) -> Dict[str, Tuple[ConflictCandidate, str]]:
        """Map each losing event id to (winner, reason)."""
        losers = {}
        for decision in decisions:
            for loser, winner in decision.losers:
                losers[loser.event_id] = (winner, decision.reason_for(loser, winner))
        return losers
