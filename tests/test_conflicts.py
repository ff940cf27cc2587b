"""Tests for priority-based conflict resolution."""

from datetime import datetime, timedelta

import pytz

from calbridge.conflicts import ConflictCandidate, ConflictResolver
from calbridge.models import CalendarEvent, ReservationKind

START = datetime(2025, 6, 14, 10, 0, tzinfo=pytz.UTC)


def candidate(event_id, priority, start=START, hours=1, modified=None, resource_id='123', kind=None):
    event = CalendarEvent(
        id=event_id,
        kind=kind,
        subject=f"Event {event_id}",
        start=start,
        end=start + timedelta(hours=hours),
        last_modified=modified or datetime(2025, 6, 1, tzinfo=pytz.UTC),
    )
    return ConflictCandidate(event=event, resource_id=resource_id, priority_level=priority)


class TestConflictResolver:
    """Test ConflictResolver."""

    def test_lower_priority_level_wins_regardless_of_order(self):
        resolver = ConflictResolver()
        event = candidate('1', 1, kind=ReservationKind.EVENT)
        allocation = candidate('2', 3, start=START + timedelta(minutes=30), kind=ReservationKind.ALLOCATION)

        for ordering in ([event, allocation], [allocation, event]):
            losers = resolver.losing_ids(resolver.resolve(ordering))
            assert set(losers) == {'2'}
            winner, reason = losers['2']
            assert winner.event_id == '1'
            assert 'higher priority' in reason

    def test_equal_priority_later_modification_wins(self):
        resolver = ConflictResolver()
        older = candidate('a', 2, modified=datetime(2025, 6, 1, tzinfo=pytz.UTC))
        newer = candidate('b', 2, modified=datetime(2025, 6, 2, tzinfo=pytz.UTC))

        losers = resolver.losing_ids(resolver.resolve([newer, older]))
        assert set(losers) == {'a'}
        assert 'modified later' in losers['a'][1]

    def test_full_tie_is_broken_by_id(self):
        resolver = ConflictResolver()
        losers = resolver.losing_ids(resolver.resolve([candidate('y', 2), candidate('x', 2)]))
        assert set(losers) == {'y'}

    def test_non_overlapping_events_do_not_conflict(self):
        resolver = ConflictResolver()
        first = candidate('1', 1)
        second = candidate('2', 3, start=START + timedelta(hours=1))
        assert resolver.resolve([first, second]) == []

    def test_different_resources_do_not_conflict(self):
        resolver = ConflictResolver()
        assert resolver.resolve([candidate('1', 1), candidate('2', 3, resource_id='999')]) == []

    def test_chain_keeps_non_overlapping_winners(self):
        """A long low-priority event bridging two winners loses, both ends win."""
        resolver = ConflictResolver()
        morning = candidate('m', 1)
        afternoon = candidate('a', 1, start=START + timedelta(hours=3))
        all_day = candidate('d', 3, hours=6)

        decisions = resolver.resolve([all_day, morning, afternoon])
        assert len(decisions) == 1
        assert {w.event_id for w in decisions[0].winners} == {'m', 'a'}
        assert set(resolver.losing_ids(decisions)) == {'d'}

    def test_loser_of_loser_can_still_win(self):
        """Winners are only compared against other winners."""
        resolver = ConflictResolver()
        top = candidate('top', 1, hours=1)
        middle = candidate('mid', 2, start=START + timedelta(minutes=30), hours=1)
        bottom = candidate('low', 3, start=START + timedelta(hours=1), hours=1)

        losers = resolver.losing_ids(resolver.resolve([bottom, middle, top]))
        assert set(losers) == {'mid'}

    def test_decision_to_dict(self):
        resolver = ConflictResolver()
        decision = resolver.resolve([candidate('1', 1), candidate('2', 3)])[0]
        data = decision.to_dict()
        assert data['resource_id'] == '123'
        assert data['winners'][0]['event_id'] == '1'
        assert data['losers'][0]['winner_id'] == '1'
