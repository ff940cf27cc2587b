"""Tests for bridge-to-bridge sync orchestration."""

from datetime import datetime, timedelta

import pytest
import pytz

from calbridge.bridges.base import BridgeNotFoundError, RemoteTransientError
from calbridge.models import (
    BRIDGE_SOURCE_TAG, ReservationKind, SyncOperation, SyncOptions, SyncStatus
)

from conftest import FakeRemoteBridge, JUNE_END, JUNE_START, RESOURCE_ID, ROOM, add_reservation


async def push(manager, **options):
    return await manager.sync(
        'booking_system', 'outlook', RESOURCE_ID, ROOM,
        start_date=JUNE_START, end_date=JUNE_END, options=SyncOptions(**options),
    )


async def pull(manager, **options):
    return await manager.sync(
        'outlook', 'booking_system', ROOM, RESOURCE_ID,
        start_date=JUNE_START, end_date=JUNE_END, options=SyncOptions(**options),
    )


def mapping_for(db_manager, reservation_id, kind='event'):
    with db_manager.get_session() as session:
        return db_manager.get_mapping_by_source(session, kind, reservation_id, RESOURCE_ID)


class TestPushToRemote:
    """Reservations flowing to the remote calendar."""

    @pytest.mark.asyncio
    async def test_new_reservation_creates_remote_event(self, manager, db_manager, remote):
        add_reservation(db_manager, reservation_id=456, name='Board meeting')

        report = await push(manager)

        assert report.success
        assert report.created == 1
        mapping = mapping_for(db_manager, '456')
        assert mapping.sync_status == SyncStatus.SYNCED.value
        assert mapping.remote_event_id is not None

        created = remote.calendars[ROOM][mapping.remote_event_id]
        assert created.subject == 'Board meeting'
        assert created.provenance.source_tag == BRIDGE_SOURCE_TAG
        assert created.provenance.origin_event_id == 'event:456'

    @pytest.mark.asyncio
    async def test_resync_without_changes_is_a_no_op(self, manager, db_manager, remote):
        add_reservation(db_manager, reservation_id=456)
        await push(manager)

        report = await push(manager)

        assert report.created == 0
        assert report.updated == 0
        assert report.skipped == 1
        assert len(remote.events_in(ROOM)) == 1

    @pytest.mark.asyncio
    async def test_local_change_updates_remote_event(self, manager, db_manager, remote):
        reservation_id = add_reservation(db_manager, name='Draft')
        await push(manager)

        with db_manager.get_session() as session:
            row = db_manager.get_reservation(session, 'event', reservation_id)
            db_manager.update_reservation(session, row, name='Final')

        report = await push(manager)

        assert report.updated == 1
        mapping = mapping_for(db_manager, reservation_id)
        assert remote.calendars[ROOM][mapping.remote_event_id].subject == 'Final'

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, manager, db_manager, remote):
        reservation_id = add_reservation(db_manager)

        report = await push(manager, dry_run=True)

        assert report.dry_run
        assert [entry['action'] for entry in report.events_to_process] == [SyncOperation.CREATE.value]
        assert mapping_for(db_manager, reservation_id) is None
        assert remote.events_in(ROOM) == []

    @pytest.mark.asyncio
    async def test_write_failure_marks_mapping_error_and_recovers(self, manager, db_manager, remote):
        reservation_id = add_reservation(db_manager)
        remote.fail_with = RemoteTransientError("Graph API error 503")

        report = await push(manager)

        assert not report.success
        assert report.errors[0]['error_type'] == 'RemoteTransientError'
        assert mapping_for(db_manager, reservation_id).sync_status == SyncStatus.ERROR.value

        remote.fail_with = None
        report = await push(manager)

        assert report.created == 1
        assert mapping_for(db_manager, reservation_id).sync_status == SyncStatus.SYNCED.value

    @pytest.mark.asyncio
    async def test_invalid_reservation_is_rejected(self, manager, db_manager, remote):
        start = datetime(2025, 6, 14, 10, tzinfo=pytz.UTC)
        reservation_id = add_reservation(db_manager, name='', start=start, end=start + timedelta(hours=1))

        report = await push(manager)

        assert report.errors[0]['error_type'] == 'ValidationError'
        mapping = mapping_for(db_manager, reservation_id)
        assert mapping.sync_status == SyncStatus.ERROR.value
        assert remote.events_in(ROOM) == []


class TestConflicts:
    """Overlapping reservations on one resource."""

    @pytest.mark.asyncio
    async def test_higher_priority_reservation_wins(self, manager, db_manager, remote):
        start = datetime(2025, 6, 14, 10, tzinfo=pytz.UTC)
        event_id = add_reservation(db_manager, kind=ReservationKind.EVENT, name='Lecture', start=start)
        allocation_id = add_reservation(
            db_manager, kind=ReservationKind.ALLOCATION, name='Cleaning',
            start=start + timedelta(minutes=30), end=start + timedelta(hours=2)
        )

        report = await push(manager)

        assert report.created == 1
        assert len(report.conflicts) == 1
        assert report.conflicts[0]['event_id'] == allocation_id
        assert report.conflicts[0]['winner_id'] == event_id
        assert mapping_for(db_manager, event_id).sync_status == SyncStatus.SYNCED.value
        loser = mapping_for(db_manager, allocation_id, kind='allocation')
        assert loser.sync_status == SyncStatus.CONFLICT.value
        assert [e.subject for e in remote.events_in(ROOM)] == ['Lecture']

    @pytest.mark.asyncio
    async def test_conflict_is_logged_once(self, manager, db_manager):
        start = datetime(2025, 6, 14, 10, tzinfo=pytz.UTC)
        add_reservation(db_manager, kind=ReservationKind.EVENT, start=start)
        add_reservation(db_manager, kind=ReservationKind.BOOKING, start=start)

        await push(manager)
        await push(manager)

        with db_manager.get_session() as session:
            entries = [e for e in db_manager.get_sync_log(session) if e.action == SyncOperation.CONFLICT.value]
        assert len(entries) == 1


class TestPullFromRemote:
    """Externally created remote events flowing into the booking system."""

    @pytest.mark.asyncio
    async def test_external_event_creates_reservation(self, manager, db_manager, remote):
        start = datetime(2025, 6, 20, 9, tzinfo=pytz.UTC)
        external = remote.add_external(ROOM, 'Walk-in', start, start + timedelta(hours=1))

        report = await pull(manager)

        assert report.created == 1
        with db_manager.get_session() as session:
            mapping = db_manager.get_mapping_by_remote_event(session, external.id)
            reservation = db_manager.get_reservation(session, mapping.source_kind, mapping.source_id)
        assert mapping.sync_status == SyncStatus.SYNCED.value
        assert reservation.name == 'Walk-in'
        assert reservation.origin == BRIDGE_SOURCE_TAG
        assert reservation.origin_event_id == external.id

    @pytest.mark.asyncio
    async def test_round_trip_does_not_echo(self, manager, db_manager, remote):
        add_reservation(db_manager, reservation_id=456)
        start = datetime(2025, 6, 20, 9, tzinfo=pytz.UTC)
        remote.add_external(ROOM, 'Walk-in', start, start + timedelta(hours=1))

        await push(manager)
        await pull(manager)
        push_again = await push(manager)
        pull_again = await pull(manager)

        # The pulled reservation and the pushed event carry provenance and are skipped
        assert push_again.created == 0
        assert pull_again.created == 0
        assert len(remote.events_in(ROOM)) == 2
        with db_manager.get_session() as session:
            assert len(db_manager.list_reservations(session, RESOURCE_ID, JUNE_START, JUNE_END)) == 2


class TestSyncArguments:
    """Bridge lookup and role validation."""

    @pytest.mark.asyncio
    async def test_unknown_bridge(self, manager):
        with pytest.raises(BridgeNotFoundError):
            await manager.sync('booking_system', 'google', RESOURCE_ID, ROOM)

    @pytest.mark.asyncio
    async def test_two_remote_bridges_are_rejected(self, manager):
        manager.register_bridge(FakeRemoteBridge(name='outlook2'))
        with pytest.raises(ValueError):
            await manager.sync('outlook', 'outlook2', ROOM, 'other@example.org')

    def test_bridge_info(self, manager):
        names = {info['name']: info['role'] for info in manager.get_all_bridges_info()}
        assert names == {'booking_system': 'local', 'outlook': 'remote'}


class TestSyncAllPairs:
    """Configured pairs in both directions."""

    @pytest.mark.asyncio
    async def test_bidirectional_pair_runs_both_directions(self, manager, db_manager, remote):
        now = datetime.now(pytz.UTC).replace(microsecond=0)
        add_reservation(db_manager, start=now + timedelta(days=1))

        reports = await manager.sync_all_pairs(SyncOptions())

        assert [(r.source_bridge, r.target_bridge) for r in reports] == [
            ('booking_system', 'outlook'), ('outlook', 'booking_system')
        ]
        assert reports[0].created == 1
        # The event just pushed is bridge-created and not pulled back
        assert reports[1].created == 0
