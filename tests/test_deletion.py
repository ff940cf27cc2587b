"""Tests for deletion and cancellation propagation."""

from datetime import timedelta

import pytest

from calbridge.bridges.base import RemoteTransientError
from calbridge.models import (
    BRIDGE_SOURCE_TAG, CANCELLATION_NOTE, DeletionCheck, SyncDirection, SyncOptions, SyncStatus, TaskStatus
)

from conftest import JUNE_END, JUNE_START, RESOURCE_ID, ROOM, add_reservation


async def push(manager, **options):
    return await manager.sync(
        'booking_system', 'outlook', RESOURCE_ID, ROOM,
        start_date=JUNE_START, end_date=JUNE_END, options=SyncOptions(**options),
    )


async def pull(manager):
    return await manager.sync(
        'outlook', 'booking_system', ROOM, RESOURCE_ID,
        start_date=JUNE_START, end_date=JUNE_END, options=SyncOptions(),
    )


async def push_reservation(manager, db_manager, **fields):
    reservation_id = add_reservation(db_manager, **fields)
    await push(manager)
    with db_manager.get_session() as session:
        return reservation_id, db_manager.get_mapping_by_source(session, 'event', reservation_id, RESOURCE_ID)


def reload_mapping(db_manager, mapping_id):
    with db_manager.get_session() as session:
        return db_manager.get_mapping(session, mapping_id)


def reservation_row(db_manager, reservation_id):
    with db_manager.get_session() as session:
        return db_manager.get_reservation(session, 'event', reservation_id)


class TestDeletionQueueProcessing:
    """Remote deletions flowing back into the booking system."""

    @pytest.mark.asyncio
    async def test_remote_deletion_soft_deletes_reservation(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager, description='Quarterly review')
        remote.remove_external(ROOM, mapping.remote_event_id)
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id=mapping.remote_event_id))

        report = await manager.process_deletion_queue()

        assert report.processed == 1
        assert report.cancelled == 1
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.CANCELLED.value
        row = reservation_row(db_manager, reservation_id)
        assert row.active is False
        assert row.description == 'Quarterly review' + CANCELLATION_NOTE

    @pytest.mark.asyncio
    async def test_duplicate_checks_apply_once(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        remote.remove_external(ROOM, mapping.remote_event_id)
        for source in ('webhook', 'poll'):
            await manager.queue.enqueue(DeletionCheck(
                calendar_id=ROOM, event_id=mapping.remote_event_id, source=source
            ))

        report = await manager.process_deletion_queue()

        assert report.processed == 2
        assert report.cancelled == 1
        assert report.no_op == 1
        assert reservation_row(db_manager, reservation_id).description.count(CANCELLATION_NOTE.strip()) == 1

    @pytest.mark.asyncio
    async def test_existing_event_is_a_no_op(self, manager, db_manager):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id=mapping.remote_event_id))

        report = await manager.process_deletion_queue()

        assert report.no_op == 1
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.SYNCED.value
        assert reservation_row(db_manager, reservation_id).active is True

    @pytest.mark.asyncio
    async def test_unknown_event_is_a_no_op(self, manager):
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id='AAMk-unknown'))
        report = await manager.process_deletion_queue()
        assert report.no_op == 1
        assert report.success

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, manager, db_manager, remote):
        _, mapping = await push_reservation(manager, db_manager)
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id=mapping.remote_event_id))
        remote.fail_reads = RemoteTransientError("Graph API timeout")

        report = await manager.process_deletion_queue()

        assert report.retried == 1
        assert report.failed == 0
        assert report.errors[0]['error_type'] == 'RemoteTransientError'
        with db_manager.get_session() as session:
            assert db_manager.count_tasks(session, TaskStatus.PENDING.value) == 1
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.SYNCED.value

    @pytest.mark.asyncio
    async def test_exhausted_task_is_failed(self, tmp_path):
        from conftest import FakeRemoteBridge, make_settings
        from calbridge.bridge_manager import BridgeManager
        from calbridge.bridges.booking import BookingSystemBridge
        from calbridge.database import DatabaseManager
        from calbridge.models import CalendarPair, SyncConfiguration

        settings = make_settings(tmp_path, sync_config=SyncConfiguration(
            queue_max_attempts=1,
            calendar_pairs=[CalendarPair(resource_id=RESOURCE_ID, remote_calendar_id=ROOM)],
        ))
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        remote = FakeRemoteBridge()
        manager = BridgeManager(settings, db_manager=db_manager, bridges=[
            BookingSystemBridge(settings, db_manager, use_direct_store=True), remote
        ])
        _, mapping = await push_reservation(manager, db_manager)
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id=mapping.remote_event_id))
        remote.fail_reads = RemoteTransientError("Graph API timeout")

        report = await manager.process_deletion_queue()

        assert report.failed == 1
        assert report.retried == 0


class TestOrphanScan:
    """Local reservations that vanished between passes."""

    @pytest.mark.asyncio
    async def test_vanished_reservation_removes_remote_event(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        with db_manager.get_session() as session:
            db_manager.soft_delete_reservation(session, db_manager.get_reservation(session, 'event', reservation_id))

        report = await push(manager, handle_deletions=True)
        assert report.deletions_enqueued == 1

        deletions = await manager.process_deletion_queue()

        assert deletions.cancelled == 1
        assert mapping.remote_event_id not in remote.calendars[ROOM]
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_remote_not_found_on_update_enqueues_check(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        del remote.calendars[ROOM][mapping.remote_event_id]
        with db_manager.get_session() as session:
            row = db_manager.get_reservation(session, 'event', reservation_id)
            db_manager.update_reservation(session, row, name='Renamed')

        report = await push(manager)

        assert report.deletions_enqueued == 1
        assert report.success
        deletions = await manager.process_deletion_queue()
        assert deletions.cancelled == 1
        assert reservation_row(db_manager, reservation_id).active is False


class TestCancellationScan:
    """Local cancellations and reactivations."""

    @pytest.mark.asyncio
    async def test_cancel_and_reactivate(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        old_remote_id = mapping.remote_event_id
        with db_manager.get_session() as session:
            db_manager.soft_delete_reservation(session, db_manager.get_reservation(session, 'event', reservation_id))

        report = await manager.detect_and_sync_cancellations()

        assert report.cancelled == 1
        assert remote.events_in(ROOM) == []
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.CANCELLED.value

        # A second scan leaves the cancelled mapping alone
        again = await manager.detect_and_sync_cancellations()
        assert again.cancelled == 0
        assert again.reactivated == 0

        with db_manager.get_session() as session:
            db_manager.update_reservation(
                session, db_manager.get_reservation(session, 'event', reservation_id), active=True
            )

        report = await manager.detect_and_sync_cancellations()

        assert report.reactivated == 1
        reactivated = reload_mapping(db_manager, mapping.id)
        assert reactivated.sync_status == SyncStatus.PENDING.value
        assert reactivated.remote_event_id is None

        sync_report = await push(manager)

        assert sync_report.created == 1
        new_remote_id = reload_mapping(db_manager, mapping.id).remote_event_id
        assert new_remote_id not in (None, old_remote_id)

    @pytest.mark.asyncio
    async def test_cancelled_mapping_is_skipped_by_sync(self, manager, db_manager, remote):
        reservation_id, mapping = await push_reservation(manager, db_manager)
        with db_manager.get_session() as session:
            db_manager.mark_mapping_cancelled(session, db_manager.get_mapping(session, mapping.id))

        report = await push(manager)

        assert report.created == 0
        assert report.updated == 0
        assert len(remote.events_in(ROOM)) == 1

    @pytest.mark.asyncio
    async def test_reactivated_import_is_pushed_as_new_remote_event(self, manager, db_manager, remote):
        external = remote.add_external(ROOM, 'Walk-in', JUNE_START + timedelta(days=3),
                                       JUNE_START + timedelta(days=3, hours=1))
        await pull(manager)
        with db_manager.get_session() as session:
            mapping = db_manager.get_mapping_by_remote_event(session, external.id)
        assert reservation_row(db_manager, mapping.source_id).origin == BRIDGE_SOURCE_TAG

        remote.remove_external(ROOM, external.id)
        await manager.queue.enqueue(DeletionCheck(calendar_id=ROOM, event_id=external.id))
        assert (await manager.process_deletion_queue()).cancelled == 1
        assert reservation_row(db_manager, mapping.source_id).active is False

        with db_manager.get_session() as session:
            db_manager.update_reservation(
                session, db_manager.get_reservation(session, 'event', mapping.source_id), active=True
            )
        assert (await manager.detect_and_sync_cancellations()).reactivated == 1
        reactivated = reload_mapping(db_manager, mapping.id)
        assert reactivated.sync_direction == SyncDirection.TO_REMOTE.value
        assert reactivated.source_bridge == 'booking_system'

        report = await push(manager)

        assert report.created == 1
        new_remote_id = reload_mapping(db_manager, mapping.id).remote_event_id
        assert new_remote_id not in (None, external.id)
        assert [event.id for event in remote.events_in(ROOM)] == [new_remote_id]

        # Neither direction echoes the recreated event
        assert (await pull(manager)).created == 0
        assert (await push(manager)).created == 0
        assert len(remote.events_in(ROOM)) == 1
        assert reload_mapping(db_manager, mapping.id).sync_status == SyncStatus.SYNCED.value
