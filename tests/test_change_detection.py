"""Tests for webhook ingestion, delta polling and subscription upkeep."""

from datetime import datetime, timedelta

import pytest
import pytz

from calbridge.bridges.base import QueueBackendError, RemoteTransientError
from calbridge.change_detection import parse_notifications
from calbridge.models import SyncDirection, SyncOptions, SyncStatus, TaskStatus, utcnow

from conftest import RESOURCE_ID, ROOM, add_reservation

WEBHOOK_URL = 'https://bridge.example.org/webhooks/outlook'


async def push_one(manager, db_manager):
    """Push one reservation inside the polling window and return its mapping."""
    start = datetime.now(pytz.UTC).replace(microsecond=0) + timedelta(days=1)
    reservation_id = add_reservation(db_manager, start=start)
    await manager.sync('booking_system', 'outlook', RESOURCE_ID, ROOM, options=SyncOptions())
    with db_manager.get_session() as session:
        return db_manager.get_mapping_by_source(session, 'event', reservation_id, RESOURCE_ID)


def pending_checks(db_manager):
    with db_manager.get_session() as session:
        return db_manager.count_tasks(session, TaskStatus.PENDING.value)


class TestParseNotifications:
    """Test notification normalization."""

    def test_graph_envelope(self):
        payload = {'value': [{
            'subscriptionId': 'sub-1',
            'clientState': 'secret',
            'changeType': 'deleted',
            'resource': 'Users/room1@example.org/Events/AAMk-1',
        }]}
        notifications, invalid = parse_notifications(payload)
        assert invalid == []
        assert notifications[0].calendar_id == 'room1@example.org'
        assert notifications[0].event_id == 'AAMk-1'
        assert notifications[0].change_type == 'deleted'
        assert notifications[0].client_state == 'secret'

    def test_normalized_form(self):
        notifications, _ = parse_notifications({'calendarId': ROOM, 'eventId': 'e1', 'changeType': 'Updated'})
        assert notifications[0].change_type == 'updated'

    def test_missing_event_id_is_invalid(self):
        notifications, invalid = parse_notifications({'value': [{'changeType': 'deleted'}, 'garbage']})
        assert notifications == []
        assert len(invalid) == 2


class TestWebhookIngestor:
    """Test webhook ingestion."""

    @pytest.mark.asyncio
    async def test_validation_token_is_echoed(self, manager):
        result = await manager.ingest_webhook_notification('outlook', {}, validation_token='token-123')
        assert result.validation_response == 'token-123'
        assert result.received == 0

    @pytest.mark.asyncio
    async def test_deleted_notification_enqueues_check(self, manager, db_manager):
        mapping = await push_one(manager, db_manager)
        subscription = await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL, RESOURCE_ID)

        result = await manager.ingest_webhook_notification('outlook', {'value': [{
            'subscriptionId': subscription['subscription_id'],
            'changeType': 'deleted',
            'resource': f"Users/{ROOM}/Events/{mapping.remote_event_id}",
        }]})

        assert result.enqueued == 1
        assert pending_checks(db_manager) == 1
        with db_manager.get_session() as session:
            stored = db_manager.get_subscription(session, subscription['subscription_id'])
            assert stored.notification_count == 1

    @pytest.mark.asyncio
    async def test_self_originated_update_is_skipped(self, manager, db_manager):
        mapping = await push_one(manager, db_manager)
        await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL, RESOURCE_ID)

        result = await manager.ingest_webhook_notification('outlook', {
            'calendarId': ROOM, 'eventId': mapping.remote_event_id, 'changeType': 'updated',
        })

        assert result.skipped == 1
        assert result.enqueued == 0
        assert pending_checks(db_manager) == 0

    @pytest.mark.asyncio
    async def test_client_state_mismatch_is_rejected(self, tmp_path):
        from conftest import FakeRemoteBridge, make_settings
        from calbridge.bridge_manager import BridgeManager
        from calbridge.bridges.booking import BookingSystemBridge
        from calbridge.database import DatabaseManager

        settings = make_settings(tmp_path, webhook_client_state='expected')
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        manager = BridgeManager(settings, db_manager=db_manager, bridges=[
            BookingSystemBridge(settings, db_manager, use_direct_store=True), FakeRemoteBridge()
        ])
        subscription = await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL)

        result = await manager.ingest_webhook_notification('outlook', {
            'subscriptionId': subscription['subscription_id'], 'clientState': 'forged',
            'eventId': 'AAMk-9', 'changeType': 'deleted',
        })

        assert result.rejected == 1
        assert result.enqueued == 0
        assert not result.success

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_rejected(self, manager):
        result = await manager.ingest_webhook_notification('outlook', {
            'subscriptionId': 'nope', 'eventId': 'AAMk-9', 'changeType': 'deleted',
        })
        assert result.rejected == 1


class TestChangePoller:
    """Test delta polling."""

    @pytest.mark.asyncio
    async def test_first_poll_stores_cursor(self, manager, db_manager):
        report = await manager.poll_changes()

        assert report.success
        assert report.calendars_polled == 1
        assert report.calendars[0].used_cursor is False
        with db_manager.get_session() as session:
            state = db_manager.get_change_state(session, ROOM)
        assert state.delta_cursor is not None
        assert state.resource_id == RESOURCE_ID

    @pytest.mark.asyncio
    async def test_rejected_cursor_falls_back_to_full_window(self, manager, db_manager, remote):
        await manager.poll_changes()
        with db_manager.get_session() as session:
            old_cursor = db_manager.get_change_state(session, ROOM).delta_cursor
        remote.rejected_cursors.add(old_cursor)

        report = await manager.poll_changes()

        assert report.success
        assert report.fallbacks == 1
        assert report.calendars[0].fell_back is True
        with db_manager.get_session() as session:
            state = db_manager.get_change_state(session, ROOM)
        assert state.delta_cursor not in (None, old_cursor)
        assert state.healthy is True

    @pytest.mark.asyncio
    async def test_delta_deletion_enqueues_check(self, manager, db_manager, remote):
        mapping = await push_one(manager, db_manager)
        await manager.poll_changes()
        remote.remove_external(ROOM, mapping.remote_event_id)

        report = await manager.poll_changes()

        assert report.calendars[0].used_cursor is True
        assert report.deletions_enqueued == 1
        assert pending_checks(db_manager) == 1

    @pytest.mark.asyncio
    async def test_queue_outage_keeps_cursor_and_records_failure(self, manager, db_manager, remote, monkeypatch):
        mapping = await push_one(manager, db_manager)
        await manager.poll_changes()
        with db_manager.get_session() as session:
            cursor = db_manager.get_change_state(session, ROOM).delta_cursor
        remote.remove_external(ROOM, mapping.remote_event_id)

        async def unavailable(check):
            raise QueueBackendError("database is locked")

        monkeypatch.setattr(manager.queue, 'enqueue', unavailable)
        report = await manager.poll_changes()

        assert not report.success
        assert report.deletions_enqueued == 0
        assert 'could not be queued' in report.calendars[0].error
        with db_manager.get_session() as session:
            state = db_manager.get_change_state(session, ROOM)
        assert state.delta_cursor == cursor
        assert state.consecutive_error_count == 1

    @pytest.mark.asyncio
    async def test_snapshot_missing_event_enqueues_check(self, manager, db_manager, remote):
        mapping = await push_one(manager, db_manager)
        # Gone before the first poll: only the snapshot comparison can notice
        del remote.calendars[ROOM][mapping.remote_event_id]

        report = await manager.poll_changes()

        assert report.deletions_enqueued == 1

    @pytest.mark.asyncio
    async def test_new_external_event_is_tracked(self, manager, db_manager, remote):
        now = datetime.now(pytz.UTC)
        external = remote.add_external(ROOM, 'Walk-in', now + timedelta(days=1), now + timedelta(days=1, hours=1))

        report = await manager.poll_changes()

        assert report.new_mappings == 1
        with db_manager.get_session() as session:
            mapping = db_manager.get_mapping_by_remote_event(session, external.id)
        assert mapping.sync_status == SyncStatus.PENDING.value
        assert mapping.sync_direction == SyncDirection.FROM_REMOTE.value
        assert mapping.source_id is None
        assert mapping.resource_id == RESOURCE_ID

    @pytest.mark.asyncio
    async def test_own_events_are_not_tracked_as_new(self, manager, db_manager):
        await push_one(manager, db_manager)
        report = await manager.poll_changes()
        assert report.new_mappings == 0

    @pytest.mark.asyncio
    async def test_repeated_failures_mark_calendar_unhealthy(self, manager, db_manager, remote):
        await push_one(manager, db_manager)
        remote.fail_reads = RemoteTransientError("Graph API timeout")

        for _ in range(manager.config.unhealthy_after_errors - 1):
            report = await manager.poll_changes()
            assert report.calendars[0].healthy is True
        report = await manager.poll_changes()

        assert not report.success
        assert report.calendars[0].healthy is False
        # Every failed poll re-checks the synced mappings of the calendar
        assert report.calendars[0].deletions_enqueued == 1
        remote.fail_reads = None
        status = await manager.health_status()
        assert status['status'] == 'degraded'

        await manager.poll_changes()
        status = await manager.health_status()
        assert status['polling'][0]['healthy'] is True


class TestSubscriptionManager:
    """Test subscription creation and renewal."""

    @pytest.mark.asyncio
    async def test_subscribe_requires_notification_url(self, manager):
        with pytest.raises(ValueError):
            await manager.subscribe_calendar('outlook', ROOM)

    @pytest.mark.asyncio
    async def test_expiring_subscription_is_renewed(self, manager, db_manager):
        subscription = await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL)
        with db_manager.get_session() as session:
            row = db_manager.get_subscription(session, subscription['subscription_id'])
            db_manager.update_subscription_expiry(session, row, utcnow() + timedelta(minutes=5))

        result = await manager.renew_subscriptions()

        assert result['renewed'] == 1
        with db_manager.get_session() as session:
            row = db_manager.get_subscription(session, subscription['subscription_id'])
            assert row.expires_at.replace(tzinfo=pytz.UTC) > utcnow() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unrenewable_subscription_is_recreated(self, manager, db_manager, remote):
        remote.renewable = False
        subscription = await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL, RESOURCE_ID)
        with db_manager.get_session() as session:
            row = db_manager.get_subscription(session, subscription['subscription_id'])
            db_manager.update_subscription_expiry(session, row, utcnow() + timedelta(minutes=5))

        result = await manager.renew_subscriptions()

        assert result['recreated'] == 1
        with db_manager.get_session() as session:
            active = db_manager.get_active_subscriptions(session, ROOM)
            assert [s.subscription_id for s in active] != [subscription['subscription_id']]
            assert len(active) == 1
            assert active[0].resource_id == RESOURCE_ID

    @pytest.mark.asyncio
    async def test_fresh_subscription_is_left_alone(self, manager):
        await manager.subscribe_calendar('outlook', ROOM, WEBHOOK_URL)
        result = await manager.renew_subscriptions()
        assert result['checked'] == 0

