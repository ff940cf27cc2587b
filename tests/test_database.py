"""Tests for the sync state store."""

from datetime import timedelta

from calbridge.database import DeletionCheckTaskDB
from calbridge.models import CANCELLATION_NOTE, DeletionCheck, SyncDirection, SyncStatus, TaskStatus, utcnow

from conftest import RESOURCE_ID, ROOM, add_reservation


def _upsert(db_manager, session, **overrides):
    values = dict(
        source_kind='event', source_id='456', resource_id=RESOURCE_ID, remote_calendar_id=ROOM,
        sync_direction='to_remote',
    )
    values.update(overrides)
    return db_manager.upsert_mapping(session, **values)


class TestMappings:
    """Test mapping uniqueness and status transitions."""

    def test_upsert_returns_existing_row_for_same_source(self, db_manager):
        with db_manager.get_session() as session:
            first, created = _upsert(db_manager, session)
            second, created_again = _upsert(db_manager, session)
        assert created is True
        assert created_again is False
        assert first.id == second.id

    def test_upsert_matches_remote_event_id(self, db_manager):
        with db_manager.get_session() as session:
            first, _ = _upsert(db_manager, session, source_id=None, remote_event_id='AAMk-1',
                               sync_direction='from_remote')
            second, created = _upsert(db_manager, session, source_id=None, remote_event_id='AAMk-1',
                                      sync_direction='from_remote')
        assert created is False
        assert first.id == second.id

    def test_upsert_returns_winner_when_insert_race_is_lost(self, db_manager, monkeypatch):
        with db_manager.get_session() as session:
            winner, _ = _upsert(db_manager, session)

        # The first lookup runs before the other pass committed its row
        real_find = db_manager._find_by_keys
        lookups = []

        def stale_find(*args):
            lookups.append(args)
            return None if len(lookups) == 1 else real_find(*args)

        monkeypatch.setattr(db_manager, '_find_by_keys', stale_find)
        with db_manager.get_session() as session:
            mapping, created = _upsert(db_manager, session)
            assert len(db_manager.list_mappings(session)) == 1

        assert created is False
        assert mapping.id == winner.id
        assert len(lookups) == 2

    def test_new_mapping_is_pending(self, db_manager):
        with db_manager.get_session() as session:
            mapping, _ = _upsert(db_manager, session)
        assert mapping.sync_status == SyncStatus.PENDING.value
        assert mapping.remote_event_id is None

    def test_status_transitions(self, db_manager):
        with db_manager.get_session() as session:
            mapping, _ = _upsert(db_manager, session)
            db_manager.mark_mapping_synced(session, mapping, remote_event_id='AAMk-1')
            assert mapping.sync_status == SyncStatus.SYNCED.value
            assert mapping.last_modified_remote is not None

            db_manager.mark_mapping_cancelled(session, mapping, 'gone')
            assert mapping.sync_status == SyncStatus.CANCELLED.value

            db_manager.reset_mapping_for_reactivation(session, mapping)
            assert mapping.sync_status == SyncStatus.PENDING.value
            assert mapping.remote_event_id is None

    def test_reactivation_hands_imported_mapping_to_local_side(self, db_manager):
        with db_manager.get_session() as session:
            mapping, _ = _upsert(
                db_manager, session, source_id=None, remote_event_id='AAMk-1', sync_direction='from_remote',
                source_bridge='outlook', target_bridge='booking_system',
            )
            db_manager.mark_mapping_synced(session, mapping, source_id='42', wrote_remote=False)
            db_manager.mark_mapping_cancelled(session, mapping)

            db_manager.reset_mapping_for_reactivation(session, mapping)

            assert mapping.sync_direction == SyncDirection.TO_REMOTE.value
            assert mapping.source_bridge == 'booking_system'
            assert mapping.target_bridge == 'outlook'
            assert mapping.source_id == '42'

    def test_statistics(self, db_manager):
        with db_manager.get_session() as session:
            mapping, _ = _upsert(db_manager, session)
            _upsert(db_manager, session, source_id='457')
            db_manager.mark_mapping_error(session, mapping, 'boom')
            stats = db_manager.get_mapping_statistics(session)
        assert stats['total'] == 2
        assert stats['error'] == 1
        assert stats['pending'] == 1


class TestDeletionQueueTable:
    """Test durable queue claims and retry accounting."""

    def _enqueue(self, db_manager, event_id='AAMk-1', max_attempts=3):
        with db_manager.get_session() as session:
            return db_manager.enqueue_deletion_check(
                session, DeletionCheck(calendar_id=ROOM, event_id=event_id), max_attempts=max_attempts
            ).id

    def test_claimed_task_is_not_claimed_twice(self, db_manager):
        self._enqueue(db_manager)
        with db_manager.get_session() as session:
            first = db_manager.claim_deletion_checks(session)
            second = db_manager.claim_deletion_checks(session)
        assert len(first) == 1
        assert first[0].status == TaskStatus.PROCESSING.value
        assert second == []

    def test_failure_reschedules_with_backoff(self, db_manager):
        task_id = self._enqueue(db_manager)
        with db_manager.get_session() as session:
            db_manager.claim_deletion_checks(session)
            status = db_manager.fail_deletion_check(session, task_id, 'timeout')
            task = session.get(DeletionCheckTaskDB, task_id)
            assert status == TaskStatus.PENDING.value
            assert task.attempts == 1
            # Not due yet
            assert db_manager.claim_deletion_checks(session) == []

    def test_failure_after_max_attempts(self, db_manager):
        task_id = self._enqueue(db_manager, max_attempts=1)
        with db_manager.get_session() as session:
            db_manager.claim_deletion_checks(session)
            status = db_manager.fail_deletion_check(session, task_id, 'timeout')
            assert status == TaskStatus.FAILED.value
            assert db_manager.count_tasks(session, TaskStatus.FAILED.value) == 1

    def test_expired_lease_is_claimed_again(self, db_manager):
        task_id = self._enqueue(db_manager)
        with db_manager.get_session() as session:
            assert len(db_manager.claim_deletion_checks(session, lease_seconds=300)) == 1
            # Consumer died without completing; the lease is still fresh
            assert db_manager.claim_deletion_checks(session, lease_seconds=300) == []

            session.query(DeletionCheckTaskDB).filter(DeletionCheckTaskDB.id == task_id).update(
                {DeletionCheckTaskDB.claimed_at: utcnow() - timedelta(minutes=10)}, synchronize_session=False
            )
            session.commit()

            reclaimed = db_manager.claim_deletion_checks(session, lease_seconds=300)
            assert [task.id for task in reclaimed] == [task_id]
            assert reclaimed[0].status == TaskStatus.PROCESSING.value
            assert db_manager.claim_deletion_checks(session, lease_seconds=300) == []


class TestChangeState:
    """Test polling health bookkeeping."""

    def test_unhealthy_after_threshold_and_recovery(self, db_manager):
        with db_manager.get_session() as session:
            state = db_manager.get_or_create_change_state(session, ROOM)
            for _ in range(2):
                db_manager.record_poll_failure(session, state, 'timeout', unhealthy_after=3)
            assert state.healthy is True
            db_manager.record_poll_failure(session, state, 'timeout', unhealthy_after=3)
            assert state.healthy is False
            assert state.consecutive_error_count == 3

            db_manager.record_poll_success(session, state, 'cursor-1')
            assert state.healthy is True
            assert state.consecutive_error_count == 0
            assert state.delta_cursor == 'cursor-1'


class TestSubscriptions:
    """Test subscription rows."""

    def test_expiring_and_notification_count(self, db_manager):
        with db_manager.get_session() as session:
            soon = db_manager.create_subscription(session, 'sub-1', ROOM, utcnow() + timedelta(minutes=10))
            db_manager.create_subscription(session, 'sub-2', ROOM, utcnow() + timedelta(days=2))
            expiring = db_manager.get_expiring_subscriptions(session, utcnow() + timedelta(hours=1))
            assert [s.subscription_id for s in expiring] == ['sub-1']

            db_manager.record_notification(session, soon)
            session.expire_all()
            assert db_manager.get_subscription(session, 'sub-1').notification_count == 1


def test_soft_delete_appends_note_once(db_manager):
    reservation_id = add_reservation(db_manager, description='Weekly sync')
    with db_manager.get_session() as session:
        row = db_manager.get_reservation(session, 'event', reservation_id)
        db_manager.soft_delete_reservation(session, row)
        db_manager.soft_delete_reservation(session, row)
        assert row.active is False
        assert row.description.count(CANCELLATION_NOTE.strip()) == 1
