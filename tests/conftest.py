"""Shared fixtures: isolated settings, a SQLite database and an in-memory remote calendar."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calbridge.bridge_manager import BridgeManager
from calbridge.bridges.base import BaseBridge, DeltaCursorInvalid, RemoteNotFoundError
from calbridge.bridges.booking import BookingSystemBridge
from calbridge.config import Settings
from calbridge.database import DatabaseManager
from calbridge.models import (
    BridgeCapabilities, BridgeRole, CalendarEvent, CalendarInfo, CalendarPair, ChangeSet, ReservationKind,
    SyncConfiguration, utcnow
)

RESOURCE_ID = '123'
ROOM = 'room1@example.org'
JUNE_START = datetime(2025, 6, 1, tzinfo=pytz.UTC)
JUNE_END = datetime(2025, 6, 30, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        booking_use_direct_store=True,
        outlook_tenant_id='tenant',
        outlook_client_id='client',
        outlook_client_secret='secret',
        sync_config=SyncConfiguration(
            calendar_pairs=[CalendarPair(name='Room 1', resource_id=RESOURCE_ID, remote_calendar_id=ROOM)]
        ),
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeRemoteBridge(BaseBridge):
    """In-memory remote calendar with delta cursors and subscriptions."""

    bridge_type = "outlook"
    role = BridgeRole.REMOTE

    def __init__(self, name: str = "outlook"):
        super().__init__(name=name)
        self.calendars: Dict[str, Dict[str, CalendarEvent]] = {}
        self.rejected_cursors: Set[str] = set()
        self.pending_changes: Dict[str, Set[str]] = {}
        self.pending_deletions: Dict[str, Set[str]] = {}
        self.fail_with: Optional[Exception] = None
        self.fail_reads: Optional[Exception] = None
        self.renewable = True
        self.subscriptions: Dict[str, str] = {}
        self._counter = 0

    def default_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities(supports_webhooks=True, supports_delta=True, max_events_per_request=999)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def add_external(self, calendar_id: str, subject: str, start: datetime, end: datetime) -> CalendarEvent:
        """Simulate a user creating an event directly in the remote calendar."""
        event = CalendarEvent(
            id=self._next_id('ext'), bridge_type=self.bridge_type, subject=subject, start=start, end=end
        )
        self.calendars.setdefault(calendar_id, {})[event.id] = event
        self.pending_changes.setdefault(calendar_id, set()).add(event.id)
        return event

    def remove_external(self, calendar_id: str, event_id: str) -> None:
        """Simulate a user deleting an event directly in the remote calendar."""
        self.calendars.get(calendar_id, {}).pop(event_id, None)
        self.pending_deletions.setdefault(calendar_id, set()).add(event_id)

    def events_in(self, calendar_id: str) -> List[CalendarEvent]:
        return list(self.calendars.get(calendar_id, {}).values())

    async def list_events(self, calendar_id, start, end):
        if self.fail_reads:
            raise self.fail_reads
        return [
            event for event in self.events_in(calendar_id)
            if event.start < end and event.end > start
        ]

    async def get_event(self, calendar_id, event_id):
        if self.fail_reads:
            raise self.fail_reads
        try:
            return self.calendars[calendar_id][event_id]
        except KeyError:
            raise RemoteNotFoundError(f"Event {event_id} not found")

    async def _create_event(self, calendar_id, event):
        if self.fail_with:
            raise self.fail_with
        event_id = self._next_id('AAMk')
        self.calendars.setdefault(calendar_id, {})[event_id] = event.copy(update={
            'id': event_id, 'bridge_type': self.bridge_type, 'kind': None, 'last_modified': utcnow()
        })
        return event_id

    async def update_event(self, calendar_id, event_id, event):
        if self.fail_with:
            raise self.fail_with
        self.validate_event(event)
        if event_id not in self.calendars.get(calendar_id, {}):
            raise RemoteNotFoundError(f"Event {event_id} not found")
        self.calendars[calendar_id][event_id] = event.copy(update={
            'id': event_id, 'bridge_type': self.bridge_type, 'kind': None, 'last_modified': utcnow()
        })
        return True

    async def delete_event(self, calendar_id, event_id):
        if event_id not in self.calendars.get(calendar_id, {}):
            raise RemoteNotFoundError(f"Event {event_id} not found")
        del self.calendars[calendar_id][event_id]
        return True

    async def list_calendars(self):
        return [CalendarInfo(id=cal, name=cal, bridge_type=self.bridge_type) for cal in self.calendars]

    async def subscribe_to_changes(self, calendar_id, callback_url):
        subscription_id = self._next_id('sub')
        self.subscriptions[subscription_id] = calendar_id
        return subscription_id

    async def unsubscribe_from_changes(self, subscription_id):
        self.subscriptions.pop(subscription_id, None)
        return True

    async def renew_subscription(self, subscription_id, ttl=timedelta(days=1)):
        if not self.renewable:
            return None
        return utcnow() + ttl

    async def get_change_set(self, calendar_id, cursor=None, start=None, end=None):
        if self.fail_reads:
            raise self.fail_reads
        if cursor in self.rejected_cursors:
            raise DeltaCursorInvalid(f"Cursor {cursor} expired")
        current = self.calendars.get(calendar_id, {})
        if cursor:
            changed = {
                event_id: current[event_id]
                for event_id in self.pending_changes.get(calendar_id, set())
                if event_id in current
            }
            deleted = set(self.pending_deletions.get(calendar_id, set()))
        else:
            changed = {event_id: event for event_id, event in current.items() if event.start < end and event.end > start}
            deleted = set()
        self.pending_changes[calendar_id] = set()
        self.pending_deletions[calendar_id] = set()
        return ChangeSet(
            changed=changed,
            deleted_ids=deleted,
            next_cursor=self._next_id('cursor'),
            used_cursor=bool(cursor),
            snapshot=not cursor,
        )


def add_reservation(db_manager, reservation_id=None, kind=ReservationKind.EVENT, resource_id=RESOURCE_ID,
                    name='Team meeting', start=None, end=None, **fields):
    """Insert a local reservation and return its id as a string."""
    start = start or datetime(2025, 6, 14, 10, 0, tzinfo=pytz.UTC)
    end = end or start + timedelta(hours=1)
    values = dict(kind=ReservationKind(kind).value, resource_id=resource_id, name=name, start=start, end=end,
                  active=True)
    if reservation_id is not None:
        values['id'] = int(reservation_id)
    values.update(fields)
    with db_manager.get_session() as session:
        row = db_manager.create_reservation(session, **values)
        return str(row.id)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def remote():
    return FakeRemoteBridge()


@pytest.fixture
def booking(settings, db_manager):
    return BookingSystemBridge(settings, db_manager, use_direct_store=True)


@pytest.fixture
def manager(settings, db_manager, booking, remote):
    return BridgeManager(settings, db_manager=db_manager, bridges=[booking, remote])
