"""Base bridge interface shared by every calendar system adapter."""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from ..models import (
    BridgeCapabilities, BridgeRole, CalendarEvent, CalendarInfo, ChangeSet, Provenance, utcnow
)

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base exception for bridge errors."""
    pass


class ValidationError(BridgeError):
    """Malformed event; rejected and never retried."""

    def __init__(self, message: str, fields: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.fields = fields or {}


class RemoteTransientError(BridgeError):
    """Network failure, 5xx, rate limit or timeout; retried on the next pass."""
    pass


class AuthenticationError(RemoteTransientError):
    """Authentication-related errors."""
    pass


class RemoteNotFoundError(BridgeError):
    """Expected event or calendar no longer exists (deletion signal)."""
    pass


class DeltaCursorInvalid(BridgeError):
    """Stored delta cursor was rejected or has expired."""
    pass


class QueueBackendError(BridgeError):
    """Queue backend unavailable."""
    pass


class BridgeNotFoundError(BridgeError):
    """No bridge registered under the requested name."""
    pass


class BaseBridge(ABC):
    """Abstract base class for calendar bridges."""

    bridge_type: str = "generic"
    role: BridgeRole = BridgeRole.REMOTE

    def __init__(self, name: Optional[str] = None, capability_overrides: Optional[Dict[str, Any]] = None):
        """Initialize bridge.

        Args:
            name: Registry name, defaults to the bridge type
            capability_overrides: Values replacing entries of the static capability record
        """
        self.name = name or self.bridge_type
        self.logger = logger.getChild(self.name)
        self._capability_overrides = capability_overrides or {}

    def default_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities()

    @property
    def capabilities(self) -> BridgeCapabilities:
        """Static capability record consulted when choosing a sync strategy."""
        caps = self.default_capabilities()
        if self._capability_overrides:
            caps = caps.copy(update=self._capability_overrides)
        return caps

    @abstractmethod
    async def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        """List events of a calendar within a time window.

        Args:
            calendar_id: Calendar or resource ID
            start: Window start
            end: Window end

        Returns:
            Events in source order, empty list when there are none

        Raises:
            RemoteTransientError: If the calendar cannot be read
        """
        pass

    @abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        """Get a specific event by ID.

        Raises:
            RemoteNotFoundError: If the event no longer exists
            RemoteTransientError: If the event cannot be retrieved
        """
        pass

    @abstractmethod
    async def _create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        pass

    @abstractmethod
    async def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> bool:
        """Update an existing event.

        Args:
            calendar_id: Calendar ID
            event_id: External event ID
            event: Updated event data

        Returns:
            True when the event was updated

        Raises:
            ValidationError: If the event data is malformed
            RemoteNotFoundError: If the event no longer exists
            RemoteTransientError: If the update failed
        """
        pass

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event.

        Raises:
            RemoteNotFoundError: If the event no longer exists
            RemoteTransientError: If the delete failed
        """
        pass

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        """List calendars (resources, rooms) available through this bridge."""
        pass

    @abstractmethod
    async def subscribe_to_changes(self, calendar_id: str, callback_url: str) -> str:
        """Subscribe to change notifications.

        Returns:
            Subscription ID
        """
        pass

    @abstractmethod
    async def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        pass

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        """Create a new event carrying a provenance tag.

        Args:
            calendar_id: Calendar ID
            event: Event to create; ``provenance`` is filled in when missing

        Returns:
            External ID of the created event

        Raises:
            ValidationError: If subject/start/end are missing or start >= end
            RemoteTransientError: If the event cannot be created
        """
        self.validate_event(event)
        if event.provenance is None:
            event = event.copy(update={
                'provenance': Provenance(origin_bridge=event.bridge_type or 'unknown', origin_event_id=event.id or None)
            })
        self.logger.debug(f"Creating event '{event.subject}' in {calendar_id}")
        return await self._create_event(calendar_id, event)

    async def create_subscription(
        self,
        calendar_id: str,
        notification_url: str,
        ttl: timedelta = timedelta(days=1),
        client_state: Optional[str] = None
    ) -> Dict[str, Any]:
        """Subscribe and describe the subscription for storage."""
        subscription_id = await self.subscribe_to_changes(calendar_id, notification_url)
        return {
            'id': subscription_id,
            'expires_at': utcnow() + ttl,
            'client_state': client_state,
        }

    async def renew_subscription(self, subscription_id: str, ttl: timedelta = timedelta(days=1)) -> Optional[datetime]:
        """Extend a subscription in place.

        Returns:
            New expiry, or None when the bridge cannot renew and the
            subscription must be recreated
        """
        return None

    async def get_change_set(
        self,
        calendar_id: str,
        cursor: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> ChangeSet:
        """Return changed and deleted events.

        Bridges without delta support return a windowed snapshot and no
        cursor; the cursor argument is ignored.
        """
        events = await self.list_events(calendar_id, start, end)
        return ChangeSet(
            changed={event.id: event for event in events},
            deleted_ids=set(),
            next_cursor=None,
            used_cursor=False,
            snapshot=True,
        )

    def validate_event(self, event: CalendarEvent) -> None:
        """Reject events that cannot be written to any calendar.

        Raises:
            ValidationError: With the offending fields attached
        """
        missing = [name for name in ('subject', 'start', 'end') if not getattr(event, name)]
        if missing:
            fields = {name: getattr(event, name) for name in missing}
            self.logger.warning(f"Rejecting event {event.id or '<new>'}: missing {', '.join(missing)}")
            raise ValidationError(f"Event is missing required fields: {', '.join(missing)}", fields)
        if event.start >= event.end:
            fields = {'start': event.start, 'end': event.end}
            self.logger.warning(f"Rejecting event {event.id or '<new>'}: start {event.start} >= end {event.end}")
            raise ValidationError("Event start must be before end", fields)

    def is_own_event(self, event: CalendarEvent) -> bool:
        """True when the event was written by this engine."""
        return event.is_bridge_created()

    async def health_check(self) -> Dict[str, Any]:
        """Time ``list_calendars`` and report the bridge's health.

        Returns:
            Dictionary with health check results
        """
        started = time.monotonic()
        try:
            calendars = await self.list_calendars()
            return {
                'status': 'healthy',
                'bridge_type': self.bridge_type,
                'response_time_ms': round((time.monotonic() - started) * 1000, 2),
                'calendars_count': len(calendars),
                'capabilities': self.capabilities.dict(),
                'timestamp': utcnow().isoformat(),
            }
        except Exception as e:
            return {
                'status': 'unhealthy',
                'bridge_type': self.bridge_type,
                'response_time_ms': round((time.monotonic() - started) * 1000, 2),
                'error': str(e),
                'error_type': type(e).__name__,
                'capabilities': self.capabilities.dict(),
                'timestamp': utcnow().isoformat(),
            }

    def get_info(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'bridge_type': self.bridge_type,
            'role': self.role.value,
            'capabilities': self.capabilities.dict(),
        }

    async def close(self) -> None:
        """Clean up resources."""
        pass
