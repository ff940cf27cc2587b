"""Booking system bridge with HTTP API and direct database strategies."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil.parser import isoparse
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseBridge, BridgeError, AuthenticationError, RemoteNotFoundError, RemoteTransientError, ValidationError
)
from ..config import Settings
from ..database import DatabaseManager
from ..models import (
    BRIDGE_SOURCE_TAG, CANCELLATION_NOTE, BridgeCapabilities, BridgeRole, CalendarEvent, CalendarInfo,
    Reservation, ReservationKind, ensure_utc, format_reservation_ref, parse_reservation_ref, utcnow
)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(isoparse(str(value)))


class ReservationStore(ABC):
    """Strategy for reading and writing local reservations."""

    supports_webhooks = False

    @abstractmethod
    async def list_reservations(self, resource_id: str, start: datetime, end: datetime) -> List[Reservation]:
        pass

    @abstractmethod
    async def get_reservation(self, kind: ReservationKind, reservation_id: str) -> Optional[Reservation]:
        """Return the reservation (active or not), or None when it no longer exists."""
        pass

    @abstractmethod
    async def create_reservation(
        self,
        resource_id: str,
        event: CalendarEvent,
        kind: ReservationKind = ReservationKind.EVENT
    ) -> Reservation:
        pass

    @abstractmethod
    async def update_reservation(
        self,
        kind: ReservationKind,
        reservation_id: str,
        event: CalendarEvent,
        resource_id: Optional[str] = None
    ) -> bool:
        pass

    @abstractmethod
    async def soft_delete(self, kind: ReservationKind, reservation_id: str, note: str = CANCELLATION_NOTE) -> bool:
        """Deactivate a reservation and append the cancellation note once.

        Raises:
            RemoteNotFoundError: If the reservation does not exist
        """
        pass

    @abstractmethod
    async def list_resources(self) -> List[CalendarInfo]:
        pass

    async def subscribe(self, resource_id: str, callback_url: str) -> Optional[str]:
        return None

    async def unsubscribe(self, subscription_id: str) -> bool:
        return True

    async def close(self) -> None:
        pass


class ApiReservationStore(ReservationStore):
    """Reservations through the booking system's REST API."""

    supports_webhooks = True

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        headers = {'Accept': 'application/json'}
        if settings.booking_api_key:
            headers['Authorization'] = f"Bearer {settings.booking_api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=settings.booking_api_base_url,
            headers=headers,
            timeout=settings.request_timeout_seconds,
        )
        self._owns_client = client is None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"Booking API timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise RemoteTransientError(f"Booking API request failed: {method} {path}: {e}") from e

        if response.status_code == 404:
            raise RemoteNotFoundError(f"Booking API: {path} not found")
        if response.status_code in (401, 403):
            raise AuthenticationError(f"Booking API rejected credentials ({response.status_code})")
        if response.status_code in (400, 422):
            raise ValidationError(f"Booking API rejected payload: {response.text}")
        if response.status_code == 429 or response.status_code >= 500:
            raise RemoteTransientError(f"Booking API error {response.status_code}: {method} {path}")
        if response.status_code >= 400:
            raise BridgeError(f"Booking API error {response.status_code}: {response.text}")

        if not response.content:
            return {}
        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RemoteTransientError),
        reraise=True
    )
    async def list_reservations(self, resource_id: str, start: datetime, end: datetime) -> List[Reservation]:
        data = await self._request(
            'GET',
            f"/api/resources/{resource_id}/events",
            params={'start_date': start.isoformat(), 'end_date': end.isoformat()},
        )
        items = data.get('events', []) if isinstance(data, dict) else data
        return [self._to_reservation(item, resource_id) for item in items or []]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RemoteTransientError),
        reraise=True
    )
    async def get_reservation(self, kind: ReservationKind, reservation_id: str) -> Optional[Reservation]:
        try:
            data = await self._request('GET', f"/api/reservations/{ReservationKind(kind).value}/{reservation_id}")
        except RemoteNotFoundError:
            return None
        return self._to_reservation(data, data.get('resource_id', ''))

    async def create_reservation(
        self,
        resource_id: str,
        event: CalendarEvent,
        kind: ReservationKind = ReservationKind.EVENT
    ) -> Reservation:
        payload = self._to_payload(event, kind)
        data = await self._request('POST', f"/api/resources/{resource_id}/events", json=payload)
        if 'id' not in data:
            raise BridgeError("Booking API did not return a reservation id")
        merged = {**payload, **data}
        return self._to_reservation(merged, resource_id)

    async def update_reservation(
        self,
        kind: ReservationKind,
        reservation_id: str,
        event: CalendarEvent,
        resource_id: Optional[str] = None
    ) -> bool:
        payload = self._to_payload(event, kind)
        path = (
            f"/api/resources/{resource_id}/events/{reservation_id}" if resource_id
            else f"/api/reservations/{ReservationKind(kind).value}/{reservation_id}"
        )
        await self._request('PUT', path, json=payload)
        return True

    async def soft_delete(self, kind: ReservationKind, reservation_id: str, note: str = CANCELLATION_NOTE) -> bool:
        await self._request(
            'POST',
            f"/api/reservations/{ReservationKind(kind).value}/{reservation_id}/cancel",
            json={'note': note},
        )
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RemoteTransientError),
        reraise=True
    )
    async def list_resources(self) -> List[CalendarInfo]:
        data = await self._request('GET', "/api/resources")
        items = data.get('resources', []) if isinstance(data, dict) else data
        return [
            CalendarInfo(
                id=str(item['id']),
                name=item.get('name') or f"Resource {item['id']}",
                bridge_type=BookingSystemBridge.bridge_type,
                description=item.get('description'),
            )
            for item in items or []
        ]

    async def subscribe(self, resource_id: str, callback_url: str) -> Optional[str]:
        data = await self._request('POST', "/api/webhooks/subscribe", json={
            'resource_id': resource_id,
            'callback_url': callback_url,
            'events': ['created', 'updated', 'deleted'],
        })
        return data.get('subscription_id')

    async def unsubscribe(self, subscription_id: str) -> bool:
        await self._request('DELETE', f"/api/webhooks/{subscription_id}")
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _to_reservation(self, item: Dict[str, Any], resource_id: str) -> Reservation:
        kind = item.get('kind') or item.get('type') or ReservationKind.EVENT.value
        contact = item.get('contact_email')
        if not contact and item.get('attendees'):
            attendees = item['attendees']
            contact = attendees[0] if isinstance(attendees, list) else attendees
        return Reservation(
            id=str(item['id']),
            kind=ReservationKind(kind),
            resource_id=str(item.get('resource_id') or resource_id),
            name=item.get('subject') or item.get('name') or item.get('title') or '',
            description=item.get('description'),
            organizer=item.get('organizer') or item.get('contact_name'),
            contact_email=contact,
            start=_parse_datetime(item.get('start') or item.get('start_time')),
            end=_parse_datetime(item.get('end') or item.get('end_time')),
            active=bool(item.get('active', True)),
            origin=item.get('source'),
            origin_bridge=item.get('origin_bridge'),
            origin_event_id=item.get('origin_event_id'),
            updated_at=_parse_datetime(item.get('last_modified') or item.get('updated_at')) or utcnow(),
        )

    def _to_payload(self, event: CalendarEvent, kind: ReservationKind) -> Dict[str, Any]:
        payload = {
            'type': ReservationKind(kind).value,
            'title': event.subject,
            'name': event.subject,
            'start_time': event.start.isoformat(),
            'end_time': event.end.isoformat(),
            'description': event.description or '',
            'contact_name': event.organizer or 'Calendar Bridge',
            'contact_email': event.attendees[0] if event.attendees else '',
        }
        if event.provenance is not None:
            payload.update({
                'source': BRIDGE_SOURCE_TAG,
                'bridge_import': True,
                'origin_bridge': event.provenance.origin_bridge,
                'origin_event_id': event.provenance.origin_event_id,
            })
        return payload


class DatabaseReservationStore(ReservationStore):
    """Reservations read and written directly in the booking database."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def list_reservations(self, resource_id: str, start: datetime, end: datetime) -> List[Reservation]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.list_reservations(session, resource_id, start, end)
            return [row.to_model() for row in rows]

    async def get_reservation(self, kind: ReservationKind, reservation_id: str) -> Optional[Reservation]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_reservation(session, kind, reservation_id)
            return row.to_model() if row is not None else None

    async def create_reservation(
        self,
        resource_id: str,
        event: CalendarEvent,
        kind: ReservationKind = ReservationKind.EVENT
    ) -> Reservation:
        provenance = event.provenance
        with self.db_manager.get_session() as session:
            row = self.db_manager.create_reservation(
                session,
                kind=ReservationKind(kind).value,
                resource_id=str(resource_id),
                name=event.subject,
                description=event.description,
                organizer=event.organizer,
                contact_email=event.attendees[0] if event.attendees else None,
                start=event.start,
                end=event.end,
                active=True,
                origin=BRIDGE_SOURCE_TAG if provenance else None,
                origin_bridge=provenance.origin_bridge if provenance else None,
                origin_event_id=provenance.origin_event_id if provenance else None,
            )
            return row.to_model()

    async def update_reservation(
        self,
        kind: ReservationKind,
        reservation_id: str,
        event: CalendarEvent,
        resource_id: Optional[str] = None
    ) -> bool:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_reservation(session, kind, reservation_id)
            if row is None:
                raise RemoteNotFoundError(f"Reservation {kind}:{reservation_id} not found")
            self.db_manager.update_reservation(
                session, row,
                name=event.subject,
                description=event.description,
                organizer=event.organizer,
                start=event.start,
                end=event.end,
            )
            return True

    async def soft_delete(self, kind: ReservationKind, reservation_id: str, note: str = CANCELLATION_NOTE) -> bool:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_reservation(session, kind, reservation_id)
            if row is None:
                raise RemoteNotFoundError(f"Reservation {kind}:{reservation_id} not found")
            return self.db_manager.soft_delete_reservation(session, row, note)

    async def list_resources(self) -> List[CalendarInfo]:
        with self.db_manager.get_session() as session:
            resource_ids = self.db_manager.list_resource_ids(session)
        return [
            CalendarInfo(id=rid, name=f"Resource {rid}", bridge_type=BookingSystemBridge.bridge_type)
            for rid in resource_ids
        ]


class BookingSystemBridge(BaseBridge):
    """Bridge over the local booking system.

    Event ids handed out by this bridge are reservation references of the
    form ``kind:id``; bare ids are read as ``event`` reservations.
    """

    bridge_type = "booking_system"
    role = BridgeRole.LOCAL

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        *,
        use_direct_store: Optional[bool] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        name: Optional[str] = None,
        capability_overrides: Optional[Dict[str, Any]] = None
    ):
        """Initialize the booking bridge.

        Args:
            settings: Application settings (API base URL and key)
            db_manager: Database manager, required by the direct-store strategy
            use_direct_store: Strategy selector, defaults to ``settings.booking_use_direct_store``
            http_client: Preconfigured HTTP client for the API strategy
            name: Registry name
            capability_overrides: Capability record overrides
        """
        super().__init__(name=name, capability_overrides=capability_overrides)
        self.settings = settings
        if use_direct_store is None:
            use_direct_store = settings.booking_use_direct_store
        if use_direct_store:
            if db_manager is None:
                raise ValueError("The direct-store strategy requires a DatabaseManager")
            self.store: ReservationStore = DatabaseReservationStore(db_manager)
        else:
            if not settings.booking_api_base_url and http_client is None:
                raise ValueError("The booking API strategy requires 'booking_api_base_url'")
            self.store = ApiReservationStore(settings, client=http_client)

    def default_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities(
            supports_webhooks=self.store.supports_webhooks,
            supports_attendees=True,
            max_events_per_request=100,
            rate_limit_per_minute=60,
        )

    async def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        self.logger.debug(f"Listing reservations for resource {calendar_id}")
        reservations = await self.store.list_reservations(calendar_id, start, end)
        return [r.to_event(self.bridge_type) for r in reservations if r.active]

    async def get_reservation(self, ref: str) -> Optional[Reservation]:
        """Look up a reservation by reference, including inactive ones."""
        kind, reservation_id = parse_reservation_ref(ref)
        return await self.store.get_reservation(kind, reservation_id)

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        reservation = await self.get_reservation(event_id)
        if reservation is None or not reservation.active:
            raise RemoteNotFoundError(f"Reservation {event_id} not found")
        return reservation.to_event(self.bridge_type)

    async def _create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        kind = event.kind or ReservationKind.EVENT
        reservation = await self.store.create_reservation(calendar_id, event, kind)
        self.logger.info(f"Created {kind.value} reservation {reservation.id} on resource {calendar_id}")
        return format_reservation_ref(reservation.kind, reservation.id)

    async def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> bool:
        self.validate_event(event)
        kind, reservation_id = parse_reservation_ref(event_id)
        return await self.store.update_reservation(kind, reservation_id, event, resource_id=calendar_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Soft-delete: the booking system keeps deactivated reservations."""
        kind, reservation_id = parse_reservation_ref(event_id)
        return await self.store.soft_delete(kind, reservation_id)

    async def list_calendars(self) -> List[CalendarInfo]:
        return await self.store.list_resources()

    async def subscribe_to_changes(self, calendar_id: str, callback_url: str) -> str:
        subscription_id = None
        if self.store.supports_webhooks:
            try:
                subscription_id = await self.store.subscribe(calendar_id, callback_url)
            except BridgeError as e:
                self.logger.info(f"Webhook subscription not available for {calendar_id}, using polling mode: {e}")
        return subscription_id or f"polling_{calendar_id}_{uuid4().hex[:12]}"

    async def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        if subscription_id.startswith('polling_'):
            return True
        try:
            return await self.store.unsubscribe(subscription_id)
        except BridgeError as e:
            self.logger.warning(f"Failed to unsubscribe webhook {subscription_id}: {e}")
            return False

    async def close(self) -> None:
        await self.store.close()
