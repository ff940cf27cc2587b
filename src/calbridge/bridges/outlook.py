"""Outlook / Microsoft Graph bridge implementation with async support."""

import html
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil.parser import isoparse
import httpx
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseBridge, BridgeError, AuthenticationError, DeltaCursorInvalid, RemoteNotFoundError,
    RemoteTransientError, ValidationError
)
from ..config import Settings
from ..models import (
    BRIDGE_SOURCE_TAG, BridgeCapabilities, BridgeRole, CalendarEvent, CalendarInfo, ChangeSet, Provenance, utcnow
)

PROP_BRIDGE_SOURCE = "String {66f5a359-4659-4830-9070-00047ec6ac6e} Name BridgeSource"
PROP_SOURCE_BRIDGE = "String {66f5a359-4659-4830-9070-00047ec6ac6f} Name SourceBridge"
PROP_SOURCE_EVENT_ID = "String {66f5a359-4659-4830-9070-00047ec6ac70} Name SourceEventId"
PROP_SYNC_TIMESTAMP = "String {66f5a359-4659-4830-9070-00047ec6ac71} Name SyncTimestamp"

PROVENANCE_PROPERTIES = (PROP_BRIDGE_SOURCE, PROP_SOURCE_BRIDGE, PROP_SOURCE_EVENT_ID, PROP_SYNC_TIMESTAMP)

# Graph error codes returned for an expired or unknown delta token
INVALID_DELTA_CODES = {'SyncStateNotFound', 'SyncStateInvalid', 'resyncRequired'}


class OutlookBridge(BaseBridge):
    """Microsoft Graph calendar bridge."""

    bridge_type = "outlook"
    role = BridgeRole.REMOTE

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        name: Optional[str] = None,
        capability_overrides: Optional[Dict[str, Any]] = None
    ):
        """Initialize Outlook bridge.

        Args:
            settings: Application settings (tenant, client credentials, Graph URL)
            http_client: Preconfigured HTTP client
            name: Registry name
            capability_overrides: Capability record overrides
        """
        super().__init__(name=name, capability_overrides=capability_overrides)
        self.settings = settings
        self.graph_base_url = settings.outlook_graph_base_url
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._owns_client = http_client is None
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def default_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities(
            supports_webhooks=True,
            supports_recurring=True,
            supports_all_day=True,
            supports_attendees=True,
            supports_attachments=False,
            supports_delta=True,
            max_events_per_request=999,
            rate_limit_per_minute=1000,
        )

    async def authenticate(self) -> None:
        """Acquire an app-only token with the client credentials grant.

        Raises:
            AuthenticationError: If the token request is rejected
        """
        token_url = (
            f"{self.settings.outlook_authority_url}/{self.settings.outlook_tenant_id}/oauth2/v2.0/token"
        )
        try:
            response = await self._client.post(token_url, data={
                'client_id': self.settings.outlook_client_id,
                'client_secret': self.settings.outlook_client_secret,
                'scope': 'https://graph.microsoft.com/.default',
                'grant_type': 'client_credentials',
            })
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise AuthenticationError(f"Token request rejected ({response.status_code}): {response.text}")
        data = response.json()
        if 'access_token' not in data:
            raise AuthenticationError("Access token not found in token response")
        self._access_token = data['access_token']
        # Refresh a minute early
        self._token_expires_at = utcnow() + timedelta(seconds=int(data.get('expires_in', 3600)) - 60)
        self.logger.info("Acquired Microsoft Graph access token")

    async def _ensure_token(self) -> str:
        if not self._access_token or (self._token_expires_at and utcnow() >= self._token_expires_at):
            await self.authenticate()
        return self._access_token

    def _url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.graph_base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        delta: bool = False
    ) -> Dict[str, Any]:
        token = await self._ensure_token()
        headers = {
            'Authorization': f"Bearer {token}",
            'Accept': 'application/json',
            'Prefer': 'outlook.timezone="UTC"',
        }
        try:
            response = await self._client.request(method, self._url(path), params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"Graph API timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise RemoteTransientError(f"Graph API request failed: {method} {path}: {e}") from e

        status = response.status_code
        if status < 400:
            if status == 204 or not response.content:
                return {}
            return response.json()

        error_code, message = self._parse_error(response)
        if delta and (status == 410 or error_code in INVALID_DELTA_CODES):
            self.logger.warning(f"Delta cursor rejected ({status} {error_code})")
            raise DeltaCursorInvalid(message or f"Delta cursor rejected ({status})")
        if status in (404, 410):
            raise RemoteNotFoundError(message or f"Graph resource not found: {path}")
        if status == 401:
            self._access_token = None
            raise AuthenticationError(message or "Graph API rejected the access token")
        if status == 429 or status >= 500:
            raise RemoteTransientError(f"Graph API error {status}: {message}")
        if status == 400:
            raise ValidationError(f"Graph API rejected request: {message}")
        raise BridgeError(f"Graph API error {status}: {message}")

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple:
        try:
            error = response.json().get('error', {})
            return error.get('code'), error.get('message')
        except ValueError:
            return None, response.text

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RemoteTransientError),
        reraise=True
    )
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, delta: bool = False) -> Dict[str, Any]:
        return await self._request('GET', path, params=params, delta=delta)

    async def _get_paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        data = await self._get(path, params=params)
        items.extend(data.get('value', []))
        while data.get('@odata.nextLink'):
            data = await self._get(data['@odata.nextLink'])
            items.extend(data.get('value', []))
        return items

    def _expand_provenance(self) -> str:
        clauses = ' or '.join(f"id eq '{prop}'" for prop in PROVENANCE_PROPERTIES)
        return f"singleValueExtendedProperties($filter={clauses})"

    async def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        """List events with calendarView so single instances fall inside the window."""
        params = {
            'startDateTime': start.astimezone(pytz.UTC).isoformat(),
            'endDateTime': end.astimezone(pytz.UTC).isoformat(),
            '$orderby': 'start/dateTime',
            '$top': self.capabilities.max_events_per_request,
            '$expand': self._expand_provenance(),
        }
        items = await self._get_paged(f"/users/{calendar_id}/calendarView", params=params)
        events = []
        for item in items:
            try:
                events.append(self._format_event(item))
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Failed to format Outlook event {item.get('id')}: {e}")
        return events

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent:
        data = await self._get(
            f"/users/{calendar_id}/events/{event_id}",
            params={'$expand': self._expand_provenance()}
        )
        return self._format_event(data)

    async def _create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        data = await self._request('POST', f"/users/{calendar_id}/events", json=self._to_graph(event))
        if 'id' not in data:
            raise BridgeError("Graph API did not return an event id")
        self.logger.info(f"Created Outlook event {data['id']} in {calendar_id}")
        return data['id']

    async def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> bool:
        self.validate_event(event)
        await self._request('PATCH', f"/users/{calendar_id}/events/{event_id}", json=self._to_graph(event))
        return True

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        await self._request('DELETE', f"/users/{calendar_id}/events/{event_id}")
        return True

    async def list_calendars(self) -> List[CalendarInfo]:
        """List room calendars, from a configured group or the places API."""
        if self.settings.outlook_room_group_id:
            members = await self._get_paged(f"/groups/{self.settings.outlook_room_group_id}/members")
            return [
                CalendarInfo(
                    id=member.get('mail') or member['id'],
                    name=member.get('displayName') or member.get('mail') or member['id'],
                    bridge_type=self.bridge_type,
                    email=member.get('mail'),
                    calendar_type=self._calendar_type(member),
                )
                for member in members
                if member.get('mail')
            ]

        rooms = await self._get_paged("/places/microsoft.graph.room")
        return [
            CalendarInfo(
                id=room['emailAddress'],
                name=room.get('displayName') or room['emailAddress'],
                bridge_type=self.bridge_type,
                email=room['emailAddress'],
                calendar_type='room',
            )
            for room in rooms
            if room.get('emailAddress')
        ]

    @staticmethod
    def _calendar_type(member: Dict[str, Any]) -> str:
        odata_type = member.get('@odata.type', '')
        if 'room' in odata_type:
            return 'room'
        if 'equipment' in odata_type:
            return 'equipment'
        return 'resource'

    async def create_subscription(
        self,
        calendar_id: str,
        notification_url: str,
        ttl: timedelta = timedelta(days=1),
        client_state: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a Graph subscription and return its id, expiry and client state."""
        expires_at = utcnow() + ttl
        client_state = client_state or f"calbridge-{uuid4().hex}"
        data = await self._request('POST', "/subscriptions", json={
            'changeType': 'created,updated,deleted',
            'notificationUrl': notification_url,
            'resource': f"users/{calendar_id}/events",
            'expirationDateTime': expires_at.isoformat(),
            'clientState': client_state,
        })
        expiration = data.get('expirationDateTime')
        return {
            'id': data['id'],
            'expires_at': isoparse(expiration) if expiration else expires_at,
            'client_state': client_state,
        }

    async def renew_subscription(self, subscription_id: str, ttl: timedelta = timedelta(days=1)) -> datetime:
        """Extend a subscription's expiry.

        Raises:
            RemoteNotFoundError: If the subscription no longer exists
        """
        expires_at = utcnow() + ttl
        data = await self._request('PATCH', f"/subscriptions/{subscription_id}", json={
            'expirationDateTime': expires_at.isoformat(),
        })
        expiration = data.get('expirationDateTime')
        return isoparse(expiration) if expiration else expires_at

    async def subscribe_to_changes(self, calendar_id: str, callback_url: str) -> str:
        subscription = await self.create_subscription(
            calendar_id, callback_url, client_state=self.settings.webhook_client_state
        )
        return subscription['id']

    async def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        try:
            await self._request('DELETE', f"/subscriptions/{subscription_id}")
        except RemoteNotFoundError:
            self.logger.info(f"Subscription {subscription_id} already gone")
        return True

    async def get_change_set(
        self,
        calendar_id: str,
        cursor: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> ChangeSet:
        """Return changed events and explicit deletions.

        - With a cursor, follow the stored delta link (incremental).
        - With a rejected cursor, raise DeltaCursorInvalid.
        - Without a cursor, run a windowed delta round: a full snapshot plus
          a fresh cursor.
        """
        changed: Dict[str, CalendarEvent] = {}
        deleted_ids = set()

        if cursor:
            data = await self._get(cursor, delta=True)
        else:
            if start is None or end is None:
                raise ValueError("A window is required when no delta cursor is available")
            data = await self._get(f"/users/{calendar_id}/calendarView/delta", params={
                'startDateTime': start.astimezone(pytz.UTC).isoformat(),
                'endDateTime': end.astimezone(pytz.UTC).isoformat(),
            }, delta=True)

        while True:
            for item in data.get('value', []):
                event_id = item.get('id')
                if '@removed' in item:
                    if event_id:
                        deleted_ids.add(event_id)
                    continue
                try:
                    event = self._format_event(item)
                except (KeyError, ValueError) as e:
                    self.logger.warning(f"Failed to format Outlook event {event_id}: {e}")
                    continue
                changed[event.id] = event
            next_link = data.get('@odata.nextLink')
            if not next_link:
                break
            data = await self._get(next_link, delta=True)

        return ChangeSet(
            changed=changed,
            deleted_ids=deleted_ids,
            next_cursor=data.get('@odata.deltaLink'),
            used_cursor=bool(cursor),
            snapshot=not cursor,
        )

    def _format_event(self, item: Dict[str, Any]) -> CalendarEvent:
        """Convert a Graph event payload to the generic form."""
        properties = item.get('singleValueExtendedProperties')
        provenance = self._read_provenance(properties or [])
        body = item.get('body') or {}
        content = body.get('content') or ''
        if body.get('contentType', '').lower() == 'html':
            content = self._html_to_text(content)
        attendees = [
            a.get('emailAddress', {}).get('address')
            for a in item.get('attendees', [])
            if a.get('emailAddress', {}).get('address')
        ]
        start = item.get('start') or {}
        end = item.get('end') or {}
        return CalendarEvent(
            id=item['id'],
            bridge_type=self.bridge_type,
            subject=item.get('subject') or '',
            description=content,
            location=(item.get('location') or {}).get('displayName'),
            start=self._parse_graph_datetime(start) if start else None,
            end=self._parse_graph_datetime(end) if end else None,
            all_day=bool(item.get('isAllDay', False)),
            timezone=start.get('timeZone') or 'UTC',
            organizer=((item.get('organizer') or {}).get('emailAddress') or {}).get('address'),
            attendees=attendees,
            created=isoparse(item['createdDateTime']) if item.get('createdDateTime') else None,
            last_modified=isoparse(item['lastModifiedDateTime']) if item.get('lastModifiedDateTime') else utcnow(),
            provenance=provenance,
            provenance_loaded=properties is not None,
            raw_data=item,
        )

    @staticmethod
    def _parse_graph_datetime(value: Dict[str, Any]) -> datetime:
        dt = isoparse(value['dateTime'])
        if dt.tzinfo is not None:
            return dt
        tz_name = value.get('timeZone') or 'UTC'
        try:
            return pytz.timezone(tz_name).localize(dt)
        except pytz.UnknownTimeZoneError:
            return dt.replace(tzinfo=pytz.UTC)

    @staticmethod
    def _read_provenance(properties: List[Dict[str, Any]]) -> Optional[Provenance]:
        values = {prop.get('id'): prop.get('value') for prop in properties}
        if values.get(PROP_BRIDGE_SOURCE) != BRIDGE_SOURCE_TAG:
            return None
        synced_at = values.get(PROP_SYNC_TIMESTAMP)
        return Provenance(
            origin_bridge=values.get(PROP_SOURCE_BRIDGE) or 'unknown',
            origin_event_id=values.get(PROP_SOURCE_EVENT_ID),
            synced_at=isoparse(synced_at) if synced_at else utcnow(),
        )

    @staticmethod
    def _html_to_text(content: str) -> str:
        text = re.sub(r'<br\s*/?>|</p>', '\n', content, flags=re.IGNORECASE)
        text = re.sub(r'<[^>]+>', '', text)
        return html.unescape(text).strip()

    def _to_graph(self, event: CalendarEvent) -> Dict[str, Any]:
        """Convert a generic event to a Graph payload with provenance properties."""
        payload: Dict[str, Any] = {
            'subject': event.subject,
            'start': {'dateTime': event.start.astimezone(pytz.UTC).replace(tzinfo=None).isoformat(), 'timeZone': 'UTC'},
            'end': {'dateTime': event.end.astimezone(pytz.UTC).replace(tzinfo=None).isoformat(), 'timeZone': 'UTC'},
            'body': {'contentType': 'text', 'content': event.description or ''},
        }
        if event.location:
            payload['location'] = {'displayName': event.location}
        if event.attendees:
            payload['attendees'] = [
                {'emailAddress': {'address': address}, 'type': 'required'}
                for address in event.attendees
            ]
        if event.provenance is not None:
            properties = [
                {'id': PROP_BRIDGE_SOURCE, 'value': BRIDGE_SOURCE_TAG},
                {'id': PROP_SOURCE_BRIDGE, 'value': event.provenance.origin_bridge},
                {'id': PROP_SYNC_TIMESTAMP, 'value': event.provenance.synced_at.isoformat()},
            ]
            if event.provenance.origin_event_id:
                properties.append({'id': PROP_SOURCE_EVENT_ID, 'value': event.provenance.origin_event_id})
            payload['singleValueExtendedProperties'] = properties
        return payload

    async def close(self) -> None:
        """Clean up resources."""
        if self._owns_client:
            await self._client.aclose()
