"""Tests for the booking system bridge over its REST API."""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytz

from calbridge.bridges.base import RemoteNotFoundError, ValidationError
from calbridge.bridges.booking import BookingSystemBridge
from calbridge.models import BRIDGE_SOURCE_TAG, CANCELLATION_NOTE, CalendarEvent, Provenance, ReservationKind

from conftest import RESOURCE_ID, make_settings

BASE_URL = 'https://booking.example.org'
START = datetime(2025, 6, 14, 10, 0, tzinfo=pytz.UTC)


class BookingApiStub:
    def __init__(self):
        self.requests = []
        self.routes = {}

    def route(self, method, path, status=200, body=None):
        self.routes[(method, path)] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes.get((request.method, request.url.path), (404, {'detail': 'Not found'}))
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)


@pytest.fixture
def api():
    return BookingApiStub()


@pytest.fixture
def bridge(tmp_path, api):
    settings = make_settings(
        tmp_path, booking_use_direct_store=False, booking_api_base_url=BASE_URL, booking_api_key='key-1'
    )
    client = httpx.AsyncClient(
        base_url=BASE_URL,
        headers={'Authorization': f"Bearer {settings.booking_api_key}"},
        transport=httpx.MockTransport(api),
    )
    return BookingSystemBridge(settings, http_client=client)


def api_item(item_id, kind='event', active=True, **extra):
    item = {
        'id': item_id,
        'type': kind,
        'title': 'Team meeting',
        'start_time': '2025-06-14T10:00:00Z',
        'end_time': '2025-06-14T11:00:00Z',
        'contact_email': 'alice@example.org',
        'active': active,
        'updated_at': '2025-06-10T08:00:00Z',
    }
    item.update(extra)
    return item


class TestBookingApi:
    """Booking bridge against a mocked API."""

    def test_api_strategy_requires_base_url(self, tmp_path):
        settings = make_settings(tmp_path, booking_use_direct_store=False)
        with pytest.raises(ValueError):
            BookingSystemBridge(settings)

    @pytest.mark.asyncio
    async def test_list_events_skips_inactive_reservations(self, bridge, api):
        api.route('GET', f"/api/resources/{RESOURCE_ID}/events", 200, {'events': [
            api_item(1),
            api_item(2, kind='allocation'),
            api_item(3, active=False),
        ]})

        events = await bridge.list_events(RESOURCE_ID, START, START + timedelta(days=1))

        assert [(e.id, e.kind) for e in events] == [('1', ReservationKind.EVENT), ('2', ReservationKind.ALLOCATION)]
        assert events[0].attendees == ['alice@example.org']
        assert events[0].start == START
        params = api.requests[0].url.params
        assert params['start_date'] == START.isoformat()

    @pytest.mark.asyncio
    async def test_imported_reservation_carries_provenance(self, bridge, api):
        api.route('GET', '/api/reservations/event/7', 200, api_item(
            7, resource_id=RESOURCE_ID, source=BRIDGE_SOURCE_TAG, origin_bridge='outlook', origin_event_id='AAMk-1'
        ))

        event = await bridge.get_event(RESOURCE_ID, 'event:7')

        assert bridge.is_own_event(event)
        assert event.provenance.origin_event_id == 'AAMk-1'

    @pytest.mark.asyncio
    async def test_missing_reservation_raises_not_found(self, bridge):
        with pytest.raises(RemoteNotFoundError):
            await bridge.get_event(RESOURCE_ID, 'booking:99')

    @pytest.mark.asyncio
    async def test_cancelled_reservation_raises_not_found(self, bridge, api):
        api.route('GET', '/api/reservations/event/8', 200, api_item(8, active=False))
        with pytest.raises(RemoteNotFoundError):
            await bridge.get_event(RESOURCE_ID, '8')

    @pytest.mark.asyncio
    async def test_create_event_posts_import_payload(self, bridge, api):
        api.route('POST', f"/api/resources/{RESOURCE_ID}/events", 201, {'id': 42})
        event = CalendarEvent(
            id='AAMk-1', subject='Walk-in', start=START, end=START + timedelta(hours=1),
            provenance=Provenance(origin_bridge='outlook', origin_event_id='AAMk-1'),
        )

        ref = await bridge.create_event(RESOURCE_ID, event)

        assert ref == 'event:42'
        body = json.loads(api.requests[0].content)
        assert body['title'] == 'Walk-in'
        assert body['source'] == BRIDGE_SOURCE_TAG
        assert body['origin_event_id'] == 'AAMk-1'
        assert api.requests[0].headers['Authorization'] == 'Bearer key-1'

    @pytest.mark.asyncio
    async def test_rejected_payload_is_a_validation_error(self, bridge, api):
        api.route('PUT', f"/api/resources/{RESOURCE_ID}/events/5", 422, {'detail': 'end_time before start_time'})
        event = CalendarEvent(id='AAMk-1', subject='Walk-in', start=START, end=START + timedelta(hours=1))
        with pytest.raises(ValidationError):
            await bridge.update_event(RESOURCE_ID, 'event:5', event)

    @pytest.mark.asyncio
    async def test_delete_is_a_soft_cancel(self, bridge, api):
        api.route('POST', '/api/reservations/booking/5/cancel', 200, {'status': 'cancelled'})

        assert await bridge.delete_event(RESOURCE_ID, 'booking:5') is True

        request = api.requests[0]
        assert json.loads(request.content) == {'note': CANCELLATION_NOTE}

    @pytest.mark.asyncio
    async def test_subscribe_falls_back_to_polling(self, bridge):
        subscription_id = await bridge.subscribe_to_changes(RESOURCE_ID, 'https://bridge.example.org/hook')
        assert subscription_id.startswith(f"polling_{RESOURCE_ID}_")
        assert await bridge.unsubscribe_from_changes(subscription_id) is True
