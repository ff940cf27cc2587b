"""Change detection: webhook ingestion, delta polling and subscription upkeep."""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .bridges.base import BaseBridge, BridgeError, BridgeNotFoundError, DeltaCursorInvalid, RemoteNotFoundError
from .database import DatabaseManager, WebhookSubscriptionDB
from .models import (
    CalendarPair, CalendarPollResult, ChangeSet, ChangeType, DeletionCheck, PollReport, ReservationKind,
    SyncConfiguration, SyncDirection, SyncStatus, WebhookResult, ensure_utc, utcnow
)
from .queue import DeletionQueue

logger = logging.getLogger(__name__)

BridgeLookup = Callable[[str], BaseBridge]

GRAPH_RESOURCE_PATTERN = re.compile(r'users/([^/]+)/(?:calendars?/[^/]+/)?events/([^/?]+)', re.IGNORECASE)


@dataclass
class ChangeNotification:
    """One change notification in normalized form."""

    calendar_id: Optional[str]
    event_id: str
    change_type: str
    subscription_id: Optional[str] = None
    client_state: Optional[str] = None


def parse_notifications(payload: Any) -> Tuple[List[ChangeNotification], List[Dict[str, Any]]]:
    """Normalize a webhook body.

    Accepts the Graph envelope ``{"value": [...]}``, a single normalized
    notification ``{calendarId, eventId, changeType}`` or a list of them.

    Returns:
        Tuple of (notifications, unparseable items)
    """
    if isinstance(payload, dict) and isinstance(payload.get('value'), list):
        items = payload['value']
    elif isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = [payload]
    else:
        return [], [{'error': 'Unsupported notification payload', 'error_type': 'ValidationError'}]

    notifications = []
    invalid = []
    for item in items:
        if not isinstance(item, dict):
            invalid.append({'error': 'Notification is not an object', 'error_type': 'ValidationError'})
            continue
        calendar_id = item.get('calendarId') or item.get('calendar_id')
        event_id = item.get('eventId') or item.get('event_id')
        resource = item.get('resource')
        if resource:
            match = GRAPH_RESOURCE_PATTERN.search(resource)
            if match:
                calendar_id = calendar_id or match.group(1)
                event_id = event_id or match.group(2)
        resource_data = item.get('resourceData') or {}
        event_id = event_id or resource_data.get('id')
        if not event_id:
            invalid.append({
                'error': 'Notification does not identify an event',
                'error_type': 'ValidationError',
                'subscription_id': item.get('subscriptionId'),
            })
            continue
        change_type = str(item.get('changeType') or item.get('change_type') or ChangeType.UPDATED.value).lower()
        notifications.append(ChangeNotification(
            calendar_id=calendar_id,
            event_id=event_id,
            change_type=change_type,
            subscription_id=item.get('subscriptionId') or item.get('subscription_id'),
            client_state=item.get('clientState') or item.get('client_state'),
        ))
    return notifications, invalid


class WebhookIngestor:
    """Turns inbound notifications into deletion check tasks."""

    def __init__(self, db_manager: DatabaseManager, queue: DeletionQueue, bridge_lookup: BridgeLookup):
        self.db_manager = db_manager
        self.queue = queue
        self.bridge_lookup = bridge_lookup
        self.logger = logger.getChild('webhook')

    async def ingest(
        self,
        bridge_name: str,
        payload: Any,
        validation_token: Optional[str] = None
    ) -> WebhookResult:
        """Ingest one webhook delivery.

        Args:
            bridge_name: Bridge the notification came from
            payload: Decoded notification body
            validation_token: Subscription validation challenge, echoed back verbatim

        Returns:
            Webhook ingestion result

        Raises:
            BridgeNotFoundError: If no bridge is registered under ``bridge_name``
        """
        if validation_token is None and isinstance(payload, dict):
            validation_token = payload.get('validationToken')
        if validation_token is not None:
            self.logger.info(f"Answering subscription validation for {bridge_name}")
            return WebhookResult(validation_response=validation_token)

        bridge = self.bridge_lookup(bridge_name)
        notifications, invalid = parse_notifications(payload)
        result = WebhookResult(received=len(notifications) + len(invalid), rejected=len(invalid))
        result.errors.extend(invalid)

        for notification in notifications:
            try:
                await self._handle(bridge, notification, result)
            except BridgeError as e:
                self.logger.error(f"Failed to ingest notification for {notification.event_id}: {e}")
                result.errors.append({
                    'event_id': notification.event_id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })

        self.logger.info(
            f"Webhook from {bridge_name}: {result.received} received, {result.enqueued} enqueued, "
            f"{result.skipped} skipped, {result.rejected} rejected"
        )
        return result

    async def _handle(self, bridge: BaseBridge, notification: ChangeNotification, result: WebhookResult) -> None:
        with self.db_manager.get_session() as session:
            subscription = self._find_subscription(session, bridge.name, notification)
            if subscription is None:
                result.rejected += 1
                result.errors.append({
                    'event_id': notification.event_id,
                    'subscription_id': notification.subscription_id,
                    'error': 'Notification does not match an active subscription',
                    'error_type': 'ValidationError',
                })
                return
            if subscription.client_state and notification.client_state != subscription.client_state:
                result.rejected += 1
                result.errors.append({
                    'event_id': notification.event_id,
                    'subscription_id': subscription.subscription_id,
                    'error': 'Client state mismatch',
                    'error_type': 'ValidationError',
                })
                return
            calendar_id = subscription.calendar_id
            self.db_manager.record_notification(session, subscription)

        change_type = notification.change_type
        if change_type != ChangeType.DELETED.value:
            try:
                event = await bridge.get_event(calendar_id, notification.event_id)
                if bridge.is_own_event(event):
                    self.logger.debug(f"Skipping self-originated change for {notification.event_id}")
                    result.skipped += 1
                    return
            except RemoteNotFoundError:
                change_type = ChangeType.DELETED.value
            except BridgeError as e:
                # The deletion check looks again later
                self.logger.warning(f"Could not fetch {notification.event_id} for provenance check: {e}")

        await self.queue.enqueue(DeletionCheck(
            calendar_id=calendar_id,
            event_id=notification.event_id,
            bridge_name=bridge.name,
            change_type=change_type,
            source='webhook',
        ))
        result.enqueued += 1

    def _find_subscription(
        self,
        session,
        bridge_name: str,
        notification: ChangeNotification
    ) -> Optional[WebhookSubscriptionDB]:
        now = utcnow()
        if notification.subscription_id:
            candidates = [self.db_manager.get_subscription(session, notification.subscription_id)]
        elif notification.calendar_id:
            candidates = self.db_manager.get_active_subscriptions(session, notification.calendar_id)
        else:
            return None
        for subscription in candidates:
            if subscription is None or not subscription.is_active:
                continue
            if subscription.bridge_name != bridge_name:
                continue
            if ensure_utc(subscription.expires_at) <= now:
                continue
            return subscription
        return None


@dataclass
class TrackedCalendar:
    calendar_id: str
    bridge_name: str
    resource_id: Optional[str] = None
    local_bridge: Optional[str] = None


class ChangePoller:
    """Polls remote calendars for changes using delta cursors.

    A rejected cursor is cleared and the calendar is re-read over the full
    lookback/lookahead window, which also yields a fresh cursor.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        queue: DeletionQueue,
        bridge_lookup: BridgeLookup,
        config: SyncConfiguration,
        default_bridge_name: str = 'outlook'
    ):
        self.db_manager = db_manager
        self.queue = queue
        self.bridge_lookup = bridge_lookup
        self.config = config
        self.default_bridge_name = default_bridge_name
        self.logger = logger.getChild('poller')

    def tracked_calendars(self) -> List[TrackedCalendar]:
        """Remote calendars from pairs, stored poll state and mappings."""
        tracked: Dict[str, TrackedCalendar] = {}
        pair: CalendarPair
        for pair in self.config.get_active_pairs():
            tracked[pair.remote_calendar_id] = TrackedCalendar(
                calendar_id=pair.remote_calendar_id,
                bridge_name=pair.remote_bridge,
                resource_id=pair.resource_id,
                local_bridge=pair.local_bridge,
            )
        with self.db_manager.get_session() as session:
            for state in self.db_manager.list_change_states(session):
                existing = tracked.get(state.calendar_id)
                if existing is None:
                    tracked[state.calendar_id] = TrackedCalendar(
                        calendar_id=state.calendar_id,
                        bridge_name=state.bridge_name or self.default_bridge_name,
                        resource_id=state.resource_id,
                    )
                elif existing.resource_id is None:
                    existing.resource_id = state.resource_id
            for calendar_id in self.db_manager.get_remote_calendar_ids(session):
                if calendar_id not in tracked:
                    tracked[calendar_id] = TrackedCalendar(
                        calendar_id=calendar_id, bridge_name=self.default_bridge_name
                    )
        return [tracked[key] for key in sorted(tracked)]

    async def poll_changes(self) -> PollReport:
        """Run one polling pass over every tracked calendar."""
        report = PollReport()
        for calendar in self.tracked_calendars():
            result = await self.poll_calendar(calendar)
            report.calendars.append(result)
            report.calendars_polled += 1
            report.changes_detected += result.changes_detected
            report.deletions_enqueued += result.deletions_enqueued
            report.new_mappings += result.new_mappings
            if result.fell_back:
                report.fallbacks += 1
            if result.error:
                report.errors.append({
                    'calendar_id': result.calendar_id,
                    'error': result.error,
                    'error_type': 'PollError',
                })
        report.completed_at = utcnow()
        self.logger.info(
            f"Poll pass: {report.calendars_polled} calendars, {report.changes_detected} changes, "
            f"{report.deletions_enqueued} deletion checks, {report.new_mappings} new mappings, "
            f"{len(report.errors)} errors"
        )
        return report

    async def poll_calendar(self, calendar: TrackedCalendar) -> CalendarPollResult:
        result = CalendarPollResult(calendar_id=calendar.calendar_id, bridge_name=calendar.bridge_name)
        with self.db_manager.get_session() as session:
            state = self.db_manager.get_or_create_change_state(
                session, calendar.calendar_id, calendar.bridge_name, calendar.resource_id
            )
            cursor = state.delta_cursor
            resource_id = calendar.resource_id or state.resource_id

        try:
            bridge = self.bridge_lookup(calendar.bridge_name)
            change_set = await self._fetch_changes(bridge, calendar.calendar_id, cursor, result)
        except BridgeNotFoundError as e:
            result.error = str(e)
            result.healthy = False
            return result
        except BridgeError as e:
            self.logger.error(f"Polling {calendar.calendar_id} failed: {e}")
            with self.db_manager.get_session() as session:
                state = self.db_manager.get_or_create_change_state(session, calendar.calendar_id)
                state = self.db_manager.record_poll_failure(
                    session, state, str(e), self.config.unhealthy_after_errors
                )
                result.healthy = bool(state.healthy)
            result.error = str(e)
            # No fresh snapshot: check every synced mapping of this calendar
            result.deletions_enqueued += await self._enqueue_existence_checks(calendar)
            return result

        result.changes_detected = len(change_set.changed) + len(change_set.deleted_ids)
        enqueued, failed = await self._enqueue_deletions(calendar, change_set)
        result.deletions_enqueued += enqueued
        result.new_mappings += await self._track_new_events(bridge, calendar, resource_id, change_set)

        with self.db_manager.get_session() as session:
            state = self.db_manager.get_or_create_change_state(session, calendar.calendar_id)
            if failed:
                # Keep the old cursor so the next pass reports these deletions again
                result.error = f"{failed} deletion checks could not be queued"
                state = self.db_manager.record_poll_failure(
                    session, state, result.error, self.config.unhealthy_after_errors
                )
                result.healthy = bool(state.healthy)
            else:
                self.db_manager.record_poll_success(session, state, change_set.next_cursor)
        return result

    async def _fetch_changes(
        self,
        bridge: BaseBridge,
        calendar_id: str,
        cursor: Optional[str],
        result: CalendarPollResult
    ) -> ChangeSet:
        now = utcnow()
        start = now - timedelta(days=self.config.poll_lookback_days)
        end = now + timedelta(days=self.config.poll_lookahead_days)

        if cursor:
            try:
                change_set = await bridge.get_change_set(calendar_id, cursor=cursor, start=start, end=end)
                result.used_cursor = True
                return change_set
            except DeltaCursorInvalid as e:
                self.logger.warning(f"Delta cursor for {calendar_id} rejected, falling back to full window: {e}")
                with self.db_manager.get_session() as session:
                    state = self.db_manager.get_or_create_change_state(session, calendar_id)
                    self.db_manager.clear_delta_cursor(session, state)
                result.fell_back = True
                return await bridge.get_change_set(calendar_id, cursor=None, start=start, end=end)

        return await bridge.get_change_set(calendar_id, cursor=None, start=start, end=end)

    async def _enqueue(self, calendar_id: str, event_id: str, bridge_name: str) -> None:
        await self.queue.enqueue(DeletionCheck(
            calendar_id=calendar_id,
            event_id=event_id,
            bridge_name=bridge_name,
            change_type=ChangeType.DELETED.value,
            source='poll',
        ))

    async def _enqueue_deletions(self, calendar: TrackedCalendar, change_set: ChangeSet) -> Tuple[int, int]:
        """Queue checks for deleted and snapshot-missing events.

        Returns:
            Tuple of (enqueued, failed)
        """
        with self.db_manager.get_session() as session:
            explicit = []
            for event_id in sorted(change_set.deleted_ids):
                mapping = self.db_manager.get_mapping_by_remote_event(session, event_id)
                if mapping is not None and mapping.sync_status != SyncStatus.CANCELLED.value:
                    explicit.append(event_id)
            missing = []
            if change_set.snapshot:
                for mapping in self.db_manager.list_mappings(
                    session, statuses=[SyncStatus.SYNCED], remote_calendar_id=calendar.calendar_id
                ):
                    if mapping.remote_event_id and mapping.remote_event_id not in change_set.changed:
                        if mapping.remote_event_id not in change_set.deleted_ids:
                            missing.append(mapping.remote_event_id)

        enqueued = failed = 0
        for event_id in explicit + missing:
            try:
                await self._enqueue(calendar.calendar_id, event_id, calendar.bridge_name)
                enqueued += 1
            except BridgeError as e:
                self.logger.error(f"Could not enqueue deletion check for {event_id}: {e}")
                failed += 1
        return enqueued, failed

    async def _enqueue_existence_checks(self, calendar: TrackedCalendar) -> int:
        with self.db_manager.get_session() as session:
            event_ids = [
                m.remote_event_id
                for m in self.db_manager.list_mappings(
                    session, statuses=[SyncStatus.SYNCED], remote_calendar_id=calendar.calendar_id
                )
                if m.remote_event_id
            ]
        enqueued = 0
        for event_id in event_ids:
            try:
                await self._enqueue(calendar.calendar_id, event_id, calendar.bridge_name)
                enqueued += 1
            except BridgeError as e:
                self.logger.error(f"Could not enqueue existence check for {event_id}: {e}")
        return enqueued

    async def _track_new_events(
        self,
        bridge: BaseBridge,
        calendar: TrackedCalendar,
        resource_id: Optional[str],
        change_set: ChangeSet
    ) -> int:
        created_count = 0
        for event_id, event in change_set.changed.items():
            with self.db_manager.get_session() as session:
                if self.db_manager.get_mapping_by_remote_event(session, event_id) is not None:
                    continue

            if not event.provenance_loaded:
                try:
                    event = await bridge.get_event(calendar.calendar_id, event_id)
                except RemoteNotFoundError:
                    continue
                except BridgeError as e:
                    self.logger.warning(f"Could not load provenance for {event_id}: {e}")
                    continue
            if bridge.is_own_event(event):
                continue
            if not resource_id:
                self.logger.warning(
                    f"New event {event_id} on {calendar.calendar_id} ignored: calendar has no local resource"
                )
                continue

            with self.db_manager.get_session() as session:
                _, created = self.db_manager.upsert_mapping(
                    session,
                    source_kind=ReservationKind.EVENT.value,
                    source_id=None,
                    resource_id=resource_id,
                    remote_calendar_id=calendar.calendar_id,
                    sync_direction=SyncDirection.FROM_REMOTE.value,
                    remote_event_id=event_id,
                    priority_level=self.config.priority_for(ReservationKind.EVENT),
                    source_bridge=calendar.bridge_name,
                    target_bridge=calendar.local_bridge,
                )
            if created:
                self.logger.info(f"Tracking new remote event {event_id} on {calendar.calendar_id}")
                created_count += 1
        return created_count


class SubscriptionManager:
    """Creates, renews and removes webhook subscriptions."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        bridge_lookup: BridgeLookup,
        config: SyncConfiguration,
        notification_url: Optional[str] = None,
        client_state: Optional[str] = None
    ):
        self.db_manager = db_manager
        self.bridge_lookup = bridge_lookup
        self.config = config
        self.notification_url = notification_url
        self.client_state = client_state
        self.logger = logger.getChild('subscriptions')

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.config.webhook_ttl_hours)

    async def subscribe_calendar(
        self,
        bridge_name: str,
        calendar_id: str,
        notification_url: Optional[str] = None,
        resource_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Subscribe to a calendar and store the subscription.

        Returns:
            Stored subscription details, or None when the bridge has no webhooks

        Raises:
            BridgeNotFoundError: If the bridge is unknown
            ValueError: If no notification URL is configured
        """
        bridge = self.bridge_lookup(bridge_name)
        if not bridge.capabilities.supports_webhooks:
            self.logger.info(f"{bridge_name} does not support webhooks; {calendar_id} relies on polling")
            return None
        notification_url = notification_url or self.notification_url
        if not notification_url:
            raise ValueError("A webhook notification URL is required to subscribe")

        subscription = await bridge.create_subscription(
            calendar_id, notification_url, ttl=self.ttl, client_state=self.client_state
        )
        with self.db_manager.get_session() as session:
            self.db_manager.create_subscription(
                session,
                subscription_id=subscription['id'],
                calendar_id=calendar_id,
                expires_at=subscription['expires_at'],
                bridge_name=bridge_name,
                resource_id=resource_id,
                notification_url=notification_url,
                client_state=subscription.get('client_state'),
            )
        self.logger.info(f"Subscribed to {bridge_name}:{calendar_id} ({subscription['id']})")
        return {
            'subscription_id': subscription['id'],
            'bridge_name': bridge_name,
            'calendar_id': calendar_id,
            'expires_at': subscription['expires_at'],
        }

    async def renew_subscriptions(self) -> Dict[str, Any]:
        """Renew subscriptions expiring within the renewal lead time.

        Subscriptions a bridge cannot extend in place are recreated and the
        old row deactivated.
        """
        results: Dict[str, Any] = {'checked': 0, 'renewed': 0, 'recreated': 0, 'failed': 0, 'errors': []}
        horizon = utcnow() + timedelta(minutes=self.config.webhook_renewal_lead_minutes)
        with self.db_manager.get_session() as session:
            expiring = self.db_manager.get_expiring_subscriptions(session, horizon)

        for subscription in expiring:
            results['checked'] += 1
            try:
                bridge = self.bridge_lookup(subscription.bridge_name)
                expires_at = None
                try:
                    expires_at = await bridge.renew_subscription(subscription.subscription_id, ttl=self.ttl)
                except RemoteNotFoundError:
                    self.logger.info(f"Subscription {subscription.subscription_id} is gone, recreating")

                if expires_at is not None:
                    with self.db_manager.get_session() as session:
                        row = self.db_manager.get_subscription(session, subscription.subscription_id)
                        self.db_manager.update_subscription_expiry(session, row, expires_at)
                    results['renewed'] += 1
                    continue

                await self._recreate(bridge, subscription)
                results['recreated'] += 1
            except (BridgeError, ValueError) as e:
                self.logger.error(f"Failed to renew subscription {subscription.subscription_id}: {e}")
                results['failed'] += 1
                results['errors'].append({
                    'subscription_id': subscription.subscription_id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
        return results

    async def _recreate(self, bridge: BaseBridge, subscription: WebhookSubscriptionDB) -> None:
        await self.subscribe_calendar(
            bridge.name,
            subscription.calendar_id,
            notification_url=subscription.notification_url,
            resource_id=subscription.resource_id,
        )
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_subscription(session, subscription.subscription_id)
            self.db_manager.deactivate_subscription(session, row)
        try:
            await bridge.unsubscribe_from_changes(subscription.subscription_id)
        except BridgeError as e:
            self.logger.debug(f"Old subscription {subscription.subscription_id} not removed: {e}")

    async def unsubscribe(self, subscription_id: str) -> bool:
        with self.db_manager.get_session() as session:
            subscription = self.db_manager.get_subscription(session, subscription_id)
            if subscription is None:
                return False
            bridge_name = subscription.bridge_name
        bridge = self.bridge_lookup(bridge_name)
        removed = await bridge.unsubscribe_from_changes(subscription_id)
        with self.db_manager.get_session() as session:
            subscription = self.db_manager.get_subscription(session, subscription_id)
            self.db_manager.deactivate_subscription(session, subscription)
        return removed

    def list_subscriptions(self, active_only: bool = True) -> List[WebhookSubscriptionDB]:
        with self.db_manager.get_session() as session:
            if active_only:
                return self.db_manager.get_active_subscriptions(session)
            return self.db_manager.list_subscriptions(session)
