"""Bridge manager: bridge registry, sync orchestration and entry points."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from .alerts import AlertService
from .bridges.base import (
    BaseBridge, BridgeError, BridgeNotFoundError, RemoteNotFoundError, ValidationError
)
from .bridges.booking import BookingSystemBridge
from .bridges.outlook import OutlookBridge
from .change_detection import ChangePoller, SubscriptionManager, WebhookIngestor
from .config import Settings
from .conflicts import ConflictCandidate, ConflictResolver
from .database import DatabaseManager, MappingDB
from .deletion import DeletionService
from .models import (
    AlertReport, BridgeRole, CalendarEvent, CancellationReport, DeletionCheck, DeletionReport, PollReport,
    Provenance, ReservationKind, SyncDirection, SyncOperation, SyncOptions, SyncReport, SyncResult, SyncStatus,
    WebhookResult, ensure_utc, format_reservation_ref, parse_reservation_ref, utcnow
)
from .queue import DeletionQueue, create_deletion_queue

logger = logging.getLogger(__name__)


class BridgeManager:
    """Registry of bridges and orchestrator of every sync operation."""

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        bridges: Optional[List[BaseBridge]] = None,
        queue: Optional[DeletionQueue] = None
    ):
        """Initialize bridge manager.

        Args:
            settings: Application settings
            db_manager: Database manager, created from settings when omitted
            bridges: Bridges to register
            queue: Deletion check queue, built from settings when omitted
        """
        self.settings = settings
        self.config = settings.sync_config
        self.db_manager = db_manager or DatabaseManager(settings)
        self.queue = queue or create_deletion_queue(settings, self.db_manager)
        self.conflict_resolver = ConflictResolver()
        self.logger = logger.getChild('bridge_manager')
        self._bridges: Dict[str, BaseBridge] = {}
        for bridge in bridges or []:
            self._bridges[bridge.name] = bridge
        self._build_services()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        booking_client: Optional[httpx.AsyncClient] = None,
        graph_client: Optional[httpx.AsyncClient] = None
    ) -> 'BridgeManager':
        """Build a manager with the booking system and Outlook bridges."""
        db_manager = DatabaseManager(settings)
        bridges = [
            BookingSystemBridge(settings, db_manager, http_client=booking_client),
            OutlookBridge(settings, http_client=graph_client),
        ]
        return cls(settings, db_manager=db_manager, bridges=bridges)

    def _build_services(self) -> None:
        local_name = self._default_bridge_name(BridgeRole.LOCAL) or 'booking_system'
        remote_name = self._default_bridge_name(BridgeRole.REMOTE) or 'outlook'
        self.webhook_ingestor = WebhookIngestor(self.db_manager, self.queue, self.get_bridge)
        self.poller = ChangePoller(
            self.db_manager, self.queue, self.get_bridge, self.config, default_bridge_name=remote_name
        )
        self.deletion_service = DeletionService(
            self.db_manager, self.queue, self.get_bridge, self.config,
            local_bridge_name=local_name, remote_bridge_name=remote_name
        )
        self.subscriptions = SubscriptionManager(
            self.db_manager, self.get_bridge, self.config,
            notification_url=self.settings.webhook_notification_url,
            client_state=self.settings.webhook_client_state
        )
        self.alerts = AlertService(
            self.db_manager, self.queue, self.config, webhook_url=self.settings.alert_webhook_url
        )

    def _default_bridge_name(self, role: BridgeRole) -> Optional[str]:
        return next((name for name, bridge in self._bridges.items() if bridge.role == role), None)

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Create tables; bridges authenticate lazily on first use."""
        self.db_manager.init_db()
        self.logger.info(f"Bridge manager initialized with bridges: {', '.join(self._bridges) or 'none'}")

    async def cleanup(self) -> None:
        """Clean up resources."""
        for bridge in self._bridges.values():
            await bridge.close()
        await self.queue.close()
        await self.alerts.close()
        self.logger.info("Bridge manager cleaned up")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_bridge(self, bridge: BaseBridge) -> None:
        self._bridges[bridge.name] = bridge
        self._build_services()

    def get_bridge(self, name: str) -> BaseBridge:
        """Look up a registered bridge.

        Raises:
            BridgeNotFoundError: If no bridge is registered under ``name``
        """
        try:
            return self._bridges[name]
        except KeyError:
            raise BridgeNotFoundError(f"Bridge '{name}' is not registered") from None

    def get_all_bridges_info(self) -> List[Dict[str, Any]]:
        return [bridge.get_info() for bridge in self._bridges.values()]

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self,
        source_bridge: str,
        target_bridge: str,
        source_calendar_id: str,
        target_calendar_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        options: Optional[SyncOptions] = None
    ) -> SyncReport:
        """Sync events from one bridge's calendar into another's.

        Args:
            source_bridge: Name of the bridge to read from
            target_bridge: Name of the bridge to write to
            source_calendar_id: Calendar or resource ID on the source
            target_calendar_id: Calendar or resource ID on the target
            start_date: Window start, defaults to ``sync_past_days`` ago
            end_date: Window end, defaults to ``sync_future_days`` ahead
            options: Deletion handling and dry-run switches

        Returns:
            Sync report; per-event failures are reported, never raised

        Raises:
            BridgeNotFoundError: If either bridge is unknown
            ValueError: If the bridges are not one local and one remote
        """
        source = self.get_bridge(source_bridge)
        target = self.get_bridge(target_bridge)
        if source.role == target.role:
            raise ValueError("Sync requires one local and one remote bridge")
        if options is None:
            options = SyncOptions(handle_deletions=self.config.handle_deletions, dry_run=self.config.dry_run)

        now = utcnow()
        start = ensure_utc(start_date) if start_date else now - timedelta(days=self.config.sync_past_days)
        end = ensure_utc(end_date) if end_date else now + timedelta(days=self.config.sync_future_days)

        direction = SyncDirection.TO_REMOTE if source.role == BridgeRole.LOCAL else SyncDirection.FROM_REMOTE
        if direction == SyncDirection.TO_REMOTE:
            resource_id, remote_calendar_id = source_calendar_id, target_calendar_id
        else:
            resource_id, remote_calendar_id = target_calendar_id, source_calendar_id

        report = SyncReport(
            source_bridge=source.name,
            target_bridge=target.name,
            source_calendar_id=source_calendar_id,
            target_calendar_id=target_calendar_id,
            dry_run=options.dry_run,
        )
        self.logger.info(
            f"Sync {report.sync_id}: {source.name}:{source_calendar_id} -> {target.name}:{target_calendar_id} "
            f"({start.date()}..{end.date()}, dry_run={options.dry_run})"
        )

        try:
            fetched = await source.list_events(source_calendar_id, start, end)
        except BridgeError as e:
            self.logger.error(f"Failed to list events on {source.name}:{source_calendar_id}: {e}")
            report.errors.append({
                'calendar_id': source_calendar_id,
                'error': str(e),
                'error_type': type(e).__name__,
            })
            report.completed_at = utcnow()
            return report

        # Loop prevention: never sync back what this engine wrote
        events = [
            event for event in fetched
            if not source.is_own_event(event) or self._reclaimed_locally(event, direction, resource_id)
        ]
        report.source_events_found = len(events)
        if len(events) != len(fetched):
            self.logger.debug(f"Skipping {len(fetched) - len(events)} bridge-created events")

        plan = [(event, *self._plan_event(event, direction, resource_id)) for event in events]
        losers = self._resolve_conflicts(plan, resource_id)

        if options.dry_run:
            for event, mapping, action in plan:
                entry = {
                    'event_id': event.id,
                    'subject': event.subject,
                    'start': event.start.isoformat() if event.start else None,
                    'end': event.end.isoformat() if event.end else None,
                    'action': action.value,
                    'mapping_id': mapping.id if mapping else None,
                }
                if event.id in losers and action != SyncOperation.SKIP:
                    entry['action'] = SyncOperation.CONFLICT.value
                    entry['reason'] = losers[event.id][1]
                report.events_to_process.append(entry)
            report.completed_at = utcnow()
            self.logger.info(f"Dry run {report.sync_id}: {len(report.events_to_process)} candidate events")
            return report

        for event, mapping, action in plan:
            result = await self._apply(
                event, mapping, action, losers.get(event.id), source, target, direction,
                resource_id, remote_calendar_id, target_calendar_id, report
            )
            report.processed_events.append(result)
            report.processed += 1

        if options.handle_deletions:
            await self._enqueue_orphans(source, direction, fetched, resource_id, remote_calendar_id, report)

        report.completed_at = utcnow()
        self.logger.info(
            f"Sync {report.sync_id} finished: {report.created} created, {report.updated} updated, "
            f"{report.skipped} skipped, {len(report.conflicts)} conflicts, {len(report.errors)} errors"
        )
        return report

    def _source_key(self, event: CalendarEvent) -> Tuple[str, str]:
        return (event.kind or ReservationKind.EVENT).value, event.id

    def _reclaimed_locally(self, event: CalendarEvent, direction: SyncDirection, resource_id: str) -> bool:
        """True for an imported reservation whose mapping a reactivation handed to the local side."""
        if direction != SyncDirection.TO_REMOTE:
            return False
        kind, source_id = self._source_key(event)
        with self.db_manager.get_session() as session:
            mapping = self.db_manager.get_mapping_by_source(session, kind, source_id, resource_id)
        return mapping is not None and mapping.sync_direction == SyncDirection.TO_REMOTE.value

    def _plan_event(
        self,
        event: CalendarEvent,
        direction: SyncDirection,
        resource_id: str
    ) -> Tuple[Optional[MappingDB], SyncOperation]:
        with self.db_manager.get_session() as session:
            if direction == SyncDirection.TO_REMOTE:
                kind, source_id = self._source_key(event)
                mapping = self.db_manager.get_mapping_by_source(session, kind, source_id, resource_id)
            else:
                mapping = self.db_manager.get_mapping_by_remote_event(session, event.id)

        if mapping is None:
            return None, SyncOperation.CREATE
        if mapping.sync_status == SyncStatus.CANCELLED.value:
            return mapping, SyncOperation.SKIP

        if direction == SyncDirection.TO_REMOTE:
            counterpart, watermark = mapping.remote_event_id, mapping.last_modified_remote
        else:
            counterpart, watermark = mapping.source_id, mapping.last_modified_source
        if not counterpart:
            return mapping, SyncOperation.CREATE
        if mapping.sync_status != SyncStatus.SYNCED.value:
            return mapping, SyncOperation.UPDATE
        if watermark is None or ensure_utc(event.last_modified) > ensure_utc(watermark):
            return mapping, SyncOperation.UPDATE
        return mapping, SyncOperation.SKIP

    def _resolve_conflicts(
        self,
        plan: List[Tuple[CalendarEvent, Optional[MappingDB], SyncOperation]],
        resource_id: str
    ) -> Dict[str, Tuple[ConflictCandidate, str]]:
        candidates = []
        for event, mapping, _ in plan:
            if mapping is not None and mapping.sync_status == SyncStatus.CANCELLED.value:
                continue
            kind = event.kind or ReservationKind.EVENT
            candidates.append(ConflictCandidate(
                event=event,
                resource_id=resource_id,
                priority_level=self.config.priority_for(kind),
                mapping_id=mapping.id if mapping else None,
            ))
        return self.conflict_resolver.losing_ids(self.conflict_resolver.resolve(candidates))

    def _target_payload(self, event: CalendarEvent, source: BaseBridge, direction: SyncDirection) -> CalendarEvent:
        if direction == SyncDirection.TO_REMOTE:
            kind, source_id = self._source_key(event)
            origin_event_id = format_reservation_ref(kind, source_id)
            kind_update = event.kind
        else:
            origin_event_id = event.id
            kind_update = ReservationKind.EVENT
        return event.copy(update={
            'kind': kind_update,
            'provenance': Provenance(origin_bridge=source.name, origin_event_id=origin_event_id),
        })

    async def _apply(
        self,
        event: CalendarEvent,
        mapping: Optional[MappingDB],
        action: SyncOperation,
        lost_to: Optional[Tuple[ConflictCandidate, str]],
        source: BaseBridge,
        target: BaseBridge,
        direction: SyncDirection,
        resource_id: str,
        remote_calendar_id: str,
        target_calendar_id: str,
        report: SyncReport
    ) -> SyncResult:
        result = SyncResult(operation=action, event_id=event.id, event_subject=event.subject)

        if mapping is not None and mapping.sync_status == SyncStatus.CANCELLED.value:
            result.mapping_id = mapping.id
            report.skipped += 1
            return result

        kind, source_id = self._source_key(event)
        if mapping is None:
            with self.db_manager.get_session() as session:
                mapping, _ = self.db_manager.upsert_mapping(
                    session,
                    source_kind=kind,
                    source_id=source_id if direction == SyncDirection.TO_REMOTE else None,
                    resource_id=resource_id,
                    remote_calendar_id=remote_calendar_id,
                    sync_direction=direction.value,
                    remote_event_id=event.id if direction == SyncDirection.FROM_REMOTE else None,
                    priority_level=self.config.priority_for(event.kind or ReservationKind.EVENT),
                    source_bridge=source.name,
                    target_bridge=target.name,
                )
        result.mapping_id = mapping.id

        if lost_to is not None:
            winner, reason = lost_to
            if mapping.sync_status != SyncStatus.CONFLICT.value or mapping.error_message != reason:
                with self.db_manager.get_session() as session:
                    row = self.db_manager.get_mapping(session, mapping.id)
                    self.db_manager.mark_mapping_conflict(session, row, reason)
                    self.db_manager.log_sync(
                        session, SyncOperation.CONFLICT, mapping_id=row.id, direction=direction,
                        message=reason, details={'winner_id': winner.event_id, 'loser_id': event.id},
                    )
            report.conflicts.append({
                'event_id': event.id,
                'mapping_id': mapping.id,
                'winner_id': winner.event_id,
                'reason': reason,
            })
            result.operation = SyncOperation.CONFLICT
            return result

        if action == SyncOperation.SKIP:
            report.skipped += 1
            return result

        payload = self._target_payload(event, source, direction)
        try:
            if action == SyncOperation.CREATE:
                target_id = await target.create_event(target_calendar_id, payload)
                await self._mark_synced(mapping.id, direction, target_id)
                report.created += 1
            else:
                target_id = self._counterpart_id(mapping, direction)
                await target.update_event(target_calendar_id, target_id, payload)
                await self._mark_synced(mapping.id, direction, None)
                report.updated += 1
            result.target_event_id = target_id
            with self.db_manager.get_session() as session:
                self.db_manager.log_sync(
                    session, action, mapping_id=mapping.id, direction=direction,
                    message=f"{action.value} {event.subject!r} on {target.name}:{target_calendar_id}",
                    details={'source_event_id': event.id, 'target_event_id': target_id},
                )
        except RemoteNotFoundError as e:
            # Counterpart vanished; the deletion path decides what happens next
            self.logger.info(f"Counterpart of {event.id} not found on {target.name}: {e}")
            result.operation = SyncOperation.SKIP
            result.error_message = str(e)
            report.skipped += 1
            if direction == SyncDirection.TO_REMOTE and mapping.remote_event_id:
                await self.queue.enqueue(DeletionCheck(
                    calendar_id=remote_calendar_id,
                    event_id=mapping.remote_event_id,
                    bridge_name=target.name,
                    source='sync',
                ))
                report.deletions_enqueued += 1
        except ValidationError as e:
            self.logger.warning(f"Rejected event {event.id}: {e} (fields: {e.fields})")
            self._record_error(mapping.id, direction, event, e, report, result)
        except BridgeError as e:
            self.logger.error(f"Failed to {action.value} event {event.id} on {target.name}: {e}")
            self._record_error(mapping.id, direction, event, e, report, result)
        return result

    @staticmethod
    def _counterpart_id(mapping: MappingDB, direction: SyncDirection) -> str:
        if direction == SyncDirection.TO_REMOTE:
            return mapping.remote_event_id
        return format_reservation_ref(mapping.source_kind, mapping.source_id)

    async def _mark_synced(self, mapping_id: int, direction: SyncDirection, target_id: Optional[str]) -> None:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_mapping(session, mapping_id)
            if direction == SyncDirection.TO_REMOTE:
                self.db_manager.mark_mapping_synced(session, row, remote_event_id=target_id, wrote_remote=True)
                return
            source_kind = source_id = None
            if target_id is not None:
                source_kind, source_id = parse_reservation_ref(target_id)
            self.db_manager.mark_mapping_synced(
                session, row, source_id=source_id, source_kind=source_kind, wrote_remote=False
            )

    def _record_error(
        self,
        mapping_id: int,
        direction: SyncDirection,
        event: CalendarEvent,
        error: BridgeError,
        report: SyncReport,
        result: SyncResult
    ) -> None:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_mapping(session, mapping_id)
            self.db_manager.mark_mapping_error(session, row, str(error))
            self.db_manager.log_sync(
                session, result.operation, mapping_id=mapping_id, direction=direction, status='error',
                message=str(error), details=getattr(error, 'fields', None) or None,
            )
        result.success = False
        result.error_message = str(error)
        report.errors.append({
            'event_id': event.id,
            'mapping_id': mapping_id,
            'error': str(error),
            'error_type': type(error).__name__,
        })

    async def _enqueue_orphans(
        self,
        source: BaseBridge,
        direction: SyncDirection,
        fetched: List[CalendarEvent],
        resource_id: str,
        remote_calendar_id: str,
        report: SyncReport
    ) -> None:
        """Queue checks for synced mappings whose source record left the window and is gone."""
        if direction == SyncDirection.TO_REMOTE:
            seen: Set[Any] = {self._source_key(event) for event in fetched}
        else:
            seen = {event.id for event in fetched}

        with self.db_manager.get_session() as session:
            mappings = self.db_manager.list_mappings(
                session, statuses=[SyncStatus.SYNCED], resource_id=resource_id,
                remote_calendar_id=remote_calendar_id
            )

        for mapping in mappings:
            if not mapping.remote_event_id:
                continue
            if direction == SyncDirection.TO_REMOTE:
                if not mapping.source_id or (mapping.source_kind, mapping.source_id) in seen:
                    continue
                check_calendar, check_id = resource_id, format_reservation_ref(mapping.source_kind, mapping.source_id)
            else:
                if mapping.remote_event_id in seen:
                    continue
                check_calendar, check_id = remote_calendar_id, mapping.remote_event_id

            try:
                await source.get_event(check_calendar, check_id)
                continue
            except RemoteNotFoundError:
                pass
            except BridgeError as e:
                self.logger.warning(f"Existence check for {check_id} failed, leaving mapping {mapping.id}: {e}")
                continue

            remote_bridge = source.name if direction == SyncDirection.FROM_REMOTE else mapping.target_bridge
            try:
                await self.queue.enqueue(DeletionCheck(
                    calendar_id=remote_calendar_id,
                    event_id=mapping.remote_event_id,
                    bridge_name=remote_bridge or self.deletion_service.remote_bridge_name,
                    source='orphan_scan',
                ))
            except BridgeError as e:
                report.errors.append({
                    'mapping_id': mapping.id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
                continue
            report.deletions_enqueued += 1

    async def sync_all_pairs(self, options: Optional[SyncOptions] = None) -> List[SyncReport]:
        """Sync every enabled calendar pair in each of its directions."""
        reports = []
        for pair in self.config.get_active_pairs():
            for direction in pair.directions():
                if direction == SyncDirection.TO_REMOTE:
                    args = (pair.local_bridge, pair.remote_bridge, pair.resource_id, pair.remote_calendar_id)
                else:
                    args = (pair.remote_bridge, pair.local_bridge, pair.remote_calendar_id, pair.resource_id)
                try:
                    reports.append(await self.sync(*args, options=options))
                except (BridgeNotFoundError, ValueError) as e:
                    self.logger.error(f"Cannot sync pair {pair}: {e}")
                    report = SyncReport(
                        source_bridge=args[0], target_bridge=args[1],
                        source_calendar_id=args[2], target_calendar_id=args[3],
                        completed_at=utcnow(),
                    )
                    report.errors.append({'calendar_id': args[2], 'error': str(e), 'error_type': type(e).__name__})
                    reports.append(report)
        return reports

    # ------------------------------------------------------------------
    # Change detection and deletion entry points
    # ------------------------------------------------------------------

    async def poll_changes(self) -> PollReport:
        return await self.poller.poll_changes()

    async def ingest_webhook_notification(
        self,
        bridge_name: str,
        payload: Any,
        validation_token: Optional[str] = None
    ) -> WebhookResult:
        return await self.webhook_ingestor.ingest(bridge_name, payload, validation_token)

    async def process_deletion_queue(self) -> DeletionReport:
        return await self.deletion_service.process_deletion_queue()

    async def detect_and_sync_cancellations(self) -> CancellationReport:
        return await self.deletion_service.detect_and_sync_cancellations()

    async def renew_subscriptions(self) -> Dict[str, Any]:
        return await self.subscriptions.renew_subscriptions()

    async def subscribe_calendar(
        self,
        bridge_name: str,
        calendar_id: str,
        notification_url: Optional[str] = None,
        resource_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return await self.subscriptions.subscribe_calendar(bridge_name, calendar_id, notification_url, resource_id)

    async def check_and_alert(self) -> AlertReport:
        return await self.alerts.check_and_alert()

    async def health_status(self) -> Dict[str, Any]:
        """Aggregate bridge health, polling state and queue depth.

        Returns:
            Dictionary with overall status ``healthy`` or ``degraded``
        """
        names = list(self._bridges)
        checks = await asyncio.gather(*(self._bridges[name].health_check() for name in names))
        bridges = dict(zip(names, checks))

        with self.db_manager.get_session() as session:
            polling = [
                {
                    'calendar_id': state.calendar_id,
                    'bridge_name': state.bridge_name,
                    'healthy': bool(state.healthy),
                    'consecutive_error_count': state.consecutive_error_count,
                    'last_successful_poll_at': (
                        ensure_utc(state.last_successful_poll_at).isoformat()
                        if state.last_successful_poll_at else None
                    ),
                    'last_error_message': state.last_error_message,
                }
                for state in self.db_manager.list_change_states(session)
            ]
            mappings = self.db_manager.get_mapping_statistics(session)
        alerts = self.alerts.get_alert_statistics()

        queue_depth = await self.queue.depth()
        healthy = (
            all(check['status'] == 'healthy' for check in bridges.values())
            and all(state['healthy'] for state in polling)
        )
        return {
            'status': 'healthy' if healthy else 'degraded',
            'timestamp': utcnow().isoformat(),
            'bridges': bridges,
            'polling': polling,
            'queue': queue_depth,
            'mappings': mappings,
            'alerts': alerts,
        }
