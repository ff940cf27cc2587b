"""Deletion and cancellation propagation between the two sides of a bridge."""

import logging
from typing import Optional

from .bridges.base import BaseBridge, BridgeError, BridgeNotFoundError, RemoteNotFoundError
from .change_detection import BridgeLookup
from .database import DatabaseManager, MappingDB
from .models import (
    BridgeRole, CancellationReport, DeletionReport, SyncConfiguration, SyncOperation, SyncStatus, TaskStatus,
    format_reservation_ref
)
from .queue import ClaimedTask, DeletionQueue

logger = logging.getLogger(__name__)


class DeletionService:
    """Consumes deletion checks and scans local reservations for cancellations.

    Every outcome ends in a single mapping update, so re-running a check
    after a partial failure converges on the same state.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        queue: DeletionQueue,
        bridge_lookup: BridgeLookup,
        config: SyncConfiguration,
        local_bridge_name: str = 'booking_system',
        remote_bridge_name: str = 'outlook'
    ):
        self.db_manager = db_manager
        self.queue = queue
        self.bridge_lookup = bridge_lookup
        self.config = config
        self.local_bridge_name = local_bridge_name
        self.remote_bridge_name = remote_bridge_name
        self.logger = logger.getChild('deletion_service')

    def _bridge_for(self, mapping: MappingDB, role: BridgeRole) -> BaseBridge:
        """Pick the mapping's bridge on the given side, falling back to the default."""
        for name in (mapping.source_bridge, mapping.target_bridge):
            if not name:
                continue
            try:
                bridge = self.bridge_lookup(name)
            except BridgeNotFoundError:
                continue
            if bridge.role == role:
                return bridge
        default = self.local_bridge_name if role == BridgeRole.LOCAL else self.remote_bridge_name
        return self.bridge_lookup(default)

    async def process_deletion_queue(self) -> DeletionReport:
        """Drain due deletion checks.

        Returns:
            Deletion report; failures are reported per task, never raised
        """
        report = DeletionReport()
        tasks = await self.queue.claim(self.config.queue_batch_size)
        self.logger.info(f"Claimed {len(tasks)} deletion checks")

        for task in tasks:
            report.processed += 1
            try:
                await self._process_task(task, report)
            except BridgeError as e:
                status = await self.queue.fail(task, str(e))
                if status == TaskStatus.FAILED.value:
                    report.failed += 1
                else:
                    report.retried += 1
                self.logger.warning(f"Deletion check {task.task_id} for {task.check.event_id} failed ({status}): {e}")
                report.errors.append({
                    'task_id': task.task_id,
                    'event_id': task.check.event_id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
        return report

    async def _process_task(self, task: ClaimedTask, report: DeletionReport) -> None:
        check = task.check
        with self.db_manager.get_session() as session:
            mapping = self.db_manager.get_mapping_by_remote_event(session, check.event_id)

        if mapping is None or mapping.sync_status == SyncStatus.CANCELLED.value:
            await self.queue.complete(task, 'no-op: mapping missing or already cancelled')
            report.no_op += 1
            return

        remote = self.bridge_lookup(check.bridge_name)
        try:
            await remote.get_event(check.calendar_id, check.event_id)
            if check.source == 'orphan_scan' and mapping.source_id:
                # Orphan scans report a vanished local reservation
                if await self._check_mapping(mapping) == SyncOperation.CANCEL:
                    await self.queue.complete(task, 'cancelled')
                    report.cancelled += 1
                    return
            await self.queue.complete(task, 'no-op: event still exists')
            report.no_op += 1
            return
        except RemoteNotFoundError:
            self.logger.info(f"Remote event {check.event_id} is gone, cancelling mapping {mapping.id}")

        if mapping.source_id:
            local = self._bridge_for(mapping, BridgeRole.LOCAL)
            ref = format_reservation_ref(mapping.source_kind, mapping.source_id)
            try:
                await local.delete_event(mapping.resource_id, ref)
                report.deleted += 1
            except RemoteNotFoundError:
                self.logger.info(f"Local reservation {ref} already gone")

        with self.db_manager.get_session() as session:
            mapping = self.db_manager.get_mapping(session, mapping.id)
            self.db_manager.mark_mapping_cancelled(session, mapping, 'Remote event deleted')
            self.db_manager.log_sync(
                session, SyncOperation.CANCEL, mapping_id=mapping.id, direction=mapping.sync_direction,
                message=f"Remote event {check.event_id} deleted ({check.source})",
            )
        await self.queue.complete(task, 'cancelled')
        report.cancelled += 1

    async def detect_and_sync_cancellations(self) -> CancellationReport:
        """Propagate local cancellations to the remote side and detect reactivations."""
        report = CancellationReport()
        with self.db_manager.get_session() as session:
            mappings = self.db_manager.list_mappings(
                session,
                statuses=[SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.CANCELLED],
                with_source=True
            )

        for mapping in mappings:
            report.processed += 1
            try:
                outcome = await self._check_mapping(mapping)
            except BridgeError as e:
                self.logger.error(f"Cancellation check for mapping {mapping.id} failed: {e}")
                report.errors.append({
                    'mapping_id': mapping.id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
                continue
            if outcome == SyncOperation.CANCEL:
                report.cancelled += 1
            elif outcome == SyncOperation.REACTIVATE:
                report.reactivated += 1

        self.logger.info(
            f"Cancellation scan: {report.processed} mappings, {report.cancelled} cancelled, "
            f"{report.reactivated} reactivated, {len(report.errors)} errors"
        )
        return report

    async def _check_mapping(self, mapping: MappingDB) -> Optional[SyncOperation]:
        local = self._bridge_for(mapping, BridgeRole.LOCAL)
        ref = format_reservation_ref(mapping.source_kind, mapping.source_id)
        try:
            await local.get_event(mapping.resource_id, ref)
            active = True
        except RemoteNotFoundError:
            active = False

        if mapping.sync_status == SyncStatus.CANCELLED.value:
            if not active:
                return None
            with self.db_manager.get_session() as session:
                row = self.db_manager.get_mapping(session, mapping.id)
                self.db_manager.reset_mapping_for_reactivation(session, row)
                self.db_manager.log_sync(
                    session, SyncOperation.REACTIVATE, mapping_id=row.id, direction=row.sync_direction,
                    message=f"Reservation {ref} reactivated", details={'stale_remote_event_id': mapping.remote_event_id},
                )
            self.logger.info(f"Mapping {mapping.id} reactivated; next sync creates a new remote event")
            return SyncOperation.REACTIVATE

        if active:
            return None

        if mapping.remote_event_id:
            remote = self._bridge_for(mapping, BridgeRole.REMOTE)
            try:
                await remote.delete_event(mapping.remote_calendar_id, mapping.remote_event_id)
            except RemoteNotFoundError:
                self.logger.debug(f"Remote event {mapping.remote_event_id} already deleted")

        with self.db_manager.get_session() as session:
            row = self.db_manager.get_mapping(session, mapping.id)
            self.db_manager.mark_mapping_cancelled(session, row, 'Local reservation cancelled')
            self.db_manager.log_sync(
                session, SyncOperation.CANCEL, mapping_id=row.id, direction=row.sync_direction,
                message=f"Reservation {ref} cancelled locally",
                details={'remote_event_id': mapping.remote_event_id},
            )
        self.logger.info(f"Mapping {mapping.id} cancelled after local cancellation of {ref}")
        return SyncOperation.CANCEL
