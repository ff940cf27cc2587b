"""Database models and operations for bridge sync state management."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint, and_, func, or_, text
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings
from .models import (
    CANCELLATION_NOTE, Alert, AlertSeverity, DeletionCheck, Reservation, ReservationKind, SyncDirection,
    SyncStatus, TaskStatus, ensure_utc, utcnow
)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(pytz.UTC)


class MappingDB(Base):
    """One tracked relationship between a local reservation and a remote event."""

    __tablename__ = 'bridge_mappings'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Local side
    source_kind = Column(String(20), nullable=False, default=ReservationKind.EVENT.value)
    source_id = Column(String(64), nullable=True)  # NULL until a remote-origin row gets a local counterpart
    resource_id = Column(String(255), nullable=False)

    # Remote side
    remote_calendar_id = Column(String(255), nullable=False)
    remote_event_id = Column(String(512), nullable=True)

    source_bridge = Column(String(50), nullable=True)
    target_bridge = Column(String(50), nullable=True)

    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_direction = Column(String(20), nullable=False)  # 'to_remote', 'from_remote', 'bidirectional'
    priority_level = Column(Integer, nullable=False, default=3)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_modified_source = Column(DateTime(timezone=True), nullable=True)  # last write on the local side
    last_modified_remote = Column(DateTime(timezone=True), nullable=True)  # last write on the remote side
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint('source_kind', 'source_id', 'resource_id', name='uq_mapping_source'),
        UniqueConstraint('remote_event_id', name='uq_mapping_remote_event'),
        Index('idx_mapping_status', 'sync_status'),
        Index('idx_mapping_resource', 'resource_id'),
        Index('idx_mapping_remote_calendar', 'remote_calendar_id', 'sync_status'),
    )

    def __repr__(self) -> str:
        return (
            f"<MappingDB {self.id} {self.source_kind}:{self.source_id}@{self.resource_id} "
            f"remote={self.remote_event_id} status={self.sync_status}>"
        )


class ChangeDetectionStateDB(Base):
    """Polling state per remote calendar."""

    __tablename__ = 'change_detection_state'

    id = Column(Integer, primary_key=True, autoincrement=True)
    calendar_id = Column(String(255), nullable=False, unique=True)
    bridge_name = Column(String(50), nullable=False, default='outlook')
    resource_id = Column(String(255), nullable=True)

    delta_cursor = Column(Text, nullable=True)  # opaque, never parsed
    last_poll_at = Column(DateTime(timezone=True), nullable=True)
    last_successful_poll_at = Column(DateTime(timezone=True), nullable=True)
    consecutive_error_count = Column(Integer, nullable=False, default=0)
    last_error_message = Column(Text, nullable=True)
    healthy = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class WebhookSubscriptionDB(Base):
    """Active change-notification subscription."""

    __tablename__ = 'webhook_subscriptions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String(255), nullable=False, unique=True)
    bridge_name = Column(String(50), nullable=False, default='outlook')
    calendar_id = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True)
    notification_url = Column(String(1000), nullable=True)
    change_types = Column(String(100), nullable=False, default='created,updated,deleted')
    client_state = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    notification_count = Column(Integer, nullable=False, default=0)
    last_notification_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_subscription_calendar', 'calendar_id', 'is_active'),
        Index('idx_subscription_expires', 'expires_at'),
    )


class DeletionCheckTaskDB(Base):
    """Durable deletion check queue entry."""

    __tablename__ = 'deletion_check_tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    calendar_id = Column(String(255), nullable=False)
    event_id = Column(String(512), nullable=False)
    bridge_name = Column(String(50), nullable=False, default='outlook')
    change_type = Column(String(20), nullable=False, default='deleted')
    source = Column(String(20), nullable=False, default='webhook')

    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    enqueued_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # lease start while processing
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_task_claim', 'status', 'scheduled_at'),
        Index('idx_task_event', 'event_id'),
    )

    def to_check(self) -> DeletionCheck:
        return DeletionCheck(
            calendar_id=self.calendar_id,
            event_id=self.event_id,
            bridge_name=self.bridge_name,
            change_type=self.change_type,
            source=self.source,
            enqueued_at=ensure_utc(self.enqueued_at),
            attempts=self.attempts,
        )


class SyncLogDB(Base):
    """Audit trail of mapping mutations and conflict decisions."""

    __tablename__ = 'sync_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    mapping_id = Column(Integer, nullable=True)
    action = Column(String(20), nullable=False)
    direction = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False, default='success')
    message = Column(Text, nullable=True)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_sync_log_mapping', 'mapping_id'),
        Index('idx_sync_log_created', 'created_at'),
    )


class AlertDB(Base):
    """Stored operator alert."""

    __tablename__ = 'sync_alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(100), nullable=False)
    severity = Column(String(20), nullable=False)  # 'info', 'warning', 'critical'
    message = Column(Text, nullable=False)
    alert_data = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index('idx_alert_created', 'created_at'),
        Index('idx_alert_type', 'alert_type'),
    )

    def to_model(self) -> Alert:
        return Alert(
            id=self.id,
            alert_type=self.alert_type,
            severity=AlertSeverity(self.severity),
            message=self.message,
            data=json.loads(self.alert_data) if self.alert_data else {},
            created_at=ensure_utc(self.created_at),
            acknowledged_at=ensure_utc(self.acknowledged_at) if self.acknowledged_at else None,
            acknowledged_by=self.acknowledged_by,
        )


class ReservationDB(Base):
    """Local booking-system reservation, used by the direct-store strategy."""

    __tablename__ = 'reservations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, default=ReservationKind.EVENT.value)
    resource_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False, default='')
    description = Column(Text, nullable=True)
    organizer = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)
    start = Column(DateTime(timezone=True), nullable=False)
    end = Column(DateTime(timezone=True), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    # Set when the bridge created the reservation from a remote event
    origin = Column(String(50), nullable=True)
    origin_bridge = Column(String(50), nullable=True)
    origin_event_id = Column(String(512), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_reservation_window', 'resource_id', 'start', 'end'),
    )

    def to_model(self) -> Reservation:
        return Reservation(
            id=str(self.id),
            kind=ReservationKind(self.kind),
            resource_id=self.resource_id,
            name=self.name or '',
            description=self.description,
            organizer=self.organizer,
            contact_email=self.contact_email,
            start=ensure_utc(self.start),
            end=ensure_utc(self.end),
            active=bool(self.active),
            origin=self.origin,
            origin_bridge=self.origin_bridge,
            origin_event_id=self.origin_event_id,
            updated_at=ensure_utc(self.updated_at),
        )


class DatabaseManager:
    """Database manager for bridge sync state."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    def get_mapping(self, session: Session, mapping_id: int) -> Optional[MappingDB]:
        return session.get(MappingDB, mapping_id)

    def get_mapping_by_source(
        self,
        session: Session,
        source_kind: str,
        source_id: str,
        resource_id: str
    ) -> Optional[MappingDB]:
        """Get mapping by its local reservation key.

        Args:
            session: Database session
            source_kind: Reservation kind
            source_id: Reservation ID
            resource_id: Local resource ID

        Returns:
            Mapping or None if not found
        """
        return session.query(MappingDB).filter(
            MappingDB.source_kind == str(source_kind),
            MappingDB.source_id == str(source_id),
            MappingDB.resource_id == str(resource_id)
        ).first()

    def get_mapping_by_remote_event(self, session: Session, remote_event_id: str) -> Optional[MappingDB]:
        """Get mapping by remote event ID."""
        return session.query(MappingDB).filter(
            MappingDB.remote_event_id == remote_event_id
        ).first()

    def upsert_mapping(
        self,
        session: Session,
        *,
        source_kind: str,
        source_id: Optional[str],
        resource_id: str,
        remote_calendar_id: str,
        sync_direction: str,
        remote_event_id: Optional[str] = None,
        priority_level: int = 3,
        source_bridge: Optional[str] = None,
        target_bridge: Optional[str] = None,
    ) -> Tuple[MappingDB, bool]:
        """Return the mapping for a key, inserting a pending row when absent.

        When a concurrent pass wins the insert race on one of the unique
        constraints, the existing row is returned instead.

        Returns:
            Tuple of (mapping, created)
        """
        existing = self._find_by_keys(session, source_kind, source_id, resource_id, remote_event_id)
        if existing is not None:
            return existing, False

        mapping = MappingDB(
            source_kind=str(source_kind),
            source_id=str(source_id) if source_id is not None else None,
            resource_id=str(resource_id),
            remote_calendar_id=remote_calendar_id,
            remote_event_id=remote_event_id,
            sync_status=SyncStatus.PENDING.value,
            sync_direction=str(sync_direction),
            priority_level=priority_level,
            source_bridge=source_bridge,
            target_bridge=target_bridge,
        )
        session.add(mapping)
        try:
            session.commit()
            return mapping, True
        except IntegrityError:
            session.rollback()
            existing = self._find_by_keys(session, source_kind, source_id, resource_id, remote_event_id)
            if existing is None:
                raise
            return existing, False

    def _find_by_keys(
        self,
        session: Session,
        source_kind: str,
        source_id: Optional[str],
        resource_id: str,
        remote_event_id: Optional[str]
    ) -> Optional[MappingDB]:
        if source_id is not None:
            mapping = self.get_mapping_by_source(session, source_kind, source_id, resource_id)
            if mapping is not None:
                return mapping
        if remote_event_id:
            return self.get_mapping_by_remote_event(session, remote_event_id)
        return None

    def update_mapping(self, session: Session, mapping: MappingDB, **fields: Any) -> MappingDB:
        """Apply a row-scoped update to a mapping and commit it."""
        for key, value in fields.items():
            if hasattr(value, 'value') and key in ('sync_status', 'sync_direction', 'source_kind'):
                value = value.value
            setattr(mapping, key, value)
        mapping.updated_at = _now()
        session.commit()
        return mapping

    def mark_mapping_synced(
        self,
        session: Session,
        mapping: MappingDB,
        *,
        remote_event_id: Optional[str] = None,
        source_id: Optional[str] = None,
        source_kind: Optional[str] = None,
        wrote_remote: bool = True
    ) -> MappingDB:
        now = _now()
        fields: Dict[str, Any] = {
            'sync_status': SyncStatus.SYNCED.value,
            'last_sync_at': now,
            'error_message': None,
        }
        if wrote_remote:
            fields['last_modified_remote'] = now
        else:
            fields['last_modified_source'] = now
        if remote_event_id is not None:
            fields['remote_event_id'] = remote_event_id
        if source_id is not None:
            fields['source_id'] = str(source_id)
        if source_kind is not None:
            fields['source_kind'] = str(getattr(source_kind, 'value', source_kind))
        return self.update_mapping(session, mapping, **fields)

    def mark_mapping_error(self, session: Session, mapping: MappingDB, error: str) -> MappingDB:
        return self.update_mapping(
            session, mapping,
            sync_status=SyncStatus.ERROR.value,
            error_message=error[:2000],
            last_sync_at=_now()
        )

    def mark_mapping_conflict(self, session: Session, mapping: MappingDB, reason: str) -> MappingDB:
        return self.update_mapping(
            session, mapping,
            sync_status=SyncStatus.CONFLICT.value,
            error_message=reason
        )

    def mark_mapping_cancelled(self, session: Session, mapping: MappingDB, reason: Optional[str] = None) -> MappingDB:
        return self.update_mapping(
            session, mapping,
            sync_status=SyncStatus.CANCELLED.value,
            error_message=reason,
            last_sync_at=_now()
        )

    def reset_mapping_for_reactivation(self, session: Session, mapping: MappingDB) -> MappingDB:
        """Move a cancelled mapping back to pending and forget its stale remote id.

        The local reservation now owns the mapping, so the next push recreates
        the remote event even when the reservation was imported from it.
        """
        fields: Dict[str, Any] = {}
        if mapping.sync_direction == SyncDirection.FROM_REMOTE.value:
            fields.update(source_bridge=mapping.target_bridge, target_bridge=mapping.source_bridge)
        return self.update_mapping(
            session, mapping,
            sync_status=SyncStatus.PENDING.value,
            sync_direction=SyncDirection.TO_REMOTE.value,
            remote_event_id=None,
            error_message=None,
            last_modified_remote=None,
            **fields
        )

    def list_mappings(
        self,
        session: Session,
        statuses: Optional[List[str]] = None,
        resource_id: Optional[str] = None,
        remote_calendar_id: Optional[str] = None,
        with_source: Optional[bool] = None,
        limit: Optional[int] = None
    ) -> List[MappingDB]:
        """List mappings with optional filters."""
        query = session.query(MappingDB)
        if statuses:
            query = query.filter(MappingDB.sync_status.in_([getattr(s, 'value', s) for s in statuses]))
        if resource_id is not None:
            query = query.filter(MappingDB.resource_id == str(resource_id))
        if remote_calendar_id is not None:
            query = query.filter(MappingDB.remote_calendar_id == remote_calendar_id)
        if with_source is True:
            query = query.filter(MappingDB.source_id.isnot(None))
        elif with_source is False:
            query = query.filter(MappingDB.source_id.is_(None))
        query = query.order_by(MappingDB.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_remote_calendar_ids(self, session: Session) -> List[str]:
        rows = session.query(MappingDB.remote_calendar_id).distinct().all()
        return [row[0] for row in rows if row[0]]

    def get_mapping_statistics(self, session: Session) -> Dict[str, int]:
        rows = session.query(MappingDB.sync_status, func.count(MappingDB.id)).group_by(MappingDB.sync_status).all()
        stats = {status.value: 0 for status in SyncStatus}
        stats.update({status: count for status, count in rows})
        stats['total'] = sum(count for _, count in rows)
        return stats

    # ------------------------------------------------------------------
    # Change detection state
    # ------------------------------------------------------------------

    def get_change_state(self, session: Session, calendar_id: str) -> Optional[ChangeDetectionStateDB]:
        return session.query(ChangeDetectionStateDB).filter(
            ChangeDetectionStateDB.calendar_id == calendar_id
        ).first()

    def get_or_create_change_state(
        self,
        session: Session,
        calendar_id: str,
        bridge_name: str = 'outlook',
        resource_id: Optional[str] = None
    ) -> ChangeDetectionStateDB:
        state = self.get_change_state(session, calendar_id)
        if state is not None:
            if resource_id and state.resource_id != resource_id:
                state.resource_id = resource_id
                session.commit()
            return state
        state = ChangeDetectionStateDB(
            calendar_id=calendar_id,
            bridge_name=bridge_name,
            resource_id=resource_id,
        )
        session.add(state)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            state = self.get_change_state(session, calendar_id)
        return state

    def list_change_states(self, session: Session) -> List[ChangeDetectionStateDB]:
        return session.query(ChangeDetectionStateDB).order_by(ChangeDetectionStateDB.calendar_id).all()

    def clear_delta_cursor(self, session: Session, state: ChangeDetectionStateDB) -> None:
        state.delta_cursor = None
        state.updated_at = _now()
        session.commit()

    def record_poll_success(
        self,
        session: Session,
        state: ChangeDetectionStateDB,
        delta_cursor: Optional[str]
    ) -> ChangeDetectionStateDB:
        now = _now()
        if delta_cursor:
            state.delta_cursor = delta_cursor
        state.last_poll_at = now
        state.last_successful_poll_at = now
        state.consecutive_error_count = 0
        state.last_error_message = None
        state.healthy = True
        state.updated_at = now
        session.commit()
        return state

    def record_poll_failure(
        self,
        session: Session,
        state: ChangeDetectionStateDB,
        error: str,
        unhealthy_after: int
    ) -> ChangeDetectionStateDB:
        now = _now()
        state.last_poll_at = now
        state.consecutive_error_count = (state.consecutive_error_count or 0) + 1
        state.last_error_message = error[:2000]
        if state.consecutive_error_count >= unhealthy_after:
            state.healthy = False
        state.updated_at = now
        session.commit()
        return state

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        session: Session,
        subscription_id: str,
        calendar_id: str,
        expires_at: datetime,
        bridge_name: str = 'outlook',
        resource_id: Optional[str] = None,
        notification_url: Optional[str] = None,
        client_state: Optional[str] = None,
        change_types: str = 'created,updated,deleted'
    ) -> WebhookSubscriptionDB:
        subscription = WebhookSubscriptionDB(
            subscription_id=subscription_id,
            bridge_name=bridge_name,
            calendar_id=calendar_id,
            resource_id=resource_id,
            notification_url=notification_url,
            client_state=client_state,
            change_types=change_types,
            expires_at=expires_at,
            is_active=True,
        )
        session.add(subscription)
        session.commit()
        return subscription

    def get_subscription(self, session: Session, subscription_id: str) -> Optional[WebhookSubscriptionDB]:
        return session.query(WebhookSubscriptionDB).filter(
            WebhookSubscriptionDB.subscription_id == subscription_id
        ).first()

    def get_active_subscriptions(
        self,
        session: Session,
        calendar_id: Optional[str] = None
    ) -> List[WebhookSubscriptionDB]:
        query = session.query(WebhookSubscriptionDB).filter(WebhookSubscriptionDB.is_active.is_(True))
        if calendar_id is not None:
            query = query.filter(WebhookSubscriptionDB.calendar_id == calendar_id)
        return query.order_by(WebhookSubscriptionDB.expires_at).all()

    def list_subscriptions(self, session: Session) -> List[WebhookSubscriptionDB]:
        return session.query(WebhookSubscriptionDB).order_by(WebhookSubscriptionDB.created_at).all()

    def get_expiring_subscriptions(self, session: Session, before: datetime) -> List[WebhookSubscriptionDB]:
        return session.query(WebhookSubscriptionDB).filter(
            WebhookSubscriptionDB.is_active.is_(True),
            WebhookSubscriptionDB.expires_at <= before
        ).all()

    def update_subscription_expiry(
        self,
        session: Session,
        subscription: WebhookSubscriptionDB,
        expires_at: datetime
    ) -> WebhookSubscriptionDB:
        subscription.expires_at = expires_at
        subscription.updated_at = _now()
        session.commit()
        return subscription

    def deactivate_subscription(self, session: Session, subscription: WebhookSubscriptionDB) -> None:
        subscription.is_active = False
        subscription.updated_at = _now()
        session.commit()

    def record_notification(self, session: Session, subscription: WebhookSubscriptionDB) -> None:
        """Bump the notification counter with a row-scoped increment."""
        now = _now()
        session.query(WebhookSubscriptionDB).filter(
            WebhookSubscriptionDB.id == subscription.id
        ).update({
            WebhookSubscriptionDB.notification_count: WebhookSubscriptionDB.notification_count + 1,
            WebhookSubscriptionDB.last_notification_at: now,
        }, synchronize_session=False)
        session.commit()

    # ------------------------------------------------------------------
    # Deletion check queue
    # ------------------------------------------------------------------

    def enqueue_deletion_check(
        self,
        session: Session,
        check: DeletionCheck,
        max_attempts: int = 3
    ) -> DeletionCheckTaskDB:
        task = DeletionCheckTaskDB(
            calendar_id=check.calendar_id,
            event_id=check.event_id,
            bridge_name=check.bridge_name,
            change_type=check.change_type,
            source=check.source,
            attempts=check.attempts,
            max_attempts=max_attempts,
            enqueued_at=check.enqueued_at,
            scheduled_at=_now(),
        )
        session.add(task)
        session.commit()
        return task

    def claim_deletion_checks(
        self,
        session: Session,
        limit: int = 50,
        lease_seconds: int = 300
    ) -> List[DeletionCheckTaskDB]:
        """Claim due tasks via an atomic update to processing.

        A task another consumer claimed between the select and the update is
        skipped, so no task is ever owned by two consumers. Processing tasks
        whose lease expired belong to a consumer that died and are claimed
        again.
        """
        now = _now()
        claimable = or_(
            and_(
                DeletionCheckTaskDB.status == TaskStatus.PENDING.value,
                DeletionCheckTaskDB.scheduled_at <= now
            ),
            and_(
                DeletionCheckTaskDB.status == TaskStatus.PROCESSING.value,
                or_(
                    DeletionCheckTaskDB.claimed_at.is_(None),
                    DeletionCheckTaskDB.claimed_at <= now - timedelta(seconds=lease_seconds)
                )
            )
        )
        candidates = session.query(DeletionCheckTaskDB.id).filter(claimable).order_by(
            DeletionCheckTaskDB.scheduled_at, DeletionCheckTaskDB.id
        ).limit(limit).all()

        claimed_ids = []
        for (task_id,) in candidates:
            updated = session.query(DeletionCheckTaskDB).filter(
                DeletionCheckTaskDB.id == task_id,
                claimable
            ).update({
                DeletionCheckTaskDB.status: TaskStatus.PROCESSING.value,
                DeletionCheckTaskDB.claimed_at: now,
            }, synchronize_session=False)
            if updated:
                claimed_ids.append(task_id)
        session.commit()

        if not claimed_ids:
            return []
        return session.query(DeletionCheckTaskDB).filter(
            DeletionCheckTaskDB.id.in_(claimed_ids)
        ).order_by(DeletionCheckTaskDB.scheduled_at, DeletionCheckTaskDB.id).all()

    def complete_deletion_check(self, session: Session, task_id: int, note: Optional[str] = None) -> None:
        task = session.get(DeletionCheckTaskDB, task_id)
        if task is None:
            return
        task.status = TaskStatus.COMPLETED.value
        task.processed_at = _now()
        task.error_message = note
        session.commit()

    def fail_deletion_check(self, session: Session, task_id: int, error: str) -> Optional[str]:
        """Record a failed attempt; reschedule with backoff until attempts run out.

        Returns:
            The task's new status
        """
        task = session.get(DeletionCheckTaskDB, task_id)
        if task is None:
            return None
        task.attempts = (task.attempts or 0) + 1
        task.error_message = error[:2000]
        if task.attempts >= task.max_attempts:
            task.status = TaskStatus.FAILED.value
            task.processed_at = _now()
        else:
            task.status = TaskStatus.PENDING.value
            task.claimed_at = None
            task.scheduled_at = _now() + timedelta(minutes=2 ** task.attempts)
        session.commit()
        return task.status

    def count_tasks(self, session: Session, status: str = TaskStatus.PENDING.value) -> int:
        return session.query(func.count(DeletionCheckTaskDB.id)).filter(
            DeletionCheckTaskDB.status == status
        ).scalar() or 0

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def log_sync(
        self,
        session: Session,
        action: str,
        mapping_id: Optional[int] = None,
        direction: Optional[str] = None,
        status: str = 'success',
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> SyncLogDB:
        entry = SyncLogDB(
            mapping_id=mapping_id,
            action=getattr(action, 'value', action),
            direction=getattr(direction, 'value', direction),
            status=status,
            message=message,
            details=json.dumps(details, default=str) if details else None,
        )
        session.add(entry)
        session.commit()
        return entry

    def get_sync_log(self, session: Session, mapping_id: Optional[int] = None, limit: int = 100) -> List[SyncLogDB]:
        query = session.query(SyncLogDB)
        if mapping_id is not None:
            query = query.filter(SyncLogDB.mapping_id == mapping_id)
        return query.order_by(SyncLogDB.id.desc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Alerts and activity statistics
    # ------------------------------------------------------------------

    def create_alert(self, session: Session, alert: Alert) -> AlertDB:
        row = AlertDB(
            alert_type=alert.alert_type,
            severity=alert.severity.value,
            message=alert.message,
            alert_data=json.dumps(alert.data, default=str) if alert.data else None,
            created_at=alert.created_at,
        )
        session.add(row)
        session.commit()
        return row

    def get_recent_alerts(
        self,
        session: Session,
        since: datetime,
        limit: int = 50,
        unacknowledged_only: bool = False
    ) -> List[AlertDB]:
        query = session.query(AlertDB).filter(AlertDB.created_at > since)
        if unacknowledged_only:
            query = query.filter(AlertDB.acknowledged_at.is_(None))
        return query.order_by(AlertDB.created_at.desc(), AlertDB.id.desc()).limit(limit).all()

    def acknowledge_alert(self, session: Session, alert_id: int, acknowledged_by: str) -> Optional[AlertDB]:
        row = session.get(AlertDB, alert_id)
        if row is None:
            return None
        if row.acknowledged_at is None:
            row.acknowledged_at = _now()
            row.acknowledged_by = acknowledged_by
            session.commit()
        return row

    def delete_alerts_before(self, session: Session, cutoff: datetime) -> int:
        deleted = session.query(AlertDB).filter(AlertDB.created_at < cutoff).delete(synchronize_session=False)
        session.commit()
        return deleted

    def get_alert_statistics(self, session: Session, since: datetime) -> Dict[str, int]:
        rows = session.query(AlertDB.severity, func.count(AlertDB.id)).filter(
            AlertDB.created_at > since
        ).group_by(AlertDB.severity).all()
        stats = {severity.value: 0 for severity in AlertSeverity}
        stats.update({severity: count for severity, count in rows})
        stats['unacknowledged'] = session.query(func.count(AlertDB.id)).filter(
            AlertDB.created_at > since, AlertDB.acknowledged_at.is_(None)
        ).scalar() or 0
        return stats

    def count_recent_mapping_activity(self, session: Session, since: datetime) -> Tuple[int, int]:
        """Count mappings touched since a point in time.

        Returns:
            Tuple of (total, in error)
        """
        total = session.query(func.count(MappingDB.id)).filter(MappingDB.updated_at > since).scalar() or 0
        errors = session.query(func.count(MappingDB.id)).filter(
            MappingDB.updated_at > since,
            MappingDB.sync_status == SyncStatus.ERROR.value
        ).scalar() or 0
        return total, errors

    def count_stalled_mappings(self, session: Session, created_before: datetime) -> int:
        return session.query(func.count(MappingDB.id)).filter(
            MappingDB.sync_status == SyncStatus.PENDING.value,
            MappingDB.created_at < created_before
        ).scalar() or 0

    def get_last_activity_at(self, session: Session) -> Optional[datetime]:
        """Latest sync log entry or poll, whichever is newer."""
        candidates = [
            session.query(func.max(SyncLogDB.created_at)).scalar(),
            session.query(func.max(ChangeDetectionStateDB.last_poll_at)).scalar(),
        ]
        candidates = [ensure_utc(value) for value in candidates if value is not None]
        return max(candidates) if candidates else None

    def ping(self, session: Session) -> None:
        session.execute(text('SELECT 1'))

    # ------------------------------------------------------------------
    # Reservations (direct store)
    # ------------------------------------------------------------------

    def create_reservation(self, session: Session, **fields: Any) -> ReservationDB:
        reservation = ReservationDB(**fields)
        session.add(reservation)
        session.commit()
        return reservation

    def get_reservation(self, session: Session, kind: str, reservation_id: str) -> Optional[ReservationDB]:
        try:
            pk = int(reservation_id)
        except (TypeError, ValueError):
            return None
        reservation = session.get(ReservationDB, pk)
        if reservation is None or reservation.kind != str(getattr(kind, 'value', kind)):
            return None
        return reservation

    def list_reservations(
        self,
        session: Session,
        resource_id: str,
        start: datetime,
        end: datetime,
        include_inactive: bool = False
    ) -> List[ReservationDB]:
        query = session.query(ReservationDB).filter(
            ReservationDB.resource_id == str(resource_id),
            ReservationDB.start < end,
            ReservationDB.end > start
        )
        if not include_inactive:
            query = query.filter(ReservationDB.active.is_(True))
        return query.order_by(ReservationDB.start, ReservationDB.id).all()

    def update_reservation(self, session: Session, reservation: ReservationDB, **fields: Any) -> ReservationDB:
        for key, value in fields.items():
            setattr(reservation, key, value)
        reservation.updated_at = _now()
        session.commit()
        return reservation

    def soft_delete_reservation(
        self,
        session: Session,
        reservation: ReservationDB,
        note: str = CANCELLATION_NOTE
    ) -> bool:
        """Deactivate a reservation, appending the cancellation note once."""
        description = reservation.description or ''
        if note and note.strip() not in description:
            reservation.description = description + note
        reservation.active = False
        reservation.updated_at = _now()
        session.commit()
        return True

    def list_resource_ids(self, session: Session) -> List[str]:
        rows = session.query(ReservationDB.resource_id).distinct().order_by(ReservationDB.resource_id).all()
        return [row[0] for row in rows]
