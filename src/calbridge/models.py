"""Data models for calendar bridge synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, List, Set, Tuple
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, validator
import pytz


class BridgeRole(str, Enum):
    """Which side of the bridge a calendar system sits on."""

    LOCAL = "local"  # Booking system holding the reservations
    REMOTE = "remote"  # External calendar API


class ReservationKind(str, Enum):
    """Local reservation categories."""

    EVENT = "event"
    BOOKING = "booking"
    ALLOCATION = "allocation"


class SyncStatus(str, Enum):
    """Mapping sync status."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


class SyncDirection(str, Enum):
    """Mapping sync direction."""

    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    BIDIRECTIONAL = "bidirectional"


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"
    CONFLICT = "conflict"


class ChangeType(str, Enum):
    """Change notification types."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class TaskStatus(str, Enum):
    """Deletion check task status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


BRIDGE_SOURCE_TAG = "calendar_bridge"
CANCELLATION_NOTE = "\n\n--- Cancelled from Outlook ---"


def format_reservation_ref(kind: ReservationKind, reservation_id: Any) -> str:
    """Build the external id a booking bridge uses for a reservation."""
    return f"{ReservationKind(kind).value}:{reservation_id}"


def parse_reservation_ref(ref: str) -> Tuple[ReservationKind, str]:
    """Split a reservation reference into kind and id.

    Bare ids are treated as ``event`` reservations.
    """
    if ':' in ref:
        kind, _, reservation_id = ref.partition(':')
        try:
            return ReservationKind(kind), reservation_id
        except ValueError:
            pass
    return ReservationKind.EVENT, ref


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware datetime, assuming UTC for naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


class Provenance(BaseModel):
    """Origin metadata stamped on every event the bridge creates."""

    origin_bridge: str = Field(..., description="Bridge the event was copied from")
    origin_event_id: Optional[str] = Field(None, description="Event id on the originating bridge")
    synced_at: datetime = Field(default_factory=utcnow)
    source_tag: str = Field(BRIDGE_SOURCE_TAG)

    @validator('synced_at', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v


class CalendarEvent(BaseModel):
    """Generic single-instance event exchanged between bridges."""

    id: str = Field("", description="Event ID on the owning bridge")
    kind: Optional[ReservationKind] = Field(None, description="Local reservation kind, booking side only")
    bridge_type: Optional[str] = Field(None, description="Bridge type the event was read from")
    subject: str = Field("", description="Event title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    timezone: str = Field("UTC")
    organizer: Optional[str] = Field(None)
    attendees: List[str] = Field(default_factory=list)
    created: Optional[datetime] = Field(None)
    last_modified: datetime = Field(default_factory=utcnow)
    provenance: Optional[Provenance] = Field(None, description="Set when the bridge created this event")
    provenance_loaded: bool = Field(True, description="False when the source payload omits provenance metadata")
    raw_data: Optional[Dict[str, Any]] = Field(None, description="Original payload")

    @validator('start', 'end', 'created', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    def is_bridge_created(self) -> bool:
        """True when the event carries this engine's provenance tag."""
        return self.provenance is not None and self.provenance.source_tag == BRIDGE_SOURCE_TAG

    def overlaps(self, other: 'CalendarEvent') -> bool:
        if not (self.start and self.end and other.start and other.end):
            return False
        return self.start < other.end and other.start < self.end


class BridgeCapabilities(BaseModel):
    """Static capability record of a bridge."""

    supports_webhooks: bool = False
    supports_recurring: bool = False
    supports_all_day: bool = False
    supports_attendees: bool = False
    supports_attachments: bool = False
    supports_delta: bool = False
    max_events_per_request: int = 100
    rate_limit_per_minute: int = 60


class CalendarInfo(BaseModel):
    """Calendar information model."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar name")
    bridge_type: str = Field(..., description="Bridge type owning the calendar")
    description: Optional[str] = Field(None)
    email: Optional[str] = Field(None)
    calendar_type: str = Field("resource")
    timezone: str = Field("UTC")


class Reservation(BaseModel):
    """Local booking-system reservation."""

    id: str
    kind: ReservationKind = ReservationKind.EVENT
    resource_id: str
    name: str = ""
    description: Optional[str] = None
    organizer: Optional[str] = None
    contact_email: Optional[str] = None
    start: datetime
    end: datetime
    active: bool = True
    origin: Optional[str] = None
    origin_bridge: Optional[str] = None
    origin_event_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @validator('start', 'end', 'updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def ref(self) -> str:
        return format_reservation_ref(self.kind, self.id)

    def to_event(self, bridge_type: str) -> CalendarEvent:
        """Convert to the generic event form."""
        provenance = None
        if self.origin == BRIDGE_SOURCE_TAG:
            provenance = Provenance(
                origin_bridge=self.origin_bridge or "unknown",
                origin_event_id=self.origin_event_id,
                synced_at=self.updated_at,
            )
        attendees = [self.contact_email] if self.contact_email else []
        return CalendarEvent(
            id=self.id,
            kind=self.kind,
            bridge_type=bridge_type,
            subject=self.name,
            description=self.description,
            start=self.start,
            end=self.end,
            organizer=self.organizer,
            attendees=attendees,
            last_modified=self.updated_at,
            provenance=provenance,
        )


class SyncOptions(BaseModel):
    """Per-call sync options."""

    handle_deletions: bool = False
    dry_run: bool = False


class SyncResult(BaseModel):
    """Result of syncing one source event."""

    operation: SyncOperation
    event_id: str
    mapping_id: Optional[int] = None
    target_event_id: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    event_subject: Optional[str] = None


class SyncReport(BaseModel):
    """Aggregate result of one bridge-to-bridge sync pass."""

    sync_id: UUID = Field(default_factory=uuid4)
    source_bridge: str
    target_bridge: str
    source_calendar_id: str
    target_calendar_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(None)
    dry_run: bool = Field(False)

    source_events_found: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deletions_enqueued: int = 0

    processed_events: List[SyncResult] = Field(default_factory=list)
    events_to_process: List[Dict[str, Any]] = Field(default_factory=list)
    conflicts: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def summary(self) -> Dict[str, Any]:
        """Plain-dict view used by the HTTP and CLI front ends."""
        data = self.dict(exclude={'processed_events'})
        data['sync_id'] = str(self.sync_id)
        data['success'] = self.success
        return data


class CalendarPollResult(BaseModel):
    """Polling outcome for one remote calendar."""

    calendar_id: str
    bridge_name: str
    used_cursor: bool = False
    fell_back: bool = False
    changes_detected: int = 0
    deletions_enqueued: int = 0
    new_mappings: int = 0
    healthy: bool = True
    error: Optional[str] = None


class PollReport(BaseModel):
    """Aggregate result of one polling pass."""

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    calendars_polled: int = 0
    changes_detected: int = 0
    deletions_enqueued: int = 0
    new_mappings: int = 0
    fallbacks: int = 0
    calendars: List[CalendarPollResult] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class WebhookResult(BaseModel):
    """Result of ingesting one webhook delivery."""

    validation_response: Optional[str] = None
    received: int = 0
    enqueued: int = 0
    skipped: int = 0
    rejected: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class DeletionReport(BaseModel):
    """Result of draining the deletion check queue."""

    processed: int = 0
    deleted: int = 0
    cancelled: int = 0
    no_op: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class CancellationReport(BaseModel):
    """Result of the local cancellation/reactivation scan."""

    processed: int = 0
    cancelled: int = 0
    reactivated: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class AlertSeverity(str, Enum):
    """Operator alert severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Alert(BaseModel):
    """Operator alert raised by a health check."""

    id: Optional[int] = None
    alert_type: str
    severity: AlertSeverity
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None


class AlertReport(BaseModel):
    """Result of one alert check pass."""

    checked_at: datetime = Field(default_factory=utcnow)
    alerts: List[Alert] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def alerts_triggered(self) -> int:
        return len(self.alerts)

    @property
    def success(self) -> bool:
        return not self.errors


class CalendarPair(BaseModel):
    """Pairing between a local resource and a remote calendar."""

    name: Optional[str] = Field(None, description="Human-readable name for this pair")
    resource_id: str = Field(..., description="Local booking-system resource ID")
    remote_calendar_id: str = Field(..., description="Remote calendar ID (mailbox or room address)")
    local_bridge: str = Field("booking_system")
    remote_bridge: str = Field("outlook")
    bidirectional: bool = Field(True, description="Whether sync is bidirectional")
    sync_direction: Optional[SyncDirection] = Field(None, description="Direction when not bidirectional")
    enabled: bool = Field(True)

    @validator('sync_direction')
    def validate_sync_direction(cls, v, values):
        """Validate sync direction."""
        if v is not None and not values.get('bidirectional', True):
            if v == SyncDirection.BIDIRECTIONAL:
                raise ValueError("sync_direction must be 'to_remote' or 'from_remote' for one-way pairs")
        return v

    def directions(self) -> List[SyncDirection]:
        if self.bidirectional:
            return [SyncDirection.TO_REMOTE, SyncDirection.FROM_REMOTE]
        return [self.sync_direction or SyncDirection.TO_REMOTE]

    def __str__(self) -> str:
        name = self.name or f"Resource {self.resource_id}"
        arrow = "↔" if self.bidirectional else ("→" if self.sync_direction != SyncDirection.FROM_REMOTE else "←")
        return f"{name} ({self.local_bridge}:{self.resource_id} {arrow} {self.remote_bridge}:{self.remote_calendar_id})"


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    # Lower value wins conflict resolution
    priority_levels: Dict[ReservationKind, int] = Field(
        default_factory=lambda: {
            ReservationKind.EVENT: 1,
            ReservationKind.BOOKING: 2,
            ReservationKind.ALLOCATION: 3,
        }
    )
    handle_deletions: bool = Field(True)
    dry_run: bool = Field(False)
    sync_past_days: int = Field(7, ge=0)
    sync_future_days: int = Field(60, ge=0)
    sync_interval_minutes: int = Field(15, ge=1)

    poll_lookback_days: int = Field(30, ge=0)
    poll_lookahead_days: int = Field(30, ge=0)
    unhealthy_after_errors: int = Field(3, ge=1)

    webhook_ttl_hours: int = Field(24, ge=1)
    webhook_renewal_lead_minutes: int = Field(60, ge=1)

    queue_batch_size: int = Field(50, ge=1)
    queue_max_attempts: int = Field(3, ge=1)
    queue_lease_seconds: int = Field(300, ge=1)

    alert_error_rate_warning: float = Field(10.0, ge=0)  # percent of mappings touched in the last hour
    alert_error_rate_critical: float = Field(25.0, ge=0)
    alert_stalled_after_minutes: int = Field(120, ge=1)
    alert_stalled_threshold: int = Field(10, ge=0)
    alert_inactivity_minutes: int = Field(30, ge=1)
    alert_retention_days: int = Field(7, ge=1)

    calendar_pairs: List[CalendarPair] = Field(default_factory=list)

    @validator('calendar_pairs')
    def validate_calendar_pairs(cls, v):
        """Validate that enabled pairs don't reuse a remote calendar."""
        remote_ids = [(p.remote_bridge, p.remote_calendar_id) for p in v if p.enabled]
        if len(remote_ids) != len(set(remote_ids)):
            raise ValueError("Duplicate remote calendar IDs found in calendar pairs")
        return v

    def priority_for(self, kind: Optional[ReservationKind]) -> int:
        if kind is None:
            return max(self.priority_levels.values(), default=3)
        return self.priority_levels.get(ReservationKind(kind), 3)

    def get_active_pairs(self) -> List[CalendarPair]:
        return [pair for pair in self.calendar_pairs if pair.enabled]


@dataclass
class ChangeSet:
    changed: Dict[str, CalendarEvent]
    deleted_ids: Set[str]
    next_cursor: Optional[str]
    used_cursor: bool
    snapshot: bool = False


@dataclass
class DeletionCheck:
    """Queued request to verify whether a remote event still exists."""

    calendar_id: str
    event_id: str
    bridge_name: str = "outlook"
    change_type: str = ChangeType.DELETED.value
    source: str = "webhook"
    enqueued_at: datetime = field(default_factory=utcnow)
    attempts: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            'calendar_id': self.calendar_id,
            'event_id': self.event_id,
            'bridge_name': self.bridge_name,
            'change_type': self.change_type,
            'source': self.source,
            'enqueued_at': self.enqueued_at.isoformat(),
            'attempts': self.attempts,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'DeletionCheck':
        from dateutil.parser import isoparse

        enqueued_at = data.get('enqueued_at')
        return cls(
            calendar_id=data['calendar_id'],
            event_id=data['event_id'],
            bridge_name=data.get('bridge_name', 'outlook'),
            change_type=data.get('change_type', ChangeType.DELETED.value),
            source=data.get('source', 'webhook'),
            enqueued_at=ensure_utc(isoparse(enqueued_at)) if enqueued_at else utcnow(),
            attempts=int(data.get('attempts', 0)),
        )
