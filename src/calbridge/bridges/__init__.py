"""Calendar bridge interfaces and implementations."""

from .base import (
    BaseBridge, BridgeError, ValidationError, RemoteTransientError, AuthenticationError,
    RemoteNotFoundError, DeltaCursorInvalid, QueueBackendError, BridgeNotFoundError
)
from .booking import BookingSystemBridge, ReservationStore, ApiReservationStore, DatabaseReservationStore
from .outlook import OutlookBridge

__all__ = [
    'BaseBridge',
    'BridgeError',
    'ValidationError',
    'RemoteTransientError',
    'AuthenticationError',
    'RemoteNotFoundError',
    'DeltaCursorInvalid',
    'QueueBackendError',
    'BridgeNotFoundError',
    'BookingSystemBridge',
    'ReservationStore',
    'ApiReservationStore',
    'DatabaseReservationStore',
    'OutlookBridge',
]
