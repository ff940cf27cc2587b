"""Operator alerts: health checks over the sync state, stored and forwarded."""

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .database import DatabaseManager
from .models import Alert, AlertReport, AlertSeverity, SyncConfiguration, utcnow
from .queue import DeletionQueue

logger = logging.getLogger(__name__)

SLOW_DATABASE_WARNING_MS = 2000
SLOW_DATABASE_CRITICAL_MS = 5000


class AlertService:
    """Runs alert checks, stores triggered alerts and notifies a webhook.

    Each check looks at state the bridge already keeps (mappings, the sync
    log, polling state and the deletion queue) and returns an alert or
    ``None``.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        queue: DeletionQueue,
        config: SyncConfiguration,
        webhook_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: int = 10
    ):
        self.db_manager = db_manager
        self.queue = queue
        self.config = config
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = http_client
        self.logger = logger.getChild('alert_service')

    @property
    def checks(self) -> List[Callable[[], Any]]:
        return [
            self.check_error_rate,
            self.check_stalled_syncs,
            self.check_database_health,
            self.check_scheduler_activity,
            self.check_polling_health,
            self.check_failed_deletion_checks,
        ]

    async def check_and_alert(self) -> AlertReport:
        """Run every check and process the alerts they raise.

        Returns:
            Alert report; a failing check is reported, never raised
        """
        report = AlertReport()
        for check in self.checks:
            try:
                alert = await check()
            except SQLAlchemyError as e:
                self.logger.error(f"Alert check {check.__name__} failed: {e}")
                report.errors.append({
                    'check': check.__name__,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
                continue
            if alert is not None:
                report.alerts.append(await self._process(alert))

        self.logger.info(f"Alert checks: {report.alerts_triggered} alerts, {len(report.errors)} errors")
        return report

    async def check_error_rate(self) -> Optional[Alert]:
        with self.db_manager.get_session() as session:
            total, errors = self.db_manager.count_recent_mapping_activity(session, utcnow() - timedelta(hours=1))
        if not total:
            return None

        error_rate = round(errors / total * 100, 1)
        data = {'error_rate': error_rate, 'error_count': errors, 'total_operations': total}
        if error_rate > self.config.alert_error_rate_critical:
            return Alert(
                alert_type='high_error_rate',
                severity=AlertSeverity.CRITICAL,
                message=f"High error rate detected: {error_rate}% ({errors}/{total}) in the last hour",
                data=data,
            )
        if error_rate > self.config.alert_error_rate_warning:
            return Alert(
                alert_type='elevated_error_rate',
                severity=AlertSeverity.WARNING,
                message=f"Elevated error rate: {error_rate}% ({errors}/{total}) in the last hour",
                data=data,
            )
        return None

    async def check_stalled_syncs(self) -> Optional[Alert]:
        minutes = self.config.alert_stalled_after_minutes
        with self.db_manager.get_session() as session:
            stalled = self.db_manager.count_stalled_mappings(session, utcnow() - timedelta(minutes=minutes))
        if stalled <= self.config.alert_stalled_threshold:
            return None
        return Alert(
            alert_type='stalled_syncs',
            severity=AlertSeverity.WARNING,
            message=f"Found {stalled} mappings pending for more than {minutes} minutes",
            data={'stalled_count': stalled, 'pending_for_minutes': minutes},
        )

    async def check_database_health(self) -> Optional[Alert]:
        started = time.monotonic()
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.ping(session)
        except SQLAlchemyError as e:
            return Alert(
                alert_type='database_connectivity',
                severity=AlertSeverity.CRITICAL,
                message=f"Database connectivity failed: {e}",
                data={'error': str(e)},
            )
        response_time_ms = round((time.monotonic() - started) * 1000, 2)

        if response_time_ms > SLOW_DATABASE_CRITICAL_MS:
            severity = AlertSeverity.CRITICAL
            message = f"Database response time is critically slow: {response_time_ms}ms"
        elif response_time_ms > SLOW_DATABASE_WARNING_MS:
            severity = AlertSeverity.WARNING
            message = f"Database response time is slow: {response_time_ms}ms"
        else:
            return None
        return Alert(
            alert_type='slow_database', severity=severity, message=message,
            data={'response_time_ms': response_time_ms},
        )

    async def check_scheduler_activity(self) -> Optional[Alert]:
        """Alert when no sync or poll ran within the inactivity window."""
        minutes = self.config.alert_inactivity_minutes
        with self.db_manager.get_session() as session:
            last_activity = self.db_manager.get_last_activity_at(session)
        if last_activity is not None and last_activity > utcnow() - timedelta(minutes=minutes):
            return None
        return Alert(
            alert_type='no_scheduler_activity',
            severity=AlertSeverity.WARNING,
            message=f"No automated sync activity detected in the last {minutes} minutes",
            data={
                'minutes_without_activity': minutes,
                'last_activity_at': last_activity.isoformat() if last_activity else None,
            },
        )

    async def check_polling_health(self) -> Optional[Alert]:
        with self.db_manager.get_session() as session:
            unhealthy = [
                {
                    'calendar_id': state.calendar_id,
                    'consecutive_error_count': state.consecutive_error_count,
                    'last_error_message': state.last_error_message,
                }
                for state in self.db_manager.list_change_states(session)
                if not state.healthy
            ]
        if not unhealthy:
            return None
        calendars = ', '.join(item['calendar_id'] for item in unhealthy)
        return Alert(
            alert_type='unhealthy_polling',
            severity=AlertSeverity.CRITICAL,
            message=f"Change detection is unhealthy for {len(unhealthy)} calendars: {calendars}",
            data={'calendars': unhealthy},
        )

    async def check_failed_deletion_checks(self) -> Optional[Alert]:
        failed = (await self.queue.depth()).get('database_failed', 0)
        if not failed:
            return None
        return Alert(
            alert_type='failed_deletion_checks',
            severity=AlertSeverity.WARNING,
            message=f"{failed} deletion checks exhausted their retries",
            data={'failed_count': failed},
        )

    async def _process(self, alert: Alert) -> Alert:
        if alert.severity == AlertSeverity.CRITICAL:
            self.logger.critical(f"CRITICAL ALERT [{alert.alert_type}]: {alert.message}")
        else:
            self.logger.warning(f"Alert [{alert.alert_type}]: {alert.message}")

        with self.db_manager.get_session() as session:
            stored = self.db_manager.create_alert(session, alert).to_model()

        if stored.severity in (AlertSeverity.WARNING, AlertSeverity.CRITICAL):
            await self._notify(stored)
        return stored

    async def _notify(self, alert: Alert) -> bool:
        """POST the alert to the configured webhook.

        Returns:
            True when the webhook accepted the alert
        """
        if not self.webhook_url:
            return False
        payload = {
            'service': 'calbridge',
            'alert_id': alert.id,
            'alert_type': alert.alert_type,
            'severity': alert.severity.value,
            'message': alert.message,
            'timestamp': alert.created_at.isoformat(),
            'data': alert.data,
        }
        try:
            response = await self.client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            self.logger.error(f"Alert webhook delivery failed: {e}")
            return False
        if response.status_code >= 300:
            self.logger.warning(f"Alert webhook returned HTTP {response.status_code}")
            return False
        return True

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={'User-Agent': 'calbridge-alerts/1.0'},
            )
        return self._client

    def get_recent_alerts(
        self,
        hours: int = 24,
        limit: int = 50,
        unacknowledged_only: bool = False
    ) -> List[Alert]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_recent_alerts(
                session, utcnow() - timedelta(hours=hours), limit=limit, unacknowledged_only=unacknowledged_only
            )
            return [row.to_model() for row in rows]

    def get_alert_statistics(self, hours: int = 24) -> Dict[str, int]:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_alert_statistics(session, utcnow() - timedelta(hours=hours))

    def acknowledge_alert(self, alert_id: int, acknowledged_by: str) -> Optional[Alert]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.acknowledge_alert(session, alert_id, acknowledged_by)
            return row.to_model() if row is not None else None

    def clear_old_alerts(self, days: Optional[int] = None) -> int:
        days = days or self.config.alert_retention_days
        with self.db_manager.get_session() as session:
            deleted = self.db_manager.delete_alerts_before(session, utcnow() - timedelta(days=days))
        self.logger.info(f"Cleared {deleted} alerts older than {days} days")
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
