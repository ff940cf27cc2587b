"""FastAPI front end exposing the bridge entry points."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .bridge_manager import BridgeManager
from .bridges.base import BridgeNotFoundError
from .config import Settings
from .models import SyncOptions, utcnow

logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    source_bridge: str
    target_bridge: str
    source_calendar_id: str
    target_calendar_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    handle_deletions: Optional[bool] = None
    dry_run: Optional[bool] = None


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = "api"


class BridgeRuntime:
    """Timer that triggers the same entry points an external scheduler would."""

    def __init__(self, manager: BridgeManager, interval_seconds: int):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.trigger = asyncio.Event()
        self.running = True
        self.last_cycle: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    async def run_cycle(self) -> Dict[str, Any]:
        reports = await self.manager.sync_all_pairs()
        poll = await self.manager.poll_changes()
        deletions = await self.manager.process_deletion_queue()
        cancellations = await self.manager.detect_and_sync_cancellations()
        renewals = await self.manager.renew_subscriptions()
        alerts = await self.manager.check_and_alert()
        self.last_cycle = utcnow()
        return {
            'sync': [report.summary() for report in reports],
            'poll': poll.dict(),
            'deletions': deletions.dict(),
            'cancellations': cancellations.dict(),
            'subscriptions': renewals,
            'alerts': alerts.dict(),
        }

    async def run(self):
        while self.running:
            try:
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()
                if not self.running:
                    break
                await self.run_cycle()
                self.last_error = None
            except Exception as e:
                # Keep the loop alive; the next cycle retries
                self.last_error = str(e)
                logger.exception("Background cycle failed")
                await asyncio.sleep(2)

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[BridgeManager] = None,
    background: Optional[bool] = None
) -> FastAPI:
    """Build the HTTP application.

    Args:
        settings: Application settings, loaded from the environment when omitted
        manager: Preconfigured bridge manager
        background: Run the periodic sync/poll/deletion loop (default: only
            when no manager is injected)
    """
    app = FastAPI(title="calbridge", version="0.1.0")
    if background is None:
        background = manager is None

    @app.on_event("startup")
    async def on_startup():
        nonlocal settings, manager
        if manager is None:
            settings = settings or Settings()
            manager = BridgeManager.from_settings(settings)
        app.state.settings = manager.settings
        app.state.manager = manager
        await manager.initialize()
        app.state.runtime = None
        if background:
            runtime = BridgeRuntime(manager, manager.config.sync_interval_minutes * 60)
            runtime.task = asyncio.create_task(runtime.run())
            app.state.runtime = runtime

    @app.on_event("shutdown")
    async def on_shutdown():
        runtime: Optional[BridgeRuntime] = app.state.runtime
        if runtime is not None:
            runtime.running = False
            runtime.signal()
            if runtime.task:
                await asyncio.wait([runtime.task], timeout=5)
        await app.state.manager.cleanup()

    def get_manager(request: Request) -> BridgeManager:
        return request.app.state.manager

    def require_api_key(request: Request) -> None:
        expected = request.app.state.settings.api_key
        if expected and request.headers.get("X-API-Key") != expected:
            raise HTTPException(status_code=401, detail="invalid API key")

    @app.get("/health")
    async def health(manager: BridgeManager = Depends(get_manager)):
        status = await manager.health_status()
        runtime: Optional[BridgeRuntime] = app.state.runtime
        if runtime is not None:
            status['runtime'] = {
                'last_cycle': runtime.last_cycle.isoformat() if runtime.last_cycle else None,
                'interval_seconds': runtime.interval_seconds,
                'last_error': runtime.last_error,
            }
        return status

    @app.get("/bridges", dependencies=[Depends(require_api_key)])
    async def bridges(manager: BridgeManager = Depends(get_manager)):
        return {'bridges': manager.get_all_bridges_info()}

    @app.post("/sync", dependencies=[Depends(require_api_key)])
    async def sync(body: SyncRequest, manager: BridgeManager = Depends(get_manager)):
        options = SyncOptions(
            handle_deletions=manager.config.handle_deletions if body.handle_deletions is None else body.handle_deletions,
            dry_run=manager.config.dry_run if body.dry_run is None else body.dry_run,
        )
        try:
            report = await manager.sync(
                body.source_bridge, body.target_bridge, body.source_calendar_id, body.target_calendar_id,
                start_date=body.start_date, end_date=body.end_date, options=options,
            )
        except BridgeNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return JSONResponse(content=jsonable_encoder(report.summary()))

    @app.post("/sync/all", dependencies=[Depends(require_api_key)])
    async def sync_all(manager: BridgeManager = Depends(get_manager)):
        reports = await manager.sync_all_pairs()
        return JSONResponse(content=jsonable_encoder({'reports': [report.summary() for report in reports]}))

    @app.post("/poll", dependencies=[Depends(require_api_key)])
    async def poll(manager: BridgeManager = Depends(get_manager)):
        report = await manager.poll_changes()
        return JSONResponse(content=jsonable_encoder({**report.dict(), 'success': report.success}))

    @app.post("/deletions/process", dependencies=[Depends(require_api_key)])
    async def process_deletions(manager: BridgeManager = Depends(get_manager)):
        report = await manager.process_deletion_queue()
        return {**report.dict(), 'success': report.success}

    @app.post("/cancellations/detect", dependencies=[Depends(require_api_key)])
    async def detect_cancellations(manager: BridgeManager = Depends(get_manager)):
        report = await manager.detect_and_sync_cancellations()
        return {**report.dict(), 'success': report.success}

    @app.post("/subscriptions/renew", dependencies=[Depends(require_api_key)])
    async def renew_subscriptions(manager: BridgeManager = Depends(get_manager)):
        return JSONResponse(content=jsonable_encoder(await manager.renew_subscriptions()))

    @app.post("/alerts/check", dependencies=[Depends(require_api_key)])
    async def check_alerts(manager: BridgeManager = Depends(get_manager)):
        report = await manager.check_and_alert()
        return JSONResponse(content=jsonable_encoder({
            **report.dict(), 'alerts_triggered': report.alerts_triggered, 'success': report.success
        }))

    @app.get("/alerts", dependencies=[Depends(require_api_key)])
    async def list_alerts(
        hours: int = 24,
        limit: int = 50,
        unacknowledged: bool = False,
        manager: BridgeManager = Depends(get_manager)
    ):
        alerts = manager.alerts.get_recent_alerts(hours=hours, limit=limit, unacknowledged_only=unacknowledged)
        return JSONResponse(content=jsonable_encoder({
            'alerts': alerts,
            'statistics': manager.alerts.get_alert_statistics(hours=hours),
        }))

    @app.post("/alerts/{alert_id}/acknowledge", dependencies=[Depends(require_api_key)])
    async def acknowledge_alert(
        alert_id: int, body: Optional[AcknowledgeRequest] = None, manager: BridgeManager = Depends(get_manager)
    ):
        alert = manager.alerts.acknowledge_alert(alert_id, (body or AcknowledgeRequest()).acknowledged_by)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"alert {alert_id} not found")
        return JSONResponse(content=jsonable_encoder(alert))

    @app.post("/alerts/clear", dependencies=[Depends(require_api_key)])
    async def clear_alerts(days: Optional[int] = None, manager: BridgeManager = Depends(get_manager)):
        return {'deleted': manager.alerts.clear_old_alerts(days)}

    @app.post("/webhooks/{bridge_name}")
    async def webhook(bridge_name: str, request: Request, manager: BridgeManager = Depends(get_manager)):
        validation_token = request.query_params.get("validationToken")
        if validation_token is not None:
            return PlainTextResponse(validation_token)

        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid JSON body")

        try:
            result = await manager.ingest_webhook_notification(bridge_name, payload)
        except BridgeNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        if result.validation_response is not None:
            return PlainTextResponse(result.validation_response)
        if result.enqueued and app.state.runtime is not None:
            app.state.runtime.signal()
        return JSONResponse(status_code=202, content=jsonable_encoder({**result.dict(), 'success': result.success}))

    return app


app = create_app()
