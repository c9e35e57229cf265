from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from resilink.config import load_config
from resilink.pairing import ExpiredPairingToken, PairingError, PairingTokenAlreadyUsed
from resilink.subsystem import ResilienceSubsystem

logger = logging.getLogger(__name__)

_subsystem: Optional[ResilienceSubsystem] = None
_autostart = False


def get_subsystem() -> ResilienceSubsystem:
    global _subsystem
    if _subsystem is None:
        _subsystem = ResilienceSubsystem(load_config())
    return _subsystem


def configure(subsystem: ResilienceSubsystem, *, autostart: bool = True) -> None:
    """Install the subsystem served by :data:`app` (used by ``resilink serve``)."""
    global _subsystem, _autostart
    _subsystem = subsystem
    _autostart = autostart


@contextlib.asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    if _autostart:
        await get_subsystem().start()
    try:
        yield
    finally:
        if _autostart and _subsystem is not None:
            await _subsystem.stop()


app = FastAPI(title="Resilink API", version="0.1.0", lifespan=_lifespan)


class OutcomeReport(BaseModel):
    connection_id: str
    success: bool
    duration_ms: float = Field(0.0, ge=0.0)
    attempt: int = Field(1, ge=1)


class RedeemRequest(BaseModel):
    token: str


@app.get("/health")
async def health():
    return get_subsystem().health()


@app.get("/analytics/connections")
async def connection_analytics():
    return get_subsystem().monitor.list_connection_analytics()


@app.get("/analytics/connections/{connection_id}")
async def connection_detail(connection_id: str):
    analytics = get_subsystem().monitor.get_connection_analytics(connection_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail=f"Unknown connection {connection_id}")
    return analytics


@app.get("/analytics/global")
async def global_analytics():
    return get_subsystem().monitor.get_global_analytics()


@app.get("/analytics/reconnection")
async def reconnection_analytics(recent: int = Query(10, ge=0, le=200)):
    manager = get_subsystem().reconnection
    return {
        **manager.get_global_stats(),
        "recent_plans": [entry.to_dict() for entry in manager.recent_plans(recent)],
    }


@app.post("/analytics/reconnection/outcome")
async def reconnection_outcome(report: OutcomeReport):
    manager = get_subsystem().reconnection
    manager.record_outcome(report.connection_id, report.success, report.duration_ms, attempt=report.attempt)
    return {
        "status": "recorded",
        "recommendations": manager.get_recommendations(report.connection_id),
    }


@app.get("/usb/status")
async def usb_status():
    return get_subsystem().usb.get_status()


@app.post("/usb/scan")
async def usb_scan():
    return await get_subsystem().usb.force_scan()


@app.get("/discovery/status")
async def discovery_status():
    return get_subsystem().network.get_status()


@app.get("/discovery/services")
async def discovery_services():
    return [service.to_dict() for service in get_subsystem().network.discovered_services()]


@app.get("/discovery/pairing")
async def discovery_pairing(
    size: int = Query(256, ge=64, le=2048, description="QR size hint in pixels"),
    expiry_hours: float = Query(24.0, ge=0.0, le=24.0 * 30, description="Token lifetime"),
):
    code = get_subsystem().network.generate_pairing_code(size=size, expiry_hours=expiry_hours)
    return code.to_dict()


@app.post("/discovery/pairing/redeem")
async def discovery_pairing_redeem(request: RedeemRequest):
    try:
        grant = get_subsystem().network.redeem_pairing_token(request.token)
    except PairingError as exc:
        logger.info("Rejected pairing token: %s", exc)
        status = 400
        if isinstance(exc, ExpiredPairingToken):
            status = 410
        elif isinstance(exc, PairingTokenAlreadyUsed):
            status = 409
        raise HTTPException(status_code=status, detail=str(exc))
    return grant.to_dict()


@app.get("/discovery/recommendation")
async def discovery_recommendation(
    platform: Optional[str] = Query(None),
    address: Optional[str] = Query(None, description="Client IP address"),
    usb_debugging: bool = Query(False),
    connection_type: Optional[str] = Query(None, description="wifi, cellular, ethernet"),
):
    hints: Dict[str, Any] = {
        "platform": platform,
        "address": address,
        "usb_debugging": usb_debugging,
        "connection_type": connection_type,
    }
    return get_subsystem().recommend_connection_methods(hints)


@app.websocket("/events")
async def events(ws: WebSocket, kinds: Optional[str] = None):
    wanted: Optional[List[str]] = [kind for kind in kinds.split(",") if kind] if kinds else None
    # Subscribe before accepting so nothing emitted after the handshake is missed.
    queue, subscription = get_subsystem().bus.open_queue(wanted, maxsize=1000)

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await ws.send_json(event.to_dict())

    pump: Optional[asyncio.Task[None]] = None
    try:
        await ws.accept()
        pump = asyncio.create_task(_pump())
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        subscription.cancel()
        if pump is not None:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await pump
