"""
FastAPI surface for the correlation and intervention engine.

Route handlers are defined here; shared utilities live in routes/helpers.py.
Handlers are plain ``def`` so the blocking store calls run in the threadpool.
The WebSocket route hosts the per-user live channel.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from intervention_engine import ForecastSnapshot, needs_immediate_intervention
from pipeline.migrations import schema_audit
from routes.helpers import (
    _parse_day, _patterns_payload, _require_domain, _to_jsonable, _type_counts,
)

log = logging.getLogger("api")


class DataPointRequest(BaseModel):
    data: Dict[str, Any]


class RecalculateRequest(BaseModel):
    date: Optional[str] = None


class InterventionRunRequest(BaseModel):
    forecast: Optional[Dict[str, Any]] = None


def create_app(services, start_background: bool = False) -> FastAPI:
    """Build the app around an already wired ``Services`` graph."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        services.channel.bind_loop(asyncio.get_running_loop())
        if start_background:
            services.start_background()
        try:
            yield
        finally:
            if start_background:
                services.stop_background()

    app = FastAPI(title="Correlation Engine API", version="1.0.0", lifespan=lifespan)

    _origin_env = os.getenv("FRONTEND_ORIGINS", "")
    _origins = [o.strip() for o in _origin_env.split(",") if o.strip()] or [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # ─── Service ───────────────────────────────────────────

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {"service": "correlation-engine", "status": "ok"}

    @app.get("/health-check")
    def health_check() -> JSONResponse:
        try:
            services.store.ping()
            return JSONResponse({"status": "Online", "message": "Online"})
        except Exception as e:
            return JSONResponse(
                status_code=200,
                content={
                    "status": "Waking up",
                    "message": f"Service starting or DB unavailable: {e}",
                },
            )

    @app.get("/api/v1/admin/migration-audit")
    def migration_audit() -> Dict[str, Any]:
        try:
            return schema_audit(services.settings.conn_str)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    # ─── Patterns ──────────────────────────────────────────

    @app.get("/api/v1/users/{user_id}/patterns")
    def user_patterns(
        user_id: str,
        active_only: bool = Query(default=True),
        limit: Optional[int] = Query(default=None, ge=1, le=500),
    ) -> Dict[str, Any]:
        try:
            patterns = _patterns_payload(
                services.patterns.patterns_for_user(user_id, active_only=active_only, limit=limit)
            )
            return {
                "user_id": user_id,
                "count": len(patterns),
                "type_distribution": _type_counts(patterns),
                "patterns": patterns,
            }
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/v1/patterns/stats")
    def pattern_stats() -> Dict[str, Any]:
        try:
            out = _to_jsonable(services.patterns.stats())
            out["global_patterns"] = _patterns_payload(services.patterns.global_patterns())
            return out
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/v1/sweep/run")
    def run_sweep() -> Dict[str, Any]:
        status = services.scheduler.run_now()
        if status is None:
            raise HTTPException(status_code=500, detail="sweep did not complete")
        return _to_jsonable(status)

    # ─── Recovery ──────────────────────────────────────────

    @app.get("/api/v1/users/{user_id}/recovery")
    def recovery(user_id: str) -> Dict[str, Any]:
        try:
            return _to_jsonable(services.recovery.dashboard(user_id))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/v1/users/{user_id}/recovery/recalculate")
    def recalculate_recovery(user_id: str, body: Optional[RecalculateRequest] = None) -> Dict[str, Any]:
        day = _parse_day(body.date if body else None)
        try:
            result = services.recovery.recalculate(user_id, day)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        if result is None:
            raise HTTPException(status_code=404, detail="No wearable or sleep data for that day")
        return _to_jsonable(result)

    # ─── Interventions ─────────────────────────────────────

    @app.get("/api/v1/users/{user_id}/interventions")
    def intervention_history(user_id: str, limit: int = Query(default=50, ge=1, le=500)) -> Dict[str, Any]:
        try:
            return _to_jsonable({
                "user_id": user_id,
                "history": services.interventions.history(user_id, limit),
                "stats": services.interventions.outcome_stats(user_id),
            })
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/v1/users/{user_id}/interventions/run")
    def run_interventions(user_id: str, body: Optional[InterventionRunRequest] = None) -> Dict[str, Any]:
        try:
            correlations, forecast = services.interventions.snapshot(user_id)
            if body is not None and body.forecast is not None:
                forecast = ForecastSnapshot.from_mapping(body.forecast)
            report = services.interventions.execute(user_id, correlations, forecast)
            report["forecast"] = forecast.to_dict()
            report["immediate"] = needs_immediate_intervention(forecast)
            return _to_jsonable(report)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    # ─── Realtime ──────────────────────────────────────────

    @app.post("/api/v1/users/{user_id}/stream/{domain}", status_code=202)
    def stream_point(user_id: str, domain: str, body: DataPointRequest) -> Dict[str, Any]:
        _require_domain(domain)
        services.stream.ingest(user_id, domain, body.data)
        return {"accepted": True, "user_id": user_id, "domain": domain}

    @app.websocket("/ws/{user_id}")
    async def live(websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        services.channel.bind_loop(asyncio.get_running_loop())
        services.channel.connect(user_id, websocket)
        try:
            await run_in_threadpool(services.stream.start_monitoring, user_id)
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            services.channel.disconnect(user_id, websocket)
            services.stream.stop_monitoring(user_id)

    return app
