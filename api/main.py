"""
FastAPI Application - cron and trigger surface for the CRM engine.

Provides:
- Cron endpoints for the message queue and meeting tracking passes
- Stage-change trigger that queues stage automations
- Health and queue-depth diagnostics

Run:
    uvicorn api.main:app --port 8000
"""
from __future__ import annotations

import hmac
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings
from core.orchestrator import Orchestrator, create_orchestrator
from models.schemas import Stage
from utils.logging import setup_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StageChangeRequest(BaseModel):
    stage: Stage
    changed_by: Optional[str] = None
    booking_time: Optional[datetime] = None
    meet_link: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Auth
# ──────────────────────────────────────────────────────────────

def _matches(supplied: Optional[str], expected: str) -> bool:
    return bool(expected) and supplied is not None and hmac.compare_digest(supplied, expected)


def is_authorized(request: Request, settings: Settings) -> bool:
    """Bearer cron secret, or the webhook secret header. Empty secrets never match."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer ") and _matches(auth[len("Bearer "):], settings.cron_secret):
        return True
    return _matches(request.headers.get("x-webhook-secret"), settings.webhook_secret)


# ══════════════════════════════════════════════════════════════
#  APP FACTORY
# ══════════════════════════════════════════════════════════════

def create_app(
    orchestrator: Optional[Orchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = app.state.settings
        setup_logging(cfg.log_level)
        if app.state.orchestrator is None:
            app.state.orchestrator = create_orchestrator(cfg)
        await app.state.orchestrator.start()
        logger.info("crm_api_started", app=cfg.app_name)
        yield
        await app.state.orchestrator.stop()
        logger.info("crm_api_stopped")

    app = FastAPI(
        title="PaxBespoke CRM Engine",
        description="Stage automations, message delivery and meeting tracking",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()
    app.state.orchestrator = orchestrator

    def engine(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    def require_auth(request: Request):
        if not is_authorized(request, request.app.state.settings):
            logger.warning("cron_unauthorized", path=request.url.path)
            raise HTTPException(401, "Unauthorized")

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(orc: Orchestrator = Depends(engine)):
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(await orc.health()),
        }

    # ══════════════════════════════════════════════════════════
    #  CRON
    # ══════════════════════════════════════════════════════════

    @app.post("/api/cron/messages", dependencies=[Depends(require_auth)])
    async def cron_messages(orc: Orchestrator = Depends(engine)):
        try:
            return await orc.run_message_pass()
        except Exception as e:
            logger.error("cron_messages_failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": str(e)})

    @app.get("/api/cron/messages", dependencies=[Depends(require_auth)])
    async def cron_queue_depth(orc: Orchestrator = Depends(engine)):
        try:
            return await orc.processor.queue_depth()
        except Exception as e:
            logger.error("queue_depth_failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": str(e)})

    @app.post("/api/cron/meetings", dependencies=[Depends(require_auth)])
    async def cron_meetings(orc: Orchestrator = Depends(engine)):
        try:
            return await orc.run_tracking_pass()
        except Exception as e:
            logger.error("cron_meetings_failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": str(e)})

    # ══════════════════════════════════════════════════════════
    #  STAGE CHANGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/crm/opportunities/{opportunity_id}/stage",
              status_code=202, dependencies=[Depends(require_auth)])
    async def change_stage(
        opportunity_id: str,
        req: StageChangeRequest,
        orc: Orchestrator = Depends(engine),
    ) -> dict[str, Any]:
        booking_time = req.booking_time
        if booking_time is not None and booking_time.tzinfo is None:
            booking_time = booking_time.replace(tzinfo=timezone.utc)
        job_id = await orc.stage_changes.move_stage(
            opportunity_id, req.stage,
            changed_by=req.changed_by,
            booking_time=booking_time,
            meet_link=req.meet_link,
        )
        if job_id is None:
            raise HTTPException(404, "Opportunity not found")
        return {"status": "accepted", "job_id": job_id}

    return app


app = create_app()
