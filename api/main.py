"""
FastAPI Application — Operational surface of the delivery pipeline.

Provides:
- Health of the service, its worker pools and messengers
- Queue statistics and job inspection / manual retry
- Message lookup, (re)dispatch and pre-claim cancellation
- Enrichment job submission

Run with:  uvicorn api.main:app
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.service import DeliveryService, MessageNotFoundError, UnknownQueueError, build_service
from database.session import close_db, init_db
from job_queue.message_queue import JobNotFoundError, JobStateError
from models.lifecycle import InvalidTransitionError
from models.schemas import EnrichmentJobData
from utils.logging import configure_logging

logger = structlog.get_logger()

router = APIRouter()


def _service(request: Request) -> DeliveryService:
    return request.app.state.service


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **await _service(request).health(),
    }


# ══════════════════════════════════════════════════════════════
#  QUEUES
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/queues/stats")
async def all_queue_stats(request: Request):
    return await _service(request).get_queue_stats()


@router.get("/api/v1/queues/{queue}/stats")
async def queue_stats(queue: str, request: Request):
    return await _service(request).get_queue_stats(queue)


@router.get("/api/v1/queues/{queue}/jobs/{job_key}")
async def get_job(queue: str, job_key: str, request: Request):
    status = await _service(request).get_job_status(queue, job_key)
    if status is None:
        raise HTTPException(404, "Job not found")
    return status


@router.post("/api/v1/queues/{queue}/jobs/{job_key}/retry")
async def retry_job(queue: str, job_key: str, request: Request):
    job = await _service(request).retry_job(queue, job_key)
    return job.status_view()


# ══════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/messages/{item_id}")
async def get_message(item_id: str, request: Request):
    item = await _service(request).get_message(item_id)
    return item.to_wire()


@router.post("/api/v1/messages/{item_id}/dispatch", status_code=202)
async def dispatch_message(item_id: str, request: Request):
    job = await _service(request).schedule_item(item_id)
    return job.status_view()


@router.post("/api/v1/messages/{item_id}/requeue", status_code=202)
async def requeue_message(item_id: str, request: Request):
    job = await _service(request).requeue_message(item_id)
    return job.status_view()


@router.post("/api/v1/messages/{item_id}/cancel")
async def cancel_message(item_id: str, request: Request):
    item = await _service(request).cancel_message(item_id)
    return item.to_wire()


# ══════════════════════════════════════════════════════════════
#  ENRICHMENT
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/enrichment", status_code=202)
async def submit_enrichment(req: EnrichmentJobData, request: Request):
    job = await _service(request).add_enrichment_job(req)
    return job.status_view()


# ══════════════════════════════════════════════════════════════
#  ERROR MAPPING
# ══════════════════════════════════════════════════════════════

async def _not_found(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _conflict(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(service: Optional[DeliveryService] = None) -> FastAPI:
    """
    Build the API. Without a ``service`` the lifespan wires one from
    settings, starts it, and tears it down on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(debug=settings.debug, json_format=settings.log_json)

        sql = settings.database.store_backend == "sql"
        if app.state.service is None:
            if sql:
                await init_db()
            app.state.service = build_service(settings)

        await app.state.service.start()
        logger.info("delivery_pipeline_started", app=settings.app_name)
        yield

        await app.state.service.stop()
        if sql:
            await close_db()
        logger.info("delivery_pipeline_stopped")

    app = FastAPI(
        title="Outreach Delivery Pipeline",
        description="Outbound message delivery queues and workers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.include_router(router)

    for exc_type in (UnknownQueueError, MessageNotFoundError, JobNotFoundError):
        app.add_exception_handler(exc_type, _not_found)
    for exc_type in (JobStateError, InvalidTransitionError):
        app.add_exception_handler(exc_type, _conflict)
    return app


app = create_app()
