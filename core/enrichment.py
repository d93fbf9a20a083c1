"""
Enrichment — Lead data enrichment run on its own queue.

The provider fan-out, data merging and credit accounting live in the
enrichment service behind the Enricher boundary. This module runs one
enrichment per job and reports the breakdown as the job result.

Retries belong to the job queue alone: any exception is re-raised so the
queue's exponential backoff applies.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from job_queue.message_queue import Job
from job_queue.worker import ProgressReporter
from models.schemas import EnrichmentJobData, EnrichmentJobResult, EnrichmentStatus

logger = structlog.get_logger()

COMPLETE_THRESHOLD = 70
PARTIAL_THRESHOLD = 40


def calculate_enrichment_status(confidence_score: float) -> EnrichmentStatus:
    if confidence_score >= COMPLETE_THRESHOLD:
        return EnrichmentStatus.COMPLETE
    if confidence_score >= PARTIAL_THRESHOLD:
        return EnrichmentStatus.PARTIAL
    return EnrichmentStatus.FAILED


@dataclass
class EnrichmentBreakdown:
    success: bool
    status: EnrichmentStatus
    credits_used: int = 0
    confidence_score: float = 0.0
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnrichmentBreakdown:
        score = float(data.get("confidence_score", data.get("confidenceScore", 0.0)) or 0.0)
        status = data.get("status")
        return cls(
            success=bool(data.get("success", True)),
            status=EnrichmentStatus(status) if status else calculate_enrichment_status(score),
            credits_used=int(data.get("credits_used", data.get("creditsUsed", 0)) or 0),
            confidence_score=score,
            error=data.get("error"),
        )


class Enricher(abc.ABC):
    """Boundary to the enrichment service."""

    @abc.abstractmethod
    async def enrich(self, lead_id: str, workspace_id: str, force: bool = False) -> EnrichmentBreakdown:
        ...

    async def close(self):
        pass


class HttpEnricher(Enricher):
    """
    REST client for the enrichment service.

    POST {base_url}/leads/{lead_id}/enrich
      {"workspace_id": ..., "force": false}
    → {"success": true, "status": "complete", "credits_used": 3,
       "confidence_score": 82.5}
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    async def enrich(self, lead_id: str, workspace_id: str, force: bool = False) -> EnrichmentBreakdown:
        client = await self._get_client()
        response = await client.post(f"/leads/{lead_id}/enrich", json={
            "workspace_id": workspace_id,
            "force": force,
        })
        response.raise_for_status()
        return EnrichmentBreakdown.from_dict(response.json())

    async def close(self):
        if self.client:
            await self.client.aclose()


class EnrichmentProcessor:
    """WorkerPool handler for the enrichment queue."""

    def __init__(self, enricher: Enricher):
        self.enricher = enricher

    async def process(self, job: Job, report_progress: ProgressReporter) -> dict[str, Any]:
        data = EnrichmentJobData.model_validate(job.payload)
        log = logger.bind(lead_id=data.lead_id, workspace_id=data.workspace_id)
        log.info("enrichment_started", user_id=data.user_id, force=data.force)

        try:
            await report_progress(10)
            breakdown = await self.enricher.enrich(data.lead_id, data.workspace_id, force=data.force)
            await report_progress(100)
        except Exception as e:
            log.error("enrichment_error", error=str(e))
            raise

        result = EnrichmentJobResult(
            success=breakdown.success,
            lead_id=data.lead_id,
            status=breakdown.status,
            credits_used=breakdown.credits_used,
            confidence_score=breakdown.confidence_score,
            error=breakdown.error,
        )
        log.info("enrichment_finished",
                 status=result.status.value,
                 confidence_score=result.confidence_score,
                 credits_used=result.credits_used)
        return result.to_wire()
