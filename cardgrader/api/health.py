"""
Health check endpoints.

Liveness and readiness probes for the grading processor.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cardgrader.api.dependencies import get_processor
from cardgrader.services.dispatcher import CardProcessor

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


class ReadyResponse(BaseModel):
    status: str
    in_flight: int = 0
    concurrency_limit: int = 0
    credential_prompt_open: bool = False
    cards_by_status: dict[str, int] = Field(default_factory=dict)


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Liveness probe.

    Returns healthy if the service is running.
    Does not check dependencies.
    """
    return HealthResponse(status="healthy")


@router.get("/ready", response_model=ReadyResponse)
async def ready(processor: Annotated[CardProcessor, Depends(get_processor)]) -> ReadyResponse:
    """Readiness probe with a snapshot of the processing queue."""
    return ReadyResponse(
        status="ready",
        in_flight=len(processor.in_progress),
        concurrency_limit=processor.concurrency_limit,
        credential_prompt_open=processor.credential_prompt.is_open,
        cards_by_status=processor.summary_counts(),
    )
