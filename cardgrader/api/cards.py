"""
Card API endpoints.

Each endpoint turns a user intent into a transition on the processor and
returns the card as it stands right after. Background work started by the
transition continues after the response is sent.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from cardgrader.api.dependencies import get_credentials, get_processor
from cardgrader.models.card import CardRecord, ChallengeDirection, GradeDetails
from cardgrader.models.failure import ApiResponse
from cardgrader.services.credentials import SettingsCredentialProvider
from cardgrader.services.dispatcher import CardProcessor

router = APIRouter(prefix="/cards", tags=["cards"])

Processor = Annotated[CardProcessor, Depends(get_processor)]


class CreateCardRequest(BaseModel):
    """Captured images for a new card."""

    front_image: str = Field(..., min_length=1, description="Front image as data URL or base64")
    back_image: str = Field(..., min_length=1, description="Back image as data URL or base64")


class ChallengeRequest(BaseModel):
    direction: ChallengeDirection = Field(
        ..., description="Whether the grade should be higher or lower"
    )


class ManualGradeRequest(BaseModel):
    """User-chosen grade; the analysis is regenerated to justify it."""

    grade: float = Field(..., examples=[8.5])
    grade_name: str = Field(..., min_length=1, examples=["NM-MT+"])
    details: GradeDetails | None = None


class ManualEntryRequest(ManualGradeRequest):
    """Grade entered entirely by hand; no AI call is made."""

    summary: str = Field(..., min_length=1)


class CredentialsRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class DeleteResponse(BaseModel):
    card_id: str
    deleted: bool


def card_view(card: CardRecord) -> dict[str, Any]:
    """Stored document without the image payloads."""
    document = card.to_document()
    document.pop("frontImage", None)
    document.pop("backImage", None)
    return document


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_card(request: CreateCardRequest, processor: Processor) -> ApiResponse[Any]:
    """Queue a captured card for identification and grading."""
    card = processor.create_card(request.front_image, request.back_image)
    return ApiResponse.success(card_view(card))


@router.get("")
async def list_cards(processor: Processor) -> ApiResponse[Any]:
    return ApiResponse.success([card_view(card) for card in processor.records])


@router.post("/sync")
async def sync_cards(processor: Processor) -> ApiResponse[Any]:
    """Merge the remotely stored collection into this one."""
    records = await processor.sync_from_store()
    return ApiResponse.success([card_view(card) for card in records])


@router.get("/{card_id}")
async def get_card(card_id: str, processor: Processor) -> ApiResponse[Any]:
    return ApiResponse.success(card_view(processor.require_card(card_id)))


@router.post("/{card_id}/accept")
async def accept_grade(card_id: str, processor: Processor) -> ApiResponse[Any]:
    return ApiResponse.success(card_view(processor.accept_grade(card_id)))


@router.post("/{card_id}/challenge")
async def challenge_grade(
    card_id: str, request: ChallengeRequest, processor: Processor
) -> ApiResponse[Any]:
    return ApiResponse.success(card_view(processor.challenge_grade(card_id, request.direction)))


@router.post("/{card_id}/manual-grade")
async def manual_grade(
    card_id: str, request: ManualGradeRequest, processor: Processor
) -> ApiResponse[Any]:
    card = processor.manual_override(card_id, request.grade, request.grade_name, request.details)
    return ApiResponse.success(card_view(card))


@router.post("/{card_id}/manual-entry")
async def manual_entry(
    card_id: str, request: ManualEntryRequest, processor: Processor
) -> ApiResponse[Any]:
    card = processor.manual_entry(
        card_id, request.grade, request.grade_name, request.summary, request.details
    )
    return ApiResponse.success(card_view(card))


@router.post("/{card_id}/market-value")
async def market_value(card_id: str, processor: Processor) -> ApiResponse[Any]:
    return ApiResponse.success(card_view(processor.request_market_value(card_id)))


@router.post("/{card_id}/retry")
async def retry_card(card_id: str, processor: Processor) -> ApiResponse[Any]:
    return ApiResponse.success(card_view(processor.retry_failed(card_id)))


@router.delete("/{card_id}", response_model=DeleteResponse)
async def delete_card(card_id: str, processor: Processor) -> DeleteResponse:
    processor.delete_card(card_id)
    return DeleteResponse(card_id=card_id, deleted=True)


credentials_router = APIRouter(prefix="/credentials", tags=["credentials"])


@credentials_router.post("")
async def update_credentials(
    request: CredentialsRequest,
    processor: Processor,
    credentials: Annotated[SettingsCredentialProvider, Depends(get_credentials)],
) -> ApiResponse[Any]:
    """Store a new API key and retry every failed card."""
    credentials.update(request.api_key)
    records = processor.credentials_updated()
    return ApiResponse.success({"retried": sum(1 for r in records if r.is_in_progress)})
