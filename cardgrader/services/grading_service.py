"""
AI grading calls behind a typed contract.

`GradingService` is the capability set the dispatcher depends on. The
production implementation sends both card images to a vision-capable
Claude model and parses the structured JSON it returns.

Each method performs exactly ONE attempt. Retries, backoff and timeouts are
applied by the caller through `RetryPolicy`, so the SDK's own retries are
disabled. Provider errors are translated into the `KnownError` taxonomy so
the policy can tell transient trouble from failures needing the user.
"""

import json
import logging
import re
from typing import Any, Protocol, TypeVar

import anthropic
from anthropic.types import Message, TextBlock
from pydantic import BaseModel, ValidationError

from cardgrader.config import Settings
from cardgrader.models.card import CardRecord, ChallengeDirection, MarketValue, SourceLink
from cardgrader.models.failure import (
    CredentialMissingError,
    FailureKind,
    GradingTimeoutError,
    KnownError,
    MalformedResponseError,
    PermissionDeniedError,
    QuotaExhaustedError,
    TransientServiceError,
)
from cardgrader.models.grading import (
    ChallengeOutcome,
    Identification,
    PreliminaryGrade,
    RegeneratedAnalysis,
    SummaryOutcome,
)
from cardgrader.services.credentials import CredentialProvider

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class GradingService(Protocol):
    """Capability set used by the background dispatcher."""

    async def identify(self, front_image: str, back_image: str) -> Identification: ...

    async def grade_preliminary(self, front_image: str, back_image: str) -> PreliminaryGrade: ...

    async def generate_summary(self, card: CardRecord) -> str: ...

    async def challenge_grade(
        self, card: CardRecord, direction: ChallengeDirection
    ) -> ChallengeOutcome: ...

    async def regenerate_for_manual_grade(
        self, card: CardRecord, grade: float, grade_name: str
    ) -> RegeneratedAnalysis: ...

    async def get_market_value(self, card: CardRecord) -> MarketValue: ...


# =============================================================================
# PROMPTS
# =============================================================================

NGA_GRADING_STANDARDS = """
--- START OF NGA GRADING STANDARDS ---
CARD GRADING SYSTEM (allows half points, e.g. 9.5, 8.5)

Evaluation categories (subgrades):
- Centering (25%): Border alignment. 10=50/50 to 55/45. 9=60/40. 8=65/35.
- Corners (25%): Sharpness. 10=Perfect. 9.5=Hint of white under magnification.
  9=Slightly soft corner. 8=Visible rounding.
- Edges (20%): Border uniformity. 10=Zero nicks. 9=Minor chipping or silvering.
- Surface (20%): Gloss/imperfections. 10=Flawless. 9.5=One microscopic line.
  9=Visible scratch or print line.
- Print Quality (10%): Registration and focus. 10=Sharp. 9=Slight blur or snow.

Mandatory penalty rules:
1. Creases: any visible crease caps the overall grade at 5.0.
2. If Surface or Corners is below 6.0, the overall grade is capped at 6.0.
3. Average the subgrades and round to the nearest 0.5; an average ending
   in .25 rounds down to .0 and one ending in .75 rounds down to .5.
4. If one subgrade is 2 or more points below the others, reduce the overall
   grade by an additional 0.5.

Do not default to 9.5. Be extremely critical. Most modern cards are an 8 or 9.
A 10 should be near-impossible to achieve.
--- END OF NGA GRADING STANDARDS ---
"""

SUBGRADE_SHAPE = '{"grade": number, "notes": string}'
DETAILS_SHAPE = (
    f'{{"centering": {SUBGRADE_SHAPE}, "corners": {SUBGRADE_SHAPE}, '
    f'"edges": {SUBGRADE_SHAPE}, "surface": {SUBGRADE_SHAPE}, '
    f'"printQuality": {SUBGRADE_SHAPE}}}'
)

IDENTIFY_PROMPT = (
    "Identify this sports card. Strictly output valid JSON only: "
    '{"name": string, "team": string, "year": string, "set": string, '
    '"company": string, "cardNumber": string, "edition": string}'
)

GRADE_PROMPT = (
    "Act as a cynical, highly critical professional sports card grader. "
    f"Use these strict standards: {NGA_GRADING_STANDARDS} "
    "Examine the images for even the smallest imperfections. Output JSON only: "
    f'{{"details": {DETAILS_SHAPE}, "overallGrade": number, "gradeName": string}}'
)

VALUE_WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 5,
}

JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


# =============================================================================
# RESPONSE PARSING
# =============================================================================


def strip_data_url(payload: str) -> tuple[str, str]:
    """Split a data URL into (media type, base64 data); bare base64 is JPEG."""
    if payload.startswith("data:") and "," in payload:
        header, data = payload.split(",", 1)
        media_type = header[5:].split(";", 1)[0] or "image/jpeg"
        return media_type, data
    return "image/jpeg", payload


def response_text(message: Message) -> str:
    return "".join(block.text for block in message.content if isinstance(block, TextBlock))


def extract_json(text: str, stop_reason: str | None = None) -> Any:
    """
    Pull the JSON payload out of a model reply.

    Accepts a fenced ```json block or a bare JSON document.

    Raises:
        MalformedResponseError: Empty reply or unparseable JSON
    """
    if not text or not text.strip():
        raise MalformedResponseError(
            f"AI returned an empty response (Reason: {stop_reason or 'Unknown'}).",
            detail="empty response",
        )

    match = JSON_FENCE.search(text)
    candidate = match.group(1) if match else text
    try:
        return json.loads(candidate.strip())
    except json.JSONDecodeError:
        # Prose around an unfenced object
        start, end = candidate.find("{"), candidate.rfind("}")
        if 0 <= start < end:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                pass
        raise MalformedResponseError(
            "AI response was not in a valid format.",
            detail=text[:200],
        ) from None


def parse_as(model: type[ModelT], payload: Any) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(
            f"AI response did not match the expected {model.__name__} shape.",
            detail=f"{e.error_count()} validation errors",
        ) from e


def map_anthropic_error(error: anthropic.APIError) -> KnownError:
    """Translate a provider error into the failure taxonomy."""
    if isinstance(error, anthropic.APITimeoutError):
        return GradingTimeoutError("waiting for the grading model")
    if isinstance(error, anthropic.APIConnectionError):
        return TransientServiceError(detail=str(error))
    if isinstance(error, anthropic.APIStatusError):
        code = error.status_code
        if code == 401:
            return CredentialMissingError(detail="API key rejected")
        if code == 403:
            return PermissionDeniedError(detail=str(error))
        if code == 429:
            return QuotaExhaustedError(detail=str(error))
        if code == 408:
            return GradingTimeoutError("waiting for the grading model")
        if code in (500, 502, 503, 504, 529):
            return TransientServiceError(detail=f"HTTP {code}")
        return KnownError(
            kind=FailureKind.UNKNOWN,
            message=f"Grading service error (HTTP {code}).",
            detail=str(error),
            status_code=502,
        )
    return KnownError(kind=FailureKind.UNKNOWN, message=str(error), status_code=502)


# =============================================================================
# ANTHROPIC IMPLEMENTATION
# =============================================================================


class AnthropicGradingService:
    """Grades card images with a Claude vision model."""

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        grading_model: str,
        summary_model: str,
        max_tokens: int = 2048,
        client_factory: Any = None,
    ):
        self._credentials = credentials
        self._grading_model = grading_model
        self._summary_model = summary_model
        self._max_tokens = max_tokens
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, credentials: CredentialProvider
    ) -> "AnthropicGradingService":
        return cls(
            credentials,
            grading_model=settings.grading_model,
            summary_model=settings.summary_model,
        )

    @staticmethod
    def _default_client(api_key: str) -> anthropic.AsyncAnthropic:
        return anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def _client(self) -> Any:
        key = await self._credentials.get_token(interactive=False)
        if not key:
            raise CredentialMissingError(detail="no API key configured")
        if key not in self._clients:
            self._clients = {key: self._client_factory(key)}
        return self._clients[key]

    async def _ask(
        self,
        prompt: str,
        *,
        model: str,
        images: tuple[str, ...] = (),
        temperature: float | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> Message:
        client = await self._client()

        content: list[dict[str, Any]] = []
        for image in images:
            media_type, data = strip_data_url(image)
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": data},
                }
            )
        content.append({"type": "text", "text": prompt})

        request: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if temperature is not None:
            request["temperature"] = temperature
        if tools:
            request["tools"] = tools

        try:
            message: Message = await client.messages.create(**request)
        except anthropic.APIError as e:
            raise map_anthropic_error(e) from e

        if message.usage:
            logger.info(
                "TOKEN_USAGE",
                extra={
                    "model": model,
                    "input_tokens": message.usage.input_tokens,
                    "output_tokens": message.usage.output_tokens,
                },
            )
        return message

    async def _ask_json(self, prompt: str, model_type: type[ModelT], **kwargs: Any) -> ModelT:
        message = await self._ask(prompt, **kwargs)
        payload = extract_json(response_text(message), message.stop_reason)
        return parse_as(model_type, payload)

    async def identify(self, front_image: str, back_image: str) -> Identification:
        return await self._ask_json(
            IDENTIFY_PROMPT,
            Identification,
            model=self._grading_model,
            images=(front_image, back_image),
            temperature=0.1,
        )

    async def grade_preliminary(self, front_image: str, back_image: str) -> PreliminaryGrade:
        return await self._ask_json(
            GRADE_PROMPT,
            PreliminaryGrade,
            model=self._grading_model,
            images=(front_image, back_image),
            temperature=0.0,
        )

    async def generate_summary(self, card: CardRecord) -> str:
        details = card.details.model_dump(by_alias=True) if card.details else {}
        prompt = (
            f"Explain why this card received a grade of {card.overall_grade}. "
            f"Mention specific subgrades from: {json.dumps(details)}. "
            'Be professional and objective. Output JSON only: {"summary": string}'
        )
        outcome = await self._ask_json(
            prompt,
            SummaryOutcome,
            model=self._summary_model,
            images=(card.front_image, card.back_image),
            temperature=0.7,
        )
        return outcome.summary

    async def challenge_grade(
        self, card: CardRecord, direction: ChallengeDirection
    ) -> ChallengeOutcome:
        details = card.details.model_dump(by_alias=True) if card.details else {}
        prompt = (
            "Review this card. The user challenges the initial grade "
            f"({card.overall_grade}) and believes it should be {direction.value}. "
            f"Re-evaluate strictly using NGA standards: {NGA_GRADING_STANDARDS} "
            f"Current subgrades: {json.dumps(details)}. Output JSON only: "
            f'{{"overallGrade": number, "gradeName": string, '
            f'"details": {DETAILS_SHAPE}, "summary": string}}'
        )
        return await self._ask_json(
            prompt,
            ChallengeOutcome,
            model=self._grading_model,
            images=(card.front_image, card.back_image),
        )

    async def regenerate_for_manual_grade(
        self, card: CardRecord, grade: float, grade_name: str
    ) -> RegeneratedAnalysis:
        prompt = (
            f"Justify a specific target grade of {grade} ({grade_name}) for this card "
            f"using NGA standards: {NGA_GRADING_STANDARDS} "
            "Find flaws to support this grade. Output JSON only: "
            f'{{"details": {DETAILS_SHAPE}, "summary": string}}'
        )
        return await self._ask_json(
            prompt,
            RegeneratedAnalysis,
            model=self._grading_model,
            images=(card.front_image, card.back_image),
        )

    async def get_market_value(self, card: CardRecord) -> MarketValue:
        query = (
            f"{card.year or ''} {card.company or ''} {card.set or ''} {card.name or ''} "
            f"#{card.card_number or ''} Grade {card.overall_grade}"
        )
        query = " ".join(query.split())
        prompt = (
            f'Find recent sold price data for: "{query}". Output JSON only: '
            '{"averagePrice": number, "minPrice": number, "maxPrice": number, '
            '"currency": string, "notes": string}'
        )
        message = await self._ask(
            prompt,
            model=self._summary_model,
            temperature=0.1,
            tools=[VALUE_WEB_SEARCH_TOOL],
        )
        data = extract_json(response_text(message), message.stop_reason)
        if not isinstance(data, dict):
            raise MalformedResponseError("AI market value response was not an object.")

        return parse_as(
            MarketValue,
            {
                "average_price": data.get("averagePrice") or 0,
                "min_price": data.get("minPrice") or 0,
                "max_price": data.get("maxPrice") or 0,
                "currency": data.get("currency") or "USD",
                "notes": data.get("notes") or None,
                "source_urls": collect_sources(message),
            },
        )


def collect_sources(message: Message) -> list[SourceLink]:
    """Web search result links cited while answering, in order, deduplicated."""
    links: list[SourceLink] = []
    seen: set[str] = set()
    for block in message.content:
        if getattr(block, "type", None) != "web_search_tool_result":
            continue
        results = getattr(block, "content", None)
        if not isinstance(results, list):
            continue
        for result in results:
            uri = getattr(result, "url", None)
            if uri and uri not in seen:
                seen.add(uri)
                links.append(SourceLink(title=getattr(result, "title", None) or "Source", uri=uri))
    return links
