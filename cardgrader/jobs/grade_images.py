"""
Grade a single card from two image files.

Runs the card through the same processor the API uses, without a remote
store, and prints the resulting record.

    python -m cardgrader.jobs.grade_images front.jpg back.jpg --accept
"""

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
from pathlib import Path

from cardgrader.config import settings
from cardgrader.models.card import CardRecord, CardStatus
from cardgrader.services.dispatcher import CardProcessor
from cardgrader.services.factory import build_processor

logger = logging.getLogger(__name__)


def image_data_url(path: Path) -> str:
    media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


async def grade_card(
    processor: CardProcessor,
    front: Path,
    back: Path,
    accept: bool = False,
) -> CardRecord:
    """
    Grade one card and wait for background work to settle.

    With `accept`, a card that reaches needs_review is accepted and carried
    through summary and market value to reviewed.
    """
    card = processor.create_card(image_data_url(front), image_data_url(back))
    await processor.wait_idle()

    graded = processor.require_card(card.id)
    if accept and graded.status == CardStatus.NEEDS_REVIEW:
        processor.accept_grade(card.id)
        await processor.wait_idle()
        graded = processor.require_card(card.id)

    logger.info("Card %s finished as %s", graded.id, graded.status.value)
    return graded


async def run(front: Path, back: Path, accept: bool) -> CardRecord:
    processor = build_processor(settings, standalone=True)
    try:
        return await grade_card(processor, front, back, accept=accept)
    finally:
        await processor.stop()


def main() -> None:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(description="Grade a card from front and back images.")
    parser.add_argument("front", type=Path, help="Front image file")
    parser.add_argument("back", type=Path, help="Back image file")
    parser.add_argument(
        "--accept",
        action="store_true",
        help="Accept the preliminary grade and continue to summary and market value",
    )
    args = parser.parse_args()

    card = asyncio.run(run(args.front, args.back, args.accept))
    document = card.to_document()
    document.pop("frontImage", None)
    document.pop("backImage", None)
    print(json.dumps(document, indent=2))

    if card.status == CardStatus.GRADING_FAILED:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
