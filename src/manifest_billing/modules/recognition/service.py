from __future__ import annotations

import logging
from collections.abc import Callable

from manifest_billing.core.errors import RecognitionFailure
from manifest_billing.core.logging import get_logger, log_event
from manifest_billing.modules.recognition.client import GeminiRecognizer, Recognizer
from manifest_billing.modules.recognition.schemas import (
    AiMode,
    InlineImage,
    RecognitionResult,
    RecognitionTier,
)

logger = get_logger(__name__)

StatusCallback = Callable[[str], None]

DEFAULT_TIERS: list[RecognitionTier] = [RecognitionTier.FAST, RecognitionTier.FALLBACK]
HYBRID_TIERS: list[RecognitionTier] = [
    RecognitionTier.ACCURATE,
    RecognitionTier.FAST,
    RecognitionTier.FALLBACK,
]


def strategy_stages(mode: AiMode) -> list[list[RecognitionTier]]:
    """
    Ordered stages of tiers for a mode. Tiers inside a stage are tried in order;
    the next stage only runs once every tier of the previous one has failed.
    """
    if mode == AiMode.HYBRID:
        return [HYBRID_TIERS]
    if mode == AiMode.AUTO:
        return [[RecognitionTier.FAST], HYBRID_TIERS]
    return [DEFAULT_TIERS]


async def recognize_with_strategy(
    recognizer: Recognizer,
    images: list[InlineImage],
    instruction: str,
    mode: AiMode,
    *,
    on_status: StatusCallback | None = None,
) -> RecognitionResult:
    def _status(message: str) -> None:
        if on_status is not None:
            on_status(message)

    attempts: list[str] = []
    for stage_index, tiers in enumerate(strategy_stages(mode)):
        if stage_index > 0:
            _status("Fast tier failed. Retrying with hybrid strategy...")
        for tier in tiers:
            _status(f"Recognizing with {tier.value} tier ({mode.value} mode)...")
            try:
                result = await recognizer.recognize(images, instruction, tier)
            except RecognitionFailure as e:
                attempts.append(tier.value)
                log_event(
                    logger,
                    "recognition.tier.failure",
                    level=logging.WARNING,
                    mode=mode.value,
                    tier=tier.value,
                    error=str(e),
                )
                continue
            log_event(
                logger,
                "recognition.strategy.success",
                mode=mode.value,
                tier=tier.value,
                failed_tiers=attempts or None,
            )
            return result

    log_event(
        logger,
        "recognition.strategy.exhausted",
        level=logging.WARNING,
        mode=mode.value,
        failed_tiers=attempts,
    )
    raise RecognitionFailure(f"All recognition tiers failed ({', '.join(attempts)})")


_recognizer: Recognizer | None = None


def get_recognizer() -> Recognizer:
    global _recognizer  # noqa: PLW0603
    if _recognizer is None:
        _recognizer = GeminiRecognizer()
    return _recognizer
