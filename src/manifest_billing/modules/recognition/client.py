from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from manifest_billing.core.config import settings
from manifest_billing.core.errors import RecognitionFailure
from manifest_billing.core.logging import get_logger, log_event, monotonic_ms
from manifest_billing.modules.recognition.schemas import (
    InlineImage,
    RecognitionResult,
    RecognitionTier,
)

logger = get_logger(__name__)

_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "manifestNo": {"type": "STRING"},
        "manifestDate": {"type": "STRING"},
        "items": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "slNo": {"type": "NUMBER"},
                    "serialNo": {"type": "STRING"},
                    "description": {"type": "STRING"},
                    "type": {"type": "STRING", "enum": ["Parcel", "Document"]},
                    "weight": {"type": "NUMBER"},
                },
                "required": ["serialNo", "weight"],
            },
        },
        "errors": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "type": {"type": "STRING"},
                    "message": {"type": "STRING"},
                },
            },
        },
    },
    "required": ["items"],
}


def build_prompt(instruction: str) -> str:
    lines = [
        "Analyze the provided manifest page image(s) and extract billing data into a "
        "structured format.",
    ]
    if instruction:
        lines.append(f"PROCESSING INSTRUCTION: {instruction}")
    lines.extend(
        [
            "",
            "EXTRACTION PRIORITY:",
            "1. SL NO: the sequential number in the table list.",
            "2. AWB / DOCUMENT NO: the unique identifier for the shipment. Map to 'serialNo'.",
            "3. WEIGHT: the weight of the item in kg. Default to 0 if not found.",
            "",
            "METADATA:",
            "- A 'Manifest Number', 'MF No', 'Runsheet No' or similar document ID maps to "
            "'manifestNo'.",
            "- A 'Manifest Date' maps to 'manifestDate'.",
            "",
            "RULES:",
            "- Type is 'Document' if the description mentions doc/letter, else 'Parcel'.",
            "- Multiple images are sequential pages of ONE manifest.",
            "- Detect tables even when grid lines are missing.",
            "- Ignore footer totals when extracting line items.",
            "- Flag missing or duplicate AWB numbers in 'errors'.",
            "",
            "Return JSON only, matching the provided schema.",
        ]
    )
    return "\n".join(lines)


def model_for_tier(tier: RecognitionTier) -> str:
    return {
        RecognitionTier.FAST: settings.recognition_model_fast,
        RecognitionTier.ACCURATE: settings.recognition_model_accurate,
        RecognitionTier.FALLBACK: settings.recognition_model_fallback,
    }[tier]


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except json.JSONDecodeError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except json.JSONDecodeError:
        return None


def _candidate_text(raw: Any) -> str | None:
    try:
        parts = raw["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return None
    texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
    return "".join(texts) or None


class Recognizer(Protocol):
    async def recognize(
        self, images: list[InlineImage], instruction: str, tier: RecognitionTier
    ) -> RecognitionResult: ...


class GeminiRecognizer:
    """Calls the Gemini `generateContent` endpoint with inline page images."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout = float(timeout or settings.recognition_timeout_seconds)
        self._transport = transport

    async def recognize(
        self, images: list[InlineImage], instruction: str, tier: RecognitionTier
    ) -> RecognitionResult:
        if not self.api_key:
            raise RecognitionFailure("Recognition service is not configured")

        model = model_for_tier(tier)
        parts: list[dict[str, Any]] = [
            {"inlineData": {"data": img.data, "mimeType": img.mime_type}} for img in images
        ]
        parts.append({"text": build_prompt(instruction)})
        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": _RESPONSE_SCHEMA,
            },
        }
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout, follow_redirects=True
            ) as client:
                resp = await client.post(url, headers=headers, json=payload)
                resp.raise_for_status()
                raw = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            status_code = None
            if isinstance(e, httpx.HTTPStatusError):
                status_code = e.response.status_code
            log_event(
                logger,
                "recognition.call.failure",
                level=logging.WARNING,
                model=model,
                tier=tier.value,
                status_code=status_code,
                error_type=type(e).__name__,
                duration_ms=monotonic_ms(start),
            )
            raise RecognitionFailure(f"Model {model} failed") from e

        obj = _parse_json_object(_candidate_text(raw) or "")
        if not isinstance(obj, dict):
            log_event(
                logger, "recognition.parse.failure", level=logging.WARNING, model=model
            )
            raise RecognitionFailure(f"Model {model} returned no JSON object")
        try:
            result = RecognitionResult.model_validate(obj)
        except PydanticValidationError as e:
            log_event(
                logger, "recognition.parse.failure", level=logging.WARNING, model=model
            )
            raise RecognitionFailure(f"Model {model} returned an unexpected shape") from e

        log_event(
            logger,
            "recognition.call.success",
            model=model,
            tier=tier.value,
            image_count=len(images),
            item_count=len(result.items),
            duration_ms=monotonic_ms(start),
        )
        return result
