"""Extraction client: prompt the model, strip fences, parse into a typed result.

Every failure collapses to a zero-confidence fallback result; callers get an
Ok/Err outcome and never a partial result.
"""

import asyncio
import json
import logging
import math
import re
import time
from datetime import date

from config import Settings
from domains import ExtractionSchema
from gemini_client import GeminiClient, ModelRefusal, NetworkError, image_part, text_part
from models import (
    Err,
    ErrorKind,
    ExtractionMode,
    ExtractionOutcome,
    ExtractionResponse,
    ExtractionResult,
    FieldKind,
    FieldSpec,
    Ok,
    Scalar,
)
from preprocessing import normalize
from prompts import text_prompt
from text_recognition import TextRecognitionError, recognize_text

logger = logging.getLogger(__name__)

CONFIDENCE_DESCRIPTION = "Confidence score 0-1 based on legibility"

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_CURRENCY_RE = re.compile(r"(₹|\$|\bRs\.?|\bINR\b|,|\s)", re.IGNORECASE)
_UNKNOWN = {"unknown", "n/a", "none", "null"}


class ParseError(Exception):
    """The model reply is not JSON or does not match the field schema."""


def strip_code_fences(raw: str) -> str:
    """Remove ```json / ``` markers and surrounding whitespace."""
    return _FENCE_RE.sub("", raw).strip()


def fallback_result(schema: ExtractionSchema, today: date | None = None) -> ExtractionResult:
    """Empty strings, zero numbers, today's date, zero confidence."""
    today = today or date.today()
    return ExtractionResult(
        domain=schema.domain,
        values={spec.name: _empty_value(spec, today) for spec in schema.fields},
        confidence=0.0,
    )


def build_response_schema(schema: ExtractionSchema) -> dict:
    """Gemini responseSchema for the domain fields plus confidence."""
    properties = {}
    for spec in schema.fields:
        properties[spec.name] = {
            "type": "NUMBER" if spec.kind == FieldKind.NUMBER else "STRING",
            "description": spec.description,
        }
    properties["confidence"] = {"type": "NUMBER", "description": CONFIDENCE_DESCRIPTION}
    return {
        "type": "OBJECT",
        "properties": properties,
        "required": schema.field_names,
    }


def parse_extraction(raw: str, schema: ExtractionSchema, today: date | None = None) -> ExtractionResult:
    """Parse a model reply into an ExtractionResult with exactly the schema's fields.

    Missing fields take their fallback value; unknown keys are dropped.
    Raises ParseError for non-JSON replies or uncoercible numbers.
    """
    parsed = _load_object(strip_code_fences(raw or ""))
    today = today or date.today()

    values: dict[str, Scalar] = {}
    for spec in schema.fields:
        values[spec.name] = coerce_value(spec, parsed.get(spec.name), today)

    return ExtractionResult(
        domain=schema.domain,
        values=values,
        confidence=_coerce_confidence(parsed.get("confidence")),
    )


def coerce_value(spec: FieldSpec, value: object, today: date | None = None) -> Scalar:
    """Coerce a raw value to the field's kind. Raises ParseError for bad numbers."""
    today = today or date.today()

    if spec.kind == FieldKind.NUMBER:
        number = _coerce_number(value)
        if number is None:
            raise ParseError(f"Field {spec.name!r} is not a number: {value!r}")
        return number

    text = _coerce_string(value)
    if spec.kind == FieldKind.DATE and not text:
        return today.isoformat()
    return text


def _load_object(cleaned: str) -> dict:
    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError:
        # Preamble text around the object
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ParseError(f"Reply is not JSON: {cleaned[:200]!r}") from None
        try:
            result = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ParseError(f"Reply is not JSON: {e}") from e

    if not isinstance(result, dict):
        raise ParseError(f"Reply is a JSON {type(result).__name__}, expected an object")
    return result


def _empty_value(spec: FieldSpec, today: date) -> Scalar:
    if spec.kind == FieldKind.NUMBER:
        return 0
    if spec.kind == FieldKind.DATE:
        return today.isoformat()
    return ""


def _coerce_string(value: object) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if text.lower() in _UNKNOWN:
        return ""
    return text


def _coerce_number(value: object) -> int | float | None:
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        cleaned = _CURRENCY_RE.sub("", value)
        if not cleaned or cleaned.lower() in _UNKNOWN:
            return 0
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _coerce_confidence(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return 0.0
    try:
        confidence = float(value)
    except (ValueError, OverflowError):
        return 0.0
    if not math.isfinite(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


class ExtractionClient:
    """Runs one schema-constrained model call per scan and returns an outcome."""

    def __init__(self, model_client: GeminiClient, settings: Settings):
        self._model = model_client
        self._temperature = settings.EXTRACTION_TEMPERATURE
        self._tesseract_lang = settings.TESSERACT_LANG

    async def extract(self, payload: str, media_type: str, schema: ExtractionSchema) -> ExtractionOutcome:
        """Extract fields from a base64 image payload."""
        parts = [image_part(payload, media_type), text_part(schema.prompt)]
        return await self._run(parts, schema)

    async def extract_text(self, raw_text: str, schema: ExtractionSchema) -> ExtractionOutcome:
        """Extract fields from text already recognized from the document."""
        if not raw_text.strip():
            return _err(ErrorKind.RECOGNITION, "No text could be recognized in the image.", schema)
        parts = [text_part(text_prompt(schema.domain, raw_text))]
        return await self._run(parts, schema)

    async def extract_via_text(self, image_bytes: bytes, schema: ExtractionSchema) -> ExtractionOutcome:
        """Recognize text locally with Tesseract, then extract from the text.

        DecodeError propagates; recognition failures become an Err outcome.
        """
        try:
            raw_text = await asyncio.to_thread(recognize_text, image_bytes, self._tesseract_lang)
        except TextRecognitionError as e:
            return _err(ErrorKind.RECOGNITION, str(e), schema)
        return await self.extract_text(raw_text, schema)

    async def extract_or_fallback(
        self, payload: str, media_type: str, schema: ExtractionSchema,
    ) -> tuple[ExtractionResult, str | None]:
        """Always a full result; the second element is a user-facing warning on failure."""
        outcome = await self.extract(payload, media_type, schema)
        if isinstance(outcome, Ok):
            return outcome.result, None
        return outcome.fallback, outcome.message

    async def _run(self, parts: list[dict], schema: ExtractionSchema) -> ExtractionOutcome:
        try:
            raw = await self._model.generate(
                parts,
                response_schema=build_response_schema(schema),
                temperature=self._temperature,
            )
        except NetworkError as e:
            logger.error("Model call failed: %s", e)
            return _err(ErrorKind.NETWORK, f"AI extraction service unavailable: {e}", schema)
        except ModelRefusal as e:
            logger.warning("Model returned no content: %s", e)
            return _err(ErrorKind.MODEL_REFUSAL, f"AI could not read the document: {e}", schema)
        except Exception as e:
            logger.exception("Unexpected failure calling the model")
            return _err(ErrorKind.NETWORK, f"AI extraction failed: {e}", schema)

        try:
            result = parse_extraction(raw, schema)
        except ParseError as e:
            logger.warning("Could not parse model reply: %s", e)
            return _err(ErrorKind.PARSE, f"AI reply could not be understood: {e}", schema)

        logger.info("Extracted %s fields (confidence=%.2f)", schema.domain, result.confidence)
        return Ok(result=result)


def _err(kind: ErrorKind, message: str, schema: ExtractionSchema) -> Err:
    return Err(kind=kind, message=message, fallback=fallback_result(schema))


async def extract_from_image(
    image_bytes: bytes,
    media_type: str | None,
    schema: ExtractionSchema,
    client: ExtractionClient,
    settings: Settings,
    mode: ExtractionMode = "vision",
) -> ExtractionResponse:
    """One-shot pipeline: normalize -> model -> parse. DecodeError propagates."""
    start = time.monotonic()

    if mode == "text":
        outcome = await client.extract_via_text(image_bytes, schema)
    else:
        image = normalize(
            image_bytes,
            media_type,
            strategy=settings.NORMALIZE_STRATEGY,
            max_width=settings.MAX_IMAGE_WIDTH,
            jpeg_quality=settings.JPEG_QUALITY,
        )
        outcome = await client.extract(image.payload, image.media_type, schema)

    elapsed_ms = int((time.monotonic() - start) * 1000)

    if isinstance(outcome, Ok):
        return ExtractionResponse(
            domain=schema.domain,
            result=outcome.result.as_flat_dict(),
            processing_time_ms=elapsed_ms,
        )
    return ExtractionResponse(
        domain=schema.domain,
        result=outcome.fallback.as_flat_dict(),
        error_kind=outcome.kind,
        warnings=[outcome.message],
        processing_time_ms=elapsed_ms,
    )
