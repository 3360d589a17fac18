"""Pydantic models for extraction results, drafts and API payloads."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

Scalar = str | float | int

# vision: image goes to the model; text: Tesseract first, then the model on the text
ExtractionMode = Literal["vision", "text"]


class FieldKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"  # ISO YYYY-MM-DD string


class FieldSpec(BaseModel):
    name: str
    kind: FieldKind
    description: str = ""


class ErrorKind(str, Enum):
    DECODE = "decode"
    NETWORK = "network"
    PARSE = "parse"
    MODEL_REFUSAL = "model_refusal"
    RECOGNITION = "recognition"


class ExtractionResult(BaseModel):
    """The model's guess about one document: field values plus confidence."""

    domain: str
    values: dict[str, Scalar]
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    def as_flat_dict(self) -> dict[str, Any]:
        return {**self.values, "confidence": self.confidence}


class Ok(BaseModel):
    ok: Literal[True] = True
    result: ExtractionResult


class Err(BaseModel):
    ok: Literal[False] = False
    kind: ErrorKind
    message: str
    fallback: ExtractionResult


ExtractionOutcome = Ok | Err


class RecordDraft(BaseModel):
    """Unsaved record values derived from a confirmed extraction."""

    collection: str
    fields: dict[str, Scalar]
    source_confidence: float


class ExtractionResponse(BaseModel):
    domain: str
    result: dict[str, Any]
    error_kind: ErrorKind | None = None
    warnings: list[str] = []
    processing_time_ms: int


class ScanSessionView(BaseModel):
    id: str
    domain: str
    state: str
    media_type: str | None = None
    image_width: int | None = None
    image_height: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


class CreateScanRequest(BaseModel):
    domain: str
