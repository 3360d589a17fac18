"""Verification gate: per-scan state machine between extraction and the record form.

A ScanSession owns one image and one extraction result. The user reviews and
corrects every field; only confirmation turns the result into a RecordDraft.
"""

import logging
import random
import uuid
from enum import Enum

from config import Settings
from domains import ExtractionSchema, get_schema
from extraction import ExtractionClient, ParseError, coerce_value
from models import (
    ErrorKind,
    ExtractionMode,
    ExtractionOutcome,
    ExtractionResult,
    Ok,
    RecordDraft,
    Scalar,
    ScanSessionView,
)
from preprocessing import DecodeError, NormalizedImage, normalize

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Failed to read form/label. Try a clearer image."


class ScanState(str, Enum):
    IDLE = "idle"
    IMAGE_SELECTED = "image_selected"
    PROCESSING = "processing"
    REVIEWING = "reviewing"
    CONFIRMED = "confirmed"
    ERROR = "error"


class SessionError(Exception):
    """Base class for verification gate errors."""


class InvalidTransition(SessionError):
    """Operation not allowed in the session's current state."""


class ExtractionInProgress(SessionError):
    """An extraction is already in flight for this session."""


class FieldNotEditable(SessionError):
    """Unknown field, confidence, or a value that does not fit the field."""


class UnknownSession(SessionError):
    """No open session with that id."""


class UnknownDomain(SessionError):
    """No extraction schema for that domain."""


class IdentifierGenerator:
    """Short random identifiers like EMP-4821, unique per generator."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()
        self._issued: set[str] = set()

    def generate(self, prefix: str, digits: int) -> str:
        low, high = 10 ** (digits - 1), 10 ** digits - 1
        issued = sum(1 for ident in self._issued if ident.startswith(prefix))
        if issued >= high - low + 1:
            raise RuntimeError(f"Identifier space exhausted for prefix {prefix!r}")

        while True:
            ident = f"{prefix}{self._rng.randint(low, high)}"
            if ident not in self._issued:
                self._issued.add(ident)
                return ident


def build_record_draft(
    schema: ExtractionSchema,
    result: ExtractionResult,
    id_generator: IdentifierGenerator,
) -> RecordDraft:
    """Map result fields onto record fields and synthesize the identifier."""
    fields: dict[str, Scalar] = {
        schema.record_field(name): value for name, value in result.values.items()
    }

    rule = schema.identifier
    if rule is not None:
        current = str(fields.get(rule.field, "")).strip()
        if not rule.only_when_blank or not current:
            fields[rule.field] = id_generator.generate(rule.prefix, rule.digits)

    return RecordDraft(
        collection=schema.collection,
        fields=fields,
        source_confidence=result.confidence,
    )


class ScanSession:
    """One open scan: idle -> image_selected -> processing -> reviewing -> confirmed."""

    def __init__(
        self,
        schema: ExtractionSchema,
        extraction_client: ExtractionClient,
        id_generator: IdentifierGenerator,
        settings: Settings,
        mode: ExtractionMode = "vision",
        session_id: str | None = None,
    ):
        self.id = session_id or uuid.uuid4().hex
        self.schema = schema
        self.mode = mode
        self.state = ScanState.IDLE
        self.result: ExtractionResult | None = None
        self.error: str | None = None
        self.error_kind: ErrorKind | None = None

        self._client = extraction_client
        self._ids = id_generator
        self._settings = settings
        self._image: NormalizedImage | None = None
        # Bumped on every selection, cancel and clear; stale replies are dropped
        self._generation = 0

    @property
    def image(self) -> NormalizedImage | None:
        return self._image

    def select_image(self, image_bytes: bytes, media_type: str | None = None) -> NormalizedImage:
        """Normalize a new image. DecodeError moves the session to error and is re-raised."""
        if self.state in (ScanState.PROCESSING, ScanState.CONFIRMED):
            raise InvalidTransition(f"Cannot select an image while {self.state.value}")

        self._reset()
        try:
            image = normalize(
                image_bytes,
                media_type,
                strategy=self._settings.NORMALIZE_STRATEGY,
                max_width=self._settings.MAX_IMAGE_WIDTH,
                jpeg_quality=self._settings.JPEG_QUALITY,
            )
        except DecodeError as e:
            self._fail(ErrorKind.DECODE, str(e))
            raise

        self._image = image
        self.state = ScanState.IMAGE_SELECTED
        logger.info("Session %s: image selected (%dx%d %s)", self.id, image.width, image.height, image.media_type)
        return image

    async def process(self) -> ExtractionOutcome | None:
        """Run extraction on the selected image.

        Returns None when the session was cancelled or reset while the call was in flight.
        """
        if self.state == ScanState.PROCESSING:
            raise ExtractionInProgress("An extraction is already running for this scan")
        if self.state != ScanState.IMAGE_SELECTED or self._image is None:
            raise InvalidTransition(f"Cannot process while {self.state.value}")

        generation = self._generation
        image = self._image
        self.state = ScanState.PROCESSING

        try:
            if self.mode == "text":
                outcome = await self._client.extract_via_text(image.raw_bytes, self.schema)
            else:
                outcome = await self._client.extract(image.payload, image.media_type, self.schema)
        except BaseException:
            if generation == self._generation and self.state == ScanState.PROCESSING:
                self._fail(ErrorKind.NETWORK, GENERIC_FAILURE)
            raise

        if generation != self._generation:
            logger.info("Session %s: discarding late extraction result", self.id)
            return None

        if isinstance(outcome, Ok):
            self.result = outcome.result
            self.state = ScanState.REVIEWING
        else:
            self.result = outcome.fallback
            self._fail(outcome.kind, outcome.message)
        return outcome

    def manual_entry(self) -> ExtractionResult:
        """Review the zero-confidence fallback after a failed extraction and fill it by hand."""
        if self.state != ScanState.ERROR or self.result is None:
            raise InvalidTransition(f"Nothing to fill in while {self.state.value}")
        self.state = ScanState.REVIEWING
        self.error = None
        self.error_kind = None
        return self.result

    def edit(self, changes: dict[str, object]) -> ExtractionResult:
        """Override field values. All changes are validated before any is applied."""
        if self.state != ScanState.REVIEWING or self.result is None:
            raise InvalidTransition(f"Cannot edit while {self.state.value}")

        coerced: dict[str, Scalar] = {}
        for name, value in changes.items():
            spec = self.schema.field(name)
            if spec is None:
                raise FieldNotEditable(f"Field {name!r} cannot be edited")
            try:
                coerced[name] = coerce_value(spec, value)
            except ParseError as e:
                raise FieldNotEditable(str(e)) from e

        self.result = self.result.model_copy(update={"values": {**self.result.values, **coerced}})
        return self.result

    def confirm(self) -> RecordDraft:
        """Hand the reviewed result onward as a RecordDraft. Terminal."""
        if self.state != ScanState.REVIEWING or self.result is None:
            raise InvalidTransition(f"Cannot confirm while {self.state.value}")

        draft = build_record_draft(self.schema, self.result, self._ids)
        self._image = None
        self.state = ScanState.CONFIRMED
        logger.info("Session %s: confirmed draft for %s", self.id, draft.collection)
        return draft

    def cancel(self):
        """Discard image and result; any in-flight reply will be ignored."""
        if self.state == ScanState.CONFIRMED:
            raise InvalidTransition("Scan already confirmed")
        self._reset()

    def clear(self):
        """Drop a failed or reviewed scan so a new image can be chosen."""
        if self.state not in (ScanState.ERROR, ScanState.REVIEWING, ScanState.IMAGE_SELECTED):
            raise InvalidTransition(f"Cannot clear while {self.state.value}")
        self._reset()

    def view(self) -> ScanSessionView:
        return ScanSessionView(
            id=self.id,
            domain=self.schema.domain,
            state=self.state.value,
            media_type=self._image.media_type if self._image else None,
            image_width=self._image.width if self._image else None,
            image_height=self._image.height if self._image else None,
            result=self.result.as_flat_dict() if self.result else None,
            error=self.error,
            error_kind=self.error_kind,
        )

    def _reset(self):
        self._generation += 1
        self._image = None
        self.result = None
        self.error = None
        self.error_kind = None
        self.state = ScanState.IDLE

    def _fail(self, kind: ErrorKind, message: str):
        self.state = ScanState.ERROR
        self.error_kind = kind
        self.error = message


class SessionRegistry:
    """Open scan sessions by id, one per open scan dialog."""

    def __init__(self, extraction_client: ExtractionClient, settings: Settings, id_generator: IdentifierGenerator | None = None):
        self._client = extraction_client
        self._settings = settings
        self._ids = id_generator or IdentifierGenerator()
        self._sessions: dict[str, ScanSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, domain: str, mode: ExtractionMode = "vision") -> ScanSession:
        schema = get_schema(domain)
        if schema is None:
            raise UnknownDomain(f"Unknown domain: {domain}")
        session = ScanSession(schema, self._client, self._ids, self._settings, mode=mode)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> ScanSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(f"No open scan with id {session_id}")
        return session

    def close(self, session_id: str):
        self._sessions.pop(session_id, None)
