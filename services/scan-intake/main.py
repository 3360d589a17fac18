"""FastAPI scan intake service: scan a form or label, review the fields, submit the record.

Handles image normalization, AI extraction, the per-scan review session and
record form submission. Images are processed in-memory only and never logged.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import Settings
from domains import get_schema
from extraction import ExtractionClient, extract_from_image
from forms import FORMS
from gemini_client import GeminiClient
from models import CreateScanRequest, ExtractionMode, ExtractionResponse, RecordDraft, ScanSessionView
from preprocessing import DecodeError
from record_store import InMemoryRecordStore, Record, RecordNotFound, RecordStore
from verification import (
    ExtractionInProgress,
    FieldNotEditable,
    InvalidTransition,
    SessionRegistry,
    UnknownDomain,
    UnknownSession,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

EXTRACTION_DISABLED = "AI extraction is not available - no GEMINI_API_KEY configured"


def create_app(
    settings: Settings | None = None,
    store: RecordStore | None = None,
    model_client: GeminiClient | None = None,
) -> FastAPI:
    settings = settings or Settings()
    model_client = model_client or GeminiClient(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if model_client.configured:
            logger.info("AI extraction enabled (model=%s)", model_client.model)
        else:
            logger.info("GEMINI_API_KEY is empty - AI extraction disabled, manual entry only")
        yield
        await model_client.close()

    app = FastAPI(title="Scan Intake", version="1.0.0", lifespan=lifespan)

    extraction_client = ExtractionClient(model_client, settings)
    app.state.settings = settings
    app.state.model_client = model_client
    app.state.extraction_client = extraction_client
    app.state.sessions = SessionRegistry(extraction_client, settings)
    app.state.store = store or InMemoryRecordStore()

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI):
    def detail(status_code: int):
        async def handler(request: Request, exc: Exception):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        return handler

    app.add_exception_handler(UnknownSession, detail(404))
    app.add_exception_handler(UnknownDomain, detail(404))
    app.add_exception_handler(RecordNotFound, detail(404))
    app.add_exception_handler(InvalidTransition, detail(409))
    app.add_exception_handler(ExtractionInProgress, detail(409))
    app.add_exception_handler(FieldNotEditable, detail(422))
    app.add_exception_handler(DecodeError, detail(422))


def _register_routes(app: FastAPI):
    @app.post("/api/v1/extract", response_model=ExtractionResponse)
    async def extract(
        request: Request,
        file: UploadFile = File(...),
        domain: str = Form(...),
        mode: ExtractionMode = Form("vision"),
    ):
        """One-shot extraction of structured fields from a form or label image."""
        state = request.app.state
        if not state.model_client.configured:
            return JSONResponse(status_code=503, content={"detail": EXTRACTION_DISABLED})

        schema = get_schema(domain)
        if schema is None:
            raise UnknownDomain(f"Unknown domain: {domain}")

        image_bytes = await file.read()
        if not image_bytes:
            return JSONResponse(status_code=400, content={"detail": "Empty file uploaded"})

        # Log byte count only, never image content
        logger.info("Processing extraction: domain=%s mode=%s size=%d bytes", domain, mode, len(image_bytes))
        return await extract_from_image(
            image_bytes, file.content_type, schema, state.extraction_client, state.settings, mode=mode,
        )

    @app.post("/api/v1/scans", response_model=ScanSessionView, status_code=201)
    async def create_scan(request: Request, body: CreateScanRequest, mode: ExtractionMode = "vision"):
        session = request.app.state.sessions.create(body.domain, mode=mode)
        return session.view()

    @app.get("/api/v1/scans/{scan_id}", response_model=ScanSessionView)
    async def get_scan(request: Request, scan_id: str):
        return request.app.state.sessions.get(scan_id).view()

    @app.post("/api/v1/scans/{scan_id}/image", response_model=ScanSessionView)
    async def select_image(request: Request, scan_id: str, file: UploadFile = File(...)):
        session = request.app.state.sessions.get(scan_id)
        image_bytes = await file.read()
        logger.info("Scan %s: received image (%d bytes)", scan_id, len(image_bytes))
        session.select_image(image_bytes, file.content_type)
        return session.view()

    @app.post("/api/v1/scans/{scan_id}/process", response_model=ScanSessionView)
    async def process_scan(request: Request, scan_id: str):
        state = request.app.state
        session = state.sessions.get(scan_id)
        if not state.model_client.configured:
            return JSONResponse(status_code=503, content={"detail": EXTRACTION_DISABLED})
        await session.process()
        return session.view()

    @app.post("/api/v1/scans/{scan_id}/manual", response_model=ScanSessionView)
    async def manual_entry(request: Request, scan_id: str):
        session = request.app.state.sessions.get(scan_id)
        session.manual_entry()
        return session.view()

    @app.patch("/api/v1/scans/{scan_id}/fields", response_model=ScanSessionView)
    async def edit_fields(request: Request, scan_id: str, changes: dict[str, Any] = Body(...)):
        session = request.app.state.sessions.get(scan_id)
        session.edit(changes)
        return session.view()

    @app.post("/api/v1/scans/{scan_id}/clear", response_model=ScanSessionView)
    async def clear_scan(request: Request, scan_id: str):
        session = request.app.state.sessions.get(scan_id)
        session.clear()
        return session.view()

    @app.post("/api/v1/scans/{scan_id}/confirm", response_model=RecordDraft)
    async def confirm_scan(request: Request, scan_id: str):
        sessions = request.app.state.sessions
        draft = sessions.get(scan_id).confirm()
        sessions.close(scan_id)
        return draft

    @app.delete("/api/v1/scans/{scan_id}", status_code=204)
    async def cancel_scan(request: Request, scan_id: str):
        sessions = request.app.state.sessions
        sessions.get(scan_id).cancel()
        sessions.close(scan_id)

    @app.get("/api/v1/records/{collection}", response_model=list[Record])
    async def list_records(request: Request, collection: str, order_by: str = "created_at", descending: bool = True):
        _form_for(collection)
        return request.app.state.store.list_records(collection, order_by, descending)

    @app.post("/api/v1/records/{collection}", response_model=Record, status_code=201)
    async def create_record(request: Request, collection: str, payload: dict[str, Any] = Body(...)):
        form = _form_for(collection)
        try:
            fields = form.model_validate(payload).to_fields()
        except ValidationError as e:
            return _validation_error(e)
        return await request.app.state.store.create(collection, fields)

    @app.put("/api/v1/records/{collection}/{record_id}", response_model=Record)
    async def update_record(request: Request, collection: str, record_id: str, payload: dict[str, Any] = Body(...)):
        form = _form_for(collection)
        store = request.app.state.store
        existing = store.get(collection, record_id)
        try:
            fields = form.model_validate({**existing.fields, **payload}).to_fields()
        except ValidationError as e:
            return _validation_error(e)
        return await store.update(collection, record_id, fields)

    @app.delete("/api/v1/records/{collection}/{record_id}", status_code=204)
    async def delete_record(request: Request, collection: str, record_id: str):
        _form_for(collection)
        await request.app.state.store.delete(collection, record_id)

    @app.get("/health")
    async def health(request: Request):
        """Return service status and extraction availability."""
        state = request.app.state
        return {
            "status": "healthy",
            "extraction_available": state.model_client.configured,
            "model": state.model_client.model,
            "open_scans": len(state.sessions),
        }


def _form_for(collection: str):
    form = FORMS.get(collection)
    if form is None:
        raise RecordNotFound(f"Unknown collection: {collection}")
    return form


def _validation_error(exc: ValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": errors})


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.PORT)
