"""Tests for the scan session state machine and record drafts."""

import asyncio
import random
import re
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from domains import EMPLOYEE_SCHEMA, INVENTORY_SCHEMA
from gemini_client import NetworkError
from models import ErrorKind, ExtractionResult
from preprocessing import DecodeError
from verification import (
    ExtractionInProgress,
    FieldNotEditable,
    IdentifierGenerator,
    InvalidTransition,
    ScanSession,
    ScanState,
    SessionRegistry,
    UnknownDomain,
    UnknownSession,
    build_record_draft,
)

EMP_ID = re.compile(r"^EMP-\d{4}$")


@pytest.fixture
def session(extraction_client, settings) -> ScanSession:
    return ScanSession(EMPLOYEE_SCHEMA, extraction_client, IdentifierGenerator(random.Random(7)), settings)


@pytest.fixture
def inventory_session(extraction_client, settings) -> ScanSession:
    return ScanSession(INVENTORY_SCHEMA, extraction_client, IdentifierGenerator(random.Random(7)), settings)


class TestIdentifierGenerator:
    def test_pattern(self):
        ident = IdentifierGenerator().generate("EMP-", 4)
        assert EMP_ID.match(ident)

    def test_unique(self):
        gen = IdentifierGenerator(random.Random(1))
        ids = [gen.generate("EMP-", 1) for _ in range(9)]
        assert len(set(ids)) == 9

    def test_exhausted(self):
        gen = IdentifierGenerator(random.Random(1))
        for _ in range(9):
            gen.generate("X-", 1)
        with pytest.raises(RuntimeError, match="exhausted"):
            gen.generate("X-", 1)


class TestBuildRecordDraft:
    def test_employee_id_always_generated(self):
        result = ExtractionResult(domain="employee", values={
            "fullName": "Ravi", "email": "", "department": "Sales", "designation": "AE",
            "salary": 600000, "joinDate": "2024-01-12",
        }, confidence=0.5)
        draft = build_record_draft(EMPLOYEE_SCHEMA, result, IdentifierGenerator())

        assert draft.collection == "employees"
        assert EMP_ID.match(draft.fields["employeeId"])
        assert draft.fields["fullName"] == "Ravi"
        assert draft.source_confidence == 0.5

    def test_unique_per_confirmation(self):
        result = ExtractionResult(domain="employee", values={"fullName": "Ravi"}, confidence=0.5)
        gen = IdentifierGenerator()
        ids = {build_record_draft(EMPLOYEE_SCHEMA, result, gen).fields["employeeId"] for _ in range(50)}
        assert len(ids) == 50

    def test_sku_generated_only_when_blank(self):
        gen = IdentifierGenerator()
        blank = ExtractionResult(domain="inventory", values={"name": "Pen", "sku": ""})
        given = ExtractionResult(domain="inventory", values={"name": "Pen", "sku": "PEN-01"})

        assert re.match(r"^SKU-\d{6}$", build_record_draft(INVENTORY_SCHEMA, blank, gen).fields["sku"])
        assert build_record_draft(INVENTORY_SCHEMA, given, gen).fields["sku"] == "PEN-01"


class TestSelectImage:
    def test_starts_idle(self, session: ScanSession):
        assert session.state == ScanState.IDLE

    def test_select_moves_to_image_selected(self, session: ScanSession, wide_image_bytes: bytes):
        image = session.select_image(wide_image_bytes, "image/jpeg")
        assert session.state == ScanState.IMAGE_SELECTED
        assert image.width == 1600

    def test_decode_error_moves_to_error(self, session: ScanSession, invalid_bytes: bytes, model_client):
        with pytest.raises(DecodeError):
            session.select_image(invalid_bytes)
        assert session.state == ScanState.ERROR
        assert session.error_kind == ErrorKind.DECODE
        assert session.error
        model_client.generate.assert_not_called()

    def test_reselect_after_error(self, session: ScanSession, invalid_bytes: bytes, sample_image_bytes: bytes):
        with pytest.raises(DecodeError):
            session.select_image(invalid_bytes)
        session.select_image(sample_image_bytes)
        assert session.state == ScanState.IMAGE_SELECTED
        assert session.error is None


class TestProcess:
    @pytest.mark.asyncio
    async def test_success_moves_to_reviewing(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)

        await session.process()
        assert session.state == ScanState.REVIEWING
        assert session.result.values["fullName"] == "Asha Rao"

    @pytest.mark.asyncio
    async def test_process_requires_image(self, session):
        with pytest.raises(InvalidTransition):
            await session.process()

    @pytest.mark.asyncio
    async def test_failure_moves_to_error_with_fallback(self, session, model_client, sample_image_bytes):
        model_client.generate.side_effect = NetworkError("connection refused")
        session.select_image(sample_image_bytes)

        outcome = await session.process()
        assert outcome.kind == ErrorKind.NETWORK
        assert session.state == ScanState.ERROR
        assert session.error_kind == ErrorKind.NETWORK
        assert session.result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_second_process_rejected_while_in_flight(self, session, model_client, employee_reply, sample_image_bytes):
        release = asyncio.Event()

        async def slow_generate(*args, **kwargs):
            await release.wait()
            return employee_reply

        model_client.generate.side_effect = slow_generate
        session.select_image(sample_image_bytes)

        first = asyncio.create_task(session.process())
        await asyncio.sleep(0)
        assert session.state == ScanState.PROCESSING

        with pytest.raises(ExtractionInProgress):
            await session.process()

        release.set()
        await first
        assert session.state == ScanState.REVIEWING
        assert model_client.generate.call_count == 1

    @pytest.mark.asyncio
    async def test_late_result_after_cancel_discarded(self, session, model_client, employee_reply, sample_image_bytes):
        release = asyncio.Event()

        async def slow_generate(*args, **kwargs):
            await release.wait()
            return employee_reply

        model_client.generate.side_effect = slow_generate
        session.select_image(sample_image_bytes)

        task = asyncio.create_task(session.process())
        await asyncio.sleep(0)
        session.cancel()
        release.set()

        assert await task is None
        assert session.state == ScanState.IDLE
        assert session.result is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_leaves_error_state(self, session, model_client, sample_image_bytes):
        model_client.generate.side_effect = RuntimeError("bug")
        session.select_image(sample_image_bytes)

        with pytest.raises(RuntimeError):
            await session.process()
        assert session.state == ScanState.ERROR

    @pytest.mark.asyncio
    async def test_text_mode_uses_recognized_text(self, extraction_client, settings, model_client, inventory_reply, sample_image_bytes, monkeypatch):
        monkeypatch.setattr("extraction.recognize_text", lambda image_bytes, lang: "Classmate A4 notebook")
        model_client.generate.return_value = inventory_reply
        session = ScanSession(INVENTORY_SCHEMA, extraction_client, IdentifierGenerator(), settings, mode="text")
        session.select_image(sample_image_bytes)

        await session.process()
        assert session.state == ScanState.REVIEWING
        parts = model_client.generate.call_args.args[0]
        assert "Classmate A4 notebook" in parts[0]["text"]


class TestEdit:
    @pytest.mark.asyncio
    async def test_edit_overrides_field(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)
        await session.process()

        result = session.edit({"email": "asha@example.com", "salary": "13,00,000"})
        assert result.values["email"] == "asha@example.com"
        assert result.values["salary"] == 1300000
        assert result.confidence == 0.91

    @pytest.mark.asyncio
    async def test_confidence_not_editable(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)
        await session.process()

        with pytest.raises(FieldNotEditable):
            session.edit({"confidence": 1.0})
        with pytest.raises(FieldNotEditable):
            session.edit({"employeeId": "EMP-1"})

    @pytest.mark.asyncio
    async def test_invalid_edit_applies_nothing(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)
        await session.process()

        with pytest.raises(FieldNotEditable):
            session.edit({"email": "x@y.z", "salary": "lots"})
        assert session.result.values["email"] == ""

    def test_edit_requires_review(self, session):
        with pytest.raises(InvalidTransition):
            session.edit({"email": "a@b.c"})


class TestConfirm:
    @pytest.mark.asyncio
    async def test_end_to_end_asha_rao(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)
        await session.process()
        session.edit({"email": "asha@example.com"})

        draft = session.confirm()

        assert session.state == ScanState.CONFIRMED
        assert session.image is None
        assert draft.fields["email"] == "asha@example.com"
        assert draft.fields["fullName"] == "Asha Rao"
        assert draft.fields["department"] == "Engineering"
        assert draft.fields["designation"] == "SDE2"
        assert draft.fields["salary"] == 1200000
        assert draft.fields["joinDate"] == "2024-03-01"
        assert EMP_ID.match(draft.fields["employeeId"])

    @pytest.mark.asyncio
    async def test_draft_has_every_record_field(self, inventory_session, model_client, inventory_reply, sample_image_bytes):
        model_client.generate.return_value = inventory_reply
        inventory_session.select_image(sample_image_bytes)
        await inventory_session.process()

        draft = inventory_session.confirm()
        assert set(draft.fields) == {"name", "sku", "category", "supplier", "price", "quantity"}
        assert draft.fields["sku"] == "CLM-A4-172"

    @pytest.mark.asyncio
    async def test_confirm_is_terminal(self, session, model_client, employee_reply, sample_image_bytes):
        model_client.generate.return_value = employee_reply
        session.select_image(sample_image_bytes)
        await session.process()
        session.confirm()

        with pytest.raises(InvalidTransition):
            session.confirm()
        with pytest.raises(InvalidTransition):
            session.cancel()
        with pytest.raises(InvalidTransition):
            session.select_image(sample_image_bytes)

    def test_confirm_requires_review(self, session, sample_image_bytes):
        session.select_image(sample_image_bytes)
        with pytest.raises(InvalidTransition):
            session.confirm()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_manual_entry_after_failure(self, session, model_client, sample_image_bytes):
        model_client.generate.side_effect = NetworkError("down")
        session.select_image(sample_image_bytes)
        await session.process()

        session.manual_entry()
        session.edit({"fullName": "Meera Iyer", "salary": 900000})
        draft = session.confirm()
        assert draft.fields["fullName"] == "Meera Iyer"
        assert draft.source_confidence == 0.0

    @pytest.mark.asyncio
    async def test_clear_after_failure(self, session, model_client, sample_image_bytes):
        model_client.generate.side_effect = NetworkError("down")
        session.select_image(sample_image_bytes)
        await session.process()

        session.clear()
        assert session.state == ScanState.IDLE
        assert session.result is None
        assert session.image is None

    def test_cancel_discards_image(self, session, sample_image_bytes):
        session.select_image(sample_image_bytes)
        session.cancel()
        assert session.state == ScanState.IDLE
        assert session.image is None

    def test_view_has_no_image_bytes(self, session, sample_image_bytes):
        session.select_image(sample_image_bytes)
        view = session.view().model_dump()
        assert view["state"] == "image_selected"
        assert view["image_width"] == 400
        assert "payload" not in view


class TestSessionRegistry:
    def test_create_get_close(self, extraction_client, settings):
        registry = SessionRegistry(extraction_client, settings)
        session = registry.create("inventory")
        assert registry.get(session.id) is session
        assert len(registry) == 1

        registry.close(session.id)
        with pytest.raises(UnknownSession):
            registry.get(session.id)

    def test_unknown_domain(self, extraction_client, settings):
        with pytest.raises(UnknownDomain):
            SessionRegistry(extraction_client, settings).create("payroll")

    def test_sessions_share_id_generator(self, extraction_client, settings):
        registry = SessionRegistry(extraction_client, settings, IdentifierGenerator(random.Random(3)))
        a, b = registry.create("employee"), registry.create("employee")
        assert a._ids is b._ids
