"""Tests for the Tesseract text recognition step."""

import sys
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytesseract
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from preprocessing import DecodeError
from text_recognition import TextRecognitionError, recognize_text


class TestRecognizeText:
    def test_returns_tesseract_text(self, sample_image_bytes: bytes):
        with patch("text_recognition.pytesseract.image_to_string", return_value="Full Name: Asha Rao\n") as ocr:
            text = recognize_text(sample_image_bytes, lang="eng")

        assert text == "Full Name: Asha Rao\n"
        image_arg = ocr.call_args.args[0]
        assert isinstance(image_arg, np.ndarray)
        assert image_arg.shape == (300, 400, 3)
        assert ocr.call_args.kwargs["lang"] == "eng"

    def test_invalid_image(self, invalid_bytes: bytes):
        with pytest.raises(DecodeError):
            recognize_text(invalid_bytes)

    def test_tesseract_missing(self, sample_image_bytes: bytes):
        with patch(
            "text_recognition.pytesseract.image_to_string",
            side_effect=pytesseract.TesseractNotFoundError(),
        ):
            with pytest.raises(TextRecognitionError, match="Text recognition failed"):
                recognize_text(sample_image_bytes)

    def test_tesseract_error(self, sample_image_bytes: bytes):
        with patch(
            "text_recognition.pytesseract.image_to_string",
            side_effect=pytesseract.TesseractError(1, "Failed loading language 'hin'"),
        ):
            with pytest.raises(TextRecognitionError):
                recognize_text(sample_image_bytes, lang="hin")
