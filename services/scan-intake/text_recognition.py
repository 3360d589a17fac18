"""Local text recognition with Tesseract for the text-based extraction path."""

import logging

import cv2
import pytesseract

from preprocessing import decode

logger = logging.getLogger(__name__)


class TextRecognitionError(Exception):
    """Tesseract is missing or failed on the image."""


def recognize_text(image_bytes: bytes, lang: str = "eng") -> str:
    """Run Tesseract over the whole image and return the raw text.

    Raises DecodeError for non-image input, TextRecognitionError if Tesseract fails.
    """
    img = decode(image_bytes)
    rgb = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    try:
        text = pytesseract.image_to_string(rgb, lang=lang)
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
        logger.error("Tesseract failed: %s", e)
        raise TextRecognitionError(f"Text recognition failed: {e}") from e

    logger.info("Recognized %d characters of text", len(text))
    return text
