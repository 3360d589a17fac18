"""Image normalization for model upload.

Turns a captured or selected image into a base64 payload plus media type:
1. Decode image bytes (validates that the upload is an image at all)
2. Pass-through: encode the original bytes verbatim
   or downscale: shrink to the maximum width, preserving aspect ratio
3. Re-encode as JPEG (downscale strategy only)

Decoding failure is not recoverable here and raises DecodeError.
"""

import base64
import logging

import cv2
import numpy as np
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_WIDTH = 1600
DEFAULT_JPEG_QUALITY = 85

STRATEGY_DOWNSCALE = "downscale"
STRATEGY_PASSTHROUGH = "passthrough"

_SIGNATURES: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
]


class DecodeError(Exception):
    """The uploaded bytes are not a decodable image (retryable with another image)."""


class NormalizedImage(BaseModel):
    payload: str  # base64
    media_type: str
    width: int
    height: int

    @property
    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.payload)


def normalize(
    image_bytes: bytes,
    media_type: str | None = None,
    strategy: str = STRATEGY_DOWNSCALE,
    max_width: int = DEFAULT_MAX_WIDTH,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> NormalizedImage:
    """Validate and encode an image for transport.

    Raises DecodeError if the bytes cannot be decoded as an image.
    """
    img = decode(image_bytes)
    h, w = img.shape[:2]

    if strategy == STRATEGY_PASSTHROUGH:
        declared = media_type if media_type and media_type.startswith("image/") else None
        return NormalizedImage(
            payload=base64.b64encode(image_bytes).decode(),
            media_type=declared or sniff_media_type(image_bytes),
            width=w,
            height=h,
        )

    if strategy != STRATEGY_DOWNSCALE:
        raise ValueError(f"Unknown normalize strategy: {strategy}")

    img = downscale(img, max_width)
    out_h, out_w = img.shape[:2]
    encoded = encode_jpeg(img, jpeg_quality)
    logger.info(
        "Normalized image: %dx%d (%d bytes) -> %dx%d (%d bytes)",
        w, h, len(image_bytes), out_w, out_h, len(encoded),
    )
    return NormalizedImage(
        payload=base64.b64encode(encoded).decode(),
        media_type="image/jpeg",
        width=out_w,
        height=out_h,
    )


def decode(image_bytes: bytes) -> np.ndarray:
    """Decode raw bytes into an OpenCV BGR array."""
    if not image_bytes:
        raise DecodeError("Empty image file")
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise DecodeError("File is not a readable image. Try a clearer JPG or PNG.")
    return img


def downscale(img: np.ndarray, max_width: int) -> np.ndarray:
    """Shrink to max_width preserving aspect ratio; narrower images are returned as-is."""
    h, w = img.shape[:2]
    if w <= max_width:
        return img

    new_h = max(1, round(h * max_width / w))
    logger.debug("Downscaling %dx%d -> %dx%d", w, h, max_width, new_h)
    return cv2.resize(img, (max_width, new_h), interpolation=cv2.INTER_AREA)


def encode_jpeg(img: np.ndarray, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Encode image as JPEG bytes."""
    success, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not success:
        raise DecodeError("Failed to re-encode image as JPEG")
    return buf.tobytes()


def sniff_media_type(image_bytes: bytes) -> str:
    """Best-effort media type from magic bytes."""
    for signature, media_type in _SIGNATURES:
        if image_bytes.startswith(signature):
            return media_type
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"
