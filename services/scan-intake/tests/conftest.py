"""Shared test fixtures for scan intake tests."""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import cv2
import numpy as np
import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Settings
from extraction import ExtractionClient


def _jpeg(width: int, height: int) -> bytes:
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[:] = (240, 240, 240)
    # Dark bars standing in for handwritten lines
    cv2.rectangle(img, (width // 10, height // 10), (width // 2, height // 10 + 20), (30, 30, 30), -1)
    _, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
    return buf.tobytes()


@pytest.fixture
def sample_image_bytes() -> bytes:
    """A 400x300 JPEG, narrower than the default maximum width."""
    return _jpeg(400, 300)


@pytest.fixture
def wide_image_bytes() -> bytes:
    """A 3200x1800 JPEG that must be downscaled."""
    return _jpeg(3200, 1800)


@pytest.fixture
def png_image_bytes() -> bytes:
    img = np.full((120, 200, 3), 200, dtype=np.uint8)
    _, buf = cv2.imencode(".png", img)
    return buf.tobytes()


@pytest.fixture
def invalid_bytes() -> bytes:
    """Non-image bytes for testing decode failures."""
    return b"this is not an image file at all"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        GEMINI_API_KEY="test-key",
        GEMINI_MODEL="gemini-test",
        GEMINI_BASE_URL="http://fake-gemini",
        MODEL_TIMEOUT_SECONDS=5,
        MODEL_CONNECT_TIMEOUT=2,
        MODEL_RETRY_ATTEMPTS=3,
        MODEL_RETRY_DELAY=0.01,  # Fast retries for tests
        MODEL_RETRY_BACKOFF=1.0,
    )


@pytest.fixture
def model_client() -> MagicMock:
    """Stand-in for GeminiClient; set generate.return_value / side_effect per test."""
    client = MagicMock()
    client.configured = True
    client.model = "gemini-test"
    client.generate = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def extraction_client(model_client: MagicMock, settings: Settings) -> ExtractionClient:
    return ExtractionClient(model_client, settings)


@pytest.fixture
def employee_reply() -> str:
    """Model reply for the enrollment form of Asha Rao."""
    return json.dumps({
        "fullName": "Asha Rao",
        "email": "",
        "department": "Engineering",
        "designation": "SDE2",
        "salary": 1200000,
        "joinDate": "2024-03-01",
        "confidence": 0.91,
    })


@pytest.fixture
def inventory_reply() -> str:
    return json.dumps({
        "name": "Classmate Notebook A4",
        "sku": "CLM-A4-172",
        "category": "Stationery",
        "supplier": "ITC Ltd",
        "price": "₹ 1,249.50",
        "quantity": 24,
        "confidence": 0.8,
    })


@pytest.fixture
def fenced_employee_reply(employee_reply: str) -> str:
    """Model reply wrapped in a markdown code fence."""
    return f"```json\n{employee_reply}\n```"
