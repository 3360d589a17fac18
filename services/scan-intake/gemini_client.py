"""HTTP client for the Gemini generateContent endpoint.

Uses httpx with configurable timeouts and tenacity for retry with
exponential backoff on 429/503 and connection errors.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 503}


class NetworkError(Exception):
    """The model call failed or timed out."""


class ModelUnavailable(NetworkError):
    """Model endpoint is temporarily unavailable (retryable: 429, 503, connection error, timeout)."""


class ModelRefusal(Exception):
    """The model returned no usable content (blocked prompt or empty reply)."""


def image_part(payload_b64: str, media_type: str) -> dict:
    return {"inlineData": {"mimeType": media_type, "data": payload_b64}}


def text_part(text: str) -> dict:
    return {"text": text}


class GeminiClient:
    """Async client for Gemini structured-output generation with retry and backoff."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self._model = settings.GEMINI_MODEL
        self._api_key = settings.GEMINI_API_KEY
        self._retry_attempts = max(1, settings.MODEL_RETRY_ATTEMPTS)
        self._retry_delay = settings.MODEL_RETRY_DELAY
        self._retry_backoff = settings.MODEL_RETRY_BACKOFF

        self._client = httpx.AsyncClient(
            base_url=settings.GEMINI_BASE_URL.rstrip("/"),
            timeout=httpx.Timeout(
                settings.MODEL_TIMEOUT_SECONDS,
                connect=settings.MODEL_CONNECT_TIMEOUT,
            ),
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def close(self):
        await self._client.aclose()

    async def generate(
        self,
        parts: list[dict],
        response_schema: dict | None = None,
        temperature: float = 0.1,
    ) -> str:
        """Send one generateContent request and return the reply text.

        Raises NetworkError (incl. ModelUnavailable after retries) or ModelRefusal.
        """
        generation_config: dict[str, Any] = {
            "responseMimeType": "application/json",
            "temperature": temperature,
        }
        if response_schema is not None:
            generation_config["responseSchema"] = response_schema

        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        data = await self._generate_with_retry(payload)
        return _reply_text(data)

    async def _generate_with_retry(self, payload: dict) -> dict:
        """Retry wrapper, configured from the injected settings."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ModelUnavailable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(
                multiplier=self._retry_delay,
                exp_base=self._retry_backoff,
                max=30,
            ),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Gemini unavailable, retrying in %.1fs (attempt %d/%d)",
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                self._retry_attempts,
            ),
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_generate(payload)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send_generate(self, payload: dict) -> dict:
        """Send a single generateContent request."""
        url = f"/v1beta/models/{self._model}:generateContent"
        try:
            resp = await self._client.post(url, json=payload, headers={"x-goog-api-key": self._api_key})
        except httpx.TimeoutException as e:
            logger.warning("Gemini request timed out: %s", e)
            raise ModelUnavailable(f"Model request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning("Gemini connection failed: %s", e)
            raise ModelUnavailable(f"Cannot connect to model endpoint: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Gemini request failed: %s", e)
            raise NetworkError(f"Model request failed: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            detail = _error_detail(resp)
            logger.warning("Gemini returned %d: %s", resp.status_code, detail)
            raise ModelUnavailable(detail)

        if resp.status_code != 200:
            detail = _error_detail(resp)
            logger.error("Gemini error %d: %s", resp.status_code, detail)
            raise NetworkError(detail)

        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Model endpoint returned a non-JSON body: {e}") from e


def _reply_text(data: object) -> str:
    """Concatenate the text parts of the first candidate.

    Raises ModelRefusal for blocked requests, empty replies and bodies that do
    not have the generateContent shape.
    """
    if not isinstance(data, dict):
        raise ModelRefusal(f"Unexpected reply body: {type(data).__name__}")

    feedback = data.get("promptFeedback")
    block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    if block_reason:
        raise ModelRefusal(f"Request blocked by the model: {block_reason}")

    candidates = data.get("candidates")
    if not candidates:
        raise ModelRefusal("No extracted text returned from AI")
    if not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        raise ModelRefusal("Unexpected candidates in reply")

    content = candidates[0].get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        parts = []
    text = "".join(
        part["text"] for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )
    if not text.strip():
        reason = candidates[0].get("finishReason", "unknown")
        raise ModelRefusal(f"Empty reply from the model (finishReason={reason})")
    return text


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return f"HTTP {resp.status_code}"
