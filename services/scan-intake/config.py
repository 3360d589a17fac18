"""Environment-based configuration for the scan intake service."""

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Scan intake settings, loaded from environment variables.

    Built once by the app factory and passed to every client that needs it.
    """

    # Server
    PORT: int = 8092

    # Gemini connection (empty key = AI extraction disabled, local dev default)
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com"

    # Sampling
    EXTRACTION_TEMPERATURE: float = 0.1

    # Model call timeouts and retry
    MODEL_TIMEOUT_SECONDS: float = 30.0
    MODEL_CONNECT_TIMEOUT: float = 10.0
    MODEL_RETRY_ATTEMPTS: int = 2
    MODEL_RETRY_DELAY: float = 1.0
    MODEL_RETRY_BACKOFF: float = 2.0

    # Image normalization
    NORMALIZE_STRATEGY: Literal["downscale", "passthrough"] = "downscale"
    MAX_IMAGE_WIDTH: int = 1600
    JPEG_QUALITY: int = 85

    # Text recognition (text-based extraction path)
    TESSERACT_LANG: str = "eng"

    model_config = {"env_prefix": "", "case_sensitive": True}
