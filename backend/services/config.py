import os
from typing import Optional

from .errors import ConfigurationError

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"


def get_max_retries() -> int:
    raw = os.getenv("STYLIST_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"STYLIST_MAX_RETRIES must be an integer, got {raw!r}")
    if value < 1:
        raise ConfigurationError(f"STYLIST_MAX_RETRIES must be >= 1, got {value}")
    return value


def get_default_api_key() -> Optional[str]:
    # Prefer GEMINI_API_KEY, fall back to GOOGLE_API_KEY
    return os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or None


def get_base_url() -> str:
    return os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL).rstrip("/")


def get_text_model() -> str:
    return os.getenv("GEMINI_TEXT_MODEL", DEFAULT_TEXT_MODEL)


def get_image_model() -> str:
    return os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_IMAGE_MODEL)


def get_text_timeout() -> float:
    return float(os.getenv("GEMINI_TEXT_TIMEOUT_S", "60"))


def get_image_timeout() -> float:
    # Image generation is slow; 5 minutes by default
    return float(os.getenv("GEMINI_IMAGE_TIMEOUT_S", "300"))


def get_max_file_size() -> int:
    return int(os.getenv("MAX_FILE_SIZE", 10 * 1024 * 1024))


def get_max_image_bytes() -> int:
    return int(os.getenv("STYLIST_MAX_IMAGE_BYTES", 4 * 1024 * 1024))


def get_session_ttl() -> float:
    # Idle sessions are dropped after an hour
    return float(os.getenv("STYLIST_SESSION_TTL_S", "3600"))


def get_max_sessions() -> int:
    return int(os.getenv("STYLIST_MAX_SESSIONS", "200"))
