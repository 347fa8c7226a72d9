"""
Exception hierarchy shared by the compositor, the Gemini client and the stylist.
"""
from typing import Optional


class StylistError(Exception):
    """Base class for every error a styling run can surface."""


class ValidationError(StylistError):
    """Required inputs are missing or unusable. Raised before any remote call."""


class ConfigurationError(StylistError):
    """No usable API key, or an invalid configuration value."""


class CompositingError(StylistError):
    """An image could not be decoded, drawn or encoded."""


class GenerationError(StylistError):
    BLOCKED = "blocked"
    EMPTY_RESPONSE = "empty-response"
    NO_IMAGE = "no-image"
    PROVIDER_REJECTED = "provider-rejected"
    NETWORK = "network"
    CREDENTIAL = "credential"

    def __init__(self, message: str, cause: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.status_code = status_code


class QuotaExceeded(GenerationError):
    """The provider reported RESOURCE_EXHAUSTED / quota for the key in use."""

    def __init__(self, message: str, status_code: Optional[int] = 429):
        super().__init__(message, GenerationError.PROVIDER_REJECTED, status_code=status_code)
