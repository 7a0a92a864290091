"""Shared exceptions for the pipeline core.

This module contains the classified error type every stage, the retry
executor and the HTTP layer agree on, plus a few narrower exceptions that
are raised before a stage ever talks to an external provider.

A raw failure (HTTP status, network error, provider message) is turned into
a ServiceError by ``animatevdo.services.error_classifier.classify``. Code
outside the classifier should construct ServiceError directly only for
failures it detects itself (missing dependencies, corrupted prior output).
"""

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    """Stable error codes surfaced to callers and persisted with failures."""

    # API errors
    API_KEY_MISSING = "API_KEY_MISSING"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_QUOTA_EXCEEDED = "API_QUOTA_EXCEEDED"
    API_INVALID_RESPONSE = "API_INVALID_RESPONSE"
    API_SERVICE_DOWN = "API_SERVICE_DOWN"

    # Stage errors
    RESEARCH_FAILED = "RESEARCH_FAILED"
    SCRIPT_GENERATION_FAILED = "SCRIPT_GENERATION_FAILED"
    CHARACTER_DESIGN_FAILED = "CHARACTER_DESIGN_FAILED"
    VOICE_SYNTHESIS_FAILED = "VOICE_SYNTHESIS_FAILED"
    VIDEO_COMPILATION_FAILED = "VIDEO_COMPILATION_FAILED"

    # Data errors
    INVALID_PROJECT_DATA = "INVALID_PROJECT_DATA"
    MISSING_DEPENDENCIES = "MISSING_DEPENDENCIES"
    DATA_CORRUPTION = "DATA_CORRUPTION"

    # Storage errors
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    STORAGE_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"

    # Auth / billing
    UNAUTHORIZED = "UNAUTHORIZED"
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"

    # General
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed.

    Raised at settings load time so a misconfigured process fails on startup
    rather than half-way through a stage.
    """

    pass


class ServiceError(Exception):
    """A classified failure.

    Attributes:
        code: Stable ErrorCode for the failure.
        message: Technical message (logged, stored on StageResult).
        user_message: Message safe to show to the project owner.
        retryable: Whether retrying the same request unchanged may succeed.
        suggested_action: Optional hint for the user (e.g. "Wait 60 seconds").
        technical_details: Optional structured context for error logs.

    Example:
        >>> raise ServiceError(
        ...     ErrorCode.MISSING_DEPENDENCIES,
        ...     "Research stage must be completed first",
        ...     user_message="Please complete the research stage first.",
        ...     retryable=False,
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        user_message: str | None = None,
        retryable: bool = False,
        suggested_action: str | None = None,
        technical_details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.user_message = user_message or message
        self.retryable = retryable
        self.suggested_action = suggested_action
        self.technical_details = technical_details
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and error logs."""
        return {
            "error": self.code.value,
            "message": self.user_message,
            "technical_message": self.message,
            "retryable": self.retryable,
            "suggested_action": self.suggested_action,
            "technical_details": self.technical_details,
        }


class ScriptParseError(Exception):
    """Raised when generated script text yields no usable scenes.

    Attributes:
        raw_text: The text that failed to parse (truncated for logging).
    """

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text[:500]
        super().__init__(message)
