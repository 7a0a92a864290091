"""Error classification for external provider failures.

Turns whatever a provider call raised (an httpx exception, a
``ProviderAPIError``, a plain exception with a status attribute, or even a
bare ``{"status": 429}`` mapping) into a ``ServiceError`` with a stable code,
a user-facing message and a retryable flag.

Classification order:
    1. Already a ServiceError: returned unchanged.
    2. Marker text owned by the calling service (e.g. "content filter" for
       Script Generation): the service-specific code and retry policy.
    3. HTTP status: 429 rate limit, 401 missing key, 503 service down.
    4. Network-level failures (refused, timed out): NETWORK_ERROR.
    5. Anything else: UNKNOWN_ERROR, retryable.

``classify`` has no side effects: the same (error, service) pair always
yields the same code and retryable flag.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

NETWORK_ERROR_CODES = {"ECONNREFUSED", "ETIMEDOUT", "ECONNRESET", "ENOTFOUND"}


@dataclass(frozen=True)
class MarkerRule:
    """A service-specific message marker and the error it maps to."""

    marker: str
    code: ErrorCode
    user_message: str
    retryable: bool
    suggested_action: str | None = None


SERVICE_MARKERS: dict[str, tuple[MarkerRule, ...]] = {
    "Research": (
        MarkerRule(
            marker="no search results",
            code=ErrorCode.RESEARCH_FAILED,
            user_message="Could not find information about this topic. Please try a different topic.",
            retryable=False,
            suggested_action="Try a more general or well-known topic",
        ),
    ),
    "Script Generation": (
        MarkerRule(
            marker="content filter",
            code=ErrorCode.SCRIPT_GENERATION_FAILED,
            user_message="The topic may contain sensitive content. Please choose a different topic.",
            retryable=False,
            suggested_action="Choose a family-friendly topic",
        ),
    ),
    "Character Design": (
        MarkerRule(
            marker="safety system",
            code=ErrorCode.CHARACTER_DESIGN_FAILED,
            user_message="Character design was blocked by safety filters. Please modify the character descriptions.",
            retryable=False,
            suggested_action="Use more generic character descriptions",
        ),
    ),
    "Voice Synthesis": (
        MarkerRule(
            marker="voice_not_found",
            code=ErrorCode.VOICE_SYNTHESIS_FAILED,
            user_message="Selected voice is not available. Using default voice instead.",
            retryable=True,
            suggested_action="System will retry with default voice",
        ),
    ),
    "Video Compilation": (
        MarkerRule(
            marker="ffmpeg",
            code=ErrorCode.VIDEO_COMPILATION_FAILED,
            user_message="Video processing failed. Our team has been notified.",
            retryable=True,
            suggested_action="Try again in a few minutes",
        ),
    ),
}


def _extract_status(error: Any) -> int | None:
    """Find an HTTP status on an exception, a response, or a mapping."""
    if isinstance(error, Mapping):
        status = error.get("status") or error.get("status_code")
        if status is None and isinstance(error.get("response"), Mapping):
            status = error["response"].get("status")
        return int(status) if status is not None else None

    for attr in ("status_code", "status"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status

    response = getattr(error, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def _extract_message(error: Any) -> str:
    if isinstance(error, Mapping):
        message = error.get("message") or error.get("error") or ""
        return str(message)
    return str(error) if error is not None else ""


def _is_network_error(error: Any) -> bool:
    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    code = error.get("code") if isinstance(error, Mapping) else getattr(error, "code", None)
    return isinstance(code, str) and code.upper() in NETWORK_ERROR_CODES


def classify(error: Any, service_name: str) -> ServiceError:
    """Classify a raw failure from ``service_name`` into a ServiceError.

    Args:
        error: Exception (or status-bearing mapping) raised by a provider call.
        service_name: Service that produced it, e.g. "Research" or
            "Script Generation". Selects which message markers apply.

    Returns:
        ServiceError with stable code, user message and retryable flag.

    Example:
        >>> classify({"status": 401}, "Character Design").code
        <ErrorCode.API_KEY_MISSING: 'API_KEY_MISSING'>
        >>> classify(RuntimeError("boom"), "Research").retryable
        True
    """
    if isinstance(error, ServiceError):
        return error

    message = _extract_message(error)
    lowered = message.lower()
    status = _extract_status(error)
    details = {"service": service_name, "status": status, "error_type": type(error).__name__}

    for rule in SERVICE_MARKERS.get(service_name, ()):
        if rule.marker in lowered:
            return ServiceError(
                rule.code,
                f"{service_name}: {message}",
                user_message=rule.user_message,
                retryable=rule.retryable,
                suggested_action=rule.suggested_action,
                technical_details=details,
            )

    if status == 429:
        return ServiceError(
            ErrorCode.API_RATE_LIMIT,
            f"{service_name} API rate limit exceeded",
            user_message="Too many requests. Please wait a moment and try again.",
            retryable=True,
            suggested_action="Wait 60 seconds before retrying",
            technical_details=details,
        )

    if status == 401:
        return ServiceError(
            ErrorCode.API_KEY_MISSING,
            f"{service_name} API key is missing or invalid",
            user_message="Service configuration error. Please contact support.",
            retryable=False,
            technical_details=details,
        )

    if status == 503:
        return ServiceError(
            ErrorCode.API_SERVICE_DOWN,
            f"{service_name} service is temporarily unavailable",
            user_message="The service is temporarily down. Please try again in a few minutes.",
            retryable=True,
            suggested_action="Try again in 5 minutes",
            technical_details=details,
        )

    if _is_network_error(error):
        return ServiceError(
            ErrorCode.NETWORK_ERROR,
            f"Network error connecting to {service_name}: {message}",
            user_message="Connection problem. Please check your internet connection.",
            retryable=True,
            suggested_action="Check your connection and try again",
            technical_details=details,
        )

    return ServiceError(
        ErrorCode.UNKNOWN_ERROR,
        message or "Unknown error occurred",
        user_message="An unexpected error occurred. Please try again.",
        retryable=True,
        technical_details=details,
    )


FRIENDLY_MESSAGES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("network",), "Connection problem. Please check your internet connection."),
    (("timeout", "timed out"), "The request took too long. Please try again."),
    (("quota",), "Service limit reached. Please try again later or upgrade your plan."),
    (("unauthorized",), "Please sign in again to continue."),
    (("500", "server error"), "Server error. Our team has been notified."),
)


def get_user_friendly_message(error: Any) -> str:
    """Plain-language message for any error.

    ServiceErrors already carry one; other errors are matched on message text.
    """
    if isinstance(error, ServiceError):
        return error.user_message

    lowered = _extract_message(error).lower()
    for needles, friendly in FRIENDLY_MESSAGES:
        if any(needle in lowered for needle in needles):
            return friendly
    return "Something went wrong. Please try again."


async def use_alternative_service(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[], Awaitable[T]],
    service_name: str,
) -> T:
    """Run ``primary``; on a retryable failure run ``fallback`` instead.

    Non-retryable failures (bad key, content filter) are raised as-is since a
    second provider fed the same request is not expected to behave differently
    for a configuration or policy problem.
    """
    try:
        return await primary()
    except Exception as e:
        service_error = classify(e, service_name)
        if not service_error.retryable:
            raise service_error from e
        log.warning(
            "primary_service_failed_using_fallback",
            service=service_name,
            error_code=service_error.code.value,
            error=service_error.message,
        )
        return await fallback()


async def graceful_degradation(
    operation: Callable[[], Awaitable[T]],
    fallback_value: T,
    service_name: str,
) -> T:
    """Run ``operation``, returning ``fallback_value`` if it fails for any reason."""
    try:
        return await operation()
    except Exception as e:
        service_error = classify(e, service_name)
        log.warning(
            "operation_degraded",
            service=service_name,
            error_code=service_error.code.value,
            error=service_error.message,
        )
        return fallback_value
