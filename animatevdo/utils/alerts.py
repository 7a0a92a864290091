"""Discord webhook alerts for pipeline failures that need a human.

The recovery worker sends an alert when a recovery queue entry exhausts its
retries; at that point the project is stuck until someone looks at it.

Alerts are best-effort: a missing webhook URL, a timeout or an HTTP error is
logged and swallowed so alerting can never fail the worker loop.
"""

import httpx

from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

ALERT_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}


def build_alert_payload(level: str, message: str, details: dict[str, str] | None = None) -> dict:
    """Build the Discord webhook body (message capped at 2000 chars, fields at 1024)."""
    sanitized_message = message[:2000]
    return {
        "content": f"**{level}**: {sanitized_message}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": sanitized_message,
                "fields": [
                    {"name": key, "value": str(value)[:1024], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": ALERT_COLORS.get(level, 0x808080),
            }
        ],
    }


async def send_alert(
    webhook_url: str | None,
    level: str,
    message: str,
    details: dict[str, str] | None = None,
) -> bool:
    """Send an alert to a Discord webhook.

    Args:
        webhook_url: Discord webhook URL from Settings (None disables alerts).
        level: "CRITICAL", "WARNING" or "INFO".
        message: Alert message (truncated to 2000 chars).
        details: Optional key/value fields shown in the embed.

    Returns:
        True if Discord accepted the alert, False otherwise.

    Example:
        >>> await send_alert(
        ...     settings.discord_webhook_url,
        ...     "CRITICAL",
        ...     "Recovery exhausted for audio stage",
        ...     details={"project_id": "1b9d...", "error_code": "API_SERVICE_DOWN"},
        ... )
    """
    if not webhook_url:
        log.warning("discord_webhook_not_configured", level=level, message=message[:100])
        return False

    payload = build_alert_payload(level, message, details)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=5.0)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))
        return False

    log.info("discord_alert_sent", level=level, message=message[:100])
    return True
