"""Tests for Discord webhook alerts.

Tests cover:
    - send_alert: Discord webhook integration
    - Message truncation (2000 char limit)
    - Alert levels and embed colours
    - Graceful degradation (log on failure, never raise)
"""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from animatevdo.utils.alerts import build_alert_payload, send_alert

WEBHOOK_URL = "https://discord.com/api/webhooks/test/webhook"


@pytest.fixture
def mock_post(mocker):
    post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    post.return_value = Mock(status_code=204)
    return post


class TestBuildAlertPayload:
    def test_critical_payload(self):
        payload = build_alert_payload("CRITICAL", "Recovery exhausted", {"stage": "audio", "attempts": 3})

        assert payload["content"] == "**CRITICAL**: Recovery exhausted"
        embed = payload["embeds"][0]
        assert embed["color"] == 0xFF0000
        assert embed["fields"][1] == {"name": "attempts", "value": "3", "inline": True}

    def test_unknown_level_is_grey(self):
        assert build_alert_payload("DEBUG", "x")["embeds"][0]["color"] == 0x808080

    def test_message_truncated(self):
        payload = build_alert_payload("INFO", "A" * 2500)

        assert len(payload["embeds"][0]["description"]) == 2000


class TestSendAlert:
    async def test_p0_send_critical_alert(self, mock_post):
        """[P0] Alert is posted to the configured webhook."""
        sent = await send_alert(WEBHOOK_URL, "CRITICAL", "Recovery gave up", details={"stage": "video"})

        assert sent is True
        mock_post.assert_awaited_once()
        assert mock_post.await_args.args[0] == WEBHOOK_URL
        assert mock_post.await_args.kwargs["timeout"] == 5.0
        assert "Recovery gave up" in mock_post.await_args.kwargs["json"]["content"]

    async def test_no_webhook_configured(self, mock_post):
        assert await send_alert(None, "CRITICAL", "nobody listening") is False
        mock_post.assert_not_awaited()

    async def test_p1_timeout_is_swallowed(self, mock_post):
        mock_post.side_effect = httpx.TimeoutException("Request timeout")

        assert await send_alert(WEBHOOK_URL, "WARNING", "slow webhook") is False

    async def test_p1_http_error_is_swallowed(self, mock_post):
        request = httpx.Request("POST", WEBHOOK_URL)
        response = httpx.Response(404, text="Unknown Webhook", request=request)
        mock_post.return_value = response

        assert await send_alert(WEBHOOK_URL, "INFO", "gone") is False

    async def test_network_error_is_swallowed(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("Connection refused")

        assert await send_alert(WEBHOOK_URL, "INFO", "offline") is False
