# ABOUTME: Unit tests for the HTTP notification transport
# ABOUTME: Tests request shapes per channel type, retries on 5xx, 4xx failures and secret masking

import json

import httpx
import pytest
import respx

from argocd_emulator.models import NotificationChannel
from argocd_emulator.notifications import DeliveryError
from argocd_emulator.utils.transport import (
    OPSGENIE_ALERTS_URL,
    PAGERDUTY_EVENTS_URL,
    HttpNotificationTransport,
    build_request,
    mask_secrets,
)

SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
PAYLOAD = {
    "event": "on-sync-failed",
    "application": "web",
    "project": "default",
    "status": "degraded",
    "health": "degraded",
    "revision": "abc123",
    "message": "The sync operation of application web has failed: boom",
}


def channel(type_: str, config: dict) -> NotificationChannel:
    return NotificationChannel.model_validate({"name": f"{type_}-channel", "type": type_, "config": config})


@pytest.fixture
def slack() -> NotificationChannel:
    return channel("slack", {"webhookUrl": SLACK_URL, "channel": "#deploys"})


@pytest.mark.unit
class TestBuildRequest:
    """Tests for build_request."""

    def test_slack(self, slack: NotificationChannel):
        """Test the Slack incoming-webhook body."""
        url, body, headers = build_request(slack, PAYLOAD)

        assert url == SLACK_URL
        assert body == {"text": PAYLOAD["message"], "channel": "#deploys"}
        assert headers == {}

    def test_webhook_forwards_payload_and_headers(self):
        """Test that generic webhooks get the raw payload."""
        hook = channel("webhook", {"url": "https://ci.example.com/hook", "headers": {"X-Token": "t"}})

        url, body, headers = build_request(hook, PAYLOAD)

        assert url == "https://ci.example.com/hook"
        assert body == PAYLOAD
        assert headers == {"X-Token": "t"}

    def test_pagerduty(self):
        """Test the PagerDuty Events v2 body."""
        pd = channel("pagerduty", {"routingKey": "rk-123", "severity": "critical"})

        url, body, _ = build_request(pd, PAYLOAD)

        assert url == PAGERDUTY_EVENTS_URL
        assert body["routing_key"] == "rk-123"
        assert body["event_action"] == "trigger"
        assert body["payload"]["severity"] == "critical"
        assert body["payload"]["source"] == "web"

    def test_opsgenie_region(self):
        """Test the Opsgenie EU endpoint and GenieKey header."""
        og = channel("opsgenie", {"apiKey": "key-123", "region": "eu"})

        url, body, headers = build_request(og, PAYLOAD)

        assert url == OPSGENIE_ALERTS_URL["eu"]
        assert headers == {"Authorization": "GenieKey key-123"}
        assert body["alias"] == "web-on-sync-failed"

    def test_email_not_deliverable(self):
        """Test that email channels fail with a clear reason."""
        mail = channel("email", {"recipients": ["ops@example.com"]})

        with pytest.raises(DeliveryError, match="cannot be delivered over HTTP"):
            build_request(mail, PAYLOAD)


@pytest.mark.unit
class TestMaskSecrets:
    """Tests for mask_secrets."""

    @pytest.mark.parametrize(
        "text,secret",
        [
            ('{"routing_key": "rk-123"}', "rk-123"),
            ("api_key=abcdef", "abcdef"),
            ("Authorization: GenieKey key-123", "key-123"),
            (f"POST {SLACK_URL} failed", "T000/B000/XXXX"),
        ],
    )
    def test_masks(self, text: str, secret: str):
        """Test that keys and webhook secrets are masked."""
        masked = mask_secrets(text)

        assert secret not in masked
        assert "***MASKED***" in masked


@pytest.mark.unit
class TestHttpNotificationTransport:
    """Tests for HttpNotificationTransport.deliver."""

    @respx.mock
    async def test_delivers(self, slack: NotificationChannel):
        """Test a successful POST."""
        route = respx.post(SLACK_URL).mock(return_value=httpx.Response(200, text="ok"))

        async with HttpNotificationTransport(max_attempts=3, backoff=0) as transport:
            await transport.deliver(slack, PAYLOAD)

        assert route.call_count == 1
        assert json.loads(route.calls[0].request.content)["channel"] == "#deploys"

    @respx.mock
    async def test_retries_server_errors(self, slack: NotificationChannel):
        """Test that a 5xx is retried until it succeeds."""
        route = respx.post(SLACK_URL).mock(
            side_effect=[httpx.Response(503), httpx.Response(500), httpx.Response(200)]
        )

        async with HttpNotificationTransport(max_attempts=3, backoff=0) as transport:
            await transport.deliver(slack, PAYLOAD)

        assert route.call_count == 3

    @respx.mock
    async def test_gives_up_after_max_attempts(self, slack: NotificationChannel):
        """Test that persistent 5xx responses become a DeliveryError."""
        route = respx.post(SLACK_URL).mock(return_value=httpx.Response(500, text="upstream down"))

        async with HttpNotificationTransport(max_attempts=2, backoff=0) as transport:
            with pytest.raises(DeliveryError, match="HTTP 500"):
                await transport.deliver(slack, PAYLOAD)

        assert route.call_count == 2

    @respx.mock
    async def test_client_error_not_retried(self, slack: NotificationChannel):
        """Test that a 4xx fails immediately."""
        route = respx.post(SLACK_URL).mock(return_value=httpx.Response(404, text="no_service"))

        async with HttpNotificationTransport(max_attempts=3, backoff=0) as transport:
            with pytest.raises(DeliveryError, match="HTTP 404"):
                await transport.deliver(slack, PAYLOAD)

        assert route.call_count == 1

    @respx.mock
    async def test_connection_error(self, slack: NotificationChannel):
        """Test that connection errors are retried, then reported masked."""
        route = respx.post(SLACK_URL).mock(side_effect=httpx.ConnectError(f"cannot reach {SLACK_URL}"))

        async with HttpNotificationTransport(max_attempts=2, backoff=0) as transport:
            with pytest.raises(DeliveryError) as exc_info:
                await transport.deliver(slack, PAYLOAD)

        assert route.call_count == 2
        assert "ConnectError" in str(exc_info.value)
        assert "XXXX" not in str(exc_info.value)

    async def test_requires_context_manager(self, slack: NotificationChannel):
        """Test that delivering outside 'async with' is a programming error."""
        transport = HttpNotificationTransport()

        with pytest.raises(RuntimeError, match="not initialized"):
            await transport.deliver(slack, PAYLOAD)
