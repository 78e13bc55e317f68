# ABOUTME: HTTP notification transport with retry logic and secret masking
# ABOUTME: POSTs Slack, MS Teams, webhook, PagerDuty and Opsgenie notifications via httpx

"""
HTTP notification transport.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The dispatcher decides WHO gets notified. This transport does the actual
sending when ``notifications.live_delivery`` is enabled:

1. HTTP COMMUNICATION: one POST per notification, shaped per channel type
2. RETRY LOGIC: timeouts, connection errors and 5xx responses are retried
   with exponential backoff (tenacity)
3. ERROR HANDLING: anything that still fails becomes a DeliveryError, which
   the dispatcher records as a failed dispatch
4. SECRET MASKING: error messages never carry routing keys or API keys

=============================================================================
REQUEST SHAPES
=============================================================================

    slack      POST <webhook_url>  {"text": ..., "channel": ...}
    msteams    POST <webhook_url>  {"text": ...}
    webhook    POST <url>          the dispatch payload, custom headers
    pagerduty  POST https://events.pagerduty.com/v2/enqueue
               {"routing_key": ..., "event_action": "trigger", "payload": {...}}
    opsgenie   POST https://api.opsgenie.com/v2/alerts (api.eu.opsgenie.com for EU)
               Authorization: GenieKey <api_key>
    email      not deliverable over HTTP; always fails with a clear reason

=============================================================================
CONTEXT MANAGER
=============================================================================

    async with HttpNotificationTransport(timeout=10.0) as transport:
        await transport.deliver(channel, payload)
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from argocd_emulator.notifications import DeliveryError

if TYPE_CHECKING:
    from argocd_emulator.models import NotificationChannel

logger = structlog.get_logger(__name__)

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
OPSGENIE_ALERTS_URL = {
    "us": "https://api.opsgenie.com/v2/alerts",
    "eu": "https://api.eu.opsgenie.com/v2/alerts",
}

SECRET_PATTERNS = [
    (re.compile(r"(routing_key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(geniekey\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
    (re.compile(r"(hooks\.slack\.com/services/)[^\s\"']+", re.I), r"\1***MASKED***"),
]


def mask_secrets(text: str) -> str:
    """Mask keys and webhook secrets in a string."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class RetryableStatus(Exception):
    """A 5xx or 429 response; worth another attempt."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}")


def build_request(channel: NotificationChannel, payload: dict[str, Any]) -> tuple[str, dict[str, Any], dict[str, str]]:
    """
    Translate a dispatch payload into (url, json body, headers).

    Raises:
        DeliveryError: for channel types that cannot be delivered over HTTP
    """
    config = channel.config
    text = payload.get("message") or payload.get("event", "")

    if config.type == "slack":
        body: dict[str, Any] = {"text": text}
        if config.channel:
            body["channel"] = config.channel
        return config.webhook_url, body, {}

    if config.type == "msteams":
        return config.webhook_url, {"text": text}, {}

    if config.type == "webhook":
        return config.url, dict(payload), dict(config.headers)

    if config.type == "pagerduty":
        body = {
            "routing_key": config.routing_key.get_secret_value(),
            "event_action": "trigger",
            "payload": {
                "summary": text,
                "severity": config.severity,
                "source": payload.get("application") or "argocd-emulator",
                "custom_details": payload,
            },
        }
        return PAGERDUTY_EVENTS_URL, body, {}

    if config.type == "opsgenie":
        body = {
            "message": text[:130],
            "alias": f"{payload.get('application')}-{payload.get('event')}",
            "details": {k: str(v) for k, v in payload.items() if v is not None},
        }
        headers = {"Authorization": f"GenieKey {config.api_key.get_secret_value()}"}
        return OPSGENIE_ALERTS_URL[config.region], body, headers

    raise DeliveryError(f"channel type '{config.type}' cannot be delivered over HTTP")


class HttpNotificationTransport:
    """
    Async notification transport with retry logic.

    RETRY LOGIC:
    ------------
    Attempts are capped by ``max_attempts``. Between attempts tenacity waits
    exponentially (``backoff`` seconds times 1, 2, 4... capped at 10s).
    Only transient failures are retried: timeouts, connection errors and
    5xx/429 responses. A 4xx means the request itself is wrong; retrying it
    would not help, so it fails immediately.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpNotificationTransport:
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Transport not initialized. Use 'async with' context manager.")
        response = await self._client.post(url, json=body, headers=headers)
        if response.status_code >= 500 or response.status_code == 429:
            raise RetryableStatus(response.status_code, response.text[:200])
        return response

    async def deliver(self, channel: NotificationChannel, payload: dict[str, Any]) -> None:
        """
        Deliver one notification.

        Raises:
            DeliveryError: when delivery failed after all attempts
        """
        url, body, headers = build_request(channel, payload)
        log = logger.bind(channel=channel.name, channel_type=channel.type)
        log.debug("delivering_notification")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(
                    (httpx.TimeoutException, httpx.TransportError, RetryableStatus)
                ),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff, min=0, max=10),
                reraise=True,
            ):
                with attempt:
                    response = await self._post(url, body, headers)
        except RetryableStatus as e:
            log.warning("notification_delivery_failed", status=e.status_code)
            raise DeliveryError(mask_secrets(f"HTTP {e.status_code}: {e.body}")) from e
        except httpx.HTTPError as e:
            log.warning("notification_delivery_failed", error=type(e).__name__)
            raise DeliveryError(mask_secrets(f"{type(e).__name__}: {e}")) from e

        if response.status_code >= 400:
            log.warning("notification_rejected", status=response.status_code)
            raise DeliveryError(
                mask_secrets(f"HTTP {response.status_code}: {response.text[:200]}")
            )
        log.info("notification_delivered", status=response.status_code)
